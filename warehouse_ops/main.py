from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timezone
from typing import Any, Optional
from uuid import uuid4

from fastapi import (
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
)
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warehouse_ops import admin, kpis, procedures, tasks, timesheet, trucks, truck_exceptions
from warehouse_ops.config import configure_logging, local_now, local_today, settings
from warehouse_ops.db import commit_or_raise, get_db
from warehouse_ops.errors import BackendError, PermissionDenied, ValidationError, install_error_handlers
from warehouse_ops.models import Holiday, TASK_PRIORITIES, TRUCK_PRIORITIES
from warehouse_ops.notifications import Notifier, subscribe_announcements
from warehouse_ops.ramps import resolve_all
from warehouse_ops.realtime import ChangeFeed, ChangeType, RefreshCoordinator
from warehouse_ops.storage import PhotoBucket, PhotoUpload, photo_to_dict
from warehouse_ops.users import list_staff, role_of

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Warehouse Operations")
install_error_handlers(app)
app.include_router(admin.router)

app.state.change_feed = ChangeFeed()
app.state.notifier = Notifier()
subscribe_announcements(app.state.change_feed, app.state.notifier)

ADMIN_ROLES = ("OFFICE_ADMIN", "SUPER_ADMIN")


class Meta(BaseModel):
    request_id: str
    warnings: list[str]


class Envelope(BaseModel):
    data: Any
    meta: Meta


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_change_feed(request: Request) -> ChangeFeed:
    return request.app.state.change_feed


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_photo_bucket() -> PhotoBucket:
    return PhotoBucket(settings.photo_bucket_dir)


def get_acting_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise PermissionDenied("X-User-Id header is required")
    return x_user_id


def _require_admin(db: Session, user_id: str) -> None:
    if role_of(db, user_id) not in ADMIN_ROLES:
        raise PermissionDenied("Only office administrators can do this")


KPI_REFRESH_WARNING = "Change saved, but KPI metrics could not be refreshed"


def _refresh_kpis(db: Session, feed: ChangeFeed) -> list[str]:
    """Recompute today's KPI rows after a committed change.

    The change itself stays committed when this fails; the caller gets a
    warning for the response meta instead of an error.
    """
    # KPI rows are keyed by UTC day.
    try:
        procedures.refresh_user_kpi_metrics(db, _now().date(), feed=feed)
    except (BackendError, SQLAlchemyError) as exc:
        db.rollback()
        logger.warning("KPI refresh failed: %s", exc)
        return [KPI_REFRESH_WARNING]
    return []


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.get("/api/v1/ramps/status", response_model=Envelope, tags=["Ramps"])
def ramp_status(
    at: Optional[datetime] = Query(default=None, description="Local wall-clock time"),
    db: Session = Depends(get_db),
) -> dict:
    now = at or local_now()
    statuses = resolve_all(trucks.list_trucks(db), now)
    return {"data": [status.as_dict() for status in statuses], "meta": _meta()}


class TruckCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "license_plate": "CA1234AB",
                "arrival_date": "2026-10-20",
                "arrival_time": "09:30:00",
                "cargo_description": "Frozen goods",
                "pallet_count": 24,
                "priority": "NORMAL",
                "ramp_number": 3,
            }
        }
    }
    license_plate: str
    arrival_date: date
    arrival_time: time
    cargo_description: str
    pallet_count: int
    priority: str = Field(default="NORMAL", description=", ".join(TRUCK_PRIORITIES))
    ramp_number: Optional[int] = None


@app.post("/api/v1/trucks", tags=["Trucks"])
def create_truck(
    payload: TruckCreate,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    truck = trucks.create_truck(
        db,
        license_plate=payload.license_plate,
        arrival_date=payload.arrival_date,
        arrival_time=payload.arrival_time,
        cargo_description=payload.cargo_description,
        pallet_count=payload.pallet_count,
        created_by_user_id=user_id,
        now=local_now(),
        priority=payload.priority,
        ramp_number=payload.ramp_number,
    )
    data = trucks.truck_to_dict(truck)
    feed.emit("trucks", ChangeType.INSERT, data)
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/trucks", tags=["Trucks"])
def list_trucks(
    status: Optional[str] = Query(default=None),
    arrival_date: Optional[date] = Query(default=None),
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> dict:
    role = role_of(db, x_user_id) if x_user_id else None
    rows = trucks.list_trucks(db, role=role, status=status, arrival_date=arrival_date)
    return {"data": [trucks.truck_to_dict(truck) for truck in rows], "meta": _meta()}


@app.get("/api/v1/trucks/{truck_id}", tags=["Trucks"])
def get_truck(truck_id: int, db: Session = Depends(get_db)) -> dict:
    truck = trucks.get_truck(db, truck_id)
    return {"data": trucks.truck_to_dict(truck), "meta": _meta()}


class TruckArrival(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"actual_arrival_date": "2026-10-21", "late_reason": "Border delay"}
        }
    }
    actual_arrival_date: Optional[date] = None
    late_reason: Optional[str] = None


@app.post("/api/v1/trucks/{truck_id}/arrive", tags=["Trucks"])
def mark_arrived(
    truck_id: int,
    payload: Optional[TruckArrival] = None,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    payload = payload or TruckArrival()
    truck = procedures.handle_truck_arrival(
        db,
        truck_id,
        user_id,
        actual_arrival_date=payload.actual_arrival_date,
        late_reason=payload.late_reason,
        today=local_today(),
        feed=feed,
    )
    data = trucks.truck_to_dict(truck)
    warnings = _refresh_kpis(db, feed)
    return {"data": data, "meta": _meta(warnings=warnings)}


@app.post("/api/v1/trucks/{truck_id}/start", tags=["Trucks"])
def start_truck(
    truck_id: int,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    truck = trucks.start_handling(db, truck_id, user_id)
    data = trucks.truck_to_dict(truck)
    feed.emit("trucks", ChangeType.UPDATE, data)
    warnings = _refresh_kpis(db, feed)
    return {"data": data, "meta": _meta(warnings=warnings)}


@app.post("/api/v1/trucks/{truck_id}/complete", tags=["Trucks"])
def complete_truck(
    truck_id: int,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    truck = trucks.complete_truck(db, truck_id, user_id)
    data = trucks.truck_to_dict(truck)
    feed.emit("trucks", ChangeType.UPDATE, data)
    warnings = _refresh_kpis(db, feed)
    return {"data": data, "meta": _meta(warnings=warnings)}


class RampAssignment(BaseModel):
    model_config = {"json_schema_extra": {"example": {"ramp_number": 8, "staff_id": None}}}
    ramp_number: int
    staff_id: Optional[str] = None


@app.put("/api/v1/trucks/{truck_id}/ramp", tags=["Trucks"])
def assign_ramp(
    truck_id: int,
    payload: RampAssignment,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    truck = trucks.assign_ramp(db, truck_id, payload.ramp_number, payload.staff_id)
    data = trucks.truck_to_dict(truck)
    feed.emit("trucks", ChangeType.UPDATE, data)
    return {"data": data, "meta": _meta()}


class TruckReschedule(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"arrival_date": "2026-10-22", "arrival_time": "14:00:00"}}
    }
    arrival_date: date
    arrival_time: time


@app.post("/api/v1/trucks/{truck_id}/reschedule", tags=["Trucks"])
def reschedule_truck(
    truck_id: int,
    payload: TruckReschedule,
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    truck = trucks.reschedule_truck(
        db, truck_id, payload.arrival_date, payload.arrival_time, local_now()
    )
    data = trucks.truck_to_dict(truck)
    feed.emit("trucks", ChangeType.UPDATE, data)
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/trucks/{truck_id}/photos", tags=["Truck Photos"])
def upload_photos(
    truck_id: int,
    files: list[UploadFile] = File(...),
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    bucket: PhotoBucket = Depends(get_photo_bucket),
) -> dict:
    uploads = [
        PhotoUpload(
            filename=upload.filename or "photo",
            content_type=upload.content_type or "application/octet-stream",
            content=upload.file.read(),
        )
        for upload in files
    ]
    photos = bucket.store(db, truck_id, uploads, user_id)
    return {"data": [photo_to_dict(photo) for photo in photos], "meta": _meta()}


@app.get("/api/v1/trucks/{truck_id}/photos", tags=["Truck Photos"])
def list_photos(
    truck_id: int,
    db: Session = Depends(get_db),
    bucket: PhotoBucket = Depends(get_photo_bucket),
) -> dict:
    trucks.get_truck(db, truck_id)
    return {"data": [photo_to_dict(photo) for photo in bucket.list_photos(db, truck_id)], "meta": _meta()}


class ExceptionCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "exception_type": "DAMAGED_CARGO",
                "reason": "Two pallets crushed",
                "notes": "Photos attached",
                "priority": "HIGH",
            }
        }
    }
    exception_type: str
    reason: str
    notes: Optional[str] = None
    priority: str = "MEDIUM"
    estimated_resolution_time: Optional[datetime] = None


@app.post("/api/v1/trucks/{truck_id}/exceptions", tags=["Exceptions"])
def report_exception(
    truck_id: int,
    payload: ExceptionCreate,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    record = truck_exceptions.report_exception(
        db,
        truck_id,
        payload.exception_type,
        payload.reason,
        user_id,
        notes=payload.notes,
        priority=payload.priority,
        estimated_resolution_time=payload.estimated_resolution_time,
    )
    data = truck_exceptions.exception_to_dict(record)
    feed.emit("truck_exceptions", ChangeType.INSERT, data)
    warnings = _refresh_kpis(db, feed)
    return {"data": data, "meta": _meta(warnings=warnings)}


@app.get("/api/v1/exceptions", tags=["Exceptions"])
def list_exceptions(db: Session = Depends(get_db)) -> dict:
    rows = truck_exceptions.list_exceptions(db)
    return {"data": [truck_exceptions.exception_to_dict(row) for row in rows], "meta": _meta()}


class StatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"status": "RESOLVED"}}}
    status: str
    comment: Optional[str] = None


@app.patch("/api/v1/exceptions/{exception_id}/status", tags=["Exceptions"])
def update_exception_status(
    exception_id: int,
    payload: StatusUpdate,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    record = truck_exceptions.update_exception_status(db, exception_id, payload.status, user_id)
    data = truck_exceptions.exception_to_dict(record)
    feed.emit("truck_exceptions", ChangeType.UPDATE, data)
    warnings = _refresh_kpis(db, feed)
    return {"data": data, "meta": _meta(warnings=warnings)}


class TaskCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "title": "Restack aisle 4",
                "description": "Move returns to the back rack",
                "priority": "MEDIUM",
                "truck_id": None,
                "due_date": "2026-10-20",
            }
        }
    }
    title: str
    description: Optional[str] = None
    priority: str = Field(default="MEDIUM", description=", ".join(TASK_PRIORITIES))
    truck_id: Optional[int] = None
    due_date: Optional[date] = None


@app.post("/api/v1/tasks", tags=["Tasks"])
def create_task(
    payload: TaskCreate,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    task = tasks.create_task(
        db,
        payload.title,
        user_id,
        description=payload.description,
        priority=payload.priority,
        truck_id=payload.truck_id,
        due_date=payload.due_date,
    )
    data = tasks.task_to_dict(task)
    feed.emit("tasks", ChangeType.INSERT, data)
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/tasks", tags=["Tasks"])
def list_tasks(status: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    return {"data": [tasks.task_to_dict(task) for task in tasks.list_tasks(db, status)], "meta": _meta()}


@app.patch("/api/v1/tasks/{task_id}/status", tags=["Tasks"])
def update_task_status(
    task_id: int,
    payload: StatusUpdate,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    task = tasks.update_task_status(db, task_id, payload.status, user_id, payload.comment)
    data = tasks.task_to_dict(task)
    feed.emit("tasks", ChangeType.UPDATE, data)
    warnings = _refresh_kpis(db, feed) if task.status == "COMPLETED" else []
    return {"data": data, "meta": _meta(warnings=warnings)}


@app.post("/api/v1/time-entries/check-in", tags=["Time Tracking"])
def check_in(
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    entry = timesheet.check_in(db, user_id)
    data = timesheet.entry_to_dict(entry)
    feed.emit("time_entries", ChangeType.INSERT, data)
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/time-entries/check-out", tags=["Time Tracking"])
def check_out(
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    entry = timesheet.check_out(db, user_id)
    data = timesheet.entry_to_dict(entry, timesheet.holiday_name_for(db, entry))
    feed.emit("time_entries", ChangeType.UPDATE, data)
    warnings = []
    if entry.approval_status == "pending":
        warnings.append("Overtime recorded; awaiting approval")
    return {"data": data, "meta": _meta(warnings=warnings)}


@app.get("/api/v1/time-entries/status", tags=["Time Tracking"])
def check_in_status(user_id: str = Depends(get_acting_user), db: Session = Depends(get_db)) -> dict:
    return {"data": timesheet.current_status(db, user_id), "meta": _meta()}


@app.get("/api/v1/time-entries", tags=["Time Tracking"])
def list_time_entries(
    user_id: Optional[str] = Query(default=None),
    since: Optional[date] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = timesheet.list_entries(db, user_id=user_id, since=since, limit=limit)
    return {"data": [timesheet.entry_to_dict(entry) for entry in rows], "meta": _meta()}


@app.get("/api/v1/time-entries/overtime/pending", tags=["Time Tracking"])
def pending_overtime(user_id: str = Depends(get_acting_user), db: Session = Depends(get_db)) -> dict:
    _require_admin(db, user_id)
    rows = timesheet.pending_overtime(db)
    return {"data": [timesheet.entry_to_dict(entry) for entry in rows], "meta": _meta()}


def _decide(entry_id: int, approved: bool, user_id: str, db: Session, feed: ChangeFeed) -> dict:
    _require_admin(db, user_id)
    entry = timesheet.decide_overtime(db, entry_id, approved, user_id)
    data = timesheet.entry_to_dict(entry)
    feed.emit("time_entries", ChangeType.UPDATE, data)
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/time-entries/{entry_id}/approve", tags=["Time Tracking"])
def approve_overtime(
    entry_id: int,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    return _decide(entry_id, True, user_id, db, feed)


@app.post("/api/v1/time-entries/{entry_id}/reject", tags=["Time Tracking"])
def reject_overtime(
    entry_id: int,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    return _decide(entry_id, False, user_id, db, feed)


class HolidayCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {"date": "2026-12-25", "name": "Christmas"}},
    }
    holiday_date: date = Field(alias="date")
    name: str
    is_active: bool = True


@app.post("/api/v1/holidays", tags=["Holidays"])
def create_holiday(
    payload: HolidayCreate,
    user_id: str = Depends(get_acting_user),
    db: Session = Depends(get_db),
) -> dict:
    _require_admin(db, user_id)
    if db.scalar(select(Holiday).where(Holiday.date == payload.holiday_date)) is not None:
        raise ValidationError("A holiday already exists on that date")
    holiday = Holiday(date=payload.holiday_date, name=payload.name, is_active=payload.is_active)
    db.add(holiday)
    commit_or_raise(db, "Creating holiday")
    db.refresh(holiday)
    return {
        "data": {
            "holiday_id": holiday.id,
            "date": holiday.date.isoformat(),
            "name": holiday.name,
            "is_active": holiday.is_active,
        },
        "meta": _meta(),
    }


@app.get("/api/v1/holidays", tags=["Holidays"])
def list_holidays(year: Optional[int] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    query = select(Holiday).order_by(Holiday.date)
    if year is not None:
        query = query.where(Holiday.date >= date(year, 1, 1), Holiday.date <= date(year, 12, 31))
    data = [
        {"holiday_id": row.id, "date": row.date.isoformat(), "name": row.name, "is_active": row.is_active}
        for row in db.scalars(query).all()
    ]
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/staff", tags=["Staff"])
def staff_directory(db: Session = Depends(get_db)) -> dict:
    data = [
        {"user_id": profile.user_id, "email": profile.email, "display_name": profile.display_name}
        for profile in list_staff(db)
    ]
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/kpi/summary", response_model=Envelope, tags=["KPI"])
def kpi_summary(
    period_days: int = Query(default=settings.default_kpi_period_days, ge=1, le=366),
    db: Session = Depends(get_db),
) -> dict:
    summary = kpis.fetch_all_staff_summary(db, period_days, local_today())
    return {"data": summary.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/kpi/users/{user_id}", response_model=Envelope, tags=["KPI"])
def kpi_user_summary(
    user_id: str,
    period_days: int = Query(default=settings.default_kpi_period_days, ge=1, le=366),
    db: Session = Depends(get_db),
) -> dict:
    summary = kpis.fetch_user_summary(db, user_id, period_days, local_today())
    return {"data": summary.model_dump(mode="json"), "meta": _meta()}


@app.get("/api/v1/kpi/trends", response_model=Envelope, tags=["KPI"])
def kpi_trends(
    days: int = Query(default=settings.default_kpi_period_days, ge=1, le=366),
    db: Session = Depends(get_db),
) -> dict:
    points = kpis.fetch_trends(db, days, local_today())
    return {"data": [point.model_dump(mode="json") for point in points], "meta": _meta()}


@app.get("/api/v1/kpi/time-totals", response_model=Envelope, tags=["KPI"])
def kpi_time_totals(
    since: Optional[date] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    start = since or kpis.window_start(local_today(), settings.default_kpi_period_days)
    totals = kpis.fetch_time_totals(db, start, user_id)
    return {"data": totals.model_dump(mode="json"), "meta": _meta()}


def _parse_date(value: Any, field: str) -> Optional[date]:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO date") from exc


@app.post("/api/v1/rpc/{name}", tags=["RPC"])
def call_procedure(
    name: str,
    params: dict[str, Any],
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
) -> dict:
    if name == "handle_truck_arrival":
        if params.get("p_truck_id") is None or not params.get("p_user_id"):
            raise ValidationError("p_truck_id and p_user_id are required")
        truck = procedures.handle_truck_arrival(
            db,
            int(params["p_truck_id"]),
            params["p_user_id"],
            actual_arrival_date=_parse_date(params.get("p_actual_arrival_date"), "p_actual_arrival_date"),
            late_reason=params.get("p_late_reason"),
            today=local_today(),
            feed=feed,
        )
        result: Any = trucks.truck_to_dict(truck)
    elif name == "refresh_user_kpi_metrics":
        target = _parse_date(params.get("target_date"), "target_date") or _now().date()
        result = {"users_refreshed": procedures.refresh_user_kpi_metrics(db, target, feed=feed)}
    elif name == "mark_overdue_trucks":
        today = _parse_date(params.get("today"), "today") or local_today()
        result = {"trucks_marked": procedures.mark_overdue_trucks(db, today, feed=feed)}
    else:
        raise HTTPException(status_code=404, detail="procedure not found")
    return {"data": result, "meta": _meta()}


@app.get("/api/v1/notifications", tags=["Notifications"])
def recent_notifications(
    limit: int = Query(default=20, ge=1, le=100),
    notifier: Notifier = Depends(get_notifier),
) -> dict:
    recent = list(notifier.history)[-limit:]
    return {"data": [notification.as_dict() for notification in reversed(recent)], "meta": _meta()}


@app.websocket("/api/v1/realtime")
async def realtime_refresh(websocket: WebSocket) -> None:
    """Push the refresh counter to the client after every watched change."""
    await websocket.accept()
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()
    coordinator = RefreshCoordinator(websocket.app.state.change_feed)

    def on_refresh(count: int) -> None:
        loop.call_soon_threadsafe(updates.put_nowait, coordinator.snapshot())

    coordinator.add_listener(on_refresh)

    async def push() -> None:
        while True:
            await websocket.send_json(await updates.get())

    async def drain() -> None:
        while True:
            await websocket.receive_text()

    with coordinator:
        await websocket.send_json(coordinator.snapshot())
        pusher = asyncio.ensure_future(push())
        reader = asyncio.ensure_future(drain())
        try:
            await asyncio.wait({pusher, reader}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (pusher, reader):
                task.cancel()
            await asyncio.gather(pusher, reader, return_exceptions=True)
