from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from warehouse_ops.db import commit_or_raise
from warehouse_ops.errors import NotFoundError, ValidationError
from warehouse_ops.formatting import as_utc
from warehouse_ops.models import EXCEPTION_STATUSES, TASK_PRIORITIES, Truck, TruckException
from warehouse_ops.validation import sanitize_text

logger = logging.getLogger(__name__)

LIST_LIMIT = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


def report_exception(
    db: Session,
    truck_id: int,
    exception_type: str,
    reason: str,
    reported_by_user_id: str,
    notes: Optional[str] = None,
    priority: str = "MEDIUM",
    estimated_resolution_time: Optional[datetime] = None,
) -> TruckException:
    if db.get(Truck, truck_id) is None:
        raise NotFoundError("truck not found")
    exception_type = sanitize_text(exception_type)
    reason = sanitize_text(reason)
    if not exception_type or not reason:
        raise ValidationError("Exception type and reason are required")
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"Priority must be one of {', '.join(TASK_PRIORITIES)}")
    stamp = _now()
    record = TruckException(
        truck_id=truck_id,
        exception_type=exception_type,
        reason=reason,
        notes=sanitize_text(notes) or None,
        priority=priority,
        status="PENDING",
        reported_by_user_id=reported_by_user_id,
        estimated_resolution_time=estimated_resolution_time,
        created_at=stamp,
        updated_at=stamp,
    )
    db.add(record)
    commit_or_raise(db, "Reporting exception")
    db.refresh(record)
    logger.warning("Exception %s reported on truck %s: %s", record.id, truck_id, exception_type)
    return record


def list_exceptions(db: Session) -> list[TruckException]:
    return list(
        db.scalars(
            select(TruckException)
            .options(joinedload(TruckException.truck))
            .order_by(TruckException.created_at.desc(), TruckException.id.desc())
            .limit(LIST_LIMIT)
        ).all()
    )


def update_exception_status(
    db: Session, exception_id: int, status: str, user_id: str
) -> TruckException:
    if status not in EXCEPTION_STATUSES:
        raise ValidationError(f"Status must be one of {', '.join(EXCEPTION_STATUSES)}")
    record = db.get(TruckException, exception_id)
    if record is None:
        raise NotFoundError("exception not found")
    stamp = _now()
    record.status = status
    record.updated_at = stamp
    if status == "RESOLVED":
        record.actual_resolution_time = stamp
        record.resolved_by_user_id = user_id
    commit_or_raise(db, "Updating exception")
    db.refresh(record)
    return record


def exception_to_dict(record: TruckException) -> dict:
    truck = record.truck
    return {
        "exception_id": record.id,
        "truck_id": record.truck_id,
        "license_plate": truck.license_plate if truck else None,
        "cargo_description": truck.cargo_description if truck else None,
        "exception_type": record.exception_type,
        "reason": record.reason,
        "notes": record.notes,
        "priority": record.priority,
        "status": record.status,
        "reported_by_user_id": record.reported_by_user_id,
        "resolved_by_user_id": record.resolved_by_user_id,
        "estimated_resolution_time": (
            as_utc(record.estimated_resolution_time).isoformat()
            if record.estimated_resolution_time
            else None
        ),
        "actual_resolution_time": (
            as_utc(record.actual_resolution_time).isoformat()
            if record.actual_resolution_time
            else None
        ),
        "created_at": as_utc(record.created_at).isoformat(),
    }
