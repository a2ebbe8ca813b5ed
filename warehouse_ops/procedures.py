"""Server-side procedures: truck arrival, the daily KPI refresh, overdue marking.

Each procedure runs in its own transaction and announces the tables it
changed on the change feed once the commit has succeeded.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from warehouse_ops.db import commit_or_raise
from warehouse_ops.errors import NotFoundError, ValidationError
from warehouse_ops.formatting import as_utc
from warehouse_ops.models import PerformanceTrend, Task, Truck, TruckException, UserKPIMetric
from warehouse_ops.realtime import ChangeFeed, ChangeType

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _day_bounds(target_date: date) -> tuple[datetime, datetime]:
    start = datetime.combine(target_date, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _on_day(value: Optional[datetime], target_date: date) -> bool:
    return value is not None and as_utc(value).date() == target_date


def handle_truck_arrival(
    db: Session,
    truck_id: int,
    user_id: Optional[str] = None,
    actual_arrival_date: Optional[date] = None,
    late_reason: Optional[str] = None,
    today: Optional[date] = None,
    feed: Optional[ChangeFeed] = None,
) -> Truck:
    truck = db.get(Truck, truck_id)
    if truck is None:
        raise NotFoundError("truck not found")
    if truck.status != "SCHEDULED":
        raise ValidationError(f"Truck cannot be marked as arrived from status {truck.status}")

    arrived_on = actual_arrival_date or today or _now().date()
    truck.status = "ARRIVED"
    truck.actual_arrival_date = arrived_on
    if arrived_on > truck.arrival_date:
        truck.original_arrival_date = truck.original_arrival_date or truck.arrival_date
        truck.late_arrival_reason = late_reason
    truck.is_overdue = False
    truck.updated_at = _now()
    commit_or_raise(db, "Truck arrival")
    db.refresh(truck)
    logger.info("Truck %s (%s) arrived, reported by %s", truck.id, truck.license_plate, user_id)
    if feed is not None:
        feed.emit("trucks", ChangeType.UPDATE, {"id": truck.id, "status": truck.status})
    return truck


def mark_overdue_trucks(db: Session, today: date, feed: Optional[ChangeFeed] = None) -> int:
    trucks = db.scalars(
        select(Truck).where(
            Truck.status == "SCHEDULED",
            Truck.arrival_date < today,
            Truck.is_overdue.is_(False),
        )
    ).all()
    if not trucks:
        return 0
    now = _now()
    for truck in trucks:
        truck.is_overdue = True
        truck.overdue_marked_at = now
        truck.updated_at = now
    commit_or_raise(db, "Marking overdue trucks")
    logger.info("Marked %d trucks overdue", len(trucks))
    if feed is not None:
        for truck in trucks:
            feed.emit("trucks", ChangeType.UPDATE, {"id": truck.id, "is_overdue": True})
    return len(trucks)


def refresh_user_kpi_metrics(
    db: Session, target_date: date, feed: Optional[ChangeFeed] = None
) -> int:
    """Recompute every user's metric row and the trend row for ``target_date``.

    Returns the number of user rows written.
    """
    start, end = _day_bounds(target_date)
    trucks = db.scalars(
        select(Truck).where(
            or_(
                Truck.arrival_date == target_date,
                Truck.started_at.between(start, end),
                Truck.completed_at.between(start, end),
            )
        )
    ).all()
    tasks = db.scalars(
        select(Task).where(Task.status == "COMPLETED", Task.completed_at.between(start, end))
    ).all()
    exceptions = db.scalars(
        select(TruckException).where(
            or_(
                TruckException.created_at.between(start, end),
                TruckException.actual_resolution_time.between(start, end),
            )
        )
    ).all()

    handled: dict[str, set[int]] = defaultdict(set)
    completed: dict[str, list[Truck]] = defaultdict(list)
    for truck in trucks:
        if not truck.handled_by_user_id:
            continue
        if _on_day(truck.started_at, target_date) or _on_day(truck.completed_at, target_date):
            handled[truck.handled_by_user_id].add(truck.id)
        if truck.status == "DONE" and _on_day(truck.completed_at, target_date):
            completed[truck.handled_by_user_id].append(truck)

    tasks_done: dict[str, int] = defaultdict(int)
    for task in tasks:
        if task.completed_by_user_id and _on_day(task.completed_at, target_date):
            tasks_done[task.completed_by_user_id] += 1

    reported: dict[str, int] = defaultdict(int)
    resolved: dict[str, int] = defaultdict(int)
    for exception in exceptions:
        if _on_day(exception.created_at, target_date):
            reported[exception.reported_by_user_id] += 1
        if exception.resolved_by_user_id and _on_day(exception.actual_resolution_time, target_date):
            resolved[exception.resolved_by_user_id] += 1

    user_ids = set(handled) | set(completed) | set(tasks_done) | set(reported) | set(resolved)
    existing = {
        row.user_id: row
        for row in db.scalars(
            select(UserKPIMetric).where(UserKPIMetric.metric_date == target_date)
        ).all()
    }
    now = _now()
    for user_id in user_ids:
        done = completed.get(user_id, [])
        stats = _completion_stats(done)
        row = existing.get(user_id)
        if row is None:
            row = UserKPIMetric(user_id=user_id, metric_date=target_date, created_at=now)
            db.add(row)
        row.total_trucks_handled = len(handled.get(user_id, ()))
        row.completed_trucks = len(done)
        row.total_pallets_handled = stats["pallets"]
        row.avg_pallets_per_truck = stats["avg_pallets"]
        row.avg_processing_hours = stats["avg_hours"]
        row.avg_unloading_speed_pallets_per_hour = stats["speed"]
        row.tasks_completed = tasks_done.get(user_id, 0)
        row.exceptions_reported = reported.get(user_id, 0)
        row.exceptions_resolved = resolved.get(user_id, 0)
        row.updated_at = now

    all_done = [
        truck for truck in trucks if truck.status == "DONE" and _on_day(truck.completed_at, target_date)
    ]
    day_stats = _completion_stats(all_done)
    trend = db.scalar(select(PerformanceTrend).where(PerformanceTrend.date == target_date))
    trend_created = trend is None
    if trend is None:
        trend = PerformanceTrend(date=target_date, created_at=now)
        db.add(trend)
    trend.total_trucks = sum(1 for truck in trucks if truck.arrival_date == target_date)
    trend.completed_trucks = len(all_done)
    trend.avg_processing_hours = day_stats["avg_hours"]
    trend.total_pallets = day_stats["pallets"]
    trend.avg_efficiency = day_stats["speed"]

    commit_or_raise(db, "KPI refresh")
    logger.info("Refreshed KPI metrics for %s: %d users", target_date.isoformat(), len(user_ids))
    if feed is not None:
        for user_id in user_ids:
            change = ChangeType.UPDATE if user_id in existing else ChangeType.INSERT
            feed.emit("user_kpi_metrics", change, {"user_id": user_id, "metric_date": target_date.isoformat()})
        feed.emit(
            "performance_trends",
            ChangeType.INSERT if trend_created else ChangeType.UPDATE,
            {"date": target_date.isoformat()},
        )
    return len(user_ids)


def _completion_stats(trucks: list[Truck]) -> dict:
    pallets = sum(truck.pallet_count for truck in trucks)
    hours = [
        max(0.0, (as_utc(truck.completed_at) - as_utc(truck.started_at)).total_seconds()) / 3600
        for truck in trucks
        if truck.started_at and truck.completed_at
    ]
    total_hours = sum(hours)
    return {
        "pallets": pallets,
        "avg_pallets": pallets / len(trucks) if trucks else 0.0,
        "avg_hours": total_hours / len(hours) if hours else 0.0,
        "speed": pallets / total_hours if total_hours > 0 else 0.0,
    }
