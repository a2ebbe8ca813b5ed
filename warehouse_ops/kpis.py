"""KPI aggregation over per-user daily metric rows, live trucks and time entries.

Two summary shapes exist and the caller picks one explicitly:
``fetch_all_staff_summary`` for the whole team and ``fetch_user_summary`` for
a single user. A fetch either returns a complete summary or raises
``BackendError``; partially aggregated data is never handed back.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warehouse_ops.config import local_day_start
from warehouse_ops.errors import BackendError
from warehouse_ops.models import PerformanceTrend, Profile, TimeEntry, Truck, UserKPIMetric

logger = logging.getLogger(__name__)

TrendDate = date

SUM_FIELDS = (
    "total_trucks_handled",
    "completed_trucks",
    "total_pallets_handled",
    "exceptions_reported",
    "exceptions_resolved",
    "tasks_completed",
)
AVERAGE_FIELDS = (
    "avg_processing_hours",
    "avg_pallets_per_truck",
    "avg_unloading_speed_pallets_per_hour",
)


class UserKPISummary(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    total_trucks_handled: int = 0
    completed_trucks: int = 0
    total_pallets_handled: int = 0
    exceptions_reported: int = 0
    exceptions_resolved: int = 0
    tasks_completed: int = 0
    avg_processing_hours: float = 0.0
    avg_pallets_per_truck: float = 0.0
    avg_unloading_speed_pallets_per_hour: float = 0.0
    row_count: int = 0


class TimeTotals(BaseModel):
    total_working_hours: float = 0.0
    overtime_hours: float = 0.0
    regular_hours: float = 0.0
    entry_count: int = 0


class TruckCounts(BaseModel):
    total_trucks: int = 0
    completed_trucks: int = 0
    in_progress_trucks: int = 0
    arrived_trucks: int = 0
    scheduled_trucks: int = 0
    urgent_trucks: int = 0
    high_priority_trucks: int = 0
    normal_priority_trucks: int = 0
    low_priority_trucks: int = 0


class AllStaffKPISummary(BaseModel):
    scope: Literal["all_staff"] = "all_staff"
    period_days: int
    since: date
    users: list[UserKPISummary]
    trucks: TruckCounts
    time: TimeTotals
    tasks_completed: int
    avg_processing_hours: float


class SingleUserKPISummary(BaseModel):
    scope: Literal["single_user"] = "single_user"
    period_days: int
    since: date
    user_id: str
    metrics: UserKPISummary
    trucks: TruckCounts
    time: TimeTotals


KPISummary = Annotated[
    Union[AllStaffKPISummary, SingleUserKPISummary], Field(discriminator="scope")
]


class TrendPoint(BaseModel):
    date: TrendDate
    total_trucks: int = 0
    completed_trucks: int = 0
    avg_processing_hours: float = 0.0
    total_pallets: int = 0
    avg_efficiency: float = 0.0


def running_mean(current: float, count: int, value: float) -> float:
    return (current * count + value) / (count + 1)


def fold_user_metrics(
    rows: Iterable[Any],
    profiles: Optional[dict[str, Any]] = None,
) -> list[UserKPISummary]:
    """Fold per-day metric rows into one summary per user.

    Counters are summed. Averages use a running mean with every row weighted
    equally, whatever number of trucks the row itself summarises.
    """
    profiles = profiles or {}
    folded: dict[str, UserKPISummary] = {}
    for row in rows:
        summary = folded.get(row.user_id)
        if summary is None:
            profile = profiles.get(row.user_id)
            summary = UserKPISummary(
                user_id=row.user_id,
                display_name=getattr(profile, "display_name", None),
                email=getattr(profile, "email", None),
            )
            folded[row.user_id] = summary
        for field in SUM_FIELDS:
            setattr(summary, field, getattr(summary, field) + (getattr(row, field) or 0))
        for field in AVERAGE_FIELDS:
            value = float(getattr(row, field) or 0)
            setattr(summary, field, running_mean(getattr(summary, field), summary.row_count, value))
        summary.row_count += 1
    return list(folded.values())


def summarize_time_entries(entries: Iterable[Any]) -> TimeTotals:
    totals = TimeTotals()
    for entry in entries:
        # Open entries may carry a provisional total; they never count.
        if entry.check_out_time is None:
            continue
        totals.total_working_hours += float(entry.total_hours or 0)
        totals.overtime_hours += float(entry.overtime_hours or 0)
        totals.regular_hours += float(entry.regular_hours or 0)
        totals.entry_count += 1
    return totals


def count_truck_states(trucks: Iterable[Any]) -> TruckCounts:
    counts = TruckCounts()
    for truck in trucks:
        counts.total_trucks += 1
        if truck.status == "DONE":
            counts.completed_trucks += 1
        elif truck.status == "IN_PROGRESS":
            counts.in_progress_trucks += 1
        elif truck.status == "ARRIVED":
            counts.arrived_trucks += 1
        elif truck.status == "SCHEDULED":
            counts.scheduled_trucks += 1
        if truck.priority == "URGENT":
            counts.urgent_trucks += 1
        elif truck.priority == "HIGH":
            counts.high_priority_trucks += 1
        elif truck.priority == "NORMAL":
            counts.normal_priority_trucks += 1
        elif truck.priority == "LOW":
            counts.low_priority_trucks += 1
    return counts


def window_start(today: date, period_days: int) -> date:
    return today - timedelta(days=period_days)


def _profiles_by_user(db: Session, user_ids: Iterable[str]) -> dict[str, Profile]:
    user_ids = list(set(user_ids))
    if not user_ids:
        return {}
    rows = db.scalars(select(Profile).where(Profile.user_id.in_(user_ids))).all()
    return {profile.user_id: profile for profile in rows}


def fetch_all_staff_summary(db: Session, period_days: int, today: date) -> AllStaffKPISummary:
    since = window_start(today, period_days)
    try:
        rows = db.scalars(
            select(UserKPIMetric)
            .where(UserKPIMetric.metric_date >= since)
            .order_by(UserKPIMetric.user_id, UserKPIMetric.metric_date)
        ).all()
        profiles = _profiles_by_user(db, (row.user_id for row in rows))
        trucks = db.scalars(select(Truck)).all()
        entries = db.scalars(
            select(TimeEntry).where(TimeEntry.check_in_time >= local_day_start(since))
        ).all()
    except SQLAlchemyError as exc:
        logger.error("All-staff KPI fetch failed: %s", exc)
        raise BackendError("Error fetching KPI data") from exc

    users = fold_user_metrics(rows, profiles)
    users.sort(key=lambda summary: summary.total_trucks_handled, reverse=True)
    processed = [user for user in users if user.row_count]
    avg_hours = (
        sum(user.avg_processing_hours for user in processed) / len(processed) if processed else 0.0
    )
    logger.debug("Folded %d metric rows into %d user summaries", len(rows), len(users))
    return AllStaffKPISummary(
        period_days=period_days,
        since=since,
        users=users,
        trucks=count_truck_states(trucks),
        time=summarize_time_entries(entries),
        tasks_completed=sum(user.tasks_completed for user in users),
        avg_processing_hours=avg_hours,
    )


def fetch_user_summary(
    db: Session, user_id: str, period_days: int, today: date
) -> SingleUserKPISummary:
    since = window_start(today, period_days)
    try:
        rows = db.scalars(
            select(UserKPIMetric)
            .where(UserKPIMetric.user_id == user_id, UserKPIMetric.metric_date >= since)
            .order_by(UserKPIMetric.metric_date)
        ).all()
        profiles = _profiles_by_user(db, [user_id])
        # Present-moment counts come from the live truck table, not the metrics rows.
        trucks = db.scalars(select(Truck).where(Truck.handled_by_user_id == user_id)).all()
        entries = db.scalars(
            select(TimeEntry).where(
                TimeEntry.user_id == user_id,
                TimeEntry.check_in_time >= local_day_start(since),
            )
        ).all()
    except SQLAlchemyError as exc:
        logger.error("KPI fetch for user %s failed: %s", user_id, exc)
        raise BackendError("Error fetching user KPI data") from exc

    folded = fold_user_metrics(rows, profiles)
    if folded:
        metrics = folded[0]
    else:
        profile = profiles.get(user_id)
        metrics = UserKPISummary(
            user_id=user_id,
            display_name=getattr(profile, "display_name", None),
            email=getattr(profile, "email", None),
        )
    return SingleUserKPISummary(
        period_days=period_days,
        since=since,
        user_id=user_id,
        metrics=metrics,
        trucks=count_truck_states(trucks),
        time=summarize_time_entries(entries),
    )


def fetch_time_totals(
    db: Session, since: date, user_id: Optional[str] = None
) -> TimeTotals:
    query = select(TimeEntry).where(TimeEntry.check_in_time >= local_day_start(since))
    if user_id is not None:
        query = query.where(TimeEntry.user_id == user_id)
    try:
        entries = db.scalars(query).all()
    except SQLAlchemyError as exc:
        logger.error("Time totals fetch failed: %s", exc)
        raise BackendError("Error fetching time entries") from exc
    return summarize_time_entries(entries)


def fetch_trends(db: Session, days: int, today: date) -> list[TrendPoint]:
    since = window_start(today, days)
    try:
        rows = db.scalars(
            select(PerformanceTrend)
            .where(PerformanceTrend.date >= since)
            .order_by(PerformanceTrend.date)
        ).all()
    except SQLAlchemyError as exc:
        logger.error("Trend fetch failed: %s", exc)
        raise BackendError("Error fetching trends") from exc
    return [
        TrendPoint(
            date=row.date,
            total_trucks=row.total_trucks or 0,
            completed_trucks=row.completed_trucks or 0,
            avg_processing_hours=row.avg_processing_hours or 0.0,
            total_pallets=row.total_pallets or 0,
            avg_efficiency=row.avg_efficiency or 0.0,
        )
        for row in rows
    ]
