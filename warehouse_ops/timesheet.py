"""Check-in/check-out time tracking with overtime classification.

Weekends and active holidays make every worked hour overtime. On other days
the first ``regular_hours_per_day`` hours are regular and the rest overtime.
Any overtime puts the entry in the "pending" approval state.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from warehouse_ops.config import local_day_start, settings
from warehouse_ops.db import commit_or_raise
from warehouse_ops.errors import NotFoundError, ValidationError
from warehouse_ops.formatting import as_utc, format_hours_display, overtime_description
from warehouse_ops.models import Holiday, TimeEntry

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _local_day(value: datetime) -> date:
    return as_utc(value).astimezone(ZoneInfo(settings.timezone)).date()


def _local_day_bounds(day: date) -> tuple[datetime, datetime]:
    return local_day_start(day), local_day_start(day + timedelta(days=1))


def holiday_on(db: Session, day: date) -> Optional[Holiday]:
    return db.scalar(select(Holiday).where(Holiday.date == day, Holiday.is_active.is_(True)))


def split_hours(
    total_hours: float, is_weekend: bool, is_holiday: bool, regular_limit: Optional[float] = None
) -> tuple[float, float]:
    """Return ``(regular, overtime)`` for a day's total."""
    if is_weekend or is_holiday:
        return 0.0, total_hours
    limit = settings.regular_hours_per_day if regular_limit is None else regular_limit
    regular = min(total_hours, limit)
    return regular, total_hours - regular


def overtime_reasons(
    overtime_hours: float, is_weekend: bool, holiday: Optional[Holiday]
) -> list[str]:
    if overtime_hours <= 0:
        return []
    if holiday is not None:
        return [f"Holiday work: {holiday.name}"]
    if is_weekend:
        return ["Weekend work"]
    return [f"Exceeded {format_hours_display(settings.regular_hours_per_day)} regular hours"]


def open_entry(db: Session, user_id: str) -> Optional[TimeEntry]:
    return db.scalar(
        select(TimeEntry)
        .where(TimeEntry.user_id == user_id, TimeEntry.check_out_time.is_(None))
        .order_by(TimeEntry.check_in_time.desc())
    )


def check_in(db: Session, user_id: str, now: Optional[datetime] = None) -> TimeEntry:
    now = now or _now()
    start, end = _local_day_bounds(_local_day(now))
    already_open = db.scalar(
        select(TimeEntry).where(
            TimeEntry.user_id == user_id,
            TimeEntry.check_out_time.is_(None),
            TimeEntry.check_in_time >= start,
            TimeEntry.check_in_time < end,
        )
    )
    if already_open is not None:
        raise ValidationError("You are already checked in today")
    entry = TimeEntry(user_id=user_id, check_in_time=now, created_at=now, updated_at=now)
    db.add(entry)
    commit_or_raise(db, "Check-in")
    db.refresh(entry)
    logger.info("User %s checked in", user_id)
    return entry


def check_out(db: Session, user_id: str, now: Optional[datetime] = None) -> TimeEntry:
    now = now or _now()
    entry = open_entry(db, user_id)
    if entry is None:
        raise ValidationError("You are not checked in")
    day = _local_day(entry.check_in_time)
    total = max(0.0, (as_utc(now) - as_utc(entry.check_in_time)).total_seconds()) / 3600
    holiday = holiday_on(db, day)
    is_weekend = day.weekday() >= 5
    regular, overtime = split_hours(total, is_weekend, holiday is not None)

    entry.check_out_time = now
    entry.total_hours = round(total, 2)
    entry.regular_hours = round(regular, 2)
    entry.overtime_hours = round(overtime, 2)
    entry.is_weekend = is_weekend
    entry.is_holiday = holiday is not None
    entry.overtime_reason = overtime_reasons(overtime, is_weekend, holiday)
    entry.approval_status = "pending" if overtime > 0 else None
    entry.updated_at = now
    commit_or_raise(db, "Check-out")
    db.refresh(entry)
    logger.info("User %s checked out after %s", user_id, format_hours_display(total))
    return entry


def current_status(db: Session, user_id: str) -> dict:
    entry = open_entry(db, user_id)
    return {
        "user_id": user_id,
        "checked_in": entry is not None,
        "check_in_time": as_utc(entry.check_in_time).isoformat() if entry else None,
    }


def list_entries(
    db: Session, user_id: Optional[str] = None, since: Optional[date] = None, limit: int = 50
) -> list[TimeEntry]:
    query = select(TimeEntry)
    if user_id is not None:
        query = query.where(TimeEntry.user_id == user_id)
    if since is not None:
        query = query.where(TimeEntry.check_in_time >= _local_day_bounds(since)[0])
    return list(db.scalars(query.order_by(TimeEntry.check_in_time.desc()).limit(limit)).all())


def pending_overtime(db: Session) -> list[TimeEntry]:
    return list(
        db.scalars(
            select(TimeEntry)
            .where(TimeEntry.approval_status == "pending")
            .order_by(TimeEntry.check_in_time)
        ).all()
    )


def decide_overtime(db: Session, entry_id: int, approved: bool, approver_id: str) -> TimeEntry:
    entry = db.get(TimeEntry, entry_id)
    if entry is None:
        raise NotFoundError("time entry not found")
    if entry.approval_status != "pending":
        raise ValidationError("Only pending overtime can be approved or rejected")
    entry.approval_status = "approved" if approved else "rejected"
    entry.approved_by_user_id = approver_id
    entry.updated_at = _now()
    commit_or_raise(db, "Overtime decision")
    db.refresh(entry)
    return entry


def entry_to_dict(entry: TimeEntry, holiday_name: Optional[str] = None) -> dict:
    overtime = entry.overtime_hours or 0.0
    return {
        "entry_id": entry.id,
        "user_id": entry.user_id,
        "check_in_time": as_utc(entry.check_in_time).isoformat(),
        "check_out_time": as_utc(entry.check_out_time).isoformat() if entry.check_out_time else None,
        "total_hours": entry.total_hours,
        "regular_hours": entry.regular_hours,
        "overtime_hours": entry.overtime_hours,
        "total_display": format_hours_display(entry.total_hours or 0.0),
        "overtime_display": overtime_description(
            overtime, bool(entry.is_weekend), bool(entry.is_holiday), holiday_name
        ),
        "is_weekend": entry.is_weekend,
        "is_holiday": entry.is_holiday,
        "overtime_reason": entry.overtime_reason or [],
        "approval_status": entry.approval_status,
        "approved_by_user_id": entry.approved_by_user_id,
    }


def holiday_name_for(db: Session, entry: TimeEntry) -> Optional[str]:
    if not entry.is_holiday:
        return None
    holiday = holiday_on(db, _local_day(entry.check_in_time))
    return holiday.name if holiday else None
