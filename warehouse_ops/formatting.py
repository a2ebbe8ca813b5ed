"""Display helpers for hour totals and truck processing times."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_hours_display(hours: float) -> str:
    if hours == 0:
        return "0 min"
    if hours < 1:
        return f"{_round_half_up(hours * 60)} min"
    whole_hours = math.floor(hours)
    remaining_minutes = _round_half_up((hours - whole_hours) * 60)
    if remaining_minutes == 0:
        return f"{whole_hours}h"
    return f"{whole_hours}h {remaining_minutes}m"


def format_hours_to_time(hours: float) -> str:
    whole_hours = math.floor(hours)
    minutes = _round_half_up((hours - whole_hours) * 60)
    return f"{whole_hours}:{minutes:02d}"


def overtime_description(
    overtime_hours: float,
    is_weekend: bool,
    is_holiday: bool,
    holiday_name: Optional[str] = None,
) -> str:
    if overtime_hours == 0:
        return ""
    formatted = format_hours_display(overtime_hours)
    if is_holiday and holiday_name:
        return f"{formatted} overtime ({holiday_name})"
    if is_weekend:
        return f"{formatted} overtime (Weekend)"
    return f"{formatted} overtime"


@dataclass(frozen=True)
class ProcessingTime:
    hours: int
    minutes: int
    total_hours: float


def processing_hours(
    started_at: Optional[datetime],
    completed_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[ProcessingTime]:
    if started_at is None:
        return None
    start = as_utc(started_at)
    end = as_utc(completed_at) if completed_at else as_utc(now or datetime.now(timezone.utc))
    total = max(0.0, (end - start).total_seconds()) / 3600
    whole = math.floor(total)
    return ProcessingTime(hours=whole, minutes=math.floor((total - whole) * 60), total_hours=total)


def format_processing_time(
    started_at: Optional[datetime],
    completed_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> str:
    processing = processing_hours(started_at, completed_at, now)
    if processing is None:
        return "Not started"
    if completed_at:
        return f"{processing.total_hours:.1f}h"
    return f"{processing.total_hours:.1f}h (ongoing)"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
