"""Input checks applied before anything touches the database."""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Optional

from warehouse_ops.errors import ValidationError

_HTML_TAG = re.compile(r"<[^>]*>")
_LICENSE_PLATE = re.compile(r"^[A-Za-z0-9\-\s]+$")


def sanitize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"[<>&\"']", "", _HTML_TAG.sub("", value)).strip()


def validate_license_plate(value: str) -> str:
    if not value or len(value) > 20 or not _LICENSE_PLATE.match(value):
        raise ValidationError(
            "License plate must be 1-20 characters of letters, digits, dashes or spaces"
        )
    return value.strip().upper()


def validate_cargo_description(value: str) -> str:
    if not value or len(value) > 500 or _HTML_TAG.search(value):
        raise ValidationError("Cargo description must be 1-500 characters without HTML")
    return value.strip()


def validate_pallet_count(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= 100:
        raise ValidationError("Pallet count must be a whole number between 1 and 100")
    return value


def validate_task_title(value: str) -> str:
    if not value or not value.strip() or len(value) > 200:
        raise ValidationError("Task title must be 1-200 characters")
    return value.strip()


def validate_task_description(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if len(value) > 1000 or _HTML_TAG.search(value):
        raise ValidationError("Task description must be at most 1000 characters without HTML")
    return value


def validate_arrival_slot(arrival_date: date, arrival_time: time, now: datetime) -> None:
    today = now.date()
    try:
        one_year_ahead = today.replace(year=today.year + 1)
    except ValueError:
        one_year_ahead = today.replace(year=today.year + 1, day=28)
    if not today <= arrival_date <= one_year_ahead:
        raise ValidationError("Arrival date must be between today and one year from now")
    if arrival_date == today:
        slot = datetime.combine(arrival_date, arrival_time)
        if slot < now + timedelta(minutes=2):
            raise ValidationError("Arrival time must be at least 2 minutes from now")
