"""Ramp occupancy, derived on every call from the current truck list.

Nothing here is stored. A ramp is OCCUPIED when a truck on it has arrived or
is being handled, SCHEDULED when a not-yet-due truck is booked on it, and
AVAILABLE otherwise. Occupancy ends at the nominal slot window (arrival + 50
minutes by default), not at the truck's real status timestamps.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

from warehouse_ops.config import settings

OCCUPYING_STATUSES = ("ARRIVED", "IN_PROGRESS")


class RampKind(str, Enum):
    UNLOADING = "Unloading"
    LOADING = "Loading"


class RampState(str, Enum):
    AVAILABLE = "AVAILABLE"
    SCHEDULED = "SCHEDULED"
    OCCUPIED = "OCCUPIED"


@dataclass(frozen=True)
class Ramp:
    number: int
    kind: RampKind


RAMPS: tuple[Ramp, ...] = tuple(
    Ramp(number, RampKind.UNLOADING if number <= 7 else RampKind.LOADING)
    for number in range(1, 14)
)
RAMP_NUMBERS = frozenset(ramp.number for ramp in RAMPS)


@dataclass(frozen=True)
class RampStatus:
    ramp: Ramp
    state: RampState
    truck_id: Optional[int] = None
    license_plate: Optional[str] = None
    at: Optional[datetime] = None
    display_time: Optional[str] = None
    usage_count: int = 0
    usage_level: str = "low"

    def as_dict(self) -> dict:
        return {
            "ramp_number": self.ramp.number,
            "ramp_type": self.ramp.kind.value,
            "state": self.state.value,
            "truck_id": self.truck_id,
            "license_plate": self.license_plate,
            "at": self.at.isoformat() if self.at else None,
            "display_time": self.display_time,
            "usage_count": self.usage_count,
            "usage_level": self.usage_level,
        }


def arrival_at(truck: Any) -> datetime:
    return datetime.combine(truck.arrival_date, truck.arrival_time)


def vacate_time(truck: Any, slot_minutes: Optional[int] = None) -> datetime:
    minutes = settings.slot_minutes if slot_minutes is None else slot_minutes
    return arrival_at(truck) + timedelta(minutes=minutes)


def find_occupying_truck(trucks: Iterable[Any], ramp_number: int) -> Optional[Any]:
    # More than one match is bad input; the first in list order wins.
    for truck in trucks:
        if truck.ramp_number == ramp_number and truck.status in OCCUPYING_STATUSES:
            return truck
    return None


def find_next_truck(trucks: Iterable[Any], ramp_number: int, now: datetime) -> Optional[Any]:
    upcoming = [
        truck
        for truck in trucks
        if truck.ramp_number == ramp_number
        and truck.status != "DONE"
        and arrival_at(truck) > now
    ]
    if not upcoming:
        return None
    return min(upcoming, key=arrival_at)


def usage_count(trucks: Iterable[Any], ramp_number: int, day: date) -> int:
    return sum(1 for truck in trucks if truck.ramp_number == ramp_number and truck.arrival_date == day)


def usage_level(count: int) -> str:
    if count >= 6:
        return "very_high"
    if count >= 4:
        return "high"
    if count >= 2:
        return "medium"
    return "low"


def resolve_ramp(
    trucks: Sequence[Any],
    ramp: Ramp,
    now: datetime,
    slot_minutes: Optional[int] = None,
) -> RampStatus:
    count = usage_count(trucks, ramp.number, now.date())
    level = usage_level(count)

    current = find_occupying_truck(trucks, ramp.number)
    if current is not None:
        until = vacate_time(current, slot_minutes)
        return RampStatus(
            ramp=ramp,
            state=RampState.OCCUPIED,
            truck_id=current.id,
            license_plate=current.license_plate,
            at=until,
            display_time=until.strftime("%H:%M") if until > now else "Now",
            usage_count=count,
            usage_level=level,
        )

    upcoming = find_next_truck(trucks, ramp.number, now)
    if upcoming is not None:
        starts = arrival_at(upcoming)
        return RampStatus(
            ramp=ramp,
            state=RampState.SCHEDULED,
            truck_id=upcoming.id,
            license_plate=upcoming.license_plate,
            at=starts,
            display_time=starts.strftime("%H:%M"),
            usage_count=count,
            usage_level=level,
        )

    return RampStatus(ramp=ramp, state=RampState.AVAILABLE, usage_count=count, usage_level=level)


def resolve_all(
    trucks: Sequence[Any],
    now: datetime,
    slot_minutes: Optional[int] = None,
) -> list[RampStatus]:
    trucks = list(trucks)
    return [resolve_ramp(trucks, ramp, now, slot_minutes) for ramp in RAMPS]


def get_ramp(number: int) -> Ramp:
    for ramp in RAMPS:
        if ramp.number == number:
            return ramp
    raise KeyError(number)
