from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from warehouse_ops.db import commit_or_raise
from warehouse_ops.errors import BackendError, NotFoundError, ValidationError
from warehouse_ops.formatting import as_utc, format_processing_time
from warehouse_ops.models import TRUCK_PRIORITIES, Truck
from warehouse_ops.ramps import RAMP_NUMBERS
from warehouse_ops.users import display_name_for
from warehouse_ops.validation import (
    validate_arrival_slot,
    validate_cargo_description,
    validate_license_plate,
    validate_pallet_count,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_truck(db: Session, truck_id: int) -> Truck:
    truck = db.get(Truck, truck_id)
    if truck is None:
        raise NotFoundError("truck not found")
    return truck


def create_truck(
    db: Session,
    license_plate: str,
    arrival_date: date,
    arrival_time: time,
    cargo_description: str,
    pallet_count: int,
    created_by_user_id: str,
    now: datetime,
    priority: str = "NORMAL",
    ramp_number: Optional[int] = None,
) -> Truck:
    """Validate and store a new truck in SCHEDULED.

    ``now`` is warehouse-local wall-clock time, the same clock arrival slots
    are written in.
    """
    plate = validate_license_plate(license_plate)
    cargo = validate_cargo_description(cargo_description)
    pallets = validate_pallet_count(pallet_count)
    validate_arrival_slot(arrival_date, arrival_time, now)
    if priority not in TRUCK_PRIORITIES:
        raise ValidationError(f"Priority must be one of {', '.join(TRUCK_PRIORITIES)}")
    if ramp_number is not None:
        _check_ramp(ramp_number)

    stamp = _now()
    truck = Truck(
        license_plate=plate,
        arrival_date=arrival_date,
        arrival_time=arrival_time,
        cargo_description=cargo,
        pallet_count=pallets,
        priority=priority,
        ramp_number=ramp_number,
        status="SCHEDULED",
        created_by_user_id=created_by_user_id,
        is_overdue=False,
        reschedule_count=0,
        created_at=stamp,
        updated_at=stamp,
    )
    db.add(truck)
    commit_or_raise(db, "Creating truck")
    db.refresh(truck)
    logger.info("Scheduled truck %s for %s %s", truck.license_plate, arrival_date, arrival_time)
    return truck


def list_trucks(
    db: Session,
    role: Optional[str] = None,
    status: Optional[str] = None,
    arrival_date: Optional[date] = None,
) -> list[Truck]:
    query = select(Truck)
    if role == "WAREHOUSE_STAFF":
        query = query.where(Truck.status != "DONE")
    if status is not None:
        query = query.where(Truck.status == status)
    if arrival_date is not None:
        query = query.where(Truck.arrival_date == arrival_date)
    query = query.order_by(Truck.arrival_date, Truck.arrival_time, Truck.id)
    try:
        return list(db.scalars(query).all())
    except SQLAlchemyError as exc:
        logger.error("Truck list failed: %s", exc)
        raise BackendError("Error fetching trucks") from exc


def start_handling(db: Session, truck_id: int, user_id: str) -> Truck:
    truck = get_truck(db, truck_id)
    if truck.status != "ARRIVED":
        raise ValidationError(f"Truck cannot be started from status {truck.status}")
    stamp = _now()
    truck.status = "IN_PROGRESS"
    truck.started_at = stamp
    truck.handled_by_user_id = user_id
    truck.handled_by_name = display_name_for(db, user_id)
    truck.updated_at = stamp
    commit_or_raise(db, "Starting truck")
    db.refresh(truck)
    return truck


def complete_truck(db: Session, truck_id: int, user_id: str) -> Truck:
    truck = get_truck(db, truck_id)
    if truck.status != "IN_PROGRESS":
        raise ValidationError(f"Truck cannot be completed from status {truck.status}")
    stamp = _now()
    truck.status = "DONE"
    truck.completed_at = stamp
    if truck.handled_by_user_id is None:
        truck.handled_by_user_id = user_id
        truck.handled_by_name = display_name_for(db, user_id)
    truck.updated_at = stamp
    commit_or_raise(db, "Completing truck")
    db.refresh(truck)
    return truck


def _check_ramp(ramp_number: int) -> None:
    if ramp_number not in RAMP_NUMBERS:
        raise ValidationError("Ramp number must be between 1 and 13")


def assign_ramp(
    db: Session, truck_id: int, ramp_number: int, staff_id: Optional[str] = None
) -> Truck:
    _check_ramp(ramp_number)
    truck = get_truck(db, truck_id)
    truck.ramp_number = ramp_number
    if staff_id is not None:
        truck.assigned_staff_id = staff_id
        truck.assigned_staff_name = display_name_for(db, staff_id)
    truck.updated_at = _now()
    commit_or_raise(db, "Assigning ramp")
    db.refresh(truck)
    return truck


def reschedule_truck(
    db: Session, truck_id: int, arrival_date: date, arrival_time: time, now: datetime
) -> Truck:
    truck = get_truck(db, truck_id)
    if truck.status != "SCHEDULED":
        raise ValidationError("Only scheduled trucks can be rescheduled")
    validate_arrival_slot(arrival_date, arrival_time, now)
    truck.original_arrival_date = truck.original_arrival_date or truck.arrival_date
    truck.arrival_date = arrival_date
    truck.arrival_time = arrival_time
    truck.reschedule_count = (truck.reschedule_count or 0) + 1
    truck.is_overdue = False
    truck.overdue_marked_at = None
    truck.updated_at = _now()
    commit_or_raise(db, "Rescheduling truck")
    db.refresh(truck)
    return truck


def truck_to_dict(truck: Truck) -> dict:
    return {
        "truck_id": truck.id,
        "license_plate": truck.license_plate,
        "arrival_date": truck.arrival_date.isoformat(),
        "arrival_time": truck.arrival_time.strftime("%H:%M:%S"),
        "cargo_description": truck.cargo_description,
        "pallet_count": truck.pallet_count,
        "status": truck.status,
        "priority": truck.priority,
        "ramp_number": truck.ramp_number,
        "assigned_staff_id": truck.assigned_staff_id,
        "assigned_staff_name": truck.assigned_staff_name,
        "handled_by_user_id": truck.handled_by_user_id,
        "handled_by_name": truck.handled_by_name,
        "created_by_user_id": truck.created_by_user_id,
        "started_at": as_utc(truck.started_at).isoformat() if truck.started_at else None,
        "completed_at": as_utc(truck.completed_at).isoformat() if truck.completed_at else None,
        "processing_time": format_processing_time(truck.started_at, truck.completed_at),
        "is_overdue": truck.is_overdue,
        "original_arrival_date": (
            truck.original_arrival_date.isoformat() if truck.original_arrival_date else None
        ),
        "actual_arrival_date": (
            truck.actual_arrival_date.isoformat() if truck.actual_arrival_date else None
        ),
        "reschedule_count": truck.reschedule_count,
        "late_arrival_reason": truck.late_arrival_reason,
    }
