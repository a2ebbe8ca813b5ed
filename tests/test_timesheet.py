from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from warehouse_ops import kpis, timesheet
from warehouse_ops.db import Base
from warehouse_ops.errors import ValidationError
from warehouse_ops.models import Holiday

# 2026-10-17 is a Saturday, 2026-10-19 a Monday.
SATURDAY_MORNING = datetime(2026, 10, 17, 6, 0, tzinfo=timezone.utc)
MONDAY_MORNING = datetime(2026, 10, 19, 5, 0, tzinfo=timezone.utc)


def _make_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def test_split_hours() -> None:
    assert timesheet.split_hours(10.0, False, False) == (8.0, 2.0)
    assert timesheet.split_hours(6.0, False, False) == (6.0, 0.0)
    assert timesheet.split_hours(3.0, True, False) == (0.0, 3.0)
    assert timesheet.split_hours(3.0, False, True) == (0.0, 3.0)


def test_weekday_overtime_is_pending_approval() -> None:
    db = _make_session()
    timesheet.check_in(db, "u1", now=MONDAY_MORNING)
    entry = timesheet.check_out(db, "u1", now=MONDAY_MORNING.replace(hour=15))
    assert entry.total_hours == 10.0
    assert entry.regular_hours == 8.0
    assert entry.overtime_hours == 2.0
    assert entry.is_weekend is False
    assert entry.approval_status == "pending"
    assert entry.overtime_reason == ["Exceeded 8h regular hours"]


def test_short_weekday_has_no_approval_state() -> None:
    db = _make_session()
    timesheet.check_in(db, "u1", now=MONDAY_MORNING)
    entry = timesheet.check_out(db, "u1", now=MONDAY_MORNING.replace(hour=9))
    assert entry.overtime_hours == 0.0
    assert entry.approval_status is None
    assert entry.overtime_reason == []


def test_weekend_hours_are_all_overtime() -> None:
    db = _make_session()
    timesheet.check_in(db, "u1", now=SATURDAY_MORNING)
    entry = timesheet.check_out(db, "u1", now=SATURDAY_MORNING.replace(hour=10))
    assert entry.regular_hours == 0.0
    assert entry.overtime_hours == 4.0
    assert entry.is_weekend is True
    assert entry.overtime_reason == ["Weekend work"]
    assert timesheet.entry_to_dict(entry)["overtime_display"] == "4h overtime (Weekend)"


def test_holiday_hours_are_all_overtime() -> None:
    db = _make_session()
    db.add(Holiday(date=date(2026, 10, 19), name="Founders Day", is_active=True))
    db.commit()
    timesheet.check_in(db, "u1", now=MONDAY_MORNING)
    entry = timesheet.check_out(db, "u1", now=MONDAY_MORNING.replace(hour=7))
    assert entry.is_holiday is True
    assert entry.overtime_hours == 2.0
    assert entry.overtime_reason == ["Holiday work: Founders Day"]
    assert timesheet.holiday_name_for(db, entry) == "Founders Day"


def test_second_check_in_the_same_day_is_rejected() -> None:
    db = _make_session()
    timesheet.check_in(db, "u1", now=MONDAY_MORNING)
    with pytest.raises(ValidationError):
        timesheet.check_in(db, "u1", now=MONDAY_MORNING.replace(hour=6))
    with pytest.raises(ValidationError):
        timesheet.check_out(db, "u2", now=MONDAY_MORNING)


def test_overtime_decision_and_totals() -> None:
    db = _make_session()
    timesheet.check_in(db, "u1", now=MONDAY_MORNING)
    entry = timesheet.check_out(db, "u1", now=MONDAY_MORNING.replace(hour=15))
    timesheet.check_in(db, "u2", now=MONDAY_MORNING)

    assert [pending.id for pending in timesheet.pending_overtime(db)] == [entry.id]
    approved = timesheet.decide_overtime(db, entry.id, True, "office")
    assert approved.approval_status == "approved"
    assert approved.approved_by_user_id == "office"
    with pytest.raises(ValidationError):
        timesheet.decide_overtime(db, entry.id, False, "office")

    totals = kpis.fetch_time_totals(db, date(2026, 10, 1))
    assert totals.entry_count == 1
    assert totals.total_working_hours == 10.0
