from datetime import date as date_type
from datetime import datetime, time

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Time,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from warehouse_ops.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")

TRUCK_STATUSES = ("SCHEDULED", "ARRIVED", "IN_PROGRESS", "DONE")
TRUCK_PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")
TASK_STATUSES = ("PENDING", "IN_PROGRESS", "COMPLETED")
TASK_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")
EXCEPTION_STATUSES = ("PENDING", "IN_PROGRESS", "RESOLVED", "ESCALATED")
USER_ROLES = ("WAREHOUSE_STAFF", "OFFICE_ADMIN", "SUPER_ADMIN")
DEFAULT_ROLE = "WAREHOUSE_STAFF"


class AuthUser(Base):
    __tablename__ = "auth_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    email_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_metadata: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    profile: Mapped["Profile"] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False
    )
    roles: Mapped[list["UserRoleAssignment"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("auth_users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    email: Mapped[str | None] = mapped_column(Text)
    display_name: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped[AuthUser] = relationship(back_populates="profile")


class UserRoleAssignment(Base):
    __tablename__ = "user_roles"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("auth_users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(Text, nullable=False, default=DEFAULT_ROLE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped[AuthUser] = relationship(back_populates="roles")


class ApprovedUser(Base):
    __tablename__ = "approved_users"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    role: Mapped[str] = mapped_column(Text, nullable=False, default=DEFAULT_ROLE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Truck(Base):
    __tablename__ = "trucks"
    __table_args__ = (
        Index("ix_trucks_arrival", "arrival_date", "arrival_time"),
        Index("ix_trucks_ramp_status", "ramp_number", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    license_plate: Mapped[str] = mapped_column(Text, nullable=False)
    arrival_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    arrival_time: Mapped[time] = mapped_column(Time, nullable=False)
    cargo_description: Mapped[str] = mapped_column(Text, nullable=False)
    pallet_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="SCHEDULED")
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="NORMAL")
    ramp_number: Mapped[int | None] = mapped_column(Integer)
    assigned_staff_id: Mapped[str | None] = mapped_column(String(36))
    assigned_staff_name: Mapped[str | None] = mapped_column(Text)
    handled_by_user_id: Mapped[str | None] = mapped_column(String(36))
    handled_by_name: Mapped[str | None] = mapped_column(Text)
    created_by_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_overdue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_arrival_date: Mapped[date_type | None] = mapped_column(Date)
    actual_arrival_date: Mapped[date_type | None] = mapped_column(Date)
    overdue_marked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reschedule_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    late_arrival_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="PENDING")
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="MEDIUM")
    assigned_to_user_id: Mapped[str | None] = mapped_column(String(36))
    assigned_to_name: Mapped[str | None] = mapped_column(Text)
    truck_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("trucks.id"))
    due_date: Mapped[date_type | None] = mapped_column(Date)
    created_by_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    completed_by_user_id: Mapped[str | None] = mapped_column(String(36))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completion_comment: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TimeEntry(Base):
    __tablename__ = "time_entries"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    check_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    check_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    regular_hours: Mapped[float | None] = mapped_column(Float)
    overtime_hours: Mapped[float | None] = mapped_column(Float)
    total_hours: Mapped[float | None] = mapped_column(Float)
    is_weekend: Mapped[bool | None] = mapped_column(Boolean)
    is_holiday: Mapped[bool | None] = mapped_column(Boolean)
    overtime_reason: Mapped[list | None] = mapped_column(JSON_TYPE)
    approval_status: Mapped[str | None] = mapped_column(Text)
    approved_by_user_id: Mapped[str | None] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TruckException(Base):
    __tablename__ = "truck_exceptions"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    truck_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("trucks.id"), nullable=False)
    exception_type: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="MEDIUM")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="PENDING")
    reported_by_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    resolved_by_user_id: Mapped[str | None] = mapped_column(String(36))
    estimated_resolution_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    actual_resolution_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    truck: Mapped[Truck] = relationship()


class UserKPIMetric(Base):
    __tablename__ = "user_kpi_metrics"
    __table_args__ = (
        Index("ix_user_kpi_metrics_user_date", "user_id", "metric_date", unique=True),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    metric_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    total_trucks_handled: Mapped[int | None] = mapped_column(Integer, default=0)
    completed_trucks: Mapped[int | None] = mapped_column(Integer, default=0)
    avg_processing_hours: Mapped[float | None] = mapped_column(Float)
    tasks_completed: Mapped[int | None] = mapped_column(Integer, default=0)
    exceptions_reported: Mapped[int | None] = mapped_column(Integer, default=0)
    exceptions_resolved: Mapped[int | None] = mapped_column(Integer, default=0)
    total_pallets_handled: Mapped[int | None] = mapped_column(Integer, default=0)
    avg_pallets_per_truck: Mapped[float | None] = mapped_column(Float)
    avg_unloading_speed_pallets_per_hour: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PerformanceTrend(Base):
    __tablename__ = "performance_trends"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False, unique=True)
    total_trucks: Mapped[int | None] = mapped_column(Integer)
    completed_trucks: Mapped[int | None] = mapped_column(Integer)
    avg_processing_hours: Mapped[float | None] = mapped_column(Float)
    total_pallets: Mapped[int | None] = mapped_column(Integer)
    avg_efficiency: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class TruckPhoto(Base):
    __tablename__ = "truck_completion_photos"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    truck_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("trucks.id"), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_kb: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded_by_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
