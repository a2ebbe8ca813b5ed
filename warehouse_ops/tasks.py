from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from warehouse_ops.db import commit_or_raise
from warehouse_ops.errors import NotFoundError, ValidationError
from warehouse_ops.formatting import as_utc
from warehouse_ops.models import TASK_PRIORITIES, TASK_STATUSES, Task, Truck
from warehouse_ops.users import display_name_for
from warehouse_ops.validation import sanitize_text, validate_task_description, validate_task_title

logger = logging.getLogger(__name__)

LIST_LIMIT = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_task(
    db: Session,
    title: str,
    created_by_user_id: str,
    description: Optional[str] = None,
    priority: str = "MEDIUM",
    truck_id: Optional[int] = None,
    due_date: Optional[date] = None,
) -> Task:
    title = validate_task_title(title)
    description = validate_task_description(description)
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"Priority must be one of {', '.join(TASK_PRIORITIES)}")
    if truck_id is not None and db.get(Truck, truck_id) is None:
        raise NotFoundError("truck not found")
    stamp = _now()
    task = Task(
        title=title,
        description=description,
        priority=priority,
        status="PENDING",
        truck_id=truck_id,
        due_date=due_date,
        created_by_user_id=created_by_user_id,
        created_at=stamp,
        updated_at=stamp,
    )
    db.add(task)
    commit_or_raise(db, "Creating task")
    db.refresh(task)
    return task


def list_tasks(db: Session, status: Optional[str] = None) -> list[Task]:
    query = select(Task)
    if status is not None:
        query = query.where(Task.status == status)
    query = query.order_by(Task.created_at.desc(), Task.id.desc()).limit(LIST_LIMIT)
    return list(db.scalars(query).all())


def update_task_status(
    db: Session,
    task_id: int,
    status: str,
    user_id: str,
    comment: Optional[str] = None,
) -> Task:
    if status not in TASK_STATUSES:
        raise ValidationError(f"Status must be one of {', '.join(TASK_STATUSES)}")
    task = db.get(Task, task_id)
    if task is None:
        raise NotFoundError("task not found")
    stamp = _now()
    task.status = status
    task.updated_at = stamp
    if status == "IN_PROGRESS":
        task.assigned_to_user_id = user_id
        task.assigned_to_name = display_name_for(db, user_id)
    elif status == "COMPLETED":
        task.completed_at = stamp
        task.completed_by_user_id = user_id
        task.completion_comment = sanitize_text(comment) or None
    commit_or_raise(db, "Updating task")
    db.refresh(task)
    logger.info("Task %s moved to %s by %s", task.id, status, user_id)
    return task


def task_to_dict(task: Task) -> dict:
    return {
        "task_id": task.id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "assigned_to_user_id": task.assigned_to_user_id,
        "assigned_to_name": task.assigned_to_name,
        "truck_id": task.truck_id,
        "due_date": task.due_date.isoformat() if task.due_date else None,
        "created_by_user_id": task.created_by_user_id,
        "completed_by_user_id": task.completed_by_user_id,
        "completed_at": as_utc(task.completed_at).isoformat() if task.completed_at else None,
        "completion_comment": task.completion_comment,
        "created_at": as_utc(task.created_at).isoformat(),
    }
