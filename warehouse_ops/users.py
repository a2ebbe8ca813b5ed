from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import bcrypt
from sqlalchemy import select
from sqlalchemy.orm import Session

from warehouse_ops.errors import ValidationError
from warehouse_ops.models import DEFAULT_ROLE, AuthUser, Profile, UserRoleAssignment


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def create_identity(
    db: Session,
    email: str,
    password: str,
    metadata: Optional[dict] = None,
    email_confirmed: bool = True,
) -> AuthUser:
    """Create an auth identity with its profile and the default role.

    The caller owns the transaction.
    """
    email = email.strip().lower()
    if db.scalar(select(AuthUser).where(AuthUser.email == email)) is not None:
        raise ValidationError("A user with this email address has already been registered")
    now = _now()
    user = AuthUser(
        id=str(uuid.uuid4()),
        email=email,
        password_hash=hash_password(password),
        email_confirmed=email_confirmed,
        user_metadata=metadata or {},
        created_at=now,
    )
    user.profile = Profile(email=email, created_at=now, updated_at=now)
    user.roles.append(UserRoleAssignment(role=DEFAULT_ROLE, created_at=now))
    db.add(user)
    db.flush()
    return user


def role_of(db: Session, user_id: str) -> Optional[str]:
    return db.scalar(select(UserRoleAssignment.role).where(UserRoleAssignment.user_id == user_id))


def display_name_for(db: Session, user_id: str) -> str:
    profile = db.scalar(select(Profile).where(Profile.user_id == user_id))
    if profile is None:
        return "Unknown User"
    return profile.display_name or profile.email or "Unknown User"


def list_staff(db: Session, role: str = DEFAULT_ROLE) -> list[Profile]:
    return list(
        db.scalars(
            select(Profile)
            .join(UserRoleAssignment, UserRoleAssignment.user_id == Profile.user_id)
            .where(UserRoleAssignment.role == role)
            .order_by(Profile.display_name)
        ).all()
    )
