"""Privileged user administration endpoints.

These keep the browser-facing contract of the hosted admin functions: plain
``{"error": ...}`` / ``{"success": true, ...}`` bodies rather than the API
envelope, permissive CORS headers on every response, and an ``OPTIONS``
preflight answer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from warehouse_ops.config import settings
from warehouse_ops.db import get_db
from warehouse_ops.errors import WarehouseError
from warehouse_ops.models import DEFAULT_ROLE, USER_ROLES, ApprovedUser, AuthUser
from warehouse_ops.users import create_identity

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}
MIN_PASSWORD_LENGTH = 8

router = APIRouter(prefix="/functions/v1", tags=["Admin Functions"])


def _reply(body: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers=CORS_HEADERS)


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return _reply({"error": message}, status_code)


def _unauthorized(request: Request) -> Optional[JSONResponse]:
    if not settings.admin_service_key:
        return None
    if request.headers.get("authorization") != f"Bearer {settings.admin_service_key}":
        return _error("Unauthorized", 401)
    return None


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def create_user_account(db: Session, body: dict[str, Any]) -> JSONResponse:
    name = body.get("name")
    email = body.get("email")
    role = body.get("role")
    password = body.get("password")

    if not name or not email or not role or not password:
        return _error("All fields are required")
    if not all(isinstance(value, str) for value in (name, email, role, password)):
        return _error("All fields must be text")
    if len(password) < MIN_PASSWORD_LENGTH:
        return _error(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if "@" not in email:
        return _error("Please enter a valid email address")
    if role not in USER_ROLES:
        return _error(f"Role must be one of {', '.join(USER_ROLES)}")

    email = email.strip().lower()
    now = datetime.now(timezone.utc)
    if db.scalar(select(ApprovedUser).where(ApprovedUser.email == email)) is None:
        db.add(ApprovedUser(email=email, role=role, created_at=now))

    try:
        user = create_identity(
            db, email, password, metadata={"name": name, "display_name": name}
        )
    except WarehouseError as exc:
        db.rollback()
        logger.warning("Creating user %s failed: %s", email, exc.message)
        return _error(exc.message)

    user.profile.display_name = name
    user.profile.updated_at = now
    if role != DEFAULT_ROLE:
        for assignment in user.roles:
            assignment.role = role
    db.commit()
    logger.info("Created user %s with role %s", user.id, role)
    return _reply(
        {
            "success": True,
            "user": {"id": user.id, "email": user.email, "name": name, "role": role},
        }
    )


def delete_user_account(db: Session, body: dict[str, Any]) -> JSONResponse:
    user_id = body.get("userId")
    if not user_id:
        return _error("User ID is required")
    user = db.get(AuthUser, user_id)
    if user is None:
        return _error("User not found")

    email = user.email
    db.delete(user)
    approved = db.scalar(select(ApprovedUser).where(ApprovedUser.email == email))
    if approved is not None:
        db.delete(approved)
    db.commit()
    logger.info("Deleted user %s", user_id)
    return _reply({"success": True})


@router.options("/create-user")
@router.options("/delete-user")
def preflight() -> PlainTextResponse:
    return PlainTextResponse("ok", headers=CORS_HEADERS)


@router.post("/create-user")
async def create_user(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    denied = _unauthorized(request)
    if denied is not None:
        return denied
    body = await _json_body(request)
    try:
        return create_user_account(db, body)
    except Exception as exc:
        db.rollback()
        logger.exception("create-user failed")
        return _error(str(exc), 500)


@router.post("/delete-user")
async def delete_user(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    denied = _unauthorized(request)
    if denied is not None:
        return denied
    body = await _json_body(request)
    try:
        return delete_user_account(db, body)
    except Exception as exc:
        db.rollback()
        logger.exception("delete-user failed")
        return _error(str(exc), 500)
