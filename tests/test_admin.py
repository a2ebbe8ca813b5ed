import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from warehouse_ops.config import settings
from warehouse_ops.db import Base
from warehouse_ops.main import app, get_db
from warehouse_ops.models import ApprovedUser, AuthUser, Profile, UserRoleAssignment
from warehouse_ops.users import verify_password


def _make_client():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), TestingSessionLocal


def _new_user(**overrides) -> dict:
    body = {
        "name": "Maria Ivanova",
        "email": "maria@example.com",
        "role": "WAREHOUSE_STAFF",
        "password": "12345678",
    }
    body.update(overrides)
    return body


def test_seven_character_password_is_rejected() -> None:
    client, _ = _make_client()
    with client:
        resp = client.post("/functions/v1/create-user", json=_new_user(password="1234567"))
        assert resp.status_code == 400
        assert "8" in resp.json()["error"]
        assert resp.headers["access-control-allow-origin"] == "*"


def test_eight_character_password_creates_the_user() -> None:
    client, SessionLocal = _make_client()
    with client:
        resp = client.post("/functions/v1/create-user", json=_new_user())
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["user"]["email"] == "maria@example.com"
        assert body["user"]["name"] == "Maria Ivanova"
        assert body["user"]["role"] == "WAREHOUSE_STAFF"

    db = SessionLocal()
    user = db.get(AuthUser, body["user"]["id"])
    assert user.email_confirmed is True
    assert user.password_hash != "12345678"
    assert verify_password("12345678", user.password_hash)
    assert user.profile.display_name == "Maria Ivanova"
    assert [assignment.role for assignment in user.roles] == ["WAREHOUSE_STAFF"]
    assert db.scalar(select(ApprovedUser).where(ApprovedUser.email == "maria@example.com")) is not None
    db.close()


def test_non_default_role_is_applied() -> None:
    client, SessionLocal = _make_client()
    with client:
        resp = client.post(
            "/functions/v1/create-user", json=_new_user(email="boss@example.com", role="OFFICE_ADMIN")
        )
        assert resp.status_code == 200
        user_id = resp.json()["user"]["id"]

    db = SessionLocal()
    role = db.scalar(select(UserRoleAssignment.role).where(UserRoleAssignment.user_id == user_id))
    assert role == "OFFICE_ADMIN"
    db.close()


def test_create_user_input_errors() -> None:
    client, _ = _make_client()
    with client:
        missing = client.post("/functions/v1/create-user", json=_new_user(name=""))
        assert missing.status_code == 400
        assert missing.json() == {"error": "All fields are required"}

        bad_email = client.post("/functions/v1/create-user", json=_new_user(email="maria.example.com"))
        assert bad_email.status_code == 400
        assert bad_email.json() == {"error": "Please enter a valid email address"}

        assert client.post("/functions/v1/create-user", json=_new_user()).status_code == 200
        duplicate = client.post("/functions/v1/create-user", json=_new_user())
        assert duplicate.status_code == 400
        assert "already been registered" in duplicate.json()["error"]


@pytest.mark.parametrize(
    "field, value",
    [
        ("name", 42),
        ("email", 12345678),
        ("role", ["OFFICE_ADMIN"]),
        ("password", 1234567),
    ],
)
def test_non_text_fields_are_rejected(field, value) -> None:
    client, SessionLocal = _make_client()
    with client:
        resp = client.post("/functions/v1/create-user", json=_new_user(**{field: value}))
        assert resp.status_code == 400
        assert resp.json() == {"error": "All fields must be text"}
        assert resp.headers["access-control-allow-origin"] == "*"

    db = SessionLocal()
    assert db.scalar(select(AuthUser)) is None
    db.close()


def test_preflight_returns_cors_headers() -> None:
    client, _ = _make_client()
    with client:
        for path in ("/functions/v1/create-user", "/functions/v1/delete-user"):
            resp = client.options(path)
            assert resp.status_code == 200
            assert resp.headers["access-control-allow-origin"] == "*"
            assert "x-client-info" in resp.headers["access-control-allow-headers"]


def test_delete_user_removes_identity_profile_and_approval() -> None:
    client, SessionLocal = _make_client()
    with client:
        user_id = client.post("/functions/v1/create-user", json=_new_user()).json()["user"]["id"]

        assert client.post("/functions/v1/delete-user", json={}).json() == {"error": "User ID is required"}
        assert client.post("/functions/v1/delete-user", json={"userId": "nope"}).status_code == 400

        resp = client.post("/functions/v1/delete-user", json={"userId": user_id})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}

    db = SessionLocal()
    assert db.get(AuthUser, user_id) is None
    assert db.scalar(select(Profile).where(Profile.user_id == user_id)) is None
    assert db.scalar(select(ApprovedUser)) is None
    db.close()


def test_service_key_is_enforced_when_configured(monkeypatch) -> None:
    monkeypatch.setattr(settings, "admin_service_key", "s3cret")
    client, _ = _make_client()
    with client:
        denied = client.post("/functions/v1/create-user", json=_new_user())
        assert denied.status_code == 401

        allowed = client.post(
            "/functions/v1/create-user",
            json=_new_user(),
            headers={"Authorization": "Bearer s3cret"},
        )
        assert allowed.status_code == 200
