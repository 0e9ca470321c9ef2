"""Tests for signup, login, session and account deletion."""
import pytest
from werkzeug.security import generate_password_hash

from app.gradeai import create_app
from app.gradeai.db import session_scope
from app.gradeai.models import AuditEvent, Base, User
from app.gradeai.modules.children.models import Child
from app.gradeai.rate_limit import login_limiter, signup_limiter


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add(
            User(
                name="Anna Schmidt",
                email="parent@example.com",
                password_hash=generate_password_hash("secret-pw"),
                is_active=True,
            )
        )

    return app.test_client()


def _signup(client, **overrides):
    payload = {"name": "Jonas Weber", "email": "jonas@example.com", "password": "longenough"}
    payload.update(overrides)
    return client.post("/api/auth/signup", json=payload)


def test_signup_creates_user(client):
    r = _signup(client)
    assert r.status_code == 201
    assert r.json["success"] is True
    assert r.json["user"]["email"] == "jonas@example.com"
    assert r.json["user"]["language"] == "de"
    assert "password_hash" not in r.json["user"]

    with session_scope(client.application) as s:
        user = s.query(User).filter(User.email == "jonas@example.com").one()
        assert user.password_hash != "longenough"
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.signup").count() == 1


def test_signup_normalizes_email(client):
    r = _signup(client, email="  Jonas@Example.COM ")
    assert r.status_code == 201
    assert r.json["user"]["email"] == "jonas@example.com"


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"name": ""}, "Name, email, and password are required"),
        ({"email": "not-an-email"}, "Invalid email format"),
        ({"password": "short"}, "Password must be at least 8 characters long"),
    ],
)
def test_signup_validation(client, overrides, message):
    r = _signup(client, **overrides)
    assert r.status_code == 400
    assert r.json == {"success": False, "error": message}


def test_signup_duplicate_email(client):
    r = _signup(client, email="parent@example.com")
    assert r.status_code == 409
    assert r.json["error"] == "A user with this email already exists"


def test_login_wrong_password(client):
    r = client.post("/api/auth/login", json={"email": "parent@example.com", "password": "nope-nope"})
    assert r.status_code == 401
    assert r.json["error"] == "Invalid credentials"

    with session_scope(client.application) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.actor_user_id is None


def test_login_me_logout(client):
    r = client.post("/api/auth/login", json={"email": "Parent@Example.com", "password": "secret-pw"})
    assert r.status_code == 200

    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["name"] == "Anna Schmidt"

    r = client.post("/api/auth/logout")
    assert r.json["success"] is True

    r = client.get("/api/auth/me")
    assert r.status_code == 401


def test_inactive_user_cannot_login(client):
    with session_scope(client.application) as s:
        s.query(User).filter(User.email == "parent@example.com").one().is_active = False

    r = client.post("/api/auth/login", json={"email": "parent@example.com", "password": "secret-pw"})
    assert r.status_code == 401


def test_login_rate_limited(client):
    ip = "203.0.113.10"
    login_limiter.reset(ip)
    headers = {"X-Forwarded-For": ip}
    for _ in range(login_limiter.max_requests):
        r = client.post("/api/auth/login", json={"email": "x@example.com", "password": "whatever"}, headers=headers)
        assert r.status_code == 401

    r = client.post("/api/auth/login", json={"email": "x@example.com", "password": "whatever"}, headers=headers)
    assert r.status_code == 429
    assert r.json["error"] == "Too many login attempts. Please try again later."
    assert int(r.headers["Retry-After"]) > 0
    login_limiter.reset(ip)


def test_signup_rate_limit_skips_localhost(client):
    signup_limiter.reset("127.0.0.1")
    for i in range(signup_limiter.max_requests + 2):
        r = _signup(client, email=f"kid{i}@example.com")
        assert r.status_code == 201


def test_delete_account_cascades(client):
    app = client.application
    client.post("/api/auth/login", json={"email": "parent@example.com", "password": "secret-pw"})
    r = client.post("/api/children", json={"name": "Mia", "grade": "4", "schoolType": "Grundschule"})
    assert r.status_code == 201

    r = client.delete("/api/user")
    assert r.status_code == 200
    assert r.json["message"] == "Account deleted successfully"

    with session_scope(app) as s:
        assert s.query(User).filter(User.email == "parent@example.com").one_or_none() is None
        assert s.query(Child).count() == 0
        assert s.query(AuditEvent).filter(AuditEvent.action == "user.delete").count() == 1

    r = client.get("/api/auth/me")
    assert r.status_code == 401
