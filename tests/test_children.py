"""Tests for the children API (CRUD and ownership)."""
import pytest
from werkzeug.security import generate_password_hash

from app.gradeai import create_app
from app.gradeai.db import session_scope
from app.gradeai.models import AuditEvent, Base, User
from app.gradeai.modules.children.models import Child


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
        for name, email in (("Anna Schmidt", "anna@example.com"), ("Ben Koch", "ben@example.com")):
            s.add(User(name=name, email=email, password_hash=generate_password_hash("secret-pw"), is_active=True))

    return app.test_client()


def _login(client, email="anna@example.com"):
    r = client.post("/api/auth/login", json={"email": email, "password": "secret-pw"})
    assert r.status_code == 200


def _create_child(client, **overrides):
    payload = {"name": "Mia", "grade": "4", "schoolType": "Grundschule"}
    payload.update(overrides)
    return client.post("/api/children", json=payload)


def test_children_require_auth(client):
    assert client.get("/api/children").status_code == 401
    assert _create_child(client).status_code == 401


def test_child_create_and_list(client):
    _login(client)
    r = _create_child(client)
    assert r.status_code == 201
    child = r.json["child"]
    assert child["name"] == "Mia"
    assert child["schoolType"] == "Grundschule"

    r = client.get("/api/children")
    assert r.status_code == 200
    assert [c["name"] for c in r.json["children"]] == ["Mia"]
    assert r.json["children"][0]["uploads"] == []


def test_child_create_missing_fields(client):
    _login(client)
    r = _create_child(client, name="", schoolType="  ")
    assert r.status_code == 400
    assert r.json["error"] == "Missing required fields"
    assert "Name is required." in r.json["details"]
    assert "School type is required." in r.json["details"]


def test_child_update_partial(client):
    _login(client)
    child_id = _create_child(client).json["child"]["id"]

    r = client.put(f"/api/children/{child_id}", json={"grade": "5"})
    assert r.status_code == 200
    assert r.json["child"]["grade"] == "5"
    assert r.json["child"]["name"] == "Mia"

    r = client.put(f"/api/children/{child_id}", json={"name": ""})
    assert r.status_code == 400

    with session_scope(client.application) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "child.edit").count() == 1


def test_child_of_other_parent_is_hidden(client):
    _login(client, "anna@example.com")
    child_id = _create_child(client).json["child"]["id"]
    client.post("/api/auth/logout")

    _login(client, "ben@example.com")
    assert client.get("/api/children").json["children"] == []
    assert client.get(f"/api/children/{child_id}").status_code == 404
    assert client.put(f"/api/children/{child_id}", json={"grade": "6"}).status_code == 404
    assert client.delete(f"/api/children/{child_id}").status_code == 404


def test_child_delete(client):
    _login(client)
    child_id = _create_child(client).json["child"]["id"]

    r = client.delete(f"/api/children/{child_id}")
    assert r.status_code == 200
    assert r.json["success"] is True

    with session_scope(client.application) as s:
        assert s.get(Child, child_id) is None
    assert client.get(f"/api/children/{child_id}").status_code == 404
