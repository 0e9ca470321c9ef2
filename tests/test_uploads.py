"""Tests for the upload API, inline and queued analysis, and reports."""
import io
import json
import threading

import pytest
from PIL import Image, ImageDraw
from sqlalchemy.exc import DataError
from werkzeug.security import generate_password_hash

import app.gradeai.analysis as analysis_module
import app.gradeai.ai.vision as vision
from app.gradeai import create_app
from app.gradeai.ai.providers import VisionProvider
from app.gradeai.analysis import (
    AnalysisError,
    analyze_upload,
    claim_next_queued_upload,
    provider_timeout_within_budget,
)
from app.gradeai.db import session_scope
from app.gradeai.models import AuditEvent, Base, User
from app.gradeai.modules.uploads.models import Upload, UploadPage
from app.gradeai.storage import storage_from_config

PROVIDER_ANSWER = {
    "student": {"name": "Mia", "class": "4b"},
    "test": {"subject": "Mathematik", "date": "2026-09-30", "topic": "Bruchrechnung"},
    "grade": {"value": "2-", "points": "34/40", "confidence": "high", "foundOnPage": 1},
    "teacherFeedback": {"mainComment": "Gut gemacht, achte auf Kürzen.", "marginNotes": ["Kürzen!"]},
    "strengths": [{"point": "Sicheres Erweitern", "evidence": "Aufgabe 1"}],
    "weaknesses": [{"point": "Kürzen vergessen", "evidence": "Aufgabe 3"}],
    "recommendations": [{"action": "Kürzen üben", "priority": "high", "basedOn": "Aufgabe 3"}],
    "metadata": {"confidence": 80, "hasRedMarks": True, "hasHandwriting": True},
}


class FakeProvider(VisionProvider):
    def __init__(self, name="claude", answer=None, error=None):
        self.name = name
        self.answer = answer if answer is not None else PROVIDER_ANSWER
        self.error = error
        self.calls = 0

    def is_configured(self):
        return True

    def _complete(self, images, prompt):
        self.calls += 1
        if self.error:
            raise RuntimeError(self.error)
        return "```json\n" + json.dumps(self.answer) + "\n```"


class StalledProvider(FakeProvider):
    """Blocks until `release` is set, like a provider whose API never answers."""

    def __init__(self, name, release):
        super().__init__(name)
        self.release = release

    def _complete(self, images, prompt):
        self.release.wait(30)
        return super()._complete(images, prompt)


def _page_jpeg(size=(400, 560)):
    img = Image.new("RGB", size, (250, 250, 250))
    draw = ImageDraw.Draw(img)
    for y in range(60, 500, 40):
        draw.line((40, y, 360, y), fill=(30, 30, 60), width=2)
    draw.text((300, 20), "2-", fill=(210, 20, 20))
    draw.rectangle((280, 10, 380, 50), outline=(220, 30, 30), width=4)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=90)
    return buf.getvalue()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("ANALYSIS_MODE", "inline")
    for k in (
        "S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY",
        "ANTHROPIC_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY", "MISTRAL_API_KEY",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        for name, email in (("Anna Schmidt", "anna@example.com"), ("Ben Koch", "ben@example.com")):
            s.add(User(name=name, email=email, password_hash=generate_password_hash("secret-pw"), is_active=True))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def fake_providers(monkeypatch):
    providers = [FakeProvider("claude"), FakeProvider("gemini")]
    monkeypatch.setattr(vision, "enabled_providers", lambda config, names=None: providers)
    return providers


def _login(client, email="anna@example.com"):
    r = client.post("/api/auth/login", json={"email": email, "password": "secret-pw"})
    assert r.status_code == 200


def _child(client, name="Mia"):
    r = client.post("/api/children", json={"name": name, "grade": "4", "schoolType": "Grundschule"})
    return r.json["child"]["id"]


def _post_upload(client, child_id, files=None):
    if files is None:
        files = [(io.BytesIO(_page_jpeg()), "Seite 1.jpg", "image/jpeg")]
    return client.post(
        "/api/upload",
        data={"childId": str(child_id), "files": files},
        content_type="multipart/form-data",
    )


def test_upload_requires_auth(client):
    r = _post_upload(client, 1)
    assert r.status_code == 401


def test_upload_rejects_bad_input(client):
    _login(client)
    child_id = _child(client)

    r = client.post("/api/upload", data={"childId": str(child_id)}, content_type="multipart/form-data")
    assert r.status_code == 400
    assert r.json["error"] == "No files provided"

    r = client.post(
        "/api/upload",
        data={"files": [(io.BytesIO(_page_jpeg()), "a.jpg", "image/jpeg")]},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert r.json["error"] == "Child ID is required"

    r = _post_upload(client, child_id, [(io.BytesIO(b"GIF89a"), "a.gif", "image/gif")])
    assert r.status_code == 400
    assert r.json["error"].startswith("Invalid file type for a.gif")


def test_upload_unknown_or_foreign_child(client, fake_providers):
    _login(client, "ben@example.com")
    bens_child = _child(client, "Leon")
    client.post("/api/auth/logout")

    _login(client)
    assert _post_upload(client, 9999).status_code == 404
    r = _post_upload(client, bens_child)
    assert r.status_code == 403
    assert fake_providers[0].calls == 0


def test_upload_inline_analysis_and_report(app, client, fake_providers):
    _login(client)
    child_id = _child(client)

    r = _post_upload(client, child_id)
    assert r.status_code == 200
    assert r.json["analysisStatus"] == "completed"
    upload_id = r.json["uploadId"]
    assert all(p.calls == 1 for p in fake_providers)

    with session_scope(app) as s:
        upload = s.get(Upload, upload_id)
        assert upload.grade == 2.3
        assert upload.grade_label == "2-"
        assert upload.subject == "Mathematik"
        assert upload.teacher_comment == "Gut gemacht, achte auf Kürzen."
        page = s.query(UploadPage).filter(UploadPage.upload_id == upload_id).one()
        assert page.storage_key.startswith(f"uploads/{upload_id}/page_1_")
        assert page.storage_key.endswith("-Seite_1.jpg")
        assert storage_from_config(app.config).exists(page.storage_key)
        assert s.query(AuditEvent).filter(AuditEvent.action == "upload.analysis_completed").count() == 1

    r = client.get(f"/api/uploads/{upload_id}")
    assert r.status_code == 200
    analysis = r.json["upload"]["analysis"]
    assert analysis["summary"]["overallGrade"] == "2-"
    assert analysis["summary"]["percentage"] == 85
    assert analysis["metadata"]["gradeAgreement"] == "full"
    assert analysis["metadata"]["providersSucceeded"] == ["claude", "gemini"]
    assert len(analysis["metadata"]["pageResults"]) == 1

    r = client.get(f"/api/uploads/{upload_id}/report")
    assert r.status_code == 200
    assert r.json["report"]["header"]["grade"] == "2-"
    assert r.json["parentReport"]["grade"] == "2-"
    assert r.json["parentReport"]["subject"] == "Mathematik"


def test_upload_inline_failure_is_stored(app, client, monkeypatch):
    broken = [FakeProvider("claude", error="boom"), FakeProvider("gemini", error="down")]
    monkeypatch.setattr(vision, "enabled_providers", lambda config, names=None: broken)
    _login(client)
    child_id = _child(client)

    r = _post_upload(client, child_id)
    assert r.status_code == 200
    assert r.json["analysisStatus"] == "failed"
    upload_id = r.json["uploadId"]

    with session_scope(app) as s:
        upload = s.get(Upload, upload_id)
        assert "All AI providers failed" in upload.error_message
        assert upload.processed_at is not None

    r = client.get(f"/api/uploads/{upload_id}/report")
    assert r.status_code == 409
    assert r.json["error"] == "Analysis not completed yet"
    assert r.json["analysisStatus"] == "failed"


def test_upload_queue_mode(app, client, fake_providers):
    app.config["ANALYSIS_MODE"] = "queue"
    _login(client)
    child_id = _child(client)

    r = _post_upload(client, child_id)
    assert r.status_code == 200
    assert r.json["analysisStatus"] == "queued"
    upload_id = r.json["uploadId"]
    assert fake_providers[0].calls == 0

    assert client.get(f"/api/uploads/{upload_id}/report").status_code == 409

    assert claim_next_queued_upload(app) == upload_id
    assert claim_next_queued_upload(app) is None

    analysis = analyze_upload(app, upload_id, providers=[FakeProvider("mistral")])
    assert analysis["summary"]["subject"] == "Mathematik"
    assert analysis["metadata"]["gradeAgreement"] == "partial"

    r = client.get(f"/api/uploads/{upload_id}/report")
    assert r.status_code == 200


def test_upload_delete_removes_pages(app, client, fake_providers):
    _login(client)
    child_id = _child(client)
    upload_id = _post_upload(client, child_id).json["uploadId"]

    with session_scope(app) as s:
        key = s.query(UploadPage).filter(UploadPage.upload_id == upload_id).one().storage_key

    r = client.delete(f"/api/uploads/{upload_id}")
    assert r.status_code == 200
    assert r.json["message"] == "Upload deleted successfully"
    assert not storage_from_config(app.config).exists(key)
    assert client.get(f"/api/uploads/{upload_id}").status_code == 404

    # children listing no longer shows it
    r = client.get(f"/api/children/{child_id}")
    assert r.json["child"]["uploads"] == []


def test_fairness_check_without_claude(client):
    _login(client)
    r = client.post("/api/ai/fairness-check", json={"analysisData": {"summary": {"overallGrade": "3"}}})
    assert r.status_code == 503

    r = client.post("/api/ai/fairness-check", json={})
    assert r.status_code == 400
    assert r.json["error"] == "Missing required parameters"


def test_translate_requires_language(client):
    _login(client)
    r = client.post("/api/ai/translate", json={"analysisData": {"summary": {}}})
    assert r.status_code == 400


def _queued_upload(app, client):
    app.config["ANALYSIS_MODE"] = "queue"
    _login(client)
    upload_id = _post_upload(client, _child(client)).json["uploadId"]
    assert claim_next_queued_upload(app) == upload_id
    return upload_id


def test_slow_provider_times_out_inside_analysis_budget(app, client):
    upload_id = _queued_upload(app, client)
    app.config["ANALYSIS_TIMEOUT_SECONDS"] = 4
    app.config["VISION_PROVIDER_TIMEOUT_SECONDS"] = 4
    release = threading.Event()
    try:
        analysis = analyze_upload(
            app, upload_id, providers=[FakeProvider("claude"), StalledProvider("mistral", release)]
        )
    finally:
        release.set()

    assert analysis["metadata"]["providersSucceeded"] == ["claude"]
    assert analysis["metadata"]["providersFailed"] == ["mistral"]
    with session_scope(app) as s:
        upload = s.get(Upload, upload_id)
        assert upload.analysis_status == "completed"
        assert upload.grade_label == "2-"
        assert upload.error_message is None


def test_analysis_global_timeout_marks_failed(app, client):
    upload_id = _queued_upload(app, client)
    app.config["ANALYSIS_TIMEOUT_SECONDS"] = 1
    release = threading.Event()

    def stuck_ocr(image_bytes):
        release.wait(30)
        return ""

    try:
        with pytest.raises(AnalysisError, match="Analysis timed out after 1s"):
            analyze_upload(app, upload_id, providers=[FakeProvider("claude")], ocr=stuck_ocr)
    finally:
        release.set()

    with session_scope(app) as s:
        upload = s.get(Upload, upload_id)
        assert upload.analysis_status == "failed"
        assert upload.error_message == "Analysis timed out after 1s"
        assert upload.processed_at is not None


def test_save_error_marks_upload_failed(app, client, monkeypatch):
    upload_id = _queued_upload(app, client)
    real_record_event = analysis_module.record_event

    def record_event(s, **kwargs):
        if kwargs["action"] == "upload.analysis_completed":
            raise DataError("UPDATE uploads", {}, Exception("value too long for type character varying(16)"))
        return real_record_event(s, **kwargs)

    monkeypatch.setattr(analysis_module, "record_event", record_event)
    with pytest.raises(DataError):
        analyze_upload(app, upload_id, providers=[FakeProvider("claude")])

    with session_scope(app) as s:
        upload = s.get(Upload, upload_id)
        assert upload.analysis_status == "failed"
        assert "value too long" in upload.error_message
        assert upload.analysis_json is None

    r = client.get(f"/api/uploads/{upload_id}/report")
    assert r.status_code == 409
    assert r.json["analysisStatus"] == "failed"


def test_long_subject_is_truncated_to_column_size(app, client):
    upload_id = _queued_upload(app, client)
    answer = json.loads(json.dumps(PROVIDER_ANSWER))
    answer["test"]["subject"] = "Mathematik " * 20

    analyze_upload(app, upload_id, providers=[FakeProvider("claude", answer=answer)])

    with session_scope(app) as s:
        upload = s.get(Upload, upload_id)
        assert upload.analysis_status == "completed"
        assert len(upload.subject) == 128
        assert upload.subject.startswith("Mathematik Mathematik")


def test_provider_timeout_within_budget():
    assert provider_timeout_within_budget(55, 55, 5) == pytest.approx(47)
    assert provider_timeout_within_budget(20, 55, 5) == 20
    assert provider_timeout_within_budget(4, 4, 0.5) == pytest.approx(2.5)
    assert provider_timeout_within_budget(55, 55, 60) == 0.1
