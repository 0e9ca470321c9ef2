import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.gradeai.config import load_config
from app.gradeai.db import init_db, teardown_db_session
from app.gradeai.routes import bp as routes_bp
from app.gradeai.auth import account_bp, bp as auth_bp, load_current_user
from app.gradeai.modules.children.api import bp as children_bp
from app.gradeai.modules.uploads.api import bp as uploads_bp
from app.gradeai.utils import api_error

REQUIRED_TABLES = ("users", "children", "uploads", "upload_pages", "audit_events")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=30)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.ensure_ascii = False

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL") or "INFO",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    if app.config.get("ANALYSIS_MODE") not in ("inline", "queue"):
        raise RuntimeError(f"ANALYSIS_MODE must be 'inline' or 'queue', got {app.config.get('ANALYSIS_MODE')!r}")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from botocore.exceptions import BotoCoreError, ClientError

            from app.gradeai.storage import S3Storage, storage_from_config

            storage = storage_from_config(app.config)
            try:
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except (BotoCoreError, ClientError) as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    enabled = [
        name
        for name, key in (("claude", "ANTHROPIC_API_KEY"), ("gemini", "GOOGLE_API_KEY"), ("mistral", "MISTRAL_API_KEY"))
        if app.config.get(key) and app.config.get(f"VISION_{name.upper()}_ENABLED") is not False
    ]
    if enabled:
        app.logger.info("Vision providers enabled: %s", ", ".join(enabled))
    else:
        app.logger.warning("No vision provider API keys configured; uploads will fail analysis.")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(account_bp)
    app.register_blueprint(children_bp, url_prefix="/api")
    app.register_blueprint(uploads_bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Schema health: detect a database that was never migrated.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        engine = app.extensions.get("sqlalchemy_engine")
        try:
            insp = sa_inspect(engine)
            missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
            return
        app.config["_schema_health_ok"] = not missing
        app.config["_schema_health_missing"] = missing
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok") or not request.path.startswith("/api/"):
            return None
        # tables may have been created since startup
        _run_schema_health_check()
        if app.config.get("_schema_health_ok"):
            return None
        return api_error("Database schema out of date", 503, missing=app.config.get("_schema_health_missing") or [])

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        if e.code == 413:
            limit_mb = app.config["MAX_UPLOAD_BYTES"] / 1024 / 1024
            return api_error(f"File too large. Maximum size is {limit_mb:.0f}MB.", 413)
        return api_error(e.description or e.name, e.code or 500)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return api_error("Internal server error", 500, requestId=rid)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
