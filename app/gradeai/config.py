import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    anthropic_api_key: str
    google_api_key: str
    mistral_api_key: str
    vision_claude_enabled: bool
    vision_gemini_enabled: bool
    vision_mistral_enabled: bool
    vision_provider_timeout_seconds: float

    analysis_mode: str
    analysis_timeout_seconds: float
    allow_pdf_uploads: bool
    max_upload_bytes: int
    rate_limit_enabled: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    return raw not in ("0", "false", "no", "off")


def _getfloat(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///gradeai.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "fra1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        anthropic_api_key=_getenv("ANTHROPIC_API_KEY", ""),
        # Gemini accepts either name.
        google_api_key=_getenv("GOOGLE_API_KEY", "") or _getenv("GEMINI_API_KEY", ""),
        mistral_api_key=_getenv("MISTRAL_API_KEY", ""),
        vision_claude_enabled=_getflag("VISION_CLAUDE_ENABLED", True),
        vision_gemini_enabled=_getflag("VISION_GEMINI_ENABLED", True),
        vision_mistral_enabled=_getflag("VISION_MISTRAL_ENABLED", True),
        vision_provider_timeout_seconds=_getfloat("VISION_PROVIDER_TIMEOUT_SECONDS", 55.0),
        analysis_mode=_getenv("ANALYSIS_MODE", "inline").lower(),
        analysis_timeout_seconds=_getfloat("ANALYSIS_TIMEOUT_SECONDS", 55.0),
        allow_pdf_uploads=_getflag("ALLOW_PDF_UPLOADS", False),
        max_upload_bytes=int(_getfloat("MAX_UPLOAD_BYTES", 4 * 1024 * 1024)),
        rate_limit_enabled=_getflag("RATE_LIMIT_ENABLED", True),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # vision providers
        "ANTHROPIC_API_KEY": s.anthropic_api_key,
        "GOOGLE_API_KEY": s.google_api_key,
        "MISTRAL_API_KEY": s.mistral_api_key,
        "VISION_CLAUDE_ENABLED": s.vision_claude_enabled,
        "VISION_GEMINI_ENABLED": s.vision_gemini_enabled,
        "VISION_MISTRAL_ENABLED": s.vision_mistral_enabled,
        "VISION_PROVIDER_TIMEOUT_SECONDS": s.vision_provider_timeout_seconds,
        # analysis pipeline
        "ANALYSIS_MODE": s.analysis_mode,
        "ANALYSIS_TIMEOUT_SECONDS": s.analysis_timeout_seconds,
        "ALLOW_PDF_UPLOADS": s.allow_pdf_uploads,
        "MAX_UPLOAD_BYTES": s.max_upload_bytes,
        "RATE_LIMIT_ENABLED": s.rate_limit_enabled,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # multipart body limit; per-file limits are enforced in the upload route
        "MAX_CONTENT_LENGTH": max(s.max_upload_bytes * 2, 8 * 1024 * 1024),
    }
