import os
from dataclasses import dataclass


# Documents larger than this are refused before anything is stored.
MAX_DOCUMENT_BYTES = 50 * 1024 * 1024


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    storage_root: str
    storage_public_base_url: str
    storage_timeout_seconds: float
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    db_timeout_seconds: float
    max_upload_bytes: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///etmf.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        storage_public_base_url=_getenv("STORAGE_PUBLIC_BASE_URL", ""),
        storage_timeout_seconds=_getenv_float("STORAGE_TIMEOUT_SECONDS", 30.0),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        db_timeout_seconds=_getenv_float("DB_TIMEOUT_SECONDS", 15.0),
        max_upload_bytes=int(_getenv_float("MAX_UPLOAD_BYTES", MAX_DOCUMENT_BYTES)),
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
        "STORAGE_PUBLIC_BASE_URL": s.storage_public_base_url,
        "STORAGE_TIMEOUT_SECONDS": s.storage_timeout_seconds,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "DB_TIMEOUT_SECONDS": s.db_timeout_seconds,
        "MAX_UPLOAD_BYTES": s.max_upload_bytes,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # Request bodies get some headroom over the document limit so oversized
        # files reach the service and fail with a ValidationError, not a bare 413.
        "MAX_CONTENT_LENGTH": s.max_upload_bytes + 8 * 1024 * 1024,
    }
