import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    api_key_header: str
    version_allocation_attempts: int
    db_lock_timeout_ms: int
    page_size: int
    max_page_size: int

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///docvault.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        api_key_header=_getenv("API_KEY_HEADER", "X-API-Key"),
        version_allocation_attempts=max(1, _getenv_int("VERSION_ALLOCATION_ATTEMPTS", 3)),
        db_lock_timeout_ms=_getenv_int("DB_LOCK_TIMEOUT_MS", 5000),
        page_size=_getenv_int("PAGE_SIZE", 50),
        max_page_size=_getenv_int("MAX_PAGE_SIZE", 500),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "us-east-1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "API_KEY_HEADER": s.api_key_header,
        "VERSION_ALLOCATION_ATTEMPTS": s.version_allocation_attempts,
        "DB_LOCK_TIMEOUT_MS": s.db_lock_timeout_ms,
        "PAGE_SIZE": s.page_size,
        "MAX_PAGE_SIZE": s.max_page_size,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # file upload limits (100MB)
        "MAX_CONTENT_LENGTH": 100 * 1024 * 1024,
    }
