import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator

load_dotenv()


_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY_VALUES


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str | None = os.getenv("DATABASE_URL")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "5"))
    db_max_overflow: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    db_pool_timeout: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    db_pool_recycle: int = int(os.getenv("DB_POOL_RECYCLE", "1800"))

    # Blob storage
    storage_backend: str = os.getenv("STORAGE_TYPE", "local").lower()
    storage_path: str = os.getenv("STORAGE_PATH", "./uploads")
    s3_bucket: str | None = os.getenv("S3_BUCKET") or None
    s3_endpoint_url: str | None = os.getenv("S3_ENDPOINT") or None
    s3_region: str = os.getenv("S3_REGION", "auto")
    s3_access_key: str | None = os.getenv("S3_ACCESS_KEY") or None
    s3_secret_key: str | None = os.getenv("S3_SECRET_KEY") or None

    # Manifest URLs; falls back to the request base URL when unset
    public_base_url: str | None = os.getenv("PUBLIC_BASE_URL") or None

    # Uploads
    upload_tmp_dir: str = os.getenv("UPLOAD_TMP_DIR", "./temp")
    max_upload_bytes: int = int(os.getenv("MAX_UPLOAD_BYTES", str(100 * 1024 * 1024)))
    upload_tmp_max_age_seconds: int = int(os.getenv("UPLOAD_TMP_MAX_AGE_SECONDS", "3600"))

    # Publisher tokens are issued elsewhere; we only verify them
    jwt_secret: str = os.getenv("JWT_SECRET", "")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json: bool = _env_bool("LOG_JSON")

    # Background jobs
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

    # Runtime flags
    testing: bool = _env_bool("TESTING")

    @model_validator(mode="after")
    def require_database_url_when_not_testing(self) -> "Settings":
        if not self.testing and not (self.database_url and self.database_url.strip()):
            raise ValueError("DATABASE_URL must be set when TESTING is false")
        return self

    @model_validator(mode="after")
    def require_bucket_for_s3(self) -> "Settings":
        if self.storage_backend not in {"local", "s3"}:
            raise ValueError("STORAGE_TYPE must be 'local' or 's3'")
        if self.storage_backend == "s3" and not self.s3_bucket:
            raise ValueError("S3_BUCKET must be set when STORAGE_TYPE is s3")
        return self


settings = Settings()
