from functools import lru_cache
from typing import Any, List, Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TRUE_VALUES = ("1", "true", "yes", "on")


def split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Environment-driven settings. Field names match the environment variables case-insensitively."""

    # Server
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    db_path: str = Field(default="imageboard.db")

    # Auth
    jwt_secret: str = Field(default="your-32-byte-secret-change-this!")
    jwt_expiry_minutes: int = Field(default=24 * 60)
    admin_username: str = Field(default="")
    admin_password: str = Field(default="")

    # Blob storage
    storage_type: str = Field(default="local")
    upload_dir: str = Field(default="uploads")
    upload_url_prefix: str = Field(default="/uploads")
    upload_base_url: str = Field(default="")
    s3_bucket: str = Field(default="my-bucket")
    s3_region: str = Field(default="us-east-1")
    s3_access_key_id: str = Field(default="")
    s3_secret_access_key: str = Field(default="")
    s3_base_url: str = Field(default="https://my-bucket.s3.amazonaws.com")
    s3_endpoint_url: Optional[str] = Field(default=None)
    storage_timeout_seconds: int = Field(default=10)

    # Admission limits
    max_post_length: int = Field(default=5000)
    max_tags: int = Field(default=10)
    default_max_threads: int = Field(default=100)
    default_max_replies: int = Field(default=500)
    default_max_image_size: int = Field(default=5 * 1024 * 1024)

    # Archival
    archive_after_days: int = Field(default=7)
    archive_delete_days: int = Field(default=30)
    archive_interval_seconds: int = Field(default=3600)

    # Logging
    log_level: str = Field(default="info")
    log_file: str = Field(default="stdout")

    # CORS, comma separated
    cors_allowed_origins: str = Field(default="*")
    cors_allowed_methods: str = Field(default="GET,POST,PUT,DELETE,OPTIONS")
    cors_allowed_headers: str = Field(default="Content-Type,Authorization,X-Requested-With")
    cors_allow_credentials: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator(
        "api_port", "jwt_expiry_minutes", "storage_timeout_seconds", "max_post_length", "max_tags",
        "default_max_threads", "default_max_replies", "default_max_image_size",
        "archive_after_days", "archive_delete_days", "archive_interval_seconds",
        mode="before",
    )
    @classmethod
    def int_or_default(cls, v: Any, info: ValidationInfo) -> Any:
        # An unparsable number falls back to the default instead of failing startup
        if isinstance(v, str):
            try:
                return int(v.strip())
            except ValueError:
                return cls.model_fields[info.field_name].default
        return v

    @field_validator("cors_allow_credentials", mode="before")
    @classmethod
    def parse_flag(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() in TRUE_VALUES
        return v

    @field_validator("s3_endpoint_url", mode="before")
    @classmethod
    def empty_as_none(cls, v: Any) -> Any:
        return v or None


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings: Settings = get_settings()

# Server Configuration
API_HOST = settings.api_host
API_PORT = settings.api_port
DB_PATH = settings.db_path

# Auth
JWT_SECRET = settings.jwt_secret
JWT_EXPIRY_MINUTES = settings.jwt_expiry_minutes
ADMIN_USERNAME = settings.admin_username
ADMIN_PASSWORD = settings.admin_password

# Blob storage
STORAGE_TYPE = settings.storage_type
UPLOAD_DIR = settings.upload_dir
UPLOAD_URL_PREFIX = settings.upload_url_prefix
UPLOAD_BASE_URL = settings.upload_base_url or f"http://localhost:{API_PORT}"
S3_BUCKET = settings.s3_bucket
S3_REGION = settings.s3_region
S3_ACCESS_KEY_ID = settings.s3_access_key_id
S3_SECRET_ACCESS_KEY = settings.s3_secret_access_key
S3_BASE_URL = settings.s3_base_url
S3_ENDPOINT_URL = settings.s3_endpoint_url
STORAGE_TIMEOUT_SECONDS = settings.storage_timeout_seconds
SUPPORTED_IMAGE_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
}

# Validation Constants
MAX_POST_LENGTH = settings.max_post_length
MAX_TAGS = settings.max_tags
BOARD_NAME_MAX_LENGTH = 100
BOARD_SLUG_MAX_LENGTH = 32
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 8
TAGS_METADATA_KEY = "tags"

# Board defaults (overridable per board)
DEFAULT_MAX_THREADS = settings.default_max_threads
DEFAULT_MAX_REPLIES = settings.default_max_replies
DEFAULT_MAX_IMAGE_SIZE = settings.default_max_image_size

# Archival
ARCHIVE_AFTER_DAYS = settings.archive_after_days
ARCHIVE_DELETE_DAYS = settings.archive_delete_days
ARCHIVE_INTERVAL_SECONDS = settings.archive_interval_seconds

# Search
SEARCH_RESULT_LIMIT = 100

# Logging
LOG_LEVEL = settings.log_level
LOG_FILE = settings.log_file
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# CORS
CORS_ALLOWED_ORIGINS = split_list(settings.cors_allowed_origins)
CORS_ALLOWED_METHODS = split_list(settings.cors_allowed_methods)
CORS_ALLOWED_HEADERS = split_list(settings.cors_allowed_headers)
CORS_ALLOW_CREDENTIALS = settings.cors_allow_credentials

# Time Constants (in seconds)
SECONDS_PER_DAY = 86400
HEALTH_CHECK_TIMEOUT = 5
