"""
Configuration Management System
Handles all application settings for the API server and scan workers
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings  # Pydantic v2 import
from cryptography.fernet import Fernet
import structlog

logger = structlog.get_logger()


class SecurityConfig(BaseSettings):
    """Security-related configuration settings"""

    # Fernet key protecting OAuth credentials at rest
    master_key_file: Path = Field(Path("config/.master_key"))
    master_key: Optional[str] = Field(None, validate_default=True)

    @field_validator("master_key", mode='before')
    @classmethod
    def load_or_generate_master_key(cls, v, info):
        """Reuse the persisted key or generate one on first run"""
        if v:
            return v

        key_file = Path(info.data.get("master_key_file") or "config/.master_key")
        if key_file.exists():
            return key_file.read_text().strip()

        key_str = Fernet.generate_key().decode()
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_text(key_str)
        key_file.chmod(0o600)  # Read/write for owner only

        logger.warning("Generated new master key", key_file=str(key_file))
        return key_str

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }


class DatabaseConfig(BaseSettings):
    """Database configuration with support for different environments"""

    # Default to SQLite for development, PostgreSQL for production
    database_url: str = Field("sqlite+aiosqlite:///./data/photo_extractor.db")

    # Connection pool settings for production databases
    pool_size: int = Field(10)
    max_overflow: int = Field(20)
    pool_timeout: int = Field(30)
    echo_sql: bool = Field(False)

    # Connections held longer than this are reported
    slow_checkout_seconds: float = Field(5.0)

    @field_validator("database_url", mode='after')
    @classmethod
    def ensure_async_driver(cls, v):
        """Ensure we're using async database drivers"""
        if "sqlite" in v and "aiosqlite" not in v:
            return v.replace("sqlite:", "sqlite+aiosqlite:")
        elif "postgresql" in v and "asyncpg" not in v:
            return v.replace("postgresql:", "postgresql+asyncpg:")
        return v

    model_config = {
        "env_file": ".env",
        "extra": "ignore"
    }


class RedisConfig(BaseSettings):
    """Redis backs both the progress snapshots and the job queue"""

    redis_url: str = Field("redis://localhost:6379/0")

    progress_key_prefix: str = Field("scan:progress")
    progress_ttl_seconds: int = Field(24 * 3600)

    queue_name: str = Field("photo-scan")
    # Finished jobs are kept around for inspection
    completed_job_retention_seconds: int = Field(24 * 3600)
    failed_job_retention_seconds: int = Field(7 * 24 * 3600)

    model_config = {
        "env_file": ".env",
        "extra": "ignore"
    }


class PhotoSourceConfig(BaseSettings):
    """Google Photos Library API access"""

    photos_api_url: str = Field("https://photoslibrary.googleapis.com/v1")
    oauth_token_url: str = Field("https://oauth2.googleapis.com/token")
    google_client_id: Optional[str] = Field(None)
    google_client_secret: Optional[str] = Field(None)

    # Enumeration
    page_size: int = Field(100)
    page_delay_seconds: float = Field(0.1)  # external rate limit
    max_pages: int = Field(10000)

    # Downloads
    thumbnail_size: int = Field(512)
    request_timeout_seconds: int = Field(30)
    original_timeout_seconds: int = Field(60)
    max_original_bytes: int = Field(100 * 1024 * 1024)

    # Refresh when less than this remains on the access token
    token_refresh_margin_seconds: int = Field(300)

    @field_validator("page_size", mode='after')
    @classmethod
    def validate_page_size(cls, v):
        """The Library API caps search pages at 100 items"""
        if not 1 <= v <= 100:
            raise ValueError("page_size must be between 1 and 100")
        return v

    model_config = {
        "env_file": ".env",
        "extra": "ignore"
    }


class StorageConfig(BaseSettings):
    """Blob storage for uploaded originals"""

    # s3 for production, local for development
    storage_backend: str = Field("local")

    s3_bucket_name: str = Field("photo-extraction-storage")
    aws_region: str = Field("us-east-1")
    s3_endpoint_url: Optional[str] = Field(None)  # MinIO and friends
    key_prefix: str = Field("photos")

    upload_max_attempts: int = Field(3)
    upload_backoff_base_seconds: float = Field(1.0)
    presigned_url_expiry_seconds: int = Field(3600)

    local_storage_dir: Path = Field(Path("uploads/photos"))
    public_base_url: str = Field("http://localhost:8000/uploads/photos")

    @field_validator("storage_backend", mode='after')
    @classmethod
    def validate_backend(cls, v):
        if v not in ("s3", "local"):
            raise ValueError("storage_backend must be 's3' or 'local'")
        return v

    model_config = {
        "env_file": ".env",
        "extra": "ignore"
    }


class WorkerConfig(BaseSettings):
    """Scan worker and pipeline tuning"""

    # Concurrent scans per worker process
    worker_concurrency: int = Field(1)

    # Pipeline
    batch_size: int = Field(100)
    thumbnail_concurrency: int = Field(5)
    original_concurrency: int = Field(3)  # originals are large
    upload_concurrency: int = Field(5)
    progress_every: int = Field(10)
    match_threshold: float = Field(0.6)

    # Queue retry policy
    max_retries: int = Field(3)
    retry_backoff_ms: int = Field(2000)
    stall_timeout_seconds: int = Field(60)
    poll_interval_seconds: float = Field(1.0)

    # Progress stream
    stream_interval_seconds: float = Field(2.0)

    # Matching backend
    mock_mode: bool = Field(False)
    matcher_url: Optional[str] = Field(None)

    @field_validator("match_threshold", mode='after')
    @classmethod
    def validate_threshold(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("match_threshold must be between 0 and 1")
        return v

    @field_validator(
        "batch_size", "thumbnail_concurrency", "original_concurrency",
        "upload_concurrency", "worker_concurrency", "max_retries",
        mode='after'
    )
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    model_config = {
        "env_file": ".env",
        "extra": "ignore"
    }


class ApplicationConfig:
    """
    Main configuration class that combines all config sections
    This is what the rest of the application will use
    """

    def __init__(self, config_file: Path = Path("config/default.yaml")):
        # Load custom configuration from YAML if it exists
        self.custom_config = self._load_custom_config(config_file)

        self.security = SecurityConfig(**self._section("security"))
        self.database = DatabaseConfig(**self._section("database"))
        self.redis = RedisConfig(**self._section("redis"))
        self.photo_source = PhotoSourceConfig(**self._section("photo_source"))
        self.storage = StorageConfig(**self._section("storage"))
        self.worker = WorkerConfig(**self._section("worker"))

        # Ensure required directories exist
        self._ensure_directories()

    def _load_custom_config(self, config_file: Path) -> Dict[str, Any]:
        """Load user-defined configuration from YAML files"""
        if config_file.exists():
            with open(config_file, 'r') as f:
                return yaml.safe_load(f) or {}
        return {}

    def _section(self, name: str) -> Dict[str, Any]:
        """YAML overrides for one section"""
        section = self.custom_config.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"Configuration section '{name}' must be a mapping")
        return section

    def _ensure_directories(self):
        """Ensure required directories exist for storage and logs"""
        directories = [Path("data"), Path("config"), Path("logs")]
        if self.storage.storage_backend == "local":
            directories.append(self.storage.local_storage_dir)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

        logger.debug("Ensured required directories exist")
