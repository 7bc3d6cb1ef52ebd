"""Application configuration defaults and environment overrides."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "FILEREORG_"
DEFAULT_JOB_NAME = "BATCH-REORG-FULL"


class BatchConfig(BaseModel):
    chunk_size: int = Field(default=100, ge=1)
    thread_pool_size: int = Field(default=20, ge=1)
    skip_limit: int = Field(default=5, ge=0)
    retry_limit: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=0.5, ge=0)
    cursor_batch_size: int = Field(default=100, ge=1)


class SftpEndpointConfig(BaseModel):
    """Connection settings for one SFTP server."""

    host: str = "localhost"
    port: int = 22
    user: str = ""
    password: Optional[str] = None
    key_path: Optional[str] = None
    base_dir: str = "/"
    pool_size: int = Field(default=10, ge=1)
    timeout: float = 30.0
    acquire_timeout: float = 60.0
    strict_host_keys: bool = False


class MongoConfig(BaseModel):
    uri: str = "mongodb://localhost:27017"
    database: str = "dvsmart"
    files_collection: str = "files_index"
    audit_collection: str = "job_executions_audit"
    lock_collection: str = "shedlock"


class CleanupConfig(BaseModel):
    enabled: bool = True
    safety_window_days: int = Field(default=90, ge=0)
    thread_pool_size: int = Field(default=10, ge=1)
    deleted_by: str = "cleanup-step-pipelined"


class PartitionConfig(BaseModel):
    depth: int = Field(default=3, ge=1)
    width: int = Field(default=2, ge=1)


class LockConfig(BaseModel):
    name: str = "reorganize-full-job"
    min_hold_seconds: float = 30 * 60
    max_hold_seconds: float = 2 * 60 * 60


class AppConfig(BaseSettings):
    """Top level settings.

    Every field can be overridden from the environment with the ``FILEREORG_``
    prefix; nested fields use a double underscore, e.g.
    ``FILEREORG_BATCH__CHUNK_SIZE`` or ``FILEREORG_ORIGIN__HOST``.
    """

    service_name: str = "filereorg"
    job_name: str = DEFAULT_JOB_NAME
    batch: BatchConfig = Field(default_factory=BatchConfig)
    origin: SftpEndpointConfig = Field(default_factory=SftpEndpointConfig)
    destination: SftpEndpointConfig = Field(default_factory=SftpEndpointConfig)
    mongo: MongoConfig = Field(default_factory=MongoConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    partition: PartitionConfig = Field(default_factory=PartitionConfig)
    lock: LockConfig = Field(default_factory=LockConfig)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build the settings from defaults and the current environment."""
        return cls()
