from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # --- queue driver ---
    # memory | file | redis | sync
    queue_driver: str = Field(default="memory", alias="QUEUE_DRIVER")
    queue_name: str = Field(default="default", alias="QUEUE_NAME")
    queue_track_metrics: bool = Field(default=True, alias="QUEUE_TRACK_METRICS")
    queue_use_dlq: bool = Field(default=True, alias="QUEUE_USE_DLQ")
    queue_use_middleware: bool = Field(default=True, alias="QUEUE_USE_MIDDLEWARE")
    queue_default_job_timeout_s: float | None = Field(
        default=None, alias="QUEUE_DEFAULT_JOB_TIMEOUT_S"
    )

    # --- retry policy (job-level values win; these fill in when a job defers) ---
    queue_max_retries: int = Field(default=3, alias="QUEUE_MAX_RETRIES")
    queue_retry_delay_s: float = Field(default=30.0, alias="QUEUE_RETRY_DELAY_S")
    # fixed | exponential
    queue_backoff: str = Field(default="fixed", alias="QUEUE_BACKOFF")
    queue_backoff_cap_s: float = Field(default=3600.0, alias="QUEUE_BACKOFF_CAP_S")

    # --- file driver ---
    queue_storage_path: Path = Field(
        default_factory=lambda: (Path.cwd() / "storage" / "queue").resolve(),
        alias="QUEUE_STORAGE_PATH",
    )
    # Advisory lock held across each read -> merge -> write of jobs.json.
    queue_file_lock: bool = Field(default=True, alias="QUEUE_FILE_LOCK")

    # --- dead letter store ---
    # memory | file
    dlq_driver: str = Field(default="memory", alias="DLQ_DRIVER")
    dlq_storage_path: Path | None = Field(default=None, alias="DLQ_STORAGE_PATH")

    # --- redis driver ---
    # Optional key prefix ("" keeps the bare `queue:<name>` layout).
    redis_queue_prefix: str = Field(default="", alias="REDIS_QUEUE_PREFIX")
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    # 0 => non-blocking RPOP
    redis_block_timeout_s: float = Field(default=1.0, alias="REDIS_BLOCK_TIMEOUT_S")
    redis_promote_batch: int = Field(default=10, alias="REDIS_PROMOTE_BATCH")

    # --- worker loop ---
    worker_delay_s: float = Field(default=1.0, alias="WORKER_DELAY_S")
    worker_max_jobs: int | None = Field(default=None, alias="WORKER_MAX_JOBS")
    worker_timeout_s: float | None = Field(default=None, alias="WORKER_TIMEOUT_S")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    # Unset => stdout only.
    log_dir: Path | None = Field(default=None, alias="LOG_DIR")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    def resolved_dlq_path(self) -> Path:
        if self.dlq_storage_path is not None:
            return Path(self.dlq_storage_path)
        return Path(self.queue_storage_path) / "failed_jobs.json"
