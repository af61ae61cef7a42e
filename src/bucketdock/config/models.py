"""Configuration models describing bucketdock settings."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from bucketdock.providers.models import StorageConfig


class BucketDockBaseModel(BaseModel):
    """Shared configuration for bucketdock settings models."""

    model_config = ConfigDict(extra="forbid")


class StorageSettings(BucketDockBaseModel):
    """Local persistence settings.

    Attributes:
        database_path: SQLite database holding the cache, move and upload sessions.
    """

    database_path: str = "~/.bucketdock/bucketdock.db"


class SyncSettings(BucketDockBaseModel):
    """Bucket sync pipeline settings.

    Attributes:
        page_size: Keys requested per listing page while fetching.
        insert_batch_size: Rows written per INSERT statement while storing.
        index_progress_interval: Folder count between indexing progress events.
    """

    page_size: int = Field(default=1000, ge=1, le=1000)
    insert_batch_size: int = Field(default=500, ge=1)
    index_progress_interval: int = Field(default=100, ge=1)


class TransferSettings(BucketDockBaseModel):
    """Move queue settings.

    Attributes:
        max_concurrent_moves: Global ceiling of simultaneously active move tasks.
        scan_multiplier: Pending rows inspected per free slot on each scheduling pass.
        multipart_threshold_mb: Object size at which moves switch to multipart uploads.
        part_size_mb: Multipart part size for moves.
        max_concurrent_parts: Parts uploaded in parallel within one move.
        progress_persist_step: Percent step between persisted progress checkpoints.
        cache_flush_delay_ms: Batching delay for source-side cache deletes.
        cleanup_retry_attempts: Attempts at deleting a moved source before giving up.
        cleanup_retry_delay_seconds: Delay between source cleanup attempts.
    """

    max_concurrent_moves: int = Field(default=5, ge=1)
    scan_multiplier: int = Field(default=20, ge=1)
    multipart_threshold_mb: int = Field(default=100, ge=1)
    part_size_mb: int = Field(default=20, ge=5)
    max_concurrent_parts: int = Field(default=4, ge=1)
    progress_persist_step: int = Field(default=5, ge=1, le=100)
    cache_flush_delay_ms: int = Field(default=300, ge=0)
    cleanup_retry_attempts: int = Field(default=3, ge=0)
    cleanup_retry_delay_seconds: float = Field(default=30.0, ge=0)


class UploadSettings(BucketDockBaseModel):
    """Upload engine settings.

    Attributes:
        multipart_threshold_mb: File size at which uploads switch to multipart.
        part_size_mb: Multipart part size.
        max_concurrent_parts: Parts uploaded in parallel.
        prefetch_parts: Extra prepared parts held in memory beyond those in flight.
        checkpoint_interval_seconds: Minimum spacing between session checkpoints.
        session_max_age_days: Age after which finished sessions are purged.
        max_concurrent_uploads: Files uploaded in parallel by the upload queue.
    """

    multipart_threshold_mb: int = Field(default=100, ge=1)
    part_size_mb: int = Field(default=20, ge=5)
    max_concurrent_parts: int = Field(default=6, ge=1)
    prefetch_parts: int = Field(default=2, ge=0)
    checkpoint_interval_seconds: float = Field(default=1.0, ge=0)
    session_max_age_days: int = Field(default=7, ge=0)
    max_concurrent_uploads: int = Field(default=3, ge=1)


class DownloadSettings(BucketDockBaseModel):
    """Download queue tuning.

    Attributes:
        max_concurrent_downloads: Downloads running at once for one bucket.
        write_buffer_mb: Bytes buffered in memory between disk writes and checkpoints.
        chunk_size_kb: Size of each read from the object stream.
    """

    max_concurrent_downloads: int = Field(default=5, ge=1)
    write_buffer_mb: int = Field(default=2, ge=1)
    chunk_size_kb: int = Field(default=256, ge=1)


class ProgressSettings(BucketDockBaseModel):
    """Display-side progress folding and speed estimation settings."""

    throttle_ms: int = Field(default=200, ge=0)
    speed_window_seconds: float = 3.0
    speed_min_span_seconds: float = 0.8
    speed_alpha: float = Field(default=0.2, gt=0, le=1)
    speed_spike_factor: float = Field(default=3.0, ge=1)
    speed_decay_seconds: float = 1.0


class LoggingSettings(BucketDockBaseModel):
    """Runtime logging configuration.

    Attributes:
        level: Logging verbosity level.
        file: Optional log file path; enables a rotating file handler.
        max_size_mb: Maximum log size before rotation.
        backup_count: Number of historical log files to retain.
    """

    level: str = "WARNING"
    file: Optional[str] = None
    max_size_mb: int = 100
    backup_count: int = 5


class CLIOptions(BucketDockBaseModel):
    """CLI behavior defaults and presentation preferences.

    Attributes:
        quiet_default: Whether commands suppress non-error output by default.
        summary_default: Whether commands only print summary lines by default.
        default_profile: Profile used when ``--profile`` is omitted.
    """

    quiet_default: bool = False
    summary_default: bool = False
    default_profile: Optional[str] = None


class BucketDockConfig(BucketDockBaseModel):
    """Top-level configuration struct for bucketdock.

    Attributes:
        storage: Local persistence settings.
        sync: Sync pipeline settings.
        transfer: Move queue settings.
        upload: Upload engine settings.
        download: Download queue settings.
        progress: Progress folding settings.
        logging: Logging configuration.
        cli: CLI presentation defaults.
        profiles: Named storage locations.
    """

    storage: StorageSettings = Field(default_factory=StorageSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    transfer: TransferSettings = Field(default_factory=TransferSettings)
    upload: UploadSettings = Field(default_factory=UploadSettings)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    progress: ProgressSettings = Field(default_factory=ProgressSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cli: CLIOptions = Field(default_factory=CLIOptions)
    profiles: Dict[str, StorageConfig] = Field(default_factory=dict)


__all__ = [
    "BucketDockBaseModel",
    "StorageSettings",
    "SyncSettings",
    "TransferSettings",
    "UploadSettings",
    "DownloadSettings",
    "ProgressSettings",
    "LoggingSettings",
    "CLIOptions",
    "BucketDockConfig",
]
