import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Service configuration, read from environment variables."""

    data_dir: Path = field(default_factory=lambda: Path("./data").resolve())
    max_upload_mb: int = 100
    imagemagick_binary: str = "convert"
    density: int = 300
    jpeg_quality: int = 90
    convert_timeout_sec: int = 600
    retention_days: float = 2
    cleanup_interval_sec: int = 24 * 60 * 60
    enable_cleanup: bool = True
    stale_processing_sec: int = 3600
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str = "logs"

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    @property
    def cleanup_interval(self) -> timedelta:
        return timedelta(seconds=self.cleanup_interval_sec)

    @property
    def stale_processing(self) -> timedelta:
        return timedelta(seconds=self.stale_processing_sec)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=Path(os.getenv("DATA_DIR", "./data")).resolve(),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "100")),
            imagemagick_binary=os.getenv("IMAGEMAGICK_BINARY", "convert"),
            density=int(os.getenv("CONVERT_DENSITY", "300")),
            jpeg_quality=int(os.getenv("JPEG_QUALITY", "90")),
            convert_timeout_sec=int(os.getenv("CONVERT_TIMEOUT_SEC", "600")),
            retention_days=float(os.getenv("RETENTION_DAYS", "2")),
            cleanup_interval_sec=int(os.getenv("CLEANUP_INTERVAL_SEC", str(24 * 60 * 60))),
            enable_cleanup=_flag("ENABLE_CLEANUP", "true"),
            stale_processing_sec=int(os.getenv("STALE_PROCESSING_SEC", "3600")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_to_file=_flag("LOG_TO_FILE", "false"),
            log_dir=os.getenv("LOG_DIR", "logs"),
        )
