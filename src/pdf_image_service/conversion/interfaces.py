from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from .models import ImageFormat, JobRecord


@dataclass(frozen=True)
class ConversionOptions:
    format: ImageFormat = ImageFormat.PNG
    density: int = 300
    quality: Optional[int] = None


class ConverterGateway(Protocol):
    def check_available(self) -> str:
        """Return a version string, or raise CapabilityUnavailable."""

    def convert(self, source_path: str, output_dir: str, options: ConversionOptions) -> list[str]:
        """Rasterize every page of source_path into output_dir synchronously.

        Returns the produced file paths in page order. Raises
        ConversionFailure and leaves no partial output behind on failure.
        This is a blocking call; callers should offload to threads if needed.
        """


class ArchiveGateway(Protocol):
    def build_archive(self, source_dir: str, archive_path: str) -> str:
        """Package every file under source_dir into archive_path, or raise ArchiveFailure."""


class StorageGateway(Protocol):
    def job_dir(self, job_id: str) -> str:
        ...

    def create_job(self, job: JobRecord) -> None:
        ...

    def save_job(self, job: JobRecord) -> None:
        ...

    def load_job(self, job_id: str) -> JobRecord:
        ...

    def list_job_ids(self) -> list[str]:
        ...

    def job_mtime(self, job_id: str) -> datetime:
        ...

    def delete_job(self, job_id: str) -> None:
        ...


@dataclass(frozen=True)
class JobPaths:
    job_dir: str
    input_dir: str
    output_dir: str
    job_file: str
    archive_path: str


JOB_FILE = "job.json"
INPUT_DIR = "input"
OUTPUT_DIR = "output"
ARCHIVE_NAME = "converted_images.zip"
