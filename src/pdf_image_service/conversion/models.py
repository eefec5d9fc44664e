"""Job record data model and lifecycle transitions."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field, model_validator

from .errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


class ImageFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"

    @classmethod
    def parse(cls, value: str) -> "ImageFormat":
        """Accept "png", "jpeg" and the "jpg" alias, case-insensitively."""
        v = (value or "").strip().lower()
        if v == "jpg":
            v = "jpeg"
        return cls(v)


class SourceFile(BaseModel):
    name: str
    size: int = Field(ge=0)
    source_path: str


class FileResult(BaseModel):
    file_name: str
    success: bool
    output_count: int = Field(default=0, ge=0)
    error_reason: Optional[str] = None


class JobRecord(BaseModel):
    """Tracks one batch conversion job from upload to its terminal state.

    The record is the unit of persistence: every change is made on a copy
    in memory and then written back whole by the store.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.UPLOADED
    files: List[SourceFile] = Field(default_factory=list)
    format: Optional[ImageFormat] = None
    progress: int = Field(default=0, ge=0, le=100)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    per_file_results: List[FileResult] = Field(default_factory=list)
    archive_path: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "JobRecord":
        if len(self.per_file_results) > len(self.files):
            raise ValueError("per_file_results longer than files")
        for result, source in zip(self.per_file_results, self.files):
            if result.file_name != source.name:
                raise ValueError("per_file_results out of file order")
        if (self.archive_path is not None) != (self.status == JobStatus.COMPLETED):
            raise ValueError("archive_path must be set if and only if status is completed")
        if self.error is not None and self.status != JobStatus.ERROR:
            raise ValueError("error is only allowed in the error state")
        if self.status == JobStatus.COMPLETED and self.progress != 100:
            raise ValueError("completed job must report progress 100")
        if self.status != JobStatus.UPLOADED and self.status != JobStatus.ERROR and self.format is None:
            raise ValueError("format must be set once conversion has started")
        return self

    # ---------------- Transitions ----------------

    def _require(self, *allowed: JobStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransition(
                f"job {self.id} is {self.status.value}; expected one of "
                + ", ".join(s.value for s in allowed)
            )

    def mark_processing(self, fmt: ImageFormat) -> None:
        self._require(JobStatus.UPLOADED)
        self.status = JobStatus.PROCESSING
        self.format = fmt
        self.started_at = utcnow()
        self.progress = 0

    def record_file(self, result: FileResult) -> None:
        """Append the next file's outcome and recompute progress."""
        self._require(JobStatus.PROCESSING)
        index = len(self.per_file_results)
        if index >= len(self.files):
            raise InvalidTransition(f"job {self.id} has no file left to record")
        expected = self.files[index].name
        if result.file_name != expected:
            raise InvalidTransition(
                f"result for {result.file_name!r} recorded out of order; expected {expected!r}"
            )
        self.per_file_results.append(result)
        total = len(self.files)
        progress = int(100 * len(self.per_file_results) / total + 0.5)
        self.progress = max(self.progress, progress)

    def mark_completed(self, archive_path: str) -> None:
        self._require(JobStatus.PROCESSING)
        self.status = JobStatus.COMPLETED
        self.archive_path = archive_path
        self.progress = 100
        self.completed_at = utcnow()

    def mark_error(self, reason: str) -> None:
        self._require(JobStatus.PROCESSING)
        self.status = JobStatus.ERROR
        self.error = reason
        self.completed_at = utcnow()

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.per_file_results if r.success)
