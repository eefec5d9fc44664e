import asyncio
import logging
import os
import re
import shutil
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Sequence

from .errors import (
    ArchiveFailure,
    ArtifactMissing,
    CapabilityUnavailable,
    ConversionFailure,
    ConversionServiceError,
    InvalidUpload,
    JobNotFound,
    JobStoreError,
    PreconditionFailed,
    UnsupportedFormat,
)
from .interfaces import (
    ARCHIVE_NAME,
    INPUT_DIR,
    JOB_FILE,
    OUTPUT_DIR,
    ArchiveGateway,
    ConversionOptions,
    ConverterGateway,
    StorageGateway,
)
from .models import FileResult, ImageFormat, JobRecord, JobStatus, SourceFile, utcnow

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}
CHUNK = 1024 * 1024


@dataclass(frozen=True)
class Upload:
    filename: str
    content_type: str
    read: Callable[[int], Awaitable[bytes]]


def _safe_name(filename: str) -> str:
    name = os.path.basename((filename or "").replace("\\", "/")).strip()
    name = re.sub(r"[^\w.\- ]", "_", name)
    if not name or name.startswith("."):
        name = f"upload{name}"
    return name


def _unique_name(name: str, taken: set[str]) -> str:
    """Rename name until its stem is free in taken, then claim the stem.

    Output images are named after the stem, so stems must differ even
    when names only differ by extension or case.
    """
    stem, ext = os.path.splitext(name)
    candidate, n = stem, 0
    while candidate.lower() in taken:
        n += 1
        candidate = f"{stem}({n})"
    taken.add(candidate.lower())
    return f"{candidate}{ext}"


def _is_pdf(upload: Upload) -> bool:
    ct = (upload.content_type or "").split(";")[0].strip().lower()
    return ct in PDF_CONTENT_TYPES or (upload.filename or "").lower().endswith(".pdf")


class ConversionService:
    """Core domain service driving batch conversion jobs.

    This service is framework-agnostic. It owns the job lifecycle:
    creating jobs from uploads, moving them into processing, and running
    each batch as a detached asyncio task that reports progress through
    the store after every file. Gateways handle storage, the conversion
    tool and archive packaging.
    """

    def __init__(
        self,
        storage: StorageGateway,
        converter: ConverterGateway,
        archiver: ArchiveGateway,
        *,
        density: int = 300,
        jpeg_quality: int = 90,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._converter = converter
        self._archiver = archiver
        self._density = density
        self._jpeg_quality = jpeg_quality
        self._clock = clock
        self._tasks: dict[str, asyncio.Task] = {}
        # job id -> [lock, number of callers holding or waiting on it]
        self._leases: dict[str, list] = {}

    # ---------------- Lifecycle ----------------

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def join(self) -> None:
        """Wait until every batch started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ---------------- Submission ----------------

    async def create_job(self, uploads: Sequence[Upload], *, max_upload_mb: int) -> JobRecord:
        """Persist uploaded PDFs under a new job and store its record as uploaded."""
        if not uploads:
            raise InvalidUpload("no PDF files were provided")
        for u in uploads:
            if not _is_pdf(u):
                raise InvalidUpload(f"{u.filename or 'upload'} is not a PDF file")

        job_id = str(uuid.uuid4())
        job_dir = Path(self._storage.job_dir(job_id))
        input_dir = job_dir / INPUT_DIR
        input_dir.mkdir(parents=True, exist_ok=True)

        max_bytes = max_upload_mb * 1024 * 1024
        files: list[SourceFile] = []
        taken: set[str] = set()
        try:
            for u in uploads:
                name = _unique_name(_safe_name(u.filename), taken)
                path = input_dir / name
                size_bytes = 0
                with path.open("wb") as f_out:
                    while True:
                        chunk = await u.read(CHUNK)
                        if not chunk:
                            break
                        size_bytes += len(chunk)
                        if size_bytes > max_bytes:
                            raise InvalidUpload(
                                f"{name} exceeds {max_upload_mb} MB", too_large=True
                            )
                        f_out.write(bytes(chunk))
                files.append(SourceFile(name=name, size=size_bytes, source_path=str(path)))
            job = JobRecord(id=job_id, files=files, created_at=self._clock())
            self._storage.create_job(job)
        except (ConversionServiceError, OSError) as e:
            shutil.rmtree(job_dir, ignore_errors=True)
            if isinstance(e, OSError):
                raise JobStoreError(f"failed to save upload: {e}") from e
            raise

        logger.info("Job %s created with %d file(s)", job_id, len(files))
        return job

    # ---------------- Status & download ----------------

    def load_job(self, job_id: str) -> JobRecord:
        return self._storage.load_job(job_id)

    def resolve_download(self, job_id: str) -> str:
        """Return the archive location of a completed job."""
        job = self._storage.load_job(job_id)
        if job.status != JobStatus.COMPLETED:
            raise PreconditionFailed(f"conversion has not completed (status: {job.status.value})")
        if not job.archive_path or not os.path.isfile(job.archive_path):
            raise ArtifactMissing("archive file not found")
        return job.archive_path

    # ---------------- Conversion ----------------

    async def capability_version(self) -> str:
        """Version of the conversion tool; raises CapabilityUnavailable."""
        return await asyncio.to_thread(self._converter.check_available)

    def options_for(self, fmt: ImageFormat) -> ConversionOptions:
        quality = self._jpeg_quality if fmt == ImageFormat.JPEG else None
        return ConversionOptions(format=fmt, density=self._density, quality=quality)

    async def start_conversion(self, job_id: str, fmt: str = "png") -> JobRecord:
        """Move an uploaded job into processing and launch its batch in the background.

        Returns as soon as the processing state is stored. A job that is
        already processing or completed is returned unchanged and no second
        batch is started.
        """
        try:
            image_format = ImageFormat.parse(fmt)
        except ValueError:
            raise UnsupportedFormat(f"unsupported format {fmt!r}; use png or jpeg")

        async with self._lease(job_id):
            job = self._storage.load_job(job_id)
            if job.status in (JobStatus.PROCESSING, JobStatus.COMPLETED):
                return job
            if job.status == JobStatus.ERROR:
                raise PreconditionFailed(f"job {job_id} already failed: {job.error}")

            version = await self.capability_version()
            logger.info("Conversion tool available (version %s)", version)

            job.mark_processing(image_format)
            self._storage.save_job(job)

            task = asyncio.create_task(self._run_batch(job_id), name=f"batch-{job_id}")
            self._tasks[job_id] = task
            task.add_done_callback(lambda _t, jid=job_id: self._forget(jid))
        return job

    @asynccontextmanager
    async def _lease(self, job_id: str) -> AsyncIterator[None]:
        entry = self._leases.setdefault(job_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and self._leases.get(job_id) is entry:
                del self._leases[job_id]

    def _forget(self, job_id: str) -> None:
        self._tasks.pop(job_id, None)

    def _persist(self, job: JobRecord) -> bool:
        try:
            self._storage.save_job(job)
            return True
        except JobNotFound:
            raise
        except ConversionServiceError as e:
            # Next file boundary writes the whole record again.
            logger.warning("Job %s: could not persist progress %d%%: %s", job.id, job.progress, e)
            return False

    async def _run_batch(self, job_id: str) -> None:
        try:
            job = self._storage.load_job(job_id)
        except ConversionServiceError:
            logger.exception("Job %s: cannot load record, batch abandoned", job_id)
            return

        try:
            await self._convert_all(job)
        except JobNotFound:
            self._drop_purged(job_id)
        except Exception as e:
            logger.exception("Job %s: unexpected batch failure", job_id)
            if job.status == JobStatus.PROCESSING:
                job.mark_error(f"{type(e).__name__}: {e}")
                try:
                    self._persist(job)
                except JobNotFound:
                    self._drop_purged(job_id)

    def _drop_purged(self, job_id: str) -> None:
        """Clean up after a job whose record was deleted while its batch ran.

        The converter may have re-created the job directory; without a
        record it is removed again so the purge sticks.
        """
        logger.warning("Job %s was deleted during conversion; batch abandoned", job_id)
        job_dir = self._storage.job_dir(job_id)
        if not os.path.exists(os.path.join(job_dir, JOB_FILE)):
            shutil.rmtree(job_dir, ignore_errors=True)

    async def _convert_all(self, job: JobRecord) -> None:
        try:
            await self.capability_version()
        except CapabilityUnavailable as e:
            job.mark_error(str(e))
            self._persist(job)
            logger.error("Job %s failed: %s", job.id, e)
            return

        job_dir = Path(self._storage.job_dir(job.id))
        output_dir = job_dir / OUTPUT_DIR
        options = self.options_for(job.format)
        total = len(job.files)
        logger.info("Job %s: converting %d file(s) to %s", job.id, total, options.format.value)

        for i, source in enumerate(job.files, start=1):
            try:
                outputs = await asyncio.to_thread(
                    self._converter.convert, source.source_path, str(output_dir), options
                )
                result = FileResult(file_name=source.name, success=True, output_count=len(outputs))
                logger.info("Job %s: %s -> %d image(s) (%d/%d)", job.id, source.name, len(outputs), i, total)
            except ConversionFailure as e:
                result = FileResult(file_name=source.name, success=False, error_reason=str(e))
                logger.warning("Job %s: %s failed: %s (%d/%d)", job.id, source.name, e, i, total)
            except Exception as e:
                result = FileResult(
                    file_name=source.name, success=False, error_reason=f"{type(e).__name__}: {e}"
                )
                logger.exception("Job %s: %s raised unexpectedly", job.id, source.name)
            job.record_file(result)
            self._persist(job)

        succeeded = job.success_count
        logger.info("Job %s: %d/%d file(s) converted", job.id, succeeded, total)
        if succeeded == 0:
            job.mark_error("no file could be converted")
        else:
            try:
                archive = await asyncio.to_thread(
                    self._archiver.build_archive, str(output_dir), str(job_dir / ARCHIVE_NAME)
                )
            except ArchiveFailure as e:
                job.mark_error(f"archive build failed: {e}")
            else:
                job.mark_completed(archive)

        if not self._persist(job):
            logger.error("Job %s: terminal state %s was not stored", job.id, job.status.value)
        elif job.status == JobStatus.COMPLETED:
            logger.info("Job %s completed", job.id)
        else:
            logger.error("Job %s failed: %s", job.id, job.error)

    # ---------------- Recovery ----------------

    def recover_interrupted(self, stale_after: timedelta) -> list[str]:
        """Fail processing jobs left behind by a previous process.

        A job counts as interrupted when no batch runs for it here and it
        started longer than stale_after ago.
        """
        now = self._clock()
        recovered: list[str] = []
        for job_id in self._storage.list_job_ids():
            if self.is_running(job_id):
                continue
            try:
                job = self._storage.load_job(job_id)
            except ConversionServiceError as e:
                logger.debug("Skipping %s during recovery: %s", job_id, e)
                continue
            if job.status != JobStatus.PROCESSING:
                continue
            started = job.started_at or job.created_at
            if now - started <= stale_after:
                continue
            job.mark_error("conversion interrupted before completion")
            try:
                stored = self._persist(job)
            except JobNotFound:
                continue
            if stored:
                recovered.append(job_id)
                logger.warning("Job %s marked as error after interruption", job_id)
        return recovered
