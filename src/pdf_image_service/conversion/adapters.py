import logging
import os
import re
import shutil
import subprocess
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .errors import (
    ArchiveFailure,
    CapabilityUnavailable,
    ConversionFailure,
    JobNotFound,
    JobStoreError,
)
from .interfaces import (
    ARCHIVE_NAME,
    INPUT_DIR,
    JOB_FILE,
    OUTPUT_DIR,
    ArchiveGateway,
    ConversionOptions,
    ConverterGateway,
    JobPaths,
    StorageGateway,
)
from .models import ImageFormat, JobRecord

logger = logging.getLogger(__name__)

_JOB_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


class LocalStorage(StorageGateway):
    """One directory per job under DATA_DIR/jobs, holding job.json and its payloads."""

    def __init__(self, data_dir: str) -> None:
        self._base = Path(data_dir).resolve()
        self._jobs = self._base / "jobs"

    def ensure_base(self) -> None:
        self._jobs.mkdir(parents=True, exist_ok=True)

    def _checked_id(self, job_id: str) -> str:
        # Keeps identifiers from escaping the jobs directory.
        if not _JOB_ID_RE.fullmatch(job_id or ""):
            raise JobNotFound("job not found")
        return job_id

    def job_dir(self, job_id: str) -> str:
        return str(self._jobs / self._checked_id(job_id))

    def paths(self, job_id: str) -> JobPaths:
        d = Path(self.job_dir(job_id))
        return JobPaths(
            job_dir=str(d),
            input_dir=str(d / INPUT_DIR),
            output_dir=str(d / OUTPUT_DIR),
            job_file=str(d / JOB_FILE),
            archive_path=str(d / ARCHIVE_NAME),
        )

    def create_job(self, job: JobRecord) -> None:
        p = self.paths(job.id)
        if os.path.exists(p.job_file):
            raise JobStoreError(f"job {job.id} already exists")
        try:
            os.makedirs(p.input_dir, exist_ok=True)
            os.makedirs(p.output_dir, exist_ok=True)
        except OSError as e:
            raise JobStoreError(f"cannot create job directory: {e}") from e
        self._write(p, job)

    def save_job(self, job: JobRecord) -> None:
        p = self.paths(job.id)
        # A deleted job stays deleted, even if its directory was re-created.
        if not os.path.isfile(p.job_file):
            raise JobNotFound(f"job {job.id} no longer exists")
        self._write(p, job)

    def _write(self, p: JobPaths, job: JobRecord) -> None:
        payload = job.model_dump_json(indent=2)
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".job-", suffix=".tmp", dir=p.job_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            # Readers see either the previous record or this one, never a mix.
            os.replace(tmp_name, p.job_file)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise JobStoreError(f"cannot write job {job.id}: {e}") from e

    def load_job(self, job_id: str) -> JobRecord:
        p = Path(self.paths(job_id).job_file)
        if not p.exists():
            raise JobNotFound("job not found")
        try:
            with p.open("r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            raise JobNotFound("job not found")
        except OSError as e:
            raise JobStoreError(f"cannot read job {job_id}: {e}") from e
        try:
            return JobRecord.model_validate_json(raw)
        except ValidationError as e:
            raise JobStoreError(f"job {job_id} record is invalid: {e.error_count()} error(s)") from e

    def list_job_ids(self) -> list[str]:
        if not self._jobs.exists():
            return []
        return sorted(
            entry.name
            for entry in self._jobs.iterdir()
            if entry.is_dir() and _JOB_ID_RE.fullmatch(entry.name)
        )

    def job_mtime(self, job_id: str) -> datetime:
        try:
            ts = os.path.getmtime(self.job_dir(job_id))
        except OSError as e:
            raise JobStoreError(f"cannot stat job {job_id}: {e}") from e
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    def delete_job(self, job_id: str) -> None:
        d = self.job_dir(job_id)
        if not os.path.isdir(d):
            raise JobNotFound("job not found")
        try:
            shutil.rmtree(d)
        except OSError as e:
            raise JobStoreError(f"cannot delete job {job_id}: {e}") from e


class ImageMagickConverter(ConverterGateway):
    """Rasterizes PDF pages with the ImageMagick command line tool."""

    def __init__(self, binary: str = "convert", *, timeout_sec: int = 600) -> None:
        self._binary = binary
        self._timeout = timeout_sec

    def check_available(self) -> str:
        exe = shutil.which(self._binary)
        if exe is None:
            raise CapabilityUnavailable(f"ImageMagick binary {self._binary!r} not found on PATH")
        try:
            proc = subprocess.run(
                [exe, "-version"], capture_output=True, text=True, timeout=30, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CapabilityUnavailable(f"ImageMagick is not usable: {e}") from e
        if proc.returncode != 0:
            raise CapabilityUnavailable(f"ImageMagick exited with status {proc.returncode}")
        m = re.search(r"Version: ImageMagick ([\w.\-]+)", proc.stdout)
        if m is None:
            raise CapabilityUnavailable(f"{self._binary!r} does not look like ImageMagick")
        return m.group(1)

    def build_command(self, source_path: str, output_pattern: str, options: ConversionOptions) -> list[str]:
        cmd = [self._binary, "-density", str(options.density)]
        # White background, transparency flattened away.
        cmd += ["-background", "white", "-alpha", "remove", "-alpha", "off"]
        if options.format == ImageFormat.JPEG and options.quality:
            cmd += ["-quality", str(options.quality)]
        if options.format == ImageFormat.PNG:
            cmd += ["-compress", "zip"]
        cmd += [source_path, output_pattern]
        return cmd

    def convert(self, source_path: str, output_dir: str, options: ConversionOptions) -> list[str]:
        os.makedirs(output_dir, exist_ok=True)
        ext = options.format.value
        stem = Path(source_path).stem
        pattern = os.path.join(output_dir, f"{stem}-%03d.{ext}")
        before = set(os.listdir(output_dir))
        cmd = self.build_command(source_path, pattern, options)
        logger.debug("Running %s", " ".join(cmd))

        def produced() -> list[str]:
            return sorted(
                os.path.join(output_dir, name)
                for name in set(os.listdir(output_dir)) - before
                if name.endswith(f".{ext}")
            )

        def discard() -> None:
            for path in produced():
                try:
                    os.unlink(path)
                except OSError:
                    logger.warning("Could not remove partial output %s", path)

        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout, check=False)
        except subprocess.TimeoutExpired:
            discard()
            raise ConversionFailure(f"conversion timed out after {self._timeout}s")
        except OSError as e:
            discard()
            raise ConversionFailure(f"could not run ImageMagick: {e}") from e

        if proc.returncode != 0:
            discard()
            detail = (proc.stderr or "").strip().splitlines()
            raise ConversionFailure(detail[-1] if detail else f"ImageMagick exited with status {proc.returncode}")
        if proc.stderr and "Warning" not in proc.stderr:
            logger.warning("ImageMagick stderr for %s: %s", source_path, proc.stderr.strip())

        outputs = produced()
        if not outputs:
            raise ConversionFailure("no output images were produced")
        return outputs


class ZipArchiveBuilder(ArchiveGateway):
    def __init__(self, compresslevel: int = 9) -> None:
        self._level = compresslevel

    def build_archive(self, source_dir: str, archive_path: str) -> str:
        src = Path(source_dir)
        files = sorted(p for p in src.rglob("*") if p.is_file()) if src.is_dir() else []
        if not files:
            raise ArchiveFailure("no output files to archive")
        tmp = archive_path + ".partial"
        try:
            with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=self._level) as zf:
                for p in files:
                    zf.write(p, arcname=str(p.relative_to(src)))
            os.replace(tmp, archive_path)
        except (OSError, zipfile.BadZipFile) as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise ArchiveFailure(f"could not build archive: {e}") from e
        logger.info("Archive written: %s (%d bytes)", archive_path, os.path.getsize(archive_path))
        return archive_path
