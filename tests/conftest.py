import io
import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from pdf_image_service.conversion import (
    ArchiveFailure,
    CapabilityUnavailable,
    ConversionFailure,
    ConversionService,
    Upload,
)
from pdf_image_service.conversion.adapters import LocalStorage, ZipArchiveBuilder

PDF_BYTES = b"%PDF-1.4\n1 0 obj<<>>endobj\ntrailer<<>>\n%%EOF\n"
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeConverter:
    """Writes placeholder page images instead of calling ImageMagick."""

    def __init__(self, pages=None, fail=(), available=True):
        self.pages = dict(pages or {})
        self.fail = set(fail)
        self.available = available
        self.calls = []
        self.checks = 0

    def check_available(self):
        self.checks += 1
        available = self.available(self.checks) if callable(self.available) else self.available
        if not available:
            raise CapabilityUnavailable("ImageMagick binary 'convert' not found on PATH")
        return "7.1.1-test"

    def convert(self, source_path, output_dir, options):
        name = os.path.basename(source_path)
        self.calls.append(name)
        if name in self.fail:
            raise ConversionFailure(f"{name}: no images defined")
        os.makedirs(output_dir, exist_ok=True)
        stem = Path(name).stem
        outputs = []
        for i in range(self.pages.get(name, 2)):
            p = os.path.join(output_dir, f"{stem}-{i:03d}.{options.format.value}")
            with open(p, "wb") as f:
                f.write(b"image")
            outputs.append(p)
        return outputs


class BrokenArchiver:
    def build_archive(self, source_dir, archive_path):
        raise ArchiveFailure("disk full")


def upload(name, data=PDF_BYTES, content_type="application/pdf"):
    buf = io.BytesIO(data)

    async def read(n):
        return buf.read(n)

    return Upload(filename=name, content_type=content_type, read=read)


@pytest.fixture
def storage(tmp_path):
    s = LocalStorage(str(tmp_path / "data"))
    s.ensure_base()
    return s


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def service(storage, converter):
    return ConversionService(storage, converter, ZipArchiveBuilder(), clock=lambda: NOW)
