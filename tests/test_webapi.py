import io
import time
import zipfile
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from pdf_image_service.config import Settings
from pdf_image_service.conversion import JobRecord
from pdf_image_service.conversion.adapters import LocalStorage
from pdf_image_service.webapi import create_app

from conftest import NOW, PDF_BYTES, FakeConverter


def _pdf(name):
    return ("files", (name, PDF_BYTES, "application/pdf"))


def _wait_terminal(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    seen = []
    while time.monotonic() < deadline:
        job = client.get(f"/jobs/{job_id}").json()
        seen.append(job["progress"])
        if job["status"] in ("completed", "error"):
            return job, seen
        time.sleep(0.02)
    pytest.fail(f"job {job_id} did not finish")


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path / "data", enable_cleanup=False, max_upload_mb=1)


@pytest.fixture
def converter():
    return FakeConverter(pages={"A.pdf": 2}, fail={"B.pdf"})


@pytest.fixture
def client(settings, converter):
    app = create_app(settings, converter=converter, clock=lambda: NOW)
    with TestClient(app) as c:
        yield c


def test_upload_convert_poll_download(client):
    resp = client.post("/jobs", files=[_pdf("A.pdf"), _pdf("B.pdf")])
    assert resp.status_code == 201
    body = resp.json()
    job_id = body["id"]
    assert body["status"] == "uploaded"
    assert [f["name"] for f in body["files"]] == ["A.pdf", "B.pdf"]
    assert resp.headers["location"] == f"/jobs/{job_id}"

    resp = client.post(f"/jobs/{job_id}/convert", json={"format": "png"})
    assert resp.status_code == 202
    assert resp.json()["status"] == "processing"

    job, seen = _wait_terminal(client, job_id)
    assert seen == sorted(seen)
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert [r["success"] for r in job["per_file_results"]] == [True, False]
    assert job["per_file_results"][1]["error_reason"]
    assert "archive_path" not in job
    assert [f["name"] for f in job["files"]] == ["A.pdf", "B.pdf"]
    assert all("source_path" not in f for f in job["files"])
    assert job["links"]["download"] == f"/jobs/{job_id}/download"

    resp = client.get(f"/jobs/{job_id}/download")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(resp.content)) as zf:
        assert sorted(zf.namelist()) == ["A-000.png", "A-001.png"]


def test_second_convert_request_is_a_no_op(client, converter):
    job_id = client.post("/jobs", files=[_pdf("A.pdf")]).json()["id"]
    client.post(f"/jobs/{job_id}/convert", json={"format": "jpeg"})
    _wait_terminal(client, job_id)

    resp = client.post(f"/jobs/{job_id}/convert", json={"format": "png"})
    assert resp.status_code == 202
    assert resp.json()["status"] == "completed"
    assert resp.json()["format"] == "jpeg"
    assert converter.calls == ["A.pdf"]


def test_convert_defaults_to_png_without_body(client):
    job_id = client.post("/jobs", files=[_pdf("A.pdf")]).json()["id"]
    resp = client.post(f"/jobs/{job_id}/convert")
    assert resp.status_code == 202
    assert resp.json()["format"] == "png"
    _wait_terminal(client, job_id)


def test_all_files_failing_reports_error(client):
    job_id = client.post("/jobs", files=[_pdf("B.pdf")]).json()["id"]
    client.post(f"/jobs/{job_id}/convert", json={"format": "png"})
    job, _ = _wait_terminal(client, job_id)
    assert job["status"] == "error"
    assert job["error"]

    resp = client.get(f"/jobs/{job_id}/download")
    assert resp.status_code == 409
    assert client.post(f"/jobs/{job_id}/convert", json={"format": "png"}).status_code == 409


def test_upload_validation(client):
    resp = client.post("/jobs", files=[("files", ("notes.txt", b"hi", "text/plain"))])
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "invalid_upload"

    resp = client.post("/jobs", files=[("files", ("big.pdf", b"x" * (1024 * 1024 + 10), "application/pdf"))])
    assert resp.status_code == 413


def test_unknown_job_and_bad_format(client):
    assert client.get("/jobs/missing").status_code == 404
    assert client.get("/jobs/missing/download").status_code == 404
    assert client.post("/jobs/missing/convert", json={"format": "png"}).status_code == 404

    job_id = client.post("/jobs", files=[_pdf("A.pdf")]).json()["id"]
    resp = client.post(f"/jobs/{job_id}/convert", json={"format": "gif"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "unsupported_format"


def test_download_before_conversion_is_a_precondition_failure(client):
    job_id = client.post("/jobs", files=[_pdf("A.pdf")]).json()["id"]
    resp = client.get(f"/jobs/{job_id}/download")
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "precondition_failed"


def test_capability_unavailable(settings):
    app = create_app(settings, converter=FakeConverter(available=False))
    with TestClient(app) as c:
        job_id = c.post("/jobs", files=[_pdf("A.pdf")]).json()["id"]
        resp = c.post(f"/jobs/{job_id}/convert", json={"format": "png"})
        assert resp.status_code == 503
        assert c.get(f"/jobs/{job_id}").json()["status"] == "uploaded"
        assert c.get("/health").json()["status"] == "degraded"


def test_health(client):
    body = client.get("/health").json()
    assert body == {"status": "ok", "imagemagick": "7.1.1-test"}


def test_cleanup_endpoint(client, settings):
    storage = LocalStorage(str(settings.data_dir))
    old = JobRecord(created_at=NOW - timedelta(days=3))
    storage.create_job(old)
    young_id = client.post("/jobs", files=[_pdf("A.pdf")]).json()["id"]

    resp = client.post("/cleanup")
    assert resp.status_code == 200
    assert resp.json()["deleted"] == [old.id]
    assert client.get(f"/jobs/{young_id}").status_code == 200
    assert client.get(f"/jobs/{old.id}").status_code == 404
