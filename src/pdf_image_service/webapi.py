import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, List, Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from pdf_image_service import __version__
from pdf_image_service.config import Settings
from pdf_image_service.conversion import (
    ArchiveGateway,
    CapabilityUnavailable,
    ConversionService,
    ConversionServiceError,
    ConverterGateway,
    InvalidUpload,
    JobNotFound,
    JobRecord,
    PreconditionFailed,
    RetentionSweeper,
    UnsupportedFormat,
    Upload,
)
from pdf_image_service.conversion.adapters import ImageMagickConverter, LocalStorage, ZipArchiveBuilder
from pdf_image_service.logging_setup import init_logger

logger = logging.getLogger(__name__)


class ConvertRequest(BaseModel):
    format: str = "png"


def _http_error(e: ConversionServiceError) -> HTTPException:
    """Map a domain error onto the HTTP status the client sees."""
    if isinstance(e, JobNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, CapabilityUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, PreconditionFailed):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, InvalidUpload):
        code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE if e.too_large else status.HTTP_400_BAD_REQUEST
    elif isinstance(e, UnsupportedFormat):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail={"code": e.code, "message": str(e)})


def _links(job_id: str) -> dict[str, str]:
    return {
        "self": f"/jobs/{job_id}",
        "convert": f"/jobs/{job_id}/convert",
        "download": f"/jobs/{job_id}/download",
    }


# Server-side locations stay out of what clients see.
_PRIVATE_FIELDS = {"archive_path": True, "files": {"__all__": {"source_path"}}}


def _job_view(job: JobRecord) -> dict[str, Any]:
    body = job.model_dump(mode="json", exclude=_PRIVATE_FIELDS)
    body["links"] = _links(job.id)
    return body


def create_app(
    settings: Optional[Settings] = None,
    *,
    converter: Optional[ConverterGateway] = None,
    archiver: Optional[ArchiveGateway] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Gateways default to ImageMagick and ZIP packaging; tests pass fakes.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_logger(settings)
        storage = LocalStorage(str(settings.data_dir))
        storage.ensure_base()
        extra = {"clock": clock} if clock else {}
        service = ConversionService(
            storage=storage,
            converter=converter or ImageMagickConverter(
                settings.imagemagick_binary, timeout_sec=settings.convert_timeout_sec
            ),
            archiver=archiver or ZipArchiveBuilder(),
            density=settings.density,
            jpeg_quality=settings.jpeg_quality,
            **extra,
        )
        sweeper = RetentionSweeper(
            storage,
            retention=settings.retention,
            interval=settings.cleanup_interval,
            **extra,
        )
        app.state.settings = settings
        app.state.service = service
        app.state.sweeper = sweeper

        logger.info("Data dir: %s", settings.data_dir)
        recovered = service.recover_interrupted(settings.stale_processing)
        if recovered:
            logger.warning("Marked %d interrupted job(s) as error", len(recovered))
        if settings.enable_cleanup:
            sweeper.start()
            logger.info("Periodic cleanup enabled (every %s)", settings.cleanup_interval)

        yield

        await sweeper.stop()
        await service.stop()

    app = FastAPI(
        title="PDF Image Service",
        version=os.getenv("PDF_IMAGE_SERVICE_VERSION", __version__),
        description=(
            "RESTful API for converting batches of PDF documents into PNG or "
            "JPEG page images, delivered as a ZIP archive."
        ),
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Basic health check endpoint, with the conversion tool's availability."""
        service: ConversionService = request.app.state.service
        try:
            version = await service.capability_version()
        except CapabilityUnavailable as e:
            return {"status": "degraded", "imagemagick": None, "message": str(e)}
        return {"status": "ok", "imagemagick": version}

    @app.post("/jobs", status_code=status.HTTP_201_CREATED)
    async def create_job(request: Request, files: List[UploadFile] = File(...)) -> JSONResponse:
        """Create a conversion job from one or more uploaded PDFs.

        Accepts multipart/form-data with one or more parts named "files".
        The job starts in the uploaded state; POST /jobs/{id}/convert starts it.
        """
        service: ConversionService = request.app.state.service
        cfg: Settings = request.app.state.settings
        uploads = [
            Upload(
                filename=f.filename or "upload.pdf",
                content_type=f.content_type or "application/octet-stream",
                read=f.read,
            )
            for f in files
        ]
        try:
            job = await service.create_job(uploads, max_upload_mb=cfg.max_upload_mb)
        except ConversionServiceError as e:
            raise _http_error(e)

        body = {
            "id": job.id,
            "status": job.status.value,
            "files": [{"name": f.name, "size": f.size} for f in job.files],
            "links": _links(job.id),
        }
        headers = {"Location": f"/jobs/{job.id}"}
        return JSONResponse(status_code=status.HTTP_201_CREATED, content=body, headers=headers)

    @app.post("/jobs/{job_id}/convert", status_code=status.HTTP_202_ACCEPTED)
    async def start_conversion(job_id: str, request: Request, body: Optional[ConvertRequest] = None) -> JSONResponse:
        service: ConversionService = request.app.state.service
        fmt = body.format if body is not None else "png"
        try:
            job = await service.start_conversion(job_id, fmt)
        except ConversionServiceError as e:
            raise _http_error(e)
        content = {
            "id": job.id,
            "status": job.status.value,
            "format": job.format.value if job.format else None,
            "progress": job.progress,
            "links": _links(job.id),
        }
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=content)

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request) -> JSONResponse:
        service: ConversionService = request.app.state.service
        try:
            job = service.load_job(job_id)
        except ConversionServiceError as e:
            raise _http_error(e)
        return JSONResponse(content=_job_view(job))

    @app.get("/jobs/{job_id}/download")
    async def download(job_id: str, request: Request) -> FileResponse:
        service: ConversionService = request.app.state.service
        try:
            archive_path = service.resolve_download(job_id)
        except ConversionServiceError as e:
            raise _http_error(e)
        return FileResponse(
            archive_path,
            media_type="application/zip",
            filename=f"converted_images_{job_id}.zip",
        )

    @app.post("/cleanup")
    async def cleanup(request: Request) -> dict[str, Any]:
        """Run a retention sweep now instead of waiting for the next scheduled one."""
        sweeper: RetentionSweeper = request.app.state.sweeper
        deleted = await asyncio.to_thread(sweeper.sweep)
        return {"deleted": deleted, "count": len(deleted)}

    return app


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    reload = os.getenv("RELOAD", "false").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("pdf_image_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
