"""
Domain layer for batch PDF-to-image conversion.
Provides interfaces (gateways), the job record model, the service that
orchestrates conversion jobs and the retention sweeper, abstracting storage,
ImageMagick and archive packaging so front-ends (HTTP or others) can use the
same core logic.
"""

from .errors import (
    ArchiveFailure,
    ArtifactMissing,
    CapabilityUnavailable,
    ConversionFailure,
    ConversionServiceError,
    InvalidTransition,
    InvalidUpload,
    JobNotFound,
    JobStoreError,
    PreconditionFailed,
    UnsupportedFormat,
)
from .interfaces import ArchiveGateway, ConversionOptions, ConverterGateway, StorageGateway
from .models import FileResult, ImageFormat, JobRecord, JobStatus, SourceFile
from .retention import RetentionSweeper
from .service import ConversionService, Upload
