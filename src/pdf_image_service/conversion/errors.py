class ConversionServiceError(Exception):
    """Base class for every error raised by the conversion domain layer."""

    code = "internal_error"


class JobNotFound(ConversionServiceError):
    code = "not_found"


class ArtifactMissing(JobNotFound):
    """The job is completed but its archive is no longer on disk."""

    code = "artifact_missing"


class PreconditionFailed(ConversionServiceError):
    code = "precondition_failed"


class InvalidTransition(PreconditionFailed):
    code = "invalid_transition"


class CapabilityUnavailable(PreconditionFailed):
    code = "capability_unavailable"


class InvalidUpload(ConversionServiceError):
    code = "invalid_upload"

    def __init__(self, message: str, *, too_large: bool = False) -> None:
        super().__init__(message)
        self.too_large = too_large


class ConversionFailure(ConversionServiceError):
    code = "conversion_failed"


class ArchiveFailure(ConversionServiceError):
    code = "archive_failed"


class JobStoreError(ConversionServiceError):
    code = "store_error"


class UnsupportedFormat(ConversionServiceError):
    code = "unsupported_format"
