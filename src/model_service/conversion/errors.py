class ConversionServiceError(Exception):
    """Base class for errors raised by the conversion domain."""


class ValidationError(ConversionServiceError):
    """Input rejected before any job was created."""


class JobNotFoundError(ConversionServiceError):
    """Unknown job id, or a ledger row whose blob has gone missing."""

    def __init__(self, job_id: str, message: str = "job not found") -> None:
        super().__init__(message)
        self.job_id = job_id


class ArtifactNotReadyError(ConversionServiceError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"model for job {job_id} is not ready ({status})")
        self.job_id = job_id
        self.status = status


class ConversionFailedError(ConversionServiceError):
    def __init__(self, job_id: str, error: str | None) -> None:
        super().__init__(f"conversion failed for job {job_id}")
        self.job_id = job_id
        self.error = error


class ConverterError(ConversionServiceError):
    """Raised by a converter to report that the input could not be converted.

    The message is recorded on the job; it never escapes the worker.
    """


class StorageError(ConversionServiceError):
    """Blob store or ledger unavailable or refusing a write."""


class PayloadTooLargeError(ValidationError):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(f"upload of {size_bytes} bytes exceeds limit of {limit_bytes} bytes")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
