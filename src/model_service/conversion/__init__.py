"""
Domain layer for image-to-model conversion.
Provides interfaces (gateways) and a service to orchestrate conversion jobs,
abstracting blob storage, the job ledger and the converter so front-ends
(HTTP or others) can use the same core logic.
"""

from .errors import (
    ArtifactNotReadyError,
    ConversionFailedError,
    ConversionServiceError,
    ConverterError,
    JobNotFoundError,
    PayloadTooLargeError,
    StorageError,
    ValidationError,
)
from .interfaces import Blob, ConversionOutcome, ConverterGateway, LedgerGateway, StorageGateway
from .models import JobRecord, JobStatus
from .service import MODEL_CONTENT_TYPE, ConversionService
