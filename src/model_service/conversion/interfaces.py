from dataclasses import dataclass
from typing import Protocol

from .models import JobRecord


@dataclass(frozen=True)
class Blob:
    data: bytes
    content_type: str


@dataclass(frozen=True)
class ConversionOutcome:
    """Result of a converter run: either artifact bytes or a diagnostic."""

    artifact: bytes | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.artifact is not None

    @classmethod
    def success(cls, artifact: bytes) -> "ConversionOutcome":
        return cls(artifact=artifact)

    @classmethod
    def failure(cls, error: str) -> "ConversionOutcome":
        return cls(error=error)


class ConverterGateway(Protocol):
    def convert(self, data: bytes, content_type: str) -> ConversionOutcome:
        """Convert image bytes into a model synchronously.
        This is a blocking call; callers should offload to threads if needed.
        May also raise ConverterError instead of returning a failure outcome.
        """


class StorageGateway(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Store bytes under key. Existing keys are never overwritten."""

    def get(self, key: str) -> Blob | None:
        ...

    def exists(self, key: str) -> bool:
        ...


class LedgerGateway(Protocol):
    def insert(self, job: JobRecord) -> None:
        ...

    def get(self, job_id: str) -> JobRecord | None:
        ...

    def transition(
        self,
        job_id: str,
        expected: str,
        target: str,
        *,
        updated_at: str,
        model_key: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Move job_id from expected to target only if it is currently at expected.

        Returns False when the row is missing or its status no longer matches.
        """

    def list_by_status(self, status: str) -> list[JobRecord]:
        ...
