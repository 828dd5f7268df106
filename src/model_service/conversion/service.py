import asyncio
import uuid
from datetime import datetime, timezone

import structlog
from structlog.typing import FilteringBoundLogger

from .errors import (
    ArtifactNotReadyError,
    ConversionFailedError,
    ConverterError,
    JobNotFoundError,
    PayloadTooLargeError,
    ValidationError,
)
from .interfaces import Blob, ConversionOutcome, ConverterGateway, LedgerGateway, StorageGateway
from .models import JobRecord, JobStatus, parse_timestamp, utcnow

LOGGER = structlog.get_logger(__name__)

MODEL_CONTENT_TYPE = "model/gltf-binary"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
INTERNAL_ERROR_MESSAGE = "internal error during conversion"


def image_key_for(job_id: str) -> str:
    return f"images/{job_id}"


def model_key_for(job_id: str) -> str:
    return f"models/{job_id}.glb"


class ConversionService:
    """Core domain service orchestrating image-to-model conversion jobs.

    This service is framework-agnostic. Ingest stores the image, records a
    pending job and hands the id to a pool of asyncio workers; each worker
    drives the job through ``processing`` to ``completed`` or ``failed``.
    Read methods resolve status and assets straight from the ledger and blob
    store and never mutate anything.
    """

    def __init__(
        self,
        storage: StorageGateway,
        ledger: LedgerGateway,
        converter: ConverterGateway,
        *,
        workers: int = 4,
        max_upload_bytes: int | None = None,
        converter_timeout_sec: float | None = None,
        stale_after_sec: float | None = None,
        stale_check_interval_sec: float = 60.0,
    ) -> None:
        self._storage = storage
        self._ledger = ledger
        self._converter = converter
        self._workers = workers
        self._max_upload_bytes = max_upload_bytes
        self._converter_timeout_sec = converter_timeout_sec
        self._stale_after_sec = stale_after_sec
        self._stale_check_interval_sec = stale_check_interval_sec
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._scheduled: set[str] = set()
        self._tasks: list[asyncio.Task] = []

    @property
    def queue(self) -> asyncio.Queue[str]:
        return self._queue

    async def start(self) -> None:
        pending = self._ledger.list_by_status(JobStatus.PENDING)
        for job in pending:
            self.schedule(job.id)
        if pending:
            LOGGER.info("pending_jobs_requeued", count=len(pending))

        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)
        if self._stale_after_sec is not None:
            self._tasks.append(asyncio.create_task(self._monitor_loop()))

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def join(self) -> None:
        """Wait until every scheduled conversion has been processed."""
        await self._queue.join()

    # Pipeline

    async def ingest(self, image_bytes: bytes, content_type: str | None) -> JobRecord:
        """Store the image, record a pending job and schedule its conversion.

        Returns as soon as the blob and the ledger row exist; never waits for
        the conversion itself.
        """
        if not image_bytes:
            raise ValidationError("no image data provided")
        if self._max_upload_bytes is not None and len(image_bytes) > self._max_upload_bytes:
            raise PayloadTooLargeError(len(image_bytes), self._max_upload_bytes)

        job_id = str(uuid.uuid4())
        image_key = image_key_for(job_id)
        # A failed blob write propagates before any job row exists.
        await asyncio.to_thread(
            self._storage.put, image_key, image_bytes, (content_type or "").strip() or DEFAULT_CONTENT_TYPE
        )

        job = JobRecord(
            id=job_id,
            image_key=image_key,
            status=JobStatus.PENDING,
            created_at=utcnow(),
        )
        await asyncio.to_thread(self._ledger.insert, job)
        self.schedule(job_id)
        LOGGER.info("job_created", job_id=job_id, size_bytes=len(image_bytes), content_type=content_type)
        return job

    def schedule(self, job_id: str) -> bool:
        """Queue a conversion for job_id unless one is already queued or running."""
        if job_id in self._scheduled:
            LOGGER.warning("conversion_already_scheduled", job_id=job_id)
            return False
        self._scheduled.add(job_id)
        self._queue.put_nowait(job_id)
        return True

    async def run_conversion(self, job_id: str) -> None:
        """Drive one job from pending to a terminal state.

        Never raises except on cancellation, in which case the job stays at
        ``processing``.
        """
        log = LOGGER.bind(job_id=job_id)
        try:
            started = self._ledger.transition(
                job_id, JobStatus.PENDING, JobStatus.PROCESSING, updated_at=utcnow()
            )
        except Exception:
            log.exception("conversion_start_failed")
            return
        if not started:
            log.warning("conversion_skipped", reason="job missing or not pending")
            return

        log.info("conversion_started")
        try:
            await self._convert(job_id, log)
        except asyncio.CancelledError:
            log.warning("conversion_interrupted")
            raise
        except Exception:
            log.exception("conversion_crashed")
            self._fail(job_id, INTERNAL_ERROR_MESSAGE, log)

    async def _convert(self, job_id: str, log: FilteringBoundLogger) -> None:
        job = self._ledger.get(job_id)
        if job is None:
            log.warning("conversion_job_vanished")
            return

        image = await asyncio.to_thread(self._storage.get, job.image_key)
        if image is None:
            self._fail(job_id, f"source image missing from storage: {job.image_key}", log)
            return

        outcome = await self._invoke_converter(image)
        if not outcome.ok:
            self._fail(job_id, outcome.error or "conversion failed", log)
            return

        # The model must be durable before any reader can observe ``completed``.
        model_key = model_key_for(job_id)
        await asyncio.to_thread(self._storage.put, model_key, outcome.artifact, MODEL_CONTENT_TYPE)
        if self._ledger.transition(
            job_id,
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
            updated_at=utcnow(),
            model_key=model_key,
        ):
            log.info("conversion_completed", model_key=model_key, size_bytes=len(outcome.artifact or b""))
        else:
            log.warning("conversion_result_discarded", reason="job no longer processing")

    async def _invoke_converter(self, image: Blob) -> ConversionOutcome:
        call = asyncio.to_thread(self._converter.convert, image.data, image.content_type)
        try:
            if self._converter_timeout_sec is None:
                return await call
            return await asyncio.wait_for(call, timeout=self._converter_timeout_sec)
        except ConverterError as e:
            return ConversionOutcome.failure(str(e) or "conversion failed")
        except asyncio.TimeoutError:
            return ConversionOutcome.failure(f"conversion timed out after {self._converter_timeout_sec:g}s")

    def _fail(self, job_id: str, error: str, log: FilteringBoundLogger) -> None:
        try:
            recorded = self._ledger.transition(
                job_id,
                JobStatus.PROCESSING,
                JobStatus.FAILED,
                updated_at=utcnow(),
                error=error,
            )
        except Exception:
            # Nothing left to try; the job stays at processing for the stuck-job monitor.
            log.exception("conversion_failure_not_recorded", error=error)
            return
        if recorded:
            log.warning("conversion_failed", error=error)
        else:
            log.warning("conversion_failure_discarded", error=error, reason="job no longer processing")

    # Resolver

    def get_status(self, job_id: str) -> JobRecord:
        job = self._ledger.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_image(self, job_id: str) -> Blob:
        job = self.get_status(job_id)
        blob = self._storage.get(job.image_key)
        if blob is None:
            raise JobNotFoundError(job_id, "image not found in storage")
        return blob

    def get_artifact(self, job_id: str) -> Blob:
        job = self.get_status(job_id)
        if job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
            raise ArtifactNotReadyError(job_id, job.status)
        if job.status == JobStatus.FAILED:
            raise ConversionFailedError(job_id, job.error)
        blob = self._storage.get(job.model_key) if job.model_key else None
        if blob is None:
            raise JobNotFoundError(job_id, "model not found in storage")
        return Blob(data=blob.data, content_type=MODEL_CONTENT_TYPE)

    # Monitoring

    def find_stuck_jobs(self, now: datetime | None = None) -> list[JobRecord]:
        """Jobs sitting in ``processing`` longer than the staleness threshold."""
        if self._stale_after_sec is None:
            return []
        now = now or datetime.now(timezone.utc)
        stuck = []
        for job in self._ledger.list_by_status(JobStatus.PROCESSING):
            since = parse_timestamp(job.updated_at or job.created_at)
            if (now - since).total_seconds() > self._stale_after_sec:
                stuck.append(job)
        return stuck

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self._stale_check_interval_sec)
            try:
                for job in self.find_stuck_jobs():
                    LOGGER.warning("conversion_stuck", job_id=job.id, updated_at=job.updated_at)
            except Exception:
                LOGGER.exception("stuck_job_scan_failed")

    async def _worker_loop(self, name: str) -> None:
        while True:
            job_id = await self._queue.get()
            LOGGER.debug("job_dequeued", worker=name, job_id=job_id)
            try:
                await self.run_conversion(job_id)
            finally:
                self._scheduled.discard(job_id)
                self._queue.task_done()
