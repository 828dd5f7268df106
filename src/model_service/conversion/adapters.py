import io
import json
import os
import struct
import tempfile
import threading
import time
from pathlib import Path

import structlog
from PIL import Image, UnidentifiedImageError

from .errors import StorageError
from .interfaces import Blob, ConversionOutcome, ConverterGateway, LedgerGateway, StorageGateway
from .models import JobRecord, is_lawful

LOGGER = structlog.get_logger(__name__)


def _atomic_write(path: Path, payload: bytes) -> None:
    """Write payload next to path and rename it into place so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class LocalBlobStore(StorageGateway):
    """Append-only blob store on the local filesystem.

    Each blob lives at ``<data_dir>/blobs/<key>`` with its content type in a
    ``<key>.meta.json`` sidecar.
    """

    def __init__(self, data_dir: str) -> None:
        self._base = (Path(data_dir) / "blobs").resolve()
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        try:
            p = (self._base / key).resolve()
        except ValueError as e:
            raise StorageError(f"invalid blob key: {key!r}") from e
        if self._base not in p.parents:
            raise StorageError(f"invalid blob key: {key!r}")
        return p

    @staticmethod
    def _meta_path(p: Path) -> Path:
        return p.with_name(p.name + ".meta.json")

    def put(self, key: str, data: bytes, content_type: str) -> None:
        p = self._path(key)
        meta = json.dumps({"content_type": content_type, "size_bytes": len(data)}).encode("utf-8")
        with self._lock:
            if p.exists():
                raise StorageError(f"blob already exists: {key}")
            try:
                _atomic_write(self._meta_path(p), meta)
                _atomic_write(p, data)
            except OSError as e:
                raise StorageError(f"failed to write blob {key}: {e}") from e

    def get(self, key: str) -> Blob | None:
        p = self._path(key)
        try:
            data = p.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"failed to read blob {key}: {e}") from e
        content_type = "application/octet-stream"
        meta_path = self._meta_path(p)
        if meta_path.exists():
            with meta_path.open("r", encoding="utf-8") as f:
                content_type = str(json.load(f).get("content_type") or content_type)
        return Blob(data=data, content_type=content_type)

    def exists(self, key: str) -> bool:
        return self._path(key).exists()


class LocalJobLedger(LedgerGateway):
    """Job ledger keeping one ``job.json`` per job under ``<data_dir>/jobs/<id>/``.

    Transitions are serialized by a process-wide lock and files are replaced
    atomically, so concurrent readers always see a whole record.
    """

    def __init__(self, data_dir: str) -> None:
        self._base = (Path(data_dir) / "jobs").resolve()
        self._lock = threading.Lock()

    def _job_path(self, job_id: str) -> Path:
        try:
            p = (self._base / job_id / "job.json").resolve()
        except ValueError as e:
            # e.g. an embedded NUL byte
            raise StorageError(f"invalid job id: {job_id!r}") from e
        if self._base not in p.parents:
            raise StorageError(f"invalid job id: {job_id!r}")
        return p

    def _save(self, job: JobRecord) -> None:
        payload = json.dumps(job.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        try:
            _atomic_write(self._job_path(job.id), payload)
        except OSError as e:
            raise StorageError(f"failed to save job {job.id}: {e}") from e

    def _load(self, path: Path) -> JobRecord | None:
        try:
            with path.open("r", encoding="utf-8") as f:
                return JobRecord.from_dict(json.load(f))
        except FileNotFoundError:
            return None

    def insert(self, job: JobRecord) -> None:
        with self._lock:
            if self._job_path(job.id).exists():
                raise StorageError(f"job already exists: {job.id}")
            self._save(job)

    def get(self, job_id: str) -> JobRecord | None:
        try:
            return self._load(self._job_path(job_id))
        except StorageError:
            return None

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
        if not is_lawful(expected, target):
            raise ValueError(f"unlawful transition {expected} -> {target}")
        with self._lock:
            job = self._load(self._job_path(job_id))
            if job is None or job.status != expected:
                return False
            data = job.to_dict()
            data.update(status=target, updated_at=updated_at)
            if model_key is not None:
                data["model_key"] = model_key
            if error is not None:
                data["error"] = error
            self._save(JobRecord.from_dict(data))
            return True

    def list_by_status(self, status: str) -> list[JobRecord]:
        if not self._base.exists():
            return []
        jobs = []
        for path in sorted(self._base.glob("*/job.json")):
            job = self._load(path)
            if job is not None and job.status == status:
                jobs.append(job)
        jobs.sort(key=lambda j: j.created_at)
        return jobs


def build_glb(document: dict[str, object]) -> bytes:
    """Pack a glTF JSON document into a binary glTF 2.0 container with no BIN chunk."""
    chunk = json.dumps(document, separators=(",", ":")).encode("utf-8")
    chunk += b" " * (-len(chunk) % 4)
    total = 12 + 8 + len(chunk)
    return struct.pack("<4sII", b"glTF", 2, total) + struct.pack("<I4s", len(chunk), b"JSON") + chunk


class PlaceholderGlbConverter(ConverterGateway):
    """Stand-in converter producing an empty glTF scene for any decodable image.

    Undecodable input yields a failure outcome. ``delay_sec`` simulates the
    processing time of a real reconstruction model.
    """

    def __init__(self, delay_sec: float = 0.0) -> None:
        self._delay_sec = delay_sec

    def convert(self, data: bytes, content_type: str) -> ConversionOutcome:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
                width, height = img.size
                image_format = img.format
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            return ConversionOutcome.failure(f"unsupported or corrupt image: {e}")

        if self._delay_sec > 0:
            time.sleep(self._delay_sec)

        document = {
            "asset": {
                "version": "2.0",
                "generator": "model-service placeholder",
                "extras": {
                    "source": {
                        "content_type": content_type,
                        "format": image_format,
                        "width": width,
                        "height": height,
                    }
                },
            },
            "scene": 0,
            "scenes": [{"nodes": []}],
        }
        LOGGER.debug("placeholder_model_built", width=width, height=height)
        return ConversionOutcome.success(build_glb(document))
