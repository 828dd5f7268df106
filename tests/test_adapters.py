import json
import struct

import pytest

from model_service.conversion import StorageError
from model_service.conversion.adapters import LocalBlobStore, PlaceholderGlbConverter, build_glb
from model_service.conversion.models import JobRecord, JobStatus, utcnow

from conftest import make_image_bytes


def test_blob_store_keeps_content_type(storage: LocalBlobStore) -> None:
    storage.put("images/one", b"\x89PNG data", "image/png")

    blob = storage.get("images/one")

    assert blob is not None
    assert blob.data == b"\x89PNG data"
    assert blob.content_type == "image/png"
    assert storage.exists("images/one")


def test_blob_store_missing_key_returns_none(storage: LocalBlobStore) -> None:
    assert storage.get("images/nope") is None
    assert not storage.exists("images/nope")


def test_blob_store_never_overwrites(storage: LocalBlobStore) -> None:
    storage.put("models/one.glb", b"first", "model/gltf-binary")

    with pytest.raises(StorageError):
        storage.put("models/one.glb", b"second", "model/gltf-binary")

    assert storage.get("models/one.glb").data == b"first"


def test_blob_store_rejects_keys_outside_its_root(storage: LocalBlobStore) -> None:
    with pytest.raises(StorageError):
        storage.put("../escape", b"x", "text/plain")


def _pending(job_id: str) -> JobRecord:
    return JobRecord(id=job_id, image_key=f"images/{job_id}", status=JobStatus.PENDING, created_at=utcnow())


def test_ledger_insert_and_get(ledger) -> None:
    job = _pending("job-1")
    ledger.insert(job)

    assert ledger.get("job-1") == job
    assert ledger.get("job-2") is None


def test_ledger_rejects_duplicate_insert(ledger) -> None:
    ledger.insert(_pending("job-1"))

    with pytest.raises(StorageError):
        ledger.insert(_pending("job-1"))


def test_ledger_transition_is_conditional(ledger) -> None:
    ledger.insert(_pending("job-1"))
    stamp = utcnow()

    assert ledger.transition("job-1", JobStatus.PENDING, JobStatus.PROCESSING, updated_at=stamp)
    # A second writer expecting the old state loses.
    assert not ledger.transition("job-1", JobStatus.PENDING, JobStatus.PROCESSING, updated_at=utcnow())

    job = ledger.get("job-1")
    assert job.status == JobStatus.PROCESSING
    assert job.updated_at == stamp


def test_ledger_transition_sets_model_key_and_error(ledger) -> None:
    ledger.insert(_pending("ok"))
    ledger.insert(_pending("bad"))
    for job_id in ("ok", "bad"):
        ledger.transition(job_id, JobStatus.PENDING, JobStatus.PROCESSING, updated_at=utcnow())

    ledger.transition("ok", JobStatus.PROCESSING, JobStatus.COMPLETED, updated_at=utcnow(), model_key="models/ok.glb")
    ledger.transition("bad", JobStatus.PROCESSING, JobStatus.FAILED, updated_at=utcnow(), error="boom")

    ok, bad = ledger.get("ok"), ledger.get("bad")
    assert (ok.status, ok.model_key, ok.error) == (JobStatus.COMPLETED, "models/ok.glb", None)
    assert (bad.status, bad.model_key, bad.error) == (JobStatus.FAILED, None, "boom")


def test_ledger_transition_on_missing_job_returns_false(ledger) -> None:
    assert not ledger.transition("ghost", JobStatus.PENDING, JobStatus.PROCESSING, updated_at=utcnow())


def test_ledger_refuses_unlawful_transition(ledger) -> None:
    ledger.insert(_pending("job-1"))

    with pytest.raises(ValueError):
        ledger.transition("job-1", JobStatus.PENDING, JobStatus.COMPLETED, updated_at=utcnow())


def test_ledger_lists_by_status_oldest_first(ledger) -> None:
    ledger.insert(JobRecord(id="b", image_key="images/b", status=JobStatus.PENDING, created_at="2024-01-02T00:00:00Z"))
    ledger.insert(JobRecord(id="a", image_key="images/a", status=JobStatus.PENDING, created_at="2024-01-01T00:00:00Z"))
    ledger.insert(_pending("c"))
    ledger.transition("c", JobStatus.PENDING, JobStatus.PROCESSING, updated_at=utcnow())

    assert [j.id for j in ledger.list_by_status(JobStatus.PENDING)] == ["a", "b"]
    assert [j.id for j in ledger.list_by_status(JobStatus.PROCESSING)] == ["c"]
    assert ledger.list_by_status(JobStatus.FAILED) == []


def test_build_glb_header_and_alignment() -> None:
    glb = build_glb({"asset": {"version": "2.0"}})

    magic, version, length = struct.unpack_from("<4sII", glb, 0)
    chunk_len, chunk_type = struct.unpack_from("<I4s", glb, 12)
    assert (magic, version, length) == (b"glTF", 2, len(glb))
    assert chunk_type == b"JSON"
    assert chunk_len % 4 == 0
    assert json.loads(glb[20 : 20 + chunk_len])["asset"]["version"] == "2.0"


def test_placeholder_converter_describes_source_image() -> None:
    outcome = PlaceholderGlbConverter().convert(make_image_bytes("JPEG", (16, 9)), "image/jpeg")

    assert outcome.ok
    assert outcome.artifact[:4] == b"glTF"
    chunk_len = struct.unpack_from("<I", outcome.artifact, 12)[0]
    document = json.loads(outcome.artifact[20 : 20 + chunk_len])
    source = document["asset"]["extras"]["source"]
    assert (source["width"], source["height"], source["format"]) == (16, 9, "JPEG")


def test_placeholder_converter_rejects_undecodable_bytes() -> None:
    outcome = PlaceholderGlbConverter().convert(b"definitely not an image", "image/png")

    assert not outcome.ok
    assert outcome.artifact is None
    assert "unsupported or corrupt image" in outcome.error
