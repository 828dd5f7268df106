from __future__ import annotations

import io
import threading
import time

import pytest
from PIL import Image

from model_service.conversion import ConversionOutcome, ConverterError
from model_service.conversion.adapters import LocalBlobStore, LocalJobLedger
from model_service.conversion.ledger_sql import SqlJobLedger


class StaticConverter:
    """Always succeeds with a fixed artifact and records its inputs."""

    def __init__(self, artifact: bytes = b"glb" * 10) -> None:
        self.artifact = artifact
        self.calls: list[tuple[bytes, str]] = []

    def convert(self, data: bytes, content_type: str) -> ConversionOutcome:
        self.calls.append((data, content_type))
        return ConversionOutcome.success(self.artifact)


class FailingConverter:
    def __init__(self, message: str = "bad input") -> None:
        self.message = message

    def convert(self, data: bytes, content_type: str) -> ConversionOutcome:
        return ConversionOutcome.failure(self.message)


class RaisingConverter:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    def convert(self, data: bytes, content_type: str) -> ConversionOutcome:
        raise self.exc


class SlowConverter:
    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = delay_sec

    def convert(self, data: bytes, content_type: str) -> ConversionOutcome:
        time.sleep(self.delay_sec)
        return ConversionOutcome.success(b"late")


class GatedConverter:
    """Blocks inside convert() until ``release`` is set."""

    def __init__(self, artifact: bytes = b"gated-model") -> None:
        self.artifact = artifact
        self.entered = threading.Event()
        self.release = threading.Event()

    def convert(self, data: bytes, content_type: str) -> ConversionOutcome:
        self.entered.set()
        if not self.release.wait(timeout=10):
            raise ConverterError("gate never released")
        return ConversionOutcome.success(self.artifact)


def make_image_bytes(fmt: str = "PNG", size: tuple[int, int] = (8, 6)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_image_bytes("PNG")


@pytest.fixture()
def storage(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path))


@pytest.fixture(params=["json", "sql"])
def ledger(request, tmp_path):
    if request.param == "json":
        return LocalJobLedger(str(tmp_path))
    return SqlJobLedger(f"sqlite:///{tmp_path / 'conversions.db'}")
