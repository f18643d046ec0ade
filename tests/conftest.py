import io
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from convert_dispatch.conversion import (
    CapabilityTable,
    ConversionResult,
    Dispatcher,
    Engine,
    JobStore,
)
from convert_dispatch.conversion.adapters import LocalStorage


# =============================================================================
# Test Helpers
# =============================================================================

class FakeBackend:
    """In-process stand-in for the external conversion service."""

    def __init__(self, content: bytes = b"converted", error: Exception | None = None):
        self.content = content
        self.error = error
        self.calls: list[dict[str, object]] = []
        self.release = threading.Event()
        self.release.set()
        self.entered = threading.Event()

    def convert(self, input_path: Path, target_format: str, *, engine_id: str, options=None) -> ConversionResult:
        self.calls.append({
            "input_path": input_path,
            "input_bytes": input_path.read_bytes(),
            "target_format": target_format,
            "engine_id": engine_id,
            "options": options,
        })
        self.entered.set()
        self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return ConversionResult(content=self.content, content_type="application/octet-stream")

    def health(self) -> bool:
        return True


class FrozenClock:
    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current += delta


def bytes_reader(data: bytes):
    """Async chunk reader over an in-memory payload."""
    buf = io.BytesIO(data)

    async def read(n: int) -> bytes:
        return buf.read(n)

    return read


def pandoc_engine(**kwargs) -> Engine:
    return Engine.build("pandoc", "Pandoc", "Universal document converter", "document",
                        {"md": ["html", "pdf"]}, **kwargs)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def capabilities() -> CapabilityTable:
    return CapabilityTable([
        pandoc_engine(),
        Engine.build("libreoffice", "LibreOffice", "Office documents", "document",
                     {"docx": ["pdf", "odt"], "txt": ["pdf", "html"]}),
        Engine.build("calibre", "Calibre", "E-books", "ebook",
                     {"epub": ["mobi", "pdf"]}),
    ])


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(clock) -> JobStore:
    return JobStore(clock=clock)


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    s = LocalStorage(tmp_path / "uploads", tmp_path / "output")
    s.ensure_roots()
    return s


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def dispatcher(capabilities, store, storage, backend) -> Dispatcher:
    return Dispatcher(capabilities, store, storage, backend, workers=2, max_upload_bytes=1024)
