"""
Pytest configuration and fixtures for OMR Service tests.
"""

import os
import shutil
import tempfile
import time
from threading import Event, Lock, Semaphore

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["OMR_TEMP_DIR"] = tempfile.mkdtemp(prefix="omr_test_tmp_")
os.environ["OMR_PLACEHOLDER_DELAY"] = "0"

from omr_service.backends import PLACEHOLDER_MUSICXML, PlaceholderBackend
from omr_service.configuration import load_settings
from omr_service.errors import BackendFailure
from omr_service.job_manager import JobManager
from omr_service.main import create_app

MUSICXML_BYTES = PLACEHOLDER_MUSICXML.encode("utf-8")

# PNG signature followed by filler; the placeholder backend never decodes images
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FailingBackend:
    """Backend that always fails with a fixed message."""

    def __init__(self, message: str = "staff lines not detected"):
        self.message = message
        self.calls = 0

    def convert(self, input_path, output_path, timeout=None):
        self.calls += 1
        raise BackendFailure(self.message)


class CrashingBackend:
    """Backend that raises a non-service exception."""

    def convert(self, input_path, output_path, timeout=None):
        raise RuntimeError("segfault in recognizer")


class GatedBackend:
    """
    Backend that blocks every call until ``gate`` is set.

    Tracks how many calls run at the same time so tests can check the pool bound.
    """

    def __init__(self):
        self.gate = Event()
        self.started = Semaphore(0)
        self._lock = Lock()
        self.active = 0
        self.peak = 0

    def convert(self, input_path, output_path, timeout=None):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started.release()
        try:
            if not self.gate.wait(10):
                raise BackendFailure("gate never opened")
            output_path.write_bytes(MUSICXML_BYTES)
            return MUSICXML_BYTES
        finally:
            with self._lock:
                self.active -= 1

    def wait_started(self, count: int, timeout: float = 5.0) -> bool:
        return all(self.started.acquire(timeout=timeout) for _ in range(count))


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the temp directory used by the module-level app."""
    temp_dir = os.environ["OMR_TEMP_DIR"]
    yield {"temp": temp_dir}
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def make_settings(tmp_path):
    """Build settings rooted in a per-test temp directory."""

    def _make(**overrides):
        values = {
            "temp_dir": str(tmp_path / "omr"),
            "max_workers": 2,
            "placeholder_delay_seconds": 0,
            "job_ttl_seconds": 0,
            "backend_timeout_seconds": 0,
        }
        values.update(overrides)
        return load_settings(values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def make_manager(make_settings):
    """Factory for JobManagers that are shut down after the test."""
    managers = []

    def _make(backend=None, **overrides):
        manager = JobManager(make_settings(**overrides), backend=backend or PlaceholderBackend())
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.shutdown(wait=False)


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def failing_backend():
    return FailingBackend()


@pytest.fixture
def crashing_backend():
    return CrashingBackend()


@pytest.fixture
def gated_backend():
    backend = GatedBackend()
    yield backend
    backend.gate.set()


@pytest.fixture
def client(manager):
    """Create a test client around a fresh app and manager."""
    with TestClient(create_app(job_manager=manager)) as test_client:
        yield test_client


@pytest.fixture
def sample_png(tmp_path):
    path = tmp_path / "page1.png"
    path.write_bytes(PNG_BYTES)
    return path


def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    raise AssertionError("condition not met within timeout")


@pytest.fixture
def wait_for():
    """Poll a predicate until it returns a truthy value or time runs out."""
    return _wait_for


@pytest.fixture
def wait_until_finished():
    """Block until a job reaches a terminal state and return its snapshot."""

    def _wait(manager, job_id, timeout: float = 5.0):
        def finished():
            record = manager.get_status(job_id)
            return record if record.status.is_terminal else None

        return _wait_for(finished, timeout=timeout)

    return _wait
