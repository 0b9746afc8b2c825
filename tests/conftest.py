from __future__ import annotations

import io
import threading
import time
from collections.abc import Iterable
from typing import Any

import pytest

from fhir_validator_service.config.settings import get_settings

RELEASE_API_URL = "https://api.github.com/repos/hapifhir/org.hl7.fhir.core/releases/latest"
JAR_DOWNLOAD_URL = (
    "https://github.com/hapifhir/org.hl7.fhir.core/releases/download/6.3.4/validator_cli.jar"
)


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class RecordingLogger:
    """Logger sink capturing ``(level, event, fields)`` tuples."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def _record(self, level: str, event: str, fields: dict[str, Any]) -> None:
        with self._lock:
            self.records.append((level, event, fields))

    def debug(self, event: str, **kwargs: Any) -> None:
        self._record("debug", event, kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._record("info", event, kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._record("warning", event, kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._record("error", event, kwargs)

    def events(self, name: str) -> list[dict[str, Any]]:
        with self._lock:
            return [fields for _, event, fields in self.records if event == name]


class FakeClock:
    """Monotonic clock advanced only by its own ``sleep``."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProcess:
    """Stand-in for ``subprocess.Popen`` whose exit is controlled by the test."""

    def __init__(
        self,
        stdout_lines: Iterable[str] = (),
        stderr_lines: Iterable[str] = (),
        *,
        exit_on_kill: bool = True,
        exit_immediately: int | None = None,
    ) -> None:
        self.pid = 4242
        self.returncode: int | None = None
        self.stdin = io.StringIO()
        self.stdout = io.StringIO("".join(stdout_lines))
        self.stderr = io.StringIO("".join(stderr_lines))
        self.kill_calls = 0
        self._exit_on_kill = exit_on_kill
        self._exited = threading.Event()
        if exit_immediately is not None:
            self.exit(exit_immediately)

    def exit(self, returncode: int) -> None:
        self.returncode = returncode
        self._exited.set()

    def wait(self, timeout: float | None = None) -> int | None:
        self._exited.wait(timeout)
        return self.returncode

    def poll(self) -> int | None:
        return self.returncode

    def kill(self) -> None:
        self.kill_calls += 1
        if self._exit_on_kill:
            self.exit(-9)


class FakePopen:
    """Factory recording spawn arguments and returning a prepared process."""

    def __init__(self, process: FakeProcess | None = None, *, error: OSError | None = None) -> None:
        self.process = process or FakeProcess()
        self.error = error
        self.calls: list[tuple[list[str], dict[str, Any]]] = []

    def __call__(self, command: list[str], **kwargs: Any) -> FakeProcess:
        self.calls.append((list(command), kwargs))
        if self.error is not None:
            raise self.error
        return self.process


def wait_for(predicate, timeout: float = 2.0) -> bool:
    """Spin until ``predicate`` holds; used for state set by background threads."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def jar_path(tmp_path):
    return tmp_path / "validator_cli.jar"


@pytest.fixture
def release_payload() -> dict[str, Any]:
    return {
        "tag_name": "6.3.4",
        "published_at": "2024-05-01T12:00:00Z",
        "assets": [
            {"name": "validator_cli.jar.sha256", "browser_download_url": JAR_DOWNLOAD_URL + ".sha256"},
            {"name": "validator_cli.jar", "browser_download_url": JAR_DOWNLOAD_URL},
        ],
    }
