"""Supervisor owning the validator engine subprocess.

Key Responsibilities:
    - Build the engine command line from a :class:`ServiceConfig`
    - Spawn the engine with piped standard streams and forward its output to
      the logger sink
    - Detect readiness by probing the engine's HTTP listener until a deadline
    - Terminate the engine and reset runtime state on stop or crash

Collaborators:
    - Upstream: :class:`~fhir_validator_service.service.FhirValidatorService`
      and :class:`~fhir_validator_service.client.ValidationClient` (readiness
      flag and base URL)
    - Downstream: :class:`~fhir_validator_service.artifacts.ArtifactManager`,
      ``subprocess`` and ``httpx`` for health probes

Side Effects:
    - Spawns one ``java`` process per supervisor and three daemon threads that
      pump stdout, pump stderr and wait for process exit

Thread Safety:
    - Runtime state is mutated only under an internal lock; the exit watcher
      and the readiness loop both observe a per-process exit event, so a crash
      and a readiness transition can never leave ``is_ready`` set without a
      process handle
    - ``start`` must not be called concurrently with itself; a second call is
      rejected with :class:`AlreadyRunningError`

State machine:
    ``STOPPED -> STARTING -> READY -> STOPPING -> STOPPED``; an unexpected
    exit moves ``STARTING``/``READY`` straight to ``STOPPED``.
"""

from __future__ import annotations

import os
import re
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import IO, Any

import httpx
from pydantic import ValidationError

from fhir_validator_service.artifacts import ArtifactManager
from fhir_validator_service.config.settings import ServiceConfig
from fhir_validator_service.observability.metrics import record_process_event
from fhir_validator_service.utils.errors import (
    AlreadyRunningError,
    ArtifactMissingError,
    EngineExitedError,
    InvalidConfigError,
    ReadinessTimeoutError,
    SpawnError,
)
from fhir_validator_service.utils.logging import LoggerSink, get_logger
from fhir_validator_service.utils.polling import Clock, Sleeper, poll_until

# ==============================================================================
# ENGINE OUTPUT PARSING
# ==============================================================================

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")

# The engine prints "FHIR Validation tool Version 6.3.4 (Git# ...)" on startup.
# Only this exact prefix is recognised; an upstream change to the banner format
# leaves ``engine_version`` unset rather than guessing.
VERSION_BANNER_PREFIX = "FHIR Validation tool Version"

HEALTH_PATH = "/validateResource"
HEALTH_PROBE_TIMEOUT_SECONDS = 5.0
STOP_TIMEOUT_SECONDS = 10.0
POLL_INTERVAL_SECONDS = 1.0


def strip_ansi(line: str) -> str:
    return ANSI_ESCAPE.sub("", line)


def parse_engine_version(line: str) -> str | None:
    """Return the version token of the startup banner, or ``None``."""
    if not line.startswith(VERSION_BANNER_PREFIX):
        return None
    parts = line.split(" ")
    if len(parts) < 5 or not parts[4]:
        return None
    return parts[4]


def build_command(
    java_executable: str,
    jar_path: str | os.PathLike[str],
    config: ServiceConfig,
) -> list[str]:
    """Build the engine argument vector; flag order matters to the engine."""
    command = [java_executable, *config.jvm_options]
    command += [
        "-jar",
        str(jar_path),
        "-server",
        str(config.port),
        "-tx",
        str(config.tx_server),
        "-txLog",
        str(config.tx_log),
        "-version",
        str(config.version),
    ]
    for ig in config.igs:
        command += ["-ig", ig]
    return command


# ==============================================================================
# STATE
# ==============================================================================


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


@dataclass(slots=True)
class RuntimeState:
    """Mutable fields describing the current engine process."""

    process: Any = None
    port: int | None = None
    base_url: str | None = None
    is_ready: bool = False
    exited: threading.Event | None = None


PopenFactory = Callable[..., Any]


class ProcessSupervisor:
    """Own exactly one engine subprocess and expose a ready/not-ready signal."""

    def __init__(
        self,
        artifacts: ArtifactManager,
        *,
        java_executable: str = "java",
        host: str = "localhost",
        popen: PopenFactory = subprocess.Popen,
        transport: httpx.BaseTransport | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleeper | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
        logger: LoggerSink | None = None,
    ) -> None:
        self.artifacts = artifacts
        self._java_executable = java_executable
        self._host = host
        self._popen = popen
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._poll_interval = poll_interval
        self._stop_timeout = stop_timeout
        self._lock = threading.Lock()
        self._runtime = RuntimeState()
        self._state = SupervisorState.STOPPED
        self._engine_version: str | None = None
        self.logger = get_logger(__name__, logger)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._runtime.process is not None and self._runtime.is_ready

    @property
    def base_url(self) -> str | None:
        return self._runtime.base_url

    @property
    def port(self) -> int | None:
        return self._runtime.port

    @property
    def process(self) -> Any:
        return self._runtime.process

    @property
    def engine_version(self) -> str | None:
        """Version announced by the engine banner, once it has been seen."""
        return self._engine_version

    def is_running(self) -> bool:
        return self.is_ready

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, config: ServiceConfig | Mapping[str, Any]) -> None:
        """Spawn the engine and block until it answers health probes.

        Raises:
            AlreadyRunningError: If a process handle is already held.
            InvalidConfigError: If ``version``, ``tx_server`` or ``tx_log`` is
                missing.
            ArtifactMissingError: If auto download is off and the jar is absent.
            ArtifactError: If ensuring the jar fails.
            SpawnError: If the process could not be launched.
            EngineExitedError: If the engine exits before becoming ready.
            ReadinessTimeoutError: If the engine is not ready within
                ``config.timeout`` seconds. The process is left running.
        """
        with self._lock:
            if self._runtime.process is not None or self._state is not SupervisorState.STOPPED:
                raise AlreadyRunningError("Validator service is already running")

        config = self._coerce_config(config)
        missing = config.missing_fields()
        if missing:
            raise InvalidConfigError(
                "version, tx_server, and tx_log are required",
                metadata={"missing": missing},
            )

        with self._lock:
            if self._runtime.process is not None or self._state is not SupervisorState.STOPPED:
                raise AlreadyRunningError("Validator service is already running")
            self._state = SupervisorState.STARTING
            self._engine_version = None

        try:
            self._prepare_artifact(config)
            process, exited = self._spawn(config)
        except Exception:
            with self._lock:
                self._state = SupervisorState.STOPPED
            raise

        self._wait_for_ready(process, exited, config.timeout)
        self.logger.info("supervisor.ready", port=config.port, engine_version=self._engine_version)

    def stop(self) -> None:
        """Kill the engine and reset state; never raises."""
        with self._lock:
            process = self._runtime.process
            exited = self._runtime.exited
            if process is None:
                return
            self._state = SupervisorState.STOPPING

        self.logger.info("supervisor.stop", pid=getattr(process, "pid", None))
        # The engine blocks on stdin and ignores SIGTERM, so go straight to SIGKILL.
        self._kill(process)
        if exited is None or not exited.wait(self._stop_timeout):
            self.logger.warning("supervisor.stop.force_kill", timeout=self._stop_timeout)
            self._kill(process)
            record_process_event("killed")

        with self._lock:
            if self._runtime.process is process:
                self._cleanup()

    def health_check(self, base_url: str | None = None) -> bool:
        """Probe the engine; a 405 on GET means it is up and routing requests."""
        target = base_url or self._runtime.base_url
        if not target:
            return False
        try:
            with httpx.Client(
                timeout=HEALTH_PROBE_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                response = client.get(f"{target}{HEALTH_PATH}")
        except httpx.HTTPError as exc:
            self.logger.debug("supervisor.health.unreachable", error=str(exc))
            return False
        if response.status_code == 405:
            return True
        self.logger.debug("supervisor.health.unexpected_status", status=response.status_code)
        return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _coerce_config(self, config: ServiceConfig | Mapping[str, Any]) -> ServiceConfig:
        if isinstance(config, ServiceConfig):
            return config
        try:
            return ServiceConfig.model_validate(dict(config))
        except ValidationError as exc:
            raise InvalidConfigError(f"Invalid service configuration: {exc}") from exc

    def _prepare_artifact(self, config: ServiceConfig) -> None:
        if config.auto_download:
            self.artifacts.ensure_validator(skip_update_check=config.skip_update_check)
        elif not self.artifacts.jar_exists():
            raise ArtifactMissingError(
                f"Validator JAR not found at {self.artifacts.jar_path}. "
                "Set auto_download=True or download manually."
            )

    def _spawn(self, config: ServiceConfig) -> tuple[Any, threading.Event]:
        command = build_command(self._java_executable, self.artifacts.jar_path, config)
        self.logger.info("supervisor.start", command=" ".join(command))
        try:
            process = self._popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            record_process_event("spawn_failed")
            self.logger.error("supervisor.spawn.failed", error=str(exc))
            raise SpawnError(f"Failed to start validator process: {exc}") from exc

        exited = threading.Event()
        with self._lock:
            self._runtime = RuntimeState(
                process=process,
                port=config.port,
                base_url=f"http://{self._host}:{config.port}",
                is_ready=False,
                exited=exited,
            )
        record_process_event("spawned")

        self._start_thread("fhir-validator-stdout", self._pump_stdout, process.stdout)
        self._start_thread("fhir-validator-stderr", self._pump_stderr, process.stderr)
        self._start_thread("fhir-validator-exit", self._watch_exit, process, exited)
        return process, exited

    def _wait_for_ready(self, process: Any, exited: threading.Event, timeout: float) -> None:
        base_url = self._runtime.base_url

        def _probe() -> bool:
            if exited.is_set():
                raise EngineExitedError(
                    "Validator process exited before becoming ready",
                    returncode=getattr(process, "returncode", None),
                )
            return self.health_check(base_url)

        # Sleeping on the exit event wakes the loop as soon as the engine dies.
        sleep = self._sleep or exited.wait
        ready = poll_until(
            _probe,
            timeout=timeout,
            interval=self._poll_interval,
            clock=self._clock,
            sleep=sleep,
        )
        if not ready:
            raise ReadinessTimeoutError(
                f"Validator service did not become ready within {timeout}s"
            )

        with self._lock:
            if self._runtime.process is not process:
                raise EngineExitedError(
                    "Validator process exited before becoming ready",
                    returncode=getattr(process, "returncode", None),
                )
            self._runtime.is_ready = True
            self._state = SupervisorState.READY
        record_process_event("ready")

    def _watch_exit(self, process: Any, exited: threading.Event) -> None:
        returncode = process.wait()
        self.logger.info("supervisor.exited", returncode=returncode)
        record_process_event("exited")
        stdin: IO[str] | None = getattr(process, "stdin", None)
        if stdin is not None:
            try:
                stdin.close()
            except OSError as exc:
                self.logger.debug("supervisor.stdin.close_failed", error=str(exc))
        with self._lock:
            if self._runtime.process is process:
                self._cleanup()
        exited.set()

    def _pump_stdout(self, stream: IO[str] | None) -> None:
        if stream is None:
            return
        try:
            for raw in stream:
                line = strip_ansi(raw).strip()
                if len(line) > 1:
                    self._check_for_version(line)
                    self.logger.info("supervisor.engine.stdout", line=line)
        finally:
            stream.close()

    def _pump_stderr(self, stream: IO[str] | None) -> None:
        if stream is None:
            return
        try:
            for raw in stream:
                line = raw.rstrip()
                if line:
                    self.logger.error("supervisor.engine.stderr", line=line)
        finally:
            stream.close()

    def _check_for_version(self, line: str) -> None:
        if self._engine_version is not None:
            return
        version = parse_engine_version(line)
        if version is not None:
            self._engine_version = version
            self.logger.info("supervisor.engine.version", version=version)

    def _kill(self, process: Any) -> None:
        try:
            process.kill()
        except OSError as exc:
            self.logger.warning("supervisor.kill.failed", error=str(exc))

    def _cleanup(self) -> None:
        """Reset runtime state; callers hold ``self._lock``."""
        self._runtime = RuntimeState()
        self._state = SupervisorState.STOPPED

    @staticmethod
    def _start_thread(name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread


__all__ = [
    "ANSI_ESCAPE",
    "VERSION_BANNER_PREFIX",
    "ProcessSupervisor",
    "RuntimeState",
    "SupervisorState",
    "build_command",
    "parse_engine_version",
    "strip_ansi",
]
