import subprocess

import pytest

pytest.importorskip("httpx")
import httpx

from fhir_validator_service.artifacts import ArtifactManager
from fhir_validator_service.config.settings import ServiceConfig
from fhir_validator_service.supervisor import (
    ProcessSupervisor,
    SupervisorState,
    build_command,
    parse_engine_version,
    strip_ansi,
)
from fhir_validator_service.utils.errors import (
    AlreadyRunningError,
    ArtifactMissingError,
    EngineExitedError,
    InvalidConfigError,
    ReadinessTimeoutError,
    SpawnError,
)

from tests.conftest import FakePopen, FakeProcess, wait_for

BANNER = "\x1b[32mFHIR Validation tool Version 6.3.4 (Git# 8a9f1b2c3d4e). Built 2024-05-01\x1b[0m\n"


def _config(**overrides) -> ServiceConfig:
    values = {
        "version": "4.0.1",
        "tx_server": "http://tx.fhir.org/r4",
        "tx_log": "./txlog.txt",
        "auto_download": False,
    }
    values.update(overrides)
    return ServiceConfig(**values)


def _health_transport(*statuses: int) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    """Answer health probes with ``statuses`` in order, repeating the last one."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        index = min(len(seen), len(statuses)) - 1
        return httpx.Response(statuses[index])

    return httpx.MockTransport(handler), seen


class _StubArtifacts:
    def __init__(self, jar_path, exists: bool = True) -> None:
        self.jar_path = jar_path
        self.exists = exists
        self.ensure_calls: list[dict] = []

    def jar_exists(self) -> bool:
        return self.exists

    def ensure_validator(self, **kwargs):
        self.ensure_calls.append(kwargs)
        self.exists = True


@pytest.fixture()
def existing_jar(jar_path):
    jar_path.write_bytes(b"jar")
    return jar_path


def _supervisor(jar_path, popen, transport, fake_clock, recording_logger, **kwargs) -> ProcessSupervisor:
    return ProcessSupervisor(
        ArtifactManager(jar_path),
        popen=popen,
        transport=transport,
        clock=fake_clock,
        sleep=fake_clock.sleep,
        logger=recording_logger,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Command line and banner parsing
# ---------------------------------------------------------------------------


def test_build_command_orders_flags() -> None:
    config = _config(
        port=9090,
        igs=("hl7.fhir.us.core#6.0.0", "hl7.fhir.uv.ips#1.1.0"),
        jvm_options=("-Xmx4g",),
    )

    command = build_command("java", "/opt/validator_cli.jar", config)

    assert command == [
        "java",
        "-Xmx4g",
        "-jar",
        "/opt/validator_cli.jar",
        "-server",
        "9090",
        "-tx",
        "http://tx.fhir.org/r4",
        "-txLog",
        "./txlog.txt",
        "-version",
        "4.0.1",
        "-ig",
        "hl7.fhir.us.core#6.0.0",
        "-ig",
        "hl7.fhir.uv.ips#1.1.0",
    ]


def test_parse_engine_version_reads_banner() -> None:
    assert parse_engine_version(strip_ansi(BANNER).strip()) == "6.3.4"
    assert parse_engine_version("Loading package hl7.fhir.r4.core#4.0.1") is None
    assert parse_engine_version("FHIR Validation tool Version") is None


def test_strip_ansi_removes_colour_codes() -> None:
    assert strip_ansi("\x1b[1;31mError\x1b[0m") == "Error"


# ---------------------------------------------------------------------------
# Start preconditions
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("missing", ["version", "tx_server", "tx_log"])
def test_start_rejects_incomplete_config(
    missing, jar_path, fake_clock, recording_logger
) -> None:
    popen = FakePopen()
    supervisor = _supervisor(jar_path, popen, None, fake_clock, recording_logger)

    with pytest.raises(InvalidConfigError, match="version, tx_server, and tx_log are required"):
        supervisor.start(_config(**{missing: None}))

    assert popen.calls == []
    assert supervisor.state is SupervisorState.STOPPED


def test_start_wraps_invalid_mapping(jar_path, fake_clock, recording_logger) -> None:
    supervisor = _supervisor(jar_path, FakePopen(), None, fake_clock, recording_logger)

    with pytest.raises(InvalidConfigError, match="Invalid service configuration"):
        supervisor.start({"version": "4.0.1", "tx_server": "x", "tx_log": "y", "port": "not-a-port"})


def test_start_rejects_second_start(jar_path, fake_clock, recording_logger) -> None:
    popen = FakePopen()
    supervisor = _supervisor(jar_path, popen, None, fake_clock, recording_logger)
    supervisor._runtime.process = object()

    with pytest.raises(AlreadyRunningError):
        supervisor.start({})
    assert popen.calls == []


def test_start_requires_jar_without_auto_download(jar_path, fake_clock, recording_logger) -> None:
    popen = FakePopen()
    supervisor = _supervisor(jar_path, popen, None, fake_clock, recording_logger)

    with pytest.raises(ArtifactMissingError, match="Validator JAR not found at"):
        supervisor.start(_config())

    assert popen.calls == []
    assert supervisor.state is SupervisorState.STOPPED


def test_start_auto_download_ensures_artifact(jar_path, fake_clock, recording_logger) -> None:
    transport, _ = _health_transport(405)
    artifacts = _StubArtifacts(jar_path, exists=False)
    supervisor = ProcessSupervisor(
        artifacts,
        popen=FakePopen(),
        transport=transport,
        clock=fake_clock,
        sleep=fake_clock.sleep,
        logger=recording_logger,
    )

    supervisor.start(_config(auto_download=True, skip_update_check=True))

    assert artifacts.ensure_calls == [{"skip_update_check": True}]
    supervisor.stop()


def test_start_reports_spawn_failure(existing_jar, fake_clock, recording_logger) -> None:
    popen = FakePopen(error=FileNotFoundError("java"))
    supervisor = _supervisor(existing_jar, popen, None, fake_clock, recording_logger)

    with pytest.raises(SpawnError, match="Failed to start validator process"):
        supervisor.start(_config())

    assert supervisor.process is None
    assert supervisor.state is SupervisorState.STOPPED


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


def test_start_waits_for_health_probe(existing_jar, fake_clock, recording_logger) -> None:
    process = FakeProcess(stdout_lines=[BANNER, "\n", "Loading packages\n"], stderr_lines=["warn\n"])
    popen = FakePopen(process)
    transport, probes = _health_transport(503, 503, 405)
    supervisor = _supervisor(existing_jar, popen, transport, fake_clock, recording_logger)

    supervisor.start(_config(port=8181, jvm_options=("-Xmx2g",)))

    assert supervisor.is_running() is True
    assert supervisor.state is SupervisorState.READY
    assert supervisor.base_url == "http://localhost:8181"
    assert supervisor.port == 8181
    assert len(probes) == 3
    assert str(probes[0].url) == "http://localhost:8181/validateResource"
    assert fake_clock.sleeps == [1.0, 1.0]

    command, kwargs = popen.calls[0]
    assert command[:4] == ["java", "-Xmx2g", "-jar", str(existing_jar)]
    assert kwargs["stdin"] == subprocess.PIPE
    assert kwargs["stdout"] == subprocess.PIPE
    assert kwargs["stderr"] == subprocess.PIPE

    assert wait_for(lambda: supervisor.engine_version == "6.3.4")
    assert wait_for(lambda: recording_logger.events("supervisor.engine.stderr"))
    stdout_lines = [fields["line"] for fields in recording_logger.events("supervisor.engine.stdout")]
    assert "Loading packages" in stdout_lines
    assert all("\x1b" not in line for line in stdout_lines)

    supervisor.stop()


def test_readiness_timeout_leaves_process_running(existing_jar, fake_clock, recording_logger) -> None:
    process = FakeProcess()
    transport, probes = _health_transport(503)
    supervisor = _supervisor(existing_jar, FakePopen(process), transport, fake_clock, recording_logger)

    with pytest.raises(ReadinessTimeoutError, match="did not become ready within 3"):
        supervisor.start(_config(timeout=3))

    assert len(probes) == 4
    assert process.kill_calls == 0
    assert supervisor.process is process
    assert supervisor.is_running() is False

    supervisor.stop()
    assert process.kill_calls == 1
    assert supervisor.process is None


def test_engine_exit_during_startup_fails_fast(existing_jar, recording_logger) -> None:
    process = FakeProcess(exit_immediately=1)
    transport, _ = _health_transport(503)
    supervisor = ProcessSupervisor(
        ArtifactManager(existing_jar),
        popen=FakePopen(process),
        transport=transport,
        poll_interval=0.05,
        logger=recording_logger,
    )

    with pytest.raises(EngineExitedError) as excinfo:
        supervisor.start(_config(timeout=5))

    assert excinfo.value.returncode == 1
    assert supervisor.process is None
    assert supervisor.state is SupervisorState.STOPPED


def test_health_check_statuses(jar_path, fake_clock, recording_logger) -> None:
    supervisor = _supervisor(jar_path, FakePopen(), None, fake_clock, recording_logger)
    assert supervisor.health_check() is False

    transport, _ = _health_transport(405)
    supervisor = _supervisor(jar_path, FakePopen(), transport, fake_clock, recording_logger)
    assert supervisor.health_check("http://localhost:8080") is True

    transport, _ = _health_transport(200)
    supervisor = _supervisor(jar_path, FakePopen(), transport, fake_clock, recording_logger)
    assert supervisor.health_check("http://localhost:8080") is False

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    supervisor = _supervisor(
        jar_path, FakePopen(), httpx.MockTransport(refuse), fake_clock, recording_logger
    )
    assert supervisor.health_check("http://localhost:8080") is False


# ---------------------------------------------------------------------------
# Exit and stop
# ---------------------------------------------------------------------------


def test_unexpected_exit_resets_state(existing_jar, fake_clock, recording_logger) -> None:
    process = FakeProcess()
    transport, _ = _health_transport(405)
    supervisor = _supervisor(existing_jar, FakePopen(process), transport, fake_clock, recording_logger)
    supervisor.start(_config())

    process.exit(137)

    assert wait_for(lambda: supervisor.process is None)
    assert supervisor.is_running() is False
    assert supervisor.base_url is None
    assert supervisor.state is SupervisorState.STOPPED
    assert recording_logger.events("supervisor.exited")[0]["returncode"] == 137
    assert process.stdin.closed


def test_stop_kills_and_resets(existing_jar, fake_clock, recording_logger) -> None:
    process = FakeProcess()
    transport, _ = _health_transport(405)
    supervisor = _supervisor(existing_jar, FakePopen(process), transport, fake_clock, recording_logger)
    supervisor.start(_config())

    supervisor.stop()

    assert process.kill_calls == 1
    assert supervisor.process is None
    assert supervisor.is_running() is False
    assert supervisor.state is SupervisorState.STOPPED

    supervisor.stop()
    assert process.kill_calls == 1


def test_output_pipes_are_closed_after_exit(existing_jar, fake_clock, recording_logger) -> None:
    process = FakeProcess(stdout_lines=[BANNER], stderr_lines=["warn\n"])
    transport, _ = _health_transport(405)
    supervisor = _supervisor(existing_jar, FakePopen(process), transport, fake_clock, recording_logger)
    supervisor.start(_config())

    supervisor.stop()

    assert wait_for(lambda: process.stdout.closed and process.stderr.closed)
    assert process.stdin.closed


def test_stop_without_start_is_noop(jar_path, fake_clock, recording_logger) -> None:
    supervisor = _supervisor(jar_path, FakePopen(), None, fake_clock, recording_logger)

    supervisor.stop()

    assert supervisor.state is SupervisorState.STOPPED
    assert recording_logger.records == []


def test_stop_escalates_when_process_ignores_kill(existing_jar, fake_clock, recording_logger) -> None:
    process = FakeProcess(exit_on_kill=False)
    transport, _ = _health_transport(405)
    supervisor = _supervisor(
        existing_jar,
        FakePopen(process),
        transport,
        fake_clock,
        recording_logger,
        stop_timeout=0.05,
    )
    supervisor.start(_config())

    supervisor.stop()

    assert process.kill_calls == 2
    assert supervisor.process is None
    assert supervisor.state is SupervisorState.STOPPED
    assert recording_logger.events("supervisor.stop.force_kill")


def test_restart_after_stop(existing_jar, fake_clock, recording_logger) -> None:
    transport, _ = _health_transport(405)
    first, second = FakeProcess(stdout_lines=[BANNER]), FakeProcess()
    popen = FakePopen(first)
    supervisor = _supervisor(existing_jar, popen, transport, fake_clock, recording_logger)

    supervisor.start(_config())
    assert wait_for(lambda: supervisor.engine_version == "6.3.4")
    supervisor.stop()

    popen.process = second
    supervisor.start(_config())

    assert supervisor.process is second
    assert supervisor.engine_version is None
    supervisor.stop()
