"""Prometheus metrics for artifact downloads, engine lifecycle and requests.

Key Responsibilities:
    - Define the Prometheus collectors emitted by the wrapper
    - Provide small helpers so call sites do not repeat label plumbing

Collaborators:
    - Upstream: ArtifactManager, ProcessSupervisor and ValidationClient
    - Downstream: Whatever exposition the host application configures for the
      default Prometheus registry

Thread Safety:
    - Thread-safe: Prometheus collectors use atomic updates
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

DOWNLOADS_TOTAL = Counter(
    "fhir_validator_downloads_total",
    "Engine artifact downloads by outcome",
    ["outcome"],
)

DOWNLOAD_BYTES_TOTAL = Counter(
    "fhir_validator_download_bytes_total",
    "Bytes written while downloading the engine artifact",
)

PROCESS_EVENTS_TOTAL = Counter(
    "fhir_validator_process_events_total",
    "Engine process lifecycle transitions",
    ["event"],
)

REQUEST_DURATION_SECONDS = Histogram(
    "fhir_validator_request_duration_seconds",
    "Duration of HTTP requests issued against the engine",
    ["operation"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

REQUEST_FAILURES_TOTAL = Counter(
    "fhir_validator_request_failures_total",
    "Failed engine requests by operation and reason",
    ["operation", "reason"],
)


def record_process_event(event: str) -> None:
    PROCESS_EVENTS_TOTAL.labels(event=event).inc()


def record_request(operation: str, duration: float) -> None:
    REQUEST_DURATION_SECONDS.labels(operation=operation).observe(duration)


def record_request_failure(operation: str, reason: str) -> None:
    REQUEST_FAILURES_TOTAL.labels(operation=operation, reason=reason).inc()


def record_download(outcome: str, size: int = 0) -> None:
    DOWNLOADS_TOTAL.labels(outcome=outcome).inc()
    if size:
        DOWNLOAD_BYTES_TOTAL.inc(size)


__all__ = [
    "DOWNLOADS_TOTAL",
    "DOWNLOAD_BYTES_TOTAL",
    "PROCESS_EVENTS_TOTAL",
    "REQUEST_DURATION_SECONDS",
    "REQUEST_FAILURES_TOTAL",
    "record_download",
    "record_process_event",
    "record_request",
    "record_request_failure",
]
