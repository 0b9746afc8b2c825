"""HTTP client for the running validator engine.

Key Responsibilities:
    - Encode resources and validation options into the engine's wire format
    - Issue validation, implementation guide loading and terminology test
      requests against the engine's loopback listener
    - Classify terminology test outcomes into a non-throwing pass/fail result

Collaborators:
    - Upstream: :class:`~fhir_validator_service.service.FhirValidatorService`
    - Downstream: :class:`~fhir_validator_service.supervisor.ProcessSupervisor`
      for the base URL and readiness flag, ``httpx`` for transport

Side Effects:
    - Network requests to the local engine
    - Emits OpenTelemetry spans and Prometheus request metrics

Thread Safety:
    - Thread-safe; every call uses its own ``httpx.Client``. No queueing or rate
      limiting is applied, concurrent requests go straight to the engine
"""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from typing import Any, Protocol

import httpx
from opentelemetry import trace
from pydantic import ValidationError

from fhir_validator_service.models import (
    OPERATION_OUTCOME,
    OperationOutcome,
    TxTestParams,
    TxTestResult,
    ValidationOptions,
)
from fhir_validator_service.observability.metrics import record_request, record_request_failure
from fhir_validator_service.utils.errors import (
    MissingParameterError,
    NotReadyError,
    RequestError,
    ResponseFormatError,
)
from fhir_validator_service.utils.logging import LoggerSink, get_logger

tracer = trace.get_tracer("fhir_validator_service.client")

JSON_CONTENT_TYPE = "application/fhir+json"
XML_CONTENT_TYPE = "application/fhir+xml"
REQUEST_TIMEOUT_SECONDS = 30.0
TX_TEST_TIMEOUT_SECONDS = 60.0

Resource = str | bytes | bytearray | memoryview | Mapping[str, Any]


class ReadinessSource(Protocol):
    """What the client needs to know about the engine process."""

    @property
    def is_ready(self) -> bool: ...

    @property
    def base_url(self) -> str | None: ...


def encode_resource(resource: Resource) -> tuple[bytes, str]:
    """Return the request body and content type for ``resource``.

    Text and bytes whose trimmed form starts with ``<`` are sent as XML,
    everything else as JSON. Mappings are always serialised as JSON.

    Raises:
        TypeError: For any other input type.
    """
    if isinstance(resource, str):
        body = resource.encode("utf-8")
    elif isinstance(resource, (bytes, bytearray, memoryview)):
        body = bytes(resource)
    elif isinstance(resource, Mapping):
        return json.dumps(resource).encode("utf-8"), JSON_CONTENT_TYPE
    else:
        raise TypeError("Resource must be a string, bytes, or mapping")
    content_type = XML_CONTENT_TYPE if body.strip().startswith(b"<") else JSON_CONTENT_TYPE
    return body, content_type


_OPTION_ALIASES = {
    "resourceIdRule": "resource_id_rule",
    "anyExtensionsAllowed": "any_extensions_allowed",
    "bpWarnings": "bp_warnings",
    "displayOption": "display_option",
}


def _coerce_options(options: ValidationOptions | Mapping[str, Any] | None) -> ValidationOptions:
    if options is None:
        return ValidationOptions()
    if isinstance(options, ValidationOptions):
        return options
    values = {_OPTION_ALIASES.get(key, key): value for key, value in options.items()}
    profiles = values.pop("profiles", None) or ()
    if isinstance(profiles, str):
        profiles = (profiles,)
    return ValidationOptions(profiles=tuple(profiles), **values)


def _coerce_tx_params(params: TxTestParams | Mapping[str, Any]) -> TxTestParams:
    if isinstance(params, TxTestParams):
        return params
    values = dict(params)
    return TxTestParams(
        server=values.get("server") or "",
        suite_name=values.get("suite_name") or values.get("suiteName") or "",
        test_name=values.get("test_name") or values.get("testName") or "",
        version=values.get("version") or "",
        external_file=values.get("external_file") or values.get("externalFile"),
        modes=values.get("modes"),
    )


class ValidationClient:
    """Translate structured requests into engine HTTP calls."""

    def __init__(
        self,
        engine: ReadinessSource,
        *,
        transport: httpx.BaseTransport | None = None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        tx_test_timeout: float = TX_TEST_TIMEOUT_SECONDS,
        logger: LoggerSink | None = None,
    ) -> None:
        self._engine = engine
        self._transport = transport
        self._request_timeout = request_timeout
        self._tx_test_timeout = tx_test_timeout
        self.logger = get_logger(__name__, logger)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate(
        self,
        resource: Resource,
        options: ValidationOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Validate a resource and return the decoded OperationOutcome.

        Args:
            resource: JSON or XML text, raw bytes, or a resource mapping.
            options: Validation switches; unset fields are not sent.

        Raises:
            NotReadyError: If the engine is not ready.
            TypeError: If ``resource`` has an unsupported type.
            RequestError: On transport failure or timeout.
            ResponseFormatError: If the engine answers with non-JSON.
        """
        base_url = self._require_ready()
        body, content_type = encode_resource(resource)
        params = _coerce_options(options).to_query()
        response = self._send(
            "validate",
            base_url,
            "POST",
            "/validateResource",
            params=params,
            content=body,
            headers={"Content-Type": content_type, "Accept": JSON_CONTENT_TYPE},
            timeout=self._request_timeout,
        )
        return self._decode("validate", response)

    def validate_bytes(
        self,
        resource_bytes: bytes,
        options: ValidationOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not isinstance(resource_bytes, (bytes, bytearray, memoryview)):
            raise TypeError("resource_bytes must be bytes")
        return self.validate(resource_bytes, options)

    def validate_object(
        self,
        resource_object: Mapping[str, Any],
        options: ValidationOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not isinstance(resource_object, Mapping):
            raise TypeError("resource_object must be a mapping")
        return self.validate(resource_object, options)

    def load_ig(self, package_id: str, version: str) -> dict[str, Any]:
        """Ask the engine to load an implementation guide package at runtime."""
        base_url = self._require_ready()
        response = self._send(
            "load_ig",
            base_url,
            "POST",
            "/loadIG",
            params={"packageId": package_id, "version": version},
            headers={"Accept": JSON_CONTENT_TYPE},
            timeout=self._request_timeout,
        )
        return self._decode("load_ig", response)

    # ------------------------------------------------------------------
    # Terminology tests
    # ------------------------------------------------------------------
    def run_tx_test(self, params: TxTestParams | Mapping[str, Any]) -> TxTestResult:
        """Run a terminology server test and classify the outcome.

        Only readiness and missing parameters raise; every transport or
        response problem is reported as ``TxTestResult(result=False, ...)``.

        Raises:
            NotReadyError: If the engine is not ready.
            MissingParameterError: If server, suite, test or version is absent.
        """
        base_url = self._require_ready()
        tx_params = _coerce_tx_params(params)
        if tx_params.missing_fields():
            raise MissingParameterError(
                "server, suite_name, test_name, and version are required",
                metadata={"missing": tx_params.missing_fields()},
            )

        try:
            response = self._send(
                "tx_test",
                base_url,
                "GET",
                "/txTest",
                params=tx_params.to_query(),
                headers={"Accept": JSON_CONTENT_TYPE},
                timeout=self._tx_test_timeout,
            )
        except RequestError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.TimeoutException):
                return TxTestResult(result=False, message="Request timeout")
            return TxTestResult(result=False, message=f"Request failed: {cause or exc}")

        return self._classify_tx_outcome(response)

    def _classify_tx_outcome(self, response: httpx.Response) -> TxTestResult:
        if response.status_code >= 400:
            return TxTestResult(
                result=False,
                message=f"HTTP error {response.status_code}: {response.text}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            return TxTestResult(result=False, message=f"Failed to parse response: {exc}")

        resource_type = payload.get("resourceType") if isinstance(payload, dict) else None
        if resource_type != OPERATION_OUTCOME:
            return TxTestResult(
                result=False,
                message=f"Unexpected response type: {resource_type or 'unknown'}",
            )

        try:
            outcome = OperationOutcome.model_validate(payload)
        except ValidationError as exc:
            return TxTestResult(result=False, message=f"Failed to parse response: {exc}")

        error = outcome.first_error()
        if error is None:
            return TxTestResult(result=True)
        return TxTestResult(result=False, message=error.message or "Test failed with error")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require_ready(self) -> str:
        base_url = self._engine.base_url
        if not self._engine.is_ready or not base_url:
            raise NotReadyError("Validator service is not ready")
        return base_url

    def _send(
        self,
        operation: str,
        base_url: str,
        method: str,
        path: str,
        *,
        params: Mapping[str, str],
        headers: Mapping[str, str],
        timeout: float,
        content: bytes | None = None,
    ) -> httpx.Response:
        started = time.perf_counter()
        with tracer.start_as_current_span(
            f"fhir_validator.{operation}",
            attributes={"http.method": method, "http.url": f"{base_url}{path}"},
        ):
            try:
                with httpx.Client(
                    base_url=base_url, timeout=timeout, transport=self._transport
                ) as client:
                    response = client.request(
                        method, path, params=params, content=content, headers=headers
                    )
                    response.read()
            except httpx.TimeoutException as exc:
                record_request_failure(operation, "timeout")
                self.logger.warning("client.request.timeout", operation=operation, timeout=timeout)
                raise RequestError(f"{operation} request timeout") from exc
            except httpx.HTTPError as exc:
                record_request_failure(operation, "transport")
                self.logger.warning("client.request.failed", operation=operation, error=str(exc))
                raise RequestError(f"{operation} request failed: {exc}") from exc
            finally:
                record_request(operation, time.perf_counter() - started)
        if response.status_code >= 400:
            self.logger.warning(
                "client.request.http_error", operation=operation, status=response.status_code
            )
        return response

    def _decode(self, operation: str, response: httpx.Response) -> dict[str, Any]:
        try:
            return response.json()
        except ValueError as exc:
            record_request_failure(operation, "response_format")
            raise ResponseFormatError(
                f"Failed to parse response: {exc}\nResponse: {response.text}",
                body=response.text,
            ) from exc


__all__ = [
    "JSON_CONTENT_TYPE",
    "XML_CONTENT_TYPE",
    "ReadinessSource",
    "ValidationClient",
    "encode_resource",
]
