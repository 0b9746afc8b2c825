"""Exception taxonomy for the validator service wrapper.

Key Responsibilities:
    - Provide a single base exception carrying a machine readable ``code`` and
      a ``retryable`` hint so host applications can branch without string
      matching
    - Group failures into configuration, artifact, startup and engine request
      families

Collaborators:
    - Upstream: :mod:`fhir_validator_service.artifacts`,
      :mod:`fhir_validator_service.supervisor` and
      :mod:`fhir_validator_service.client` raise these exceptions
    - Downstream: Host applications catch the family base classes

Side Effects:
    - None; exceptions are plain data carriers

Thread Safety:
    - Thread-safe; instances are not shared between calls
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

# ==============================================================================
# BASE
# ==============================================================================

__all__ = [
    "AlreadyRunningError",
    "ArtifactError",
    "ArtifactMissingError",
    "ConfigurationError",
    "DownloadError",
    "DownloadTimeoutError",
    "EngineExitedError",
    "EngineRequestError",
    "InvalidConfigError",
    "MissingParameterError",
    "NotReadyError",
    "ReadinessTimeoutError",
    "RemoteLookupError",
    "RequestError",
    "ResponseFormatError",
    "SpawnError",
    "StartupError",
    "TooManyRedirectsError",
    "ValidatorServiceError",
]


class ValidatorServiceError(RuntimeError):
    """Base exception raised by every component of the wrapper."""

    code = "validator_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise the exception.

        Args:
            message: Human readable error summary.
            code: Optional override for the class level error code.
            retryable: Whether re-invoking the failed operation may succeed.
            metadata: Additional context included when the error is logged.
        """
        super().__init__(message)
        if code is not None:
            self.code = code
        self.retryable = retryable
        self.metadata = dict(metadata or {})


# ==============================================================================
# CONFIGURATION
# ==============================================================================


class ConfigurationError(ValidatorServiceError):
    """Raised synchronously, before any I/O, for unusable caller input."""

    code = "configuration"


class InvalidConfigError(ConfigurationError):
    code = "invalid_config"


class MissingParameterError(ConfigurationError):
    code = "missing_parameter"


# ==============================================================================
# ARTIFACT
# ==============================================================================


class ArtifactError(ValidatorServiceError):
    """Raised when the engine artifact cannot be resolved or fetched."""

    code = "artifact"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class RemoteLookupError(ArtifactError):
    code = "remote_lookup"


class DownloadError(ArtifactError):
    code = "download"


class TooManyRedirectsError(DownloadError):
    code = "too_many_redirects"


class DownloadTimeoutError(DownloadError):
    code = "download_timeout"


# ==============================================================================
# STARTUP
# ==============================================================================


class StartupError(ValidatorServiceError):
    """Raised from ``start`` when the engine could not be brought up."""

    code = "startup"


class AlreadyRunningError(StartupError):
    code = "already_running"


class ArtifactMissingError(StartupError):
    code = "artifact_missing"


class SpawnError(StartupError):
    code = "spawn_failed"


class EngineExitedError(StartupError):
    """The engine process exited before it became ready."""

    code = "engine_exited"

    def __init__(self, message: str, *, returncode: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.returncode = returncode


class ReadinessTimeoutError(StartupError):
    """The engine did not answer health probes in time; the process is left running."""

    code = "readiness_timeout"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


# ==============================================================================
# ENGINE REQUESTS
# ==============================================================================


class EngineRequestError(ValidatorServiceError):
    """Raised for failures talking to a running engine."""

    code = "engine_request"


class NotReadyError(EngineRequestError):
    code = "not_ready"


class RequestError(EngineRequestError):
    code = "request_failed"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class ResponseFormatError(EngineRequestError):
    """The engine answered with a body that is not JSON."""

    code = "response_format"

    def __init__(self, message: str, *, body: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.body = body
