"""Python wrapper around the HL7 FHIR validator HTTP service.

Key Responsibilities:
    - Download and version-track the validator jar
    - Supervise the ``java -jar validator_cli.jar -server`` process
    - Expose typed validation, IG loading and terminology test calls

Example:
    >>> from fhir_validator_service import FhirValidatorService
    >>> validator = FhirValidatorService("./validator_cli.jar")
    >>> validator.start(version="4.0.1", tx_server="http://tx.fhir.org/r4", tx_log="./txlog.txt")
    >>> validator.validate('{"resourceType": "Patient"}')["resourceType"]
    'OperationOutcome'
"""

from fhir_validator_service.artifacts import ArtifactManager
from fhir_validator_service.client import ValidationClient
from fhir_validator_service.config.settings import ServiceConfig, ValidatorSettings
from fhir_validator_service.models import (
    EnsureResult,
    OperationOutcome,
    ReleaseInfo,
    TxTestParams,
    TxTestResult,
    ValidationOptions,
    VersionRecord,
)
from fhir_validator_service.service import FhirValidatorService
from fhir_validator_service.supervisor import ProcessSupervisor, SupervisorState
from fhir_validator_service.utils.errors import (
    AlreadyRunningError,
    ArtifactError,
    ArtifactMissingError,
    ConfigurationError,
    DownloadError,
    DownloadTimeoutError,
    EngineExitedError,
    EngineRequestError,
    InvalidConfigError,
    MissingParameterError,
    NotReadyError,
    ReadinessTimeoutError,
    RemoteLookupError,
    RequestError,
    ResponseFormatError,
    SpawnError,
    StartupError,
    TooManyRedirectsError,
    ValidatorServiceError,
)

__all__ = [
    "AlreadyRunningError",
    "ArtifactError",
    "ArtifactManager",
    "ArtifactMissingError",
    "ConfigurationError",
    "DownloadError",
    "DownloadTimeoutError",
    "EngineExitedError",
    "EngineRequestError",
    "EnsureResult",
    "FhirValidatorService",
    "InvalidConfigError",
    "MissingParameterError",
    "NotReadyError",
    "OperationOutcome",
    "ProcessSupervisor",
    "ReadinessTimeoutError",
    "ReleaseInfo",
    "RemoteLookupError",
    "RequestError",
    "ResponseFormatError",
    "ServiceConfig",
    "SpawnError",
    "StartupError",
    "SupervisorState",
    "TooManyRedirectsError",
    "TxTestParams",
    "TxTestResult",
    "ValidationClient",
    "ValidationOptions",
    "ValidatorServiceError",
    "ValidatorSettings",
    "VersionRecord",
]
