"""Host facing facade over artifact, process and client components.

Example:
    >>> from fhir_validator_service import FhirValidatorService, ServiceConfig
    >>> with FhirValidatorService("./validator_cli.jar") as validator:
    ...     validator.start(
    ...         ServiceConfig(
    ...             version="5.0.0",
    ...             tx_server="http://tx.fhir.org/r5",
    ...             tx_log="./txlog.txt",
    ...         )
    ...     )
    ...     outcome = validator.validate({"resourceType": "Patient", "id": "example"})
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx

from fhir_validator_service.artifacts import ArtifactManager
from fhir_validator_service.client import Resource, ValidationClient
from fhir_validator_service.config.settings import ServiceConfig, ValidatorSettings, get_settings
from fhir_validator_service.models import (
    EnsureResult,
    ReleaseInfo,
    TxTestParams,
    TxTestResult,
    ValidationOptions,
    VersionRecord,
)
from fhir_validator_service.supervisor import PopenFactory, ProcessSupervisor
from fhir_validator_service.utils.logging import LoggerSink
from fhir_validator_service.utils.polling import Clock, Sleeper


class FhirValidatorService:
    """Manage a local FHIR validator engine and talk to it over HTTP."""

    def __init__(
        self,
        jar_path: str | os.PathLike[str] | None = None,
        *,
        logger: LoggerSink | None = None,
        settings: ValidatorSettings | None = None,
        transport: httpx.BaseTransport | None = None,
        popen: PopenFactory = subprocess.Popen,
        clock: Clock = time.monotonic,
        sleep: Sleeper | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        resolved_path = jar_path if jar_path is not None else self.settings.jar_path
        self.artifacts = ArtifactManager(
            resolved_path,
            release_api_url=self.settings.release_api_url,
            asset_name=self.settings.asset_name,
            user_agent=self.settings.user_agent,
            transport=transport,
            logger=logger,
        )
        self.supervisor = ProcessSupervisor(
            self.artifacts,
            java_executable=self.settings.java_executable,
            popen=popen,
            transport=transport,
            clock=clock,
            sleep=sleep,
            logger=logger,
        )
        self.client = ValidationClient(self.supervisor, transport=transport, logger=logger)

    def __enter__(self) -> FhirValidatorService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def set_logger(self, logger: LoggerSink) -> None:
        """Route every component's log output to ``logger``."""
        self.artifacts.logger = logger
        self.supervisor.logger = logger
        self.client.logger = logger

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def jar_path(self) -> Path:
        return self.artifacts.jar_path

    @property
    def version_file_path(self) -> Path:
        return self.artifacts.version_file_path

    @property
    def base_url(self) -> str | None:
        return self.supervisor.base_url

    @property
    def port(self) -> int | None:
        return self.supervisor.port

    def jar_version(self) -> str | None:
        """Version the running engine reported about itself."""
        return self.supervisor.engine_version

    def is_running(self) -> bool:
        return self.supervisor.is_running()

    # ------------------------------------------------------------------
    # Artifact management
    # ------------------------------------------------------------------
    def get_latest_release(self) -> ReleaseInfo:
        return self.artifacts.get_latest_release()

    def get_installed_version(self) -> str | None:
        return self.artifacts.get_installed_version()

    def save_version_info(self, version: str, download_url: str) -> VersionRecord:
        return self.artifacts.save_version_info(version, download_url)

    def download_file(self, url: str, dest_path: str | os.PathLike[str]) -> int:
        return self.artifacts.download_file(url, dest_path)

    def ensure_validator(self, *, force: bool = False, skip_update_check: bool = False) -> EnsureResult:
        return self.artifacts.ensure_validator(force=force, skip_update_check=skip_update_check)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, config: ServiceConfig | Mapping[str, Any] | None = None, **overrides: Any) -> None:
        """Start the engine; keyword arguments build or override the config."""
        if config is None:
            config = dict(overrides)
        elif overrides:
            base = config.model_dump() if isinstance(config, ServiceConfig) else dict(config)
            config = {**base, **overrides}
        self.supervisor.start(config)

    def stop(self) -> None:
        self.supervisor.stop()

    # ------------------------------------------------------------------
    # Engine requests
    # ------------------------------------------------------------------
    def validate(
        self,
        resource: Resource,
        options: ValidationOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.client.validate(resource, options)

    def validate_bytes(
        self,
        resource_bytes: bytes,
        options: ValidationOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.client.validate_bytes(resource_bytes, options)

    def validate_object(
        self,
        resource_object: Mapping[str, Any],
        options: ValidationOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.client.validate_object(resource_object, options)

    def load_ig(self, package_id: str, version: str) -> dict[str, Any]:
        return self.client.load_ig(package_id, version)

    def run_tx_test(self, params: TxTestParams | Mapping[str, Any]) -> TxTestResult:
        return self.client.run_tx_test(params)


__all__ = ["FhirValidatorService"]
