"""Data models shared by the engine client and its callers.

The engine answers every endpoint with an OperationOutcome. The client passes
validation outcomes back to callers as decoded JSON; the pydantic models below
are only used where the wrapper has to interpret the outcome itself, as when
classifying terminology test results.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

OPERATION_OUTCOME = "OperationOutcome"


class OperationOutcomeIssue(BaseModel):
    """Single issue reported inside an OperationOutcome.

    Only ``severity`` drives classification, so the remaining fields accept any
    JSON value the engine happens to emit and are stringified on access.
    """

    model_config = ConfigDict(extra="allow")

    severity: Any = None
    code: Any = None
    diagnostics: Any = None
    details: Any = None
    expression: Any = None

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    @property
    def message(self) -> str | None:
        """Human readable text, preferring ``details.text`` over diagnostics."""
        if isinstance(self.details, dict) and self.details.get("text"):
            return str(self.details["text"])
        if self.diagnostics:
            return str(self.diagnostics)
        return None


class OperationOutcome(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    resource_type: str = Field(alias="resourceType")
    issue: list[OperationOutcomeIssue] | None = None

    def first_error(self) -> OperationOutcomeIssue | None:
        return next((item for item in self.issue or () if item.is_error), None)


def _render_flag(value: Any) -> str:
    # Mapping inputs may carry the flag as text, e.g. "false" from a query string.
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


@dataclass(slots=True)
class ValidationOptions:
    """Per-request validation switches, encoded as query parameters.

    Attributes:
        profiles: Canonical URLs of profiles to validate against.
        resource_id_rule: ``OPTIONAL``, ``REQUIRED`` or ``PROHIBITED``.
        any_extensions_allowed: Whether unknown extensions are accepted.
        bp_warnings: Best practice warning level.
        display_option: Display checking mode.
    """

    profiles: tuple[str, ...] = ()
    resource_id_rule: str | None = None
    any_extensions_allowed: bool | None = None
    bp_warnings: str | None = None
    display_option: str | None = None

    def to_query(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.profiles:
            params["profiles"] = ",".join(self.profiles)
        if self.resource_id_rule:
            params["resourceIdRule"] = self.resource_id_rule
        if self.any_extensions_allowed is not None:
            params["anyExtensionsAllowed"] = _render_flag(self.any_extensions_allowed)
        if self.bp_warnings:
            params["bpWarnings"] = self.bp_warnings
        if self.display_option:
            params["displayOption"] = self.display_option
        return params


@dataclass(slots=True)
class TxTestParams:
    server: str
    suite_name: str
    test_name: str
    version: str
    external_file: str | None = None
    modes: str | None = None

    def missing_fields(self) -> list[str]:
        return [
            name
            for name in ("server", "suite_name", "test_name", "version")
            if not getattr(self, name)
        ]

    def to_query(self) -> dict[str, str]:
        params = {
            "server": self.server,
            "suite": self.suite_name,
            "test": self.test_name,
            "version": self.version,
        }
        if self.external_file:
            params["externalFile"] = self.external_file
        if self.modes:
            params["modes"] = self.modes
        return params


@dataclass(slots=True)
class TxTestResult:
    """Outcome of a terminology test; ``message`` is set only on failure."""

    result: bool
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"result": self.result}
        if self.message is not None:
            payload["message"] = self.message
        return payload


@dataclass(slots=True)
class ReleaseInfo:
    version: str
    download_url: str
    published_at: str | None = None


@dataclass(slots=True)
class EnsureResult:
    """Report returned by ``ensure_validator``."""

    version: str
    downloaded: bool
    updated: bool


@dataclass(slots=True)
class VersionRecord:
    """Sidecar metadata persisted next to the engine artifact."""

    version: str
    download_url: str
    downloaded_at: str

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "downloadUrl": self.download_url,
            "downloadedAt": self.downloaded_at,
        }

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> VersionRecord:
        version = payload.get("version")
        if not isinstance(version, str) or not version:
            raise ValueError("version record is missing a version string")
        return cls(
            version=version,
            download_url=str(payload.get("downloadUrl") or ""),
            downloaded_at=str(payload.get("downloadedAt") or ""),
        )


__all__ = [
    "OPERATION_OUTCOME",
    "EnsureResult",
    "OperationOutcome",
    "OperationOutcomeIssue",
    "ReleaseInfo",
    "TxTestParams",
    "TxTestResult",
    "ValidationOptions",
    "VersionRecord",
]
