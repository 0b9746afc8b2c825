"""Configuration system for the validator service wrapper."""

from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RELEASE_API_URL = (
    "https://api.github.com/repos/hapifhir/org.hl7.fhir.core/releases/latest"
)
DEFAULT_ASSET_NAME = "validator_cli.jar"


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for wrapper output")
    json_output: bool = Field(
        default=False, description="Render JSON lines instead of console output"
    )
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["password", "token", "secret", "authorization"],
        description="Fields that should be redacted in logs",
    )


class ServiceConfig(BaseModel):
    """Arguments for a single ``start()`` call.

    ``version``, ``tx_server`` and ``tx_log`` are mandatory for a start but are
    typed optional here; the supervisor rejects a config missing any of them
    with :class:`~fhir_validator_service.utils.errors.InvalidConfigError`
    before touching the filesystem or network.
    """

    model_config = ConfigDict(frozen=True)

    version: str | None = Field(default=None, description="FHIR version, e.g. 5.0.0")
    tx_server: str | None = Field(default=None, description="Terminology server URL")
    tx_log: str | None = Field(default=None, description="Path of the transaction log")
    igs: tuple[str, ...] = Field(
        default=(), description="Implementation guides, e.g. hl7.fhir.us.core#6.0.0"
    )
    port: int = Field(default=8080, ge=1, le=65535)
    timeout: float = Field(default=30.0, gt=0, description="Readiness wait in seconds")
    auto_download: bool = True
    skip_update_check: bool = False
    jvm_options: tuple[str, ...] = Field(
        default=(), description="JVM flags placed before -jar, e.g. -Xmx4g"
    )

    def missing_fields(self) -> list[str]:
        """Return the names of mandatory fields that are unset or empty."""
        return [name for name in ("version", "tx_server", "tx_log") if not getattr(self, name)]


class ValidatorSettings(BaseSettings):
    """Environment driven settings consumed by the facade and the test-suite."""

    jar_path: Path = Field(
        default=Path("./validator_cli.jar"),
        description="Location of the engine artifact (FHIR_VALIDATOR_JAR_PATH)",
    )
    java_executable: str = Field(default="java", description="Java launcher")
    release_api_url: str = Field(default=DEFAULT_RELEASE_API_URL)
    asset_name: str = Field(default=DEFAULT_ASSET_NAME)
    user_agent: str = Field(default="fhir-validator-python")
    github_api_tests: bool = Field(
        default=False, description="Opt in to tests that query the GitHub release API"
    )
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(env_prefix="FHIR_VALIDATOR_", env_nested_delimiter="__")


def load_settings() -> ValidatorSettings:
    """Load settings from the environment."""
    try:
        return ValidatorSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err


@lru_cache(maxsize=1)
def get_settings() -> ValidatorSettings:
    """Cached accessor used by production code."""
    return load_settings()
