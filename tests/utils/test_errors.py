from fhir_validator_service.utils.errors import (
    AlreadyRunningError,
    ArtifactError,
    ConfigurationError,
    DownloadError,
    DownloadTimeoutError,
    EngineExitedError,
    EngineRequestError,
    InvalidConfigError,
    NotReadyError,
    ReadinessTimeoutError,
    RemoteLookupError,
    RequestError,
    ResponseFormatError,
    StartupError,
    TooManyRedirectsError,
    ValidatorServiceError,
)


def test_download_errors_share_artifact_family():
    error = TooManyRedirectsError("Too many redirects")
    assert isinstance(error, DownloadError)
    assert isinstance(error, ArtifactError)
    assert isinstance(error, ValidatorServiceError)
    assert error.code == "too_many_redirects"
    assert issubclass(DownloadTimeoutError, DownloadError)
    assert issubclass(RemoteLookupError, ArtifactError)


def test_artifact_errors_default_to_retryable():
    assert DownloadError("boom").retryable is True
    assert RemoteLookupError("missing asset", retryable=False).retryable is False


def test_startup_and_request_families_are_disjoint():
    assert issubclass(AlreadyRunningError, StartupError)
    assert issubclass(ReadinessTimeoutError, StartupError)
    assert issubclass(NotReadyError, EngineRequestError)
    assert not issubclass(NotReadyError, StartupError)
    assert issubclass(InvalidConfigError, ConfigurationError)


def test_error_metadata_and_code_override():
    error = RequestError("validate request timeout", code="custom", metadata={"operation": "validate"})
    assert error.code == "custom"
    assert error.metadata == {"operation": "validate"}
    assert error.retryable is True
    assert str(error) == "validate request timeout"


def test_engine_exit_and_response_errors_carry_context():
    exited = EngineExitedError("exited", returncode=1)
    assert exited.returncode == 1
    assert exited.retryable is False

    bad_body = ResponseFormatError("Failed to parse response", body="<html>")
    assert bad_body.body == "<html>"
