"""Engine artifact resolution, download and version tracking.

Key Responsibilities:
    - Look up the newest published engine release on the upstream release index
    - Stream the engine jar to disk through a temporary sibling file
    - Persist and read the sidecar version record stored next to the jar
    - Decide whether a download is required before the engine is started

Collaborators:
    - Upstream: :class:`~fhir_validator_service.service.FhirValidatorService`
      calls :meth:`ArtifactManager.ensure_validator` before spawning the engine
    - Downstream: GitHub release API over ``httpx`` and the local filesystem

Side Effects:
    - Network requests to the release index and asset host
    - Writes the jar, its ``.download`` temporary file and the ``.version``
      sidecar

Thread Safety:
    - ``ensure_validator`` calls for the same jar path are serialised by an
      in-process lock; separate interpreters are not coordinated
    - The per-path lock registry keeps one entry per resolved jar path for the
      life of the interpreter
"""

from __future__ import annotations

import json
import os
import threading
from datetime import UTC, datetime
from pathlib import Path

import httpx
from opentelemetry import trace

from fhir_validator_service.config.settings import DEFAULT_ASSET_NAME, DEFAULT_RELEASE_API_URL
from fhir_validator_service.models import EnsureResult, ReleaseInfo, VersionRecord
from fhir_validator_service.observability.metrics import record_download
from fhir_validator_service.utils.errors import (
    DownloadError,
    DownloadTimeoutError,
    RemoteLookupError,
    TooManyRedirectsError,
)
from fhir_validator_service.utils.logging import LoggerSink, get_logger

tracer = trace.get_tracer("fhir_validator_service.artifacts")

VERSION_FILE_SUFFIX = ".version"
TEMP_FILE_SUFFIX = ".download"
MAX_REDIRECTS = 5
LOOKUP_TIMEOUT_SECONDS = 30.0
DOWNLOAD_TIMEOUT_SECONDS = 300.0
CHUNK_SIZE = 1024 * 512

_PATH_LOCKS: dict[str, threading.Lock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        return _PATH_LOCKS.setdefault(key, threading.Lock())


class ArtifactManager:
    """Guarantee a usable, version-tracked engine jar exists locally."""

    def __init__(
        self,
        jar_path: str | os.PathLike[str],
        *,
        release_api_url: str = DEFAULT_RELEASE_API_URL,
        asset_name: str = DEFAULT_ASSET_NAME,
        user_agent: str = "fhir-validator-python",
        lookup_timeout: float = LOOKUP_TIMEOUT_SECONDS,
        download_timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        logger: LoggerSink | None = None,
    ) -> None:
        self.jar_path = Path(jar_path)
        self.version_file_path = Path(f"{self.jar_path}{VERSION_FILE_SUFFIX}")
        self._release_api_url = release_api_url
        self._asset_name = asset_name
        self._user_agent = user_agent
        self._lookup_timeout = lookup_timeout
        self._download_timeout = download_timeout
        self._transport = transport
        self._lock = _lock_for(self.jar_path)
        self.logger = get_logger(__name__, logger)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def jar_exists(self) -> bool:
        return self.jar_path.is_file()

    def get_latest_release(self) -> ReleaseInfo:
        """Return the newest release carrying the expected jar asset.

        Raises:
            RemoteLookupError: If the index is unreachable, answers with a
                non-200 status, returns malformed JSON or lacks the asset.
        """
        try:
            with self._http_client(timeout=self._lookup_timeout, follow_redirects=True) as client:
                response = client.get(
                    self._release_api_url,
                    headers={"Accept": "application/vnd.github.v3+json"},
                )
        except httpx.TimeoutException as exc:
            raise RemoteLookupError("GitHub API request timeout") from exc
        except httpx.HTTPError as exc:
            raise RemoteLookupError(f"GitHub API request failed: {exc}") from exc

        if response.status_code != 200:
            raise RemoteLookupError(
                f"GitHub API returned status {response.status_code}: {response.text}",
                metadata={"status": response.status_code},
            )

        try:
            release = response.json()
            version = release["tag_name"]
            assets = release.get("assets") or []
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise RemoteLookupError(f"Failed to parse GitHub response: {exc}") from exc

        asset = next(
            (item for item in assets if isinstance(item, dict) and item.get("name") == self._asset_name),
            None,
        )
        if asset is None or not asset.get("browser_download_url"):
            raise RemoteLookupError(
                f"{self._asset_name} not found in latest release assets",
                retryable=False,
            )

        return ReleaseInfo(
            version=str(version),
            download_url=asset["browser_download_url"],
            published_at=release.get("published_at"),
        )

    def get_installed_version(self) -> str | None:
        """Return the version from the sidecar, or ``None`` if unknown.

        A missing or corrupt sidecar means "no known version"; it is never an
        error.
        """
        if not self.version_file_path.is_file():
            return None
        try:
            payload = json.loads(self.version_file_path.read_text(encoding="utf-8"))
            return VersionRecord.from_json(payload).version
        except (OSError, ValueError, AttributeError) as exc:
            self.logger.warning(
                "artifact.version_file.unreadable",
                path=str(self.version_file_path),
                error=str(exc),
            )
            return None

    def save_version_info(self, version: str, download_url: str) -> VersionRecord:
        record = VersionRecord(
            version=version,
            download_url=download_url,
            downloaded_at=datetime.now(UTC).isoformat(),
        )
        self.version_file_path.parent.mkdir(parents=True, exist_ok=True)
        self.version_file_path.write_text(json.dumps(record.to_json(), indent=2), encoding="utf-8")
        return record

    def ensure_validator(self, *, force: bool = False, skip_update_check: bool = False) -> EnsureResult:
        """Make sure the jar is present and, unless skipped, up to date.

        Args:
            force: Download even when the installed version matches.
            skip_update_check: Use an existing jar without querying the index.

        Returns:
            Report of the resulting version and whether a download happened.
        """
        with self._lock:
            jar_exists = self.jar_exists()
            installed = self.get_installed_version()

            if jar_exists and skip_update_check and not force:
                self.logger.info("artifact.ensure.skipped", version=installed or "unknown")
                return EnsureResult(version=installed or "unknown", downloaded=False, updated=False)

            self.logger.info("artifact.ensure.checking", url=self._release_api_url)
            latest = self.get_latest_release()
            self.logger.info("artifact.ensure.latest", version=latest.version)

            # Plain string comparison: any change of upstream tag triggers a download.
            needs_download = (
                force or not jar_exists or not installed or installed != latest.version
            )
            if not needs_download:
                self.logger.info("artifact.ensure.up_to_date", version=installed)
                return EnsureResult(version=installed, downloaded=False, updated=False)

            if installed and jar_exists:
                self.logger.info(
                    "artifact.ensure.updating", installed=installed, latest=latest.version
                )
            else:
                self.logger.info("artifact.ensure.downloading", version=latest.version)

            self.download_file(latest.download_url, self.jar_path)
            self.save_version_info(latest.version, latest.download_url)
            self.logger.info("artifact.ensure.completed", version=latest.version)

            return EnsureResult(
                version=latest.version,
                downloaded=True,
                updated=installed is not None and installed != latest.version,
            )

    def download_file(self, url: str, dest_path: str | os.PathLike[str]) -> int:
        """Stream ``url`` to ``dest_path`` and return the number of bytes written.

        Redirects are followed manually up to :data:`MAX_REDIRECTS`. The body is
        written to ``<dest>.download`` and renamed into place once complete; the
        temporary file is removed if the transfer fails.

        Raises:
            TooManyRedirectsError: If more than five redirects are encountered.
            DownloadTimeoutError: If the transfer exceeds the download timeout.
            DownloadError: For non-200 statuses and other transport failures.
        """
        dest = Path(dest_path)
        temp_path = dest.with_name(dest.name + TEMP_FILE_SUFFIX)
        current = url

        with tracer.start_as_current_span("fhir_validator.download", attributes={"url": url}):
            with self._http_client(timeout=self._download_timeout, follow_redirects=False) as client:
                for _ in range(MAX_REDIRECTS + 1):
                    try:
                        with client.stream("GET", current) as response:
                            location = response.headers.get("location")
                            if 300 <= response.status_code < 400 and location:
                                current = str(response.url.join(location))
                                self.logger.info("artifact.download.redirect", location=current)
                                continue
                            if response.status_code != 200:
                                record_download("failed")
                                raise DownloadError(
                                    f"Download failed with status {response.status_code}",
                                    metadata={"status": response.status_code, "url": current},
                                )
                            size = self._write_stream(response, dest, temp_path)
                    except httpx.TimeoutException as exc:
                        record_download("timeout")
                        raise DownloadTimeoutError("Download timeout", metadata={"url": current}) from exc
                    except httpx.HTTPError as exc:
                        record_download("failed")
                        raise DownloadError(f"Download failed: {exc}", metadata={"url": current}) from exc
                    except OSError as exc:
                        record_download("failed")
                        raise DownloadError(f"Failed to write {dest}: {exc}", retryable=False) from exc
                    record_download("success", size)
                    return size

        record_download("too_many_redirects")
        raise TooManyRedirectsError("Too many redirects", metadata={"url": url})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _http_client(self, *, timeout: float, follow_redirects: bool) -> httpx.Client:
        return httpx.Client(
            headers={"User-Agent": self._user_agent},
            timeout=timeout,
            follow_redirects=follow_redirects,
            transport=self._transport,
        )

    def _write_stream(self, response: httpx.Response, dest: Path, temp_path: Path) -> int:
        dest.parent.mkdir(parents=True, exist_ok=True)
        content_length = _content_length(response)
        downloaded = 0
        last_logged_percent = 0
        try:
            with temp_path.open("wb") as handle:
                for chunk in response.iter_bytes(CHUNK_SIZE):
                    if not chunk:
                        continue
                    handle.write(chunk)
                    downloaded += len(chunk)
                    if content_length:
                        percent = downloaded * 100 // content_length
                        if percent >= last_logged_percent + 10:
                            self.logger.info(
                                "artifact.download.progress",
                                percent=percent,
                                downloaded_mb=round(downloaded / 1024 / 1024),
                                total_mb=round(content_length / 1024 / 1024),
                            )
                            last_logged_percent = percent
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise
        os.replace(temp_path, dest)
        return downloaded


def _content_length(response: httpx.Response) -> int | None:
    header = response.headers.get("content-length")
    if not header:
        return None
    try:
        value = int(header)
    except ValueError:
        return None
    return value if value > 0 else None


__all__ = [
    "MAX_REDIRECTS",
    "TEMP_FILE_SUFFIX",
    "VERSION_FILE_SUFFIX",
    "ArtifactManager",
]
