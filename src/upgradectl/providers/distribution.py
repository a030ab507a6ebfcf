"""Acquire and unpack server distribution archives."""
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import zipfile
from pathlib import Path

import httpx

from ..errors import DistributionError
from ..transfer import delete_tree

LOGGER = logging.getLogger(__name__)

DEFAULT_REPOSITORY_URL = (
    "https://nexus.payara.fish/repository/payara-enterprise-downloadable-artifacts/"
    "fish/payara/distributions/"
)
DEFAULT_TIMEOUT = 60.0

_TOP_LEVEL = re.compile(r"payara\d+")


class VersionNotFoundError(DistributionError):
    """Raised when the repository has no archive for the requested version."""


class DistributionFetcher:
    """Download, copy and extract distribution archives."""

    def __init__(
        self,
        *,
        repository_url: str = DEFAULT_REPOSITORY_URL,
        timeout: float = DEFAULT_TIMEOUT,
        temp_dir: Path | None = None,
    ) -> None:
        self.repository_url = repository_url if repository_url.endswith("/") else f"{repository_url}/"
        self.timeout = timeout
        self.temp_dir = temp_dir

    def download_url(self, distribution: str, version: str) -> str:
        """Return the repository URL of ``<distribution>-<version>.zip``."""
        return f"{self.repository_url}{distribution}/{version}/{distribution}-{version}.zip"

    def fetch(self, distribution: str, version: str, username: str, password: str) -> Path:
        """Download the archive into a temporary file and return its path."""
        url = self.download_url(distribution, version)
        LOGGER.info("Downloading %s %s", distribution, version)
        try:
            with self._client() as client:
                with client.stream("GET", url, auth=(username, password)) as response:
                    if response.status_code == 404:
                        LOGGER.error(
                            "The version indicated is incorrect, please set correct version and try again"
                        )
                        raise VersionNotFoundError("Payara version not found")
                    if response.status_code != 200:
                        raise DistributionError(
                            f"Error connecting to server: {response.status_code}"
                        )
                    return self._save(response)
        except httpx.HTTPError as exc:
            raise DistributionError(f"Repository unreachable: {exc}") from exc

    def copy(self, archive: Path) -> Path:
        """Copy a pre-supplied archive into a temporary file."""
        if not archive.is_file():
            raise DistributionError(f"File specified does not exist: {archive}")
        target = self._temp_archive()
        try:
            shutil.copyfile(archive, target)
        except OSError as exc:
            target.unlink(missing_ok=True)
            raise DistributionError(f"Unable to copy {archive}: {exc}") from exc
        return target

    def extract(self, archive: Path) -> Path:
        """Unpack *archive* into a fresh temporary directory."""
        destination = Path(tempfile.mkdtemp(prefix="payara-new", dir=self._temp_dir_arg()))
        try:
            with zipfile.ZipFile(archive) as bundle:
                bundle.extractall(destination)
        except (OSError, zipfile.BadZipFile) as exc:
            delete_tree(destination)
            raise DistributionError(f"Could not extract archive {archive}: {exc}") from exc
        return destination

    def locate_glassfish(self, extracted: Path) -> Path:
        """Return ``payara<N>/glassfish`` inside an extracted archive."""
        candidates = sorted(
            child / "glassfish"
            for child in extracted.iterdir()
            if child.is_dir() and _TOP_LEVEL.fullmatch(child.name)
        )
        for candidate in candidates:
            if candidate.is_dir():
                return candidate
        raise DistributionError(f"No payara<N>/glassfish directory found in {extracted}")

    def discard(self, *paths: Path | None) -> None:
        """Remove temporary archives and extraction directories."""
        for path in paths:
            if path is not None and os.path.lexists(path):
                delete_tree(path)

    def _client(self) -> httpx.Client:
        """Return the HTTP client used for downloads (isolated for testing)."""
        return httpx.Client(timeout=httpx.Timeout(self.timeout), follow_redirects=True)

    def _save(self, response: httpx.Response) -> Path:
        target = self._temp_archive()
        try:
            with target.open("wb") as handle:
                for chunk in response.iter_bytes(chunk_size=65536):
                    handle.write(chunk)
        except (OSError, httpx.HTTPError) as exc:
            target.unlink(missing_ok=True)
            raise DistributionError(f"Failed to save download: {exc}") from exc
        return target

    def _temp_archive(self) -> Path:
        handle, name = tempfile.mkstemp(prefix="payara", suffix=".zip", dir=self._temp_dir_arg())
        os.close(handle)
        return Path(name)

    def _temp_dir_arg(self) -> str | None:
        return str(self.temp_dir) if self.temp_dir else None


__all__ = ["DEFAULT_REPOSITORY_URL", "DistributionFetcher", "VersionNotFoundError"]
