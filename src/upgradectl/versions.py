"""Version parsing and the checks run before an upgrade touches anything."""
from __future__ import annotations

import logging
import re
import subprocess
import zipfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from packaging.version import Version

from .errors import DistributionError, PreconditionError, VersionError

LOGGER = logging.getLogger(__name__)

VERSION_PROPERTIES = PurePosixPath("config/branding/glassfish-version.properties")
# java.util.Properties files are ISO-8859-1.
PROPERTIES_ENCODING = "iso-8859-1"
VALID_DISTRIBUTIONS: tuple[str, ...] = ("payara", "payara-ml", "payara-web", "payara-web-ml")

_ENTERPRISE_PATTERN = re.compile(r"(\d{1,2})\.(\d{1,2})\.(\d{1,2})")
_COMMUNITY_PATTERN = re.compile(r"\d+\.\d{4}\.\d+")
_ARCHIVE_PROPERTIES = re.compile(r"payara(\d+)/glassfish/config/branding/glassfish-version\.properties")
_JAVA_VERSION = re.compile(r'version "([^"]+)"')

# Oldest Java feature release each server generation runs on.
MINIMUM_JAVA: Mapping[int, int] = {4: 8, 5: 8, 6: 11, 7: 21}


@dataclass(frozen=True, slots=True, order=True)
class ServerVersion:
    """A ``major.minor.update`` server version."""

    major: int
    minor: int
    update: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.update}"

    def as_version(self) -> Version:
        """Return the :mod:`packaging` representation used for comparisons."""
        return Version(str(self))

    @classmethod
    def from_properties(cls, properties: Mapping[str, str], *, source: str) -> ServerVersion:
        """Build a version from ``major_version``/``minor_version``/``update_version`` keys."""
        try:
            return cls(
                major=int(properties["major_version"]),
                minor=int(properties["minor_version"]),
                update=int(properties.get("update_version", "0") or 0),
            )
        except (KeyError, ValueError) as exc:
            raise VersionError(f"Unable to read the server version from {source}: {exc}") from exc


@dataclass(frozen=True, slots=True)
class InstalledVersion:
    """Version facts of the installation being upgraded."""

    version: ServerVersion
    distribution: str | None = None


def parse_properties(text: str) -> dict[str, str]:
    """Parse simple ``key=value`` properties content."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith(("#", "!")):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            key, sep, value = line.partition(":")
        if sep:
            values[key.strip()] = value.strip()
    return values


def read_installed_version(install_root: Path) -> InstalledVersion:
    """Return the version and distribution recorded in the installation."""
    path = install_root / VERSION_PROPERTIES
    try:
        properties = parse_properties(path.read_text(encoding=PROPERTIES_ENCODING))
    except OSError as exc:
        raise VersionError(f"Unable to read installed version from {path}: {exc}") from exc
    version = ServerVersion.from_properties(properties, source=str(path))
    distribution = properties.get("distribution") or properties.get("distribution_key") or None
    return InstalledVersion(version=version, distribution=distribution)


def read_archive_version(archive: Path) -> ServerVersion:
    """Return the version recorded inside a distribution archive."""
    try:
        with zipfile.ZipFile(archive) as bundle:
            for name in bundle.namelist():
                if _ARCHIVE_PROPERTIES.fullmatch(name):
                    text = bundle.read(name).decode(PROPERTIES_ENCODING)
                    return ServerVersion.from_properties(
                        parse_properties(text), source=f"{archive}!{name}"
                    )
    except (OSError, zipfile.BadZipFile) as exc:
        raise DistributionError(f"Unable to read distribution archive {archive}: {exc}") from exc
    raise DistributionError(f"No version descriptor found in {archive}")


def validate_requested_version(selected: str | None, current: ServerVersion) -> ServerVersion:
    """Check that *selected* is a well-formed enterprise upgrade from *current*."""
    text = (selected or "").strip()
    if not text:
        raise VersionError("Empty selected version, please verify and try again")
    if _COMMUNITY_PATTERN.fullmatch(text):
        raise VersionError(
            f"{text} is a Payara Community version. "
            "You can only upgrade to a Payara Enterprise version"
        )
    match = _ENTERPRISE_PATTERN.fullmatch(text)
    if match is None:
        raise VersionError(f"Invalid selected version {text}, please verify and try again")

    requested = ServerVersion(*(int(part) for part in match.groups()))
    if requested.as_version() < current.as_version():
        raise VersionError(
            f"The version indicated is incorrect. You can't downgrade from {current} to {text} "
            "please set correct version and try again"
        )
    if requested.as_version() == current.as_version():
        raise VersionError(
            f"It was selected the same version: selected version {text} and current version "
            f"{current}, please verify and try again"
        )
    return requested


def validate_distribution(requested: str | None, installed: str | None) -> bool:
    """Check the requested distribution name against the installed one.

    Returns ``False`` when the installation does not record its distribution
    and the match therefore cannot be checked.
    """
    name = (requested or "").strip().lower()
    if name not in VALID_DISTRIBUTIONS:
        raise PreconditionError(
            f"Unknown distribution {requested!r}; expected one of {', '.join(VALID_DISTRIBUTIONS)}"
        )
    if not installed:
        return False
    if installed.strip().lower() != name:
        raise PreconditionError(
            f"The current distribution ({installed}) you are running does not match the "
            f"requested upgrade distribution ({requested})"
        )
    return True


@dataclass(slots=True)
class JavaRuntimeInfo:
    """Parsed ``java -version`` details."""

    raw: str
    version: str
    feature: int


@dataclass(slots=True)
class JavaRuntimeProbe:
    """Detect the Java runtime the server will start with."""

    java_bin: str = "java"

    def detect(self) -> JavaRuntimeInfo | None:
        """Return the detected runtime, or ``None`` when Java is unavailable."""
        try:
            result = self._run_command([self.java_bin, "-version"])
        except (FileNotFoundError, PermissionError) as exc:
            LOGGER.debug("Java runtime %s unavailable: %s", self.java_bin, exc)
            return None
        output = (result.stderr or result.stdout or "").strip()
        match = _JAVA_VERSION.search(output)
        if match is None:
            return None
        version = match.group(1)
        return JavaRuntimeInfo(raw=output, version=version, feature=_java_feature(version))

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603
            list(args),
            capture_output=True,
            text=True,
            check=False,
        )


def _java_feature(version: str) -> int:
    parts = re.split(r"[._+-]", version)
    try:
        first = int(parts[0])
        if first == 1 and len(parts) > 1:
            return int(parts[1])
        return first
    except ValueError:
        return 0


def check_java_compatibility(target: ServerVersion, runtime: JavaRuntimeInfo | None) -> str | None:
    """Reject *target* when the runtime is too old for it.

    Returns a warning message when compatibility cannot be determined.
    """
    minimum = MINIMUM_JAVA.get(target.major)
    if minimum is None:
        return f"No Java requirement known for version {target}; skipping the Java check."
    if runtime is None:
        return f"Java runtime not found; version {target} requires Java {minimum} or later."
    if runtime.feature < minimum:
        raise VersionError(
            f"Version {target} requires Java {minimum} or later but Java {runtime.version} "
            "was detected"
        )
    return None


__all__ = [
    "InstalledVersion",
    "JavaRuntimeInfo",
    "JavaRuntimeProbe",
    "MINIMUM_JAVA",
    "ServerVersion",
    "VALID_DISTRIBUTIONS",
    "VERSION_PROPERTIES",
    "check_java_compatibility",
    "parse_properties",
    "read_archive_version",
    "read_installed_version",
    "validate_distribution",
    "validate_requested_version",
]
