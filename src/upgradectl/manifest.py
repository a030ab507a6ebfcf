"""Resource manifest describing what an upgrade moves.

The manifest is the ordered set of paths, relative to the ``glassfish``
install root, that make up one upgrade unit. Entries are always stored with
forward slashes; :meth:`ResourceManifest.render` converts them for a target
platform.
"""
from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath

from .errors import ManifestError, PreconditionError

UPGRADE_DIRS_PROPERTY = "PAYARA_UPGRADE_DIRS"
PROPERTIES_FILE_NAME = "upgrade-tool.properties"
BAT_FILE_NAME = "upgrade-tool.bat"

CACHE_DIR_NAME = "osgi-cache"
MQ_ENTRY = "../mq"
LEGACY_ENTRIES = frozenset({"../h2db"})
LEGACY_LAYOUT_MAX_MAJOR = 4

CONSTANT_ENTRIES: tuple[str, ...] = (
    "common",
    "config/branding",
    "config/osgi.properties",
    "h2db",
    "../h2db",
    "legal",
    "modules",
    "osgi",
    "lib",
    "../README.txt",
    "../LICENSE.txt",
    MQ_ENTRY,
    "bin",
    "../bin",
)


class DistributionVariant(str, Enum):
    """Which flavour of the server a workflow is dealing with."""

    FULL = "full"
    WEB = "web"
    UNKNOWN = "unknown"

    @classmethod
    def from_distribution(cls, name: str | None) -> DistributionVariant:
        """Map a distribution name (``payara-web-ml``...) onto a variant."""
        if not name:
            return cls.UNKNOWN
        normalized = name.strip().lower()
        if normalized.startswith("payara-web"):
            return cls.WEB
        if normalized in {"payara", "payara-ml"}:
            return cls.FULL
        return cls.UNKNOWN


class LayoutVariant(str, Enum):
    """Directory layout generation; legacy layouts still ship duplicate dirs."""

    CURRENT = "current"
    LEGACY = "legacy"

    @classmethod
    def for_major_version(cls, major: int | None) -> LayoutVariant:
        """Return :attr:`LEGACY` for Payara 4 and earlier, :attr:`CURRENT` otherwise."""
        if major is not None and major <= LEGACY_LAYOUT_MAX_MAJOR:
            return cls.LEGACY
        return cls.CURRENT


@dataclass(frozen=True, slots=True)
class DistributionProfile:
    """Distribution facts decided once per workflow."""

    variant: DistributionVariant = DistributionVariant.UNKNOWN
    layout: LayoutVariant = LayoutVariant.CURRENT

    @classmethod
    def for_distribution(
        cls, name: str | None, major_version: int | None = None
    ) -> DistributionProfile:
        """Return the profile for a distribution name and installed major version."""
        return cls(
            variant=DistributionVariant.from_distribution(name),
            layout=LayoutVariant.for_major_version(major_version),
        )


def is_cache_entry(entry: str) -> bool:
    """Return True when *entry* names a per-domain runtime cache."""
    return PurePosixPath(entry).name == CACHE_DIR_NAME


def is_acceptable_absence(entry: str, profile: DistributionProfile) -> bool:
    """Return True when *entry* may legitimately be missing for *profile*.

    Web distributions ship without the message queue, newer layouts dropped
    the duplicate database directory, and a domain that was never started has
    no OSGi cache.
    """
    if is_cache_entry(entry):
        return True
    if entry == MQ_ENTRY:
        return profile.variant is not DistributionVariant.FULL
    if entry in LEGACY_ENTRIES:
        return profile.layout is not LayoutVariant.LEGACY
    return False


@dataclass(frozen=True, slots=True)
class ResourceManifest:
    """Immutable ordered set of install-relative resource paths."""

    entries: tuple[str, ...]

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, entry: object) -> bool:
        return entry in self.entries

    @classmethod
    def from_entries(cls, entries: Iterable[str]) -> ResourceManifest:
        """Build a manifest, normalising separators and dropping duplicates."""
        seen: dict[str, None] = {}
        for raw in entries:
            entry = raw.replace("\\", "/").strip()
            if not entry:
                continue
            if PurePosixPath(entry).is_absolute():
                raise ManifestError(f"Manifest entries must be relative: {raw!r}")
            seen.setdefault(entry, None)
        return cls(entries=tuple(seen))

    @property
    def cache_entries(self) -> tuple[str, ...]:
        """Return the per-domain cache entries."""
        return tuple(entry for entry in self.entries if is_cache_entry(entry))

    def path(self, root: Path, entry: str, suffix: str = "") -> Path:
        """Return the on-disk path for *entry* with an optional state suffix."""
        return root / f"{entry}{suffix}"

    def render(self, separator: str = "/") -> list[str]:
        """Return entries using *separator* between components."""
        return [entry.replace("/", separator) for entry in self.entries]


def list_domains(domains_dir: Path) -> list[Path]:
    """Return the domain directories under *domains_dir* in name order."""
    try:
        children = sorted(domains_dir.iterdir())
    except OSError as exc:
        raise ManifestError(f"Unable to list domains directory {domains_dir}: {exc}") from exc
    return [child for child in children if child.is_dir()]


def discover_cache_entries(install_root: Path, domains_dir: Path) -> list[str]:
    """Return install-relative cache entries worth tracking.

    A cache is included when it exists or when a ``.old`` copy exists, which
    covers rolling back a domain that was not started after upgrading.
    """
    entries: list[str] = []
    for domain_dir in list_domains(domains_dir):
        cache = domain_dir / CACHE_DIR_NAME
        if cache.exists() or cache.with_name(f"{CACHE_DIR_NAME}.old").exists():
            relative = os.path.relpath(cache, install_root)
            entries.append(PurePosixPath(*Path(relative).parts).as_posix())
    return entries


def build_manifest(install_root: Path, domains_dir: Path | None = None) -> ResourceManifest:
    """Build the manifest for the installation rooted at *install_root*."""
    if not install_root.is_dir():
        raise ManifestError(f"Install root {install_root} does not exist or is not a directory.")
    resolved_domains = domains_dir or install_root / "domains"
    caches = discover_cache_entries(install_root, resolved_domains)
    return ResourceManifest.from_entries([*CONSTANT_ENTRIES, *caches])


def write_control_files(manifest: ResourceManifest, config_dir: Path) -> tuple[Path, Path]:
    """Write the properties and batch files read by the apply/cleanup scripts.

    The properties file is consumed by POSIX shell scripts and always uses
    ``/``; the batch file is consumed on Windows and always uses ``\\``.
    """
    properties_path = config_dir / PROPERTIES_FILE_NAME
    bat_path = config_dir / BAT_FILE_NAME
    posix_entries = ",".join(manifest.render("/"))
    windows_entries = ",".join(manifest.render("\\"))
    payloads = (
        (properties_path, f"{UPGRADE_DIRS_PROPERTY}={posix_entries}"),
        (bat_path, f"SET {UPGRADE_DIRS_PROPERTY}={windows_entries}"),
    )
    for path, content in payloads:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise PreconditionError(f"Failed to delete existing {path.name}: {exc}") from exc
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise PreconditionError(f"Failed to write {path.name}: {exc}") from exc
    return properties_path, bat_path


__all__ = [
    "BAT_FILE_NAME",
    "CACHE_DIR_NAME",
    "CONSTANT_ENTRIES",
    "DistributionProfile",
    "DistributionVariant",
    "LayoutVariant",
    "PROPERTIES_FILE_NAME",
    "ResourceManifest",
    "UPGRADE_DIRS_PROPERTY",
    "build_manifest",
    "discover_cache_entries",
    "is_acceptable_absence",
    "is_cache_entry",
    "list_domains",
    "write_control_files",
]
