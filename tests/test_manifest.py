"""Resource manifest construction and control file tests."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import ServerInstall

from upgradectl.errors import ManifestError
from upgradectl.manifest import (
    CONSTANT_ENTRIES,
    DistributionProfile,
    DistributionVariant,
    LayoutVariant,
    ResourceManifest,
    build_manifest,
    is_acceptable_absence,
    write_control_files,
)


def test_build_manifest_appends_domain_caches(server: ServerInstall) -> None:
    """Started domains contribute their OSGi cache after the constant entries."""
    server.domain("domain2")

    manifest = build_manifest(server.install_root, server.domains_dir)

    assert manifest.entries[: len(CONSTANT_ENTRIES)] == CONSTANT_ENTRIES
    assert manifest.cache_entries == (
        "domains/domain1/osgi-cache",
        "domains/domain2/osgi-cache",
    )


def test_build_manifest_tracks_cache_with_only_old_copy(server: ServerInstall) -> None:
    """A domain not started since upgrading still has its backed-up cache tracked."""
    domain = server.domains_dir / "domain1"
    (domain / "osgi-cache").rename(domain / "osgi-cache.old")
    (server.domains_dir / "fresh" / "config").mkdir(parents=True)

    manifest = build_manifest(server.install_root)

    assert manifest.cache_entries == ("domains/domain1/osgi-cache",)


def test_build_manifest_requires_install_root(tmp_path: Path) -> None:
    with pytest.raises(ManifestError):
        build_manifest(tmp_path / "missing")


def test_manifest_rejects_absolute_entries() -> None:
    with pytest.raises(ManifestError, match="relative"):
        ResourceManifest.from_entries(["modules", "/etc/passwd"])


def test_manifest_normalises_and_deduplicates() -> None:
    manifest = ResourceManifest.from_entries(["config\\branding", "modules", "config/branding", " "])

    assert manifest.entries == ("config/branding", "modules")
    assert manifest.render("\\") == ["config\\branding", "modules"]


@pytest.mark.parametrize(
    ("entry", "profile", "expected"),
    [
        ("domains/domain1/osgi-cache", DistributionProfile(DistributionVariant.FULL), True),
        ("../mq", DistributionProfile(DistributionVariant.WEB), True),
        ("../mq", DistributionProfile(DistributionVariant.FULL), False),
        ("../mq", DistributionProfile(DistributionVariant.UNKNOWN), True),
        ("../h2db", DistributionProfile(), True),
        ("../h2db", DistributionProfile(layout=LayoutVariant.LEGACY), False),
        ("modules", DistributionProfile(), False),
    ],
)
def test_is_acceptable_absence(entry: str, profile: DistributionProfile, expected: bool) -> None:
    assert is_acceptable_absence(entry, profile) is expected


def test_profile_from_distribution_name() -> None:
    assert DistributionProfile.for_distribution("payara-web-ml").variant is DistributionVariant.WEB
    assert DistributionProfile.for_distribution("Payara").variant is DistributionVariant.FULL
    assert DistributionProfile.for_distribution(None).variant is DistributionVariant.UNKNOWN


@pytest.mark.parametrize(
    ("major", "layout"),
    [
        (4, LayoutVariant.LEGACY),
        (5, LayoutVariant.CURRENT),
        (6, LayoutVariant.CURRENT),
        (None, LayoutVariant.CURRENT),
    ],
)
def test_layout_follows_installed_major_version(major: int | None, layout: LayoutVariant) -> None:
    profile = DistributionProfile.for_distribution("payara", major)

    assert profile.layout is layout
    assert is_acceptable_absence("../h2db", profile) is (layout is LayoutVariant.CURRENT)


def test_write_control_files_uses_platform_separators(tmp_path: Path) -> None:
    """Properties use forward slashes, the batch file uses backslashes."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "upgrade-tool.properties").write_text("stale", encoding="utf-8")
    manifest = ResourceManifest.from_entries(["modules", "../mq", "domains/domain1/osgi-cache"])

    properties, bat = write_control_files(manifest, config_dir)

    assert properties.read_text(encoding="utf-8") == (
        "PAYARA_UPGRADE_DIRS=modules,../mq,domains/domain1/osgi-cache"
    )
    assert bat.read_text(encoding="utf-8") == (
        "SET PAYARA_UPGRADE_DIRS=modules,..\\mq,domains\\domain1\\osgi-cache"
    )
