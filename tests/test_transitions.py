"""State transition and compensation tests."""
from __future__ import annotations

import errno
import shutil
from pathlib import Path

import pytest
from conftest import ServerInstall, read_tree

from upgradectl import transitions
from upgradectl.errors import DeleteError, TransferError
from upgradectl.manifest import DistributionProfile, DistributionVariant, ResourceManifest, build_manifest
from upgradectl.transfer import DeleteResult
from upgradectl.transitions import (
    ResourceState,
    StateTransitioner,
    Suffix,
    TransitionMode,
    probe_installation,
)


def _transitioner(
    server: ServerInstall,
    profile: DistributionProfile | None = None,
) -> StateTransitioner:
    manifest = build_manifest(server.install_root, server.domains_dir)
    return StateTransitioner(server.install_root, manifest, profile)


def test_probe_reports_each_location(server: ServerInstall) -> None:
    (server.install_root / "modules.new").mkdir()
    (server.install_root / "lib.old").mkdir()
    manifest = ResourceManifest.from_entries(["modules", "lib", "../h2db"])

    snapshot = probe_installation(server.install_root, manifest)

    assert snapshot["modules"] == ResourceState.CURRENT | ResourceState.NEW
    assert snapshot["lib"] == ResourceState.CURRENT | ResourceState.OLD
    assert snapshot["../h2db"] == ResourceState.NONE
    assert snapshot.has_staged and snapshot.has_backup
    assert snapshot.to_dict() == {
        "modules": "current+new",
        "lib": "current+old",
        "../h2db": "absent",
    }


def test_transition_all_round_trip(server: ServerInstall) -> None:
    """current -> .old -> current leaves every resource untouched."""
    before = read_tree(server.product_root)
    transitioner = _transitioner(server)

    first = transitioner.transition_all(Suffix.CURRENT, Suffix.OLD)
    assert not transitioner.probe().entries_with(ResourceState.CURRENT)
    second = transitioner.transition_all(Suffix.OLD, Suffix.CURRENT)

    assert read_tree(server.product_root) == before
    assert first.skipped == ["../h2db"]
    assert second.completed == first.completed


def test_copy_then_delete_mode_round_trip(server: ServerInstall) -> None:
    before = read_tree(server.product_root)
    transitioner = _transitioner(server)

    transitioner.transition_all(Suffix.CURRENT, Suffix.NEW, TransitionMode.COPY_THEN_DELETE)
    transitioner.transition_all(Suffix.NEW, Suffix.CURRENT, TransitionMode.COPY_THEN_DELETE)

    assert read_tree(server.product_root) == before


def test_transition_missing_required_resource_fails(server: ServerInstall) -> None:
    transitioner = _transitioner(server)

    with pytest.raises(TransferError, match="missing"):
        transitioner.transition("modules", Suffix.OLD, Suffix.CURRENT)


def test_message_queue_required_for_full_distribution(server: ServerInstall) -> None:
    """``../mq`` may only be missing from web distributions."""
    shutil.rmtree(server.product_root / "mq")

    web = _transitioner(server, profile=DistributionProfile(DistributionVariant.WEB))
    assert web.transition("../mq", Suffix.CURRENT, Suffix.OLD) is False

    full = _transitioner(server, profile=DistributionProfile(DistributionVariant.FULL))
    with pytest.raises(TransferError):
        full.transition("../mq", Suffix.CURRENT, Suffix.OLD)


def test_transition_all_reports_progress_on_failure(
    server: ServerInstall,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    transitioner = _transitioner(server)
    original = transitions.move_tree

    def failing_move(source: Path, destination: Path) -> bool:
        if source.name == "legal":
            raise OSError("disk on fire")
        return original(source, destination)

    monkeypatch.setattr(transitions, "move_tree", failing_move)

    with pytest.raises(TransferError) as excinfo:
        transitioner.transition_all(Suffix.CURRENT, Suffix.OLD)

    report = excinfo.value.report
    assert report is not None
    assert report.failed == "legal"
    assert report.completed == ["common", "config/branding", "config/osgi.properties", "h2db"]
    assert report.skipped == ["../h2db"]
    assert report.pending[0] == "modules"
    assert "failed=legal" in report.summary()


def test_undo_upgrade_restores_moved_and_partial_resources(
    server: ServerInstall,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Failing while moving resource B puts A and B back where they were."""
    before = read_tree(server.product_root)
    transitioner = _transitioner(server)
    baseline = transitioner.probe()
    original = transitions.move_tree

    def failing_move(source: Path, destination: Path) -> bool:
        if source.name == "branding" and destination.name == "branding.old":
            destination.mkdir()
            (destination / "partial").write_text("half", encoding="utf-8")
            raise OSError("interrupted")
        return original(source, destination)

    monkeypatch.setattr(transitions, "move_tree", failing_move)

    with pytest.raises(TransferError) as excinfo:
        transitioner.transition_all(Suffix.CURRENT, Suffix.OLD)
    assert excinfo.value.report is not None
    assert excinfo.value.report.completed == ["common"]

    monkeypatch.setattr(transitions, "move_tree", original)
    transitioner.undo_upgrade(excinfo.value.report, baseline)

    assert read_tree(server.product_root) == before
    assert not transitioner.probe().has_backup


def test_undo_upgrade_removes_resources_added_by_the_upgrade(server: ServerInstall) -> None:
    transitioner = _transitioner(server)
    shutil.rmtree(server.install_root / "h2db")
    baseline = transitioner.probe()
    report = transitioner.transition_all(Suffix.CURRENT, Suffix.OLD, entries=["modules"])
    (server.install_root / "h2db").mkdir()
    (server.install_root / "h2db" / "new.jar").write_text("new", encoding="utf-8")
    (server.install_root / "modules").mkdir()
    (server.install_root / "modules" / "new.jar").write_text("new", encoding="utf-8")

    transitioner.undo_upgrade(report, baseline)

    assert not (server.install_root / "h2db").exists()
    assert (server.install_root / "modules" / "core.jar").read_text(encoding="utf-8").startswith("old")
    assert not (server.install_root / "modules" / "new.jar").exists()


def test_install_from_skips_caches(server: ServerInstall, tmp_path: Path) -> None:
    source = tmp_path / "dist" / "glassfish"
    (source / "modules").mkdir(parents=True)
    (source / "modules" / "core.jar").write_text("new", encoding="utf-8")
    manifest = ResourceManifest.from_entries(["modules", "../h2db", "domains/domain1/osgi-cache"])
    transitioner = StateTransitioner(server.install_root, manifest)

    report = transitioner.install_from(source, Suffix.NEW)

    assert report.completed == ["modules"]
    assert report.skipped == ["../h2db", "domains/domain1/osgi-cache"]
    assert (server.install_root / "modules.new" / "core.jar").read_text(encoding="utf-8") == "new"


def test_install_from_missing_required_resource(server: ServerInstall, tmp_path: Path) -> None:
    source = tmp_path / "dist" / "glassfish"
    source.mkdir(parents=True)
    transitioner = StateTransitioner(server.install_root, ResourceManifest.from_entries(["modules"]))

    with pytest.raises(TransferError) as excinfo:
        transitioner.install_from(source, Suffix.NEW)

    assert excinfo.value.report is not None
    assert excinfo.value.report.failed == "modules"


def test_purge_removes_only_the_requested_suffix(server: ServerInstall) -> None:
    (server.install_root / "modules.old").mkdir()
    (server.install_root / "modules.new").mkdir()
    (server.install_root / "modules.old" / "x").write_text("x", encoding="utf-8")
    transitioner = _transitioner(server)

    removed = transitioner.purge(Suffix.OLD)

    assert removed == ["modules"]
    assert not (server.install_root / "modules.old").exists()
    assert (server.install_root / "modules.new").exists()
    assert (server.install_root / "modules").exists()


def test_purge_reports_leftovers(server: ServerInstall, monkeypatch: pytest.MonkeyPatch) -> None:
    (server.install_root / "lib.new").mkdir()
    transitioner = _transitioner(server)

    def stuck(path: Path) -> DeleteResult:
        result = DeleteResult(path=path)
        result.failures.append((path, "busy"))
        return result

    monkeypatch.setattr(transitions, "delete_tree", stuck)

    with pytest.raises(DeleteError) as excinfo:
        transitioner.purge(Suffix.NEW)

    assert excinfo.value.failures == ["lib"]


def test_restore_staged_returns_held_resources(server: ServerInstall) -> None:
    before = read_tree(server.product_root)
    transitioner = _transitioner(server)
    transitioner.transition_all(Suffix.CURRENT, Suffix.NEW)

    transitioner.restore_staged()

    assert read_tree(server.product_root) == before
    assert not transitioner.probe().has_staged


def test_return_current_to_old(server: ServerInstall) -> None:
    transitioner = _transitioner(server)

    transitioner.return_current_to_old()

    snapshot = transitioner.probe()
    assert snapshot.entries_with(ResourceState.CURRENT) == []
    assert "modules" in snapshot.entries_with(ResourceState.OLD)


def test_undo_upgrade_refuses_to_merge_into_uncleared_target(
    server: ServerInstall,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A new file that cannot be cleared fails the restore instead of mixing versions."""
    transitioner = _transitioner(server)
    baseline = transitioner.probe()
    report = transitioner.transition_all(Suffix.CURRENT, Suffix.OLD, entries=["modules"])
    modules = server.install_root / "modules"
    modules.mkdir()
    (modules / "new-only.jar").write_text("new", encoding="utf-8")
    (modules / "core.jar").write_text("new core", encoding="utf-8")
    stuck = modules / "new-only.jar"
    original_unlink = Path.unlink

    def flaky_unlink(self: Path, missing_ok: bool = False) -> None:
        if self == stuck:
            raise PermissionError(errno.EACCES, "denied")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)

    with pytest.raises(DeleteError, match="Could not clear"):
        transitioner.transition(
            "modules", Suffix.OLD, Suffix.CURRENT, TransitionMode.MOVE, purge_target=True
        )
    with pytest.raises(TransferError, match="Could not restore: modules"):
        transitioner.undo_upgrade(report, baseline)

    assert (server.install_root / "modules.old" / "core.jar").read_text(encoding="utf-8").startswith("old")
    assert stuck.exists()


def test_transition_all_fails_entry_whose_source_cannot_be_removed(
    server: ServerInstall,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    transitioner = _transitioner(server)
    stuck = server.install_root / "modules" / "core.jar"
    original_unlink = Path.unlink

    def flaky_unlink(self: Path, missing_ok: bool = False) -> None:
        if self == stuck:
            raise PermissionError(errno.EACCES, "denied")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)

    with pytest.raises(TransferError, match="could not be removed") as excinfo:
        transitioner.transition_all(
            Suffix.CURRENT, Suffix.OLD, TransitionMode.COPY_THEN_DELETE, entries=["modules"]
        )

    assert excinfo.value.report is not None
    assert excinfo.value.report.failed == "modules"
    assert excinfo.value.report.completed == []
