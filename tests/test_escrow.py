"""OSGi cache escrow tests."""
from __future__ import annotations

import errno
from pathlib import Path

import pytest
from conftest import ServerInstall

from upgradectl import escrow as escrow_module
from upgradectl.errors import TransferError
from upgradectl.escrow import CacheEscrow


def test_held_parks_and_returns_caches(server: ServerInstall, tmp_path: Path) -> None:
    server.domain("domain2")
    (server.domains_dir / "nocache" / "config").mkdir(parents=True)
    holding = tmp_path / "holding"
    holding.mkdir()
    escrow = CacheEscrow(server.domains_dir, holding)

    with escrow.held() as records:
        assert [record.domain for record in records] == ["domain1", "domain2"]
        assert not (server.domains_dir / "domain1" / "osgi-cache").exists()
        assert all(record.holding_path.parent.parent == holding for record in records)

    bundle = server.domains_dir / "domain1" / "osgi-cache" / "felix" / "bundle0"
    assert bundle.read_text(encoding="utf-8") == "cache of domain1 on 6.2.0\n"
    assert list(holding.iterdir()) == []


def test_release_replaces_cache_recreated_during_restore(server: ServerInstall) -> None:
    """Whatever the restore left in the cache location is replaced by the parked copy."""
    escrow = CacheEscrow(server.domains_dir)
    cache = server.domains_dir / "domain1" / "osgi-cache"

    with pytest.raises(RuntimeError, match="restore failed"):
        with escrow.held():
            cache.mkdir()
            (cache / "junk").write_text("junk", encoding="utf-8")
            raise RuntimeError("restore failed")

    assert not (cache / "junk").exists()
    assert (cache / "felix" / "bundle0").exists()


def test_store_failure_returns_already_parked_caches(
    server: ServerInstall,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    server.domain("domain2")
    original = escrow_module.move_tree

    def failing_move(source: Path, destination: Path) -> bool:
        if source.parent.name == "domain2":
            raise OSError("device busy")
        return original(source, destination)

    monkeypatch.setattr(escrow_module, "move_tree", failing_move)

    with pytest.raises(TransferError, match="Failed to set aside"):
        CacheEscrow(server.domains_dir).store()

    assert (server.domains_dir / "domain1" / "osgi-cache" / "felix" / "bundle0").exists()
    assert (server.domains_dir / "domain2" / "osgi-cache" / "felix" / "bundle0").exists()


def test_release_keeps_parked_cache_when_regenerated_one_cannot_be_cleared(
    server: ServerInstall,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    escrow = CacheEscrow(server.domains_dir)
    records = escrow.store()
    cache = server.domains_dir / "domain1" / "osgi-cache"
    cache.mkdir()
    stuck = cache / "junk"
    stuck.write_text("junk", encoding="utf-8")
    original_unlink = Path.unlink

    def flaky_unlink(self: Path, missing_ok: bool = False) -> None:
        if self == stuck:
            raise PermissionError(errno.EACCES, "denied")
        original_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)

    with pytest.raises(TransferError, match="Could not return OSGi caches for: domain1"):
        escrow.release(records)

    assert (records[0].holding_path / "felix" / "bundle0").exists()
    assert not (cache / "felix").exists()
