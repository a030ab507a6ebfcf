"""Keep per-domain OSGi caches safe while domain configs are restored.

``restore-domain`` replaces the whole domain directory, which would throw
away the runtime cache built by the version just rolled back to. The caches
are parked in temporary directories for the duration of the restore and put
back afterwards, whatever the restore outcome.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .errors import TransferError
from .manifest import CACHE_DIR_NAME, list_domains
from .transfer import delete_tree, move_tree

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EscrowRecord:
    """One cache parked outside its domain."""

    domain: str
    cache_path: Path
    holding_path: Path


class CacheEscrow:
    """Move domain caches out of the way and back again."""

    def __init__(self, domains_dir: Path, temp_dir: Path | None = None) -> None:
        self.domains_dir = domains_dir
        self.temp_dir = temp_dir

    def store(self) -> list[EscrowRecord]:
        """Move every existing domain cache into its own temporary directory."""
        records: list[EscrowRecord] = []
        for domain_dir in list_domains(self.domains_dir):
            cache_path = domain_dir / CACHE_DIR_NAME
            if not cache_path.exists():
                continue
            try:
                holding_root = Path(
                    tempfile.mkdtemp(
                        prefix=f"{domain_dir.name}-{CACHE_DIR_NAME}",
                        dir=str(self.temp_dir) if self.temp_dir else None,
                    )
                )
                holding_path = holding_root / CACHE_DIR_NAME
                move_tree(cache_path, holding_path)
            except (OSError, TransferError) as exc:
                self.release(records)
                raise TransferError(f"Failed to set aside {cache_path}: {exc}") from exc
            LOGGER.debug("Parked %s at %s", cache_path, holding_path)
            records.append(EscrowRecord(domain_dir.name, cache_path, holding_path))
        return records

    def release(self, records: list[EscrowRecord]) -> None:
        """Put parked caches back, replacing anything created in the meantime.

        Every record is attempted; a :class:`TransferError` listing the domains
        whose cache could not be returned is raised afterwards.
        """
        failed: list[str] = []
        for record in records:
            try:
                if os.path.lexists(record.cache_path):
                    delete_tree(record.cache_path).raise_for_failures(
                        f"Could not clear regenerated cache {record.cache_path}"
                    )
                record.cache_path.parent.mkdir(parents=True, exist_ok=True)
                move_tree(record.holding_path, record.cache_path)
            except (OSError, TransferError) as exc:
                LOGGER.error(
                    "Could not return cache for domain %s from %s: %s",
                    record.domain,
                    record.holding_path,
                    exc,
                )
                failed.append(record.domain)
                continue
            try:
                record.holding_path.parent.rmdir()
            except OSError as exc:
                LOGGER.debug("Leaving temporary directory %s: %s", record.holding_path.parent, exc)
        if failed:
            raise TransferError(f"Could not return OSGi caches for: {', '.join(failed)}")

    @contextmanager
    def held(self) -> Iterator[list[EscrowRecord]]:
        """Context manager that parks caches on entry and returns them on exit."""
        records = self.store()
        try:
            yield records
        finally:
            self.release(records)


__all__ = ["CacheEscrow", "EscrowRecord"]
