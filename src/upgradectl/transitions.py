"""Move manifest resources between the current, ``.old`` and ``.new`` states.

Each manifest entry can live at ``<entry>`` (current), ``<entry>.old``
(backup) and ``<entry>.new`` (staged). There is no status file: the state of
an installation is whatever :func:`probe_installation` finds on disk, captured
once into an :class:`InstallationSnapshot` at the start of a workflow.

Nothing here is atomic across resources. A failed sequence raises
:class:`~upgradectl.errors.TransferError` carrying a :class:`TransitionReport`
so the caller can run the matching compensation (``undo_upgrade``,
``restore_staged`` or ``return_current_to_old``).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum, Flag, auto
from pathlib import Path

from .errors import DeleteError, TransferError
from .manifest import (
    DistributionProfile,
    ResourceManifest,
    is_acceptable_absence,
    is_cache_entry,
)
from .transfer import copy_then_delete, copy_tree, delete_tree, move_tree

LOGGER = logging.getLogger(__name__)


class Suffix(str, Enum):
    """Physical location of a resource relative to its manifest entry."""

    CURRENT = ""
    OLD = ".old"
    NEW = ".new"

    @property
    def label(self) -> str:
        """Return a readable name for log messages."""
        return self.name.lower()


class TransitionMode(Enum):
    """How a resource gets from one location to another."""

    MOVE = "move"
    COPY_THEN_DELETE = "copy-then-delete"


class ResourceState(Flag):
    """Which of the three locations currently hold a resource."""

    NONE = 0
    CURRENT = auto()
    OLD = auto()
    NEW = auto()

    @classmethod
    def for_suffix(cls, suffix: Suffix) -> ResourceState:
        """Return the flag matching *suffix*."""
        return {Suffix.CURRENT: cls.CURRENT, Suffix.OLD: cls.OLD, Suffix.NEW: cls.NEW}[suffix]

    def describe(self) -> str:
        """Return ``current+old`` style text (``absent`` when empty)."""
        names = [
            member.name.lower()
            for member in (ResourceState.CURRENT, ResourceState.OLD, ResourceState.NEW)
            if member in self and member.name
        ]
        return "+".join(names) or "absent"


class WorkflowState(str, Enum):
    """Installation-level states walked through by the orchestrators."""

    STABLE_CURRENT = "stable-current"
    STAGED = "staged"
    SWAPPING = "swapping"
    SWAPPED_NEW_IS_CURRENT = "swapped-new-is-current"
    ROLLBACK_SWAPPING = "rollback-swapping"
    ROLLBACK_COMPLETE = "rollback-complete"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class InstallationSnapshot:
    """Per-entry resource states captured by a single probe."""

    states: Mapping[str, ResourceState]

    def __getitem__(self, entry: str) -> ResourceState:
        return self.states.get(entry, ResourceState.NONE)

    def entries_with(self, flag: ResourceState) -> list[str]:
        """Return entries whose state includes *flag*, in manifest order."""
        return [entry for entry, state in self.states.items() if flag in state]

    @property
    def has_staged(self) -> bool:
        """Return True when any ``.new`` resource is present."""
        return bool(self.entries_with(ResourceState.NEW))

    @property
    def has_backup(self) -> bool:
        """Return True when any ``.old`` resource is present."""
        return bool(self.entries_with(ResourceState.OLD))

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {entry: state.describe() for entry, state in self.states.items()}


def probe_installation(install_root: Path, manifest: ResourceManifest) -> InstallationSnapshot:
    """Return the on-disk state of every manifest entry without touching it."""
    states: dict[str, ResourceState] = {}
    for entry in manifest:
        state = ResourceState.NONE
        for suffix in Suffix:
            if os.path.lexists(install_root / f"{entry}{suffix.value}"):
                state |= ResourceState.for_suffix(suffix)
        states[entry] = state
    return InstallationSnapshot(states=states)


@dataclass(slots=True)
class TransitionReport:
    """Progress of a multi-resource sequence."""

    source: str
    target: str
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    failed: str | None = None

    @property
    def ok(self) -> bool:
        """Return True when no entry failed."""
        return self.failed is None

    def summary(self) -> str:
        """Return a one-line description for structured log steps."""
        text = (
            f"{self.source}->{self.target} completed={len(self.completed)} "
            f"skipped={len(self.skipped)}"
        )
        if self.failed is not None:
            text += f" failed={self.failed} pending={len(self.pending)}"
        return text


class StateTransitioner:
    """Apply state transitions to the resources of one installation."""

    def __init__(
        self,
        install_root: Path,
        manifest: ResourceManifest,
        profile: DistributionProfile | None = None,
    ) -> None:
        self.install_root = install_root
        self.manifest = manifest
        self.profile = profile or DistributionProfile()

    def path(self, entry: str, suffix: Suffix) -> Path:
        """Return the filesystem path of *entry* in state *suffix*."""
        return self.manifest.path(self.install_root, entry, suffix.value)

    def probe(self) -> InstallationSnapshot:
        """Return the current snapshot of the installation."""
        return probe_installation(self.install_root, self.manifest)

    def exists(self, entry: str, suffix: Suffix) -> bool:
        """Return True when *entry* is present in state *suffix*."""
        return os.path.lexists(self.path(entry, suffix))

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------
    def transition(
        self,
        entry: str,
        source: Suffix,
        target: Suffix,
        mode: TransitionMode = TransitionMode.MOVE,
        *,
        purge_target: bool = False,
    ) -> bool:
        """Move *entry* from *source* to *target*.

        Returns ``False`` when the source is missing but that is an acceptable
        absence for the active profile. ``purge_target`` clears whatever sits
        at the target first, for targets known to hold unrelated content; a
        target that cannot be fully cleared fails the transition with
        :class:`DeleteError` rather than merging into the leftovers.
        """
        source_path = self.path(entry, source)
        target_path = self.path(entry, target)
        if not os.path.lexists(source_path):
            if is_acceptable_absence(entry, self.profile):
                LOGGER.debug("Skipping absent %s resource %s", source.label, source_path)
                return False
            raise TransferError(f"Resource {entry} is missing at {source_path}")

        try:
            if purge_target and os.path.lexists(target_path):
                delete_tree(target_path).raise_for_failures(f"Could not clear {target_path}")
            if mode is TransitionMode.MOVE:
                move_tree(source_path, target_path)
            else:
                copy_then_delete(source_path, target_path)
        except TransferError:
            raise
        except OSError as exc:
            raise TransferError(f"Failed to move {source_path} to {target_path}: {exc}") from exc
        return True

    def transition_all(
        self,
        source: Suffix,
        target: Suffix,
        mode: TransitionMode = TransitionMode.MOVE,
        *,
        entries: Iterable[str] | None = None,
        purge_target: bool = False,
    ) -> TransitionReport:
        """Transition every entry in order, stopping at the first real failure."""
        ordered = list(self.manifest if entries is None else entries)
        report = TransitionReport(source=source.label, target=target.label)
        LOGGER.debug("Moving %d resource(s) from %s to %s", len(ordered), source.label, target.label)
        for index, entry in enumerate(ordered):
            try:
                moved = self.transition(entry, source, target, mode, purge_target=purge_target)
            except TransferError as exc:
                report.failed = entry
                report.pending = ordered[index + 1 :]
                raise TransferError(str(exc), report=report) from exc
            (report.completed if moved else report.skipped).append(entry)
        return report

    def install_from(self, source_root: Path, target: Suffix) -> TransitionReport:
        """Copy the resources of an unpacked distribution into *target*.

        Runtime caches never ship in a distribution, so they are skipped.
        """
        report = TransitionReport(source="archive", target=target.label)
        ordered = list(self.manifest)
        for index, entry in enumerate(ordered):
            if is_cache_entry(entry):
                report.skipped.append(entry)
                continue
            try:
                result = copy_tree(
                    source_root / entry,
                    self.path(entry, target),
                    allow_missing=lambda _path, entry=entry: is_acceptable_absence(
                        entry, self.profile
                    ),
                )
            except TransferError as exc:
                report.failed = entry
                report.pending = ordered[index + 1 :]
                raise TransferError(str(exc), report=report) from exc
            except OSError as exc:
                report.failed = entry
                report.pending = ordered[index + 1 :]
                raise TransferError(f"Failed to install {entry}: {exc}", report=report) from exc
            (report.skipped if result.skipped else report.completed).append(entry)
        return report

    def purge(self, suffix: Suffix, *, entries: Iterable[str] | None = None) -> list[str]:
        """Delete every ``<entry><suffix>`` that exists.

        Every entry is attempted; leftovers raise :class:`DeleteError` at the
        end listing the entries that could not be fully removed.
        """
        removed: list[str] = []
        failures: list[str] = []
        for entry in self.manifest if entries is None else entries:
            path = self.path(entry, suffix)
            if not os.path.lexists(path):
                continue
            result = delete_tree(path)
            (removed if result.ok else failures).append(entry)
        if failures:
            raise DeleteError(
                f"Could not remove {suffix.label} resources: {', '.join(failures)}",
                failures=failures,
            )
        return removed

    # ------------------------------------------------------------------
    # Compensations
    # ------------------------------------------------------------------
    def undo_upgrade(
        self,
        move_report: TransitionReport | None,
        baseline: InstallationSnapshot,
    ) -> None:
        """Return an in-place upgrade to the pre-upgrade state.

        Entries already moved to ``.old`` are put back over whatever was
        copied in. A half-written ``.old`` copy of the entry that failed is
        dropped (its current copy was never removed). Resources that did not
        exist before the upgrade are deleted.
        """
        LOGGER.info("Restoring the previous install from the .old backup")
        moved = set(move_report.completed) if move_report else set()
        partial = move_report.failed if move_report else None
        problems: list[str] = []
        for entry in self.manifest:
            try:
                if entry in moved:
                    self.transition(
                        entry, Suffix.OLD, Suffix.CURRENT, TransitionMode.MOVE, purge_target=True
                    )
                elif entry == partial:
                    if ResourceState.OLD not in baseline[entry]:
                        self.purge(Suffix.OLD, entries=[entry])
                elif ResourceState.CURRENT not in baseline[entry] and self.exists(
                    entry, Suffix.CURRENT
                ):
                    self.purge(Suffix.CURRENT, entries=[entry])
            except TransferError as exc:
                LOGGER.error("Could not restore %s: %s", entry, exc)
                problems.append(entry)
        if problems:
            raise TransferError(f"Could not restore: {', '.join(problems)}")
        LOGGER.info("Restored the previous install")

    def restore_staged(self) -> None:
        """Copy ``.new`` resources back over current and delete them."""
        LOGGER.info("Moving staged resources back to current")
        for entry in self.manifest:
            if self.exists(entry, Suffix.NEW):
                self.transition(entry, Suffix.NEW, Suffix.CURRENT, TransitionMode.COPY_THEN_DELETE)
        self.purge(Suffix.NEW)
        LOGGER.info("Moved staged resources back to current")

    def return_current_to_old(self) -> None:
        """Copy current resources back to ``.old`` and delete them."""
        LOGGER.info("Moving current resources back to .old")
        for entry in self.manifest:
            if self.exists(entry, Suffix.CURRENT):
                self.transition(entry, Suffix.CURRENT, Suffix.OLD, TransitionMode.COPY_THEN_DELETE)
        LOGGER.info("Moved current resources back to .old")


__all__ = [
    "InstallationSnapshot",
    "ResourceState",
    "StateTransitioner",
    "Suffix",
    "TransitionMode",
    "TransitionReport",
    "WorkflowState",
    "probe_installation",
]
