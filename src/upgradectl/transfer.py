"""Depth-first tree copy and delete helpers.

Traversal lives in :func:`walk_tree`; what happens at each node is decided by
a :class:`TreeVisitor` returning a :class:`VisitDecision`. The copier and the
deleter are two visitors over the same walk.
"""
from __future__ import annotations

import errno
import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import CopyError, DeleteError

LOGGER = logging.getLogger(__name__)

# Rename failures that mean the target is in the way rather than the disk is broken.
_RENAME_FALLBACK_ERRNOS = frozenset({errno.EXDEV, errno.ENOTEMPTY, errno.EEXIST})


class VisitDecision(Enum):
    """What the walker should do after visiting a node."""

    CONTINUE = "continue"
    SKIP_SUBTREE = "skip-subtree"
    ABORT = "abort"


class TreeVisitor:
    """Per-node policy hooks for :func:`walk_tree`.

    The default implementation visits everything and re-raises failures.
    """

    def enter_directory(self, path: Path) -> VisitDecision:
        return VisitDecision.CONTINUE

    def visit_file(self, path: Path) -> VisitDecision:
        return VisitDecision.CONTINUE

    def leave_directory(self, path: Path) -> None:
        return None

    def visit_failed(self, path: Path, exc: OSError) -> VisitDecision:
        raise exc


def _is_directory(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


def walk_tree(root: Path, visitor: TreeVisitor) -> bool:
    """Walk *root* depth-first, files before the directory that holds them.

    Returns ``False`` when the visitor aborted the walk. A missing *root* is
    reported through :meth:`TreeVisitor.visit_failed`.
    """
    if not os.path.lexists(root):
        missing = FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(root))
        decision = visitor.visit_failed(root, missing)
        return decision is not VisitDecision.ABORT
    return _walk(root, visitor) is not VisitDecision.ABORT


def _walk(path: Path, visitor: TreeVisitor) -> VisitDecision:
    if not _is_directory(path):
        return visitor.visit_file(path)

    decision = visitor.enter_directory(path)
    if decision is VisitDecision.SKIP_SUBTREE:
        return VisitDecision.CONTINUE
    if decision is VisitDecision.ABORT:
        return decision

    try:
        children = sorted(path.iterdir())
    except OSError as exc:
        decision = visitor.visit_failed(path, exc)
        if decision is VisitDecision.ABORT:
            return decision
        children = []

    for child in children:
        try:
            result = _walk(child, visitor)
        except OSError as exc:
            result = visitor.visit_failed(child, exc)
        if result is VisitDecision.ABORT:
            return result

    visitor.leave_directory(path)
    return VisitDecision.CONTINUE


@dataclass(slots=True)
class CopyResult:
    """Outcome of :func:`copy_tree`."""

    source: Path
    destination: Path
    files: int = 0
    skipped: bool = False


class _CopyVisitor(TreeVisitor):
    def __init__(self, source: Path, destination: Path) -> None:
        self.source = source
        self.destination = destination
        self.files = 0

    def _target(self, path: Path) -> Path:
        return self.destination / path.relative_to(self.source)

    def enter_directory(self, path: Path) -> VisitDecision:
        self._target(path).mkdir(parents=True, exist_ok=True)
        return VisitDecision.CONTINUE

    def visit_file(self, path: Path) -> VisitDecision:
        target = self._target(path) if path != self.source else self.destination
        LOGGER.debug("Copying %s to %s", path, target)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or (path.is_symlink() and os.path.lexists(target)):
            target.unlink()
        if path.is_symlink():
            os.symlink(os.readlink(path), target)
        else:
            shutil.copy2(path, target)
        self.files += 1
        return VisitDecision.CONTINUE

    def leave_directory(self, path: Path) -> None:
        try:
            shutil.copystat(path, self._target(path))
        except OSError as exc:
            LOGGER.debug("Could not copy directory metadata for %s: %s", path, exc)

    def visit_failed(self, path: Path, exc: OSError) -> VisitDecision:
        raise CopyError(f"Failed to copy {path}: {exc}") from exc


def copy_tree(
    source: Path,
    destination: Path,
    *,
    allow_missing: Callable[[Path], bool] | None = None,
) -> CopyResult:
    """Copy *source* (file or directory) over *destination*, overwriting files.

    When *source* does not exist, ``allow_missing(source)`` decides whether
    that is an expected variance (the copy is skipped) or a :class:`CopyError`.
    """
    result = CopyResult(source=source, destination=destination)
    if not os.path.lexists(source):
        if allow_missing is not None and allow_missing(source):
            LOGGER.debug("Source %s is absent; skipping copy", source)
            result.skipped = True
            return result
        raise CopyError(f"Copy source does not exist: {source}")

    if _is_directory(source) and destination.exists() and not _is_directory(destination):
        raise CopyError(f"Cannot copy directory {source} over file {destination}")

    visitor = _CopyVisitor(source, destination)
    try:
        walk_tree(source, visitor)
    except CopyError:
        raise
    except OSError as exc:
        raise CopyError(f"Failed to copy {source} to {destination}: {exc}") from exc
    result.files = visitor.files
    return result


@dataclass(slots=True)
class DeleteResult:
    """Outcome of :func:`delete_tree`; failures are reported, not raised."""

    path: Path
    removed: int = 0
    failures: list[tuple[Path, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return True when everything under the path was removed."""
        return not self.failures

    def raise_for_failures(self, message: str) -> None:
        """Raise :class:`DeleteError` prefixed with *message* if anything was left behind."""
        if self.failures:
            raise DeleteError(
                f"{message}: {len(self.failures)} path(s) under {self.path} could not be removed",
                failures=[str(path) for path, _reason in self.failures],
            )


class _DeleteVisitor(TreeVisitor):
    def __init__(self, result: DeleteResult) -> None:
        self.result = result

    def visit_file(self, path: Path) -> VisitDecision:
        try:
            path.unlink()
        except FileNotFoundError:
            return VisitDecision.CONTINUE
        except OSError as exc:
            self.result.failures.append((path, str(exc)))
            return VisitDecision.CONTINUE
        self.result.removed += 1
        return VisitDecision.CONTINUE

    def leave_directory(self, path: Path) -> None:
        try:
            path.rmdir()
        except FileNotFoundError:
            return
        except OSError as exc:
            self.result.failures.append((path, str(exc)))
            return
        self.result.removed += 1

    def visit_failed(self, path: Path, exc: OSError) -> VisitDecision:
        if isinstance(exc, FileNotFoundError):
            LOGGER.debug("Ignoring missing path %s during cleanup", path)
            return VisitDecision.SKIP_SUBTREE
        self.result.failures.append((path, str(exc)))
        return VisitDecision.CONTINUE


def delete_tree(path: Path) -> DeleteResult:
    """Delete *path* recursively, skipping anything that is already gone."""
    result = DeleteResult(path=path)
    walk_tree(path, _DeleteVisitor(result))
    for failed, message in result.failures:
        LOGGER.warning("Could not delete %s: %s", failed, message)
    return result


def copy_then_delete(source: Path, destination: Path) -> CopyResult:
    """Copy *source* over *destination*, then remove *source*.

    Copy failures raise :class:`CopyError` with *source* left intact. Anything
    the delete phase leaves behind raises :class:`DeleteError`, since the
    source location would otherwise still hold part of the tree.
    """
    result = copy_tree(source, destination)
    delete_tree(source).raise_for_failures(f"Copied {source} to {destination}")
    return result


def move_tree(source: Path, destination: Path) -> bool:
    """Rename *source* to *destination*, copying when a rename is not possible.

    Returns True when the rename succeeded. A non-empty destination or one on
    another filesystem falls back to :func:`copy_then_delete` (and its
    :class:`DeleteError` on leftovers); other rename errors propagate.
    """
    try:
        os.replace(source, destination)
    except OSError as exc:
        if exc.errno not in _RENAME_FALLBACK_ERRNOS:
            raise
        LOGGER.debug("Rename of %s failed (%s); copying instead", source, exc)
    else:
        LOGGER.debug("Moved %s to %s", source, destination)
        return True
    copy_then_delete(source, destination)
    return False


__all__ = [
    "CopyResult",
    "DeleteResult",
    "TreeVisitor",
    "VisitDecision",
    "copy_then_delete",
    "copy_tree",
    "delete_tree",
    "move_tree",
    "walk_tree",
]
