"""Restore executable bits lost when a distribution archive is unpacked."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import TransferError
from .manifest import ResourceManifest
from .transfer import TreeVisitor, VisitDecision, walk_tree

LOGGER = logging.getLogger(__name__)

EXECUTABLE_MODE = 0o755
_BIN_DIR_NAME = "bin"
_NADMIN_FILES = ("nadmin", "nadmin.bat")


class _BinDirVisitor(TreeVisitor):
    def __init__(self) -> None:
        self.changed = 0

    def visit_file(self, path: Path) -> VisitDecision:
        if path.parent.name == _BIN_DIR_NAME and not path.is_symlink():
            LOGGER.debug("Fixing file permissions for %s", path)
            os.chmod(path, EXECUTABLE_MODE)
            self.changed += 1
        return VisitDecision.CONTINUE

    def visit_failed(self, path: Path, exc: OSError) -> VisitDecision:
        if isinstance(exc, FileNotFoundError):
            return VisitDecision.SKIP_SUBTREE
        raise exc


def fix_permissions(install_root: Path, manifest: ResourceManifest) -> int:
    """Mark launcher scripts executable and return how many files changed.

    Every file directly inside a ``bin`` directory of a manifest resource is
    made ``rwxr-xr-x``, as are ``lib/nadmin`` and ``lib/nadmin.bat``. Does
    nothing on Windows.
    """
    if os.name == "nt":
        return 0
    LOGGER.debug("Fixing file permissions")
    visitor = _BinDirVisitor()
    try:
        for entry in manifest:
            walk_tree(manifest.path(install_root, entry), visitor)
        if "lib" in manifest:
            lib_dir = manifest.path(install_root, "lib")
            for name in _NADMIN_FILES:
                candidate = lib_dir / name
                if candidate.exists():
                    os.chmod(candidate, EXECUTABLE_MODE)
                    visitor.changed += 1
    except OSError as exc:
        raise TransferError(f"Failed to fix file permissions: {exc}") from exc
    LOGGER.debug("File permissions fixed for %d file(s)", visitor.changed)
    return visitor.changed


__all__ = ["EXECUTABLE_MODE", "fix_permissions"]
