"""Enumerations for CLI exit codes shared by every workflow."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    SUCCESS = 0
    ERROR = 1
    WARNING = 4

    @property
    def label(self) -> str:
        """Return the lower-case status name used in logs."""
        return self.name.lower()
