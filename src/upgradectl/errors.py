"""Error taxonomy shared by the upgrade and rollback workflows."""
from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .providers.node_installer import NodeReinstallReport
    from .transitions import TransitionReport


class UpgradeError(RuntimeError):
    """Base class for every failure raised by upgradectl."""


class PreconditionError(UpgradeError):
    """Raised when a workflow cannot start; nothing is compensated."""


class ManifestError(PreconditionError):
    """Raised when the resource manifest cannot be built."""


class VersionError(PreconditionError):
    """Raised when a requested version is malformed or not an upgrade."""


class TransferError(UpgradeError):
    """Raised when moving or copying a resource fails.

    ``report`` carries the sequence progress when the failure happened inside
    :meth:`StateTransitioner.transition_all`, so callers can work out which
    resources need compensating.
    """

    def __init__(self, message: str, *, report: TransitionReport | None = None) -> None:
        super().__init__(message)
        self.report = report


class CopyError(TransferError):
    """Raised when a tree copy cannot complete."""


class DeleteError(TransferError):
    """Raised when one or more paths could not be removed."""

    def __init__(self, message: str, *, failures: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.failures = list(failures)


class DistributionError(UpgradeError):
    """Raised when a distribution archive cannot be fetched or unpacked."""


class DelegatedCommandError(UpgradeError):
    """Raised when an asadmin collaborator (backup/restore domain) fails."""


class NodeConfigurationError(UpgradeError):
    """Raised when a domain configuration cannot be read before any node is touched."""


class RemoteNodeError(UpgradeError):
    """Raised after every node was attempted and at least one failed."""

    def __init__(
        self,
        message: str,
        *,
        failed_nodes: Sequence[str] = (),
        report: NodeReinstallReport | None = None,
    ) -> None:
        super().__init__(message)
        self.failed_nodes = list(failed_nodes)
        self.report = report


__all__ = [
    "CopyError",
    "DelegatedCommandError",
    "DeleteError",
    "DistributionError",
    "ManifestError",
    "NodeConfigurationError",
    "PreconditionError",
    "RemoteNodeError",
    "TransferError",
    "UpgradeError",
    "VersionError",
]
