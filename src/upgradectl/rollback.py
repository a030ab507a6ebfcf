"""Roll an in-place upgrade back to the ``.old`` backup.

Sequence::

    purge stale .new -> current -> .new -> .old -> current
      -> reinstall SSH nodes -> purge .new
      -> escrow caches, restore domain configs, release caches

Each step that can fail before the swap completes walks the installation back
to where it started. Once the binaries are swapped, cleanup and domain config
restore failures only produce warnings.
"""
from __future__ import annotations

import logging

from .errors import NodeConfigurationError, RemoteNodeError, TransferError, UpgradeError
from .escrow import CacheEscrow
from .exit_codes import ExitCode
from .transitions import StateTransitioner, Suffix, WorkflowState
from .workflow import Workflow

LOGGER = logging.getLogger(__name__)

BACKUP_MARKER = "modules.old"


class RollbackOrchestrator(Workflow):
    """Swap the ``.old`` backup back into place."""

    def rollback(self) -> ExitCode:
        """Roll the installation back to its previous version."""
        self._reset()
        if self.installation.windows:
            return self._fail(
                "Command not supported on Windows. Please use the rollbackUpgrade script."
            )
        if not (self.installation.install_root / BACKUP_MARKER).exists():
            return self._fail("No old version found to rollback")
        try:
            transitioner = self._transitioner()
        except UpgradeError as exc:
            return self._fail(str(exc))

        LOGGER.info("Rolling back server...")
        try:
            transitioner.purge(Suffix.NEW)
        except TransferError as exc:
            return self._fail(
                f"Error cleaning up previous staged upgrade, aborting rollback: {exc}"
            )
        self._step("cleanup.staged")

        self._enter(WorkflowState.ROLLBACK_SWAPPING)
        try:
            report = transitioner.transition_all(Suffix.CURRENT, Suffix.NEW)
        except TransferError as exc:
            code = self._fail(f"Error rolling back current install: {exc}")
            self._compensate(transitioner, return_current=False)
            return code
        self._step("resources.hold", detail=report.summary())

        try:
            report = transitioner.transition_all(Suffix.OLD, Suffix.CURRENT)
        except TransferError as exc:
            code = self._fail(f"Error rolling back current install: {exc}")
            self._compensate(transitioner, return_current=True)
            return code
        self._step("resources.restore", detail=report.summary())

        try:
            self._run_node_reinstall()
        except NodeConfigurationError as exc:
            code = self._fail(f"Error rolling back nodes: {exc}")
            self._compensate(transitioner, return_current=True)
            return code
        except RemoteNodeError as exc:
            self._warn(
                "Failed to roll back all nodes: inspect the logs for the reasons. You can "
                "roll back the nodes individually or retry them all with reinstall-nodes. "
                f"{exc}"
            )

        try:
            transitioner.purge(Suffix.NEW)
            self._step("cleanup.rolled-back")
        except TransferError as exc:
            self._warn(f"Error cleaning up rolled back upgrade: {exc}")

        self._restore_domains()
        self._enter(WorkflowState.ROLLBACK_COMPLETE)
        return self._outcome()

    def _restore_domains(self) -> None:
        escrow = CacheEscrow(self.installation.domains_dir, self.installation.temp_dir)
        try:
            with escrow.held() as records:
                self._step("caches.escrow", detail=", ".join(r.domain for r in records))
                domains = self.domain_admin.restore_domains()
        except UpgradeError as exc:
            self._warn(
                f"Error restore-domain command! Please restore your domain config manually. {exc}"
            )
            return
        self._step("domains.restore", detail=", ".join(domains))

    def _compensate(self, transitioner: StateTransitioner, *, return_current: bool) -> None:
        LOGGER.info("Attempting to undo rollback")
        try:
            if return_current:
                transitioner.return_current_to_old()
            transitioner.restore_staged()
        except TransferError as exc:
            message = f"Error undoing rollback; manual intervention is required: {exc}"
            LOGGER.error(message)
            self.errors.append(message)
            return
        self._enter(WorkflowState.STABLE_CURRENT, detail="rollback undone")


__all__ = ["BACKUP_MARKER", "RollbackOrchestrator"]
