"""Upgrade an installation in place or stage the new version next to it.

Sequence::

    validate -> acquire archive -> extract -> back up domains
      -> purge stale .old/.new -> current -> .old (in place only)
      -> copy archive into current or .new -> fix permissions (in place only)
      -> reinstall SSH nodes (in place only)

Everything before the purge is read-only with respect to manifest resources,
so failures there simply abort. Failures while moving or copying resources
are compensated: a staged upgrade drops its ``.new`` tree, an in-place upgrade
restores ``.old``. Per-node reinstall failures only downgrade the outcome to
a warning.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .errors import (
    DelegatedCommandError,
    DistributionError,
    NodeConfigurationError,
    PreconditionError,
    RemoteNodeError,
    TransferError,
    UpgradeError,
)
from .exit_codes import ExitCode
from .logging import OperationScope
from .manifest import DistributionProfile, write_control_files
from .permissions import fix_permissions
from .providers.distribution import DistributionFetcher, VersionNotFoundError
from .providers.domain_admin import DomainAdmin
from .providers.node_installer import NodeInstaller
from .transitions import (
    InstallationSnapshot,
    StateTransitioner,
    Suffix,
    TransitionReport,
    WorkflowState,
)
from .versions import (
    InstalledVersion,
    JavaRuntimeProbe,
    ServerVersion,
    check_java_compatibility,
    read_archive_version,
    read_installed_version,
    validate_distribution,
    validate_requested_version,
)
from .workflow import Installation, Workflow

LOGGER = logging.getLogger(__name__)

INTERRUPT_WARNING = "Do not interrupt the upgrade process, do not shutdown the server or computer."
STAGED_HINT = (
    "Upgrade successfully staged, please run the apply-staged command (or the "
    "applyStagedUpgrade script under glassfish/bin) to apply the upgrade."
)
MANUAL_INTERVENTION = "Failed to restore previous state; manual intervention is required"


@dataclass(frozen=True, slots=True)
class UpgradeParameters:
    """What to upgrade to and how."""

    distribution: str = "payara"
    version: str | None = None
    stage: bool = False
    archive: Path | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)

    @property
    def uses_archive(self) -> bool:
        return self.archive is not None

    def validate(self) -> None:
        """Check that either an archive or full download details were given."""
        if self.archive is not None:
            if not self.archive.is_file():
                raise PreconditionError(f"File specified does not exist: {self.archive}")
            return
        missing = [
            name
            for name, value in (
                ("version", self.version),
                ("username", self.username),
                ("password", self.password),
            )
            if not value
        ]
        if missing:
            raise PreconditionError(f"Missing required option(s): {', '.join(missing)}")


class UpgradeOrchestrator(Workflow):
    """Run upgrades, staged-upgrade application and upgrade cleanup."""

    def __init__(
        self,
        installation: Installation,
        *,
        op: OperationScope | None = None,
        fetcher: DistributionFetcher | None = None,
        domain_admin: DomainAdmin | None = None,
        node_installer: NodeInstaller | None = None,
        java_probe: JavaRuntimeProbe | None = None,
        domain_dir_param: str | None = None,
    ) -> None:
        super().__init__(
            installation,
            op=op,
            domain_admin=domain_admin,
            node_installer=node_installer,
            domain_dir_param=domain_dir_param,
        )
        self.fetcher = fetcher or DistributionFetcher(temp_dir=installation.temp_dir)
        self.java_probe = java_probe or JavaRuntimeProbe(java_bin=installation.java_bin)
        self.params: UpgradeParameters | None = None

    # ------------------------------------------------------------------
    # upgrade-server
    # ------------------------------------------------------------------
    def upgrade(self, params: UpgradeParameters) -> ExitCode:
        """Upgrade the installation according to *params*."""
        self._reset()
        self.params = params
        try:
            transitioner, installed = self._prepare(params)
        except UpgradeError as exc:
            return self._fail(str(exc))

        LOGGER.warning(INTERRUPT_WARNING)
        archive: Path | None = None
        extracted: Path | None = None
        try:
            try:
                archive = self._acquire(params)
                if params.uses_archive:
                    params = self._adopt_archive_version(params, archive, installed)
                extracted = self.fetcher.extract(archive)
                source_root = self.fetcher.locate_glassfish(extracted)
            except VersionNotFoundError as exc:
                return self._fail(f"{exc}; please set correct version and try again")
            except (DistributionError, PreconditionError) as exc:
                return self._fail(f"Error preparing for upgrade, aborting upgrade: {exc}")
            self._step("distribution.extract", detail=str(source_root))
            return self._swap(params, transitioner, source_root)
        finally:
            self.fetcher.discard(archive, extracted)

    def _prepare(self, params: UpgradeParameters) -> tuple[StateTransitioner, InstalledVersion]:
        if self.installation.windows and not params.stage:
            raise PreconditionError(
                "Non-staged upgrades are not supported on Windows. Please use --stage."
            )
        params.validate()
        installed = read_installed_version(self.installation.install_root)
        profile = DistributionProfile.for_distribution(
            params.distribution, installed.version.major
        )
        transitioner = self._transitioner(profile)
        write_control_files(transitioner.manifest, self.installation.config_dir)
        self._step("control-files.write")

        if not validate_distribution(params.distribution, installed.distribution):
            LOGGER.warning("The distribution cannot be validated.")
        if not params.uses_archive:
            target = validate_requested_version(params.version, installed.version)
            self._check_java(target)
        self._step("validate", detail=f"{installed.version} -> {params.version or 'archive'}")
        return transitioner, installed

    def _check_java(self, target: ServerVersion) -> None:
        message = check_java_compatibility(target, self.java_probe.detect())
        if message:
            LOGGER.warning(message)

    def _acquire(self, params: UpgradeParameters) -> Path:
        if params.archive is not None:
            archive = self.fetcher.copy(params.archive)
            self._step("distribution.copy", detail=str(params.archive))
            return archive
        archive = self.fetcher.fetch(
            params.distribution,
            params.version or "",
            params.username or "",
            params.password or "",
        )
        self._step("distribution.download", detail=f"{params.distribution} {params.version}")
        return archive

    def _adopt_archive_version(
        self,
        params: UpgradeParameters,
        archive: Path,
        installed: InstalledVersion,
    ) -> UpgradeParameters:
        version = read_archive_version(archive)
        validate_requested_version(str(version), installed.version)
        self._check_java(version)
        self._step("validate.archive-version", detail=str(version))
        adopted = dataclasses.replace(params, version=str(version))
        self.params = adopted
        return adopted

    def _swap(
        self,
        params: UpgradeParameters,
        transitioner: StateTransitioner,
        source_root: Path,
    ) -> ExitCode:
        try:
            domains = self.domain_admin.backup_domains()
        except (DelegatedCommandError, PreconditionError) as exc:
            return self._fail(f"Error executing backup-domain command, aborting upgrade: {exc}")
        self._step("domains.backup", detail=", ".join(domains))

        try:
            transitioner.purge(Suffix.OLD)
            transitioner.purge(Suffix.NEW)
        except TransferError as exc:
            return self._fail(f"Error cleaning up previous upgrades, aborting upgrade: {exc}")
        self._step("cleanup.previous")
        baseline = transitioner.probe()

        if params.stage:
            return self._stage(transitioner, source_root)

        self._enter(WorkflowState.SWAPPING)
        move_report: TransitionReport | None = None
        try:
            move_report = transitioner.transition_all(Suffix.CURRENT, Suffix.OLD)
            self._step("resources.backup", detail=move_report.summary())
            install_report = transitioner.install_from(source_root, Suffix.CURRENT)
            self._step("resources.install", detail=install_report.summary())
            fix_permissions(self.installation.install_root, transitioner.manifest)
            self._step("permissions.fix")
        except TransferError as exc:
            if move_report is None:
                move_report = exc.report
            return self._undo_in_place(
                transitioner,
                move_report,
                baseline,
                f"Error upgrading Payara Server, rolling back upgrade: {exc}",
            )

        try:
            self._run_node_reinstall()
        except NodeConfigurationError as exc:
            return self._undo_in_place(
                transitioner,
                move_report,
                baseline,
                f"Error upgrading Payara Server nodes, rolling back: {exc}",
            )
        except RemoteNodeError as exc:
            self._warn(
                "Failed to upgrade all nodes: inspect the logs for the reasons. You can roll "
                "back with rollback-server, upgrade the nodes individually, or retry them all "
                f"with reinstall-nodes. {exc}"
            )
        self._enter(WorkflowState.SWAPPED_NEW_IS_CURRENT)
        return self._outcome()

    def _stage(self, transitioner: StateTransitioner, source_root: Path) -> ExitCode:
        try:
            report = transitioner.install_from(source_root, Suffix.NEW)
        except TransferError as exc:
            code = self._fail(f"Error staging upgrade, removing staged files: {exc}")
            try:
                transitioner.purge(Suffix.NEW)
            except TransferError as cleanup_exc:
                self.errors.append(f"{MANUAL_INTERVENTION}: {cleanup_exc}")
                LOGGER.error("%s: %s", MANUAL_INTERVENTION, cleanup_exc)
            return code
        self._step("resources.stage", detail=report.summary())
        self._enter(WorkflowState.STAGED)
        LOGGER.info(STAGED_HINT)
        return self._outcome()

    def _undo_in_place(
        self,
        transitioner: StateTransitioner,
        move_report: TransitionReport | None,
        baseline: InstallationSnapshot,
        message: str,
    ) -> ExitCode:
        code = self._fail(message)
        try:
            transitioner.undo_upgrade(move_report, baseline)
        except TransferError as exc:
            self.errors.append(f"{MANUAL_INTERVENTION}: {exc}")
            LOGGER.error("%s: %s", MANUAL_INTERVENTION, exc)
            return code
        self._step("resources.restore")
        self._enter(WorkflowState.STABLE_CURRENT, detail="restored from .old")
        return code

    # ------------------------------------------------------------------
    # apply-staged
    # ------------------------------------------------------------------
    def apply_staged(self) -> ExitCode:
        """Promote a staged upgrade: current -> ``.old``, ``.new`` -> current."""
        self._reset()
        try:
            transitioner = self._transitioner()
        except UpgradeError as exc:
            return self._fail(str(exc))
        if not transitioner.probe().has_staged:
            return self._fail("No staged upgrade found to apply")

        try:
            transitioner.purge(Suffix.OLD)
        except TransferError as exc:
            return self._fail(f"Error cleaning up previous upgrades, aborting: {exc}")
        baseline = transitioner.probe()

        LOGGER.warning(INTERRUPT_WARNING)
        self._enter(WorkflowState.SWAPPING)
        move_report: TransitionReport | None = None
        promote_report: TransitionReport | None = None
        try:
            move_report = transitioner.transition_all(Suffix.CURRENT, Suffix.OLD)
            promote_report = transitioner.transition_all(Suffix.NEW, Suffix.CURRENT)
            fix_permissions(self.installation.install_root, transitioner.manifest)
        except TransferError as exc:
            if move_report is None:
                move_report = exc.report
            elif promote_report is None:
                promote_report = exc.report
            code = self._fail(f"Error applying staged upgrade, restoring: {exc}")
            try:
                if promote_report is not None and promote_report.completed:
                    transitioner.transition_all(
                        Suffix.CURRENT, Suffix.NEW, entries=promote_report.completed
                    )
                transitioner.undo_upgrade(move_report, baseline)
            except TransferError as undo_exc:
                self.errors.append(f"{MANUAL_INTERVENTION}: {undo_exc}")
                LOGGER.error("%s: %s", MANUAL_INTERVENTION, undo_exc)
                return code
            self._enter(WorkflowState.STAGED, detail="restored")
            return code

        self._step("resources.promote", detail=promote_report.summary())
        self._enter(WorkflowState.SWAPPED_NEW_IS_CURRENT)
        LOGGER.info("Staged upgrade applied; run reinstall-nodes to update remote nodes.")
        return self._outcome()

    # ------------------------------------------------------------------
    # cleanup-upgrade
    # ------------------------------------------------------------------
    def cleanup(self) -> ExitCode:
        """Delete ``.old`` backups and ``.new`` staged resources."""
        self._reset()
        try:
            transitioner = self._transitioner()
        except UpgradeError as exc:
            return self._fail(str(exc))
        removed: list[str] = []
        for suffix in (Suffix.OLD, Suffix.NEW):
            try:
                removed.extend(f"{entry}{suffix.value}" for entry in transitioner.purge(suffix))
            except TransferError as exc:
                self._warn(f"Could not remove every {suffix.label} resource: {exc}")
        self._step("cleanup", detail=f"{len(removed)} resource(s) removed")
        return self._outcome()


__all__ = ["UpgradeOrchestrator", "UpgradeParameters"]
