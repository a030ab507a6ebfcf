"""Pieces shared by the upgrade and rollback orchestrators."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .errors import NodeConfigurationError, RemoteNodeError
from .exit_codes import ExitCode
from .logging import OperationScope
from .manifest import DistributionProfile, ResourceManifest, build_manifest
from .providers.domain_admin import DomainAdmin, resolve_admin_script
from .providers.node_installer import DEFAULT_INSTALL_TIMEOUT, NodeInstaller, NodeReinstallReport
from .transitions import StateTransitioner, WorkflowState

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Installation:
    """Filesystem locations of the server being managed."""

    install_root: Path
    domains_dir: Path
    admin_script: Path
    temp_dir: Path | None = None
    java_bin: str = "java"
    node_timeout: float = DEFAULT_INSTALL_TIMEOUT
    windows: bool = field(default_factory=lambda: os.name == "nt")

    @classmethod
    def from_config(cls, config: AppConfig) -> Installation:
        """Build an installation description from resolved configuration."""
        return cls(
            install_root=config.install_root,
            domains_dir=config.domains_dir,
            admin_script=resolve_admin_script(config.install_root, config.nodes.admin_script),
            temp_dir=config.temp_dir,
            java_bin=config.java_bin,
            node_timeout=config.nodes.install_timeout,
        )

    @property
    def config_dir(self) -> Path:
        return self.install_root / "config"


class Workflow:
    """Base for orchestrators: step recording, outcome tracking and collaborators."""

    def __init__(
        self,
        installation: Installation,
        *,
        op: OperationScope | None = None,
        domain_admin: DomainAdmin | None = None,
        node_installer: NodeInstaller | None = None,
        domain_dir_param: str | None = None,
    ) -> None:
        self.installation = installation
        self.op = op
        self.domain_admin = domain_admin or DomainAdmin(
            admin_script=installation.admin_script,
            domains_dir=installation.domains_dir,
            domain_dir_param=domain_dir_param,
        )
        self.node_installer = node_installer or NodeInstaller(
            admin_script=installation.admin_script,
            domains_dir=installation.domains_dir,
            timeout=installation.node_timeout,
        )
        self.state = WorkflowState.STABLE_CURRENT
        self.warnings: list[str] = []
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    def _reset(self) -> None:
        self.state = WorkflowState.STABLE_CURRENT
        self.warnings = []
        self.errors = []

    def _step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        LOGGER.debug("step %s [%s]%s", name, status, f": {detail}" if detail else "")
        if self.op is not None:
            self.op.add_step(name, status=status, detail=detail)

    def _enter(self, state: WorkflowState, detail: str | None = None) -> None:
        self.state = state
        self._step(f"state.{state.value}", detail=detail)

    def _warn(self, message: str) -> None:
        LOGGER.warning(message)
        self.warnings.append(message)

    def _fail(self, message: str) -> ExitCode:
        LOGGER.error(message)
        self.errors.append(message)
        if self.state is not WorkflowState.FAILED:
            self._enter(WorkflowState.FAILED)
        return ExitCode.ERROR

    def _outcome(self) -> ExitCode:
        return ExitCode.WARNING if self.warnings else ExitCode.SUCCESS

    def _transitioner(self, profile: DistributionProfile | None = None) -> StateTransitioner:
        manifest = self._manifest()
        return StateTransitioner(self.installation.install_root, manifest, profile)

    def _manifest(self) -> ResourceManifest:
        manifest = build_manifest(self.installation.install_root, self.installation.domains_dir)
        self._step("manifest.build", detail=f"{len(manifest)} resource(s)")
        return manifest

    # ------------------------------------------------------------------
    def reinstall_nodes(self) -> ExitCode:
        """Reinstall every SSH node on its own; used by ``reinstall-nodes``."""
        self._reset()
        try:
            self._run_node_reinstall()
        except NodeConfigurationError as exc:
            return self._fail(f"Error reading node configuration: {exc}")
        except RemoteNodeError as exc:
            self._warn(
                "Failed to reinstall all nodes: inspect the logs for the reasons. "
                f"{exc}"
            )
        return self._outcome()

    def _run_node_reinstall(self) -> NodeReinstallReport:
        """Reinstall nodes, recording a step; exceptions propagate to the caller."""
        LOGGER.info("Reinstalling nodes")
        try:
            report = self.node_installer.reinstall_nodes()
        except RemoteNodeError as exc:
            self._step("nodes.reinstall", status="warning", detail=", ".join(exc.failed_nodes))
            if exc.report is not None:
                self._record_manual_nodes(exc.report)
            raise
        except NodeConfigurationError as exc:
            self._step("nodes.reinstall", status="error", detail=str(exc))
            raise
        self._record_manual_nodes(report)
        self._step("nodes.reinstall", detail=f"{len(report.attempted)} node(s)")
        LOGGER.info("Reinstalled nodes")
        return report

    def _record_manual_nodes(self, report: NodeReinstallReport) -> None:
        for node in report.manual:
            self.warnings.append(
                f"Node {node.name} of type {node.type} must be upgraded manually"
            )


__all__ = ["Installation", "Workflow"]
