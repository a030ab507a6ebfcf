"""Reinstall remote SSH nodes from the local installation.

Each domain's ``config/domain.xml`` lists the nodes it manages. SSH nodes are
reinstalled with ``asadmin install-node-ssh --force``; secrets are handed to
the subprocess on stdin. Every node is attempted even when an earlier one
fails, and failures are reported together at the end.
"""
from __future__ import annotations

import getpass
import logging
import subprocess
import xml.etree.ElementTree as ET
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import NodeConfigurationError, RemoteNodeError, UpgradeError
from ..manifest import list_domains

LOGGER = logging.getLogger(__name__)

DEFAULT_INSTALL_TIMEOUT = 300.0
FAILURE_MARKER = "Command install-node-ssh failed"
DEFAULT_SSH_PORT = "22"
DEFAULT_INSTALL_DIR = "${com.sun.aas.productRoot}"


@dataclass(frozen=True, slots=True)
class SshSettings:
    """Connection details of an SSH node."""

    port: str = DEFAULT_SSH_PORT
    user: str | None = None
    keyfile: str | None = None
    password: str | None = None
    key_passphrase: str | None = None

    def stdin_lines(self) -> list[str]:
        """Return the password-file lines fed to ``asadmin`` on stdin."""
        lines: list[str] = []
        if self.password:
            lines.append(f"AS_ADMIN_SSHPASSWORD={self.password}")
        if self.key_passphrase:
            lines.append(f"AS_ADMIN_SSHKEYPASSPHRASE={self.key_passphrase}")
        return lines


@dataclass(frozen=True, slots=True)
class NodeDefinition:
    """A ``<node>`` element from ``domain.xml``."""

    domain: str
    name: str
    type: str
    host: str | None
    install_dir: str
    ssh: SshSettings | None = None

    @property
    def is_ssh(self) -> bool:
        return self.type.upper() == "SSH"

    @property
    def is_default_local(self) -> bool:
        """Return True for the ``localhost-<domain>`` node every domain creates."""
        return self.name == f"localhost-{self.domain}" and self.type.upper() == "CONFIG"


@dataclass(slots=True)
class NodeInstallResult:
    """Outcome of one ``install-node-ssh`` run."""

    node: NodeDefinition
    success: bool
    detail: str = ""


@dataclass(slots=True)
class NodeReinstallReport:
    """Summary of a reinstall pass across every domain."""

    results: list[NodeInstallResult] = field(default_factory=list)
    manual: list[NodeDefinition] = field(default_factory=list)

    @property
    def failed(self) -> list[str]:
        return [result.node.name for result in self.results if not result.success]

    @property
    def attempted(self) -> list[str]:
        return [result.node.name for result in self.results]


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def read_domain_nodes(domain: str, domain_xml: Path) -> list[NodeDefinition]:
    """Parse the nodes declared in *domain_xml*."""
    try:
        tree = ET.parse(domain_xml)  # noqa: S314
    except FileNotFoundError as exc:
        raise NodeConfigurationError(f"Domain configuration not found: {domain_xml}") from exc
    except (OSError, ET.ParseError) as exc:
        raise NodeConfigurationError(f"Unable to read {domain_xml}: {exc}") from exc

    root = tree.getroot()
    if _local_name(root.tag) != "domain":
        raise NodeConfigurationError(f"{domain_xml} is not a domain configuration")

    nodes: list[NodeDefinition] = []
    for container in _children(root, "nodes"):
        for element in _children(container, "node"):
            name = element.get("name")
            if not name:
                raise NodeConfigurationError(f"Node without a name in {domain_xml}")
            node_type = element.get("type", "CONFIG")
            ssh: SshSettings | None = None
            if node_type.upper() == "SSH":
                ssh = _read_ssh_settings(element, name, domain_xml)
                if not element.get("node-host"):
                    raise NodeConfigurationError(f"SSH node {name} in {domain_xml} has no node-host")
            nodes.append(
                NodeDefinition(
                    domain=domain,
                    name=name,
                    type=node_type,
                    host=element.get("node-host"),
                    install_dir=element.get("install-dir", DEFAULT_INSTALL_DIR),
                    ssh=ssh,
                )
            )
    return nodes


def _read_ssh_settings(element: ET.Element, name: str, domain_xml: Path) -> SshSettings:
    connectors = _children(element, "ssh-connector")
    if not connectors:
        LOGGER.debug("SSH node %s in %s has no ssh-connector; using defaults", name, domain_xml)
        return SshSettings(user=getpass.getuser())
    connector = connectors[0]
    auths = _children(connector, "ssh-auth")
    auth = auths[0] if auths else None
    return SshSettings(
        port=connector.get("ssh-port", DEFAULT_SSH_PORT),
        user=(auth.get("user-name") if auth is not None else None) or getpass.getuser(),
        keyfile=auth.get("keyfile") if auth is not None else None,
        password=auth.get("password") if auth is not None else None,
        key_passphrase=auth.get("key-passphrase") if auth is not None else None,
    )


@dataclass(slots=True)
class NodeInstaller:
    """Reinstall the SSH nodes of every domain under *domains_dir*."""

    admin_script: Path
    domains_dir: Path
    timeout: float = DEFAULT_INSTALL_TIMEOUT

    def load_nodes(self) -> list[NodeDefinition]:
        """Read every domain's nodes before any of them is touched."""
        try:
            domains = list_domains(self.domains_dir)
        except UpgradeError as exc:
            raise NodeConfigurationError(str(exc)) from exc
        nodes: list[NodeDefinition] = []
        for domain_dir in domains:
            nodes.extend(read_domain_nodes(domain_dir.name, domain_dir / "config" / "domain.xml"))
        return nodes

    def reinstall_nodes(self) -> NodeReinstallReport:
        """Reinstall every SSH node.

        Raises :class:`NodeConfigurationError` when a domain configuration
        cannot be read (no node has been attempted yet) and
        :class:`RemoteNodeError` after all nodes were attempted if any failed.
        """
        nodes = self.load_nodes()
        report = NodeReinstallReport()
        for node in nodes:
            if node.is_ssh:
                report.results.append(self.install_ssh_node(node))
            elif not node.is_default_local:
                LOGGER.warning(
                    "Only the SSH nodes are upgraded by this tool, please upgrade your node "
                    "with name %s of type %s manually",
                    node.name,
                    node.type,
                )
                report.manual.append(node)
        if not nodes:
            LOGGER.debug("No nodes found under %s", self.domains_dir)
        if report.failed:
            raise RemoteNodeError(
                f"Error reinstalling nodes: {', '.join(report.failed)}",
                failed_nodes=report.failed,
                report=report,
            )
        return report

    def command_for(self, node: NodeDefinition) -> list[str]:
        """Return the ``install-node-ssh`` argv for *node*."""
        ssh = node.ssh or SshSettings()
        args = [str(self.admin_script), "--interactive=false"]
        if ssh.password:
            args.extend(["--passwordfile", "-"])
        args.extend(
            [
                "install-node-ssh",
                "--installdir",
                node.install_dir,
                "--force",
                "--sshport",
                ssh.port,
                "--sshuser",
                ssh.user or getpass.getuser(),
            ]
        )
        if ssh.keyfile:
            args.extend(["--sshkeyfile", ssh.keyfile])
        args.append(node.host or "")
        return args

    def install_ssh_node(self, node: NodeDefinition) -> NodeInstallResult:
        """Run ``install-node-ssh`` for *node* and judge the outcome."""
        LOGGER.info("Reinstalling SSH node %s", node.name)
        args = self.command_for(node)
        stdin = "\n".join((node.ssh or SshSettings()).stdin_lines())
        LOGGER.debug("Executing command: %s", args)
        try:
            result = self._run_command(args, input_text=stdin, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            LOGGER.error("install-node-ssh for %s did not exit within %ss", node.name, self.timeout)
            return NodeInstallResult(node=node, success=False, detail="timed out")
        except OSError as exc:
            LOGGER.error("Error while executing command for node %s: %s", node.name, exc)
            return NodeInstallResult(node=node, success=False, detail=str(exc))

        output = f"{result.stdout or ''}{result.stderr or ''}"
        if FAILURE_MARKER in output or result.returncode != 0:
            LOGGER.error("Reinstalling node %s failed: %s", node.name, output.strip())
            return NodeInstallResult(node=node, success=False, detail=output.strip())
        return NodeInstallResult(node=node, success=True, detail=output.strip())

    def _run_command(
        self,
        args: Sequence[str],
        *,
        input_text: str,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        """Execute an asadmin command (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            list(args),
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )


__all__ = [
    "DEFAULT_INSTALL_TIMEOUT",
    "FAILURE_MARKER",
    "NodeDefinition",
    "NodeInstallResult",
    "NodeInstaller",
    "NodeReinstallReport",
    "SshSettings",
    "read_domain_nodes",
]
