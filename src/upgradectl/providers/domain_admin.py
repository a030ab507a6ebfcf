"""Delegate domain configuration backup and restore to ``asadmin``."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import DelegatedCommandError
from ..manifest import list_domains

LOGGER = logging.getLogger(__name__)


def resolve_admin_script(install_root: Path, override: Path | None = None) -> Path:
    """Return the ``asadmin`` launcher for *install_root*."""
    if override is not None:
        return override
    name = "asadmin.bat" if os.name == "nt" else "asadmin"
    return install_root / "bin" / name


@dataclass(slots=True)
class DomainAdmin:
    """Run ``backup-domain`` / ``restore-domain`` for every domain."""

    admin_script: Path
    domains_dir: Path
    domain_dir_param: str | None = None

    def backup_domains(self) -> list[str]:
        """Back up the configuration of every domain, stopping at the first failure."""
        LOGGER.info("Backing up domain configs")
        return self._run_for_domains("backup-domain")

    def restore_domains(self) -> list[str]:
        """Restore the configuration of every domain, stopping at the first failure."""
        LOGGER.info("Restoring domain configs")
        return self._run_for_domains("restore-domain")

    def command_for(self, subcommand: str, domain: str) -> list[str]:
        """Return the argv for *subcommand* against *domain*."""
        args = [str(self.admin_script), subcommand]
        if self.domain_dir_param:
            args.extend(["--domaindir", self.domain_dir_param])
        args.append(domain)
        return args

    def _run_for_domains(self, subcommand: str) -> list[str]:
        domains = [path.name for path in list_domains(self.domains_dir)]
        for domain in domains:
            args = self.command_for(subcommand, domain)
            try:
                result = self._run_command(args)
            except OSError as exc:
                raise DelegatedCommandError(f"{subcommand} {domain} could not run: {exc}") from exc
            if result.returncode != 0:
                detail = (result.stderr or result.stdout or "").strip()
                raise DelegatedCommandError(
                    f"{subcommand} {domain} failed (exit {result.returncode}): {detail}"
                )
            LOGGER.debug("%s %s completed", subcommand, domain)
        return domains

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute an asadmin command (isolated for testing)."""
        return subprocess.run(  # noqa: S603
            list(args),
            capture_output=True,
            text=True,
            check=False,
        )


__all__ = ["DomainAdmin", "resolve_admin_script"]
