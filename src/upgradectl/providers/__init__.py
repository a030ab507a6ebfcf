"""Collaborators that reach outside the installation tree."""
from __future__ import annotations

from .distribution import DistributionFetcher, VersionNotFoundError
from .domain_admin import DomainAdmin, resolve_admin_script
from .node_installer import NodeDefinition, NodeInstaller, NodeReinstallReport

__all__ = [
    "DistributionFetcher",
    "DomainAdmin",
    "NodeDefinition",
    "NodeInstaller",
    "NodeReinstallReport",
    "VersionNotFoundError",
    "resolve_admin_script",
]
