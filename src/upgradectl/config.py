"""Configuration loader for upgradectl.

Settings are resolved from four layers, each overriding the previous one:

1. Built-in defaults (:data:`DEFAULTS`).
2. A YAML file, ``/etc/upgradectl/config.yml`` unless ``--config-file`` or
   ``UPGRADECTL_CONFIG_FILE`` points elsewhere.
3. ``UPGRADECTL_*`` environment variables. A double underscore descends into
   a section::

       export UPGRADECTL_INSTALL_ROOT=/opt/payara6/glassfish
       export UPGRADECTL_NODES__INSTALL_TIMEOUT=600

4. Overrides passed by the CLI (``None`` values are ignored).

Environment values go through ``yaml.safe_load`` so numbers and booleans keep
their type. The merged mapping is validated and frozen into dataclasses.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .providers.distribution import DEFAULT_REPOSITORY_URL
from .providers.node_installer import DEFAULT_INSTALL_TIMEOUT
from .versions import VALID_DISTRIBUTIONS

ENV_PREFIX = "UPGRADECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = "/etc/upgradectl/config.yml"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or is invalid."""


@dataclass(frozen=True)
class RepositoryConfig:
    """Where enterprise distributions are downloaded from."""

    url: str = DEFAULT_REPOSITORY_URL
    timeout: float = 60.0

    def to_dict(self) -> dict[str, object]:
        return {"url": self.url, "timeout": self.timeout}


@dataclass(frozen=True)
class NodesConfig:
    """Remote node reinstall settings."""

    admin_script: Path | None = None
    install_timeout: float = DEFAULT_INSTALL_TIMEOUT

    def to_dict(self) -> dict[str, object]:
        return {
            "admin_script": None if self.admin_script is None else str(self.admin_script),
            "install_timeout": self.install_timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for upgradectl."""

    config_file: Path
    install_root: Path
    domains_dir: Path
    logs_dir: Path
    temp_dir: Path | None
    java_bin: str
    distribution: str
    repository: RepositoryConfig
    nodes: NodesConfig

    @property
    def config_dir(self) -> Path:
        """Return the install's ``config`` directory holding the control files."""
        return self.install_root / "config"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "domains_dir": str(self.domains_dir),
            "logs_dir": str(self.logs_dir),
            "temp_dir": None if self.temp_dir is None else str(self.temp_dir),
            "java_bin": self.java_bin,
            "distribution": self.distribution,
            "repository": self.repository.to_dict(),
            "nodes": self.nodes.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "install_root": "/opt/payara/glassfish",
    "domains_dir": None,  # <install_root>/domains
    "logs_dir": "/var/log/upgradectl",
    "temp_dir": None,
    "java_bin": "java",
    "distribution": "payara",
    "repository": {"url": DEFAULT_REPOSITORY_URL, "timeout": 60.0},
    "nodes": {"admin_script": None, "install_timeout": DEFAULT_INSTALL_TIMEOUT},
}

_SECTIONS = {
    name: frozenset(value) for name, value in DEFAULTS.items() if isinstance(value, dict)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file)
    else:
        path = Path(environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE))

    settings = copy.deepcopy(DEFAULTS)
    for layer in (
        _read_file(path),
        _environment_layer(environ),
        {key: value for key, value in (overrides or {}).items() if value is not None},
    ):
        _check_keys(layer)
        _merge_into(settings, layer)

    return _freeze(settings, path)


def _read_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - message comes from PyYAML
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return dict(loaded)


def _environment_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for name, raw in environ.items():
        if name == CONFIG_ENV_VAR or not name.startswith(ENV_PREFIX):
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not keys:
            continue
        node = layer
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {name} conflicts with {key}.")
            node = child
        node[keys[-1]] = _parse_scalar(raw)
    return layer


def _parse_scalar(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _check_keys(layer: Mapping[str, object]) -> None:
    unknown = sorted(str(key) for key in layer if key not in DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}.")
    for section, allowed in _SECTIONS.items():
        value = layer.get(section)
        if value is None:
            continue
        if not isinstance(value, Mapping):
            raise ConfigError(f"Expected {section} to be a mapping. Got {type(value).__name__}.")
        extra = sorted(str(key) for key in value if key not in allowed)
        if extra:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(extra)}.")


def _merge_into(target: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and value is None:
            continue
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = value


def _freeze(settings: Mapping[str, object], config_file: Path) -> AppConfig:
    distribution = _string(settings["distribution"], "distribution").lower()
    if distribution not in VALID_DISTRIBUTIONS:
        raise ConfigError(
            f"Unsupported distribution '{distribution}'. "
            f"Allowed: {', '.join(VALID_DISTRIBUTIONS)}."
        )

    install_root = _path(settings["install_root"], "install_root")
    repository = cast(Mapping[str, object], settings["repository"])
    nodes = cast(Mapping[str, object], settings["nodes"])

    return AppConfig(
        config_file=config_file,
        install_root=install_root,
        domains_dir=_optional_path(settings["domains_dir"], "domains_dir")
        or install_root / "domains",
        logs_dir=_path(settings["logs_dir"], "logs_dir"),
        temp_dir=_optional_path(settings["temp_dir"], "temp_dir"),
        java_bin=_string(settings["java_bin"], "java_bin"),
        distribution=distribution,
        repository=RepositoryConfig(
            url=_string(repository["url"], "repository.url"),
            timeout=_positive_number(repository["timeout"], "repository.timeout"),
        ),
        nodes=NodesConfig(
            admin_script=_optional_path(nodes["admin_script"], "nodes.admin_script"),
            install_timeout=_positive_number(nodes["install_timeout"], "nodes.install_timeout"),
        ),
    )


def _string(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"Expected {label} to be a string. Got {value!r}.")
    return value


def _path(value: object, label: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    return Path(_string(value, label)).expanduser()


def _optional_path(value: object, label: str) -> Path | None:
    if value is None or value == "":
        return None
    return _path(value, label)


def _positive_number(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


__all__ = [
    "AppConfig",
    "ConfigError",
    "NodesConfig",
    "RepositoryConfig",
    "load_config",
]
