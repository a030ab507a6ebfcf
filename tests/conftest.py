"""Shared fixtures: throwaway server installs and distribution archives."""

from __future__ import annotations

import shutil
import subprocess
import zipfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from upgradectl.providers.domain_admin import DomainAdmin
from upgradectl.providers.node_installer import NodeInstaller
from upgradectl.versions import JavaRuntimeInfo, JavaRuntimeProbe
from upgradectl.workflow import Installation

EMPTY_DOMAIN_XML = "<domain><nodes/></domain>\n"

# Files written for every install-relative resource, keyed by manifest entry.
RESOURCE_FILES: dict[str, tuple[str, ...]] = {
    "common": ("lib/common.jar",),
    "config/osgi.properties": ("",),
    "h2db": ("bin/h2.jar",),
    "legal": ("LICENSE.md",),
    "modules": ("core.jar", "web/web.jar"),
    "osgi": ("felix/bin/felix.jar",),
    "lib": ("appclient.jar", "nadmin"),
    "../README.txt": ("",),
    "../LICENSE.txt": ("",),
    "../mq": ("lib/imq.jar",),
    "bin": ("asadmin", "startserv"),
    "../bin": ("asadmin",),
}


def version_properties(version: str, distribution: str | None = None) -> str:
    major, minor, update = version.split(".")
    lines = [
        "product_name=Payara Server",
        f"major_version={major}",
        f"minor_version={minor}",
        f"update_version={update}",
    ]
    if distribution:
        lines.append(f"distribution={distribution}")
    return "\n".join(lines) + "\n"


def populate_glassfish(
    root: Path,
    version: str,
    *,
    marker: str,
    distribution: str | None = None,
) -> None:
    """Write every manifest resource under *root* (a ``glassfish`` directory)."""
    for entry, files in RESOURCE_FILES.items():
        base = root / entry
        for name in files:
            target = base / name if name else base
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(f"{marker}:{entry}/{name}\n", encoding="utf-8")
    branding = root / "config" / "branding"
    branding.mkdir(parents=True, exist_ok=True)
    (branding / "glassfish-version.properties").write_text(
        version_properties(version, distribution), encoding="utf-8"
    )


def read_tree(root: Path) -> dict[str, str]:
    """Return ``relative path -> content`` for every file under *root*."""
    return {
        path.relative_to(root).as_posix(): path.read_text(encoding="utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def resource_tree(root: Path) -> dict[str, str]:
    """Like :func:`read_tree` but ignoring the generated upgrade control files."""
    return {
        name: content
        for name, content in read_tree(root).items()
        if not name.startswith("glassfish/config/upgrade-tool.")
    }


@dataclass
class ServerInstall:
    """A fake ``payaraN/glassfish`` layout inside ``tmp_path``."""

    product_root: Path
    version: str

    @property
    def install_root(self) -> Path:
        return self.product_root / "glassfish"

    @property
    def domains_dir(self) -> Path:
        return self.install_root / "domains"

    def domain(self, name: str = "domain1", *, domain_xml: str = EMPTY_DOMAIN_XML) -> Path:
        config = self.domains_dir / name / "config"
        config.mkdir(parents=True, exist_ok=True)
        (config / "domain.xml").write_text(domain_xml, encoding="utf-8")
        cache = self.domains_dir / name / "osgi-cache" / "felix"
        cache.mkdir(parents=True, exist_ok=True)
        (cache / "bundle0").write_text(f"cache of {name} on {self.version}\n", encoding="utf-8")
        return self.domains_dir / name

    def installation(self, *, windows: bool = False, temp_dir: Path | None = None) -> Installation:
        return Installation(
            install_root=self.install_root,
            domains_dir=self.domains_dir,
            admin_script=self.install_root / "bin" / "asadmin",
            temp_dir=temp_dir,
            windows=windows,
        )

    def installed_version(self) -> str:
        text = (self.install_root / "config" / "branding" / "glassfish-version.properties").read_text(
            encoding="utf-8"
        )
        values = dict(line.split("=", 1) for line in text.splitlines() if "=" in line)
        return f"{values['major_version']}.{values['minor_version']}.{values['update_version']}"


@pytest.fixture
def server(tmp_path: Path) -> ServerInstall:
    """Return an installed 6.2.0 server with a single started domain."""
    install = ServerInstall(product_root=tmp_path / "payara6", version="6.2.0")
    populate_glassfish(install.install_root, install.version, marker="old")
    install.domain()
    return install


@pytest.fixture
def make_archive(tmp_path: Path) -> Callable[..., Path]:
    """Return a factory building ``payara6/glassfish`` distribution zips."""

    def _make(version: str = "6.3.0", *, name: str | None = None, skip: Sequence[str] = ()) -> Path:
        staging = tmp_path / f"archive-src-{version}"
        glassfish = staging / "payara6" / "glassfish"
        populate_glassfish(glassfish, version, marker="new")
        for entry in skip:
            target = glassfish / entry
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        archive = tmp_path / (name or f"payara-{version}.zip")
        with zipfile.ZipFile(archive, "w") as bundle:
            for path in sorted(staging.rglob("*")):
                if path.is_file():
                    bundle.write(path, path.relative_to(staging).as_posix())
        return archive

    return _make


@dataclass
class CommandLog:
    """Records asadmin invocations made through the patched runners."""

    calls: list[list[str]] = field(default_factory=list)
    returncode: int = 0
    stdout: str = ""
    fail_on: str | None = None

    def run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        argv = list(args)
        self.calls.append(argv)
        failing = self.fail_on is not None and self.fail_on in argv
        return subprocess.CompletedProcess(
            argv,
            1 if failing else self.returncode,
            stdout=self.stdout,
            stderr="boom" if failing else "",
        )


@pytest.fixture
def asadmin(monkeypatch: pytest.MonkeyPatch) -> CommandLog:
    """Patch every asadmin call made by the providers to succeed and be recorded."""
    log = CommandLog()

    def domain_runner(self: DomainAdmin, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return log.run(args)

    def node_runner(
        self: NodeInstaller,
        args: Sequence[str],
        *,
        input_text: str,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        return log.run(args)

    monkeypatch.setattr(DomainAdmin, "_run_command", domain_runner)
    monkeypatch.setattr(NodeInstaller, "_run_command", node_runner)
    return log


class StubJavaProbe(JavaRuntimeProbe):
    """Report a fixed Java runtime instead of running ``java -version``."""

    def __init__(self, feature: int = 21) -> None:
        super().__init__(java_bin="java")
        self.feature = feature

    def detect(self) -> JavaRuntimeInfo | None:
        return JavaRuntimeInfo(raw="", version=f"{self.feature}.0.1", feature=self.feature)


@pytest.fixture
def java_probe() -> StubJavaProbe:
    return StubJavaProbe()
