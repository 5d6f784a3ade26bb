"""
Shared test fixtures.

Nothing here touches the real system: commands go to a recording fake of
subprocess.run and every file path is rebased under a temporary directory.
"""

import subprocess
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

from vasthost.backup import BackupManager
from vasthost.cli import CliEnvironment
from vasthost.config import RunConfig, SystemPaths
from vasthost.executor import CommandExecutor
from vasthost.steps import StepContext
from vasthost.system_state import SystemState


class FakeRunner:
    """Stand-in for subprocess.run that records commands and replays scripted results."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.kwargs: List[dict] = []
        self._responses: List[tuple] = []

    def respond(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "", raises=None) -> None:
        """Script the result for commands starting with `prefix`; later rules win."""
        self._responses.insert(0, (tuple(prefix), returncode, stdout, stderr, raises))

    def __call__(self, cmd, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        self.kwargs.append(kwargs)
        for prefix, returncode, stdout, stderr, raises in self._responses:
            if tuple(cmd[: len(prefix)]) == prefix:
                if raises is not None:
                    raise raises
                return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    @property
    def commands(self) -> List[str]:
        return [" ".join(call) for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        return any(tuple(call[: len(prefix)]) == prefix for call in self.calls)

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if tuple(call[: len(prefix)]) == prefix)


class FakeWhich:
    def __init__(self, available: Iterable[str] = ()) -> None:
        self.available = set(available)

    def __call__(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.available else None


def installed_listing(*names: str) -> str:
    """dpkg-query output marking `names` as installed."""
    return "".join(f"{name}\tinstalled\n" for name in names)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_which() -> FakeWhich:
    return FakeWhich({"lsb_release"})


@pytest.fixture
def paths(tmp_path: Path) -> SystemPaths:
    rebased = SystemPaths().rebased(tmp_path / "root")
    rebased.root_fs.mkdir(parents=True)
    return rebased


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def make_context(paths, fake_runner, fake_which, backup_dir):
    """Build a StepContext over the fakes; keyword arguments go to RunConfig."""

    def factory(**config_kwargs) -> StepContext:
        config = RunConfig(paths=paths, **config_kwargs)
        executor = CommandExecutor(dry_run=config.dry_run, runner=fake_runner, which=fake_which)
        return StepContext(
            config=config,
            executor=executor,
            state=SystemState(executor),
            backups=BackupManager(backup_dir, executor),
        )

    return factory


@pytest.fixture
def ctx(make_context) -> StepContext:
    return make_context()


@pytest.fixture
def cli_env(paths, fake_runner, fake_which) -> CliEnvironment:
    return CliEnvironment(
        paths=paths,
        runner=fake_runner,
        which=fake_which,
        interactive=False,
        default_config_file=None,
    )


@pytest.fixture
def dpkg_installed(fake_runner):
    """Script dpkg-query so that the given packages report as installed."""

    def script(*names: str) -> None:
        fake_runner.respond("dpkg-query", stdout=installed_listing(*names))

    return script


@pytest.fixture
def healthy_host(fake_runner, fake_which, paths, dpkg_installed, monkeypatch):
    """Script every probe the host checks make so that each one passes."""
    from vasthost.host_checks import VERIFIED_PACKAGES

    dpkg_installed(*VERIFIED_PACKAGES)
    fake_runner.respond("systemctl", "is-active", stdout="active\n")
    fake_runner.respond("systemctl", "is-enabled", stdout="enabled\n")
    fake_runner.respond("docker", "--version", stdout="Docker version 24.0.7, build afdd53b\n")
    fake_runner.respond("lspci", stdout="01:00.0 VGA compatible controller: NVIDIA Corporation AD102\n")
    fake_runner.respond(
        "lsmod", stdout="Module                  Size  Used by\nnvidia_uvm   1531904  0\nnvidia  56717312  1 nvidia_uvm\n"
    )
    fake_runner.respond("nvidia-smi", stdout="535.129.03\n")
    fake_runner.respond("sysctl", "-n", "net.ipv4.tcp_congestion_control", stdout="bbr\n")
    fake_runner.respond("vastai", "--version", stdout="0.2.6\n")
    fake_which.available.add("vastai")

    paths.sshd_config.parent.mkdir(parents=True)
    paths.sshd_config.write_text("Port 22\n")
    paths.vast_dir.mkdir(parents=True)
    paths.vast_unit.parent.mkdir(parents=True)
    paths.vast_unit.write_text("[Unit]\n")

    monkeypatch.setattr(SystemState, "open_file_limit", lambda self: 1048576)
    monkeypatch.setattr(SystemState, "group_exists", lambda self, name: True)
