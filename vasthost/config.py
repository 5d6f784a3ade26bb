"""
Run configuration: fixed system locations, tunable host options, the
key/value config file loader and the CLI-over-file precedence merge.
"""

import dataclasses
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from vasthost.errors import ConfigError
from vasthost.steps import StepName

# ----------------------------------------------------------------
# Defaults
# ----------------------------------------------------------------
DEFAULT_CONFIG_FILE: str = "/etc/vast-ai-setup.conf"
HOST_LOG_FILE: str = "/var/log/vast_ai_setup_enhanced.log"
DESKTOP_LOG_FILE: str = "/var/log/ubuntu_desktop_to_server.log"
HOST_BACKUP_DIR: str = "/var/backups/vast-ai-setup"
DESKTOP_BACKUP_DIR: str = "/var/backups/ubuntu-conversion"

TRUE_VALUES = {"1", "true", "yes", "on", "y"}
FALSE_VALUES = {"0", "false", "no", "off", "n", ""}


@dataclass(frozen=True)
class SystemPaths:
    """Fixed system locations read or written by the provisioning steps."""

    root_fs: Path = Path("/")
    sources_list: Path = Path("/etc/apt/sources.list")
    sources_list_d: Path = Path("/etc/apt/sources.list.d")
    apt_conf_dir: Path = Path("/etc/apt/apt.conf.d")
    keyrings_dir: Path = Path("/usr/share/keyrings")
    sshd_config: Path = Path("/etc/ssh/sshd_config")
    limits_conf: Path = Path("/etc/security/limits.conf")
    pam_common_session: Path = Path("/etc/pam.d/common-session")
    sysctl_conf: Path = Path("/etc/sysctl.conf")
    docker_daemon_json: Path = Path("/etc/docker/daemon.json")
    vast_dir: Path = Path("/opt/vast")
    vast_unit: Path = Path("/etc/systemd/system/vast-daemon.service")
    grub_defaults: Path = Path("/etc/default/grub")
    netplan_dir: Path = Path("/etc/netplan")
    networkd_dir: Path = Path("/etc/systemd/network")
    server_info: Path = Path("/usr/local/bin/server-info")
    motd_dir: Path = Path("/etc/update-motd.d")
    tmp_dir: Path = Path("/tmp")
    meminfo: Path = Path("/proc/meminfo")

    @property
    def monitor_script(self) -> Path:
        return self.vast_dir / "monitor.sh"

    @property
    def docker_list(self) -> Path:
        return self.sources_list_d / "docker.list"

    @property
    def docker_keyring(self) -> Path:
        return self.keyrings_dir / "docker-archive-keyring.gpg"

    @property
    def nvidia_list(self) -> Path:
        return self.sources_list_d / "nvidia-container-toolkit.list"

    @property
    def nvidia_keyring(self) -> Path:
        return self.keyrings_dir / "nvidia-container-toolkit-keyring.gpg"

    @property
    def networkd_dhcp(self) -> Path:
        return self.networkd_dir / "01-dhcp.network"

    def rebased(self, root: Union[str, Path]) -> "SystemPaths":
        """Relocate every path under `root` (used to sandbox file mutations)."""
        root = Path(root)
        changes = {}
        for f in dataclasses.fields(self):
            original: Path = getattr(self, f.name)
            changes[f.name] = root / original.relative_to(original.anchor)
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class HostOptions:
    """Tunable values that a config file may override."""

    nvidia_driver_version: str = "535"
    ssh_port: int = 22
    max_file_descriptors: int = 65536
    command_timeout: int = 3600
    docker_user: Optional[str] = None
    vast_cli_package: str = "vastai"
    connectivity_host: str = "google.com"
    min_free_disk_gb: int = 5


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for a single run."""

    dry_run: bool = False
    verbose: bool = False
    skip: FrozenSet[StepName] = frozenset()
    options: HostOptions = field(default_factory=HostOptions)
    assume_yes: bool = False
    continue_on_error: bool = False
    paths: SystemPaths = field(default_factory=SystemPaths)

    def is_skipped(self, name: StepName) -> bool:
        return name in self.skip


@dataclass(frozen=True)
class FileSettings:
    """Values read from a config file, before merging with command-line flags."""

    options: Dict[str, Any] = field(default_factory=dict)
    verbose: bool = False
    dry_run: bool = False
    skip: FrozenSet[StepName] = frozenset()


# ----------------------------------------------------------------
# Value Parsers
# ----------------------------------------------------------------
def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"expected a boolean, got '{value}'")


def _positive_int(value: str) -> int:
    number = int(value.strip())
    if number <= 0:
        raise ValueError(f"expected a positive integer, got '{value}'")
    return number


def _port(value: str) -> int:
    number = _positive_int(value)
    if number > 65535:
        raise ValueError(f"port out of range: {number}")
    return number


def _driver_version(value: str) -> str:
    value = value.strip()
    if not re.fullmatch(r"\d+(-server|-open)?", value):
        raise ValueError(f"expected a driver branch such as 535, got '{value}'")
    return value


def _non_empty(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("value must not be empty")
    return value


def parse_skip_list(value: str) -> FrozenSet[StepName]:
    names = [part for part in re.split(r"[,\s]+", value) if part]
    return frozenset(StepName.parse(name) for name in names)


OPTION_KEYS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "NVIDIA_DRIVER_VERSION": ("nvidia_driver_version", _driver_version),
    "SSH_PORT": ("ssh_port", _port),
    "MAX_FILE_DESCRIPTORS": ("max_file_descriptors", _positive_int),
    "COMMAND_TIMEOUT": ("command_timeout", _positive_int),
    "DOCKER_USER": ("docker_user", _non_empty),
    "VAST_CLI_PACKAGE": ("vast_cli_package", _non_empty),
    "CONNECTIVITY_HOST": ("connectivity_host", _non_empty),
    "MIN_FREE_DISK_GB": ("min_free_disk_gb", _positive_int),
}

SKIP_TOGGLES: Dict[str, StepName] = {
    "SKIP_NVIDIA": StepName.NVIDIA,
    "SKIP_DOCKER": StepName.DOCKER,
}


# ----------------------------------------------------------------
# Config File Loader
# ----------------------------------------------------------------
def parse_config_text(text: str, source: str = "<config>") -> FileSettings:
    """Parse shell-style KEY=VALUE lines; unknown keys and bad values raise ConfigError."""
    options: Dict[str, Any] = {}
    skip = set()
    verbose = False
    dry_run = False

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        if "=" not in line:
            raise ConfigError(f"{source}:{lineno}: expected KEY=VALUE, got '{raw.strip()}'")

        key, _, value = line.partition("=")
        key = key.strip().upper()
        try:
            parts = shlex.split(value, comments=True)
        except ValueError as e:
            raise ConfigError(f"{source}:{lineno}: {e}") from None
        value = " ".join(parts)

        try:
            if key in OPTION_KEYS:
                attr, parser = OPTION_KEYS[key]
                options[attr] = parser(value)
            elif key in SKIP_TOGGLES:
                if parse_bool(value):
                    skip.add(SKIP_TOGGLES[key])
                else:
                    skip.discard(SKIP_TOGGLES[key])
            elif key == "SKIP_STEPS":
                skip.update(parse_skip_list(value))
            elif key == "VERBOSE":
                verbose = parse_bool(value)
            elif key == "DRY_RUN":
                dry_run = parse_bool(value)
            else:
                raise ConfigError(f"{source}:{lineno}: unknown option '{key}'")
        except ValueError as e:
            raise ConfigError(f"{source}:{lineno}: invalid value for {key}: {e}") from None

    return FileSettings(options=options, verbose=verbose, dry_run=dry_run, skip=frozenset(skip))


def load_config_file(path: Union[str, Path], required: bool = False) -> FileSettings:
    """Load a config file; a missing optional file yields empty settings."""
    path = Path(path)
    if not path.is_file():
        if required:
            raise ConfigError(f"Config file not found: {path}")
        return FileSettings()
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from None
    return parse_config_text(text, source=str(path))


def build_run_config(
    config_file: Optional[Union[str, Path]] = None,
    *,
    default_config_file: Optional[Union[str, Path]] = DEFAULT_CONFIG_FILE,
    dry_run: bool = False,
    verbose: bool = False,
    skip_nvidia: bool = False,
    skip_docker: bool = False,
    skip_steps: Iterable[str] = (),
    assume_yes: bool = False,
    continue_on_error: bool = False,
    timeout: Optional[int] = None,
    paths: Optional[SystemPaths] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunConfig:
    """
    Merge defaults, the config file and command-line flags into a RunConfig.

    Command-line flags take precedence: a boolean flag can only switch a
    behavior on, so `--skip-nvidia` wins over `SKIP_NVIDIA=false` in the file.
    """
    environ = os.environ if environ is None else environ

    if config_file is not None:
        settings = load_config_file(config_file, required=True)
    elif default_config_file is not None:
        settings = load_config_file(default_config_file)
    else:
        settings = FileSettings()

    option_values = dict(settings.options)
    if "docker_user" not in option_values and environ.get("SUDO_USER"):
        option_values["docker_user"] = environ["SUDO_USER"]
    if timeout is not None:
        if timeout <= 0:
            raise ConfigError(f"Timeout must be positive, got {timeout}")
        option_values["command_timeout"] = timeout

    skip = set(settings.skip)
    try:
        skip.update(StepName.parse(name) for name in skip_steps)
    except ValueError as e:
        raise ConfigError(str(e)) from None
    if skip_nvidia:
        skip.add(StepName.NVIDIA)
    if skip_docker:
        skip.add(StepName.DOCKER)

    return RunConfig(
        dry_run=dry_run or settings.dry_run,
        verbose=verbose or settings.verbose,
        skip=frozenset(skip),
        options=HostOptions(**option_values),
        assume_yes=assume_yes,
        continue_on_error=continue_on_error,
        paths=paths or SystemPaths(),
    )
