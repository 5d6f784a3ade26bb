"""Concrete post-provisioning checks for a Vast.ai GPU host."""

from typing import List

from rich import box
from rich.panel import Panel
from rich.table import Table

from vasthost.config import HostOptions, SystemPaths
from vasthost.system_state import SystemState
from vasthost.ui import NordColors, console
from vasthost.verifier import Check, CheckGroup, Measurement

VERIFIED_PACKAGES: List[str] = ["build-essential", "curl", "git", "python3", "openssh-server"]
VAST_ENDPOINTS: List[str] = ["cloud.vast.ai", "api.vast.ai"]
CUDA_TEST_IMAGE: str = "nvidia/cuda:12.2.0-base-ubuntu22.04"


def _package_check(name: str) -> Check:
    return Check(f"{name} installed", lambda s: s.package_installed(name))


def _docker_version(state: SystemState) -> Measurement:
    version = state.command_version(["docker", "--version"])
    return Measurement(version is not None, version or "not found", "Docker version")


def _nvidia_driver_version(state: SystemState) -> Measurement:
    result = state.executor.query(
        ["nvidia-smi", "--query-gpu=driver_version", "--format=csv,noheader,nounits"], check=True
    )
    version = result.output.splitlines()[0] if result.output else ""
    return Measurement(bool(version), version or "none", "driver version")


def _fd_limit(minimum: int):
    def probe(state: SystemState) -> Measurement:
        limit = state.open_file_limit()
        return Measurement(limit >= minimum, str(limit), f">= {minimum}")

    return probe


def _vast_cli(state: SystemState) -> Measurement:
    if not state.command_exists("vastai"):
        return Measurement(False, "not found", "installed")
    return Measurement(True, state.command_version(["vastai", "--version"]) or "unknown", "installed")


def build_host_checks(paths: SystemPaths, options: HostOptions) -> List[CheckGroup]:
    return [
        CheckGroup("Packages", tuple(_package_check(name) for name in VERIFIED_PACKAGES)),
        CheckGroup(
            "Docker",
            (
                Check("Docker service running", lambda s: (s.service_active("docker"), "active")),
                Check("Docker enabled at boot", lambda s: (s.service_enabled("docker"), "enabled")),
                Check("Docker version", _docker_version),
                Check("Docker functionality test", lambda s: s.container_runs("hello-world")),
                Check("Docker group exists", lambda s: s.group_exists("docker")),
            ),
        ),
        CheckGroup(
            "NVIDIA",
            (
                Check("NVIDIA GPU detected", lambda s: s.has_nvidia_gpu()),
                Check("NVIDIA driver loaded", lambda s: s.kernel_module_loaded("nvidia")),
                Check("NVIDIA driver version", _nvidia_driver_version),
                Check(
                    "NVIDIA container runtime test",
                    lambda s: s.container_runs(CUDA_TEST_IMAGE, "nvidia-smi", gpus=True),
                ),
            ),
            applies=lambda s: s.has_nvidia_gpu(),
            skip_message="No NVIDIA GPU detected",
        ),
        CheckGroup(
            "System",
            (
                Check("File descriptor limit", _fd_limit(options.max_file_descriptors)),
                Check(
                    "TCP congestion control (BBR)",
                    lambda s: (s.sysctl_value("net.ipv4.tcp_congestion_control"), "bbr"),
                    warn_only=True,
                ),
            ),
        ),
        CheckGroup(
            "SSH",
            (
                Check("SSH service running", lambda s: (s.service_active("ssh"), "active")),
                Check("SSH enabled at boot", lambda s: (s.service_enabled("ssh"), "enabled")),
            ),
            applies=lambda s: paths.sshd_config.is_file(),
            skip_message=f"{paths.sshd_config} not found",
        ),
        CheckGroup(
            "Vast.ai Tools",
            (
                Check("Vast.ai CLI installed", _vast_cli),
                Check("Vast.ai working directory exists", lambda s: paths.vast_dir.is_dir(), warn_only=True),
                Check("Vast.ai daemon service file exists", lambda s: paths.vast_unit.is_file(), warn_only=True),
            ),
        ),
        CheckGroup(
            "Network",
            (
                Check("Internet connectivity", lambda s: s.can_reach(options.connectivity_host)),
                Check("DNS resolution", lambda s: s.resolves(options.connectivity_host)),
            )
            + tuple(
                Check(f"Vast.ai endpoint reachable: {host}", lambda s, host=host: s.can_reach(host), warn_only=True)
                for host in VAST_ENDPOINTS
            ),
        ),
    ]


def display_system_info(state: SystemState, paths: SystemPaths) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Item", style=f"bold {NordColors.FROST_2}")
    table.add_column("Value", style=NordColors.SNOW_STORM_1)

    table.add_row("OS", state.command_version(["lsb_release", "-ds"]) or "Unknown")
    table.add_row("Kernel", state.command_version(["uname", "-r"]) or "Unknown")
    table.add_row("Architecture", state.command_version(["uname", "-m"]) or "Unknown")
    table.add_row("Available disk space", f"{state.free_disk_bytes(paths.root_fs) / 1024 ** 3:.1f}G")
    table.add_row("Memory usage", state.memory_usage(paths.meminfo) or "Unknown")

    console.print(
        Panel(
            table,
            title=f"[bold {NordColors.FROST_2}]System Information[/]",
            border_style=NordColors.FROST_3,
            box=box.ROUNDED,
        )
    )
