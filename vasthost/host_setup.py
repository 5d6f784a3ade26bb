"""
GPU container host provisioning sequence.

system-requirements -> backup -> package-update -> essential-packages ->
docker -> nvidia -> system-tuning -> ssh -> vast-tools -> cleanup
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from rich import box
from rich.panel import Panel
from rich.table import Table

from vasthost import preflight
from vasthost.actions import (
    add_apt_key,
    apply_block,
    apt,
    apt_install,
    apt_remove_installed,
    enable_service,
    ensure_group_member,
    install_file,
    systemctl,
)
from vasthost.config import SystemPaths
from vasthost.steps import Step, StepContext, StepName
from vasthost.templates import (
    DaemonConfig,
    ManagedBlock,
    StatusScript,
    limits_block,
    sshd_block,
    sysctl_block,
    systemd_service,
)
from vasthost.ui import NordColors, console, display_panel

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------
# Package Lists and Settings
# ----------------------------------------------------------------
ESSENTIAL_PACKAGES: List[str] = [
    "build-essential",
    "libglvnd-dev",
    "pkg-config",
    "lm-sensors",
    "smartmontools",
    "htop",
    "curl",
    "wget",
    "git",
    "vim",
    "screen",
    "tmux",
    "unzip",
    "software-properties-common",
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "openssh-server",
    "update-manager-core",
    "linux-generic-hwe-22.04",
]

LEGACY_DOCKER_PACKAGES: List[str] = ["docker", "docker-engine", "docker.io", "containerd", "runc"]
DOCKER_PACKAGES: List[str] = ["docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin"]
VAST_TOOL_PACKAGES: List[str] = ["python3", "python3-pip", "python3-venv"]

DOCKER_GPG_URL: str = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_REPO_URL: str = "https://download.docker.com/linux/ubuntu"
NVIDIA_GPG_URL: str = "https://nvidia.github.io/libnvidia-container/gpgkey"
NVIDIA_REPO_URL: str = "https://nvidia.github.io/libnvidia-container/stable/deb/$(ARCH)"
VAST_SETUP_URL: str = "https://cloud.vast.ai/host/setup"

NETWORK_SYSCTL: Dict[str, str] = {
    "net.core.rmem_max": "268435456",
    "net.core.wmem_max": "268435456",
    "net.ipv4.tcp_rmem": "4096 87380 268435456",
    "net.ipv4.tcp_wmem": "4096 65536 268435456",
    "net.core.netdev_max_backlog": "5000",
    "net.core.netdev_budget": "600",
    "net.ipv4.tcp_congestion_control": "bbr",
    "net.ipv4.tcp_fastopen": "3",
    "net.ipv4.tcp_mtu_probing": "1",
}

PAM_LIMITS_LINE: str = "session required pam_limits.so"

VAST_DAEMON_UNIT: str = "vast-daemon"
VAST_DAEMON_PLACEHOLDER: str = (
    "/bin/bash -c \"echo 'Vast daemon placeholder - configure with actual daemon command "
    f"from {VAST_SETUP_URL}'\""
)

MONITOR_SCRIPT = StatusScript(
    title="Vast.ai System Status",
    sections=(
        ("", ('echo "Date: $(date)"', 'echo "Uptime: $(uptime)"')),
        (
            "GPU Status",
            (
                "if command -v nvidia-smi &> /dev/null; then",
                "    nvidia-smi --query-gpu=name,temperature.gpu,utilization.gpu,memory.used,memory.total "
                "--format=csv,noheader,nounits",
                "else",
                '    echo "No NVIDIA GPU detected"',
                "fi",
            ),
        ),
        ("Docker Status", ("docker --version", 'docker ps --format "table {{.Names}}\\t{{.Status}}\\t{{.Ports}}"')),
        ("System Resources", ("free -h", "df -h /")),
        ("Network", ('ip addr show | grep -E "inet.*eth0|inet.*enp" | head -1',)),
    ),
)


def ssh_settings(port: int) -> Dict[str, object]:
    return {
        "Port": port,
        "ClientAliveInterval": 60,
        "ClientAliveCountMax": 3,
        "MaxSessions": 10,
        "MaxStartups": "100:30:200",
        "LoginGraceTime": 30,
    }


def backup_targets(paths: SystemPaths) -> List[Path]:
    """Configuration paths saved in the restore point before anything changes."""
    return [
        paths.sources_list,
        paths.sources_list_d,
        paths.sshd_config,
        paths.limits_conf,
        paths.sysctl_conf,
        paths.docker_daemon_json,
    ]


# ----------------------------------------------------------------
# Steps
# ----------------------------------------------------------------
def check_system_requirements(ctx: StepContext) -> str:
    """
    Verify the host can be provisioned.

    Args:
        ctx: The run context

    Returns:
        str: A one-line summary for the status report.

    Raises:
        PreconditionError: If a host requirement is not met.
    """
    logger.info("Checking system requirements...")
    version = preflight.check_os_version(ctx)
    preflight.check_disk_space(ctx)
    preflight.check_connectivity(ctx)
    return f"Ubuntu {version}, disk and network OK"


def create_backup(ctx: StepContext) -> str:
    logger.info("Creating system restore point...")
    record = ctx.backups.create_restore_point(backup_targets(ctx.paths))
    return f"{len(record.source_paths)} path(s) saved to {record.destination_dir}"


def update_packages(ctx: StepContext) -> None:
    """Refresh package lists and apply all pending upgrades."""
    logger.info("Updating system packages...")
    apt(ctx, "update")
    apt(ctx, "upgrade", "-y")
    apt(ctx, "dist-upgrade", "-y")


def install_essential_packages(ctx: StepContext) -> str:
    missing = apt_install(ctx, ESSENTIAL_PACKAGES)
    return f"{len(missing)} package(s) newly installed" if missing else "Already installed"


def install_docker(ctx: StepContext) -> None:
    """
    Install Docker CE from the upstream repository.

    Legacy distribution packages are removed first. The invoking user is added
    to the docker group and daemon.json is rewritten only when its content
    differs, in which case Docker is restarted.

    Args:
        ctx: The run context
    """
    paths = ctx.paths
    apt_remove_installed(ctx, LEGACY_DOCKER_PACKAGES)

    if not paths.docker_keyring.exists():
        add_apt_key(ctx, DOCKER_GPG_URL, paths.docker_keyring)
    arch = ctx.state.dpkg_architecture()
    codename = ctx.state.ubuntu_codename()
    install_file(
        ctx,
        paths.docker_list,
        f"deb [arch={arch} signed-by={paths.docker_keyring}] {DOCKER_REPO_URL} {codename} stable\n",
    )

    apt(ctx, "update")
    apt_install(ctx, DOCKER_PACKAGES)
    enable_service(ctx, "docker")
    ensure_group_member(ctx, ctx.options.docker_user, "docker")

    daemon = DaemonConfig()
    if daemon.matches(ctx.executor.read_text(paths.docker_daemon_json)):
        logger.info(f"{paths.docker_daemon_json} is already up-to-date.")
        return
    ctx.executor.write_text(paths.docker_daemon_json, daemon.render())
    logger.info(f"Wrote Docker daemon configuration to {paths.docker_daemon_json}")
    systemctl(ctx, "restart", "docker")


def docker_running(ctx: StepContext) -> bool:
    return ctx.state.service_active("docker") == "active"


def install_nvidia(ctx: StepContext) -> str:
    """
    Install the NVIDIA driver and container toolkit.

    The toolkit is registered as a Docker runtime when Docker is present.

    Args:
        ctx: The run context

    Returns:
        str: Status message noting that a reboot is required.
    """
    paths = ctx.paths
    version = ctx.options.nvidia_driver_version
    logger.info("NVIDIA GPU detected, installing drivers and toolkit...")
    apt_install(ctx, [f"nvidia-driver-{version}", f"nvidia-dkms-{version}"])

    if not paths.nvidia_keyring.exists():
        add_apt_key(ctx, NVIDIA_GPG_URL, paths.nvidia_keyring)
    install_file(ctx, paths.nvidia_list, f"deb [signed-by={paths.nvidia_keyring}] {NVIDIA_REPO_URL} /\n")

    apt(ctx, "update")
    apt_install(ctx, ["nvidia-container-toolkit"])

    if ctx.state.command_exists("docker"):
        ctx.executor.run_or_fail(["nvidia-ctk", "runtime", "configure", "--runtime=docker"])
        systemctl(ctx, "restart", "docker")
    else:
        logger.warning("Docker not found; skipping NVIDIA container runtime configuration.")
    return f"Driver {version} and container toolkit installed (reboot required)"


def has_gpu(ctx: StepContext) -> bool:
    logger.info("Checking for NVIDIA GPUs...")
    return ctx.state.has_nvidia_gpu()


def toolkit_installed(ctx: StepContext) -> bool:
    return ctx.state.package_installed("nvidia-container-toolkit")


def tune_system(ctx: StepContext) -> None:
    """
    Raise file-descriptor limits and apply network sysctl tuning.

    Loading tcp_bbr and setting the CPU governor are best effort; failures
    there only log a warning.

    Args:
        ctx: The run context
    """
    paths = ctx.paths
    apply_block(ctx, paths.limits_conf, limits_block("file-limits", ctx.options.max_file_descriptors))
    if ctx.state.file_contains(paths.pam_common_session, "pam_limits.so"):
        logger.info("PAM limits already enabled.")
    else:
        apply_block(ctx, paths.pam_common_session, ManagedBlock("pam-limits", (PAM_LIMITS_LINE,)))
    apply_block(ctx, paths.sysctl_conf, sysctl_block("network-tuning", NETWORK_SYSCTL))

    if not ctx.executor.run(["modprobe", "tcp_bbr"]).ok:
        logger.warning("Could not load the tcp_bbr module; BBR congestion control may be unavailable.")
    ctx.executor.run_or_fail(["sysctl", "-p", str(paths.sysctl_conf)])

    if ctx.state.command_exists("cpupower"):
        if not ctx.executor.run(["cpupower", "frequency-set", "-g", "performance"]).ok:
            logger.warning("Could not set the CPU governor to performance.")
    else:
        logger.debug("cpupower not installed; leaving the CPU governor unchanged.")


def network_tuned(ctx: StepContext) -> bool:
    return ctx.state.sysctl_value("net.core.rmem_max") == NETWORK_SYSCTL["net.core.rmem_max"]


def configure_ssh(ctx: StepContext) -> None:
    """Enable sshd and apply keep-alive settings, validating the config before a restart."""
    enable_service(ctx, "ssh")
    block = sshd_block("ssh-tuning", ssh_settings(ctx.options.ssh_port))
    if apply_block(ctx, ctx.paths.sshd_config, block, position="top"):
        ctx.executor.run_or_fail(["sshd", "-t"])
        systemctl(ctx, "restart", "ssh")


def ssh_running(ctx: StepContext) -> bool:
    return ctx.state.service_active("ssh") == "active"


def install_vast_tools(ctx: StepContext) -> None:
    """
    Install the Vast.ai CLI, daemon unit file and status script.

    Args:
        ctx: The run context
    """
    paths = ctx.paths
    apt_install(ctx, VAST_TOOL_PACKAGES)
    ctx.executor.ensure_dir(paths.vast_dir)
    ctx.executor.run_or_fail(["pip3", "install", ctx.options.vast_cli_package])

    unit = systemd_service(
        description="Vast.ai Host Daemon",
        exec_start=VAST_DAEMON_PLACEHOLDER,
        after=("network.target", "docker.service"),
        requires=("docker.service",),
        working_directory=str(paths.vast_dir),
    )
    install_file(ctx, paths.vast_unit, unit.render())
    install_file(ctx, paths.monitor_script, MONITOR_SCRIPT.render(), mode=0o755)
    systemctl(ctx, "daemon-reload")


def cleanup(ctx: StepContext) -> None:
    """Drop unused packages, the APT cache and leftover downloaded keys."""
    apt(ctx, "autoremove", "-y")
    apt(ctx, "autoclean")
    for leftover in sorted(ctx.paths.tmp_dir.glob("vast-ai-setup-*")):
        ctx.executor.remove(leftover)


def finalize(ctx: StepContext) -> None:
    """Leave daemons enabled and services started after a successful run.

    The Vast.ai daemon is only enabled when its unit file was installed; a
    skipped vast-tools step leaves nothing for systemd to enable.

    Args:
        ctx: The run context.
    """
    systemctl(ctx, "daemon-reload")
    enable_service(ctx, "ssh")
    if not ctx.config.is_skipped(StepName.DOCKER):
        enable_service(ctx, "docker")
    if ctx.config.is_skipped(StepName.VAST_TOOLS):
        logger.info(f"Not enabling {VAST_DAEMON_UNIT}: vast-tools was skipped.")
    elif ctx.dry_run or ctx.paths.vast_unit.exists():
        enable_service(ctx, VAST_DAEMON_UNIT, start=False)
    else:
        logger.warning(f"Not enabling {VAST_DAEMON_UNIT}: {ctx.paths.vast_unit} is missing.")


def build_host_steps() -> List[Step]:
    """
    Build the host provisioning sequence.

    Returns:
        List[Step]: Steps in execution order; requirements and backup cannot be skipped.
    """
    return [
        Step(
            StepName.SYSTEM_REQUIREMENTS,
            "Checking system requirements",
            check_system_requirements,
            skippable=False,
        ),
        Step(
            StepName.BACKUP,
            "Creating system restore point",
            create_backup,
            postcondition=lambda ctx: ctx.backups.restore_point is not None,
            skippable=False,
        ),
        Step(StepName.PACKAGE_UPDATE, "Updating system packages", update_packages),
        Step(StepName.ESSENTIAL_PACKAGES, "Installing essential packages", install_essential_packages),
        Step(StepName.DOCKER, "Installing Docker", install_docker, postcondition=docker_running),
        Step(
            StepName.NVIDIA,
            "Installing NVIDIA drivers and container toolkit",
            install_nvidia,
            precondition=has_gpu,
            postcondition=toolkit_installed,
            noop_message="No NVIDIA GPU detected",
        ),
        Step(StepName.SYSTEM_TUNING, "Configuring system settings", tune_system, postcondition=network_tuned),
        Step(StepName.SSH, "Configuring SSH", configure_ssh, postcondition=ssh_running),
        Step(StepName.VAST_TOOLS, "Installing Vast.ai tools", install_vast_tools),
        Step(StepName.CLEANUP, "Cleaning up", cleanup),
    ]


# ----------------------------------------------------------------
# Summary
# ----------------------------------------------------------------
def display_system_info(ctx: StepContext) -> None:
    """Print an OS / Docker / GPU summary panel."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Item", style=f"bold {NordColors.FROST_2}")
    table.add_column("Value", style=NordColors.SNOW_STORM_1)

    table.add_row("OS", ctx.state.command_version(["lsb_release", "-ds"]) or "Unknown")
    table.add_row("Kernel", ctx.state.command_version(["uname", "-r"]) or "Unknown")
    table.add_row("Architecture", ctx.state.command_version(["uname", "-m"]) or "Unknown")

    if ctx.dry_run:
        table.add_row("Mode", f"[{NordColors.YELLOW}]DRY RUN - no changes were made[/]")
    else:
        table.add_row("Docker", ctx.state.command_version(["docker", "--version"]) or "Not installed")
        if ctx.state.command_exists("nvidia-smi"):
            table.add_row(
                "NVIDIA Driver",
                ctx.state.command_version(["nvidia-smi", "--query-gpu=driver_version", "--format=csv,noheader,nounits"])
                or "Unknown",
            )
            gpus = ctx.executor.query(["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader"])
            table.add_row("GPU(s)", gpus.output or "None reported")
        table.add_row("Vast.ai CLI", ctx.state.command_version(["vastai", "--version"]) or "Not installed")

    console.print(
        Panel(
            table,
            title=f"[bold {NordColors.GREEN}]Vast.ai Setup Complete[/]",
            border_style=NordColors.FROST_3,
            box=box.ROUNDED,
        )
    )


def display_next_steps(ctx: StepContext, log_file: Optional[Path]) -> None:
    lines = [
        "1. Reboot the system: sudo reboot",
        f"2. Visit: {VAST_SETUP_URL}",
        f"3. Run monitoring: {ctx.paths.monitor_script}",
    ]
    if log_file is not None:
        lines.append(f"4. View logs: tail -f {log_file}")
    display_panel("\n".join(lines), NordColors.FROST_2, "Next Steps")
