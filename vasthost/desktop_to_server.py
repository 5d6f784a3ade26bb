"""
Ubuntu Desktop to headless server conversion sequence.

backup -> package-update -> server-packages -> ssh -> remove-desktop ->
network -> firewall -> auto-updates -> cleanup -> utilities
"""

import logging
from pathlib import Path
from typing import Dict, List, Tuple

from vasthost.actions import (
    apply_block,
    apt,
    apt_install,
    apt_remove_installed,
    enable_service,
    install_file,
    stop_and_disable,
    systemctl,
)
from vasthost.config import SystemPaths
from vasthost.errors import StepError
from vasthost.steps import Step, StepContext, StepName
from vasthost.templates import AptPeriodic, StatusScript, UnattendedUpgrades, networkd_dhcp, sshd_block
from vasthost.ui import NordColors, display_panel

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------
# Package Lists and Settings
# ----------------------------------------------------------------
SERVER_PACKAGES: List[str] = [
    "openssh-server",
    "curl",
    "wget",
    "vim",
    "nano",
    "htop",
    "screen",
    "tmux",
    "git",
    "build-essential",
    "software-properties-common",
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
    "net-tools",
    "rsync",
    "cron",
    "logrotate",
    "unattended-upgrades",
    "ufw",
    "fail2ban",
    "chrony",
]

DISPLAY_MANAGERS: List[str] = ["gdm3", "lightdm"]

GUI_PACKAGES: List[str] = [
    "ubuntu-desktop",
    "ubuntu-desktop-minimal",
    "gnome-shell",
    "gnome-session",
    "gdm3",
    "lightdm",
    "gnome-control-center",
    "gnome-terminal",
    "nautilus",
    "firefox",
    "thunderbird",
    "libreoffice*",
    "rhythmbox",
    "shotwell",
    "totem",
    "cheese",
    "evince",
    "file-roller",
    "gedit",
    "gnome-calculator",
    "gnome-calendar",
    "gnome-characters",
    "gnome-clocks",
    "gnome-contacts",
    "gnome-font-viewer",
    "gnome-logs",
    "gnome-maps",
    "gnome-photos",
    "gnome-screenshot",
    "gnome-system-monitor",
    "gnome-weather",
    "simple-scan",
    "transmission-gtk",
    "usb-creator-gtk",
    "yelp",
    "ubuntu-web-launchers",
    "ubuntu-report",
    "update-notifier",
    "whoopsie",
    "apport-gtk",
    "software-properties-gtk",
    "gnome-software",
    "snap-store",
    "ubuntu-advantage-desktop-daemon",
]

X11_PACKAGES: List[str] = ["xorg", "x11-common", "plymouth", "plymouth-theme-ubuntu-logo", "ubuntu-sounds"]

PERIPHERAL_PACKAGES: List[str] = [
    "alsa-base",
    "pulseaudio",
    "cups*",
    "printer-driver-*",
    "system-config-printer-common",
    "bluez",
    "bluetooth",
]

GUI_SNAPS: List[str] = [
    "gnome-3-38-2004",
    "gnome-42-2204",
    "gtk-common-themes",
    "snap-store",
    "firefox",
    "ubuntu-desktop-installer",
]

GRUB_SERVER_SETTINGS: Dict[str, str] = {
    "GRUB_CMDLINE_LINUX_DEFAULT": '""',
    "GRUB_TERMINAL": "console",
}

STOCK_MOTD_FRAGMENTS: List[str] = ["10-help-text", "80-esm", "95-hwe-eol"]

SERVER_INFO_SCRIPT = StatusScript(
    title="Server Information",
    sections=(
        (
            "",
            (
                'echo "Hostname: $(hostname)"',
                'echo "OS: $(lsb_release -d | cut -f2)"',
                'echo "Kernel: $(uname -r)"',
                'echo "Uptime: $(uptime -p)"',
                "echo \"IP Address: $(hostname -I | awk '{print $1}')\"",
                'echo "Disk Usage:"',
                "df -h / | tail -1",
                'echo "Memory Usage:"',
                "free -h | grep Mem",
                "echo \"Load Average: $(uptime | awk -F'load average:' '{print $2}')\"",
                'echo "SSH Status: $(systemctl is-active ssh)"',
            ),
        ),
    ),
    footer="==========================",
)


def ssh_settings(port: int) -> Dict[str, object]:
    return {
        "Port": port,
        "ClientAliveInterval": 60,
        "ClientAliveCountMax": 3,
        "PermitRootLogin": "no",
        "MaxAuthTries": 3,
        "LoginGraceTime": 60,
        "PasswordAuthentication": "yes",
        "PubkeyAuthentication": "yes",
        "X11Forwarding": "no",
        "AllowTcpForwarding": "no",
        "PermitTunnel": "no",
        "DebianBanner": "no",
    }


def backup_targets(paths: SystemPaths) -> List[Path]:
    """Configuration paths the conversion may change."""
    return [
        paths.sshd_config,
        paths.grub_defaults,
        paths.sources_list,
        paths.sources_list_d,
        paths.netplan_dir,
        paths.networkd_dir,
    ]


def grub_server_defaults(text: str) -> str:
    """
    Set the GRUB keys for a console boot without splash. Commented-out
    occurrences are enabled in place; absent keys are appended.
    """
    seen = set()
    lines = []
    for line in text.splitlines():
        key, sep, _ = line.strip().lstrip("#").strip().partition("=")
        if sep and key in GRUB_SERVER_SETTINGS:
            lines.append(f"{key}={GRUB_SERVER_SETTINGS[key]}")
            seen.add(key)
        else:
            lines.append(line)
    lines += [f"{key}={value}" for key, value in GRUB_SERVER_SETTINGS.items() if key not in seen]
    return "\n".join(lines) + "\n"


def parse_disabled_snaps(listing: str) -> List[Tuple[str, str]]:
    """(name, revision) pairs for disabled revisions in `snap list --all` output."""
    disabled = []
    for line in listing.splitlines()[1:]:
        fields = line.split()
        if len(fields) >= 3 and "disabled" in fields[-1].split(","):
            disabled.append((fields[0], fields[2]))
    return disabled


# ----------------------------------------------------------------
# Steps
# ----------------------------------------------------------------
def create_backup(ctx: StepContext) -> str:
    logger.info("Creating system backup...")
    record = ctx.backups.create_restore_point(backup_targets(ctx.paths))
    return f"{len(record.source_paths)} path(s) saved to {record.destination_dir}"


def update_packages(ctx: StepContext) -> None:
    apt(ctx, "update")
    apt(ctx, "upgrade", "-y")


def install_server_packages(ctx: StepContext) -> str:
    missing = apt_install(ctx, SERVER_PACKAGES)
    return f"{len(missing)} package(s) newly installed" if missing else "Already installed"


def configure_ssh(ctx: StepContext) -> None:
    """
    Harden sshd and make sure it is enabled.

    The config is validated with `sshd -t` before the service is touched, and
    sshd is restarted only when the managed block changed.

    Args:
        ctx: The run context
    """
    block = sshd_block("server-hardening", ssh_settings(ctx.options.ssh_port))
    changed = apply_block(ctx, ctx.paths.sshd_config, block, position="top")
    ctx.executor.run_or_fail(["sshd", "-t"])
    enable_service(ctx, "ssh")
    if changed:
        systemctl(ctx, "restart", "ssh")


def ssh_running(ctx: StepContext) -> bool:
    return ctx.state.service_active("ssh") == "active"


def remove_snaps(ctx: StepContext) -> None:
    """Remove disabled snap revisions and the GUI snaps a server does not need."""
    if not ctx.state.command_exists("snap"):
        logger.info("snapd not installed; no snaps to clean.")
        return
    listing = ctx.executor.query(["snap", "list", "--all"]).stdout
    for name, revision in parse_disabled_snaps(listing):
        ctx.executor.run_or_fail(["snap", "remove", name, f"--revision={revision}"])

    installed = {line.split()[0] for line in listing.splitlines()[1:] if line.strip()}
    for name in GUI_SNAPS:
        if name in installed:
            ctx.executor.run_or_fail(["snap", "remove", name])


def remove_desktop(ctx: StepContext) -> str:
    """
    Stop the display managers and remove desktop packages and snaps.

    Args:
        ctx: The run context

    Returns:
        str: How many packages were removed.
    """
    for unit in DISPLAY_MANAGERS:
        stop_and_disable(ctx, unit)
    removed = apt_remove_installed(ctx, GUI_PACKAGES + X11_PACKAGES + PERIPHERAL_PACKAGES)
    remove_snaps(ctx)
    return f"Removed {len(removed)} package(s)"


def switch_network_stack(ctx: StepContext) -> None:
    """
    Boot to a console target and hand networking to systemd-networkd.

    Changes to networking take effect after the next reboot.

    Args:
        ctx: The run context
    """
    paths = ctx.paths
    systemctl(ctx, "set-default", "multi-user.target")

    current = ctx.executor.read_text(paths.grub_defaults)
    if current:
        updated = grub_server_defaults(current)
        if updated != current:
            ctx.executor.write_text(paths.grub_defaults, updated)
            ctx.executor.run_or_fail(["update-grub"])
        else:
            logger.info("GRUB is already configured for console boot.")
    else:
        logger.warning(f"{paths.grub_defaults} not found; leaving the boot loader unchanged.")

    # NetworkManager keeps running until the reboot.
    result = ctx.executor.query(["systemctl", "list-unit-files", "NetworkManager.service", "--no-legend"])
    if "NetworkManager" in result.stdout:
        systemctl(ctx, "disable", "NetworkManager")
    enable_service(ctx, "systemd-networkd", start=False)
    enable_service(ctx, "systemd-resolved", start=False)
    install_file(ctx, paths.networkd_dhcp, networkd_dhcp().render())


def configure_firewall(ctx: StepContext) -> None:
    """
    Reset ufw to deny incoming traffic except SSH, then enable it.

    Args:
        ctx: The run context

    Raises:
        StepError: If SSH is not active, since enabling the firewall could lock
            out the operator.
    """
    port = ctx.options.ssh_port
    if ctx.state.service_active("ssh") != "active":
        if not ctx.dry_run:
            raise StepError("SSH is not active; refusing to enable the firewall and lock out remote access")
        logger.warning("SSH is not active yet; the firewall would refuse to enable on a real run.")

    ctx.executor.run_or_fail(["ufw", "--force", "reset"])
    ctx.executor.run_or_fail(["ufw", "default", "deny", "incoming"])
    ctx.executor.run_or_fail(["ufw", "default", "allow", "outgoing"])
    ctx.executor.run_or_fail(["ufw", "allow", f"{port}/tcp"])
    ctx.executor.run_or_fail(["ufw", "--force", "enable"])


def firewall_active(ctx: StepContext) -> bool:
    return "Status: active" in ctx.executor.query(["ufw", "status"]).stdout


def configure_auto_updates(ctx: StepContext) -> None:
    """Enable periodic APT updates and security-only unattended upgrades."""
    install_file(ctx, ctx.paths.apt_conf_dir / "20auto-upgrades", AptPeriodic().render())
    install_file(ctx, ctx.paths.apt_conf_dir / "50unattended-upgrades", UnattendedUpgrades().render())


def cleanup(ctx: StepContext) -> None:
    apt(ctx, "autoremove", "-y", "--purge")
    apt(ctx, "autoclean")
    apt(ctx, "clean")
    ctx.executor.run_or_fail(["journalctl", "--vacuum-time=3d"])


def install_utilities(ctx: StepContext) -> None:
    """Install the server-info script and replace the stock MOTD fragments with it."""
    paths = ctx.paths
    install_file(ctx, paths.server_info, SERVER_INFO_SCRIPT.render(), mode=0o755)
    install_file(ctx, paths.motd_dir / "01-server-info", f"#!/bin/bash\n{paths.server_info}\n", mode=0o755)
    for fragment in STOCK_MOTD_FRAGMENTS:
        ctx.executor.remove(paths.motd_dir / fragment)


def finalize(ctx: StepContext) -> None:
    """Make sure SSH survives the reboot that completes the conversion."""
    enable_service(ctx, "ssh")


def build_conversion_steps() -> List[Step]:
    """
    Build the desktop-to-server conversion sequence.

    Returns:
        List[Step]: Steps in execution order; only the backup cannot be skipped.
    """
    return [
        Step(
            StepName.BACKUP,
            "Creating system backup",
            create_backup,
            postcondition=lambda ctx: ctx.backups.restore_point is not None,
            skippable=False,
        ),
        Step(StepName.PACKAGE_UPDATE, "Updating system packages", update_packages),
        Step(StepName.SERVER_PACKAGES, "Installing essential server packages", install_server_packages),
        Step(StepName.SSH, "Configuring SSH service", configure_ssh, postcondition=ssh_running),
        Step(StepName.REMOVE_DESKTOP, "Removing desktop environment", remove_desktop),
        Step(StepName.NETWORK, "Configuring system for server operation", switch_network_stack),
        Step(StepName.FIREWALL, "Configuring firewall", configure_firewall, postcondition=firewall_active),
        Step(StepName.AUTO_UPDATES, "Configuring automatic security updates", configure_auto_updates),
        Step(StepName.CLEANUP, "Cleaning up system", cleanup),
        Step(StepName.UTILITIES, "Creating server utilities", install_utilities),
    ]


def display_changes(log_file) -> None:
    lines = [
        "✓ Removed desktop environment and GUI applications",
        "✓ Installed essential server packages",
        "✓ Configured SSH service",
        "✓ Set system to boot to console mode",
        "✓ Configured basic firewall",
        "✓ Set up automatic security updates",
        "",
        "IMPORTANT: Reboot required to complete the conversion!",
        "After reboot, you can run vasthost-setup.",
    ]
    if log_file is not None:
        lines.append(f"Log file: {log_file}")
    display_panel("\n".join(lines), NordColors.GREEN, "Desktop to Server Conversion Complete")
