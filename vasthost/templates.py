"""
Typed configuration templates.

Generated files are modelled as structured objects and rendered to their
target format, so they can be compared against what is already on disk.
Sections appended to shared files (sysctl.conf, limits.conf, sshd_config)
are managed blocks that are replaced in place on reruns.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from vasthost.errors import StepError

MARKER_PREFIX: str = "vasthost"


# ----------------------------------------------------------------
# Managed Blocks
# ----------------------------------------------------------------
@dataclass(frozen=True)
class ManagedBlock:
    """A marker-delimited block of lines owned by vasthost inside a shared file."""

    name: str
    lines: Tuple[str, ...]
    comment: str = "#"

    @property
    def begin(self) -> str:
        return f"{self.comment} BEGIN {MARKER_PREFIX} {self.name}"

    @property
    def end(self) -> str:
        return f"{self.comment} END {MARKER_PREFIX} {self.name}"

    def render(self) -> str:
        return "\n".join([self.begin, *self.lines, self.end]) + "\n"

    def apply(self, existing: str, position: str = "bottom") -> str:
        """
        Return `existing` with this block inserted or replaced.

        An existing block is replaced where it stands; otherwise the block is
        appended (`bottom`) or prepended (`top`).
        """
        lines = existing.splitlines()
        starts = [i for i, line in enumerate(lines) if line.strip() == self.begin]
        ends = [i for i, line in enumerate(lines) if line.strip() == self.end]

        if len(starts) > 1 or len(ends) > 1:
            raise StepError(f"Duplicate '{self.name}' blocks found; fix the file by hand")
        if starts and (not ends or ends[0] < starts[0]):
            raise StepError(f"Unterminated '{self.name}' block: missing '{self.end}'")
        if ends and not starts:
            raise StepError(f"Stray end marker for '{self.name}' block")

        block = self.render().rstrip("\n").splitlines()
        if starts:
            new_lines = lines[: starts[0]] + block + lines[ends[0] + 1:]
        elif position == "top":
            new_lines = block + ([""] + lines if lines else [])
        else:
            separator = [""] if lines and lines[-1].strip() else []
            new_lines = lines + separator + block
        return "\n".join(new_lines) + "\n"


def key_value_lines(settings: Mapping[str, Any], separator: str = " ") -> Tuple[str, ...]:
    return tuple(f"{key}{separator}{value}" for key, value in settings.items())


def sysctl_block(name: str, settings: Mapping[str, Any]) -> ManagedBlock:
    return ManagedBlock(name, key_value_lines(settings, " = "))


def sshd_block(name: str, settings: Mapping[str, Any]) -> ManagedBlock:
    return ManagedBlock(name, key_value_lines(settings))


def limits_block(name: str, nofile: int, domains: Sequence[str] = ("*", "root")) -> ManagedBlock:
    lines = []
    for domain in domains:
        for kind in ("soft", "hard"):
            lines.append(f"{domain} {kind} nofile {nofile}")
    return ManagedBlock(name, tuple(lines))


# ----------------------------------------------------------------
# Container Runtime Daemon JSON
# ----------------------------------------------------------------
@dataclass(frozen=True)
class DaemonConfig:
    """Docker daemon.json with the fixed key set the host needs."""

    default_runtime: str = "runc"
    runtimes: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: {"nvidia": {"path": "nvidia-container-runtime", "runtimeArgs": []}}
    )
    log_driver: str = "json-file"
    log_opts: Mapping[str, str] = field(default_factory=lambda: {"max-size": "10m", "max-file": "3"})
    storage_driver: str = "overlay2"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default-runtime": self.default_runtime,
            "runtimes": {name: dict(spec) for name, spec in self.runtimes.items()},
            "log-driver": self.log_driver,
            "log-opts": dict(self.log_opts),
            "storage-driver": self.storage_driver,
        }

    def render(self) -> str:
        return json.dumps(self.to_dict(), indent=4) + "\n"

    def matches(self, existing: str) -> bool:
        """True when `existing` parses to the same JSON document."""
        try:
            return json.loads(existing) == self.to_dict()
        except ValueError:
            return False


# ----------------------------------------------------------------
# INI-style Files (systemd units, systemd-networkd)
# ----------------------------------------------------------------
@dataclass(frozen=True)
class IniDocument:
    """Ordered sections of key/value pairs; keys may repeat (e.g. DNS=)."""

    sections: Tuple[Tuple[str, Tuple[Tuple[str, str], ...]], ...]
    header: Tuple[str, ...] = ()

    def render(self) -> str:
        out: List[str] = [f"# {line}" for line in self.header]
        for index, (section, entries) in enumerate(self.sections):
            if index or out:
                out.append("")
            out.append(f"[{section}]")
            out.extend(f"{key}={value}" for key, value in entries)
        return "\n".join(out) + "\n"


def systemd_service(
    description: str,
    exec_start: str,
    after: Sequence[str] = ("network.target",),
    requires: Sequence[str] = (),
    working_directory: Optional[str] = None,
    user: str = "root",
    restart: str = "always",
    restart_sec: int = 10,
) -> IniDocument:
    unit = [("Description", description), ("After", " ".join(after))]
    if requires:
        unit.append(("Requires", " ".join(requires)))
    unit += [("StartLimitIntervalSec", "60"), ("StartLimitBurst", "3")]

    service = [("Type", "simple"), ("User", user)]
    if working_directory:
        service.append(("WorkingDirectory", working_directory))
    service += [("ExecStart", exec_start), ("Restart", restart), ("RestartSec", str(restart_sec))]

    return IniDocument(
        sections=(
            ("Unit", tuple(unit)),
            ("Service", tuple(service)),
            ("Install", (("WantedBy", "multi-user.target"),)),
        ),
        header=("Generated by vasthost",),
    )


def networkd_dhcp(match_name: str = "en*", dns: Sequence[str] = ("8.8.8.8", "8.8.4.4")) -> IniDocument:
    network = [("DHCP", "yes")] + [("DNS", server) for server in dns]
    return IniDocument(
        sections=(("Match", (("Name", match_name),)), ("Network", tuple(network))),
        header=("Generated by vasthost",),
    )


# ----------------------------------------------------------------
# APT Configuration
# ----------------------------------------------------------------
@dataclass(frozen=True)
class AptPeriodic:
    update_package_lists: int = 1
    download_upgradeable_packages: int = 1
    autoclean_interval: int = 7
    unattended_upgrade: int = 1

    def render(self) -> str:
        entries = {
            "Update-Package-Lists": self.update_package_lists,
            "Download-Upgradeable-Packages": self.download_upgradeable_packages,
            "AutocleanInterval": self.autoclean_interval,
            "Unattended-Upgrade": self.unattended_upgrade,
        }
        return "".join(f'APT::Periodic::{key} "{value}";\n' for key, value in entries.items())


@dataclass(frozen=True)
class UnattendedUpgrades:
    allowed_origins: Tuple[str, ...] = (
        "${distro_id}:${distro_codename}",
        "${distro_id}:${distro_codename}-security",
        "${distro_id}ESMApps:${distro_codename}-apps-security",
        "${distro_id}ESM:${distro_codename}-infra-security",
    )
    remove_unused_kernel_packages: bool = True
    remove_new_unused_dependencies: bool = True
    remove_unused_dependencies: bool = True
    automatic_reboot: bool = False

    def render(self) -> str:
        def flag(value: bool) -> str:
            return "true" if value else "false"

        lines = ["Unattended-Upgrade::Allowed-Origins {"]
        lines += [f'    "{origin}";' for origin in self.allowed_origins]
        lines += [
            "};",
            "",
            f'Unattended-Upgrade::Remove-Unused-Kernel-Packages "{flag(self.remove_unused_kernel_packages)}";',
            f'Unattended-Upgrade::Remove-New-Unused-Dependencies "{flag(self.remove_new_unused_dependencies)}";',
            f'Unattended-Upgrade::Remove-Unused-Dependencies "{flag(self.remove_unused_dependencies)}";',
            f'Unattended-Upgrade::Automatic-Reboot "{flag(self.automatic_reboot)}";',
        ]
        return "\n".join(lines) + "\n"


# ----------------------------------------------------------------
# Status Shell Scripts
# ----------------------------------------------------------------
@dataclass(frozen=True)
class StatusScript:
    """A bash script printing titled sections of command output."""

    title: str
    sections: Tuple[Tuple[str, Tuple[str, ...]], ...]
    footer: Optional[str] = None

    def render(self) -> str:
        lines = ["#!/bin/bash", "# Generated by vasthost", "", f'echo "=== {self.title} ==="']
        for heading, commands in self.sections:
            if heading:
                lines += ['echo ""', f'echo "=== {heading} ==="']
            lines += list(commands)
        if self.footer:
            lines.append(f'echo "{self.footer}"')
        return "\n".join(lines) + "\n"
