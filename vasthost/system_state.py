"""
Read-only view of live OS facts.

Nothing is cached: the system mutates while steps run, so every method
queries the current state through the executor.
"""

import grp
import resource
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Union

from vasthost.errors import ExternalCommandError
from vasthost.executor import CommandExecutor


class SystemState:
    """Probes used by preconditions, postconditions and the verifier."""

    def __init__(self, executor: CommandExecutor) -> None:
        self.executor = executor

    # ----------------------------------------------------------------
    # Packages
    # ----------------------------------------------------------------
    def installed_packages(self, patterns: Iterable[str]) -> List[str]:
        """
        Resolve package names or glob patterns to the packages actually installed.

        dpkg-query exits non-zero when any pattern has no match but still prints
        the matches for the others, so the exit code is ignored.
        """
        patterns = list(patterns)
        if not patterns:
            return []
        result = self.executor.query(
            ["dpkg-query", "-W", "-f=${Package}\t${db:Status-Status}\n", *patterns]
        )
        installed = []
        for line in result.stdout.splitlines():
            name, _, status = line.partition("\t")
            if status.strip() == "installed" and name not in installed:
                installed.append(name)
        return installed

    def package_installed(self, name: str) -> bool:
        return name in self.installed_packages([name])

    def missing_packages(self, names: Iterable[str]) -> List[str]:
        names = list(names)
        present = set(self.installed_packages(names))
        return [name for name in names if name not in present]

    # ----------------------------------------------------------------
    # Services
    # ----------------------------------------------------------------
    def service_active(self, unit: str) -> str:
        return self.executor.query(["systemctl", "is-active", unit]).output

    def service_enabled(self, unit: str) -> str:
        return self.executor.query(["systemctl", "is-enabled", unit]).output

    # ----------------------------------------------------------------
    # Kernel / OS
    # ----------------------------------------------------------------
    def sysctl_value(self, key: str) -> str:
        return self.executor.query(["sysctl", "-n", key]).output

    def kernel_module_loaded(self, name: str) -> bool:
        result = self.executor.query(["lsmod"])
        return any(line.split()[0] == name for line in result.stdout.splitlines()[1:] if line.strip())

    def ubuntu_version(self) -> str:
        return self.executor.query(["lsb_release", "-rs"], check=True).output

    def ubuntu_codename(self) -> str:
        return self.executor.query(["lsb_release", "-cs"], check=True).output

    def dpkg_architecture(self) -> str:
        return self.executor.query(["dpkg", "--print-architecture"], check=True).output

    def free_disk_bytes(self, path: Union[str, Path] = "/") -> int:
        return shutil.disk_usage(str(path)).free

    def has_nvidia_gpu(self) -> bool:
        """Look for an NVIDIA device on the PCI bus; no lspci means no GPU found."""
        try:
            result = self.executor.query(["lspci"])
        except ExternalCommandError:
            return False
        return "nvidia" in result.stdout.lower()

    # ----------------------------------------------------------------
    # Users, files, network
    # ----------------------------------------------------------------
    def user_groups(self, user: str) -> List[str]:
        result = self.executor.query(["id", "-nG", user])
        return result.output.split() if result.ok else []

    def group_exists(self, name: str) -> bool:
        try:
            grp.getgrnam(name)
        except KeyError:
            return False
        return True

    def file_contains(self, path: Union[str, Path], text: str) -> bool:
        return text in self.executor.read_text(path)

    def command_exists(self, name: str) -> bool:
        return self.executor.command_exists(name)

    def can_reach(self, host: str, timeout: int = 5) -> bool:
        return self.executor.query(["ping", "-c", "1", "-W", str(timeout), host]).ok

    def resolves(self, host: str) -> bool:
        return self.executor.query(["getent", "hosts", host]).ok

    def command_version(self, cmd: List[str]) -> Optional[str]:
        try:
            result = self.executor.query(cmd)
        except ExternalCommandError:
            return None
        if not result.ok:
            return None
        lines = result.output.splitlines()
        return lines[0] if lines else None

    # ----------------------------------------------------------------
    # Resources and containers
    # ----------------------------------------------------------------
    def open_file_limit(self) -> int:
        """Soft RLIMIT_NOFILE of the current process (what `ulimit -n` reports)."""
        return resource.getrlimit(resource.RLIMIT_NOFILE)[0]

    def memory_usage(self, meminfo: Union[str, Path] = "/proc/meminfo") -> Optional[str]:
        values = {}
        for line in self.executor.read_text(meminfo).splitlines():
            key, _, rest = line.partition(":")
            fields = rest.split()
            if fields and fields[0].isdigit():
                values[key] = int(fields[0])
        total = values.get("MemTotal")
        available = values.get("MemAvailable")
        if not total or available is None:
            return None
        used = total - available
        gib = 1024 ** 2
        return f"{used / gib:.1f}G/{total / gib:.1f}G ({used * 100 / total:.2f}% used)"

    def container_runs(self, image: str, *args: str, gpus: bool = False, timeout: int = 600) -> bool:
        """Run a throwaway container; True when it exits cleanly."""
        cmd = ["docker", "run", "--rm"]
        if gpus:
            cmd += ["--gpus", "all"]
        return self.executor.query(cmd + [image, *args], timeout=timeout).ok
