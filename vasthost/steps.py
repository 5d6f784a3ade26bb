"""
Step model for the provisioning runner.

A Step is a named, immutable unit of work with an optional precondition, an
apply action and an optional postcondition. Steps never read ambient globals:
everything they need arrives through the StepContext.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

if TYPE_CHECKING:
    from vasthost.backup import BackupManager
    from vasthost.config import RunConfig
    from vasthost.executor import CommandExecutor
    from vasthost.system_state import SystemState


class StepName(str, Enum):
    """Every step name known to the provisioning sequences."""

    SYSTEM_REQUIREMENTS = "system-requirements"
    BACKUP = "backup"
    PACKAGE_UPDATE = "package-update"
    ESSENTIAL_PACKAGES = "essential-packages"
    DOCKER = "docker"
    NVIDIA = "nvidia"
    SYSTEM_TUNING = "system-tuning"
    SSH = "ssh"
    VAST_TOOLS = "vast-tools"
    CLEANUP = "cleanup"
    SERVER_PACKAGES = "server-packages"
    REMOVE_DESKTOP = "remove-desktop"
    NETWORK = "network"
    FIREWALL = "firewall"
    AUTO_UPDATES = "auto-updates"
    UTILITIES = "utilities"

    @classmethod
    def parse(cls, value: str) -> "StepName":
        """Resolve a step name, accepting underscores for dashes."""
        try:
            return cls(value.strip().lower().replace("_", "-"))
        except ValueError:
            known = ", ".join(n.value for n in cls)
            raise ValueError(f"Unknown step '{value}'. Known steps: {known}") from None


class StepStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    NOOP = "noop"
    DRY_RUN = "dry-run"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepContext:
    """Everything a step may touch during a run."""

    config: "RunConfig"
    executor: "CommandExecutor"
    state: "SystemState"
    backups: "BackupManager"
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("vasthost.steps"))

    @property
    def options(self):
        return self.config.options

    @property
    def paths(self):
        return self.config.paths

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run


StepAction = Callable[[StepContext], Optional[str]]
StepPredicate = Callable[[StepContext], bool]


@dataclass(frozen=True)
class Step:
    """A single named provisioning action with pre/post checks."""

    name: StepName
    description: str
    apply: StepAction
    precondition: Optional[StepPredicate] = None
    postcondition: Optional[StepPredicate] = None
    skippable: bool = True
    noop_message: str = "Nothing to do"


@dataclass
class StepResult:
    name: StepName
    description: str
    status: StepStatus = StepStatus.PENDING
    message: str = ""
    elapsed: float = 0.0


def skippable_names(steps: Iterable[Step]) -> List[str]:
    """Names of the steps a user may skip, in sequence order."""
    return [step.name.value for step in steps if step.skippable]
