"""Exception taxonomy shared by the runner, the steps and the CLI."""

from pathlib import Path
from typing import List, Optional, Union


class VasthostError(Exception):
    """Base class for every error raised by vasthost."""


class ConfigError(VasthostError):
    """Invalid configuration file, option value or step selection."""


class PreconditionError(VasthostError):
    """The machine is not fit for provisioning (OS, disk, network, privileges)."""


class StepError(VasthostError):
    """An invariant inside a step was violated."""


class ExternalCommandError(VasthostError):
    """An OS-level command exited non-zero, could not start, or timed out."""

    def __init__(
        self,
        command: Union[str, List[str]],
        exit_code: int,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        self.command = command if isinstance(command, str) else " ".join(command)
        self.exit_code = exit_code
        self.stderr = (stderr or "").strip()
        self.timed_out = timed_out
        if timed_out:
            message = f"Command timed out: {self.command}"
        else:
            message = f"Command failed with exit code {exit_code}: {self.command}"
        if self.stderr:
            message += f" ({self.stderr.splitlines()[-1]})"
        super().__init__(message)


class RunAborted(VasthostError):
    """Raised by the runner once a step failure has been logged."""

    def __init__(
        self,
        step: str,
        cause: Optional[BaseException] = None,
        restore_point: Optional[Path] = None,
        interrupted: bool = False,
    ) -> None:
        self.step = step
        self.cause = cause
        self.restore_point = restore_point
        self.interrupted = interrupted
        if interrupted:
            message = f"Run interrupted before step '{step}'"
        else:
            message = f"Step '{step}' failed: {cause}"
        super().__init__(message)
