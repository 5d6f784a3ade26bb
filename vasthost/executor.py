"""
Command execution boundary.

Every external mutation (commands and file writes) goes through a
CommandExecutor so dry-run and logging are enforced in one place. Read-only
probes use `query`, which runs even in dry-run mode.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from vasthost.errors import ExternalCommandError
from vasthost.logs import log_dry_run

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND: int = 127
DEFAULT_TIMEOUT: int = 3600
QUERY_TIMEOUT: int = 60

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single external command."""

    command: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    dry_run: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return self.stdout.strip()


def format_command(cmd: Sequence[str]) -> str:
    return " ".join(cmd)


class CommandExecutor:
    """Runs OS commands with a timeout, honoring dry-run for anything that mutates."""

    def __init__(
        self,
        dry_run: bool = False,
        timeout: int = DEFAULT_TIMEOUT,
        runner: Runner = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
    ) -> None:
        self.dry_run = dry_run
        self.timeout = timeout
        self._runner = runner
        self._which = which

    @classmethod
    def from_config(cls, config, **kwargs) -> "CommandExecutor":
        return cls(dry_run=config.dry_run, timeout=config.options.command_timeout, **kwargs)

    # ----------------------------------------------------------------
    # Commands
    # ----------------------------------------------------------------
    def _execute(
        self,
        cmd: List[str],
        input: Optional[str],
        env: Optional[Dict[str, str]],
        timeout: int,
    ) -> CommandResult:
        full_env = os.environ.copy()
        full_env["DEBIAN_FRONTEND"] = "noninteractive"
        if env:
            full_env.update(env)

        logger.debug(f"Running command: {format_command(cmd)}")
        try:
            proc = self._runner(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                errors="replace",
                env=full_env,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError:
            logger.debug(f"Command not found: {cmd[0]}")
            return CommandResult(cmd, COMMAND_NOT_FOUND, stderr=f"{cmd[0]}: command not found")
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out after {timeout} seconds: {format_command(cmd)}")
            raise ExternalCommandError(cmd, -1, f"timed out after {timeout}s", timed_out=True)

        result = CommandResult(cmd, proc.returncode, proc.stdout or "", proc.stderr or "")
        if not result.ok:
            logger.debug(f"Exit code {result.exit_code} from: {format_command(cmd)}")
            if result.stderr.strip():
                logger.debug(f"Stderr: {result.stderr.strip()}")
        return result

    def run(
        self,
        cmd: List[str],
        input: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Run a mutating command; in dry-run mode log it and return a synthetic success."""
        if self.dry_run:
            log_dry_run(logger, f"Would run: {format_command(cmd)}")
            return CommandResult(list(cmd), 0, dry_run=True)
        return self._execute(list(cmd), input, env, self.timeout)

    def run_or_fail(
        self,
        cmd: List[str],
        input: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Run a mutating command and raise ExternalCommandError on a non-zero exit."""
        result = self.run(cmd, input=input, env=env)
        if not result.ok:
            raise ExternalCommandError(cmd, result.exit_code, result.stderr)
        return result

    def query(self, cmd: List[str], check: bool = False, timeout: int = QUERY_TIMEOUT) -> CommandResult:
        """
        Run a read-only probe. Executes even in dry-run mode.

        A missing binary raises ExternalCommandError (exit code 127) so callers
        can tell "could not probe" apart from "probe said no".
        """
        result = self._execute(list(cmd), None, None, min(timeout, self.timeout))
        if result.exit_code == COMMAND_NOT_FOUND or (check and not result.ok):
            raise ExternalCommandError(cmd, result.exit_code, result.stderr)
        return result

    def command_exists(self, name: str) -> bool:
        return self._which(name) is not None

    # ----------------------------------------------------------------
    # Files
    # ----------------------------------------------------------------
    def read_text(self, path: Union[str, Path]) -> str:
        """Read a file; a missing file reads as empty."""
        try:
            return Path(path).read_text()
        except FileNotFoundError:
            return ""

    def write_text(self, path: Union[str, Path], content: str, mode: Optional[int] = None) -> None:
        path = Path(path)
        if self.dry_run:
            log_dry_run(logger, f"Would write {len(content)} bytes to {path}")
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if mode is not None:
            os.chmod(path, mode)
        logger.debug(f"Wrote {path}")

    def ensure_dir(self, path: Union[str, Path], mode: int = 0o755) -> None:
        path = Path(path)
        if path.is_dir():
            return
        if self.dry_run:
            log_dry_run(logger, f"Would create directory {path}")
            return
        path.mkdir(parents=True, exist_ok=True, mode=mode)
        logger.debug(f"Created directory {path}")

    def chmod(self, path: Union[str, Path], mode: int) -> None:
        if self.dry_run:
            log_dry_run(logger, f"Would chmod {oct(mode)} {path}")
            return
        os.chmod(path, mode)

    def remove(self, path: Union[str, Path]) -> bool:
        """Remove a file or directory tree; returns False if nothing was there."""
        path = Path(path)
        if not path.exists() and not path.is_symlink():
            return False
        if self.dry_run:
            log_dry_run(logger, f"Would remove {path}")
            return True
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        logger.debug(f"Removed {path}")
        return True
