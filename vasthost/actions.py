"""
Idempotent mutation helpers shared by the host and desktop sequences.

Each helper inspects the current state first and only mutates when the
desired state differs, so steps can be re-run after a partial failure.
"""

from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from vasthost.steps import StepContext
from vasthost.templates import ManagedBlock
from vasthost.ui import confirm

APT_GET: List[str] = ["apt-get"]


# ----------------------------------------------------------------
# Files
# ----------------------------------------------------------------
def install_file(ctx: StepContext, path: Union[str, Path], content: str, mode: Optional[int] = None) -> bool:
    """Write `content` to `path` unless it is already there; returns True if written."""
    path = Path(path)
    if ctx.executor.read_text(path) == content:
        if mode is not None and path.exists() and (path.stat().st_mode & 0o777) != mode:
            ctx.executor.chmod(path, mode)
        ctx.logger.info(f"{path} is already up-to-date.")
        return False
    ctx.executor.write_text(path, content, mode=mode)
    ctx.logger.info(f"Updated {path}.")
    return True


def apply_block(ctx: StepContext, path: Union[str, Path], block: ManagedBlock, position: str = "bottom") -> bool:
    """Insert or replace a managed block in `path`; returns True if the file changed."""
    path = Path(path)
    existing = ctx.executor.read_text(path)
    updated = block.apply(existing, position=position)
    if updated == existing:
        ctx.logger.info(f"'{block.name}' settings in {path} are already up-to-date.")
        return False
    ctx.executor.write_text(path, updated)
    ctx.logger.info(f"Applied '{block.name}' settings to {path}.")
    return True


# ----------------------------------------------------------------
# APT
# ----------------------------------------------------------------
def apt(ctx: StepContext, *args: str) -> None:
    """
    Run apt-get non-interactively.

    Args:
        ctx: The run context
        *args: Arguments passed to apt-get, e.g. "install", "-y", "curl"

    Raises:
        ExternalCommandError: If apt-get exits non-zero.
    """
    ctx.executor.run_or_fail(APT_GET + list(args))


def apt_install(ctx: StepContext, packages: Sequence[str]) -> List[str]:
    """
    Install packages with apt-get. Already-installed packages are a no-op for
    apt, so the full list is passed every time; returns the ones that were missing.
    """
    missing = ctx.state.missing_packages(packages)
    if missing:
        ctx.logger.info(f"Installing {len(missing)} package(s): {' '.join(missing)}")
    else:
        ctx.logger.info("All requested packages are already installed.")
    apt(ctx, "install", "-y", *packages)
    return missing


def apt_remove_installed(ctx: StepContext, patterns: Iterable[str], purge: bool = False) -> List[str]:
    """Remove only the packages matching `patterns` that are installed."""
    installed = ctx.state.installed_packages(patterns)
    if not installed:
        ctx.logger.info("None of the listed packages are installed.")
        return []
    ctx.logger.info(f"Removing {len(installed)} package(s): {' '.join(installed)}")
    apt(ctx, "purge" if purge else "remove", "-y", *installed)
    return installed


def add_apt_key(ctx: StepContext, url: str, keyring: Path) -> None:
    """Download an armored signing key and store it dearmored as `keyring`."""
    download = ctx.paths.tmp_dir / f"vast-ai-setup-{keyring.stem}.asc"
    ctx.executor.ensure_dir(keyring.parent)
    ctx.executor.run_or_fail(["curl", "-fsSL", url, "-o", str(download)])
    ctx.executor.run_or_fail(["gpg", "--batch", "--yes", "--dearmor", "-o", str(keyring), str(download)])
    ctx.executor.remove(download)


# ----------------------------------------------------------------
# systemd
# ----------------------------------------------------------------
def systemctl(ctx: StepContext, *args: str) -> None:
    """Run systemctl with `args`, failing the step on a non-zero exit."""
    ctx.executor.run_or_fail(["systemctl", *args])


def enable_service(ctx: StepContext, unit: str, start: bool = True) -> None:
    """
    Enable a systemd unit so it comes up at boot.

    Args:
        ctx: The run context
        unit: Unit name without the .service suffix
        start: Also start the unit now
    """
    if start:
        systemctl(ctx, "enable", "--now", unit)
    else:
        systemctl(ctx, "enable", unit)


def stop_and_disable(ctx: StepContext, unit: str) -> bool:
    """Stop and disable a unit if it exists; a missing unit is not an error."""
    result = ctx.executor.query(["systemctl", "list-unit-files", f"{unit}.service", "--no-legend"])
    if unit not in result.stdout:
        ctx.logger.debug(f"Unit {unit} not present; nothing to stop.")
        return False
    systemctl(ctx, "disable", "--now", unit)
    ctx.logger.info(f"Stopped and disabled {unit}.")
    return True


# ----------------------------------------------------------------
# Users
# ----------------------------------------------------------------
def ensure_group_member(ctx: StepContext, user: Optional[str], group: str) -> bool:
    """
    Add `user` to a supplementary group unless they already belong to it.

    Args:
        ctx: The run context
        user: The invoking user, or None when there is none
        group: The group to join

    Returns:
        bool: True if usermod was run.
    """
    if not user:
        ctx.logger.warning(f"No invoking user found (SUDO_USER unset); not adding anyone to '{group}'.")
        return False
    if group in ctx.state.user_groups(user):
        ctx.logger.info(f"User '{user}' is already in the {group} group.")
        return False
    ctx.executor.run_or_fail(["usermod", "-aG", group, user])
    ctx.logger.info(f"Added {user} to {group} group")
    return True


# ----------------------------------------------------------------
# Power
# ----------------------------------------------------------------
def offer_reboot(ctx: StepContext, interactive: bool, question: str = "Reboot now?") -> bool:
    """Ask before rebooting; never asks in dry-run, with --yes, or without a terminal."""
    if ctx.dry_run or ctx.config.assume_yes or not interactive:
        ctx.logger.info("Please reboot manually when ready: sudo reboot")
        return False
    if not confirm(question, default=False):
        ctx.logger.info("Please reboot manually when ready: sudo reboot")
        return False
    ctx.logger.info("Rebooting system...")
    ctx.executor.run_or_fail(["systemctl", "reboot"])
    return True
