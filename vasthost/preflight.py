"""Preflight checks run before any mutation."""

import logging
import os
from typing import Callable

from vasthost.errors import ExternalCommandError, PreconditionError
from vasthost.steps import StepContext
from vasthost.ui import confirm

logger = logging.getLogger(__name__)

EXPECTED_UBUNTU_VERSION: str = "22.04"
GIB: int = 1024 ** 3

Prompt = Callable[..., bool]


def require_root() -> None:
    """
    Ensure the process runs as root.

    Raises:
        PreconditionError: If not running as root
    """
    if os.geteuid() != 0:
        raise PreconditionError("This tool must run with root privileges (try sudo).")
    logger.debug("Root privileges confirmed.")


def check_os_version(
    ctx: StepContext,
    expected: str = EXPECTED_UBUNTU_VERSION,
    prompt: Prompt = confirm,
) -> str:
    """
    Check the Ubuntu release. A different release is allowed only after an
    explicit confirmation (answered automatically by --yes).
    """
    if not ctx.state.command_exists("lsb_release"):
        raise PreconditionError("lsb_release not found. This tool requires Ubuntu.")
    try:
        version = ctx.state.ubuntu_version()
    except ExternalCommandError as e:
        raise PreconditionError(f"Could not determine the Ubuntu version: {e}") from e

    if version == expected:
        logger.info(f"Detected Ubuntu {version}.")
        return version

    logger.warning(f"This tool is designed for Ubuntu {expected}. Detected version: {version}")
    if not prompt("Continue anyway?", assume_yes=ctx.config.assume_yes):
        raise PreconditionError(f"Unsupported Ubuntu version {version} (expected {expected}).")
    logger.warning(f"Continuing on Ubuntu {version} at the operator's request.")
    return version


def check_disk_space(ctx: StepContext) -> int:
    """Require `min_free_disk_gb` free on the root filesystem; returns free bytes."""
    required = ctx.options.min_free_disk_gb * GIB
    free = ctx.state.free_disk_bytes(ctx.paths.root_fs)
    if free < required:
        raise PreconditionError(
            f"Insufficient disk space: {free / GIB:.1f} GB free, "
            f"at least {ctx.options.min_free_disk_gb} GB required."
        )
    logger.info(f"Disk space OK: {free / GIB:.1f} GB free.")
    return free


def check_connectivity(ctx: StepContext) -> None:
    host = ctx.options.connectivity_host
    logger.info("Checking network connectivity...")
    try:
        reachable = ctx.state.can_reach(host)
    except ExternalCommandError as e:
        raise PreconditionError(f"Cannot check connectivity: {e}") from e
    if not reachable:
        raise PreconditionError(f"No internet connectivity (cannot reach {host}).")
    logger.info(f"Network connectivity confirmed via {host}.")
