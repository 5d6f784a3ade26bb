"""
Command line entry points.

vasthost-setup    provision a GPU container host
vasthost-convert  strip an Ubuntu Desktop install down to a headless server
vasthost-verify   re-check the provisioned state
"""

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import click

from vasthost import APP_NAME, __version__, preflight
from vasthost.actions import offer_reboot
from vasthost.backup import BackupManager
from vasthost.config import (
    DEFAULT_CONFIG_FILE,
    DESKTOP_BACKUP_DIR,
    DESKTOP_LOG_FILE,
    HOST_BACKUP_DIR,
    HOST_LOG_FILE,
    RunConfig,
    SystemPaths,
    build_run_config,
)
from vasthost.desktop_to_server import build_conversion_steps, display_changes
from vasthost.desktop_to_server import finalize as finalize_conversion
from vasthost.errors import RunAborted, VasthostError
from vasthost.executor import CommandExecutor
from vasthost.host_checks import build_host_checks, display_system_info as display_verify_info
from vasthost.host_setup import build_host_steps, display_next_steps, display_system_info
from vasthost.host_setup import finalize as finalize_host
from vasthost.logs import setup_logger
from vasthost.runner import Runner, print_run_report
from vasthost.steps import Step, StepContext, skippable_names
from vasthost.system_state import SystemState
from vasthost.ui import (
    confirm,
    console,
    create_header,
    print_error,
    print_step,
    print_success,
    print_warning,
)
from vasthost.verifier import Verifier, render_report

logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])
EXIT_INTERRUPTED: int = 130


@dataclass
class CliEnvironment:
    """Where the commands act; replaced in tests to keep them off the real system."""

    paths: SystemPaths = field(default_factory=SystemPaths)
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run
    which: Callable[[str], Optional[str]] = shutil.which
    interactive: Optional[bool] = None
    default_config_file: Optional[str] = DEFAULT_CONFIG_FILE

    @property
    def is_interactive(self) -> bool:
        return sys.stdin.isatty() if self.interactive is None else self.interactive


class StrictCommand(click.Command):
    """A click command whose usage errors (unknown flags included) exit with status 1."""

    def parse_args(self, ctx: click.Context, args: List[str]) -> List[str]:
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            e.exit_code = 1
            raise


def _environment(ctx: click.Context) -> CliEnvironment:
    return ctx.find_object(CliEnvironment) or CliEnvironment()


def _build_context(env: CliEnvironment, config: RunConfig, backup_dir: Path) -> StepContext:
    executor = CommandExecutor.from_config(config, runner=env.runner, which=env.which)
    return StepContext(
        config=config,
        executor=executor,
        state=SystemState(executor),
        backups=BackupManager(backup_dir, executor),
    )


def _guarded(action: Callable[[], int]) -> int:
    """Run a command body, mapping errors onto exit codes."""
    try:
        return action()
    except VasthostError as e:
        logger.error(str(e))
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        print_warning("Operation cancelled by user.")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        print_error(f"Unexpected error: {e}")
        return 1


def _restore_latest(context: StepContext) -> int:
    record = context.backups.latest()
    if record is None:
        print_error(f"No restore point found under {context.backups.backup_dir}")
        return 1

    print_step(f"Restoring from {record.destination_dir}")
    report = context.backups.restore(record)
    console.print(
        f"Restored: [success]{len(report.restored)}[/success]  "
        f"Skipped: [warning]{len(report.skipped)}[/warning]  "
        f"Failed: [error]{len(report.failed)}[/error]"
    )
    if not report.ok:
        print_error("Some files could not be restored; see the log for details.")
        return 1
    print_success("Restore completed. Review the package list and reboot when ready.")
    return 0


def _run_steps(context: StepContext, steps: List[Step], finalize, title: str) -> int:
    runner = Runner(steps, context, finalize)
    try:
        report = runner.execute()
    except RunAborted as e:
        print_run_report(runner.report, title)
        print_error(f"Setup aborted: {e}")
        if e.restore_point is not None:
            print_warning(f"A restore point was created. You can manually restore from: {e.restore_point}")
        return EXIT_INTERRUPTED if e.interrupted else 1

    print_run_report(report, title)
    if not report.ok:
        failed = ", ".join(r.name.value for r in report.failed)
        print_error(f"Completed with failed steps: {failed}")
        return 1
    if context.dry_run:
        print_warning("DRY RUN MODE - No changes were made")
    return 0


# ----------------------------------------------------------------
# Shared Options
# ----------------------------------------------------------------
def run_options(steps: List[Step], log_file: str, backup_dir: str):
    """Flags shared by the provisioning commands."""

    def decorator(f):
        options = [
            click.option("-v", "--verbose", is_flag=True, help="Enable verbose (debug) logging."),
            click.option("-n", "--dry-run", is_flag=True, help="Show what would be done without executing."),
            click.option(
                "--skip",
                "skip_steps",
                multiple=True,
                metavar="STEP",
                type=click.Choice(skippable_names(steps)),
                help="Skip a step (repeatable): " + ", ".join(skippable_names(steps)),
            ),
            click.option(
                "--config",
                "config_file",
                type=click.Path(dir_okay=False, path_type=Path),
                help=f"Use a custom configuration file (default: {DEFAULT_CONFIG_FILE}).",
            ),
            click.option("--restore", is_flag=True, help="Restore files from the newest restore point."),
            click.option("-y", "--yes", "assume_yes", is_flag=True, help="Answer yes to every prompt."),
            click.option("--continue-on-error", is_flag=True, help="Keep going after a failed step."),
            click.option(
                "--log-file",
                type=click.Path(dir_okay=False, path_type=Path),
                default=log_file,
                show_default=True,
            ),
            click.option(
                "--backup-dir",
                type=click.Path(file_okay=False, path_type=Path),
                default=backup_dir,
                show_default=True,
            ),
            click.version_option(__version__, "--version", prog_name=APP_NAME),
        ]
        for option in reversed(options):
            f = option(f)
        return f

    return decorator


# ----------------------------------------------------------------
# Host Setup
# ----------------------------------------------------------------
@click.command(cls=StrictCommand, context_settings=CONTEXT_SETTINGS)
@run_options(build_host_steps(), HOST_LOG_FILE, HOST_BACKUP_DIR)
@click.option("--skip-nvidia", is_flag=True, help="Skip NVIDIA driver installation.")
@click.option("--skip-docker", is_flag=True, help="Skip Docker installation.")
@click.option("--timeout", type=int, help="Per-command timeout in seconds (default: 3600).")
@click.pass_context
def setup(
    ctx: click.Context,
    verbose: bool,
    dry_run: bool,
    skip_steps: List[str],
    config_file: Optional[Path],
    restore: bool,
    assume_yes: bool,
    continue_on_error: bool,
    log_file: Path,
    backup_dir: Path,
    skip_nvidia: bool,
    skip_docker: bool,
    timeout: Optional[int],
) -> None:
    """
    Provision an Ubuntu 22.04 machine as a Vast.ai GPU container host.

    Installs Docker and the NVIDIA driver stack, tunes the kernel and network,
    hardens SSH and installs the Vast.ai CLI. A restore point is created before
    anything is changed.
    """
    env = _environment(ctx)
    console.print(create_header())

    def body() -> int:
        setup_logger(log_file, verbose)
        config = build_run_config(
            config_file,
            default_config_file=env.default_config_file,
            dry_run=dry_run,
            verbose=verbose,
            skip_nvidia=skip_nvidia,
            skip_docker=skip_docker,
            skip_steps=skip_steps,
            assume_yes=assume_yes,
            continue_on_error=continue_on_error,
            timeout=timeout,
            paths=env.paths,
        )
        if config.verbose and not verbose:
            setup_logger(log_file, verbose=True)
        logger.info(f"Starting {APP_NAME} v{__version__}")
        preflight.require_root()
        context = _build_context(env, config, backup_dir)

        if restore:
            return _restore_latest(context)

        code = _run_steps(context, build_host_steps(), finalize_host, "Setup Status Report")
        if code == 0:
            display_system_info(context)
            display_next_steps(context, log_file)
            offer_reboot(context, env.is_interactive)
        else:
            console.print(f"For support, check: {log_file}")
        return code

    sys.exit(_guarded(body))


# ----------------------------------------------------------------
# Desktop to Server Conversion
# ----------------------------------------------------------------
@click.command(cls=StrictCommand, context_settings=CONTEXT_SETTINGS)
@run_options(build_conversion_steps(), DESKTOP_LOG_FILE, DESKTOP_BACKUP_DIR)
@click.pass_context
def convert(
    ctx: click.Context,
    verbose: bool,
    dry_run: bool,
    skip_steps: List[str],
    config_file: Optional[Path],
    restore: bool,
    assume_yes: bool,
    continue_on_error: bool,
    log_file: Path,
    backup_dir: Path,
) -> None:
    """
    Convert Ubuntu 22.04 Desktop to a headless server.

    Removes the desktop environment, switches to systemd-networkd, configures
    a firewall and automatic security updates.
    """
    env = _environment(ctx)
    console.print(create_header("Desktop to Server", "Ubuntu 22.04 Conversion"))

    def body() -> int:
        setup_logger(log_file, verbose)
        config = build_run_config(
            config_file,
            default_config_file=env.default_config_file,
            dry_run=dry_run,
            verbose=verbose,
            skip_steps=skip_steps,
            assume_yes=assume_yes,
            continue_on_error=continue_on_error,
            paths=env.paths,
        )
        if config.verbose and not verbose:
            setup_logger(log_file, verbose=True)
        logger.info("Starting Ubuntu Desktop to Server conversion")
        preflight.require_root()
        context = _build_context(env, config, backup_dir)

        if restore:
            return _restore_latest(context)

        preflight.check_os_version(context)
        if not (config.dry_run or config.assume_yes):
            print_warning("This will remove the desktop environment and GUI components.")
            print_warning("This action cannot be easily undone.")
            if not confirm("Do you want to continue?"):
                print_step("Conversion cancelled by user.")
                return 0

        code = _run_steps(context, build_conversion_steps(), finalize_conversion, "Conversion Status Report")
        if code == 0:
            display_changes(log_file)
            offer_reboot(context, env.is_interactive, "Reboot now to complete the conversion?")
        return code

    sys.exit(_guarded(body))


# ----------------------------------------------------------------
# Verification
# ----------------------------------------------------------------
@click.command(cls=StrictCommand, context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Show each check as it runs.")
@click.version_option(__version__, "--version", prog_name=APP_NAME)
@click.pass_context
def verify(ctx: click.Context, verbose: bool) -> None:
    """Verify that the Vast.ai host setup completed successfully."""
    env = _environment(ctx)
    console.print(create_header("Vast.ai Verify", "Post-Setup Verification"))

    def body() -> int:
        setup_logger(None, verbose)
        config = build_run_config(default_config_file=env.default_config_file, paths=env.paths)
        executor = CommandExecutor.from_config(config, runner=env.runner, which=env.which)
        state = SystemState(executor)

        logger.info("Starting Vast.ai Setup Verification")
        display_verify_info(state, env.paths)
        report = Verifier(build_host_checks(env.paths, config.options), state).run()
        render_report(report, HOST_LOG_FILE)

        if report.failed:
            print_warning("Some issues detected. Please review the report above.")
            return 1
        print_success("All checks passed! Your Vast.ai setup is ready.")
        return 0

    sys.exit(_guarded(body))
