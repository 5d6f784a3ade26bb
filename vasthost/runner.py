"""
Sequential step runner.

Steps run strictly in declaration order. The first failure is logged together
with the restore-point location and aborts the run; nothing is rolled back
automatically. Interrupts are honored between steps.
"""

import logging
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Sequence

from rich import box
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from vasthost.errors import ConfigError, RunAborted, StepError
from vasthost.logs import log_dry_run
from vasthost.steps import Step, StepContext, StepResult, StepStatus
from vasthost.ui import NordColors, console, print_section

logger = logging.getLogger(__name__)

Finalizer = Callable[[StepContext], None]

FINALIZE_STAGE = "finalize"

STATUS_STYLES = {
    StepStatus.PENDING: "debug",
    StepStatus.APPLIED: "success",
    StepStatus.NOOP: "info",
    StepStatus.DRY_RUN: "dryrun",
    StepStatus.SKIPPED: "warning",
    StepStatus.FAILED: "error",
}


@dataclass
class RunReport:
    results: List[StepResult] = field(default_factory=list)
    finalized: bool = False

    @property
    def failed(self) -> List[StepResult]:
        return [r for r in self.results if r.status is StepStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed

    def result(self, name) -> StepResult:
        return next(r for r in self.results if r.name == name)


class Runner:
    """Executes an ordered sequence of steps against a StepContext."""

    def __init__(
        self,
        steps: Sequence[Step],
        context: StepContext,
        finalize: Optional[Finalizer] = None,
    ) -> None:
        names = [step.name for step in steps]
        duplicates = sorted({n.value for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate step names: {', '.join(duplicates)}")

        not_skippable = sorted(s.name.value for s in steps if not s.skippable and s.name in context.config.skip)
        if not_skippable:
            raise ConfigError(f"Step(s) cannot be skipped: {', '.join(not_skippable)}")

        self.steps = tuple(steps)
        self.context = context
        self.finalize = finalize
        self._stop_requested = False
        self.report: Optional[RunReport] = None

    # ----------------------------------------------------------------
    # Interrupt Handling
    # ----------------------------------------------------------------
    def request_stop(self) -> None:
        self._stop_requested = True

    def _handle_signal(self, signum: int, frame) -> None:
        if self._stop_requested:
            raise KeyboardInterrupt
        logger.warning(
            f"Received {signal.Signals(signum).name}; stopping after the current step "
            "(send again to abort immediately)."
        )
        self._stop_requested = True

    @contextmanager
    def _signal_guard(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        for sig in previous:
            signal.signal(sig, self._handle_signal)
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    # ----------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------
    def _abort(self, stage: str, cause: Optional[BaseException], interrupted: bool = False) -> RunAborted:
        restore_point = self.context.backups.restore_point
        if interrupted:
            logger.error(f"Run interrupted before completing step '{stage}'.")
        else:
            logger.error(f"Step '{stage}' failed: {cause}")
        if restore_point is not None:
            logger.warning(f"A restore point was created. You can manually restore from: {restore_point}")
        else:
            logger.warning("No restore point was created during this run.")
        return RunAborted(stage, cause, restore_point, interrupted)

    def _run_step(self, step: Step, result: StepResult) -> None:
        ctx = self.context
        if step.precondition is not None and not step.precondition(ctx):
            result.status = StepStatus.NOOP
            result.message = step.noop_message
            logger.info(f"{step.noop_message}; '{step.name.value}' has nothing to do.")
            return

        if ctx.dry_run:
            log_dry_run(logger, f"Would run step '{step.name.value}': {step.description}")

        message = step.apply(ctx)

        if not ctx.dry_run and step.postcondition is not None and not step.postcondition(ctx):
            raise StepError(f"Post-condition for '{step.name.value}' not met after apply")

        result.status = StepStatus.DRY_RUN if ctx.dry_run else StepStatus.APPLIED
        result.message = message or ("Dry run: no changes made" if ctx.dry_run else "Completed")

    def execute(self) -> RunReport:
        """Run every step in order; raises RunAborted on the first failure (fail-fast)."""
        report = RunReport(results=[StepResult(s.name, s.description) for s in self.steps])
        self.report = report
        config = self.context.config

        with self._signal_guard():
            for step, result in zip(self.steps, report.results):
                if self._stop_requested:
                    raise self._abort(step.name.value, None, interrupted=True)

                if config.is_skipped(step.name):
                    result.status = StepStatus.SKIPPED
                    result.message = "Skipped as requested"
                    logger.info(f"Skipping step '{step.name.value}' as requested.")
                    continue

                print_section(step.description)
                logger.info(f"Starting step '{step.name.value}': {step.description}")
                start = time.monotonic()
                try:
                    self._run_step(step, result)
                except KeyboardInterrupt:
                    result.status = StepStatus.FAILED
                    result.message = "Interrupted"
                    raise self._abort(step.name.value, None, interrupted=True) from None
                except Exception as e:
                    result.status = StepStatus.FAILED
                    result.message = str(e)
                    result.elapsed = time.monotonic() - start
                    if config.continue_on_error:
                        self._abort(step.name.value, e)
                        logger.warning("Continuing with the next step (--continue-on-error).")
                        continue
                    raise self._abort(step.name.value, e) from e
                result.elapsed = time.monotonic() - start
                logger.info(f"Step '{step.name.value}' finished ({result.status.value}) in {result.elapsed:.2f}s.")

            if report.ok and self.finalize is not None:
                self._run_finalizer(report)

        return report

    def _run_finalizer(self, report: RunReport) -> None:
        """Enable and start services once every step has succeeded.

        The finalizer is the last step boundary: a pending stop request aborts
        here, and a failure is reported like any failed step.
        """
        if self._stop_requested:
            raise self._abort(FINALIZE_STAGE, None, interrupted=True)

        print_section("Finalizing")
        try:
            self.finalize(self.context)
        except KeyboardInterrupt:
            raise self._abort(FINALIZE_STAGE, None, interrupted=True) from None
        except Exception as e:
            raise self._abort(FINALIZE_STAGE, e) from e
        report.finalized = True


def print_run_report(report: RunReport, title: str = "Setup Status Report") -> None:
    """Print a status table for every step of the run."""
    table = Table(title=title, style="banner", box=box.ROUNDED)
    table.add_column("Step", style="header")
    table.add_column("Status")
    table.add_column("Time", justify="right")
    table.add_column("Message")

    for result in report.results:
        style = STATUS_STYLES[result.status]
        table.add_row(
            result.name.value,
            f"[{style}]{result.status.value.upper()}[/{style}]",
            f"{result.elapsed:.1f}s" if result.elapsed else "",
            escape(result.message),
        )

    console.print(Panel(table, border_style=NordColors.FROST_3, box=box.ROUNDED))
