"""
Post-provisioning verification.

The verifier re-probes live system state independently of the runner. A check
never raises: mismatches and probes that cannot execute are recorded as
results and aggregated into a Report.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple, Union

from rich import box
from rich.markup import escape
from rich.table import Table

from vasthost.errors import ExternalCommandError
from vasthost.system_state import SystemState
from vasthost.ui import NordColors, console, print_section

logger = logging.getLogger(__name__)

OK_THRESHOLD: float = 90.0
DEGRADED_THRESHOLD: float = 75.0


class Measurement(NamedTuple):
    """A probe outcome that is not a plain string comparison."""

    ok: bool
    actual: str = ""
    expected: str = ""


ProbeOutcome = Union[bool, Tuple[str, str], Measurement]
Probe = Callable[[SystemState], ProbeOutcome]


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class Verdict(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"

    @classmethod
    def for_rate(cls, rate: float) -> "Verdict":
        if rate >= OK_THRESHOLD:
            return cls.OK
        if rate >= DEGRADED_THRESHOLD:
            return cls.DEGRADED
        return cls.FAILED


@dataclass(frozen=True)
class CheckResult:
    description: str
    status: CheckStatus
    expected: str = ""
    actual: str = ""
    group: str = ""


@dataclass(frozen=True)
class Check:
    """
    A single verification probe.

    The probe returns a bool, an (actual, expected) pair compared as literal
    strings, or a Measurement. A failed `warn_only` check is a warning, but a
    probe that cannot run at all is always a failure.
    """

    description: str
    probe: Probe
    warn_only: bool = False

    def evaluate(self, state: SystemState, group: str = "") -> CheckResult:
        try:
            outcome = self.probe(state)
        except (ExternalCommandError, OSError, ValueError) as e:
            logger.debug(f"Check '{self.description}' could not run: {e}")
            return CheckResult(self.description, CheckStatus.FAIL, actual=f"error: {e}", group=group)

        if isinstance(outcome, Measurement):
            ok, actual, expected = outcome
        elif isinstance(outcome, tuple):
            actual, expected = (str(v).strip() for v in outcome)
            ok = actual == expected
        else:
            ok, actual, expected = bool(outcome), "", ""

        if ok:
            status = CheckStatus.PASS
        elif self.warn_only:
            status = CheckStatus.WARN
        else:
            status = CheckStatus.FAIL
        return CheckResult(self.description, status, expected, actual, group)


@dataclass(frozen=True)
class CheckGroup:
    """Checks reported under one heading; `applies` gates the whole group."""

    title: str
    checks: Tuple[Check, ...]
    applies: Optional[Callable[[SystemState], bool]] = None
    skip_message: str = "Not applicable"


@dataclass
class Report:
    results: List[CheckResult] = field(default_factory=list)
    skipped_groups: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    def _count(self, status: CheckStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def passed(self) -> int:
        return self._count(CheckStatus.PASS)

    @property
    def failed(self) -> int:
        return self._count(CheckStatus.FAIL)

    @property
    def warn_count(self) -> int:
        return self._count(CheckStatus.WARN)

    @property
    def success_rate(self) -> float:
        """Percentage of passed checks; an empty report counts as fully successful."""
        if not self.results:
            return 100.0
        return self.passed / self.total * 100

    @property
    def success_percent(self) -> int:
        """Whole-number success rate, rounded down for display."""
        if not self.results:
            return 100
        return self.passed * 100 // self.total

    @property
    def verdict(self) -> Verdict:
        return Verdict.for_rate(self.success_rate)


class Verifier:
    """Runs check groups against live system state."""

    def __init__(self, groups: Sequence[CheckGroup], state: SystemState) -> None:
        self.groups = list(groups)
        self.state = state

    def _applies(self, group: CheckGroup) -> bool:
        if group.applies is None:
            return True
        try:
            return group.applies(self.state)
        except (ExternalCommandError, OSError, ValueError) as e:
            logger.debug(f"Applicability probe for '{group.title}' failed: {e}")
            return True

    def run(self) -> Report:
        report = Report()
        for group in self.groups:
            if not self._applies(group):
                logger.info(f"{group.skip_message}, skipping {group.title} checks")
                report.skipped_groups.append((group.title, group.skip_message))
                continue
            logger.debug(f"Running {group.title} checks")
            for check in group.checks:
                result = check.evaluate(self.state, group.title)
                logger.debug(f"[{result.status.value.upper()}] {result.description}")
                report.results.append(result)
        return report


# ----------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------
STATUS_STYLES = {
    CheckStatus.PASS: "success",
    CheckStatus.FAIL: "error",
    CheckStatus.WARN: "warning",
}

VERDICT_MESSAGES = {
    Verdict.OK: ("success", "✓ Setup verification successful"),
    Verdict.DEGRADED: ("warning", "⚠ Setup verification mostly successful"),
    Verdict.FAILED: ("error", "✗ Setup verification failed"),
}


def render_report(report: Report, log_file: Optional[str] = None) -> None:
    """Print the results table, totals and the verdict line."""
    table = Table(title="Verification Results", style="banner", box=box.ROUNDED)
    table.add_column("Group", style=f"bold {NordColors.FROST_3}")
    table.add_column("Check", style="header")
    table.add_column("Status")
    table.add_column("Expected")
    table.add_column("Actual")

    for result in report.results:
        style = STATUS_STYLES[result.status]
        table.add_row(
            escape(result.group),
            escape(result.description),
            f"[{style}]{result.status.value.upper()}[/{style}]",
            escape(result.expected),
            escape(result.actual),
        )
    console.print(table)

    for title, reason in report.skipped_groups:
        console.print(f"[debug]{title}: skipped ({reason})[/debug]")

    print_section("Verification Summary")
    console.print(f"Total checks performed: {report.total}")
    console.print(f"Passed: [success]{report.passed}[/success]")
    console.print(f"Failed: [error]{report.failed}[/error]")
    console.print(f"Warnings: [warning]{report.warn_count}[/warning]")

    style, message = VERDICT_MESSAGES[report.verdict]
    console.print(f"[{style}]{message} ({report.success_percent}%)[/{style}]")

    if report.failed:
        console.print("[error]Please address the failed checks above.[/error]")
        if log_file:
            console.print(f"[warning]For support, check the logs at: {log_file}[/warning]")
