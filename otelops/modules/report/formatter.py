"""
Report Formatter - renders a RunReport for humans and machines.
"""

import io
import json
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..api.models import (
    CheckStatus,
    HealthCheckOutcome,
    RunReport,
    RunStatus,
    StepOutcome,
    StepResult,
)

STEP_SYMBOLS = {
    StepOutcome.SUCCEEDED: "✅",
    StepOutcome.FAILED: "❌",
    StepOutcome.SKIPPED: "⏭️",
    StepOutcome.TIMED_OUT: "⏱️",
    StepOutcome.CANCELLED: "⛔",
}

CHECK_SYMBOLS = {
    CheckStatus.PASSED: "✅",
    CheckStatus.FAILED: "❌",
    CheckStatus.TIMED_OUT: "⏱️",
    CheckStatus.SKIPPED_DEPENDENCY: "⏭️",
    CheckStatus.CANCELLED: "⛔",
}

STATUS_STYLES = {
    RunStatus.HEALTHY: "bold green",
    RunStatus.DEGRADED: "bold yellow",
    RunStatus.FATAL: "bold red",
}

ERROR_EXCERPT_CHARS = 120


def excerpt(text: Optional[str], limit: int = ERROR_EXCERPT_CHARS) -> str:
    """First line of ``text``, truncated to ``limit`` characters."""
    if not text:
        return ""
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    if len(first_line) > limit:
        return first_line[: limit - 3] + "..."
    return first_line


class ReportFormatter:
    """Renders run reports as rich text or JSON."""

    def __init__(self, settings=None, width: int = 110):
        """
        Args:
            settings: Optional Settings used for next-step and troubleshooting hints
            width: Console width used when rendering to text
        """
        self.settings = settings
        self.width = width

    @staticmethod
    def exit_code(report: RunReport) -> int:
        return report.exit_code

    def render(self, report: RunReport) -> str:
        """Render the report as plain text."""
        buffer = io.StringIO()
        console = Console(file=buffer, width=self.width, no_color=True, highlight=False, emoji=False)
        self.print(report, console)
        return buffer.getvalue()

    def render_json(self, report: RunReport) -> str:
        """Render the report as JSON."""
        return json.dumps(report.to_dict(), indent=2)

    def print(self, report: RunReport, console: Console) -> None:
        """Print the report to a rich console."""
        console.print(Panel(Text(f"otelops {report.command} - {report.plan_name}", justify="center"), style="blue"))

        if report.step_results:
            console.print(self._step_table("Steps", report.step_results))
        if report.rollback_results:
            console.print(self._step_table("Rollback", report.rollback_results))
        if report.check_outcomes:
            console.print(self._check_table(report.check_outcomes))

        if report.abort_reason:
            console.print(f"[red]Aborted:[/red] {report.abort_reason}")

        counts = report.counts
        status = report.status
        console.print()
        console.print("📊 Results:")
        console.print(f"   Total: {counts.total}")
        console.print(f"   Passed: [green]{counts.passed}[/green]")
        console.print(f"   Failed: [red]{counts.failed}[/red]")
        console.print(f"   Skipped: {counts.skipped}")
        console.print(f"   Success Rate: {counts.success_rate:.0f}%")
        console.print(f"   Duration: {report.duration:.1f}s")
        console.print(
            f"\nStatus: [{STATUS_STYLES[status]}]{status.value.upper()}[/{STATUS_STYLES[status]}]"
            f" (exit code {report.exit_code})"
        )

        hints = self._hints(report)
        if hints:
            console.print()
            for line in hints:
                console.print(line)

    def _step_table(self, title: str, results: List[StepResult]) -> Table:
        table = Table(title=title, title_justify="left", expand=False)
        table.add_column("", no_wrap=True)
        table.add_column("Step", no_wrap=True)
        table.add_column("Outcome")
        table.add_column("Attempts", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error")
        for result in results:
            table.add_row(
                STEP_SYMBOLS[result.outcome],
                result.label,
                result.outcome.value,
                str(result.attempts),
                f"{result.duration:.1f}s",
                excerpt(result.error) if not result.ok else "",
            )
        return table

    def _check_table(self, outcomes: List[HealthCheckOutcome]) -> Table:
        table = Table(title="Health Checks", title_justify="left", expand=False)
        table.add_column("", no_wrap=True)
        table.add_column("Check", no_wrap=True)
        table.add_column("Status")
        table.add_column("Kind")
        table.add_column("Duration", justify="right")
        table.add_column("Detail")
        for outcome in outcomes:
            symbol = CHECK_SYMBOLS[outcome.status]
            if outcome.status == CheckStatus.FAILED and not outcome.required:
                symbol = "⚠️"
            detail = excerpt(outcome.error) if not outcome.passed else excerpt(outcome.detail)
            table.add_row(
                symbol,
                outcome.label,
                outcome.status.value,
                "required" if outcome.required else "info",
                f"{outcome.duration:.1f}s",
                detail,
            )
        return table

    def _hints(self, report: RunReport) -> List[str]:
        if self.settings is None:
            return []
        namespace = self.settings.cluster.namespace
        workload = self.settings.workload
        if report.status == RunStatus.HEALTHY and report.command == "deploy":
            return [
                "🎯 Next Steps:",
                f"   1. Access the SigNoz dashboard: {self.settings.backend.frontend_url}",
                f"   2. Port-forward the workload: kubectl port-forward -n {namespace} "
                f"svc/{workload.name} 8080:{workload.service_port}",
                "   3. Generate test data: curl 'http://localhost:8080/rolldice?player=demo'",
                f"   4. Look for the '{workload.name}' service traces and metrics in SigNoz",
            ]
        if report.status != RunStatus.HEALTHY and report.command in ("deploy", "validate"):
            return [
                "🔧 Troubleshooting Tips:",
                f"   1. Check pod logs: kubectl logs -n {namespace} <pod-name>",
                f"   2. Verify services: kubectl get svc -n {namespace}",
                f"   3. Check events: kubectl get events -n {namespace} --sort-by=.metadata.creationTimestamp",
                f"   4. Restart failed components: kubectl rollout restart deployment/<deployment-name> -n {namespace}",
            ]
        return []
