"""Orchestrator - runs plans group by group with rollback on fatal failure."""

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from ...errors import FatalStepFailure
from ..api.models import (
    UNSUCCESSFUL_STEP_OUTCOMES,
    HealthCheck,
    OrchestratorState,
    Plan,
    RunReport,
    Step,
    StepOutcome,
    StepResult,
)
from ..executor.context import CancelToken, StepContext
from ..executor.step_executor import StepExecutor, run_with_retry
from ..health.suite import HealthCheckSuite

logger = logging.getLogger("otelops.orchestrator")

RollbackHook = Callable[[Sequence[Step], StepContext], Awaitable[List[StepResult]]]


async def reverse_undo(applied: Sequence[Step], ctx: StepContext) -> List[StepResult]:
    """
    Default rollback hook: run each applied step's ``undo`` in reverse order.

    Failures are recorded in the returned results and never raised.
    """
    results: List[StepResult] = []
    for step in reversed(applied):
        if step.undo is None:
            continue
        rollback_id = f"rollback:{step.id}"
        logger.info(f"Rolling back {step.id}")
        summary = await run_with_retry(rollback_id, step.undo, ctx, step.retry, step.timeout)
        if summary.succeeded:
            outcome = StepOutcome.SUCCEEDED
        elif summary.timed_out:
            outcome = StepOutcome.TIMED_OUT
        elif summary.interrupted:
            outcome = StepOutcome.CANCELLED
        else:
            outcome = StepOutcome.FAILED
            logger.error(f"Rollback of {step.id} failed: {summary.error}")
        results.append(
            StepResult(
                step_id=rollback_id,
                label=f"Undo: {step.label}",
                outcome=outcome,
                duration=summary.duration,
                attempts=summary.attempts,
                output=None if summary.output is None else str(summary.output),
                error=summary.error,
            )
        )
    return results


class Orchestrator:
    """
    Plan runner with a Pending -> Running -> {Completed, Aborted} state machine.

    One instance owns one run: its plan and its in-progress report.
    """

    def __init__(
        self,
        ctx: StepContext,
        executor: Optional[StepExecutor] = None,
        suite: Optional[HealthCheckSuite] = None,
        parallelism: Optional[int] = None,
        rollback: Optional[RollbackHook] = reverse_undo,
        command: str = "deploy",
        lenient: bool = False,
        rollback_grace: Optional[float] = 60.0,
    ):
        """
        Initialize orchestrator.

        Args:
            ctx: Run context shared with every step and check
            executor: StepExecutor (a default one is built when omitted)
            suite: HealthCheckSuite run once after all groups complete
            parallelism: Max concurrent steps per group (None or 0 = unbounded)
            rollback: Hook invoked with already-succeeded steps on fatal failure
            command: Command name recorded on the report
            lenient: Informational check failures do not degrade the run
            rollback_grace: Seconds the rollback may take once the run deadline has passed
        """
        self.ctx = ctx
        self.executor = executor or StepExecutor()
        self.suite = suite or HealthCheckSuite(parallelism=parallelism)
        self.parallelism = parallelism or None
        self.rollback = rollback
        self.command = command
        self.lenient = lenient
        self.rollback_grace = rollback_grace
        self.state = OrchestratorState.PENDING
        self.report: Optional[RunReport] = None

    async def execute(self, plan: Plan, checks: Sequence[HealthCheck] = ()) -> RunReport:
        """
        Run a plan, then the health check suite.

        Args:
            plan: Plan to execute
            checks: Health checks to run after all groups complete

        Returns:
            Finalized RunReport
        """
        if self.state != OrchestratorState.PENDING:
            raise RuntimeError("Orchestrator instances run exactly one plan")

        report = RunReport(
            command=self.command,
            plan_name=plan.name,
            step_ids=plan.step_ids,
            check_ids=[check.id for check in checks],
            lenient=self.lenient,
        )
        self.report = report
        self._transition(OrchestratorState.RUNNING)

        groups = plan.groups()
        applied: List[Step] = []
        semaphore = asyncio.Semaphore(self.parallelism) if self.parallelism else None

        logger.info(f"Executing plan '{plan.name}': {len(plan.steps)} step(s) in {len(groups)} group(s)")

        for index, group in enumerate(groups):
            results = await asyncio.gather(*(self._run_step(step, semaphore) for step in group))
            for step, result in zip(group, results):
                report.record_step(result)
                if result.outcome == StepOutcome.SUCCEEDED:
                    applied.append(step)

            fatal = [
                (step, result)
                for step, result in zip(group, results)
                if step.is_fatal and result.outcome in UNSUCCESSFUL_STEP_OUTCOMES
            ]
            if fatal or self.ctx.token.cancelled:
                remaining = [step for later in groups[index + 1:] for step in later]
                await self._abort(report, fatal, remaining, applied)
                return report.finalize(self.state)

        self._transition(OrchestratorState.COMPLETED)
        await self.suite.run(checks, self.ctx, report=report)
        if self.ctx.token.cancelled:
            report.cancelled = True
        return report.finalize(self.state)

    async def _run_step(self, step: Step, semaphore: Optional[asyncio.Semaphore]) -> StepResult:
        if semaphore is None:
            return await self.executor.run(step, self.ctx)
        async with semaphore:
            return await self.executor.run(step, self.ctx)

    async def _abort(
        self,
        report: RunReport,
        fatal: List[tuple],
        remaining: List[Step],
        applied: List[Step],
    ) -> None:
        self._transition(OrchestratorState.ABORTED)

        token = self.ctx.token
        # an expired deadline still rolls back; an explicit cancel does not
        cancelled = token.cancelled and not token.expired
        if cancelled:
            report.cancelled = True
            report.abort_reason = token.reason or "Run cancelled"
            logger.error(f"Plan aborted: {report.abort_reason}")
        elif not fatal:
            report.abort_reason = token.reason
            logger.error(f"Plan aborted: {report.abort_reason}")
        else:
            failed_step, result = fatal[0]
            failure = FatalStepFailure(failed_step.id, result.error)
            report.abort_reason = str(failure)
            logger.error(str(failure))

        for step in remaining:
            report.record_step(
                StepResult(
                    step_id=step.id,
                    label=step.label,
                    severity=step.severity,
                    outcome=StepOutcome.SKIPPED,
                    error=f"Not run: {report.abort_reason}",
                )
            )

        if not cancelled and self.rollback is not None:
            # a failed step may have applied part of its resources
            await self._rollback(report, applied + [step for step, _ in fatal])

    async def _rollback(self, report: RunReport, applied: List[Step]) -> None:
        logger.warning(f"Rolling back {len(applied)} applied step(s)")
        ctx = self.ctx
        if ctx.token.expired:
            logger.warning(f"Run deadline exceeded, allowing rollback {self.rollback_grace}s")
            ctx = dataclasses.replace(ctx, token=CancelToken(self.rollback_grace))
        try:
            results = await self.rollback(list(applied), ctx)
        except Exception as e:
            logger.error(f"Rollback hook raised: {e}")
            results = [
                StepResult(
                    step_id="rollback",
                    label="Rollback",
                    outcome=StepOutcome.FAILED,
                    error=str(e) or e.__class__.__name__,
                )
            ]
        for result in results:
            report.record_rollback(result)

    def _transition(self, state: OrchestratorState) -> None:
        logger.debug(f"Orchestrator {self.state.value} -> {state.value}")
        self.state = state
