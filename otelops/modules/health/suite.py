"""
Health Check Suite - dependency-ordered verification probes.

Design Principles:
- A check runs only after every dependency has passed
- A check whose dependency did not pass is skipped, never retried
- Independent checks run concurrently, bounded by the parallelism limit
"""

import asyncio
import logging
import random
from graphlib import CycleError, TopologicalSorter
from typing import Dict, List, Optional, Sequence

from ...errors import ConfigError, DependencyUnmet
from ..api.models import CheckStatus, HealthCheck, HealthCheckOutcome, RunReport
from ..executor.context import StepContext
from ..executor.step_executor import run_with_retry

logger = logging.getLogger("otelops.health")


def order_checks(checks: Sequence[HealthCheck]) -> List[HealthCheck]:
    """
    Topologically order checks by their dependencies.

    Raises:
        ConfigError: On duplicate ids, unknown dependencies or cycles
    """
    by_id: Dict[str, HealthCheck] = {}
    for check in checks:
        if check.id in by_id:
            raise ConfigError(f"Duplicate health check id: {check.id}")
        by_id[check.id] = check

    for check in checks:
        unknown = sorted(dep for dep in check.depends_on if dep not in by_id)
        if unknown:
            raise ConfigError(f"Health check '{check.id}' depends on unknown check(s): {', '.join(unknown)}")

    sorter = TopologicalSorter({check.id: set(check.depends_on) for check in checks})
    try:
        return [by_id[check_id] for check_id in sorter.static_order()]
    except CycleError as e:
        raise ConfigError(f"Health check dependency cycle: {' -> '.join(e.args[1])}") from None


class HealthCheckSuite:
    """Runs a set of health checks and reports one outcome per check."""

    def __init__(
        self,
        parallelism: Optional[int] = None,
        default_timeout: float = 30.0,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize health check suite.

        Args:
            parallelism: Max concurrent checks (None or 0 = unbounded)
            default_timeout: Per-attempt timeout for checks that declare none
            rng: Random source for backoff jitter
        """
        self.parallelism = parallelism or None
        self.default_timeout = default_timeout
        self.rng = rng

    async def run(
        self,
        checks: Sequence[HealthCheck],
        ctx: StepContext,
        report: Optional[RunReport] = None,
    ) -> List[HealthCheckOutcome]:
        """
        Run all checks respecting their dependency partial order.

        Args:
            checks: Health check definitions
            ctx: Run context
            report: Optional report; each outcome is recorded as soon as known

        Returns:
            Outcomes in declaration order
        """
        order_checks(checks)
        if report is not None:
            report.declare_checks(check.id for check in checks)

        loop = asyncio.get_running_loop()
        futures: Dict[str, asyncio.Future] = {check.id: loop.create_future() for check in checks}
        semaphore = asyncio.Semaphore(self.parallelism) if self.parallelism else None

        async def run_one(check: HealthCheck) -> HealthCheckOutcome:
            dep_outcomes: List[HealthCheckOutcome] = [
                await asyncio.shield(futures[dep]) for dep in sorted(check.depends_on)
            ]
            blocked_by = [o.check_id for o in dep_outcomes if not o.passed]
            if blocked_by:
                outcome = self._skipped(check, blocked_by)
            elif semaphore is not None:
                async with semaphore:
                    outcome = await self._execute(check, ctx)
            else:
                outcome = await self._execute(check, ctx)

            if report is not None:
                report.record_check(outcome)
            futures[check.id].set_result(outcome)
            return outcome

        logger.info(f"Running {len(checks)} health check(s)")
        outcomes = await asyncio.gather(*(run_one(check) for check in checks))

        passed = sum(1 for o in outcomes if o.passed)
        logger.info(f"Health checks finished: {passed}/{len(outcomes)} passed")
        return list(outcomes)

    @staticmethod
    def _skipped(check: HealthCheck, blocked_by: List[str]) -> HealthCheckOutcome:
        reason = DependencyUnmet(check.id, blocked_by)
        logger.info(str(reason))
        return HealthCheckOutcome(
            check_id=check.id,
            label=check.label,
            required=check.required,
            status=CheckStatus.SKIPPED_DEPENDENCY,
            error=str(reason),
            blocked_by=blocked_by,
        )

    async def _execute(self, check: HealthCheck, ctx: StepContext) -> HealthCheckOutcome:
        summary = await run_with_retry(
            check.id,
            check.probe,
            ctx,
            check.retry,
            check.timeout or self.default_timeout,
            rng=self.rng,
        )

        if summary.succeeded:
            status = CheckStatus.PASSED
        elif summary.interrupted:
            status = CheckStatus.TIMED_OUT if ctx.token.expired else CheckStatus.CANCELLED
        elif summary.timed_out:
            status = CheckStatus.TIMED_OUT
        else:
            status = CheckStatus.FAILED

        if status == CheckStatus.PASSED:
            logger.info(f"Check {check.id} passed")
        elif check.required:
            logger.error(f"Required check {check.id} {status.value}: {summary.error}")
        else:
            logger.warning(f"Informational check {check.id} {status.value}: {summary.error}")

        return HealthCheckOutcome(
            check_id=check.id,
            label=check.label,
            required=check.required,
            status=status,
            duration=summary.duration,
            attempts=summary.attempts,
            detail=None if summary.output is None else str(summary.output),
            error=summary.error,
        )
