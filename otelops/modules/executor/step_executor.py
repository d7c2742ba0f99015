"""
Step Executor - runs one step with precondition, timeout and retry.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

from ...errors import OperationTimeout, PreconditionNotMet, RunCancelled
from ..api.models import Action, RetryPolicy, Step, StepOutcome, StepResult
from .context import CancelToken, StepContext

logger = logging.getLogger("otelops.executor")


@dataclass
class AttemptSummary:
    """Aggregate of all attempts made for one step or check."""

    succeeded: bool = False
    output: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    duration: float = 0.0
    timed_out: bool = False
    interrupted: bool = False


async def run_with_retry(
    name: str,
    operation: Action,
    ctx: StepContext,
    retry: RetryPolicy,
    timeout: Optional[float],
    rng: Optional[random.Random] = None,
) -> AttemptSummary:
    """
    Run ``operation`` until it succeeds or the retry policy is exhausted.

    Each attempt is bounded by ``timeout`` and by the remaining run time.
    Backoff sleeps wait on the run token so cancellation is immediate.

    Returns:
        AttemptSummary; ``interrupted`` is set when the run token fired
    """
    summary = AttemptSummary()
    token: CancelToken = ctx.token

    for attempt in range(1, retry.max_attempts + 1):
        if token.cancelled:
            summary.interrupted = True
            summary.error = summary.error or token.reason
            break

        attempt_timeout = token.bound(timeout)
        summary.attempts = attempt
        started = time.monotonic()
        try:
            output = await token.guard(operation(ctx), attempt_timeout)
        except asyncio.TimeoutError:
            summary.timed_out = True
            summary.error = f"Timed out after {attempt_timeout:.1f}s"
        except OperationTimeout as e:
            summary.timed_out = True
            summary.error = str(e)
        except RunCancelled as e:
            summary.duration += time.monotonic() - started
            summary.interrupted = True
            summary.error = str(e)
            break
        except Exception as e:
            summary.timed_out = False
            summary.error = str(e) or e.__class__.__name__
        else:
            summary.duration += time.monotonic() - started
            summary.succeeded = True
            summary.output = output
            summary.error = None
            summary.timed_out = False
            return summary

        summary.duration += time.monotonic() - started
        logger.warning(
            f"{name}: attempt {attempt}/{retry.max_attempts} failed: {summary.error}"
        )

        if token.cancelled:
            summary.interrupted = True
            break

        if attempt < retry.max_attempts:
            try:
                await token.sleep(retry.delay_for(attempt, rng))
            except RunCancelled:
                summary.interrupted = True
                break

    return summary


class StepExecutor:
    """Runs single steps and produces immutable StepResults."""

    def __init__(self, default_timeout: float = 120.0, rng: Optional[random.Random] = None):
        """
        Initialize step executor.

        Args:
            default_timeout: Per-attempt timeout for steps that declare none
            rng: Random source for backoff jitter (seeded in tests)
        """
        self.default_timeout = default_timeout
        self.rng = rng

    def _result(self, step: Step, outcome: StepOutcome, **fields) -> StepResult:
        return StepResult(step_id=step.id, label=step.label, severity=step.severity, outcome=outcome, **fields)

    @staticmethod
    def _interrupted_outcome(token: CancelToken) -> StepOutcome:
        return StepOutcome.TIMED_OUT if token.expired else StepOutcome.CANCELLED

    async def run(self, step: Step, ctx: StepContext) -> StepResult:
        """
        Execute a step.

        Args:
            step: Step definition
            ctx: Run context (client, settings, token)

        Returns:
            StepResult with outcome succeeded, failed, skipped, timed_out or cancelled
        """
        if ctx.token.cancelled:
            return self._result(step, self._interrupted_outcome(ctx.token), error=ctx.token.reason)

        if step.precondition is not None:
            try:
                should_run = await step.precondition(ctx)
            except PreconditionNotMet as e:
                logger.info(f"Skipping {step.id}: {e}")
                return self._result(step, StepOutcome.SKIPPED, output=str(e))
            except RunCancelled as e:
                return self._result(step, self._interrupted_outcome(ctx.token), error=str(e))
            except Exception as e:
                logger.error(f"Precondition of {step.id} raised: {e}")
                return self._result(step, StepOutcome.FAILED, error=f"Precondition error: {e}")
            if not should_run:
                logger.info(f"Skipping {step.id}: precondition not met")
                return self._result(step, StepOutcome.SKIPPED, output="precondition not met")

        logger.info(f"Running step {step.id}: {step.label}")
        summary = await run_with_retry(
            step.id,
            step.action,
            ctx,
            step.retry,
            step.timeout or self.default_timeout,
            rng=self.rng,
        )

        if summary.succeeded:
            outcome = StepOutcome.SUCCEEDED
            logger.info(f"Step {step.id} succeeded after {summary.attempts} attempt(s)")
        elif summary.interrupted:
            outcome = self._interrupted_outcome(ctx.token)
        elif summary.timed_out:
            outcome = StepOutcome.TIMED_OUT
        else:
            outcome = StepOutcome.FAILED

        if outcome != StepOutcome.SUCCEEDED:
            logger.error(f"Step {step.id} {outcome.value}: {summary.error}")

        return self._result(
            step,
            outcome,
            duration=summary.duration,
            attempts=summary.attempts,
            output=None if summary.output is None else str(summary.output),
            error=summary.error,
        )
