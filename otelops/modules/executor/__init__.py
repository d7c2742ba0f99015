"""
Executor Module - Black Box Interface

Purpose: Run a single step with precondition, timeout and retry/backoff
Interface: StepExecutor.run(step, ctx) -> StepResult
Hidden: Attempt loop, backoff sleeps, timeout/cancellation classification

The retry loop is shared with the health check suite.
"""

from .context import CancelToken, StepContext
from .step_executor import AttemptSummary, StepExecutor, run_with_retry

__all__ = ["AttemptSummary", "CancelToken", "StepContext", "StepExecutor", "run_with_retry"]
