"""
Error taxonomy shared by every otelops module.

Retryable errors derive from OperationFailed. Everything else is either a
control signal (PreconditionNotMet, RunCancelled) or a configuration problem.
"""

from typing import List, Optional, Sequence


class OtelOpsError(Exception):
    """Base class for all otelops errors."""


class ConfigError(OtelOpsError):
    """Invalid or missing configuration."""


class PreconditionNotMet(OtelOpsError):
    """Raised by a precondition to mark a step as skipped."""


class OperationFailed(OtelOpsError):
    """A transient failure; retried according to the owning retry policy."""


class OperationTimeout(OperationFailed):
    """An operation or wait exceeded its deadline."""


class ResourceError(OperationFailed):
    """A cluster or compose tool reported an error."""

    def __init__(
        self,
        message: str,
        argv: Optional[Sequence[str]] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.argv: List[str] = list(argv or [])
        self.exit_code = exit_code
        self.stderr = stderr


class ApplyError(ResourceError):
    """A manifest could not be applied."""


class NotFound(ResourceError):
    """The requested resource does not exist."""


class CommandNotFound(ResourceError):
    """The tool binary is not installed or not on PATH."""


class ProbeError(OperationFailed):
    """An HTTP probe returned an unexpected status or could not connect."""

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class DependencyUnmet(OtelOpsError):
    """A health check was not run because a prerequisite did not pass."""

    def __init__(self, check_id: str, blocked_by: Sequence[str]):
        super().__init__(
            f"{check_id} skipped: dependencies not passed: {', '.join(blocked_by)}"
        )
        self.check_id = check_id
        self.blocked_by = list(blocked_by)


class FatalStepFailure(OtelOpsError):
    """A fatal step did not succeed; the plan is aborted."""

    def __init__(self, step_id: str, reason: Optional[str] = None):
        super().__init__(f"Fatal step '{step_id}' failed: {reason or 'unknown error'}")
        self.step_id = step_id
        self.reason = reason


class RunCancelled(OtelOpsError):
    """The run was cancelled or its deadline expired."""

    def __init__(self, message: str = "Run cancelled", deadline_exceeded: bool = False):
        super().__init__(message)
        self.deadline_exceeded = deadline_exceeded
