"""
otelops shared data models.

These models define the structure of all data passed between
components: step and check definitions, their results, and the
append-only run report.
"""

import json
import random
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Tuple,
)

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from ..executor.context import StepContext

# Enums


class Severity(str, Enum):
    """Whether a step failure aborts the plan."""

    FATAL = "fatal"
    SOFT = "soft"


class StepOutcome(str, Enum):
    """Outcome of a single step execution."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class CheckStatus(str, Enum):
    """Outcome of a single health check."""

    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED_DEPENDENCY = "skipped-due-to-dependency"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Overall status of a run."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FATAL = "fatal"


class OrchestratorState(str, Enum):
    """Plan runner state machine."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


EXIT_CODES = {
    RunStatus.HEALTHY: 0,
    RunStatus.DEGRADED: 1,
    RunStatus.FATAL: 2,
}

UNSUCCESSFUL_STEP_OUTCOMES = frozenset(
    {StepOutcome.FAILED, StepOutcome.TIMED_OUT, StepOutcome.CANCELLED}
)
FAILED_CHECK_STATUSES = frozenset(
    {CheckStatus.FAILED, CheckStatus.TIMED_OUT, CheckStatus.CANCELLED}
)

# Definitions (hold callables, so plain frozen dataclasses)

Action = Callable[["StepContext"], Awaitable[Optional[str]]]
Precondition = Callable[["StepContext"], Awaitable[bool]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    The delay after attempt n (1-based) is
    min(max_delay, base_delay * multiplier ** (n - 1)) plus a random
    fraction (up to ``jitter``) of that delay.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait after a failed ``attempt`` before the next one."""
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if self.jitter and delay:
            delay += (rng or random).uniform(0, self.jitter * delay)
        return delay

    @classmethod
    def once(cls) -> "RetryPolicy":
        """Single attempt, no backoff."""
        return cls(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=0.0)


@dataclass(frozen=True)
class Step:
    """A single infrastructure-mutating operation."""

    id: str
    label: str
    action: Action
    severity: Severity = Severity.SOFT
    precondition: Optional[Precondition] = None
    timeout: Optional[float] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    group: Optional[str] = None
    undo: Optional[Action] = None

    @property
    def is_fatal(self) -> bool:
        return self.severity == Severity.FATAL


@dataclass(frozen=True)
class Plan:
    """
    Ordered sequence of steps.

    Consecutive steps sharing a ``group`` marker run concurrently; every
    other step forms a group of its own. Groups run strictly in order.
    """

    name: str
    steps: Tuple[Step, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id in plan '{self.name}': {step.id}")
            seen.add(step.id)

    def groups(self) -> List[List[Step]]:
        """Split the plan into its ordered parallel groups."""
        groups: List[List[Step]] = []
        current_marker: Optional[str] = None
        for step in self.steps:
            if step.group is not None and groups and step.group == current_marker:
                groups[-1].append(step)
            else:
                groups.append([step])
            current_marker = step.group
        return groups

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]


@dataclass(frozen=True)
class HealthCheck:
    """Read-only verification probe."""

    id: str
    label: str
    probe: Action
    depends_on: FrozenSet[str] = frozenset()
    required: bool = True
    timeout: Optional[float] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))


# Resource layer models


class Resource(BaseModel):
    """A Kubernetes object as returned by ``kubectl get -o json``."""

    kind: str
    name: str
    namespace: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def status(self) -> Dict[str, Any]:
        return self.raw.get("status", {}) or {}

    @property
    def spec(self) -> Dict[str, Any]:
        return self.raw.get("spec", {}) or {}


class AppliedResource(BaseModel):
    """A single object reported by ``kubectl apply``."""

    kind: str
    name: str
    namespace: Optional[str] = None
    action: str = Field(default="configured", description="created, configured or unchanged")


class ExecResult(BaseModel):
    """Result of a command run inside a container or on the control host."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        output = self.stdout
        if self.stderr:
            output += "\n" + self.stderr
        return output.strip()


class ProbeResult(BaseModel):
    """Result of an HTTP probe."""

    url: str
    status_code: int
    body: str = ""
    elapsed_ms: int = 0

    def json_body(self) -> Any:
        return json.loads(self.body)


# Results


class StepResult(BaseModel):
    """Immutable record of one step execution."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    label: str
    severity: Severity = Severity.SOFT
    outcome: StepOutcome
    duration: float = 0.0
    attempts: int = 0
    output: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == StepOutcome.SUCCEEDED


class HealthCheckOutcome(BaseModel):
    """Immutable record of one health check."""

    model_config = ConfigDict(frozen=True)

    check_id: str
    label: str
    required: bool = True
    status: CheckStatus
    duration: float = 0.0
    attempts: int = 0
    detail: Optional[str] = None
    error: Optional[str] = None
    blocked_by: List[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == CheckStatus.PASSED


class RunCounts(BaseModel):
    """Aggregate counts over steps and checks."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def success_rate(self) -> float:
        executed = self.total - self.skipped
        if executed <= 0:
            return 0.0
        return self.passed * 100.0 / executed


class ReportFinalized(RuntimeError):
    """Raised when writing to a finalized report."""


class RunReport:
    """
    Append-only record of all outcomes for one run.

    Every step and check id owns a single slot that is written exactly once.
    Results are listed in declaration order, independent of the order in
    which concurrent tasks complete.
    """

    def __init__(
        self,
        command: str,
        plan_name: str,
        step_ids: Iterable[str] = (),
        check_ids: Iterable[str] = (),
        lenient: bool = False,
    ):
        self.command = command
        self.plan_name = plan_name
        self.lenient = lenient
        self.state = OrchestratorState.PENDING
        self.cancelled = False
        self.abort_reason: Optional[str] = None
        self.started_at = datetime.now(UTC)
        self.finished_at: Optional[datetime] = None
        self._step_order: List[str] = list(step_ids)
        self._check_order: List[str] = list(check_ids)
        self._steps: Dict[str, StepResult] = {}
        self._checks: Dict[str, HealthCheckOutcome] = {}
        self._rollback: List[StepResult] = []
        self._finalized = False

    # Writes

    def _ensure_open(self) -> None:
        if self._finalized:
            raise ReportFinalized("Run report is finalized")

    def declare_checks(self, check_ids: Iterable[str]) -> None:
        """Reserve slots for checks in declaration order."""
        self._ensure_open()
        for check_id in check_ids:
            if check_id not in self._check_order:
                self._check_order.append(check_id)

    def record_step(self, result: StepResult) -> None:
        self._ensure_open()
        if result.step_id in self._steps:
            raise ValueError(f"Step '{result.step_id}' already recorded")
        if result.step_id not in self._step_order:
            self._step_order.append(result.step_id)
        self._steps[result.step_id] = result

    def record_check(self, outcome: HealthCheckOutcome) -> None:
        self._ensure_open()
        if outcome.check_id in self._checks:
            raise ValueError(f"Check '{outcome.check_id}' already recorded")
        if outcome.check_id not in self._check_order:
            self._check_order.append(outcome.check_id)
        self._checks[outcome.check_id] = outcome

    def record_rollback(self, result: StepResult) -> None:
        self._ensure_open()
        if any(r.step_id == result.step_id for r in self._rollback):
            raise ValueError(f"Rollback step '{result.step_id}' already recorded")
        self._rollback.append(result)

    def finalize(self, state: OrchestratorState) -> "RunReport":
        self._ensure_open()
        self.state = state
        self.finished_at = datetime.now(UTC)
        self._finalized = True
        return self

    # Reads

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def step_results(self) -> List[StepResult]:
        return [self._steps[i] for i in self._step_order if i in self._steps]

    @property
    def check_outcomes(self) -> List[HealthCheckOutcome]:
        return [self._checks[i] for i in self._check_order if i in self._checks]

    @property
    def rollback_results(self) -> List[StepResult]:
        return list(self._rollback)

    def step(self, step_id: str) -> StepResult:
        return self._steps[step_id]

    def check(self, check_id: str) -> HealthCheckOutcome:
        return self._checks[check_id]

    @property
    def status(self) -> RunStatus:
        steps = self.step_results
        if self.cancelled or self.state == OrchestratorState.ABORTED:
            return RunStatus.FATAL
        if any(s.severity == Severity.FATAL and s.outcome in UNSUCCESSFUL_STEP_OUTCOMES for s in steps):
            return RunStatus.FATAL
        if any(s.outcome in UNSUCCESSFUL_STEP_OUTCOMES for s in steps):
            return RunStatus.DEGRADED
        for outcome in self.check_outcomes:
            if outcome.required and not outcome.passed:
                return RunStatus.DEGRADED
            if not outcome.required and not self.lenient and outcome.status in FAILED_CHECK_STATUSES:
                return RunStatus.DEGRADED
        return RunStatus.HEALTHY

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    @property
    def counts(self) -> RunCounts:
        counts = RunCounts()
        for result in self.step_results:
            counts.total += 1
            if result.outcome == StepOutcome.SUCCEEDED:
                counts.passed += 1
            elif result.outcome == StepOutcome.SKIPPED:
                counts.skipped += 1
            else:
                counts.failed += 1
        for outcome in self.check_outcomes:
            counts.total += 1
            if outcome.status == CheckStatus.PASSED:
                counts.passed += 1
            elif outcome.status == CheckStatus.SKIPPED_DEPENDENCY:
                counts.skipped += 1
            else:
                counts.failed += 1
        return counts

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def shape(self) -> Dict[str, Any]:
        """Outcome shape without timings, used to compare runs."""
        return {
            "status": self.status.value,
            "state": self.state.value,
            "steps": [(r.step_id, r.outcome.value) for r in self.step_results],
            "checks": [(o.check_id, o.status.value) for o in self.check_outcomes],
            "rollback": [(r.step_id, r.outcome.value) for r in self._rollback],
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        counts = self.counts
        return {
            "command": self.command,
            "plan": self.plan_name,
            "state": self.state.value,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "abort_reason": self.abort_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration, 3),
            "counts": {**counts.model_dump(), "success_rate": round(counts.success_rate, 1)},
            "steps": [r.model_dump(mode="json") for r in self.step_results],
            "checks": [o.model_dump(mode="json") for o in self.check_outcomes],
            "rollback": [r.model_dump(mode="json") for r in self._rollback],
        }
