"""
API Module - Black Box Interface

Purpose: Shared data models passed between modules
Interface: Step/Plan/HealthCheck definitions, StepResult/HealthCheckOutcome, RunReport
Hidden: Status derivation, slot bookkeeping

Modules depend on these models only, never on each other's internals.
"""

from .models import (
    EXIT_CODES,
    AppliedResource,
    CheckStatus,
    ExecResult,
    HealthCheck,
    HealthCheckOutcome,
    OrchestratorState,
    Plan,
    ProbeResult,
    ReportFinalized,
    Resource,
    RetryPolicy,
    RunCounts,
    RunReport,
    RunStatus,
    Severity,
    Step,
    StepOutcome,
    StepResult,
)

__all__ = [
    "EXIT_CODES",
    "AppliedResource",
    "CheckStatus",
    "ExecResult",
    "HealthCheck",
    "HealthCheckOutcome",
    "OrchestratorState",
    "Plan",
    "ProbeResult",
    "ReportFinalized",
    "Resource",
    "RetryPolicy",
    "RunCounts",
    "RunReport",
    "RunStatus",
    "Severity",
    "Step",
    "StepOutcome",
    "StepResult",
]
