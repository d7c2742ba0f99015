"""
Health Module - Black Box Interface

Purpose: Read-only verification of a deployed stack
Interface: HealthCheckSuite.run(checks, ctx) -> [HealthCheckOutcome]
Hidden: Dependency ordering, concurrency limits, retry/backoff
"""

from .suite import HealthCheckSuite, order_checks

__all__ = ["HealthCheckSuite", "order_checks"]
