"""
Orchestrator Module - Black Box Interface

Purpose: Execute a Plan group by group, gate on fatal failures, roll back
Interface: Orchestrator.execute(plan, checks) -> RunReport
Hidden: Group barriers, parallelism limits, abort bookkeeping
"""

from .orchestrator import Orchestrator, RollbackHook, reverse_undo

__all__ = ["Orchestrator", "RollbackHook", "reverse_undo"]
