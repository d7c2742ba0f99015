"""
Topology Module - Black Box Interface

Purpose: Describe the monitoring stack as plans and health checks
Interface: deploy_plan(), teardown_plan(), health_checks()
Hidden: Step actions, probes, manifests
"""

from .checks import health_checks
from .manifests import workload_manifests
from .plans import deploy_plan, retry_policy, teardown_plan

__all__ = ["deploy_plan", "health_checks", "retry_policy", "teardown_plan", "workload_manifests"]
