"""
otelops - Telemetry Stack Deployment Orchestrator

Deploys and validates an OpenTelemetry pipeline end to end: the k8s-infra
collector chart, the SigNoz backend under docker-compose and the rolldice
sample workload.

Architecture:
- Each module is self-contained with clear interfaces
- Modules communicate only through the shared models in modules.api
- External systems are reached exclusively through the ResourceClient

Modules:
- api: Shared data models (steps, results, run report)
- resources: Cluster, helm and compose operations
- executor: Single step execution with timeout and retry
- orchestrator: Plan runner with rollback
- health: Dependency-ordered health check suite
- report: Report rendering
- topology: The concrete deploy/teardown plans and health checks
"""

__version__ = "1.0.0"
