"""
Health checks for the monitoring stack, grouped by validation phase.

Each probe returns a short detail string on success and raises an
OperationFailed subclass on failure. Gating checks are required;
security, load, metrics, log-grep and vSphere checks are informational.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import yaml

from ...errors import OperationFailed
from ..api.models import Action, ExecResult, HealthCheck, ProbeResult, RetryPolicy
from ..executor.context import StepContext
from .plans import retry_policy

logger = logging.getLogger("otelops.topology")

COLLECTOR_HEALTH_PORT = 13133
COLLECTOR_METRICS_PORT = 8888
PROBE_TIMEOUT = 45.0
LOAD_TEST_REQUESTS = 10


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise OperationFailed(message)


def _require_ok(result: ExecResult, what: str) -> str:
    if not result.ok:
        raise OperationFailed(f"{what} failed (exit {result.exit_code}): {result.output.strip()[:200]}")
    return result.stdout.strip()


async def _probe_workload(ctx: StepContext, path: str) -> ProbeResult:
    workload = ctx.settings.workload
    async with ctx.client.port_forward(workload.name, remote_port=workload.service_port) as session:
        return await ctx.client.http_probe(session.url(path))


async def _collector_curl(ctx: StepContext, port: int, path: str) -> ExecResult:
    cluster = ctx.settings.cluster
    return await ctx.client.exec(
        f"deployment/{cluster.collector_deployment}",
        ["curl", "-sf", f"http://localhost:{port}{path}"],
        namespace=cluster.namespace,
    )


# Prerequisites


def tool_check(check_id: str, label: str, argv: Sequence[str]) -> HealthCheck:
    """Check that a host tool is installed and runs."""

    async def probe(ctx: StepContext) -> str:
        output = _require_ok(await ctx.client.run_tool(argv), " ".join(argv))
        return output.splitlines()[0] if output else "ok"

    return HealthCheck(check_id, label, probe, retry=RetryPolicy.once(), timeout=15.0)


# Cluster


async def cluster_reachable(ctx: StepContext) -> str:
    await ctx.client.get("namespace", "kube-system")
    return "API server reachable"


async def cluster_nodes(ctx: StepContext) -> str:
    nodes = await ctx.client.list_resources("nodes")
    ready = [
        node.name
        for node in nodes
        if any(c.get("type") == "Ready" and c.get("status") == "True" for c in node.status.get("conditions", []))
    ]
    _require(bool(ready), f"No Ready nodes ({len(nodes)} total)")
    return f"{len(ready)}/{len(nodes)} node(s) Ready"


async def k3s_service(ctx: StepContext) -> str:
    result = await ctx.client.run_tool(["systemctl", "is-active", "k3s"])
    return _require_ok(result, "systemctl is-active k3s")


async def namespace_exists(ctx: StepContext) -> str:
    namespace = ctx.settings.cluster.namespace
    await ctx.client.get("namespace", namespace)
    return f"namespace/{namespace} exists"


# Collector


async def collector_release(ctx: StepContext) -> str:
    cluster = ctx.settings.cluster
    status = await ctx.client.helm_status(cluster.release, namespace=cluster.namespace)
    state = status.get("info", {}).get("status", "unknown")
    _require(state == "deployed", f"Release {cluster.release} is {state}")
    return f"Release {cluster.release} deployed"


async def collector_pods(ctx: StepContext) -> str:
    cluster = ctx.settings.cluster
    pods = await ctx.client.list_resources(
        "pods", selector=cluster.collector_selector, field_selector="status.phase=Running"
    )
    _require(bool(pods), f"No running pods match {cluster.collector_selector}")
    return f"{len(pods)} collector pod(s) running"


async def collector_service(ctx: StepContext) -> str:
    name = ctx.settings.cluster.collector_deployment
    await ctx.client.get("service", name)
    return f"service/{name} exists"


async def collector_health(ctx: StepContext) -> str:
    result = await _collector_curl(ctx, COLLECTOR_HEALTH_PORT, "/health")
    _require_ok(result, "Collector health endpoint")
    return "Collector healthy"


async def collector_metrics(ctx: StepContext) -> str:
    result = await _collector_curl(ctx, COLLECTOR_METRICS_PORT, "/metrics")
    _require_ok(result, "Collector metrics endpoint")
    return "Collector metrics served"


# Backend


async def backend_containers(ctx: StepContext) -> str:
    services = await ctx.client.compose_ps()
    running = [s.name for s in services if s.running]
    _require(bool(running), f"No backend containers up ({len(services)} listed)")
    return f"{len(running)}/{len(services)} container(s) up"


async def backend_frontend(ctx: StepContext) -> str:
    result = await ctx.client.http_probe(f"{ctx.settings.backend.frontend_url}/api/v1/version")
    return f"Frontend HTTP {result.status_code}"


async def backend_clickhouse(ctx: StepContext) -> str:
    result = await ctx.client.compose_exec("clickhouse", ["clickhouse-client", "--query", "SELECT 1"])
    output = _require_ok(result, "ClickHouse query")
    _require(output == "1", f"Unexpected ClickHouse answer: {output!r}")
    return "ClickHouse answers queries"


async def backend_query_service(ctx: StepContext) -> str:
    result = await ctx.client.http_probe(f"{ctx.settings.backend.query_service_url}/api/v1/health")
    return f"Query service HTTP {result.status_code}"


async def backend_clickhouse_data(ctx: StepContext) -> str:
    result = await ctx.client.compose_exec("clickhouse", ["ls", "-la", "/var/lib/clickhouse/data"])
    _require_ok(result, "ClickHouse data directory listing")
    return "ClickHouse data directory mounted"


# Workload


async def workload_deployment(ctx: StepContext) -> str:
    name = ctx.settings.workload.name
    deployment = await ctx.client.get("deployment", name)
    ready = deployment.status.get("readyReplicas") or 0
    _require(ready >= 1, f"deployment/{name} has no ready replicas")
    return f"{ready} ready replica(s)"


async def workload_pods(ctx: StepContext) -> str:
    name = ctx.settings.workload.name
    pods = await ctx.client.list_resources("pods", selector=f"app={name}", field_selector="status.phase=Running")
    _require(bool(pods), f"No running {name} pods")
    return f"{len(pods)} pod(s) running"


async def workload_service(ctx: StepContext) -> str:
    name = ctx.settings.workload.name
    await ctx.client.get("service", name)
    return f"service/{name} exists"


async def workload_health(ctx: StepContext) -> str:
    result = await _probe_workload(ctx, "/health")
    return f"/health HTTP {result.status_code} in {result.elapsed_ms}ms"


async def workload_rolldice(ctx: StepContext) -> str:
    result = await _probe_workload(ctx, "/rolldice?player=test")
    return f"/rolldice HTTP {result.status_code}"


async def workload_metrics(ctx: StepContext) -> str:
    result = await _probe_workload(ctx, "/metrics")
    return f"/metrics HTTP {result.status_code}"


async def load_generator(ctx: StepContext) -> str:
    name = ctx.settings.workload.load_generator
    cronjob = await ctx.client.get("cronjob", name)
    return f"cronjob/{name} scheduled {cronjob.spec.get('schedule', '?')}"


async def load_generator_jobs(ctx: StepContext) -> str:
    name = ctx.settings.workload.load_generator
    jobs = await ctx.client.list_resources("jobs")
    owned = [
        job
        for job in jobs
        if any(
            ref.get("kind") == "CronJob" and ref.get("name") == name
            for ref in job.raw.get("metadata", {}).get("ownerReferences", [])
        )
    ]
    _require(bool(owned), f"No jobs have run for cronjob/{name} yet")
    succeeded = sum(1 for job in owned if job.status.get("succeeded"))
    return f"{len(owned)} job(s) from cronjob/{name}, {succeeded} succeeded"


# Telemetry


async def collector_receiving(ctx: StepContext) -> str:
    settings = ctx.settings
    workload = settings.workload
    # generate one request so the collector has something to log
    await ctx.client.exec(
        f"deployment/{workload.name}",
        ["curl", "-s", f"http://localhost:{workload.container_port}/rolldice?player=validation-test"],
    )
    logs = await ctx.client.logs(selector=settings.cluster.collector_selector, tail=100)
    _require("request" in logs.lower(), "No requests in recent collector logs")
    return "Collector logs show requests"


async def collector_traces(ctx: StepContext) -> str:
    logs = await ctx.client.logs(selector=ctx.settings.cluster.collector_selector, tail=200)
    _require("trace" in logs.lower(), "No traces in recent collector logs")
    return "Collector logs show traces"


async def end_to_end_trace(ctx: StepContext) -> str:
    result = await _probe_workload(ctx, "/rolldice?player=integration-test")
    try:
        body = result.json_body()
    except ValueError:
        raise OperationFailed("Response is not JSON") from None
    trace_id = body.get("trace_id") if isinstance(body, dict) else None
    _require(bool(trace_id), "Response carries no trace_id")
    return f"Trace ID: {trace_id}"


# Security


async def pods_non_root(ctx: StepContext) -> str:
    pods = await ctx.client.list_resources("pods")
    offenders = []
    for pod in pods:
        spec = pod.spec
        pod_level = (spec.get("securityContext") or {}).get("runAsNonRoot")
        containers = spec.get("containers", [])
        container_level = bool(containers) and all(
            (c.get("securityContext") or {}).get("runAsNonRoot") for c in containers
        )
        if not (pod_level or container_level):
            offenders.append(pod.name)
    _require(not offenders, f"Pods without runAsNonRoot: {', '.join(sorted(offenders))}")
    return f"{len(pods)} pod(s) run as non-root"


async def network_policies(ctx: StepContext) -> str:
    policies = await ctx.client.list_resources("networkpolicies")
    _require(bool(policies), "No network policies in namespace")
    return f"{len(policies)} network polic(ies)"


async def rbac_configured(ctx: StepContext) -> str:
    bindings = await ctx.client.list_resources("rolebindings,clusterrolebindings")
    _require(bool(bindings), "No role bindings found")
    return f"{len(bindings)} binding(s)"


# Stability


async def load_test(ctx: StepContext) -> str:
    workload = ctx.settings.workload
    async with ctx.client.port_forward(workload.name, remote_port=workload.service_port) as session:
        results = await asyncio.gather(
            *(
                ctx.client.http_probe(session.url(f"/rolldice?player=load-test-{i}"))
                for i in range(1, LOAD_TEST_REQUESTS + 1)
            ),
            return_exceptions=True,
        )
    failures = [r for r in results if isinstance(r, Exception)]
    _require(not failures, f"{len(failures)}/{LOAD_TEST_REQUESTS} load test requests failed")
    return f"{LOAD_TEST_REQUESTS} requests served"


# Config maps and vSphere


async def configmaps_present(ctx: StepContext) -> str:
    configmaps = await ctx.client.list_resources("configmaps")
    _require(bool(configmaps), "No config maps in namespace")
    return f"{len(configmaps)} config map(s)"


async def vsphere_metadata(ctx: StepContext) -> str:
    configmaps = await ctx.client.list_resources("configmaps")
    matches = [cm.name for cm in configmaps if "vsphere" in yaml.safe_dump(cm.raw).lower()]
    _require(bool(matches), "No vSphere metadata in collector configuration")
    return f"vSphere metadata in {', '.join(matches)}"


def _check(
    check_id: str,
    label: str,
    probe: Action,
    depends_on: Sequence[str] = (),
    required: bool = True,
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[float] = None,
) -> HealthCheck:
    return HealthCheck(
        check_id,
        label,
        probe,
        depends_on=frozenset(depends_on),
        required=required,
        retry=retry or RetryPolicy(),
        timeout=timeout,
    )


def health_checks(settings) -> List[HealthCheck]:
    """Full validation suite for the configured stack, in phase order."""
    retry = retry_policy(settings)
    once = RetryPolicy.once()
    compose_version = settings.backend.compose_command.split() + ["version"]

    checks = [
        tool_check("prereq-docker", "Docker installed", ["docker", "--version"]),
        tool_check("prereq-kubectl", "Kubectl installed", ["kubectl", "version", "--client"]),
        tool_check("prereq-helm", "Helm installed", ["helm", "version", "--short"]),
        tool_check("prereq-compose", "Docker Compose installed", compose_version),
        _check("cluster-reachable", "Kubernetes cluster accessible", cluster_reachable, ["prereq-kubectl"], retry=retry),
        _check("cluster-nodes", "Cluster nodes Ready", cluster_nodes, ["cluster-reachable"], retry=retry),
    ]
    if settings.cluster.cluster_kind == "k3s":
        checks.append(_check("k3s-service", "k3s service running", k3s_service, retry=once))
    checks += [
        _check("namespace-exists", "Monitoring namespace exists", namespace_exists, ["cluster-reachable"], retry=retry),
        # collector
        _check("collector-release", "k8s-infra release deployed", collector_release, ["namespace-exists", "prereq-helm"], retry=retry),
        _check("collector-pods", "OTEL collector pods running", collector_pods, ["collector-release"], retry=retry),
        _check("collector-service", "OTEL collector service exists", collector_service, ["collector-release"], retry=retry),
        _check("collector-health", "OTEL collector health check", collector_health, ["collector-pods"], retry=retry),
        _check("collector-metrics", "OTEL collector metrics endpoint", collector_metrics, ["collector-pods"], required=False, retry=once),
        # backend
        _check("backend-containers", "SigNoz containers running", backend_containers, ["prereq-compose", "prereq-docker"], retry=retry),
        _check("backend-frontend", "SigNoz frontend accessible", backend_frontend, ["backend-containers"], retry=retry),
        _check("backend-clickhouse", "ClickHouse accessible", backend_clickhouse, ["backend-containers"], retry=retry),
        _check("backend-query-service", "Query service healthy", backend_query_service, ["backend-containers"], retry=retry),
        _check("backend-clickhouse-data", "ClickHouse data directory mounted", backend_clickhouse_data, ["backend-clickhouse"], retry=once),
        # workload
        _check("workload-deployment", "Sample app deployment ready", workload_deployment, ["namespace-exists"], retry=retry),
        _check("workload-pods", "Sample app pods running", workload_pods, ["workload-deployment"], retry=retry),
        _check("workload-service", "Sample app service exists", workload_service, ["namespace-exists"], retry=retry),
        _check("workload-health", "Sample app health endpoint", workload_health, ["workload-pods", "workload-service"], retry=retry, timeout=PROBE_TIMEOUT),
        _check("workload-rolldice", "Sample app dice endpoint", workload_rolldice, ["workload-health"], retry=retry, timeout=PROBE_TIMEOUT),
        _check("workload-metrics", "Sample app metrics endpoint", workload_metrics, ["workload-health"], required=False, retry=once, timeout=PROBE_TIMEOUT),
        _check("load-generator", "Load generator CronJob configured", load_generator, ["namespace-exists"], retry=retry),
        _check("load-generator-jobs", "Load generator jobs have run", load_generator_jobs, ["load-generator"], required=False, retry=once),
        # telemetry
        _check("collector-receiving", "OTEL collector receiving data", collector_receiving, ["collector-pods", "workload-pods"], required=False, retry=once),
        _check("collector-traces", "Traces in OTEL collector logs", collector_traces, ["collector-pods"], required=False, retry=once),
        _check("e2e-trace", "End-to-end telemetry flow", end_to_end_trace, ["workload-rolldice", "collector-pods"], retry=retry, timeout=PROBE_TIMEOUT),
        # security
        _check("security-non-root", "Pods running as non-root", pods_non_root, ["namespace-exists"], required=False, retry=once),
        _check("security-network-policies", "Network policies exist", network_policies, ["namespace-exists"], required=False, retry=once),
        _check("security-rbac", "RBAC configured", rbac_configured, ["namespace-exists"], required=False, retry=once),
        # stability
        _check("load-test", "Load test completed", load_test, ["workload-rolldice"], required=False, retry=once, timeout=PROBE_TIMEOUT),
        _check("pods-stable", "Pods stable after load", workload_pods, ["load-test"], required=False, retry=retry),
        # config maps
        _check("configmaps", "ConfigMaps present", configmaps_present, ["namespace-exists"], retry=retry),
    ]
    if settings.vsphere_server:
        checks.append(
            _check("vsphere-metadata", "vSphere metadata present", vsphere_metadata, ["configmaps"], required=False, retry=once)
        )
    return checks
