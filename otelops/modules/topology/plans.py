"""
Deploy and teardown plans for the monitoring stack.

Actions are plain coroutines over a StepContext; everything they need
(client, settings, token) travels in the context.
"""

import logging
from pathlib import Path

from ...errors import ResourceError
from ..api.models import Plan, RetryPolicy, Severity, Step
from ..executor.context import StepContext
from .manifests import namespace_manifest, workload_manifests

logger = logging.getLogger("otelops.topology")


def retry_policy(settings) -> RetryPolicy:
    """Retry policy derived from run settings."""
    return RetryPolicy(
        max_attempts=settings.run.max_attempts,
        base_delay=settings.run.backoff_base,
        max_delay=settings.run.backoff_cap,
        jitter=settings.run.backoff_jitter,
    )


# Deploy actions


async def ensure_namespace(ctx: StepContext) -> str:
    applied = await ctx.client.apply(namespace_manifest(ctx.settings.cluster.namespace))
    return ", ".join(f"namespace/{r.name} {r.action}" for r in applied)


def _patch_argv(ctx: StepContext, *flags: str) -> list:
    backend = ctx.settings.backend
    patch_file = str(Path(backend.patch_file).resolve())
    return ["patch", "-p1", "--batch", *flags, "-d", backend.compose_dir, "-i", patch_file]


async def backend_patch_pending(ctx: StepContext) -> bool:
    """True when the backend patch file exists and is not applied yet."""
    patch_file = ctx.settings.backend.patch_file
    if not patch_file or not Path(patch_file).is_file():
        return False
    # a patch that reverses cleanly is already applied
    result = await ctx.client.run_tool(_patch_argv(ctx, "--dry-run", "--reverse"))
    return not result.ok


async def patch_backend(ctx: StepContext) -> str:
    argv = _patch_argv(ctx, "--forward")
    result = await ctx.client.run_tool(argv)
    if not result.ok:
        raise ResourceError(f"Backend patch failed: {result.output}", argv=argv, exit_code=result.exit_code, stderr=result.stderr)
    return f"Applied {ctx.settings.backend.patch_file}"


async def backend_up(ctx: StepContext) -> str:
    await ctx.client.compose_up(timeout=ctx.settings.run.timeout_seconds)
    return f"Backend started from {ctx.settings.backend.compose_file}"


async def backend_down(ctx: StepContext) -> str:
    await ctx.client.compose_down(timeout=ctx.settings.run.timeout_seconds)
    return "Backend stopped"


async def install_chart(ctx: StepContext) -> str:
    cluster = ctx.settings.cluster
    await ctx.client.helm_upgrade_install(
        cluster.release,
        cluster.chart,
        namespace=cluster.namespace,
        repo=cluster.chart_repo,
        values_file=cluster.chart_values,
        set_values={
            "otelCollectorEndpoint": ctx.settings.backend.endpoint,
            "otelInsecure": "true",
        },
        timeout=ctx.settings.run.timeout_seconds,
    )
    return f"Release {cluster.release} installed"


async def uninstall_chart(ctx: StepContext) -> str:
    cluster = ctx.settings.cluster
    removed = await ctx.client.helm_uninstall(cluster.release, namespace=cluster.namespace)
    return f"Release {cluster.release} uninstalled" if removed else f"Release {cluster.release} already absent"


async def wait_collector_ready(ctx: StepContext) -> str:
    cluster = ctx.settings.cluster
    await ctx.client.wait_until_ready(
        "deployment",
        cluster.collector_deployment,
        namespace=cluster.namespace,
        timeout=ctx.settings.run.timeout_seconds,
    )
    return f"deployment/{cluster.collector_deployment} ready"


async def deploy_sample_app(ctx: StepContext) -> str:
    applied = await ctx.client.apply(workload_manifests(ctx.settings), namespace=ctx.settings.cluster.namespace)
    return ", ".join(f"{r.kind}/{r.name} {r.action}" for r in applied)


async def delete_sample_app(ctx: StepContext) -> str:
    deleted = await ctx.client.delete_manifest(workload_manifests(ctx.settings), namespace=ctx.settings.cluster.namespace)
    return f"Deleted {', '.join(deleted)}" if deleted else "Sample app already absent"


async def wait_sample_app(ctx: StepContext) -> str:
    workload = ctx.settings.workload
    await ctx.client.wait_until_ready(
        "deployment",
        workload.name,
        namespace=ctx.settings.cluster.namespace,
        timeout=ctx.settings.run.timeout_seconds,
    )
    return f"deployment/{workload.name} ready"


async def smoke_probe(ctx: StepContext) -> str:
    workload = ctx.settings.workload
    async with ctx.client.port_forward(workload.name, remote_port=workload.service_port) as session:
        result = await ctx.client.http_probe(session.url("/health"))
    return f"/health returned HTTP {result.status_code}"


# Plans


def deploy_plan(settings) -> Plan:
    """
    Bring up the collector chart, the backend and the sample workload.

    The backend patch, backend and chart install run concurrently; the chart
    install is the only fatal member of that group.
    """
    retry = retry_policy(settings)
    wait_timeout = settings.run.timeout_seconds + 15
    return Plan(
        name="deploy",
        steps=[
            Step("ensure-namespace", "Ensure monitoring namespace", ensure_namespace, severity=Severity.FATAL, retry=retry),
            Step(
                "patch-backend",
                "Apply backend patch",
                patch_backend,
                precondition=backend_patch_pending,
                retry=RetryPolicy.once(),
                group="install",
            ),
            Step("backend-up", "Start observability backend", backend_up, retry=retry, group="install", undo=backend_down),
            Step(
                "install-chart",
                "Install k8s-infra chart",
                install_chart,
                severity=Severity.FATAL,
                retry=retry,
                group="install",
                undo=uninstall_chart,
            ),
            Step(
                "wait-ready",
                "Wait for collector rollout",
                wait_collector_ready,
                severity=Severity.FATAL,
                timeout=wait_timeout,
                retry=retry,
            ),
            Step("deploy-sample-app", "Deploy sample app", deploy_sample_app, retry=retry, undo=delete_sample_app),
            Step("wait-sample-app", "Wait for sample app rollout", wait_sample_app, timeout=wait_timeout, retry=retry),
            Step("smoke-probe", "Smoke probe sample app", smoke_probe, retry=retry),
        ],
    )


def teardown_plan(settings) -> Plan:
    """Remove everything deploy created, in reverse order. Safe to run repeatedly."""
    retry = retry_policy(settings)
    return Plan(
        name="teardown",
        steps=[
            Step("delete-sample-app", "Delete sample app", delete_sample_app, retry=retry),
            Step("uninstall-chart", "Uninstall k8s-infra chart", uninstall_chart, retry=retry),
            Step("backend-down", "Stop observability backend", backend_down, retry=retry),
        ],
    )
