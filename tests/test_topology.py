"""
Scenario tests for the monitoring stack plans and health checks.

Each test drives the real plans and checks against canned tool output
from fixtures/cluster_scenarios.py and canned HTTP answers.
"""

import pytest

from conftest import CommandResponse, make_settings
from fixtures.cluster_scenarios import add_healthy_routes, item_list
from otelops.modules.api import CheckStatus, OrchestratorState, Plan, RunStatus, StepOutcome
from otelops.modules.executor import CancelToken, StepContext, StepExecutor
from otelops.modules.health import HealthCheckSuite
from otelops.modules.orchestrator import Orchestrator
from otelops.modules.topology import deploy_plan, health_checks, retry_policy, teardown_plan, workload_manifests
from otelops.modules.topology.plans import backend_patch_pending


CONNECTION_REFUSED = CommandResponse(
    stderr="The connection to the server 127.0.0.1:6443 was refused - did you specify the right host or port?\n",
    exit_code=1,
)
BAD_CONTEXT = CommandResponse(
    stderr="error: context was not found for specified context: prod-cluster\n",
    exit_code=1,
)


async def run(client, settings, command, plan, checks=()):
    ctx = StepContext(client=client, settings=settings, token=CancelToken())
    orchestrator = Orchestrator(
        ctx,
        executor=StepExecutor(default_timeout=settings.run.timeout_seconds),
        suite=HealthCheckSuite(parallelism=settings.run.parallelism),
        command=command,
    )
    return await orchestrator.execute(plan, checks)


# =============================================================================
# Deploy
# =============================================================================

@pytest.mark.scenario
@pytest.mark.asyncio
async def test_healthy_deploy(client, settings, command_mocker, http_routes):
    command_mocker.register_scenario("healthy")
    add_healthy_routes(http_routes)

    report = await run(client, settings, "deploy", deploy_plan(settings), health_checks(settings))

    assert report.state == OrchestratorState.COMPLETED
    assert report.status == RunStatus.HEALTHY, report.to_dict()
    assert report.exit_code == 0
    assert report.step("patch-backend").outcome == StepOutcome.SKIPPED
    succeeded = [r.step_id for r in report.step_results if r.outcome == StepOutcome.SUCCEEDED]
    assert succeeded == [
        "ensure-namespace",
        "backend-up",
        "install-chart",
        "wait-ready",
        "deploy-sample-app",
        "wait-sample-app",
        "smoke-probe",
    ]
    assert all(o.status == CheckStatus.PASSED for o in report.check_outcomes)
    assert report.check("e2e-trace").detail.startswith("Trace ID: ")


@pytest.mark.scenario
@pytest.mark.asyncio
async def test_deploy_passes_backend_endpoint_to_chart(client, settings, command_mocker, http_routes):
    command_mocker.register_scenario("healthy")
    add_healthy_routes(http_routes)

    await run(client, settings, "deploy", deploy_plan(settings))

    install = command_mocker.get_calls_matching("upgrade --install")[0]
    assert "otelCollectorEndpoint=host.k3d.internal:4317" in install.argv
    assert "--create-namespace" in install.argv


@pytest.mark.scenario
@pytest.mark.asyncio
async def test_deploy_twice_is_idempotent(client, settings, command_mocker, http_routes):
    command_mocker.register_scenario("healthy")
    add_healthy_routes(http_routes)

    first = await run(client, settings, "deploy", deploy_plan(settings), health_checks(settings))
    second = await run(client, settings, "deploy", deploy_plan(settings), health_checks(settings))

    assert first.shape() == second.shape()
    assert second.status == RunStatus.HEALTHY


@pytest.mark.scenario
@pytest.mark.asyncio
async def test_chart_install_failure_aborts_with_rollback(client, settings, command_mocker, http_routes):
    command_mocker.register_scenario("chart-install-fails")
    add_healthy_routes(http_routes)

    report = await run(client, settings, "deploy", deploy_plan(settings), health_checks(settings))

    assert report.state == OrchestratorState.ABORTED
    assert report.status == RunStatus.FATAL
    assert report.exit_code == 2
    install = report.step("install-chart")
    assert install.outcome == StepOutcome.FAILED
    assert install.attempts == 3
    assert "another operation" in install.error
    assert len(command_mocker.get_calls_matching("upgrade --install")) == 3
    for step_id in ("wait-ready", "deploy-sample-app", "wait-sample-app", "smoke-probe"):
        assert report.step(step_id).outcome == StepOutcome.SKIPPED
    assert report.check_outcomes == []
    assert [(r.step_id, r.outcome) for r in report.rollback_results] == [
        ("rollback:install-chart", StepOutcome.SUCCEEDED),
        ("rollback:backend-up", StepOutcome.SUCCEEDED),
    ]
    assert command_mocker.was_called_with("docker-compose.yml down")


# =============================================================================
# Teardown
# =============================================================================

@pytest.mark.scenario
@pytest.mark.asyncio
async def test_teardown_removes_in_reverse_order(client, settings, command_mocker):
    command_mocker.register_scenario("teardown-present")

    report = await run(client, settings, "teardown", teardown_plan(settings))

    assert report.status == RunStatus.HEALTHY
    assert report.step("delete-sample-app").output == (
        "Deleted cronjob/rolldice-load-generator, service/rolldice, deployment/rolldice"
    )
    assert report.step("uninstall-chart").output == "Release monitoring-int4 uninstalled"


@pytest.mark.scenario
@pytest.mark.asyncio
async def test_teardown_twice_has_same_shape(client, settings, command_mocker):
    """Absent resources are not an error."""
    command_mocker.register_scenario("teardown-present")
    first = await run(client, settings, "teardown", teardown_plan(settings))

    command_mocker.clear()
    command_mocker.register_scenario("teardown-absent")
    second = await run(client, settings, "teardown", teardown_plan(settings))

    assert first.shape() == second.shape()
    assert second.step("delete-sample-app").output == "Sample app already absent"
    assert second.step("uninstall-chart").output == "Release monitoring-int4 already absent"


@pytest.mark.scenario
@pytest.mark.asyncio
async def test_teardown_with_unknown_context_is_not_success(client, settings, command_mocker):
    """A kubeconfig pointing at a missing context must not read as already absent."""
    command_mocker.register("delete", BAD_CONTEXT)
    command_mocker.register(
        "helm uninstall",
        CommandResponse(stderr="Error: Kubernetes cluster unreachable: context \"prod-cluster\" does not exist\n", exit_code=1),
    )
    command_mocker.register("docker-compose.yml down", CommandResponse())

    report = await run(client, settings, "teardown", teardown_plan(settings))

    assert report.status == RunStatus.DEGRADED
    assert report.exit_code == 1
    assert report.step("delete-sample-app").outcome == StepOutcome.FAILED
    assert "context was not found" in report.step("delete-sample-app").error
    assert report.step("uninstall-chart").outcome == StepOutcome.FAILED
    assert report.step("backend-down").outcome == StepOutcome.SUCCEEDED


# =============================================================================
# Validate
# =============================================================================

@pytest.mark.scenario
@pytest.mark.asyncio
async def test_unreachable_cluster_skips_dependents(client, settings, command_mocker, http_routes):
    command_mocker.register_scenario("healthy")
    command_mocker.register("get namespace kube-system", CONNECTION_REFUSED, priority=10)
    add_healthy_routes(http_routes)

    report = await run(client, settings, "validate", Plan(name="validate"), health_checks(settings))

    assert report.check("cluster-reachable").status == CheckStatus.FAILED
    assert report.check("cluster-nodes").status == CheckStatus.SKIPPED_DEPENDENCY
    assert report.check("namespace-exists").blocked_by == ["cluster-reachable"]
    assert report.check("backend-containers").passed
    assert report.status == RunStatus.DEGRADED
    assert not command_mocker.was_called_with("get nodes")


def test_k3s_check_only_for_k3s():
    k3d_ids = {c.id for c in health_checks(make_settings())}
    k3s_ids = {c.id for c in health_checks(make_settings(OTELOPS_CLUSTER_KIND="k3s"))}

    assert "k3s-service" not in k3d_ids
    assert "k3s-service" in k3s_ids


def test_vsphere_check_only_when_server_configured():
    without = {c.id: c for c in health_checks(make_settings())}
    with_server = {c.id: c for c in health_checks(make_settings(VSPHERE_SERVER="vcenter.lab.local"))}

    assert "vsphere-metadata" not in without
    assert with_server["vsphere-metadata"].required is False
    assert with_server["vsphere-metadata"].depends_on == frozenset({"configmaps"})


@pytest.mark.scenario
@pytest.mark.asyncio
async def test_load_generator_without_jobs_is_informational(client, settings, command_mocker, http_routes):
    command_mocker.register_scenario("healthy")
    command_mocker.register("get jobs", item_list(), priority=10)
    add_healthy_routes(http_routes)

    report = await run(client, settings, "validate", Plan(name="validate"), health_checks(settings))

    jobs = report.check("load-generator-jobs")
    assert jobs.required is False
    assert jobs.status == CheckStatus.FAILED
    assert "No jobs have run for cronjob/rolldice-load-generator" in jobs.error
    assert report.check("load-generator").status == CheckStatus.PASSED
    assert report.status == RunStatus.DEGRADED


def test_checks_use_run_retry_policy():
    settings = make_settings(OTELOPS_MAX_ATTEMPTS="5", OTELOPS_BACKOFF_JITTER="0.3")
    checks = {c.id: c for c in health_checks(settings)}
    install = next(s for s in deploy_plan(settings).steps if s.id == "install-chart")

    assert checks["cluster-reachable"].retry == retry_policy(settings)
    assert checks["cluster-reachable"].retry.jitter == 0.3
    assert checks["cluster-reachable"].retry.max_attempts == 5
    assert install.retry == checks["cluster-reachable"].retry
    assert checks["prereq-kubectl"].retry.max_attempts == 1


def test_check_dependencies_reference_declared_checks():
    checks = health_checks(make_settings(OTELOPS_CLUSTER_KIND="k3s", VSPHERE_SERVER="vcenter"))
    ids = {c.id for c in checks}
    assert len(ids) == len(checks)
    for check in checks:
        assert check.depends_on <= ids


# =============================================================================
# Plans and manifests
# =============================================================================

def test_deploy_plan_groups_install_steps():
    groups = deploy_plan(make_settings()).groups()
    assert [[s.id for s in g] for g in groups][1] == ["patch-backend", "backend-up", "install-chart"]
    fatal = [s.id for s in deploy_plan(make_settings()).steps if s.is_fatal]
    assert fatal == ["ensure-namespace", "install-chart", "wait-ready"]


@pytest.mark.asyncio
async def test_patch_pending_when_reverse_dry_run_fails(tmp_path, command_mocker, client):
    patch = tmp_path / "patch.diff"
    patch.write_text("--- a/docker-compose.yml\n+++ b/docker-compose.yml\n")
    settings = make_settings(OTELOPS_BACKEND_PATCH=str(patch))
    ctx = StepContext(client=client, settings=settings, token=CancelToken())

    command_mocker.register("--dry-run --reverse", CommandResponse(stderr="Unreversed patch detected!", exit_code=1))
    assert await backend_patch_pending(ctx) is True

    command_mocker.clear()
    command_mocker.register("--dry-run --reverse", CommandResponse(stdout="patching file docker-compose.yml"))
    assert await backend_patch_pending(ctx) is False


@pytest.mark.asyncio
async def test_patch_not_pending_without_file(tmp_path, command_mocker, client):
    settings = make_settings(OTELOPS_BACKEND_PATCH=str(tmp_path / "missing.diff"))
    ctx = StepContext(client=client, settings=settings, token=CancelToken())

    assert await backend_patch_pending(ctx) is False
    assert command_mocker.call_count == 0


def test_workload_manifests():
    settings = make_settings()
    deployment, service, cronjob = workload_manifests(settings)

    assert [deployment["kind"], service["kind"], cronjob["kind"]] == ["Deployment", "Service", "CronJob"]
    container = deployment["spec"]["template"]["spec"]["containers"][0]
    env = {e["name"]: e["value"] for e in container["env"]}
    assert env["OTEL_EXPORTER_OTLP_ENDPOINT"] == (
        "http://monitoring-int4-k8s-infra.monitoring.svc.cluster.local:4317"
    )
    assert deployment["spec"]["template"]["spec"]["securityContext"]["runAsNonRoot"] is True
    assert service["spec"]["ports"] == [{"port": 80, "targetPort": 8080}]
    assert cronjob["metadata"]["name"] == "rolldice-load-generator"
    assert cronjob["spec"]["schedule"] == "*/1 * * * *"


def test_workload_manifest_file_override(tmp_path):
    manifest = tmp_path / "app.yaml"
    manifest.write_text("apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: custom\n")

    docs = workload_manifests(make_settings(OTELOPS_WORKLOAD_MANIFEST=str(manifest)))

    assert docs == [{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "custom"}}]
