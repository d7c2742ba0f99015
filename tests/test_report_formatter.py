"""
Tests for the text and JSON report renderings.
"""

import json

import pytest
from rich.console import Console

from otelops.modules.api import (
    CheckStatus,
    HealthCheckOutcome,
    OrchestratorState,
    RunReport,
    Severity,
    StepOutcome,
    StepResult,
)
from otelops.modules.report import ReportFormatter, excerpt


def deploy_report(install_outcome=StepOutcome.SUCCEEDED, vsphere=CheckStatus.PASSED):
    report = RunReport(
        "deploy",
        "deploy",
        step_ids=["ensure-namespace", "install-chart"],
        check_ids=["collector-health", "vsphere-metadata"],
    )
    report.record_step(
        StepResult(
            step_id="ensure-namespace",
            label="Ensure monitoring namespace",
            severity=Severity.FATAL,
            outcome=StepOutcome.SUCCEEDED,
            attempts=1,
            duration=0.4,
        )
    )
    report.record_step(
        StepResult(
            step_id="install-chart",
            label="Install k8s-infra chart",
            severity=Severity.FATAL,
            outcome=install_outcome,
            attempts=1 if install_outcome == StepOutcome.SUCCEEDED else 3,
            error=None if install_outcome == StepOutcome.SUCCEEDED else "Error: UPGRADE FAILED\nstack trace...",
        )
    )
    if install_outcome == StepOutcome.SUCCEEDED:
        report.record_check(
            HealthCheckOutcome(
                check_id="collector-health",
                label="OTEL collector health check",
                status=CheckStatus.PASSED,
                detail="Collector healthy",
            )
        )
        report.record_check(
            HealthCheckOutcome(
                check_id="vsphere-metadata",
                label="vSphere metadata present",
                required=False,
                status=vsphere,
                error=None if vsphere == CheckStatus.PASSED else "No vSphere metadata in collector configuration",
            )
        )
        return report.finalize(OrchestratorState.COMPLETED)
    report.abort_reason = "Fatal step 'install-chart' failed: Error: UPGRADE FAILED"
    return report.finalize(OrchestratorState.ABORTED)


def test_excerpt_keeps_first_line():
    assert excerpt("first line\nsecond line") == "first line"


def test_excerpt_truncates_long_text():
    text = "x" * 200
    result = excerpt(text, limit=20)
    assert len(result) == 20
    assert result.endswith("...")


@pytest.mark.parametrize("value", [None, "", "   "])
def test_excerpt_empty(value):
    assert excerpt(value) == ""


def test_render_healthy_deploy(settings):
    text = ReportFormatter(settings).render(deploy_report())

    assert "Ensure monitoring namespace" in text
    assert "OTEL collector health check" in text
    assert "📊 Results:" in text
    assert "Total: 4" in text
    assert "Success Rate: 100%" in text
    assert "Status: HEALTHY (exit code 0)" in text
    assert "🎯 Next Steps:" in text
    assert "http://localhost:3301" in text
    assert "kubectl port-forward -n monitoring svc/rolldice 8080:80" in text


def test_render_informational_failure(settings):
    text = ReportFormatter(settings).render(deploy_report(vsphere=CheckStatus.FAILED))

    assert "⚠️" in text
    assert "No vSphere metadata" in text
    assert "Status: DEGRADED (exit code 1)" in text
    assert "🔧 Troubleshooting Tips:" in text
    assert "kubectl get events -n monitoring" in text


def test_render_aborted_run(settings):
    text = ReportFormatter(settings).render(deploy_report(install_outcome=StepOutcome.FAILED))

    assert "Aborted: Fatal step 'install-chart' failed" in text
    assert "Error: UPGRADE FAILED" in text
    assert "stack trace" not in text
    assert "Status: FATAL (exit code 2)" in text


def test_render_without_settings_has_no_hints():
    text = ReportFormatter().render(deploy_report())

    assert "Next Steps" not in text
    assert "Status: HEALTHY" in text


def test_render_json():
    report = deploy_report(vsphere=CheckStatus.FAILED)
    data = json.loads(ReportFormatter().render_json(report))

    assert data["command"] == "deploy"
    assert data["status"] == "degraded"
    assert data["exit_code"] == 1
    assert [s["step_id"] for s in data["steps"]] == ["ensure-namespace", "install-chart"]
    assert data["checks"][1]["status"] == "failed"
    assert data["checks"][1]["required"] is False


def test_exit_code_matches_report():
    report = deploy_report(install_outcome=StepOutcome.FAILED)
    assert ReportFormatter.exit_code(report) == 2


def test_print_to_console(settings):
    console = Console(record=True, width=120)
    ReportFormatter(settings).print(deploy_report(), console)

    assert "Status: HEALTHY" in console.export_text()
