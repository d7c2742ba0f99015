#!/usr/bin/env python3
"""
otelops - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Builds the plan and health checks for a command
3. Runs them and renders the report

All business logic is in the modules, following black box principles.
"""

import asyncio
import contextlib
import logging
import signal
from typing import Optional, Sequence

import click
from rich.console import Console

from otelops.config import EnvConfigProvider, Settings
from otelops.errors import ConfigError
from otelops.logging_config import configure_logging
from otelops.modules.api import HealthCheck, Plan, RunReport
from otelops.modules.executor import CancelToken, StepContext, StepExecutor
from otelops.modules.health import HealthCheckSuite
from otelops.modules.orchestrator import Orchestrator
from otelops.modules.report import ReportFormatter
from otelops.modules.resources import CommandRunner, ResourceClient
from otelops.modules.topology import deploy_plan, health_checks, teardown_plan

logger = logging.getLogger("otelops.main")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


async def run_command(
    settings: Settings,
    command: str,
    plan: Plan,
    checks: Sequence[HealthCheck] = (),
    runner: Optional[CommandRunner] = None,
) -> RunReport:
    """
    Execute a plan and its health checks under one cancellation token.

    SIGINT and SIGTERM cancel the token; the run deadline comes from
    settings.run.run_timeout_seconds.
    """
    token = CancelToken(settings.run.run_timeout_seconds)
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, token.cancel, f"Received {sig.name}")

    try:
        async with ResourceClient.from_settings(settings, runner=runner) as client:
            ctx = StepContext(client=client, settings=settings, token=token)
            orchestrator = Orchestrator(
                ctx,
                executor=StepExecutor(default_timeout=settings.run.timeout_seconds),
                suite=HealthCheckSuite(parallelism=settings.run.parallelism),
                parallelism=settings.run.parallelism,
                command=command,
                lenient=settings.run.lenient_checks,
                rollback_grace=settings.run.rollback_grace_seconds,
            )
            return await orchestrator.execute(plan, checks)
    finally:
        for sig in signals:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)


def load_settings(ctx: click.Context, **overrides) -> Settings:
    """Environment (and .env) settings with CLI overrides applied."""
    try:
        settings = EnvConfigProvider(env_file=ctx.obj.get("env_file")).get_settings()
        settings = settings.with_overrides(**overrides)
    except ConfigError as e:
        raise click.UsageError(str(e), ctx=ctx) from None
    if settings.codespace_name:
        logger.info(f"Running in GitHub Codespace: {settings.codespace_name}")
    return settings


def emit(ctx: click.Context, settings: Settings, report: RunReport, output_format: str) -> None:
    formatter = ReportFormatter(settings)
    if output_format == "json":
        click.echo(formatter.render_json(report))
    else:
        formatter.print(report, Console())
    ctx.exit(formatter.exit_code(report))


def execute(ctx: click.Context, settings: Settings, command: str, plan: Plan, checks: Sequence[HealthCheck], output_format: str) -> None:
    logger.info(f"Starting {command} in namespace {settings.cluster.namespace}")
    report = asyncio.run(run_command(settings, command, plan, checks, runner=ctx.obj.get("runner")))
    emit(ctx, settings, report, output_format)


namespace_option = click.option("--namespace", "-n", default=None, help="Target namespace")
release_option = click.option("--release", default=None, help="Helm release name of the collector chart")
format_option = click.option(
    "--format", "output_format", type=click.Choice(["text", "json"]), default="text", show_default=True
)
lenient_option = click.option(
    "--lenient", is_flag=True, default=False, help="Informational check failures do not degrade the run"
)
parallelism_option = click.option(
    "--parallelism", type=click.IntRange(min=0), default=None, help="Max concurrent steps/checks (0 = unbounded)"
)


@click.group()
@click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Load settings from this .env file")
@click.version_option(package_name="otelops")
@click.pass_context
def cli(ctx: click.Context, log_level: str, env_file: Optional[str]):
    """Deploy, validate and tear down the OpenTelemetry monitoring stack."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = env_file


@cli.command()
@namespace_option
@release_option
@click.option("--endpoint", default=None, help="OTLP endpoint the collector exports to")
@click.option("--cluster-kind", default=None, help="Cluster flavour (k3d, k3s, kind, ...)")
@click.option("--timeout", "timeout_seconds", type=float, default=None, help="Per-step timeout in seconds")
@parallelism_option
@click.option("--run-timeout", "run_timeout_seconds", type=float, default=None, help="Deadline for the whole run")
@lenient_option
@format_option
@click.pass_context
def deploy(ctx, namespace, release, endpoint, cluster_kind, timeout_seconds, parallelism, run_timeout_seconds, lenient, output_format):
    """Install the stack, then run the health checks."""
    settings = load_settings(
        ctx,
        namespace=namespace,
        release=release,
        endpoint=endpoint,
        cluster_kind=cluster_kind,
        timeout_seconds=timeout_seconds,
        parallelism=parallelism,
        run_timeout_seconds=run_timeout_seconds,
        lenient_checks=lenient or None,
    )
    execute(ctx, settings, "deploy", deploy_plan(settings), health_checks(settings), output_format)


@cli.command()
@namespace_option
@release_option
@format_option
@click.pass_context
def teardown(ctx, namespace, release, output_format):
    """Remove the stack. Succeeds when everything is already gone."""
    settings = load_settings(ctx, namespace=namespace, release=release)
    execute(ctx, settings, "teardown", teardown_plan(settings), (), output_format)


@cli.command()
@namespace_option
@lenient_option
@parallelism_option
@format_option
@click.pass_context
def validate(ctx, namespace, lenient, parallelism, output_format):
    """Run only the health checks against an existing deployment."""
    settings = load_settings(ctx, namespace=namespace, lenient_checks=lenient or None, parallelism=parallelism)
    execute(ctx, settings, "validate", Plan(name="validate"), health_checks(settings), output_format)


if __name__ == "__main__":
    cli()
