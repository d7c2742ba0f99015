"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, List, Mapping, Optional, Protocol

from dotenv import load_dotenv

from ..errors import ConfigError

SUPPORTED_CLUSTER_KINDS = ("k3d", "k3s", "kind", "minikube", "eks", "gke", "aks", "generic")


@dataclass(frozen=True)
class ClusterConfig:
    """Kubernetes cluster and chart configuration."""
    namespace: str
    release: str
    cluster_kind: str
    chart: str
    chart_repo: Optional[str]
    chart_values: Optional[str]
    kube_context: Optional[str]

    @property
    def collector_deployment(self) -> str:
        """Name of the collector deployment created by the chart."""
        return f"{self.release}-k8s-infra"

    @property
    def collector_selector(self) -> str:
        """Label selector matching the collector pods."""
        return f"app.kubernetes.io/instance={self.collector_deployment}"


@dataclass(frozen=True)
class BackendConfig:
    """Observability backend (compose) configuration."""
    endpoint: str
    compose_file: str
    patch_file: Optional[str]
    frontend_url: str
    query_service_url: str
    compose_command: str = "docker-compose"

    @property
    def compose_dir(self) -> str:
        return str(Path(self.compose_file).parent)


@dataclass(frozen=True)
class WorkloadConfig:
    """Sample workload configuration."""
    name: str
    manifest: Optional[str]
    image: Optional[str]
    service_port: int
    container_port: int
    load_generator: str


@dataclass(frozen=True)
class RunConfig:
    """Run-level execution settings."""
    parallelism: Optional[int]
    timeout_seconds: float
    run_timeout_seconds: Optional[float]
    max_attempts: int
    backoff_base: float
    backoff_cap: float
    backoff_jitter: float
    rollback_grace_seconds: float
    lenient_checks: bool


@dataclass(frozen=True)
class Settings:
    """Complete otelops configuration."""
    cluster: ClusterConfig
    backend: BackendConfig
    workload: WorkloadConfig
    run: RunConfig
    vsphere_server: Optional[str] = None
    codespace_name: Optional[str] = None

    def with_overrides(self, **overrides: Any) -> "Settings":
        """
        Return a copy with CLI overrides applied.

        Accepted keys: endpoint, namespace, release, cluster_kind, parallelism,
        timeout_seconds, run_timeout_seconds, lenient_checks. None values are ignored.
        """
        cluster_keys = {"namespace", "release", "cluster_kind"}
        run_keys = {"parallelism", "timeout_seconds", "run_timeout_seconds", "lenient_checks"}
        cluster_changes = {}
        run_changes = {}
        backend_changes = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key in cluster_keys:
                cluster_changes[key] = value
            elif key in run_keys:
                run_changes[key] = value
            elif key == "endpoint":
                backend_changes[key] = value
            else:
                raise ConfigError(f"Unknown configuration override: {key}")

        settings = replace(
            self,
            cluster=replace(self.cluster, **cluster_changes),
            backend=replace(self.backend, **backend_changes),
            run=replace(self.run, **run_changes),
        )
        validate_settings(settings)
        return settings


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_settings(self) -> Settings:
        """Get the complete settings."""
        ...


def _get_int(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _get_float(env: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def validate_settings(settings: Settings) -> None:
    """
    Validate cross-field constraints.

    Raises:
        ConfigError: If any value is out of range
    """
    errors: List[str] = []
    if settings.cluster.cluster_kind not in SUPPORTED_CLUSTER_KINDS:
        errors.append(
            f"cluster kind {settings.cluster.cluster_kind!r} not supported "
            f"(expected one of: {', '.join(SUPPORTED_CLUSTER_KINDS)})"
        )
    if not settings.cluster.namespace:
        errors.append("namespace must not be empty")
    if not settings.cluster.release:
        errors.append("release must not be empty")
    if settings.run.parallelism is not None and settings.run.parallelism < 0:
        errors.append("parallelism must be >= 0")
    if settings.run.timeout_seconds <= 0:
        errors.append("timeout seconds must be > 0")
    if settings.run.run_timeout_seconds is not None and settings.run.run_timeout_seconds <= 0:
        errors.append("run timeout seconds must be > 0")
    if settings.run.max_attempts < 1:
        errors.append("max attempts must be >= 1")
    if settings.run.backoff_jitter < 0:
        errors.append("backoff jitter must be >= 0")
    if settings.run.rollback_grace_seconds <= 0:
        errors.append("rollback grace seconds must be > 0")
    if errors:
        raise ConfigError("; ".join(errors))


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def __init__(self, env: Optional[Mapping[str, str]] = None, env_file: Optional[str] = None):
        """
        Args:
            env: Mapping to read instead of os.environ (tests)
            env_file: Optional .env file loaded into os.environ first
        """
        if env is None:
            if env_file:
                load_dotenv(env_file)
            else:
                load_dotenv()
            env = os.environ
        self._env = env

    def get_settings(self) -> Settings:
        """Build settings from environment variables."""
        env = self._env

        cluster = ClusterConfig(
            namespace=env.get("OTELOPS_NAMESPACE", "monitoring"),
            release=env.get("OTELOPS_RELEASE", "monitoring-int4"),
            # K8S is what the codespace setup exports
            cluster_kind=env.get("OTELOPS_CLUSTER_KIND") or env.get("K8S", "k3d"),
            chart=env.get("OTELOPS_CHART", "k8s-infra"),
            chart_repo=env.get("OTELOPS_CHART_REPO", "https://charts.signoz.io"),
            chart_values=env.get("OTELOPS_CHART_VALUES") or None,
            kube_context=env.get("OTELOPS_KUBE_CONTEXT") or None,
        )

        backend = BackendConfig(
            endpoint=env.get("OTELOPS_ENDPOINT", "host.k3d.internal:4317"),
            compose_file=env.get("OTELOPS_COMPOSE_FILE", "signoz/docker-compose.yml"),
            patch_file=env.get("OTELOPS_BACKEND_PATCH", "signoz/patch.diff") or None,
            frontend_url=env.get("OTELOPS_FRONTEND_URL", "http://localhost:3301"),
            query_service_url=env.get("OTELOPS_QUERY_SERVICE_URL", "http://localhost:8080"),
            compose_command=env.get("OTELOPS_COMPOSE_COMMAND", "docker-compose"),
        )

        workload = WorkloadConfig(
            name=env.get("OTELOPS_WORKLOAD_NAME", "rolldice"),
            manifest=env.get("OTELOPS_WORKLOAD_MANIFEST") or None,
            image=env.get("OTELOPS_WORKLOAD_IMAGE") or None,
            service_port=_get_int(env, "OTELOPS_WORKLOAD_PORT", 80),
            container_port=_get_int(env, "OTELOPS_WORKLOAD_CONTAINER_PORT", 8080),
            load_generator=env.get("OTELOPS_LOAD_GENERATOR", "rolldice-load-generator"),
        )

        parallelism = _get_int(env, "OTELOPS_PARALLELISM", None)
        run = RunConfig(
            parallelism=parallelism or None,
            timeout_seconds=_get_float(env, "OTELOPS_TIMEOUT_SECONDS", 120.0),
            run_timeout_seconds=_get_float(env, "OTELOPS_RUN_TIMEOUT_SECONDS", None),
            max_attempts=_get_int(env, "OTELOPS_MAX_ATTEMPTS", 3),
            backoff_base=_get_float(env, "OTELOPS_BACKOFF_BASE", 2.0),
            backoff_cap=_get_float(env, "OTELOPS_BACKOFF_CAP", 30.0),
            backoff_jitter=_get_float(env, "OTELOPS_BACKOFF_JITTER", 0.1),
            rollback_grace_seconds=_get_float(env, "OTELOPS_ROLLBACK_GRACE_SECONDS", 60.0),
            lenient_checks=_get_bool(env, "OTELOPS_LENIENT_CHECKS", False),
        )

        settings = Settings(
            cluster=cluster,
            backend=backend,
            workload=workload,
            run=run,
            vsphere_server=env.get("VSPHERE_SERVER") or None,
            codespace_name=env.get("CODESPACE_NAME") or None,
        )
        validate_settings(settings)
        return settings
