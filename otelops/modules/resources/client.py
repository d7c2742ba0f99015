#!/usr/bin/env python3
"""
Resource Client - typed wrapper over cluster and compose operations.

Every operation is a single shot; retries belong to the step executor
and the health check suite. Errors are reported through the typed
exceptions in otelops.errors instead of text patterns.
"""

import asyncio
import json
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Collection,
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

import httpx
import yaml

from ...errors import (
    ApplyError,
    NotFound,
    OperationTimeout,
    ProbeError,
    ResourceError,
)
from ..api.models import AppliedResource, ExecResult, ProbeResult, Resource
from .runner import CommandRunner

logger = logging.getLogger("otelops.resources")

Manifest = Union[Dict[str, Any], Sequence[Dict[str, Any]], str, Path]

ROLLOUT_KINDS = {"deployment", "statefulset", "daemonset"}
# kubectl "Error from server (NotFound): ..." and helm "...release: not found"
NOT_FOUND_PATTERN = re.compile(
    r"^Error from server \(NotFound\):|: release: not found$",
    re.MULTILINE,
)
APPLY_LINE_PATTERN = re.compile(
    r"^(?P<kind>[\w.-]+)/(?P<name>[\w.-]+) (?P<action>created|configured|unchanged|serverside-applied)"
)
FORWARDING_PATTERN = re.compile(r"Forwarding from (?:127\.0\.0\.1|\[::1\]|localhost):(?P<port>\d+)")


@dataclass(frozen=True)
class PortForwardSession:
    """An active port-forward to a cluster service."""

    service: str
    namespace: str
    local_port: int
    remote_port: int

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.local_port}"

    def url(self, path: str = "/") -> str:
        return f"{self.base_url}/{path.lstrip('/')}"


@dataclass(frozen=True)
class ComposeService:
    """One row of ``docker-compose ps``."""

    name: str
    state: str

    @property
    def running(self) -> bool:
        return self.state.lower().startswith(("up", "running"))


def load_manifests(manifest: Manifest) -> List[Dict[str, Any]]:
    """
    Normalize a manifest argument into a list of documents.

    Args:
        manifest: A document, a list of documents, or a path to a YAML file

    Raises:
        ApplyError: If the file is missing or not valid YAML
    """
    if isinstance(manifest, dict):
        return [manifest]
    if isinstance(manifest, (str, Path)):
        path = Path(manifest)
        try:
            with path.open() as f:
                docs = [doc for doc in yaml.safe_load_all(f) if doc]
        except FileNotFoundError:
            raise ApplyError(f"Manifest file not found: {path}") from None
        except yaml.YAMLError as e:
            raise ApplyError(f"Invalid manifest {path}: {e}") from None
        return docs
    return [doc for doc in manifest if doc]


class ResourceClient:
    """
    Cluster (kubectl, helm) and compose (docker-compose) operations.

    Connection configuration is fixed at construction and shared read-only
    by all concurrent callers.
    """

    def __init__(
        self,
        namespace: str = "default",
        kube_context: Optional[str] = None,
        compose_file: Optional[str] = None,
        compose_command: str = "docker-compose",
        runner: Optional[CommandRunner] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        tool_timeout: float = 60.0,
    ):
        """
        Initialize resource client.

        Args:
            namespace: Default namespace for cluster operations
            kube_context: Optional kubeconfig context passed to kubectl and helm
            compose_file: docker-compose file of the observability backend
            compose_command: Compose binary ("docker-compose" or "docker compose")
            runner: Command runner (tests inject a fake)
            http_client: Shared httpx client for probes
            tool_timeout: Default timeout for one tool invocation
        """
        self.namespace = namespace
        self.kube_context = kube_context
        self.compose_file = compose_file
        self.compose_command = compose_command.split()
        self.runner = runner or CommandRunner(default_timeout=tool_timeout)
        self.tool_timeout = tool_timeout
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(follow_redirects=True)

    @classmethod
    def from_settings(cls, settings, runner: Optional[CommandRunner] = None) -> "ResourceClient":
        """Build a client from otelops Settings."""
        return cls(
            namespace=settings.cluster.namespace,
            kube_context=settings.cluster.kube_context,
            compose_file=settings.backend.compose_file,
            compose_command=settings.backend.compose_command,
            runner=runner,
            tool_timeout=settings.run.timeout_seconds,
        )

    async def __aenter__(self) -> "ResourceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # Tool invocation helpers

    def _kubectl_argv(self, args: Sequence[str], namespace: Optional[str] = None) -> List[str]:
        argv = ["kubectl"]
        if self.kube_context:
            argv += ["--context", self.kube_context]
        if namespace is not None:
            argv += ["-n", namespace]
        return argv + list(args)

    def _helm_argv(self, args: Sequence[str]) -> List[str]:
        argv = ["helm"] + list(args)
        if self.kube_context:
            argv += ["--kube-context", self.kube_context]
        return argv

    def _compose_argv(self, args: Sequence[str]) -> List[str]:
        argv = list(self.compose_command)
        if self.compose_file:
            argv += ["-f", self.compose_file]
        return argv + list(args)

    async def _run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> ExecResult:
        return await self.runner.run(argv, timeout=timeout or self.tool_timeout, input_text=input_text)

    @staticmethod
    def _raise_for(
        result: ExecResult,
        argv: Sequence[str],
        message: str,
        error_cls: type = ResourceError,
    ) -> None:
        if result.ok:
            return
        detail = (result.stderr or result.stdout).strip()
        if NOT_FOUND_PATTERN.search(detail):
            raise NotFound(f"{message}: {detail}", argv=argv, exit_code=result.exit_code, stderr=result.stderr)
        raise error_cls(f"{message}: {detail}", argv=argv, exit_code=result.exit_code, stderr=result.stderr)

    # Cluster operations

    async def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Resource:
        """
        Fetch one object.

        Raises:
            NotFound: If the object does not exist
        """
        ns = namespace or self.namespace
        argv = self._kubectl_argv(["get", kind, name, "-o", "json"], namespace=ns)
        result = await self._run(argv)
        self._raise_for(result, argv, f"Failed to get {kind}/{name}")
        data = json.loads(result.stdout)
        return Resource(
            kind=data.get("kind", kind),
            name=data.get("metadata", {}).get("name", name),
            namespace=data.get("metadata", {}).get("namespace", ns),
            raw=data,
        )

    async def list_resources(
        self,
        kind: str,
        namespace: Optional[str] = None,
        selector: Optional[str] = None,
        field_selector: Optional[str] = None,
        all_namespaces: bool = False,
    ) -> List[Resource]:
        """List objects of a kind, optionally filtered by label/field selectors."""
        args = ["get", kind, "-o", "json"]
        if selector:
            args += ["-l", selector]
        if field_selector:
            args += ["--field-selector", field_selector]
        if all_namespaces:
            args.append("--all-namespaces")
            argv = self._kubectl_argv(args)
        else:
            argv = self._kubectl_argv(args, namespace=namespace or self.namespace)
        result = await self._run(argv)
        self._raise_for(result, argv, f"Failed to list {kind}")
        items = json.loads(result.stdout or "{}").get("items", [])
        return [
            Resource(
                kind=item.get("kind", kind),
                name=item.get("metadata", {}).get("name", ""),
                namespace=item.get("metadata", {}).get("namespace"),
                raw=item,
            )
            for item in items
        ]

    async def apply(self, manifest: Manifest, namespace: Optional[str] = None) -> List[AppliedResource]:
        """
        Apply manifests with upsert semantics.

        Raises:
            ApplyError: If kubectl rejects the manifests
        """
        docs = load_manifests(manifest)
        if not docs:
            raise ApplyError("No manifests to apply")
        ns = namespace or self.namespace
        argv = self._kubectl_argv(["apply", "-f", "-"], namespace=ns)
        result = await self._run(argv, input_text=yaml.safe_dump_all(docs, sort_keys=False))
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise ApplyError(f"kubectl apply failed: {detail}", argv=argv, exit_code=result.exit_code, stderr=result.stderr)

        applied = []
        for line in result.stdout.splitlines():
            match = APPLY_LINE_PATTERN.match(line.strip())
            if match:
                applied.append(
                    AppliedResource(
                        kind=match.group("kind"),
                        name=match.group("name"),
                        namespace=ns,
                        action=match.group("action"),
                    )
                )
        logger.info(f"Applied {len(applied)} resource(s) in namespace {ns}")
        return applied

    async def delete(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        missing_ok: bool = True,
    ) -> bool:
        """
        Delete one object.

        Returns:
            True if deleted, False if it was already absent

        Raises:
            NotFound: If absent and missing_ok is False
        """
        argv = self._kubectl_argv(["delete", kind, name, "--wait=false"], namespace=namespace or self.namespace)
        result = await self._run(argv)
        try:
            self._raise_for(result, argv, f"Failed to delete {kind}/{name}")
        except NotFound:
            if missing_ok:
                logger.debug(f"{kind}/{name} already absent")
                return False
            raise
        return True

    async def delete_manifest(self, manifest: Manifest, namespace: Optional[str] = None) -> List[str]:
        """Delete every object in a manifest, ignoring ones already absent."""
        docs = load_manifests(manifest)
        deleted = []
        for doc in reversed(docs):
            kind = doc.get("kind", "")
            name = doc.get("metadata", {}).get("name", "")
            ns = doc.get("metadata", {}).get("namespace") or namespace or self.namespace
            if await self.delete(kind.lower(), name, namespace=ns):
                deleted.append(f"{kind.lower()}/{name}")
        return deleted

    async def exec(
        self,
        target: str,
        command: Sequence[str],
        namespace: Optional[str] = None,
        container: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Run a command in a pod (``target`` may be ``deployment/name``)."""
        args = ["exec", target]
        if container:
            args += ["-c", container]
        args += ["--"] + list(command)
        argv = self._kubectl_argv(args, namespace=namespace or self.namespace)
        return await self._run(argv, timeout=timeout)

    async def logs(
        self,
        target: Optional[str] = None,
        selector: Optional[str] = None,
        namespace: Optional[str] = None,
        tail: int = 100,
    ) -> str:
        """Fetch recent logs by pod/deployment target or label selector."""
        if not target and not selector:
            raise ValueError("logs() needs a target or a selector")
        args = ["logs", f"--tail={tail}"]
        if target:
            args.append(target)
        else:
            args += ["-l", selector]
        argv = self._kubectl_argv(args, namespace=namespace or self.namespace)
        result = await self._run(argv)
        self._raise_for(result, argv, "Failed to fetch logs")
        return result.stdout

    async def wait_until_ready(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        """
        Block until a workload is rolled out or a pod is Ready.

        Raises:
            OperationTimeout: If not ready within timeout
            NotFound: If the object does not exist
        """
        seconds = max(1, int(timeout))
        if kind.lower() in ROLLOUT_KINDS:
            args = ["rollout", "status", f"{kind}/{name}", f"--timeout={seconds}s"]
        else:
            args = ["wait", "--for=condition=Ready", f"{kind}/{name}", f"--timeout={seconds}s"]
        argv = self._kubectl_argv(args, namespace=namespace or self.namespace)
        # kubectl enforces the timeout itself; the runner bound is a backstop
        result = await self._run(argv, timeout=timeout + 10)
        if not result.ok and "timed out" in (result.stderr + result.stdout).lower():
            raise OperationTimeout(f"{kind}/{name} not ready after {seconds}s")
        self._raise_for(result, argv, f"{kind}/{name} not ready")

    @asynccontextmanager
    async def port_forward(
        self,
        service: str,
        local_port: int = 0,
        remote_port: int = 80,
        namespace: Optional[str] = None,
        ready_timeout: float = 15.0,
    ) -> AsyncIterator[PortForwardSession]:
        """
        Forward a local port to a service for the duration of the block.

        ``local_port=0`` lets kubectl choose a free port. The forwarding
        process is terminated on every exit path, including cancellation.
        Its output is drained while the block runs so kubectl never stalls
        on a full pipe.

        Raises:
            ResourceError: If the forward cannot be established
            OperationTimeout: If kubectl does not report readiness in time
        """
        ns = namespace or self.namespace
        target = service if "/" in service else f"svc/{service}"
        ports = f"{local_port}:{remote_port}" if local_port else f":{remote_port}"
        argv = self._kubectl_argv(["port-forward", target, ports], namespace=ns)
        process = await self.runner.spawn(argv)
        drains: List[asyncio.Future] = []
        try:
            try:
                port = await asyncio.wait_for(self._await_forwarding(process, argv), timeout=ready_timeout)
            except asyncio.TimeoutError:
                raise OperationTimeout(f"Port-forward to {target} not ready after {ready_timeout}s") from None
            logger.debug(f"Port-forward {target} -> 127.0.0.1:{port} established")
            drains = [asyncio.ensure_future(self._drain(stream, target)) for stream in (process.stdout, process.stderr)]
            yield PortForwardSession(service=service, namespace=ns, local_port=port, remote_port=remote_port)
        finally:
            await self._stop_process(process)
            if drains:
                _, pending = await asyncio.wait(drains, timeout=1.0)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*drains, return_exceptions=True)

    @staticmethod
    async def _await_forwarding(process, argv: Sequence[str]) -> int:
        while True:
            line = await process.stdout.readline()
            if not line:
                stderr = (await process.stderr.read()).decode(errors="replace").strip()
                raise ResourceError(f"Port-forward exited: {stderr}", argv=argv, exit_code=process.returncode, stderr=stderr)
            match = FORWARDING_PATTERN.search(line.decode(errors="replace"))
            if match:
                return int(match.group("port"))

    @staticmethod
    async def _drain(stream, target: str) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug(f"port-forward {target}: {line.decode(errors='replace').rstrip()}")

    @staticmethod
    async def _stop_process(process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

    async def http_probe(
        self,
        url: str,
        expected_status: Union[int, Collection[int]] = 200,
        timeout: float = 10.0,
        method: str = "GET",
    ) -> ProbeResult:
        """
        Issue one HTTP request and check its status.

        Raises:
            ProbeError: On connection failure or unexpected status
        """
        expected = {expected_status} if isinstance(expected_status, int) else set(expected_status)
        start = time.monotonic()
        try:
            response = await self._http.request(method, url, timeout=timeout)
        except httpx.HTTPError as e:
            raise ProbeError(f"{method} {url} failed: {e!r}", url=url) from None
        elapsed_ms = int((time.monotonic() - start) * 1000)
        if response.status_code not in expected:
            raise ProbeError(
                f"{method} {url} returned HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )
        return ProbeResult(url=url, status_code=response.status_code, body=response.text, elapsed_ms=elapsed_ms)

    # Helm operations

    async def helm_upgrade_install(
        self,
        release: str,
        chart: str,
        namespace: Optional[str] = None,
        repo: Optional[str] = None,
        values_file: Optional[str] = None,
        set_values: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """
        Install or upgrade a release (idempotent).

        Raises:
            ApplyError: If helm fails
        """
        args = ["upgrade", "--install", release, chart, "-n", namespace or self.namespace, "--create-namespace"]
        if repo:
            args += ["--repo", repo]
        if values_file:
            args += ["-f", values_file]
        for key, value in (set_values or {}).items():
            args += ["--set", f"{key}={value}"]
        argv = self._helm_argv(args)
        result = await self._run(argv, timeout=timeout)
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise ApplyError(f"helm upgrade --install {release} failed: {detail}", argv=argv, exit_code=result.exit_code, stderr=result.stderr)
        logger.info(f"Release {release} installed from {chart}")
        return result

    async def helm_uninstall(self, release: str, namespace: Optional[str] = None) -> bool:
        """
        Uninstall a release.

        Returns:
            True if uninstalled, False if the release was already absent
        """
        argv = self._helm_argv(["uninstall", release, "-n", namespace or self.namespace])
        result = await self._run(argv)
        try:
            self._raise_for(result, argv, f"helm uninstall {release} failed")
        except NotFound:
            logger.debug(f"Release {release} already absent")
            return False
        return True

    async def helm_status(self, release: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        """
        Return ``helm status -o json`` for a release.

        Raises:
            NotFound: If the release does not exist
        """
        argv = self._helm_argv(["status", release, "-n", namespace or self.namespace, "-o", "json"])
        result = await self._run(argv)
        self._raise_for(result, argv, f"helm status {release} failed")
        return json.loads(result.stdout)

    # Compose operations

    async def compose_up(self, services: Sequence[str] = (), timeout: Optional[float] = None) -> ExecResult:
        argv = self._compose_argv(["up", "-d"] + list(services))
        result = await self._run(argv, timeout=timeout)
        self._raise_for(result, argv, "compose up failed")
        return result

    async def compose_down(self, timeout: Optional[float] = None) -> ExecResult:
        argv = self._compose_argv(["down"])
        result = await self._run(argv, timeout=timeout)
        self._raise_for(result, argv, "compose down failed")
        return result

    async def compose_ps(self) -> List[ComposeService]:
        """List compose services with their state."""
        argv = self._compose_argv(["ps"])
        result = await self._run(argv)
        self._raise_for(result, argv, "compose ps failed")
        services = []
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        for line in lines[1:]:
            if set(line.strip()) <= {"-"}:
                continue
            columns = re.split(r"\s{2,}", line.strip())
            state = next((c for c in columns if re.match(r"(?i)^(up|running|exit|restarting|created|paused)", c)), "")
            services.append(ComposeService(name=columns[0], state=state))
        return services

    async def compose_exec(self, service: str, command: Sequence[str], timeout: Optional[float] = None) -> ExecResult:
        argv = self._compose_argv(["exec", "-T", service] + list(command))
        return await self._run(argv, timeout=timeout)

    # Raw tools

    async def run_tool(self, argv: Sequence[str], timeout: Optional[float] = None) -> ExecResult:
        """Run an arbitrary host tool (prerequisite checks, patching)."""
        return await self._run(argv, timeout=timeout)
