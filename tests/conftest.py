"""
Shared pytest fixtures for otelops tests.

This module provides common fixtures including:
- CommandMocker: Stand-in for the CommandRunner with canned, pattern-matched responses
- An httpx MockTransport routing probe URLs to canned responses
- Settings, ResourceClient and StepContext fixtures wired to both
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from otelops.config import EnvConfigProvider, Settings
from otelops.modules.api import ExecResult
from otelops.modules.executor import CancelToken, StepContext
from otelops.modules.resources import ResourceClient

FORWARD_PORT = 54321


# =============================================================================
# Command Mocking Infrastructure
# =============================================================================

@dataclass
class CommandResponse:
    """Represents a mocked tool invocation result."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    delay: float = 0.0

    def to_exec_result(self) -> ExecResult:
        return ExecResult(stdout=self.stdout, stderr=self.stderr, exit_code=self.exit_code)


ResponseFactory = Callable[[List[str], Optional[str]], CommandResponse]
Responder = Union[CommandResponse, ResponseFactory, BaseException, List[Any]]


@dataclass
class CommandCall:
    """Record of a tool invocation made during testing."""
    argv: List[str]
    command_str: str
    input_text: Optional[str] = None
    matched_pattern: Optional[str] = None
    response: Optional[CommandResponse] = None


class FakeProcess:
    """Enough of asyncio.subprocess.Process for port-forward sessions."""

    def __init__(self, stdout_lines: Sequence[str] = (), exit_code: Optional[int] = None, stderr: str = ""):
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        for line in stdout_lines:
            self.stdout.feed_data(f"{line}\n".encode())
        self.stderr.feed_data(stderr.encode())
        self.stderr.feed_eof()
        self.returncode = exit_code
        if exit_code is not None:
            self.stdout.feed_eof()
        self.terminated = False

    def terminate(self) -> None:
        self.terminated = True
        if self.returncode is None:
            self.returncode = -15
        self.stdout.feed_eof()

    def kill(self) -> None:
        self.terminated = True
        if self.returncode is None:
            self.returncode = -9
        self.stdout.feed_eof()

    async def wait(self) -> int:
        return self.returncode


class CommandMocker:
    """
    Replacement for CommandRunner with pattern-matched responses.

    Patterns match against the full command line ("kubectl -n monitoring get pods ...").
    A responder may be a CommandResponse, a callable ``(argv, input_text)``
    returning one, an exception to raise, or a list consumed in order whose
    last element repeats.

    Usage:
        def test_get(command_mocker, client):
            command_mocker.register("get namespace", CommandResponse(stdout="{}"))
            await client.get("namespace", "monitoring")
            assert command_mocker.was_called_with("get namespace monitoring")
    """

    def __init__(self):
        self._responses: List[Tuple[Union[str, Pattern], List[Responder], int]] = []
        self._spawns: List[Tuple[Union[str, Pattern], Tuple[List[str], Optional[int], str]]] = []
        self._call_history: List[CommandCall] = []
        self._default_response = CommandResponse(
            stderr="Error: mock not configured for this command",
            exit_code=1
        )
        self.processes: List[FakeProcess] = []

    def register(
        self,
        pattern: Union[str, Pattern],
        response: Responder,
        priority: int = 0
    ) -> "CommandMocker":
        """
        Register a response for commands matching the pattern.

        Args:
            pattern: String (substring match) or compiled regex
            response: Responder used when matched
            priority: Higher priority patterns are checked first

        Returns:
            self for chaining
        """
        sequence = list(response) if isinstance(response, list) else [response]
        self._responses.append((pattern, sequence, priority))
        # stable sort keeps registration order within a priority
        self._responses.sort(key=lambda x: x[2], reverse=True)
        return self

    def register_scenario(self, scenario_name: str) -> "CommandMocker":
        """Register all command responses of a named scenario."""
        from fixtures.cluster_scenarios import SCENARIOS

        if scenario_name not in SCENARIOS:
            raise ValueError(
                f"Unknown scenario: {scenario_name}. "
                f"Available: {list(SCENARIOS.keys())}"
            )

        for pattern, response in SCENARIOS[scenario_name].items():
            self.register(pattern, response)
        return self

    def register_spawn(
        self,
        pattern: Union[str, Pattern],
        stdout_lines: Sequence[str] = (),
        exit_code: Optional[int] = None,
        stderr: str = "",
    ) -> "CommandMocker":
        """Register the process returned for long-running commands."""
        self._spawns.append((pattern, (list(stdout_lines), exit_code, stderr)))
        return self

    def set_default_response(self, response: CommandResponse) -> "CommandMocker":
        self._default_response = response
        return self

    @staticmethod
    def _matches(pattern: Union[str, Pattern], command_str: str) -> bool:
        if isinstance(pattern, str):
            return pattern in command_str
        return bool(pattern.search(command_str))

    async def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> ExecResult:
        """Mock implementation of CommandRunner.run."""
        cmd = list(argv)
        command_str = " ".join(cmd)
        matched_pattern = None
        responder: Responder = self._default_response

        for pattern, sequence, _ in self._responses:
            if self._matches(pattern, command_str):
                matched_pattern = pattern if isinstance(pattern, str) else pattern.pattern
                responder = sequence.pop(0) if len(sequence) > 1 else sequence[0]
                break

        call = CommandCall(argv=cmd, command_str=command_str, input_text=input_text, matched_pattern=matched_pattern)
        self._call_history.append(call)

        if isinstance(responder, BaseException):
            raise responder
        response = responder(cmd, input_text) if callable(responder) else responder
        call.response = response
        if response.delay:
            await asyncio.sleep(response.delay)
        return response.to_exec_result()

    async def spawn(self, argv: Sequence[str]) -> FakeProcess:
        """Mock implementation of CommandRunner.spawn."""
        cmd = list(argv)
        command_str = " ".join(cmd)
        self._call_history.append(CommandCall(argv=cmd, command_str=command_str))
        lines, exit_code, stderr = [f"Forwarding from 127.0.0.1:{FORWARD_PORT} -> 80"], None, ""
        for pattern, spec in self._spawns:
            if self._matches(pattern, command_str):
                lines, exit_code, stderr = spec
                break
        process = FakeProcess(lines, exit_code=exit_code, stderr=stderr)
        self.processes.append(process)
        return process

    @property
    def calls(self) -> List[CommandCall]:
        """Get all tool calls made during the test."""
        return self._call_history

    @property
    def call_count(self) -> int:
        return len(self._call_history)

    def was_called_with(self, pattern: str) -> bool:
        """Check if any call contained the given pattern."""
        return any(pattern in call.command_str for call in self._call_history)

    def get_calls_matching(self, pattern: str) -> List[CommandCall]:
        """Get all calls containing the given pattern."""
        return [c for c in self._call_history if pattern in c.command_str]

    def reset(self):
        """Clear call history (but keep registered responses)."""
        self._call_history = []

    def clear(self):
        """Clear responses, spawns and call history."""
        self._responses = []
        self._spawns = []
        self._call_history = []


# =============================================================================
# HTTP Mocking Infrastructure
# =============================================================================

@dataclass
class HttpRoutes:
    """Canned HTTP responses keyed by URL path."""
    routes: Dict[str, Tuple[int, Any]] = field(default_factory=dict)
    requests: List[httpx.Request] = field(default_factory=list)

    def add(self, path: str, status: int = 200, body: Any = "ok") -> "HttpRoutes":
        self.routes[path] = (status, body)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            raise httpx.ConnectError("Connection refused", request=request)
        status, body = route
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=str(body))

    def paths_requested(self) -> List[str]:
        return [r.url.path for r in self.requests]


# =============================================================================
# Fixtures
# =============================================================================

TEST_ENV = {
    "OTELOPS_NAMESPACE": "monitoring",
    "OTELOPS_RELEASE": "monitoring-int4",
    "OTELOPS_CLUSTER_KIND": "k3d",
    "OTELOPS_BACKEND_PATCH": "",
    "OTELOPS_MAX_ATTEMPTS": "3",
    "OTELOPS_BACKOFF_BASE": "0",
    "OTELOPS_BACKOFF_CAP": "0",
    "OTELOPS_TIMEOUT_SECONDS": "120",
}


def make_settings(**env: str) -> Settings:
    """Settings from TEST_ENV with per-test overrides."""
    return EnvConfigProvider(env={**TEST_ENV, **env}).get_settings()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def command_mocker() -> CommandMocker:
    """A CommandMocker where every unregistered command fails."""
    return CommandMocker()


@pytest.fixture
def command_mocker_strict() -> CommandMocker:
    """
    Strict mocker: unregistered commands look like a missing binary.

    Use this when all tool interactions must be explicitly accounted for.
    """
    mocker = CommandMocker()
    mocker.set_default_response(CommandResponse(stderr="STRICT MODE: No mock registered for this command", exit_code=127))
    return mocker


@pytest.fixture
def http_routes() -> HttpRoutes:
    return HttpRoutes()


@pytest_asyncio.fixture
async def client(settings, command_mocker, http_routes):
    """ResourceClient backed by the CommandMocker and the HTTP routes."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(http_routes.handler))
    resource_client = ResourceClient(
        namespace=settings.cluster.namespace,
        compose_file=settings.backend.compose_file,
        runner=command_mocker,
        http_client=http_client,
    )
    yield resource_client
    await http_client.aclose()


@pytest.fixture
def token() -> CancelToken:
    return CancelToken()


@pytest.fixture
def step_ctx(client, settings, token) -> StepContext:
    return StepContext(client=client, settings=settings, token=token)


def json_response(payload: Dict[str, Any]) -> CommandResponse:
    return CommandResponse(stdout=json.dumps(payload))


def not_found(kind: str, name: str) -> CommandResponse:
    return CommandResponse(
        stderr=f'Error from server (NotFound): {kind} "{name}" not found',
        exit_code=1,
    )


# =============================================================================
# Test Markers Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests for a single module"
    )
    config.addinivalue_line(
        "markers", "scenario: End-to-end orchestration scenarios against a mocked cluster"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take a long time to run"
    )
