"""
Async subprocess runner for kubectl, helm and docker-compose.
"""

import asyncio
import logging
import shlex
from typing import Dict, List, Optional, Sequence

from ...errors import CommandNotFound, OperationTimeout
from ..api.models import ExecResult

logger = logging.getLogger("otelops.resources.runner")


class CommandRunner:
    """Runs control-plane CLI tools without a shell."""

    def __init__(self, env: Optional[Dict[str, str]] = None, default_timeout: float = 60.0):
        """
        Args:
            env: Optional environment for child processes (inherits when None)
            default_timeout: Timeout used when a call does not pass one
        """
        self.env = env
        self.default_timeout = default_timeout

    async def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> ExecResult:
        """
        Execute a command and capture its output.

        Args:
            argv: Command and arguments
            timeout: Seconds before the process is killed
            input_text: Optional text written to stdin

        Returns:
            ExecResult with stdout, stderr and exit code

        Raises:
            CommandNotFound: If the binary is not installed
            OperationTimeout: If the command exceeds its timeout
        """
        cmd: List[str] = list(argv)
        timeout = timeout if timeout is not None else self.default_timeout
        logger.debug(f"Running: {shlex.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except FileNotFoundError:
            raise CommandNotFound(f"Command not found: {cmd[0]}", argv=cmd, exit_code=127) from None

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input_text.encode() if input_text is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            raise OperationTimeout(f"Command timed out after {timeout}s: {shlex.join(cmd)}") from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        return ExecResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
        )

    async def spawn(self, argv: Sequence[str]) -> asyncio.subprocess.Process:
        """
        Start a long-running command (port-forward) and return the process.

        Raises:
            CommandNotFound: If the binary is not installed
        """
        cmd = list(argv)
        logger.debug(f"Spawning: {shlex.join(cmd)}")
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except FileNotFoundError:
            raise CommandNotFound(f"Command not found: {cmd[0]}", argv=cmd, exit_code=127) from None

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()
