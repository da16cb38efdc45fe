"""
Process execution for the external resume mechanism.

The orchestrator only needs "run this command with this environment, give up
after N seconds, tell me exit code and output". ProcessExecutor is that
capability; SubprocessExecutor implements it with asyncio subprocesses.
"""

import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional

from .logging import get_logger


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of one command run."""

    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class ProcessExecutor:
    """Runs a command to completion or timeout."""

    async def run(
        self, command: List[str], env: Dict[str, str], timeout_seconds: float
    ) -> ProcessResult:
        raise NotImplementedError


class SubprocessExecutor(ProcessExecutor):
    """Runs commands as child processes of the event loop."""

    def __init__(self, terminate_grace_seconds: float = 2.0, drain_timeout_seconds: float = 2.0):
        self.terminate_grace_seconds = terminate_grace_seconds
        self.drain_timeout_seconds = drain_timeout_seconds
        self.logger = get_logger("waker.executor")

    async def run(
        self, command: List[str], env: Dict[str, str], timeout_seconds: float
    ) -> ProcessResult:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )

        stdout = bytearray()
        stderr = bytearray()
        readers = asyncio.gather(
            self._drain(proc.stdout, stdout),
            self._drain(proc.stderr, stderr),
        )

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            await self._terminate(proc)
        except asyncio.CancelledError:
            await self._terminate(proc)
            readers.cancel()
            raise

        # A daemon started by the command may inherit the pipes and keep them open.
        try:
            await asyncio.wait_for(readers, timeout=self.drain_timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Output pipes still open after exit; using output captured so far",
                metadata={"command": command, "pid": proc.pid},
            )

        return ProcessResult(
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            timed_out=timed_out,
        )

    @staticmethod
    async def _drain(stream: Optional[asyncio.StreamReader], sink: bytearray) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            sink.extend(chunk)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return

        try:
            if sys.platform.startswith("win"):
                proc.terminate()
            else:
                proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_seconds)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
