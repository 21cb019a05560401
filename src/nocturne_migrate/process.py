"""
Process Execution
=================
Runs external dump/restore tools (mongodump, mongorestore, pg_dump) as child
processes with captured output, an optional timeout, and cooperative
cancellation. A timed-out or cancelled child is terminated, then killed if it
does not exit within the grace period.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .utils import mask_connection_string

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of a child process run."""
    program: str
    args: List[str] = field(default_factory=list)
    return_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.return_code == 0 and not self.timed_out and not self.cancelled

    @property
    def command_line(self) -> str:
        """Command line with credentials masked, safe for logging."""
        parts = [self.program]
        for arg in self.args:
            if arg.startswith("--uri="):
                parts.append("--uri=" + mask_connection_string(arg[len("--uri="):]))
            else:
                parts.append(mask_connection_string(arg) if "://" in arg else arg)
        return " ".join(parts)


class ProcessRunner:
    """
    Spawns child processes for external tools.

    Cancellation is signalled through an ``asyncio.Event`` shared with the
    caller, so a single signal from the CLI reaches the engine, the backup
    service and any running child process.
    """

    def __init__(self, kill_grace_seconds: float = 5.0):
        self.kill_grace_seconds = kill_grace_seconds

    async def run(
        self,
        program: str,
        args: List[str],
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> ProcessResult:
        """
        Run a program to completion, timeout, or cancellation.

        Args:
            program: Executable name or path
            args: Arguments passed to the executable
            timeout: Seconds before the child is terminated (None = no limit)
            cancel_event: Event that, when set, terminates the child
            env: Extra environment variables merged over os.environ
            cwd: Working directory for the child

        Returns:
            ProcessResult with exit code and captured output

        Raises:
            FileNotFoundError: If the executable does not exist
        """
        result = ProcessResult(program=program, args=list(args))
        child_env = None
        if env:
            child_env = dict(os.environ)
            child_env.update(env)

        start = time.monotonic()
        logger.debug(f"Starting process: {result.command_line}")

        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=child_env,
            cwd=cwd,
        )

        communicate = asyncio.ensure_future(proc.communicate())
        waiters = {communicate}
        cancel_wait = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )

            if communicate not in done:
                if cancel_wait is not None and cancel_wait in done:
                    result.cancelled = True
                    logger.warning(f"Cancelling process {program} (pid {proc.pid})")
                else:
                    result.timed_out = True
                    logger.warning(f"Process {program} timed out after {timeout}s (pid {proc.pid})")
                await self._terminate(proc)

            stdout, stderr = await communicate
        except asyncio.CancelledError:
            await self._terminate(proc)
            communicate.cancel()
            raise
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

        result.return_code = proc.returncode
        result.stdout = (stdout or b"").decode("utf-8", errors="replace")
        result.stderr = (stderr or b"").decode("utf-8", errors="replace")
        result.duration_seconds = time.monotonic() - start

        if result.success:
            logger.debug(f"Process {program} finished in {result.duration_seconds:.1f}s")
        else:
            logger.debug(
                f"Process {program} failed: code={result.return_code} "
                f"timed_out={result.timed_out} cancelled={result.cancelled}"
            )
        return result

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Terminate, then kill after the grace period."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Process {proc.pid} ignored terminate, killing")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
