"""
External tool execution.

ffmpeg and ffprobe are run through a ProcessRunner so the encoder and the
source probe can be exercised in tests with a fake runner that writes HLS
output directly.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ProcessRunner(ABC):
    """Runs a command to completion and captures its output."""

    @abstractmethod
    async def run(self, cmd: List[str], timeout: Optional[float] = None) -> ProcessResult:
        raise NotImplementedError


async def cleanup_process(process: asyncio.subprocess.Process, context: str = "process") -> None:
    """
    Kill a subprocess that is still running and reap it.

    The process may exit between checking returncode and calling kill(), so
    ProcessLookupError is expected here.
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


class AsyncioProcessRunner(ProcessRunner):
    """ProcessRunner backed by asyncio subprocesses."""

    async def run(self, cmd: List[str], timeout: Optional[float] = None) -> ProcessResult:
        context = cmd[0] if cmd else "process"
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return ProcessResult(returncode=127, stderr=f"{context}: executable not found")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout or None)
        except asyncio.TimeoutError:
            logger.warning(f"{context} exceeded {timeout:.0f}s limit, killing")
            await cleanup_process(process, context)
            return ProcessResult(
                returncode=process.returncode if process.returncode is not None else -1,
                stderr=f"{context} timed out after {timeout:.0f} seconds",
                timed_out=True,
            )
        finally:
            # Cancellation (shutdown) must not leave an orphaned encoder behind
            await cleanup_process(process, context)

        return ProcessResult(
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="ignore"),
            stderr=stderr.decode("utf-8", errors="ignore"),
        )
