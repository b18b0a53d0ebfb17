import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
_READ_CHUNK = 4096


class CommandStatus(str, Enum):
    OK = "ok"
    NON_ZERO_EXIT = "non_zero_exit"
    SPAWN_FAILED = "spawn_failed"
    TIMEOUT = "timeout"


@dataclass
class CommandOutcome:
    """Result of one external process invocation"""
    status: CommandStatus
    stdout: str = ""
    stderr: str = ""
    code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is CommandStatus.OK

    def describe(self) -> str:
        if self.status is CommandStatus.NON_ZERO_EXIT:
            detail = self.stderr.strip() or self.stdout.strip()
            return f"exited with code {self.code}" + (f": {detail}" if detail else "")
        if self.error:
            return f"{self.status.value}: {self.error}"
        return self.status.value


async def _drain(stream: asyncio.StreamReader, chunks: List[bytes]) -> None:
    while True:
        data = await stream.read(_READ_CHUNK)
        if not data:
            break
        chunks.append(data)


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode(errors="replace")


async def run_command(executable: str, args: Sequence[str], timeout: float = DEFAULT_TIMEOUT) -> CommandOutcome:
    """
    Run an executable to completion or until the timeout expires.

    Never raises for process-level problems. A binary that cannot be started,
    a non-zero exit and a timeout are each reported through the returned
    CommandOutcome status. On timeout the process is killed and whatever was
    captured before the kill is kept. If the awaiting task is cancelled the
    process is killed before the cancellation propagates.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as error:
        logger.error(f"Failed to start {executable}: {error}")
        return CommandOutcome(status=CommandStatus.SPAWN_FAILED, code=-1, error=str(error))

    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []
    readers = [
        asyncio.ensure_future(_drain(process.stdout, stdout_chunks)),
        asyncio.ensure_future(_drain(process.stderr, stderr_chunks)),
    ]

    try:
        await asyncio.wait_for(asyncio.gather(process.wait(), *readers), timeout=timeout)
    except asyncio.TimeoutError:
        # Freeze the captured output before killing
        for reader in readers:
            reader.cancel()
        stdout, stderr = _decode(stdout_chunks), _decode(stderr_chunks)
        await _kill(process)
        logger.error(f"{executable} timed out after {timeout}s and was killed")
        return CommandOutcome(
            status=CommandStatus.TIMEOUT,
            stdout=stdout,
            stderr=stderr,
            code=-1,
            error=f"timed out after {timeout}s",
        )
    except asyncio.CancelledError:
        # Kill the tool before propagating the cancellation
        for reader in readers:
            reader.cancel()
        await _kill(process)
        logger.warning(f"{executable} cancelled and killed")
        raise

    stdout, stderr = _decode(stdout_chunks), _decode(stderr_chunks)
    if process.returncode != 0:
        return CommandOutcome(
            status=CommandStatus.NON_ZERO_EXIT,
            stdout=stdout,
            stderr=stderr,
            code=process.returncode,
        )
    return CommandOutcome(status=CommandStatus.OK, stdout=stdout, stderr=stderr, code=0)
