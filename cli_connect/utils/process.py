"""
Subprocess helpers shared by the installer, strategies and orchestrator.
"""

import asyncio
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import psutil
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CommandResult:
    """Captured outcome of a finished command."""
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


async def run_command(
    argv: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    input_data: Optional[str] = None,
    timeout: Optional[float] = None
) -> CommandResult:
    """
    Run a command to completion and capture its output.

    Args:
        argv: Program and arguments
        env: Environment for the child process
        input_data: Text written to stdin before it is closed
        timeout: Seconds before the child is killed

    Returns:
        CommandResult: exit code and decoded output

    Raises:
        OSError: If the program cannot be started
        asyncio.TimeoutError: If the command outlives the timeout
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
    )

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input_data.encode() if input_data is not None else None),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        await terminate_process(proc, grace=1.0)
        raise

    return CommandResult(
        exit_code=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def _kill_tree(pid: int, grace: float) -> None:
    """Terminate a process and its descendants, escalating to kill after grace."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    try:
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        procs = [parent]

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    if alive:
        psutil.wait_procs(alive, timeout=grace)


async def terminate_process(proc: asyncio.subprocess.Process, grace: float = 5.0) -> Optional[int]:
    """
    Stop a child process (and anything it spawned), gracefully then forcefully.

    Returns:
        Optional[int]: the child's exit code once reaped
    """
    if proc.returncode is None:
        logger.debug("Terminating process tree", pid=proc.pid, grace=grace)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _kill_tree, proc.pid, grace)

    try:
        # Reap so no zombie is left behind
        return await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("Process did not exit after kill", pid=proc.pid)
        return proc.returncode
