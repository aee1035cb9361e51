"""Subprocess helpers.

- drain_subprocess_output: concurrent stdout/stderr draining (prevents 64KB pipe deadlock)
- run_command: run a short-lived command to completion with a timeout
- log_task_exception: done-callback for fire-and-forget tasks
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from arraybox_sandbox._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from arraybox_sandbox.platform_utils import ProcessWrapper

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Exit status and decoded output of a finished command."""

    returncode: int
    stdout: str
    stderr: str


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    line_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently until both reach EOF.

    Without concurrent draining a chatty child (``docker build`` prints a
    lot) fills one 64KB pipe and blocks while we wait on the other.

    Args:
        process: ProcessWrapper with stdout/stderr pipes
        process_name: Process identifier for logging (e.g., "docker build")
        context_id: Context identifier (e.g., image name) for log correlation
        line_handler: Callback for every non-empty line from either stream
            (default: debug log)
    """
    if line_handler is None:

        def default_line_handler(line: str) -> None:
            logger.debug(f"[{process_name}] {line}", extra={"context_id": context_id, "output": line})

        line_handler = default_line_handler

    async def read_stream(stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            decoded = raw.decode(errors="replace").rstrip()
            if decoded:
                line_handler(decoded)

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(read_stream(process.stdout))
        if process.stderr:
            tg.create_task(read_stream(process.stderr))


async def run_command(argv: list[str], *, timeout: float) -> CommandResult:
    """Run a command to completion, killing it if it outlives ``timeout``.

    Raises:
        OSError: Program not found or not executable
        TimeoutError: Command did not finish in time (it has been killed)
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def log_task_exception(task: asyncio.Task[Any]) -> None:
    """Log exceptions from background tasks.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
