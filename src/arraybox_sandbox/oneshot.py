"""Single-use interpreter runs for the cold-start and direct tiers.

The whole payload is written once, stdin is closed and both output streams
are collected until the process exits. A run that outlives its timeout is
killed with SIGKILL; whatever it printed so far is still returned.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.exceptions import SessionStartupError
from arraybox_sandbox.platform_utils import spawn_piped

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger(__name__)

_READ_CHUNK = 4096


@dataclass(frozen=True)
class OneShotOutput:
    """Raw result of a batch run."""

    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    elapsed_ms: int


async def run_oneshot(
    argv: list[str],
    payload: str,
    timeout_ms: int,
    *,
    env: dict[str, str] | None = None,
    on_timeout: Callable[[], Awaitable[object]] | None = None,
) -> OneShotOutput:
    """Run ``argv`` to completion with ``payload`` on stdin.

    Args:
        argv: Program and arguments
        payload: Complete stdin contents
        timeout_ms: Kill the process after this long
        env: Extra environment variables
        on_timeout: Extra cleanup after the kill (e.g. removing a container)

    Raises:
        SessionStartupError: The program could not be spawned
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        proc = await spawn_piped(argv, env)
    except OSError as e:
        raise SessionStartupError(f"Failed to launch {argv[0]}: {e}", context={"argv0": argv[0]}) from e

    chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}

    async def collect(stream: asyncio.StreamReader | None, key: str) -> None:
        if stream is None:
            return
        while chunk := await stream.read(_READ_CHUNK):
            chunks[key].append(chunk)

    async def feed() -> None:
        if proc.stdin is None:
            return
        # The interpreter may exit before reading everything
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            proc.stdin.write(payload.encode())
            await proc.stdin.drain()
        proc.stdin.close()

    timed_out = False
    exit_code: int | None = None
    try:
        async with asyncio.timeout(timeout_ms / 1000):
            await asyncio.gather(feed(), collect(proc.stdout, "stdout"), collect(proc.stderr, "stderr"))
            exit_code = await proc.wait()
    except TimeoutError:
        timed_out = True
        logger.info("One-shot run timed out, killing", extra={"argv0": argv[0], "pid": proc.pid, "timeout_ms": timeout_ms})
        await proc.kill()
        with contextlib.suppress(TimeoutError):
            await proc.wait_with_timeout(timeout=constants.ONESHOT_KILL_TIMEOUT_SECONDS)
        if on_timeout is not None:
            await on_timeout()

    return OneShotOutput(
        stdout=b"".join(chunks["stdout"]).decode(errors="replace"),
        stderr=b"".join(chunks["stderr"]).decode(errors="replace"),
        exit_code=exit_code,
        timed_out=timed_out,
        elapsed_ms=int((loop.time() - started) * 1000),
    )
