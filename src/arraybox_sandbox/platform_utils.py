"""Spawning interpreter processes and signalling them safely.

Host interpreters are often launcher scripts (``kap-jvm`` starts a JVM,
``ijconsole`` execs jconsole), and a ``docker run`` client has its own helper
threads. Signals therefore go to the whole process tree, found through psutil
rather than raw PIDs so a recycled PID is never hit.
"""

import asyncio
import contextlib
import os

import psutil

_GONE = (psutil.NoSuchProcess, psutil.AccessDenied)


class ProcessWrapper:
    """asyncio subprocess paired with a psutil handle for PID-reuse safe checks.

    Warm sessions live for hundreds of requests, long enough for the OS to
    hand an unnoticed dead PID to someone else.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None
        if async_proc.pid:
            with contextlib.suppress(*_GONE):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        return self.async_proc.returncode

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.async_proc.stdin

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.async_proc.stderr

    async def is_running(self) -> bool:
        """True while the process exists and is not a zombie.

        psutil calls run in a worker thread; a stuck /proc read must not
        stall the event loop.
        """
        if self.async_proc.returncode is not None:
            return False
        if self.psutil_proc is None:
            return True
        try:
            # is_running() compares creation time, so a reused PID reads as gone
            if not await asyncio.to_thread(self.psutil_proc.is_running):
                return False
            status = await asyncio.to_thread(self.psutil_proc.status)
        except _GONE:
            return False
        return status != psutil.STATUS_ZOMBIE

    def _tree(self) -> list[psutil.Process]:
        assert self.psutil_proc is not None
        try:
            children = self.psutil_proc.children(recursive=True)
        except _GONE:
            children = []
        return [*children, self.psutil_proc]

    @staticmethod
    def _signal_all(procs: list[psutil.Process], *, force: bool) -> None:
        for proc in procs:
            with contextlib.suppress(*_GONE):
                if force:
                    proc.kill()
                else:
                    proc.terminate()

    async def _send(self, *, force: bool) -> None:
        if self.psutil_proc is not None and await self.is_running():
            tree = await asyncio.to_thread(self._tree)
            await asyncio.to_thread(self._signal_all, tree, force=force)
            return
        with contextlib.suppress(ProcessLookupError):
            if force:
                self.async_proc.kill()
            else:
                self.async_proc.terminate()

    async def terminate(self) -> None:
        """SIGTERM the process and its descendants."""
        await self._send(force=False)

    async def kill(self) -> None:
        """SIGKILL the process and its descendants."""
        await self._send(force=True)

    async def wait(self) -> int:
        return await self.async_proc.wait()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit.

        Raises:
            TimeoutError: Still running after ``timeout`` seconds
        """
        return await asyncio.wait_for(self.async_proc.wait(), timeout=timeout)


async def spawn_piped(argv: list[str], env: dict[str, str] | None = None) -> ProcessWrapper:
    """Start ``argv`` with stdin/stdout/stderr pipes in its own session.

    Args:
        argv: Program and arguments (never passed through a shell)
        env: Extra environment variables layered over the current environment

    Raises:
        OSError: Program not found or not executable
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, **env} if env else None,
        start_new_session=True,
    )
    return ProcessWrapper(proc)
