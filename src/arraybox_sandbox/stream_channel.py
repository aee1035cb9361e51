"""Read-until-predicate channel over a REPL's stdin/stdout/stderr.

Background reader tasks decode both output streams into bounded text buffers
and wake anyone waiting on a predicate. Callers take a Mark before writing a
payload and only ever look at text produced after it, so output from an
earlier request (or a late reset) never leaks into the next response.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from arraybox_sandbox import constants
from arraybox_sandbox.exceptions import ProtocolTimeoutError, SessionExitedError

if TYPE_CHECKING:
    from collections.abc import Callable

_READ_CHUNK = 4096


@dataclass(frozen=True)
class Mark:
    """Absolute character offsets into both output streams."""

    stdout: int
    stderr: int


class _TextBuffer:
    """Append-only text with a bounded tail and absolute offsets."""

    __slots__ = ("closed", "dropped", "limit", "text")

    def __init__(self, limit: int) -> None:
        self.text = ""
        self.dropped = 0
        self.limit = limit
        self.closed = False

    @property
    def end(self) -> int:
        return self.dropped + len(self.text)

    def append(self, chunk: str) -> None:
        self.text += chunk
        overflow = len(self.text) - self.limit
        if overflow > 0:
            self.text = self.text[overflow:]
            self.dropped += overflow

    def since(self, offset: int) -> str:
        return self.text[max(0, offset - self.dropped) :]


class StreamChannel:
    """Bidirectional text channel to an interactive interpreter."""

    def __init__(
        self,
        stdin: asyncio.StreamWriter | None,
        stdout: asyncio.StreamReader | None,
        stderr: asyncio.StreamReader | None,
        *,
        name: str = "",
        max_chars: int = constants.MAX_BUFFER_CHARS,
    ) -> None:
        self._stdin = stdin
        self._readers = {"stdout": stdout, "stderr": stderr}
        self._buffers = {"stdout": _TextBuffer(max_chars), "stderr": _TextBuffer(max_chars)}
        self._changed = asyncio.Condition()
        self._tasks: list[asyncio.Task[None]] = []
        self.name = name

    def start(self) -> None:
        """Start the background readers."""
        for key, reader in self._readers.items():
            if reader is None:
                self._buffers[key].closed = True
                continue
            self._tasks.append(asyncio.create_task(self._pump(key, reader), name=f"{self.name}:{key}"))

    async def _pump(self, key: str, reader: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = self._buffers[key]
        try:
            while chunk := await reader.read(_READ_CHUNK):
                buffer.append(decoder.decode(chunk))
                async with self._changed:
                    self._changed.notify_all()
            buffer.append(decoder.decode(b"", final=True))
        except (ConnectionResetError, BrokenPipeError):
            pass
        finally:
            buffer.closed = True
            async with self._changed:
                self._changed.notify_all()

    # -------------------------------------------------------------------------
    # Buffers
    # -------------------------------------------------------------------------

    @property
    def stdout_buffer(self) -> str:
        return self._buffers["stdout"].text

    @property
    def stderr_buffer(self) -> str:
        return self._buffers["stderr"].text

    @property
    def eof(self) -> bool:
        """Both output streams are closed (the process has gone away)."""
        return all(buffer.closed for buffer in self._buffers.values())

    def mark(self) -> Mark:
        """Current end of both streams."""
        return Mark(stdout=self._buffers["stdout"].end, stderr=self._buffers["stderr"].end)

    def since(self, mark: Mark) -> tuple[str, str]:
        """(stdout, stderr) text produced after ``mark``."""
        return self._buffers["stdout"].since(mark.stdout), self._buffers["stderr"].since(mark.stderr)

    # -------------------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------------------

    async def write(self, text: str) -> None:
        """Write ``text`` to stdin in a single write.

        Raises:
            SessionExitedError: stdin is closed (the interpreter died)
        """
        if self._stdin is None or self._stdin.is_closing():
            raise SessionExitedError("Interpreter stdin is closed", context={"channel": self.name})
        try:
            self._stdin.write(text.encode())
            await self._stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SessionExitedError(
                f"Interpreter stdin write failed: {type(e).__name__}",
                context={"channel": self.name},
            ) from e

    async def wait_for(
        self,
        predicate: Callable[[str, str], bool],
        timeout: float,
        *,
        since: Mark | None = None,
    ) -> bool:
        """Wait until ``predicate(stdout, stderr)`` holds for the text after ``since``.

        Returns False on timeout, or as soon as both streams hit EOF without
        the predicate holding.
        """
        origin = since or Mark(0, 0)

        def satisfied() -> bool:
            return predicate(*self.since(origin)) or self.eof

        try:
            async with self._changed:
                await asyncio.wait_for(self._changed.wait_for(satisfied), timeout=timeout)
        except TimeoutError:
            return False
        return predicate(*self.since(origin))

    async def read_until(
        self,
        predicate: Callable[[str, str], bool],
        timeout: float,
        *,
        since: Mark | None = None,
    ) -> tuple[str, str]:
        """Like wait_for() but returns the text and raises on failure.

        Raises:
            ProtocolTimeoutError: Predicate did not hold within ``timeout``
        """
        origin = since or Mark(0, 0)
        if await self.wait_for(predicate, timeout, since=origin):
            return self.since(origin)
        stdout, stderr = self.since(origin)
        raise ProtocolTimeoutError(
            f"No expected output within {timeout:.1f}s",
            context={"channel": self.name, "eof": self.eof},
            partial_output=stdout + stderr,
        )

    async def close(self) -> None:
        """Stop the readers and close stdin."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        if self._stdin is not None and not self._stdin.is_closing():
            with contextlib.suppress(OSError):
                self._stdin.close()
