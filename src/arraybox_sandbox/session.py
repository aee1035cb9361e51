"""InterpreterSession - one long-lived REPL process serving many requests.

Lifecycle:
    - start() spawns the process (normally ``docker run -i`` with the REPL as
      entrypoint), drains its boot banner and moves it to READY
    - acquire()/release() bracket each request; release() is called by the
      reset controller once the workspace is clean again
    - request_recycle() retires the session at the current request boundary
    - terminate() kills the process (SIGTERM, then SIGKILL)

Example:
    ```python
    session = await InterpreterSession.start(Language.J, argv, config)
    session.acquire()
    result = await engine.run(session, "1+1", 10_000)
    await session.wait_released()
    await session.terminate()
    ```
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Self
from uuid import uuid4

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.dialects import get_dialect
from arraybox_sandbox.exceptions import ProtocolTimeoutError, SessionExitedError, SessionStartupError
from arraybox_sandbox.models import VALID_STATE_TRANSITIONS, Language, SessionInfo, SessionState
from arraybox_sandbox.platform_utils import spawn_piped
from arraybox_sandbox.protocol import create_markers
from arraybox_sandbox.resource_cleanup import cleanup_process
from arraybox_sandbox.sanitizer import marker_seen
from arraybox_sandbox.stream_channel import Mark, StreamChannel

if TYPE_CHECKING:
    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.dialects import Dialect
    from arraybox_sandbox.platform_utils import ProcessWrapper

logger = get_logger(__name__)


class InterpreterSession:
    """A running interpreter plus its stream channel and bookkeeping.

    Attributes:
        session_id: Unique id for log correlation
        request_count: Requests served since creation
        created_at: Monotonic creation time
        last_used_at: Monotonic time of the last acquire/release
        recycle_requested: Retire at the current request boundary
        pending_reset: Background reset task for the in-flight request
        container_name: Container to force-remove on teardown (docker sessions)
    """

    def __init__(
        self,
        language: Language,
        process: ProcessWrapper,
        channel: StreamChannel,
        dialect: Dialect | None = None,
    ) -> None:
        self.language = language
        self.process = process
        self.channel = channel
        self.dialect = dialect or get_dialect(language)
        self.session_id = f"{language.value}-{uuid4().hex[:8]}"
        self.request_count = 0
        self.created_at = time.monotonic()
        self.last_used_at = self.created_at
        self.recycle_requested = False
        self.pending_reset: asyncio.Task[bool] | None = None
        self.container_name: str | None = None
        self._state = SessionState.STARTING
        self._busy = False
        self._released = asyncio.Event()
        self._released.set()

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    @classmethod
    async def start(
        cls,
        language: Language,
        argv: list[str],
        config: SandboxConfig,
        *,
        env: dict[str, str] | None = None,
    ) -> Self:
        """Spawn a REPL and wait until it is ready for requests.

        Raises:
            SessionStartupError: Spawn failed or the process died while booting
        """
        dialect = get_dialect(language)
        try:
            process = await spawn_piped(argv, env)
        except OSError as e:
            raise SessionStartupError(
                f"Failed to launch {language.value} session: {e}",
                context={"language": language.value, "argv0": argv[0]},
            ) from e

        channel = StreamChannel(process.stdin, process.stdout, process.stderr, name=f"{language.value}:{process.pid}")
        channel.start()
        session = cls(language, process, channel, dialect)
        logger.info(
            "Starting warm session",
            extra={"language": language.value, "session_id": session.session_id, "pid": process.pid},
        )

        try:
            try:
                await session._drain_banner()
            except SessionExitedError as e:
                raise SessionStartupError(
                    f"{language.value} session closed its input during startup",
                    context={"language": language.value, "returncode": process.returncode},
                ) from e
            if session.has_exited:
                stdout, stderr = channel.since(Mark(0, 0))
                raise SessionStartupError(
                    f"{language.value} session exited during startup",
                    context={
                        "language": language.value,
                        "returncode": process.returncode,
                        "output": (stdout + stderr).strip()[-500:],
                    },
                )
            if dialect.wrapper is not None:
                await session.load_wrapper(config.timeout_seconds)
        except BaseException:
            await session.terminate()
            raise

        session._transition(SessionState.READY)
        logger.info(
            "Warm session ready",
            extra={
                "language": language.value,
                "session_id": session.session_id,
                "startup_ms": int((time.monotonic() - session.created_at) * 1000),
            },
        )
        return session

    async def _drain_banner(self) -> None:
        """Consume boot output until the REPL is ready.

        Dialects with a ready signature wait for it (then drain a little
        more); the others are probed with their reset sequence, which prints a
        marker once the REPL reads input.
        """
        dialect = self.dialect
        signature = dialect.ready_signature
        if signature:
            ready = await self.channel.wait_for(lambda out, err: signature in out or signature in err, dialect.ready_timeout)
            if ready:
                await asyncio.sleep(dialect.ready_drain)
        else:
            markers = create_markers()
            await self.channel.write(dialect.build_reset(markers))
            ready = await self.channel.wait_for(
                lambda out, err: marker_seen(dialect, out, markers.reset) or marker_seen(dialect, err, markers.reset),
                dialect.ready_timeout,
            )
        if not ready and not self.has_exited:
            logger.warning(
                "Ready signature not seen, continuing anyway",
                extra={"language": self.language.value, "session_id": self.session_id, "timeout": dialect.ready_timeout},
            )

    async def load_wrapper(
        self,
        timeout_seconds: int,
        wait: float = constants.WRAPPER_LOAD_TIMEOUT_SECONDS,
    ) -> bool:
        """Load the dialect's capability-restricting wrapper library.

        Args:
            timeout_seconds: Interpreter-side execution limit configured in the wrapper
            wait: Seconds to wait for the load confirmation marker

        Returns:
            True if loading was confirmed, False if the wait timed out
        """
        dialect = self.dialect
        if dialect.wrapper is None:
            return True

        marker = create_markers().end
        mark = self.channel.mark()
        await self.channel.write(dialect.wrapper(timeout_seconds, marker))
        try:
            await self.channel.read_until(
                lambda out, err: marker_seen(dialect, out, marker) or marker_seen(dialect, err, marker),
                wait,
                since=mark,
            )
        except ProtocolTimeoutError as e:
            logger.warning(
                "Wrapper library load not confirmed, continuing anyway",
                extra={
                    "language": self.language.value,
                    "session_id": self.session_id,
                    "wait": wait,
                    "output_tail": e.partial_output.strip()[-200:],
                },
            )
            return False
        logger.info("Wrapper library loaded", extra={"language": self.language.value, "session_id": self.session_id})
        return True

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        """True while a request is in flight or its reset has not finished."""
        return self._busy

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def has_exited(self) -> bool:
        """The process is gone (exit status collected or both streams closed)."""
        return self.process.returncode is not None or self.channel.eof

    async def is_alive(self) -> bool:
        """PID-reuse safe liveness check."""
        if self.has_exited:
            return False
        return await self.process.is_running()

    def idle_ms(self) -> int:
        return int((time.monotonic() - self.last_used_at) * 1000)

    def info(self) -> SessionInfo:
        return SessionInfo(
            language=self.language,
            session_id=self.session_id,
            pid=self.pid,
            state=self._state,
            busy=self._busy,
            request_count=self.request_count,
            idle_ms=self.idle_ms(),
        )

    # -------------------------------------------------------------------------
    # Request bracketing
    # -------------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in VALID_STATE_TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid session transition {self._state.value} -> {new_state.value}")
        self._state = new_state

    def acquire(self) -> None:
        """Mark the session busy for one request."""
        if self._busy:
            raise RuntimeError(f"Session {self.session_id} is already busy")
        self._transition(SessionState.BUSY)
        self._busy = True
        self._released.clear()
        self.request_count += 1
        self.last_used_at = time.monotonic()

    def release(self) -> None:
        """Mark the request finished. Safe to call more than once."""
        if self._state is SessionState.BUSY:
            self._transition(SessionState.READY)
        self._busy = False
        self.last_used_at = time.monotonic()
        self._released.set()

    async def wait_released(self) -> None:
        """Wait until the in-flight request (including its reset) is done."""
        await self._released.wait()

    def request_recycle(self) -> None:
        """Retire this session once the current request is over."""
        self.recycle_requested = True
        if self._state in (SessionState.READY, SessionState.BUSY):
            self._transition(SessionState.RECYCLING)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def terminate(self) -> bool:
        """Kill the process and release any waiter. Idempotent."""
        if self._state is SessionState.TERMINATED:
            return True
        self._state = SessionState.TERMINATED
        if self.pending_reset is not None and not self.pending_reset.done():
            self.pending_reset.cancel()
        await self.channel.close()
        cleaned = await cleanup_process(self.process, f"{self.language.value} session", self.session_id)
        self._busy = False
        self._released.set()
        logger.info(
            "Warm session terminated",
            extra={
                "language": self.language.value,
                "session_id": self.session_id,
                "request_count": self.request_count,
                "clean": cleaned,
            },
        )
        return cleaned
