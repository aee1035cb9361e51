"""Warm session pool: at most one live REPL per language.

Requests for one language are served one at a time, in arrival order, by
that language's single warm session. A per-language asyncio.Lock (FIFO fair)
is held from the moment a request is admitted until its session has been
reset and released, so a busy session is never replaced behind a caller's
back. At most ``max_queue_depth`` requests may wait; the rest are rejected
with SessionCapacityError so the caller can fall back to a cold start.
Time spent in the queue comes out of the request's timeout, and a request
whose timeout runs out while queued is answered as timed out.

Sessions are recycled (terminated and lazily replaced) after
``max_requests_per_session`` requests, after a timeout when
``recycle_on_timeout`` is set, and when found dead. With ``idle_eviction_ms``
set, a periodic sweep terminates sessions nobody used for that long.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.docker_cmd import build_run_args, container_name, remove_container
from arraybox_sandbox.exceptions import SandboxError, SessionCapacityError, SessionStartupError, TransientError
from arraybox_sandbox.models import ExecutionResult, ExecutionTier, Language
from arraybox_sandbox.protocol import ProtocolEngine, timeout_message
from arraybox_sandbox.session import InterpreterSession
from arraybox_sandbox.subprocess_utils import log_task_exception
from arraybox_sandbox.system_probes import find_dyalog_path

if TYPE_CHECKING:
    from collections.abc import Coroutine, Iterable

    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.image_provisioner import ImageProvisioner
    from arraybox_sandbox.models import SessionInfo

logger = get_logger(__name__)


class WarmSessionPool:
    """Owns the warm sessions of one Sandbox instance."""

    def __init__(
        self,
        config: SandboxConfig,
        provisioner: ImageProvisioner | None = None,
        *,
        engine: ProtocolEngine | None = None,
    ) -> None:
        self._config = config
        self._provisioner = provisioner
        self._engine = engine or ProtocolEngine(config)
        self._sessions: dict[Language, InterpreterSession] = {}
        self._locks: dict[Language, asyncio.Lock] = {}
        self._waiting: defaultdict[Language, int] = defaultdict(int)
        self._background: set[asyncio.Task[Any]] = set()
        self._sweep_task: asyncio.Task[None] | None = None
        self._signal_task: asyncio.Task[None] | None = None
        self._closed = False

    def _get_lock(self, language: Language) -> asyncio.Lock:
        if language not in self._locks:
            self._locks[language] = asyncio.Lock()
        return self._locks[language]

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(log_task_exception)
        return task

    @property
    def closed(self) -> bool:
        return self._closed

    def session_for(self, language: Language) -> InterpreterSession | None:
        """Current pooled session for ``language`` (if any)."""
        return self._sessions.get(language)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the idle eviction sweep (no-op when eviction is disabled)."""
        if self._config.idle_eviction_ms > 0 and self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="idle-sweep")
            self._sweep_task.add_done_callback(log_task_exception)

    async def shutdown(self) -> None:
        """Terminate every pooled session. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

        sessions = list(self._sessions.values())
        self._sessions.clear()
        if sessions:
            logger.info("Stopping warm sessions", extra={"count": len(sessions)})
        await asyncio.gather(*(self._terminate(session) for session in sessions), return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Terminate all sessions on SIGINT/SIGTERM, then let the signal proceed."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, loop, sig)

    def _on_signal(self, loop: asyncio.AbstractEventLoop, sig: signal.Signals) -> None:
        logger.info("Received signal, stopping warm sessions", extra={"signal": sig.name})

        def reraise(_task: asyncio.Task[None]) -> None:
            loop.remove_signal_handler(sig)
            signal.raise_signal(sig)

        self._signal_task = loop.create_task(self.shutdown(), name="signal-shutdown")
        self._signal_task.add_done_callback(reraise)

    # -------------------------------------------------------------------------
    # Session management
    # -------------------------------------------------------------------------

    async def _launch_argv(self, language: Language) -> tuple[list[str], str | None]:
        override = self._config.session_commands.get(language)
        if override:
            return list(override), None
        dyalog_path = await find_dyalog_path(self._config) if language is Language.APL else None
        name = container_name(language, interactive=True)
        argv = build_run_args(language, self._config, interactive=True, dyalog_path=dyalog_path, name=name)
        return argv, name

    async def _start_session(self, language: Language) -> InterpreterSession:
        """Launch a fresh session, retrying transient launch failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(constants.SESSION_START_MAX_RETRIES),
            wait=wait_random_exponential(
                min=constants.SESSION_START_RETRY_MIN_SECONDS,
                max=constants.SESSION_START_RETRY_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                argv, name = await self._launch_argv(language)
                session = await InterpreterSession.start(language, argv, self._config)
                session.container_name = name
                return session

        raise AssertionError("Unreachable: AsyncRetrying exhausted without exception")

    async def get_or_create(self, language: Language) -> InterpreterSession:
        """Return a usable warm session for ``language``, starting one if needed.

        Dead sessions are evicted, sessions at the request cap (or flagged for
        recycling) are retired, and an idle live session is returned as is.

        Raises:
            SessionStartupError: A fresh session could not be launched
        """
        if self._closed:
            raise SessionStartupError("Warm session pool is shut down", context={"language": language.value})

        session = self._sessions.get(language)
        if session is not None:
            if not await session.is_alive():
                logger.warning(
                    "Warm session exited unexpectedly, replacing",
                    extra={"language": language.value, "session_id": session.session_id, "returncode": session.process.returncode},
                )
                self._evict(language, session)
            elif session.recycle_requested or session.request_count >= self._config.max_requests_per_session:
                logger.info(
                    f"Recycling {language.value} session after {session.request_count} requests",
                    extra={"language": language.value, "session_id": session.session_id, "request_count": session.request_count},
                )
                self._evict(language, session)
            elif not session.busy:
                return session
            else:
                # Only reachable when the pool is driven without execute(); never orphan it
                logger.warning(
                    "Warm session busy, retiring it and starting fresh",
                    extra={"language": language.value, "session_id": session.session_id},
                )
                session.request_recycle()
                self._evict(language, session)

        session = await self._start_session(language)
        self._sessions[language] = session
        return session

    def _evict(self, language: Language, session: InterpreterSession) -> None:
        if self._sessions.get(language) is session:
            del self._sessions[language]
        self._spawn(self._terminate(session), name=f"terminate:{session.session_id}")

    async def _terminate(self, session: InterpreterSession) -> None:
        await session.terminate()
        if session.container_name:
            await remove_container(self._config, session.container_name)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _admit(self, language: Language, timeout_ms: int) -> asyncio.Lock:
        """Take the language's lock, waiting at most ``timeout_ms``.

        Raises:
            SessionCapacityError: Too many requests already queued
            TimeoutError: The lock was not free within ``timeout_ms``
        """
        lock = self._get_lock(language)
        if lock.locked() and self._waiting[language] >= self._config.max_queue_depth:
            raise SessionCapacityError(
                f"Too many queued {language.value} requests",
                context={"language": language.value, "queued": self._waiting[language]},
            )
        self._waiting[language] += 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout_ms / 1000)
        finally:
            self._waiting[language] -= 1
        return lock

    def _queue_timeout(self, language: Language, timeout_ms: int) -> ExecutionResult:
        logger.warning(
            f"{language.value} request timed out while queued for the warm session",
            extra={"language": language.value, "timeout_ms": timeout_ms},
        )
        return ExecutionResult(
            success=False,
            output=timeout_message(timeout_ms),
            timed_out=True,
            tier=ExecutionTier.WARM,
            execution_time_ms=timeout_ms,
        )

    async def execute(self, language: Language, code: str, timeout_ms: int) -> ExecutionResult:
        """Run one request on the language's warm session.

        Time spent queued behind other requests counts against ``timeout_ms``;
        launching a missing session does not.

        Raises:
            SessionCapacityError: Queue full
            SessionStartupError: No session could be launched
            SessionExitedError: The session died mid-request (it has been evicted)
        """
        loop = asyncio.get_running_loop()
        queued_at = loop.time()
        try:
            lock = await self._admit(language, timeout_ms)
        except TimeoutError:
            return self._queue_timeout(language, timeout_ms)

        handed_off = False
        try:
            budget_ms = timeout_ms - int((loop.time() - queued_at) * 1000)
            if budget_ms <= 0:
                return self._queue_timeout(language, timeout_ms)
            session = await self.get_or_create(language)
            session.acquire()
            try:
                result = await self._engine.run(session, code, timeout_ms, budget_ms=budget_ms)
            except BaseException:
                self._evict(language, session)
                raise

            if session.recycle_requested:
                self._evict(language, session)
            else:
                self._spawn(self._unlock_when_released(session, lock), name=f"unlock:{session.session_id}")
                handed_off = True
            return result
        finally:
            if not handed_off:
                lock.release()

    async def _unlock_when_released(self, session: InterpreterSession, lock: asyncio.Lock) -> None:
        try:
            await session.wait_released()
        finally:
            lock.release()

    # -------------------------------------------------------------------------
    # Prewarm / idle eviction / stats
    # -------------------------------------------------------------------------

    async def prewarm(self, languages: Iterable[Language] = constants.PREWARM_LANGUAGES) -> dict[Language, bool]:
        """Start a warm session per language, one after another.

        Failures are logged and reported as False; they never raise.
        """
        warmed: dict[Language, bool] = {}
        for language in languages:
            if language not in self._config.session_commands and self._provisioner is not None:
                if not await self._provisioner.ensure_image(language):
                    logger.info(f"Skipping {language.value} prewarm, image not available")
                    warmed[language] = False
                    continue
            lock = self._get_lock(language)
            try:
                async with lock:
                    await self.get_or_create(language)
                warmed[language] = True
                logger.info(f"{language.value.upper()} session warmed")
            except SandboxError as e:
                logger.warning(f"Failed to prewarm {language.value}: {e.message}", extra=e.context)
                warmed[language] = False
        return warmed

    async def _sweep_loop(self) -> None:
        interval = self._config.idle_sweep_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.sweep_idle()

    def sweep_idle(self) -> int:
        """Terminate sessions idle longer than ``idle_eviction_ms``.

        Returns:
            Number of sessions evicted
        """
        threshold = self._config.idle_eviction_ms
        if threshold <= 0:
            return 0
        evicted = 0
        for language, session in list(self._sessions.items()):
            if session.busy or self._get_lock(language).locked():
                continue
            if session.idle_ms() > threshold:
                logger.info(
                    f"Stopping idle {language.value} session",
                    extra={"language": language.value, "session_id": session.session_id, "idle_ms": session.idle_ms()},
                )
                self._evict(language, session)
                evicted += 1
        return evicted

    def stats(self) -> list[SessionInfo]:
        """Snapshot of every pooled session."""
        return [session.info() for session in self._sessions.values()]
