"""Marker-based request/response protocol over a warm REPL session.

A request is framed by unguessable marker lines, written to the REPL in one
write, and finalized when the first of these happens:

- the end marker is printed (normal completion)
- an error signature shows up (after a short debounce for multi-line errors)
- the timeout elapses (timeout result with whatever was buffered)

After a non-timeout result the session is handed to the reset controller and
stays busy until its workspace is back to a clean state.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.exceptions import SessionExitedError
from arraybox_sandbox.models import ExecutionResult, ExecutionTier
from arraybox_sandbox.reset import StateResetController
from arraybox_sandbox.sanitizer import classify, marker_seen, partial_output, sanitize

if TYPE_CHECKING:
    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.session import InterpreterSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class MarkerSet:
    """Per-request boundary tokens."""

    start: str
    end: str
    reset: str


def create_markers() -> MarkerSet:
    """Fresh markers sharing one random suffix.

    Randomness makes a collision with legitimate output (or a user forging a
    marker) improbable, not impossible.
    """
    token = secrets.token_hex(constants.MARKER_TOKEN_BYTES)
    return MarkerSet(
        start=f"{constants.MARKER_PREFIX}_START_{token}___",
        end=f"{constants.MARKER_PREFIX}_END_{token}___",
        reset=f"{constants.MARKER_PREFIX}_RESET_{token}___",
    )


def timeout_message(timeout_ms: int) -> str:
    return f"Execution timed out ({timeout_ms / 1000:g} seconds)"


class ProtocolEngine:
    """Runs one request on an acquired warm session."""

    def __init__(self, config: SandboxConfig, reset_controller: StateResetController | None = None) -> None:
        self._config = config
        self._reset = reset_controller or StateResetController(config)

    @property
    def reset_controller(self) -> StateResetController:
        return self._reset

    async def run(
        self, session: InterpreterSession, code: str, timeout_ms: int, *, budget_ms: int | None = None
    ) -> ExecutionResult:
        """Execute ``code`` on ``session`` (already acquired by the caller).

        ``budget_ms`` is what is left of ``timeout_ms`` after queueing; the wait
        is bounded by it while messages still quote ``timeout_ms``.

        Raises:
            SessionExitedError: The interpreter died before answering
        """
        dialect = session.dialect
        channel = session.channel
        markers = create_markers()
        loop = asyncio.get_running_loop()

        def ended(stdout: str, stderr: str) -> bool:
            return marker_seen(dialect, stdout, markers.end) or marker_seen(dialect, stderr, markers.end)

        def finished(stdout: str, stderr: str) -> bool:
            return ended(stdout, stderr) or classify(dialect, stdout, stderr)

        mark = channel.mark()
        started = loop.time()
        wait_s = (timeout_ms if budget_ms is None else budget_ms) / 1000
        deadline = started + wait_s
        await channel.write(dialect.build_payload(code, markers))

        done = await channel.wait_for(finished, wait_s, since=mark)
        if done and not ended(*channel.since(mark)):
            # Error seen first: give the rest of a multi-line message a moment
            debounce = min(constants.ERROR_DEBOUNCE_SECONDS, max(0.0, deadline - loop.time()))
            await channel.wait_for(ended, debounce, since=mark)

        stdout, stderr = channel.since(mark)
        elapsed_ms = int((loop.time() - started) * 1000)

        if not done:
            if channel.eof:
                raise SessionExitedError(
                    "Interpreter exited while a request was in flight",
                    context={"language": session.language.value, "session_id": session.session_id},
                )
            logger.warning(
                "Warm session request timed out",
                extra={
                    "language": session.language.value,
                    "session_id": session.session_id,
                    "timeout_ms": timeout_ms,
                    "recycle": self._config.recycle_on_timeout,
                },
            )
            if self._config.recycle_on_timeout:
                session.request_recycle()
            else:
                self._reset.schedule(session, markers)
            return ExecutionResult(
                success=False,
                output=partial_output(dialect, stdout, stderr, markers) or timeout_message(timeout_ms),
                timed_out=True,
                used_warm_session=True,
                tier=ExecutionTier.WARM,
                execution_time_ms=elapsed_ms,
            )

        sanitized = sanitize(dialect, stdout, stderr, code, markers)
        self._reset.schedule(session, markers)
        logger.debug(
            "Warm session request finished",
            extra={
                "language": session.language.value,
                "session_id": session.session_id,
                "success": sanitized.success,
                "elapsed_ms": elapsed_ms,
            },
        )
        return ExecutionResult(
            success=sanitized.success,
            output=sanitized.output,
            used_warm_session=True,
            tier=ExecutionTier.WARM,
            execution_time_ms=elapsed_ms,
        )
