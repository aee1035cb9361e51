"""State reset between warm-session requests.

Sessions are shared by unrelated callers, so after every request the
workspace is cleared and the reset marker is awaited before the session is
released. If the marker never shows up the session is released anyway once
the fallback window closes: availability is preferred over a guaranteed
clean slate, and the warning in the log is the only trace.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.exceptions import SessionExitedError
from arraybox_sandbox.sanitizer import marker_seen
from arraybox_sandbox.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.protocol import MarkerSet
    from arraybox_sandbox.session import InterpreterSession

logger = get_logger(__name__)


class StateResetController:
    """Sends a dialect's reset sequence and releases the session when done."""

    def __init__(self, config: SandboxConfig) -> None:
        self._fallback_seconds = config.reset_fallback_ms / 1000

    async def reset(self, session: InterpreterSession, markers: MarkerSet) -> bool:
        """Reset ``session`` and release it.

        Returns:
            True if the reset marker was seen, False if the fallback fired
        """
        dialect = session.dialect
        channel = session.channel

        def reset_seen(stdout: str, stderr: str) -> bool:
            return marker_seen(dialect, stdout, markers.reset) or marker_seen(dialect, stderr, markers.reset)

        mark = channel.mark()
        confirmed = False
        try:
            await channel.write(dialect.build_reset(markers))
            confirmed = await channel.wait_for(reset_seen, self._fallback_seconds, since=mark)
        except SessionExitedError:
            logger.warning(
                "Session exited during reset",
                extra={"language": session.language.value, "session_id": session.session_id},
            )
        finally:
            session.release()

        if not confirmed:
            logger.warning(
                "Reset marker not seen within fallback window, releasing session anyway",
                extra={
                    "language": session.language.value,
                    "session_id": session.session_id,
                    "fallback_seconds": self._fallback_seconds,
                },
            )
        return confirmed

    def schedule(self, session: InterpreterSession, markers: MarkerSet) -> asyncio.Task[bool]:
        """Run reset() in the background; the session keeps a reference to the task."""
        task = asyncio.create_task(self.reset(session, markers), name=f"reset:{session.session_id}")
        task.add_done_callback(log_task_exception)
        session.pending_reset = task
        return task
