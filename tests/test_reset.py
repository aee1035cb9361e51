"""Tests for StateResetController: confirmation, fallback and release guarantees."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from arraybox_sandbox.config import SandboxConfig
from arraybox_sandbox.dialects import get_dialect
from arraybox_sandbox.exceptions import SessionExitedError
from arraybox_sandbox.models import Language
from arraybox_sandbox.protocol import create_markers
from arraybox_sandbox.reset import StateResetController
from arraybox_sandbox.session import InterpreterSession
from arraybox_sandbox.stream_channel import Mark
from tests.conftest import fake_repl_argv


def mock_session(*, wait_result: bool = True, write_error: Exception | None = None) -> MagicMock:
    session = MagicMock()
    session.language = Language.J
    session.session_id = "j-test"
    session.dialect = get_dialect(Language.J)
    session.channel.mark.return_value = Mark(0, 0)
    session.channel.write = AsyncMock(side_effect=write_error)
    session.channel.wait_for = AsyncMock(return_value=wait_result)
    return session


class TestReset:
    async def test_writes_dialect_reset_sequence(self) -> None:
        session = mock_session()
        markers = create_markers()

        assert await StateResetController(SandboxConfig()).reset(session, markers) is True

        session.channel.write.assert_awaited_once_with(f"clear''\necho '{markers.reset}'\n")
        session.release.assert_called_once()

    async def test_fallback_releases_anyway(self) -> None:
        session = mock_session(wait_result=False)
        controller = StateResetController(SandboxConfig(reset_fallback_ms=250))

        assert await controller.reset(session, create_markers()) is False

        session.release.assert_called_once()
        _, timeout = session.channel.wait_for.await_args.args
        assert timeout == 0.25

    async def test_dead_session_released(self) -> None:
        session = mock_session(write_error=SessionExitedError("gone"))
        assert await StateResetController(SandboxConfig()).reset(session, create_markers()) is False
        session.release.assert_called_once()

    async def test_schedule_tracks_task(self) -> None:
        session = mock_session()
        task = StateResetController(SandboxConfig()).schedule(session, create_markers())

        assert session.pending_reset is task
        assert await task is True
        session.release.assert_called_once()

    async def test_cancelled_reset_still_releases(self) -> None:
        session = mock_session()
        session.channel.wait_for = AsyncMock(side_effect=asyncio.CancelledError)
        task = StateResetController(SandboxConfig()).schedule(session, create_markers())

        await asyncio.gather(task, return_exceptions=True)
        session.release.assert_called_once()


class TestResetOnRealSession:
    async def test_marker_confirmed(self, fake_config: SandboxConfig) -> None:
        session = await InterpreterSession.start(Language.KAP, fake_repl_argv(Language.KAP), fake_config)
        try:
            session.acquire()
            assert await StateResetController(fake_config).reset(session, create_markers()) is True
            assert not session.busy
        finally:
            await session.terminate()
