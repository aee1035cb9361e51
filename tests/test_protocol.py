"""Tests for the marker protocol engine over fake REPL sessions.

Covers completion by end marker, error classification, timeouts (with and
without recycling), interpreter death mid-request and workspace reset.
"""

import re
from collections.abc import AsyncGenerator, Callable, Coroutine
from typing import Any

import pytest

from arraybox_sandbox.config import SandboxConfig
from arraybox_sandbox.exceptions import SessionExitedError
from arraybox_sandbox.models import ExecutionResult, ExecutionTier, Language
from arraybox_sandbox.protocol import ProtocolEngine, create_markers, timeout_message
from arraybox_sandbox.session import InterpreterSession
from tests.conftest import fake_repl_argv

RunFn = Callable[..., Coroutine[Any, Any, ExecutionResult]]


@pytest.fixture
async def sessions(fake_config: SandboxConfig) -> AsyncGenerator[dict[Language, InterpreterSession], None]:
    started: dict[Language, InterpreterSession] = {}
    yield started
    for session in started.values():
        await session.terminate()


@pytest.fixture
def run(fake_config: SandboxConfig, sessions: dict[Language, InterpreterSession]) -> RunFn:
    """Run code on a (lazily started) session and wait for its reset."""

    async def _run(
        language: Language,
        code: str,
        timeout_ms: int = 3_000,
        config: SandboxConfig | None = None,
    ) -> ExecutionResult:
        cfg = config or fake_config
        if language not in sessions:
            sessions[language] = await InterpreterSession.start(language, fake_repl_argv(language), cfg)
        session = sessions[language]
        session.acquire()
        result = await ProtocolEngine(cfg).run(session, code, timeout_ms)
        if not session.recycle_requested:
            await session.wait_released()
        return result

    return _run


class TestMarkers:
    def test_shared_random_suffix(self) -> None:
        markers = create_markers()
        token = re.fullmatch(r"___ARRAYBOX_END_([0-9a-f]{16})___", markers.end)
        assert token is not None
        assert markers.start == f"___ARRAYBOX_START_{token.group(1)}___"
        assert markers.reset == f"___ARRAYBOX_RESET_{token.group(1)}___"

    def test_unique_per_request(self) -> None:
        assert len({create_markers().end for _ in range(100)}) == 100

    @pytest.mark.parametrize(("ms", "text"), [(10_000, "10"), (1_500, "1.5"), (300, "0.3")])
    def test_timeout_message(self, ms: int, text: str) -> None:
        assert timeout_message(ms) == f"Execution timed out ({text} seconds)"


class TestJ:
    async def test_success(self, run: RunFn) -> None:
        result = await run(Language.J, "1+1")
        assert result.success
        assert result.output == "2"
        assert result.used_warm_session is True
        assert result.tier is ExecutionTier.WARM
        assert result.timed_out is None

    async def test_multiline(self, run: RunFn) -> None:
        result = await run(Language.J, "a =: 4\na")
        assert result.output == "4"

    async def test_language_error(self, run: RunFn) -> None:
        result = await run(Language.J, "boom")
        assert not result.success
        assert result.output == "|domain error\n|   boom"
        assert result.used_warm_session is True

    async def test_workspace_cleared_between_requests(self, run: RunFn) -> None:
        assert (await run(Language.J, "secret =: 42")).success
        result = await run(Language.J, "secret")
        assert not result.success
        assert "value error" in result.output

    async def test_session_reused(self, run: RunFn, sessions: dict[Language, InterpreterSession]) -> None:
        await run(Language.J, "1")
        await run(Language.J, "2")
        assert sessions[Language.J].request_count == 2
        assert not sessions[Language.J].busy


class TestApl:
    async def test_success(self, run: RunFn) -> None:
        result = await run(Language.APL, "2+3")
        assert result.success
        assert result.output == "5"

    async def test_error(self, run: RunFn) -> None:
        result = await run(Language.APL, "boom")
        assert not result.success
        assert result.output == "DOMAIN ERROR: Divide by zero"

    async def test_workspace_cleared_between_requests(self, run: RunFn) -> None:
        assert (await run(Language.APL, "x←5")).success
        result = await run(Language.APL, "x")
        assert not result.success
        assert result.output.startswith("VALUE ERROR")


class TestKap:
    async def test_success(self, run: RunFn) -> None:
        result = await run(Language.KAP, "1+2")
        assert result.success
        assert result.output == "3"

    async def test_error(self, run: RunFn) -> None:
        result = await run(Language.KAP, "boom")
        assert not result.success
        assert result.output == "Error at: 1:1\nError: Domain error"

    async def test_state_survives_reset(self, run: RunFn) -> None:
        """Kap has no workspace clear; only recycling drops its state."""
        await run(Language.KAP, "x←7")
        assert (await run(Language.KAP, "x")).output == "7"


class TestTimeouts:
    async def test_timeout_recycles_session(self, run: RunFn, sessions: dict[Language, InterpreterSession]) -> None:
        result = await run(Language.J, "sleep 5", timeout_ms=300)

        assert not result.success
        assert result.timed_out is True
        assert result.used_warm_session is True
        assert result.output == "Execution timed out (0.3 seconds)"
        assert sessions[Language.J].recycle_requested

    async def test_timeout_keeps_partial_output(self, run: RunFn) -> None:
        result = await run(Language.J, "7\nsleep 5", timeout_ms=300)
        assert result.timed_out is True
        assert result.output == "7"

    async def test_timeout_without_recycle_resets_in_background(
        self,
        fake_config: SandboxConfig,
        run: RunFn,
        sessions: dict[Language, InterpreterSession],
    ) -> None:
        config = fake_config.model_copy(update={"recycle_on_timeout": False})
        result = await run(Language.J, "sleep 0.3", timeout_ms=100, config=config)

        assert result.timed_out is True
        session = sessions[Language.J]
        assert not session.recycle_requested
        assert not session.busy  # released by the reset controller


class TestSessionDeath:
    async def test_exit_mid_request(self, fake_config: SandboxConfig) -> None:
        session = await InterpreterSession.start(Language.J, fake_repl_argv(Language.J), fake_config)
        try:
            session.acquire()
            with pytest.raises(SessionExitedError):
                await ProtocolEngine(fake_config).run(session, "die", 3_000)
        finally:
            await session.terminate()

    async def test_write_to_dead_session(self, fake_config: SandboxConfig) -> None:
        session = await InterpreterSession.start(Language.J, fake_repl_argv(Language.J), fake_config)
        await session.terminate()
        with pytest.raises(SessionExitedError):
            await ProtocolEngine(fake_config).run(session, "1+1", 1_000)
