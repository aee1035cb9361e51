"""Tests for Sandbox: validation, the warm/cold/direct fallback chain, status.

Warm sessions and the direct tier run the fake REPL; the cold tier is driven
with run_oneshot and the runtime probes mocked since it needs a container
runtime.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from arraybox_sandbox import constants
from arraybox_sandbox.config import SandboxConfig
from arraybox_sandbox.exceptions import SessionStartupError
from arraybox_sandbox.models import ExecutionResult, ExecutionTier, Language, SessionState
from arraybox_sandbox.oneshot import OneShotOutput
from arraybox_sandbox.sandbox import Sandbox
from tests.conftest import fake_repl_argv


def oneshot_output(stdout: str = "", *, exit_code: int | None = 0, timed_out: bool = False) -> OneShotOutput:
    return OneShotOutput(stdout=stdout, stderr="", exit_code=exit_code, timed_out=timed_out, elapsed_ms=12)


@pytest.fixture
def cold_config(fake_config: SandboxConfig) -> SandboxConfig:
    return fake_config.model_copy(update={"use_warm_sessions": False})


@pytest.fixture
def runtime_up():
    """Pretend the container runtime answers and every image exists."""
    with (
        patch("arraybox_sandbox.sandbox.is_runtime_available", new=AsyncMock(return_value=True)),
        patch("arraybox_sandbox.image_provisioner.ImageProvisioner.ensure_image", new=AsyncMock(return_value=True)),
    ):
        yield


# ============================================================================
# Input validation
# ============================================================================


class TestValidation:
    @pytest.mark.parametrize("code", ["", "   ", "\n\n"])
    async def test_empty_code(self, sandbox: Sandbox, code: str) -> None:
        result = await sandbox.execute("j", code)
        assert not result.success
        assert result.output == "Code must not be empty"
        assert result.tier is ExecutionTier.NONE

    async def test_oversized_code(self, fake_config: SandboxConfig) -> None:
        async with Sandbox(fake_config.model_copy(update={"max_code_size": 10})) as sbx:
            result = await sbx.execute("j", "1+" * 10)
        assert not result.success
        assert "maximum size of 10" in result.output

    async def test_unsupported_language(self, sandbox: Sandbox) -> None:
        result = await sandbox.execute("python", "print(1)")
        assert not result.success
        assert result.output == "Unsupported language 'python' (supported: j, apl, kap)"

    @pytest.mark.parametrize("timeout_ms", [0, -5, constants.MAX_TIMEOUT_MS + 1])
    async def test_bad_timeout(self, sandbox: Sandbox, timeout_ms: int) -> None:
        result = await sandbox.execute("j", "1", timeout_ms=timeout_ms)
        assert not result.success
        assert "timeout_ms" in result.output

    async def test_language_is_case_insensitive(self, sandbox: Sandbox) -> None:
        assert (await sandbox.execute(" J ", "1+1")).output == "2"


# ============================================================================
# Warm tier
# ============================================================================


class TestWarmTier:
    async def test_success(self, sandbox: Sandbox) -> None:
        result = await sandbox.execute(Language.J, "1+1")
        assert result.success
        assert result.output == "2"
        assert result.used_warm_session is True
        assert result.tier is ExecutionTier.WARM
        assert result.execution_time_ms is not None
        assert result.to_wire() == {"success": True, "output": "2", "usedWarmSession": True}

    async def test_language_error_is_a_result(self, sandbox: Sandbox) -> None:
        result = await sandbox.execute("apl", "boom")
        assert not result.success
        assert result.output == "DOMAIN ERROR: Divide by zero"
        assert result.tier is ExecutionTier.WARM

    async def test_timeout_is_a_result(self, sandbox: Sandbox) -> None:
        result = await sandbox.execute("j", "sleep 5", timeout_ms=300)
        assert result.timed_out is True
        assert result.output == "Execution timed out (0.3 seconds)"
        assert result.tier is ExecutionTier.WARM

    async def test_queued_request_keeps_its_deadline(self, sandbox: Sandbox) -> None:
        await sandbox.execute("j", "1")
        loop = asyncio.get_running_loop()

        async def timed() -> tuple[float, ExecutionResult]:
            started = loop.time()
            result = await sandbox.execute("j", "sleep 5", timeout_ms=500)
            return loop.time() - started, result

        outcomes = await asyncio.gather(timed(), timed())

        for elapsed, result in outcomes:
            assert result.timed_out is True
            assert result.tier is ExecutionTier.WARM
            assert elapsed < 0.8

    async def test_languages_served_concurrently(self, sandbox: Sandbox) -> None:
        results = await asyncio.gather(
            sandbox.execute("j", "2*3"),
            sandbox.execute("apl", "2*3"),
            sandbox.execute("kap", "2*3"),
        )
        assert [r.output for r in results] == ["6", "6", "6"]
        assert all(r.tier is ExecutionTier.WARM for r in results)

    async def test_state_cleared_between_requests(self, sandbox: Sandbox) -> None:
        await sandbox.execute("j", "secret =: 1")
        assert not (await sandbox.execute("j", "secret")).success

    async def test_startup_failure_falls_back_to_direct(self, fake_config: SandboxConfig) -> None:
        config = fake_config.model_copy(update={"session_commands": {Language.J: ["/nonexistent/jconsole"]}})
        async with Sandbox(config) as sbx:
            result = await sbx.execute("j", "1+1")

        assert result.success
        assert result.output == "2"
        assert result.tier is ExecutionTier.DIRECT
        assert result.used_warm_session is None

    async def test_queue_overflow_falls_back(self, fake_config: SandboxConfig) -> None:
        async with Sandbox(fake_config.model_copy(update={"max_queue_depth": 0})) as sbx:
            busy = asyncio.create_task(sbx.execute("j", "sleep 0.5\n1"))
            await asyncio.sleep(0.2)
            overflow = await sbx.execute("j", "2")
            assert (await busy).tier is ExecutionTier.WARM
        assert overflow.output == "2"
        assert overflow.tier is ExecutionTier.DIRECT


# ============================================================================
# Direct tier
# ============================================================================


class TestDirectTier:
    @pytest.mark.parametrize(
        ("language", "code", "expected"),
        [("j", "1+1", "2"), ("apl", "2+3", "5"), ("kap", "1+2", "3")],
    )
    async def test_runs_host_interpreter(self, cold_config: SandboxConfig, language: str, code: str, expected: str) -> None:
        async with Sandbox(cold_config) as sbx:
            result = await sbx.execute(language, code)
        assert result.success
        assert result.output == expected
        assert result.tier is ExecutionTier.DIRECT
        assert result.used_warm_session is None

    async def test_language_error(self, cold_config: SandboxConfig) -> None:
        async with Sandbox(cold_config) as sbx:
            result = await sbx.execute("j", "boom")
        assert not result.success
        assert "|domain error" in result.output

    async def test_timeout(self, cold_config: SandboxConfig) -> None:
        async with Sandbox(cold_config) as sbx:
            result = await sbx.execute("j", "sleep 5", timeout_ms=300)
        assert result.timed_out is True
        assert result.output == "Execution timed out (0.3 seconds)"
        assert result.tier is ExecutionTier.DIRECT

    async def test_disabled_sandbox_goes_direct(self, sandbox: Sandbox) -> None:
        sandbox.set_enabled(False)
        result = await sandbox.execute("j", "1+1")
        assert not sandbox.enabled
        assert result.tier is ExecutionTier.DIRECT
        assert sandbox.pool.stats() == []

    async def test_no_interpreter_anywhere(
        self,
        fake_config: SandboxConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("PATH", str(tmp_path))
        config = fake_config.model_copy(update={"session_commands": {}, "interpreter_commands": {}})
        async with Sandbox(config) as sbx:
            result = await sbx.execute("kap", "1+2")

        assert not result.success
        assert result.output == "kap is unavailable: sandbox not usable and no host interpreter installed"
        assert result.tier is ExecutionTier.NONE

    async def test_interpreter_spawn_failure(self, cold_config: SandboxConfig) -> None:
        config = cold_config.model_copy(update={"interpreter_commands": {Language.J: ["/nonexistent/jconsole"]}})
        async with Sandbox(config) as sbx:
            result = await sbx.execute("j", "1")
        assert not result.success
        assert result.output.startswith("Failed to start j interpreter")


# ============================================================================
# Cold tier
# ============================================================================


class TestColdTier:
    async def test_cold_run(self, cold_config: SandboxConfig, runtime_up: None) -> None:
        run = AsyncMock(return_value=oneshot_output("2\n"))
        with patch("arraybox_sandbox.sandbox.run_oneshot", new=run):
            async with Sandbox(cold_config) as sbx:
                result = await sbx.execute("j", "1+1")

        assert result.success
        assert result.output == "2"
        assert result.tier is ExecutionTier.COLD
        assert result.execution_time_ms == 12
        argv, payload, timeout_ms = run.await_args.args
        assert argv[:2] == ["arraybox-no-such-docker", "run"]
        assert argv[-1] == "arraybox-sandbox-j"
        assert payload == "1+1\nexit 0\n"
        assert 4_500 < timeout_ms <= 5_000

    async def test_language_error(self, cold_config: SandboxConfig, runtime_up: None) -> None:
        run = AsyncMock(return_value=oneshot_output("|domain error\n|   boom\n"))
        with patch("arraybox_sandbox.sandbox.run_oneshot", new=run):
            async with Sandbox(cold_config) as sbx:
                result = await sbx.execute("j", "boom")
        assert not result.success
        assert result.output == "|domain error\n|   boom"
        assert result.tier is ExecutionTier.COLD

    async def test_timeout_removes_container(self, cold_config: SandboxConfig, runtime_up: None) -> None:
        run = AsyncMock(return_value=oneshot_output(exit_code=None, timed_out=True))
        remove = AsyncMock(return_value=True)
        with (
            patch("arraybox_sandbox.sandbox.run_oneshot", new=run),
            patch("arraybox_sandbox.sandbox.remove_container", new=remove),
        ):
            async with Sandbox(cold_config) as sbx:
                result = await sbx.execute("j", "sleep 9", timeout_ms=2_000)
            await run.await_args.kwargs["on_timeout"]()

        assert result.timed_out is True
        assert result.output == "Execution timed out (2 seconds)"
        assert result.tier is ExecutionTier.COLD
        name = next(arg for arg in run.await_args.args[0] if arg.startswith("--name="))
        assert remove.await_args.args[1] == name.removeprefix("--name=")

    async def test_runtime_rejects_start_falls_back(self, cold_config: SandboxConfig, runtime_up: None) -> None:
        run = AsyncMock(side_effect=[oneshot_output(exit_code=125), oneshot_output("2\n")])
        with patch("arraybox_sandbox.sandbox.run_oneshot", new=run):
            async with Sandbox(cold_config) as sbx:
                result = await sbx.execute("j", "1+1")

        assert result.tier is ExecutionTier.DIRECT
        assert result.output == "2"
        assert run.await_args.args[0] == fake_repl_argv(Language.J, batch=True)

    async def test_fallback_after_deadline_times_out(self, cold_config: SandboxConfig, runtime_up: None) -> None:
        async def slow_rejection(*args: object, **kwargs: object) -> OneShotOutput:
            await asyncio.sleep(0.4)
            return oneshot_output(exit_code=125)

        run = AsyncMock(side_effect=slow_rejection)
        with patch("arraybox_sandbox.sandbox.run_oneshot", new=run):
            async with Sandbox(cold_config) as sbx:
                result = await sbx.execute("j", "1+1", timeout_ms=300)

        assert run.await_count == 1
        assert result.timed_out is True
        assert result.output == "Execution timed out (0.3 seconds)"
        assert result.tier is ExecutionTier.NONE

    async def test_spawn_failure_falls_back(self, cold_config: SandboxConfig, runtime_up: None) -> None:
        run = AsyncMock(side_effect=[SessionStartupError("no docker"), oneshot_output("3\n")])
        with patch("arraybox_sandbox.sandbox.run_oneshot", new=run):
            async with Sandbox(cold_config) as sbx:
                result = await sbx.execute("kap", "1+2")
        assert result.tier is ExecutionTier.DIRECT
        assert result.output == "3"

    async def test_apl_without_dyalog_goes_direct(self, cold_config: SandboxConfig, runtime_up: None) -> None:
        run = AsyncMock(return_value=oneshot_output("5\n"))
        with (
            patch("arraybox_sandbox.sandbox.find_dyalog_path", new=AsyncMock(return_value=None)),
            patch("arraybox_sandbox.sandbox.run_oneshot", new=run),
        ):
            async with Sandbox(cold_config) as sbx:
                result = await sbx.execute("apl", "2+3")

        assert result.tier is ExecutionTier.DIRECT
        assert run.await_count == 1
        assert run.await_args.args[0] == fake_repl_argv(Language.APL, batch=True)

    async def test_apl_cold_mounts_dyalog(self, cold_config: SandboxConfig, runtime_up: None, tmp_path: Path) -> None:
        run = AsyncMock(return_value=oneshot_output("5\n"))
        config = cold_config.model_copy(update={"dyalog_path": tmp_path})
        with patch("arraybox_sandbox.sandbox.run_oneshot", new=run):
            async with Sandbox(config) as sbx:
                result = await sbx.execute("apl", "2+3")

        assert result.tier is ExecutionTier.COLD
        argv, payload, _ = run.await_args.args
        assert f"{tmp_path}:/opt/dyalog:ro" in argv
        assert "Safe3.DefaultTimeout←5" in payload


# ============================================================================
# Availability, prewarm, status
# ============================================================================


class TestLifecycle:
    async def test_is_available(self, sandbox: Sandbox) -> None:
        assert await sandbox.is_available("j") is False  # no runtime
        assert await sandbox.is_available("cobol") is False

    async def test_is_available_with_runtime(self, fake_config: SandboxConfig, runtime_up: None) -> None:
        async with Sandbox(fake_config) as sbx:
            assert await sbx.is_available("kap") is True
            sbx.set_enabled(False)
            assert await sbx.is_available("kap") is False

    async def test_prewarm(self, sandbox: Sandbox) -> None:
        warmed = await sandbox.prewarm()
        assert warmed == {Language.J: True, Language.APL: True, Language.KAP: True}
        assert all(info.state is SessionState.READY for info in sandbox.pool.stats())

    async def test_prewarm_disabled(self, sandbox: Sandbox) -> None:
        sandbox.set_enabled(False)
        assert await sandbox.prewarm() == {}

    async def test_prewarm_without_runtime(self, fake_config: SandboxConfig) -> None:
        async with Sandbox(fake_config.model_copy(update={"session_commands": {}})) as sbx:
            assert await sbx.prewarm() == {}

    async def test_prewarm_on_startup(self, fake_config: SandboxConfig) -> None:
        config = fake_config.model_copy(update={"prewarm_on_startup": True, "prewarm_delay_ms": 0})
        async with Sandbox(config) as sbx:
            for _ in range(100):
                if len(sbx.pool.stats()) == 3:
                    break
                await asyncio.sleep(0.05)
            assert {info.language for info in sbx.pool.stats()} == set(Language)

    async def test_status(self, sandbox: Sandbox) -> None:
        await sandbox.execute("j", "1")
        status = await sandbox.status()

        assert status.enabled is True
        assert status.runtime_available is False
        assert status.timeout_ms == 5_000
        assert status.memory_limit == sandbox.config.memory_limit
        assert [info.language for info in status.sessions] == [Language.J]

    async def test_close_terminates_sessions(self, fake_config: SandboxConfig) -> None:
        sbx = Sandbox(fake_config)
        await sbx.start()
        await sbx.execute("j", "1")
        session = sbx.pool.session_for(Language.J)

        await sbx.close()
        await sbx.close()

        assert session is not None and session.state is SessionState.TERMINATED

    async def test_instances_are_independent(self, fake_config: SandboxConfig) -> None:
        async with Sandbox(fake_config) as first, Sandbox(fake_config) as second:
            await first.execute("kap", "x←1")
            await second.execute("kap", "1")
            assert first.pool.session_for(Language.KAP) is not second.pool.session_for(Language.KAP)
            assert (await second.execute("kap", "x")).success is False
