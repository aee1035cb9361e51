"""Shared pytest fixtures for arraybox-sandbox tests."""

import shutil
import subprocess
import sys
from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest

from arraybox_sandbox.config import SandboxConfig
from arraybox_sandbox.models import Language
from arraybox_sandbox.pool import WarmSessionPool
from arraybox_sandbox.sandbox import Sandbox
from arraybox_sandbox.system_probes import reset_probe_cache

FAKE_REPL = Path(__file__).parent / "fake_repl.py"


def fake_repl_argv(language: Language, *, batch: bool = False) -> list[str]:
    """argv running the scripted stand-in REPL for ``language``."""
    argv = [sys.executable, str(FAKE_REPL), language.value]
    if batch:
        argv.append("--batch")
    return argv


def _docker_available() -> bool:
    if shutil.which("docker") is None:
        return False
    try:
        return subprocess.run(["docker", "info"], capture_output=True, timeout=5, check=False).returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


# Real container runtime + images; everything else uses the fake REPL
skip_unless_docker = pytest.mark.skipif(
    not _docker_available(),
    reason="Requires a running Docker daemon",
)


@pytest.fixture(autouse=True)
def _fresh_probe_cache() -> Iterator[None]:
    """Probe results are process-wide; never let one test see another's."""
    reset_probe_cache()
    yield
    reset_probe_cache()


@pytest.fixture
def fake_config() -> SandboxConfig:
    """Config whose warm sessions and direct tier run the fake REPL."""
    return SandboxConfig(
        timeout_ms=5_000,
        reset_fallback_ms=500,
        prewarm_on_startup=False,
        session_commands={language: fake_repl_argv(language) for language in Language},
        interpreter_commands={language: fake_repl_argv(language, batch=True) for language in Language},
        docker_bin="arraybox-no-such-docker",
    )


@pytest.fixture
async def pool(fake_config: SandboxConfig) -> AsyncGenerator[WarmSessionPool, None]:
    """Warm session pool over fake REPLs, shut down after the test."""
    warm_pool = WarmSessionPool(fake_config)
    yield warm_pool
    await warm_pool.shutdown()


@pytest.fixture
async def sandbox(fake_config: SandboxConfig) -> AsyncGenerator[Sandbox, None]:
    """Started Sandbox over fake REPLs (no container runtime)."""
    async with Sandbox(fake_config) as sbx:
        yield sbx
