"""Host capability probes: container runtime, host interpreters, Dyalog install.

Probe results are cached for the lifetime of the process. A cached "runtime
unavailable" is deliberately never retried: operators restart the service
after installing or starting the runtime.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.dialects import get_dialect
from arraybox_sandbox.subprocess_utils import run_command

if TYPE_CHECKING:
    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.models import Language

logger = get_logger(__name__)

_DYALOG_EXECUTABLES = ("/usr/bin/dyalog", "/usr/local/bin/dyalog")
_DYALOG_INSTALL_DIRS = (
    "/opt/mdyalog/20.0/64/unicode",
    "/opt/mdyalog/19.0/64/unicode",
    "/opt/mdyalog/18.2/64/unicode",
    "/opt/dyalog",
    "/usr/share/dyalog",
    "~/dyalog",
    "/usr/local/dyalog",
)


class _ProbeCache:
    """Container for cached probe results.

    Locks are created lazily so they bind to the running event loop, and
    prevent a stampede of ``docker info`` calls when several languages are
    prewarmed at once.
    """

    __slots__ = ("_locks", "dyalog", "runtime")

    def __init__(self) -> None:
        self.runtime: dict[str, bool] = {}
        self.dyalog: dict[str, Path | None] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get_lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]


_probe_cache = _ProbeCache()


def reset_probe_cache() -> None:
    """Forget all cached probe results (tests only)."""
    global _probe_cache  # noqa: PLW0603
    _probe_cache = _ProbeCache()


async def is_runtime_available(config: SandboxConfig) -> bool:
    """Check that the container runtime answers a liveness command (cached).

    Runs ``<docker_bin> info``; any failure (binary missing, daemon down,
    permission denied, hang) counts as unavailable.
    """
    key = config.docker_bin
    if key in _probe_cache.runtime:
        return _probe_cache.runtime[key]

    async with _probe_cache.get_lock(f"runtime:{key}"):
        if key in _probe_cache.runtime:
            return _probe_cache.runtime[key]

        try:
            result = await run_command([config.docker_bin, "info"], timeout=constants.RUNTIME_PROBE_TIMEOUT_SECONDS)
            available = result.returncode == 0
            if not available:
                logger.warning(
                    "Container runtime not available, falling back to direct execution",
                    extra={"docker_bin": key, "returncode": result.returncode, "stderr": result.stderr.strip()[-500:]},
                )
        except FileNotFoundError:
            logger.warning(
                "Container runtime not installed, falling back to direct execution",
                extra={"docker_bin": key},
            )
            available = False
        except (OSError, TimeoutError) as e:
            logger.warning(
                "Container runtime probe failed, falling back to direct execution",
                extra={"docker_bin": key, "error": str(e) or type(e).__name__},
            )
            available = False

        if available:
            logger.info("Container runtime is available", extra={"docker_bin": key})
        _probe_cache.runtime[key] = available
        return available


async def find_dyalog_path(config: SandboxConfig) -> Path | None:
    """Locate the host Dyalog APL installation to mount into APL containers (cached).

    Detection order:
    1. Explicit ``config.dyalog_path``
    2. Symlink target of /usr/bin/dyalog or /usr/local/bin/dyalog
    3. Well-known install directories containing ``dyalog`` or ``mapl``
    """
    if config.dyalog_path is not None:
        return config.dyalog_path

    key = "dyalog"
    if key in _probe_cache.dyalog:
        return _probe_cache.dyalog[key]

    async with _probe_cache.get_lock(key):
        if key in _probe_cache.dyalog:
            return _probe_cache.dyalog[key]

        found: Path | None = None
        for exe in _DYALOG_EXECUTABLES:
            if not await aiofiles.os.path.islink(exe):
                continue  # /usr/bin itself is not an install dir
            real = Path(await asyncio.to_thread(os.path.realpath, exe))
            found = real.parent
            break

        if found is None:
            for candidate in _DYALOG_INSTALL_DIRS:
                directory = Path(candidate).expanduser()
                if await aiofiles.os.path.exists(directory / "dyalog") or await aiofiles.os.path.exists(
                    directory / "mapl"
                ):
                    found = directory
                    break

        if found is None:
            logger.warning("Dyalog APL installation not found")
        else:
            logger.info("Found Dyalog APL installation", extra={"path": str(found)})
        _probe_cache.dyalog[key] = found
        return found


def find_interpreter(language: Language, config: SandboxConfig) -> list[str] | None:
    """Resolve the host interpreter argv for direct (unsandboxed) execution.

    An explicit ``config.interpreter_commands`` entry wins; otherwise the
    dialect's candidate executables are searched on PATH and at their
    well-known install locations.

    Returns:
        argv including the dialect's batch-mode arguments, or None
    """
    override = config.interpreter_commands.get(language)
    if override:
        return list(override)

    dialect = get_dialect(language)
    for candidate in dialect.direct_candidates:
        resolved = shutil.which(os.path.expanduser(candidate))
        if resolved:
            return [resolved, *dialect.direct_args]
    return None
