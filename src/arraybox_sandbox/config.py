"""Sandbox configuration for arraybox-sandbox.

SandboxConfig is injected into Sandbox (and from there into the pool, the
protocol engine and the provisioner). There is no module-level config
singleton, so tests and embedders can run independent instances side by side.

Example:
    ```python
    from arraybox_sandbox import Sandbox, SandboxConfig

    # Defaults: warm sessions on, 10s timeout, recycle after 500 requests
    async with Sandbox() as sandbox:
        result = await sandbox.execute("j", "1+1")

    # Custom limits
    config = SandboxConfig(memory_limit="512m", timeout_ms=5000, idle_eviction_ms=600_000)
    async with Sandbox(config) as sandbox:
        result = await sandbox.execute("apl", "2+2")
    ```
"""

from __future__ import annotations

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from arraybox_sandbox import constants
from arraybox_sandbox.models import Language

_MEMORY_LIMIT_PATTERN = re.compile(r"^[1-9][0-9]*[bkmg]$")


def _default_images() -> dict[Language, str]:
    return {language: f"{constants.IMAGE_PREFIX}-{language.value}" for language in Language}


class SandboxConfig(BaseModel):
    """Configuration for Sandbox.

    Attributes:
        enabled: Master switch for sandboxed tiers. When False every request
            goes to direct (unsandboxed) execution.
        use_warm_sessions: Try the warm session pool before cold starts.
        memory_limit: Container memory ceiling in docker syntax ("256m").
        cpu_limit: Container CPU ceiling in cores.
        pids_limit: Container process-count ceiling.
        timeout_ms: Default execution timeout per request.
        max_requests_per_session: Recycle a warm session after this many requests.
        idle_eviction_ms: Terminate warm sessions idle this long. 0 = never.
        idle_sweep_interval_ms: Period of the idle eviction sweep.
        prewarm_on_startup: Start warm sessions for every language on start().
        prewarm_delay_ms: Delay before prewarming begins.
        recycle_on_timeout: Recycle a warm session whose request timed out
            instead of waiting for it to drain in the background.
        max_queue_depth: Requests allowed to wait for one language's warm
            session. Overflow is served by the cold tier.
        reset_fallback_ms: Upper bound on waiting for the reset marker.
        images: Execution image name per language.
        docker_bin: Container runtime CLI.
        docker_dir: Build context holding ``Dockerfile.<language>``.
        dyalog_path: Host Dyalog APL install to mount into APL sessions
            (auto-detected when None).
        interpreter_commands: Host interpreter argv per language for the
            direct tier (auto-detected when absent).
        session_commands: Replacement argv for launching warm sessions,
            bypassing the container runtime. Used by tests and custom runtimes.
        max_code_size: Maximum accepted code length in characters.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Tiers
    enabled: bool = Field(default=True, description="Enable sandboxed tiers")
    use_warm_sessions: bool = Field(default=True, description="Try warm sessions first")

    # Resource limits
    memory_limit: str = Field(default=constants.DEFAULT_MEMORY_LIMIT, description="Container memory ceiling")
    cpu_limit: float = Field(default=constants.DEFAULT_CPU_LIMIT, gt=0, le=64, description="Container CPU ceiling")
    pids_limit: int = Field(default=constants.DEFAULT_PIDS_LIMIT, ge=8, le=4096, description="Process-count ceiling")

    # Timeouts
    timeout_ms: int = Field(
        default=constants.DEFAULT_TIMEOUT_MS,
        ge=1,
        le=constants.MAX_TIMEOUT_MS,
        description="Default execution timeout in ms",
    )
    reset_fallback_ms: int = Field(
        default=constants.DEFAULT_RESET_FALLBACK_MS,
        ge=1,
        le=60_000,
        description="Upper bound on waiting for the reset marker",
    )

    # Warm pool
    max_requests_per_session: int = Field(
        default=constants.DEFAULT_MAX_REQUESTS_PER_SESSION,
        ge=1,
        description="Recycle a warm session after this many requests",
    )
    idle_eviction_ms: int = Field(default=0, ge=0, description="Idle eviction threshold (0 = never)")
    idle_sweep_interval_ms: int = Field(
        default=constants.DEFAULT_IDLE_SWEEP_INTERVAL_MS,
        ge=10,
        description="Idle eviction sweep period",
    )
    prewarm_on_startup: bool = Field(default=True, description="Prewarm sessions on start()")
    prewarm_delay_ms: int = Field(default=constants.DEFAULT_PREWARM_DELAY_MS, ge=0)
    recycle_on_timeout: bool = Field(default=True, description="Recycle warm sessions that time out")
    max_queue_depth: int = Field(default=constants.DEFAULT_MAX_QUEUE_DEPTH, ge=0, le=1024)

    # Runtime / images
    images: dict[Language, str] = Field(default_factory=_default_images)
    docker_bin: str = Field(default="docker", min_length=1)
    docker_dir: Path = Field(default=Path("docker"), description="Image build context")
    dyalog_path: Path | None = Field(default=None, description="Host Dyalog install (auto-detect if None)")

    # Command overrides
    interpreter_commands: dict[Language, list[str]] = Field(default_factory=dict)
    session_commands: dict[Language, list[str]] = Field(default_factory=dict)

    # Limits
    max_code_size: int = Field(default=constants.MAX_CODE_SIZE, ge=1)

    @field_validator("memory_limit")
    @classmethod
    def _check_memory_limit(cls, value: str) -> str:
        value = value.strip().lower()
        if not _MEMORY_LIMIT_PATTERN.match(value):
            raise ValueError(f"memory_limit must look like '256m' or '1g', got {value!r}")
        return value

    @field_validator("interpreter_commands", "session_commands")
    @classmethod
    def _check_commands(cls, value: dict[Language, list[str]]) -> dict[Language, list[str]]:
        for language, argv in value.items():
            if not argv:
                raise ValueError(f"command for {language.value} must not be empty")
        return value

    def image_for(self, language: Language) -> str:
        """Image name for a language, falling back to the naming convention."""
        return self.images.get(language, f"{constants.IMAGE_PREFIX}-{language.value}")

    @property
    def timeout_seconds(self) -> int:
        """Default timeout rounded down to whole seconds (min 1), for interpreter-side limits."""
        return max(1, self.timeout_ms // 1000)
