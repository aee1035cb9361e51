"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from arraybox_sandbox import constants
from arraybox_sandbox.config import SandboxConfig


class Settings(BaseSettings):
    """Operator-facing configuration surface.

    All settings can be overridden via environment variables with the
    ARRAYBOX_SANDBOX_ prefix, e.g. ARRAYBOX_SANDBOX_MEMORY_LIMIT=512m or
    ARRAYBOX_SANDBOX_IDLE_EVICTION_MS=600000.
    """

    model_config = SettingsConfigDict(
        env_prefix="ARRAYBOX_SANDBOX_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    enabled: bool = True
    use_warm_sessions: bool = True

    # Limits
    memory_limit: str = constants.DEFAULT_MEMORY_LIMIT
    cpu_limit: float = constants.DEFAULT_CPU_LIMIT
    pids_limit: int = constants.DEFAULT_PIDS_LIMIT
    timeout_ms: int = constants.DEFAULT_TIMEOUT_MS

    # Warm pool
    max_requests_per_session: int = constants.DEFAULT_MAX_REQUESTS_PER_SESSION
    idle_eviction_ms: int = 0
    prewarm_on_startup: bool = True
    recycle_on_timeout: bool = True

    # Runtime
    docker_bin: str = "docker"
    docker_dir: Path = Path("docker")
    dyalog_path: Path | None = None

    def to_config(self) -> SandboxConfig:
        """Validate into an immutable SandboxConfig."""
        return SandboxConfig(
            enabled=self.enabled,
            use_warm_sessions=self.use_warm_sessions,
            memory_limit=self.memory_limit,
            cpu_limit=self.cpu_limit,
            pids_limit=self.pids_limit,
            timeout_ms=self.timeout_ms,
            max_requests_per_session=self.max_requests_per_session,
            idle_eviction_ms=self.idle_eviction_ms,
            prewarm_on_startup=self.prewarm_on_startup,
            recycle_on_timeout=self.recycle_on_timeout,
            docker_bin=self.docker_bin,
            docker_dir=self.docker_dir,
            dyalog_path=self.dyalog_path,
        )
