"""Data models for arraybox-sandbox."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Language(str, Enum):
    """Supported array-language interpreters."""

    J = "j"
    APL = "apl"
    KAP = "kap"


class ExecutionTier(str, Enum):
    """Which tier of the fallback chain produced a result."""

    WARM = "warm"
    COLD = "cold"
    DIRECT = "direct"
    NONE = "none"
    """No tier ran (input rejected or every tier unavailable)."""


class SessionState(str, Enum):
    """Lifecycle of an interpreter session."""

    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    RECYCLING = "recycling"
    TERMINATED = "terminated"


VALID_STATE_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.STARTING: {SessionState.READY, SessionState.TERMINATED},
    SessionState.READY: {SessionState.BUSY, SessionState.RECYCLING, SessionState.TERMINATED},
    SessionState.BUSY: {SessionState.READY, SessionState.RECYCLING, SessionState.TERMINATED},
    SessionState.RECYCLING: {SessionState.TERMINATED},
    SessionState.TERMINATED: set(),
}
"""Allowed lifecycle moves. RECYCLING is only entered at a request boundary."""


class ExecutionRequest(BaseModel):
    """One untrusted snippet to run."""

    model_config = ConfigDict(frozen=True)

    language: Language
    code: str
    timeout_ms: int = Field(gt=0)


class ExecutionResult(BaseModel):
    """Outcome of Sandbox.execute(), identical in shape for every tier.

    ``to_wire()`` renders the JSON contract consumed by the HTTP servers:
    ``{success, output, timedOut?, usedWarmSession?}``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    success: bool = Field(description="False for language errors, timeouts and infrastructure failures")
    output: str = Field(default="", description="Cleaned interpreter output or explanatory error text")
    timed_out: bool | None = Field(default=None, description="Set when the request hit its timeout")
    used_warm_session: bool | None = Field(default=None, description="Set when a warm session served the request")
    tier: ExecutionTier = Field(default=ExecutionTier.NONE, exclude=True)
    execution_time_ms: int | None = Field(default=None, exclude=True)

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys and unset flags omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SessionInfo(BaseModel):
    """Snapshot of one pooled session for status reporting."""

    language: Language
    session_id: str
    pid: int | None
    state: SessionState
    busy: bool
    request_count: int
    idle_ms: int


class SandboxStatus(BaseModel):
    """Operator-facing view of the sandbox."""

    enabled: bool
    runtime_available: bool
    images_built: dict[Language, bool]
    sessions: list[SessionInfo]
    memory_limit: str
    cpu_limit: float
    timeout_ms: int
