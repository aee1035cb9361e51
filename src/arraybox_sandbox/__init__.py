"""arraybox-sandbox: run untrusted J, APL and Kap code in locked-down containers.

Each request is served by a long-lived interpreter REPL inside a container
(warm session), by a single-use container (cold start) when no warm session
can take it, or by the host interpreter when no container runtime is around.

Quick Start:
    ```python
    from arraybox_sandbox import Sandbox

    async with Sandbox() as sandbox:
        result = await sandbox.execute("apl", "+/⍳10")
        print(result.output)  # "55"
    ```

With Configuration:
    ```python
    from arraybox_sandbox import Sandbox, SandboxConfig

    config = SandboxConfig(memory_limit="512m", timeout_ms=5_000, idle_eviction_ms=600_000)
    async with Sandbox(config) as sandbox:
        result = await sandbox.execute("j", "i. 3 3")
    ```

Isolation (per container):
    - No network, read-only root, small scratch tmpfs
    - Memory, CPU and process-count ceilings
    - Non-root user, no privilege escalation, capabilities dropped

Requirements:
    - Docker (or a compatible CLI) for the sandboxed tiers
    - Python 3.12+
"""

from arraybox_sandbox.config import SandboxConfig
from arraybox_sandbox.exceptions import (
    CodeValidationError,
    ImageProvisioningError,
    InputValidationError,
    InterpreterNotFoundError,
    IsolationUnavailableError,
    PermanentError,
    ProtocolTimeoutError,
    SandboxError,
    SessionCapacityError,
    SessionExitedError,
    SessionStartupError,
    TransientError,
    UnsupportedLanguageError,
)
from arraybox_sandbox.models import ExecutionResult, ExecutionTier, Language, SandboxStatus, SessionInfo
from arraybox_sandbox.sandbox import Sandbox
from arraybox_sandbox.settings import Settings

__all__ = [
    "CodeValidationError",
    "ExecutionResult",
    "ExecutionTier",
    "ImageProvisioningError",
    "InputValidationError",
    "InterpreterNotFoundError",
    "IsolationUnavailableError",
    "Language",
    "PermanentError",
    "ProtocolTimeoutError",
    "Sandbox",
    "SandboxConfig",
    "SandboxError",
    "SandboxStatus",
    "SessionCapacityError",
    "SessionExitedError",
    "SessionInfo",
    "SessionStartupError",
    "Settings",
    "TransientError",
    "UnsupportedLanguageError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("arraybox-sandbox")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
