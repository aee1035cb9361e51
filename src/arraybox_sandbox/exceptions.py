"""Exception hierarchy for arraybox-sandbox.

All exceptions inherit from SandboxError. None of them escape
Sandbox.execute() for a well-formed request: the fallback chain catches
infrastructure errors at each tier boundary and normalizes the final outcome
into an ExecutionResult. They do surface from the lower-level building blocks
(WarmSessionPool, InterpreterSession, ImageProvisioner) for callers that drive
those directly.

Hierarchy:
    SandboxError (base)
    ├── TransientError (next call may succeed)
    │   ├── SessionStartupError      ← launch failed / ready signature missing
    │   ├── SessionExitedError       ← interpreter died (stdin closed, EOF)
    │   └── SessionCapacityError     ← per-language request queue is full
    ├── PermanentError (won't succeed until restart / reconfiguration)
    │   ├── IsolationUnavailableError ← container runtime not reachable
    │   ├── ImageProvisioningError    ← image build failed
    │   └── InterpreterNotFoundError  ← no host interpreter for direct tier
    ├── ProtocolTimeoutError         ← no end/error signature within the timeout
    └── InputValidationError (caller bug)
        ├── CodeValidationError      ← empty or oversized code
        └── UnsupportedLanguageError ← unknown language id
"""

from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    """Base exception for all sandbox errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(SandboxError):
    """Base for errors that may succeed on the next attempt.

    The warm pool discards the failing session; the next call starts fresh.
    """


class PermanentError(SandboxError):
    """Base for errors that persist for the lifetime of the process.

    Probe and provisioning results are cached, so these will not clear
    until the hosting process restarts.
    """


# =============================================================================
# Transient
# =============================================================================


class SessionStartupError(TransientError):
    """Interpreter session failed to launch.

    Raised when the container runtime or interpreter binary cannot be spawned,
    or when the process exits before its boot banner has drained.
    """


class SessionExitedError(TransientError):
    """Interpreter session died unexpectedly.

    Raised when writing to the session's stdin fails or its output streams
    hit EOF while a request is in flight.
    """


class SessionCapacityError(TransientError):
    """Too many requests are already queued for a language's warm session."""


# =============================================================================
# Permanent
# =============================================================================


class IsolationUnavailableError(PermanentError):
    """Container runtime is not installed or not reachable."""


class ImageProvisioningError(PermanentError):
    """Execution image for a language could not be found or built.

    Attributes:
        output: Tail of the build output (if a build was attempted)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, output: str = ""):
        super().__init__(message, context)
        self.output = output


class InterpreterNotFoundError(PermanentError):
    """No host interpreter is installed for direct (unsandboxed) execution."""


# =============================================================================
# Protocol
# =============================================================================


class ProtocolTimeoutError(SandboxError):
    """No end marker or error signature appeared within the timeout.

    Attributes:
        partial_output: Whatever the session emitted before the deadline
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, partial_output: str = ""):
        super().__init__(message, context)
        self.partial_output = partial_output


# =============================================================================
# Input validation
# =============================================================================


class InputValidationError(SandboxError):
    """Base for input validation errors (caller bugs, not runtime failures)."""


class CodeValidationError(InputValidationError):
    """Code is empty, whitespace-only, or exceeds the size limit."""


class UnsupportedLanguageError(InputValidationError):
    """Language id is not one of the supported interpreters."""
