"""Constants for arraybox-sandbox configuration and limits."""

from typing import Final

from arraybox_sandbox.models import Language

# ============================================================================
# Container Resource Defaults
# ============================================================================

DEFAULT_MEMORY_LIMIT: Final[str] = "256m"
"""Container memory ceiling (JVM-based Kap needs the headroom)."""

DEFAULT_CPU_LIMIT: Final[float] = 1.0
"""Container CPU ceiling in cores."""

DEFAULT_PIDS_LIMIT: Final[int] = 64
"""Process-count ceiling (fork bomb prevention; the JVM needs threads)."""

SCRATCH_TMPFS: Final[str] = "/tmp:rw,exec,nosuid,size=32m"
"""Writable scratch area on an otherwise read-only root filesystem."""

HOME_TMPFS_SIZE: Final[str] = "16m"
"""Size of the writable home directory for interpreters that keep config there."""

DEFAULT_SANDBOX_UID: Final[int] = 1000
"""Non-root identity inside the images (Debian base)."""

IMAGE_PREFIX: Final[str] = "arraybox-sandbox"
"""Image names are ``<prefix>-<language>``."""

# ============================================================================
# Execution Timeouts
# ============================================================================

DEFAULT_TIMEOUT_MS: Final[int] = 10_000
"""Default per-request execution timeout."""

MAX_TIMEOUT_MS: Final[int] = 300_000
"""Upper bound for a per-request timeout (5 minutes)."""

ERROR_DEBOUNCE_SECONDS: Final[float] = 0.1
"""Wait after the first error signature to collect multi-line error text."""

READY_DRAIN_SECONDS: Final[float] = 0.2
"""Extra drain after a ready signature so the rest of the banner is consumed."""

DEFAULT_RESET_FALLBACK_MS: Final[int] = 2_000
"""Bound on waiting for the reset marker before the session is released anyway."""

WRAPPER_LOAD_TIMEOUT_SECONDS: Final[float] = 5.0
"""Bound on loading the capability-restricting wrapper library."""

RUNTIME_PROBE_TIMEOUT_SECONDS: Final[float] = 5.0
"""Timeout for the container runtime liveness command."""

IMAGE_INSPECT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for checking whether an image exists."""

IMAGE_BUILD_TIMEOUT_SECONDS: Final[float] = 1_800.0
"""Timeout for building an execution image (interpreter downloads are slow)."""

ONESHOT_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Time allowed for a killed one-shot process to be reaped."""

CONTAINER_REMOVE_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for force-removing a container after its client was killed."""

PROCESS_TERM_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period between SIGTERM and SIGKILL when stopping a session."""

PROCESS_KILL_TIMEOUT_SECONDS: Final[float] = 2.0
"""Wait for a SIGKILLed process to be reaped before reporting failure."""

# ============================================================================
# Warm Session Pool
# ============================================================================

DEFAULT_MAX_REQUESTS_PER_SESSION: Final[int] = 500
"""Recycle a warm session after this many requests (isolation hygiene)."""

DEFAULT_IDLE_SWEEP_INTERVAL_MS: Final[int] = 60_000
"""How often idle warm sessions are checked for eviction."""

DEFAULT_MAX_QUEUE_DEPTH: Final[int] = 16
"""Requests allowed to wait for a language's warm session before overflowing to cold start."""

DEFAULT_PREWARM_DELAY_MS: Final[int] = 1_000
"""Delay before prewarming so the hosting server can finish starting."""

SESSION_START_MAX_RETRIES: Final[int] = 2
"""Attempts to launch a warm session before giving up for this call."""

SESSION_START_RETRY_MIN_SECONDS: Final[float] = 0.05
SESSION_START_RETRY_MAX_SECONDS: Final[float] = 0.5

PREWARM_LANGUAGES: Final[tuple[Language, ...]] = (Language.J, Language.APL, Language.KAP)
"""Languages started at prewarm, in order."""

# ============================================================================
# Code / Output Limits
# ============================================================================

MAX_CODE_SIZE: Final[int] = 64 * 1024
"""Maximum size in characters for submitted code."""

MAX_BUFFER_CHARS: Final[int] = 1_000_000
"""Per-stream accumulation ceiling; older text is discarded beyond it."""

BUILD_OUTPUT_TAIL_LINES: Final[int] = 40
"""Lines of failed build output kept for logs and errors."""

# ============================================================================
# Marker Protocol
# ============================================================================

MARKER_PREFIX: Final[str] = "___ARRAYBOX"
"""Fixed prefix; a random hex suffix makes each marker unguessable."""

MARKER_TOKEN_BYTES: Final[int] = 8
"""Random bytes per marker suffix (16 hex chars)."""
