"""Sandbox - public entry point and execution tier fallback chain.

Every request goes through the first tier that can serve it:

1. Warm: a pooled REPL session (marker protocol, reset between requests)
2. Cold: a single-use container running the interpreter in batch mode
3. Direct: the host interpreter with no confinement, used only when the
   container runtime or the language's image is unavailable (or the sandbox
   is disabled)

Infrastructure failures fall through to the next tier; language errors and
timeouts are results, not failures. execute() never raises for a well-formed
call: every outcome is an ExecutionResult.

Example:
    ```python
    from arraybox_sandbox import Sandbox

    async with Sandbox() as sandbox:
        result = await sandbox.execute("j", "1+1")
        print(result.to_wire())  # {'success': True, 'output': '2', 'usedWarmSession': True}
    ```
"""

from __future__ import annotations

import asyncio
import math
from typing import TYPE_CHECKING, Self

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.config import SandboxConfig
from arraybox_sandbox.dialects import get_dialect, parse_language
from arraybox_sandbox.docker_cmd import build_run_args, container_name, remove_container
from arraybox_sandbox.exceptions import (
    CodeValidationError,
    InputValidationError,
    InterpreterNotFoundError,
    IsolationUnavailableError,
    PermanentError,
    SandboxError,
    SessionStartupError,
)
from arraybox_sandbox.image_provisioner import ImageProvisioner
from arraybox_sandbox.models import ExecutionRequest, ExecutionResult, ExecutionTier, Language, SandboxStatus
from arraybox_sandbox.oneshot import run_oneshot
from arraybox_sandbox.pool import WarmSessionPool
from arraybox_sandbox.protocol import timeout_message
from arraybox_sandbox.sanitizer import sanitize_oneshot
from arraybox_sandbox.subprocess_utils import log_task_exception
from arraybox_sandbox.system_probes import find_dyalog_path, find_interpreter, is_runtime_available

if TYPE_CHECKING:
    from arraybox_sandbox.oneshot import OneShotOutput

logger = get_logger(__name__)

DOCKER_RUN_FAILURE_EXIT_CODE = 125
"""``docker run`` itself failed (daemon error, missing image, bad flag)."""


class Sandbox:
    """Sandboxed execution engine for array-language REPLs.

    Owns one warm session pool and one image provisioner; instances are
    independent of each other.
    """

    def __init__(self, config: SandboxConfig | None = None) -> None:
        self._config = config or SandboxConfig()
        self._enabled = self._config.enabled
        self._provisioner = ImageProvisioner(self._config)
        self._pool = WarmSessionPool(self._config, self._provisioner)
        self._prewarm_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def pool(self) -> WarmSessionPool:
        return self._pool

    @property
    def provisioner(self) -> ImageProvisioner:
        return self._provisioner

    @property
    def enabled(self) -> bool:
        return self._enabled

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> Self:
        """Start background work: idle sweep and (optionally) delayed prewarm."""
        if self._started:
            return self
        self._started = True
        self._pool.start()
        if self._config.prewarm_on_startup and self._enabled:
            self._prewarm_task = asyncio.create_task(self._delayed_prewarm(), name="prewarm")
            self._prewarm_task.add_done_callback(log_task_exception)
        return self

    async def close(self) -> None:
        """Cancel prewarming and terminate all warm sessions."""
        if self._prewarm_task is not None:
            self._prewarm_task.cancel()
            await asyncio.gather(self._prewarm_task, return_exceptions=True)
            self._prewarm_task = None
        await self._pool.shutdown()

    async def __aenter__(self) -> Self:
        return await self.start()

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object,
    ) -> None:
        await self.close()

    def install_signal_handlers(self) -> None:
        """Terminate warm sessions when the hosting process gets SIGINT/SIGTERM."""
        self._pool.install_signal_handlers()

    def set_enabled(self, enabled: bool) -> None:
        """Turn the sandboxed tiers on or off at runtime."""
        self._enabled = enabled
        logger.info(f"Sandbox mode {'enabled' if enabled else 'disabled'}")

    # -------------------------------------------------------------------------
    # Availability
    # -------------------------------------------------------------------------

    async def _warm_ready(self, language: Language) -> bool:
        if language in self._config.session_commands:
            return True
        return await self._sandbox_ready(language)

    async def _sandbox_ready(self, language: Language) -> bool:
        if not await is_runtime_available(self._config):
            return False
        return await self._provisioner.ensure_image(language)

    async def _require_sandbox(self, language: Language) -> None:
        if not self._enabled:
            raise IsolationUnavailableError("Sandbox is disabled")
        if not await is_runtime_available(self._config):
            raise IsolationUnavailableError(
                f"Container runtime {self._config.docker_bin!r} is not reachable",
                context={"docker_bin": self._config.docker_bin},
            )
        if not await self._provisioner.ensure_image(language):
            raise IsolationUnavailableError(
                f"No execution image for {language.value}",
                context={"image": self._config.image_for(language)},
            )

    async def is_available(self, language: str | Language) -> bool:
        """True if sandboxed execution can serve ``language`` right now."""
        try:
            lang = parse_language(language)
        except InputValidationError:
            return False
        if not self._enabled:
            return False
        return await self._sandbox_ready(lang)

    async def prewarm(self) -> dict[Language, bool]:
        """Start warm sessions for every language whose image is available."""
        if not self._enabled:
            return {}
        runtime = await is_runtime_available(self._config)
        languages = [
            language
            for language in constants.PREWARM_LANGUAGES
            if language in self._config.session_commands or runtime
        ]
        if not languages:
            logger.info("Container runtime not available, skipping prewarm")
            return {}
        logger.info("Pre-warming sessions", extra={"languages": [language.value for language in languages]})
        warmed = await self._pool.prewarm(languages)
        logger.info("Pre-warm finished", extra={"warmed": {lang.value: ok for lang, ok in warmed.items()}})
        return warmed

    async def _delayed_prewarm(self) -> None:
        await asyncio.sleep(self._config.prewarm_delay_ms / 1000)
        await self.prewarm()

    async def status(self) -> SandboxStatus:
        """Operator view: switches, runtime, images, warm sessions, limits."""
        return SandboxStatus(
            enabled=self._enabled,
            runtime_available=await is_runtime_available(self._config),
            images_built=self._provisioner.images_built,
            sessions=self._pool.stats(),
            memory_limit=self._config.memory_limit,
            cpu_limit=self._config.cpu_limit,
            timeout_ms=self._config.timeout_ms,
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _validate(self, language: str | Language, code: str, timeout_ms: int | None) -> ExecutionRequest:
        lang = parse_language(language)
        if not isinstance(code, str) or not code.strip():
            raise CodeValidationError("Code must not be empty", context={"language": lang.value})
        if len(code) > self._config.max_code_size:
            raise CodeValidationError(
                f"Code exceeds maximum size of {self._config.max_code_size} characters",
                context={"language": lang.value, "size": len(code)},
            )
        timeout = self._config.timeout_ms if timeout_ms is None else timeout_ms
        if not 0 < timeout <= constants.MAX_TIMEOUT_MS:
            raise InputValidationError(
                f"timeout_ms must be between 1 and {constants.MAX_TIMEOUT_MS}",
                context={"timeout_ms": timeout},
            )
        return ExecutionRequest(language=lang, code=code, timeout_ms=timeout)

    async def execute(
        self,
        language: str | Language,
        code: str,
        *,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Run ``code`` and return its cleaned output.

        Args:
            language: "j", "apl" or "kap"
            code: Untrusted source, possibly multi-line
            timeout_ms: Per-request timeout (default: config.timeout_ms)

        Returns:
            ExecutionResult; ``success`` is False for language errors,
            timeouts, invalid input and infrastructure failures alike
        """
        try:
            request = self._validate(language, code, timeout_ms)
        except InputValidationError as e:
            return ExecutionResult(success=False, output=e.message)

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await self._dispatch(request)
        if result.execution_time_ms is None:
            result = result.model_copy(update={"execution_time_ms": int((loop.time() - started) * 1000)})
        logger.debug(
            "Execution finished",
            extra={
                "language": request.language.value,
                "tier": result.tier.value,
                "success": result.success,
                "timed_out": bool(result.timed_out),
                "execution_time_ms": result.execution_time_ms,
            },
        )
        return result

    async def _dispatch(self, request: ExecutionRequest) -> ExecutionResult:
        language = request.language
        # One deadline for the whole chain; fallback tiers get what is left
        deadline = asyncio.get_running_loop().time() + request.timeout_ms / 1000
        if self._enabled and self._config.use_warm_sessions and await self._warm_ready(language):
            try:
                return await self._pool.execute(language, request.code, request.timeout_ms)
            except SandboxError as e:
                logger.info(
                    f"Warm session failed, falling back to cold start: {e.message}",
                    extra={"language": language.value, "error_type": type(e).__name__},
                )

        try:
            await self._require_sandbox(language)
        except PermanentError as e:
            logger.debug(f"Sandboxed tiers unavailable, using direct execution: {e.message}", extra=e.context)
            return await self._run_direct(request, deadline)
        return await self._run_cold(request, deadline)

    def _remaining_ms(self, deadline: float) -> int:
        return int((deadline - asyncio.get_running_loop().time()) * 1000)

    def _expired(self, request: ExecutionRequest) -> ExecutionResult:
        logger.info(
            "Timeout used up before a fallback tier could run",
            extra={"language": request.language.value, "timeout_ms": request.timeout_ms},
        )
        return ExecutionResult(
            success=False,
            output=timeout_message(request.timeout_ms),
            timed_out=True,
            execution_time_ms=request.timeout_ms,
        )

    async def _run_cold(self, request: ExecutionRequest, deadline: float) -> ExecutionResult:
        language = request.language
        budget_ms = self._remaining_ms(deadline)
        if budget_ms <= 0:
            return self._expired(request)
        dialect = get_dialect(language)
        dyalog_path = await find_dyalog_path(self._config) if dialect.mount_dyalog else None
        if dialect.mount_dyalog and dyalog_path is None:
            logger.warning("No Dyalog installation to mount, using direct execution")
            return await self._run_direct(request, deadline)

        name = container_name(language, interactive=False)
        argv = build_run_args(language, self._config, interactive=False, dyalog_path=dyalog_path, name=name)
        payload = dialect.build_cold_payload(request.code, max(1, math.ceil(budget_ms / 1000)))

        async def remove() -> None:
            await remove_container(self._config, name)

        try:
            out = await run_oneshot(argv, payload, budget_ms, on_timeout=remove)
        except SessionStartupError as e:
            logger.warning(f"Cold start failed, using direct execution: {e.message}", extra=e.context)
            return await self._run_direct(request, deadline)

        if not out.timed_out and out.exit_code == DOCKER_RUN_FAILURE_EXIT_CODE:
            logger.warning(
                "Container runtime rejected the cold start, using direct execution",
                extra={"language": language.value, "stderr": out.stderr.strip()[-500:]},
            )
            return await self._run_direct(request, deadline)
        return self._oneshot_result(request, out, ExecutionTier.COLD)

    async def _run_direct(self, request: ExecutionRequest, deadline: float) -> ExecutionResult:
        language = request.language
        dialect = get_dialect(language)
        try:
            argv = self._direct_argv(language)
        except InterpreterNotFoundError as e:
            return ExecutionResult(success=False, output=e.message)
        budget_ms = self._remaining_ms(deadline)
        if budget_ms <= 0:
            return self._expired(request)

        logger.debug("Direct (unsandboxed) execution", extra={"language": language.value, "argv0": argv[0]})
        try:
            out = await run_oneshot(
                argv,
                dialect.build_direct_payload(request.code),
                budget_ms,
                env=dict(dialect.direct_env) or None,
            )
        except SessionStartupError as e:
            return ExecutionResult(success=False, output=f"Failed to start {language.value} interpreter: {e.message}")
        return self._oneshot_result(request, out, ExecutionTier.DIRECT)

    def _direct_argv(self, language: Language) -> list[str]:
        argv = find_interpreter(language, self._config)
        if argv is None:
            raise InterpreterNotFoundError(
                f"{language.value} is unavailable: sandbox not usable and no host interpreter installed",
                context={"language": language.value},
            )
        return argv

    def _oneshot_result(self, request: ExecutionRequest, out: OneShotOutput, tier: ExecutionTier) -> ExecutionResult:
        if out.timed_out:
            return ExecutionResult(
                success=False,
                output=timeout_message(request.timeout_ms),
                timed_out=True,
                tier=tier,
                execution_time_ms=out.elapsed_ms,
            )
        sanitized = sanitize_oneshot(get_dialect(request.language), out.stdout, out.stderr, request.code, out.exit_code)
        return ExecutionResult(
            success=sanitized.success,
            output=sanitized.output,
            tier=tier,
            execution_time_ms=out.elapsed_ms,
        )
