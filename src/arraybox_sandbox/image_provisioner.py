"""Execution image provisioning.

Each language runs from its own image (``arraybox-sandbox-<language>``). An
image that is missing locally is built once from ``<docker_dir>/Dockerfile.<language>``.
The outcome is cached per language for the life of the process: a failed
build keeps that language off the sandboxed tiers until restart, while direct
execution may still serve it.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import TYPE_CHECKING

import aiofiles.os

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.exceptions import ImageProvisioningError
from arraybox_sandbox.platform_utils import spawn_piped
from arraybox_sandbox.resource_cleanup import cleanup_process
from arraybox_sandbox.subprocess_utils import drain_subprocess_output, run_command

if TYPE_CHECKING:
    from pathlib import Path

    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.models import Language

logger = get_logger(__name__)


class ImageProvisioner:
    """Finds or builds per-language execution images (results cached)."""

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config
        self._ready: dict[Language, bool] = {}
        self._locks: dict[Language, asyncio.Lock] = {}

    def _get_lock(self, language: Language) -> asyncio.Lock:
        if language not in self._locks:
            self._locks[language] = asyncio.Lock()
        return self._locks[language]

    @property
    def images_built(self) -> dict[Language, bool]:
        """Snapshot of cached outcomes (languages never checked are absent)."""
        return dict(self._ready)

    def dockerfile_for(self, language: Language) -> Path:
        return self._config.docker_dir / f"Dockerfile.{language.value}"

    async def ensure_image(self, language: Language) -> bool:
        """Make sure the image for ``language`` exists, building it if needed.

        Never raises: failures are logged and cached as False.
        """
        cached = self._ready.get(language)
        if cached is not None:
            return cached

        async with self._get_lock(language):
            cached = self._ready.get(language)
            if cached is not None:
                return cached
            try:
                await self._provision(language)
                ready = True
            except ImageProvisioningError as e:
                logger.error(
                    f"Image for {language.value} unavailable: {e.message}",
                    extra={**e.context, "output_tail": e.output},
                )
                ready = False
            self._ready[language] = ready
            return ready

    async def image_exists(self, language: Language) -> bool:
        image = self._config.image_for(language)
        try:
            result = await run_command(
                [self._config.docker_bin, "image", "inspect", image],
                timeout=constants.IMAGE_INSPECT_TIMEOUT_SECONDS,
            )
        except (OSError, TimeoutError) as e:
            logger.warning("Image inspect failed", extra={"image": image, "error": str(e) or type(e).__name__})
            return False
        return result.returncode == 0

    async def _provision(self, language: Language) -> None:
        image = self._config.image_for(language)
        if await self.image_exists(language):
            logger.info("Image already exists", extra={"image": image, "language": language.value})
            return

        dockerfile = self.dockerfile_for(language)
        if not await aiofiles.os.path.isfile(dockerfile):
            raise ImageProvisioningError(
                f"Image {image} is missing and {dockerfile} does not exist",
                context={"image": image, "dockerfile": str(dockerfile)},
            )
        await self._build(language, image, dockerfile)

    async def _build(self, language: Language, image: str, dockerfile: Path) -> None:
        argv = [
            self._config.docker_bin,
            "build",
            "-t",
            image,
            "-f",
            str(dockerfile),
            str(self._config.docker_dir),
        ]
        logger.info("Building image", extra={"image": image, "language": language.value})

        try:
            proc = await spawn_piped(argv)
        except OSError as e:
            raise ImageProvisioningError(
                f"Failed to start image build: {e}",
                context={"image": image},
            ) from e
        if proc.stdin is not None:
            proc.stdin.close()

        tail: deque[str] = deque(maxlen=constants.BUILD_OUTPUT_TAIL_LINES)

        def on_line(line: str) -> None:
            tail.append(line)
            logger.debug(f"[docker build {language.value}] {line}", extra={"image": image})

        try:
            await asyncio.wait_for(
                drain_subprocess_output(proc, process_name="docker build", context_id=image, line_handler=on_line),
                timeout=constants.IMAGE_BUILD_TIMEOUT_SECONDS,
            )
            returncode = await proc.wait_with_timeout(timeout=constants.IMAGE_BUILD_TIMEOUT_SECONDS)
        except TimeoutError as e:
            await cleanup_process(proc, "docker build", image)
            raise ImageProvisioningError(
                f"Image build timed out after {constants.IMAGE_BUILD_TIMEOUT_SECONDS:.0f}s",
                context={"image": image},
                output="\n".join(tail),
            ) from e

        if returncode != 0:
            raise ImageProvisioningError(
                f"Image build failed with exit code {returncode}",
                context={"image": image, "returncode": returncode},
                output="\n".join(tail),
            )
        logger.info("Successfully built image", extra={"image": image, "language": language.value})
