"""Stopping interpreter processes: warm sessions, image builds.

Escalates SIGTERM then SIGKILL and always reaps the child. Never raises:
problems are logged and reported as False so teardown paths keep going.
"""

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.PROCESS_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = constants.PROCESS_KILL_TIMEOUT_SECONDS,
) -> bool:
    """Stop ``proc`` and wait for it to be reaped.

    For a ``docker run -i`` client, ``--init`` relays the signal to the
    interpreter inside the container.

    Args:
        proc: Process to stop (None is a no-op)
        name: Label for log messages ("j session", "docker build")
        context_id: Session id or image name for log correlation
        term_timeout: Grace period after SIGTERM
        kill_timeout: Wait after SIGKILL before giving up

    Returns:
        False if the process could not be confirmed dead
    """
    if proc is None or proc.returncode is not None:
        return True

    stages = (
        ("SIGTERM", proc.terminate, term_timeout),
        ("SIGKILL", proc.kill, kill_timeout),
    )
    try:
        for signame, send, timeout in stages:
            await send()
            try:
                await proc.wait_with_timeout(timeout=timeout)
            except TimeoutError:
                logger.warning(
                    f"{name} still running {timeout:g}s after {signame}",
                    extra={"context_id": context_id, "pid": proc.pid},
                )
                continue
            logger.debug(
                f"{name} exited after {signame}",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True
    except ProcessLookupError:
        return True
    except (OSError, RuntimeError) as e:
        logger.error(
            f"Failed to stop {name}",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False

    logger.error(f"{name} survived SIGKILL", extra={"context_id": context_id, "pid": proc.pid})
    return False
