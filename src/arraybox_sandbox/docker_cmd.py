"""docker run command line builder for sandboxed interpreter sessions.

Both warm (interactive REPL) and cold (single batch) sessions get the same
confinement: no network, read-only root with a small writable /tmp,
memory/cpu/pid ceilings, no privilege escalation, a non-root user and all
capabilities dropped unless the runtime needs them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import uuid4

from arraybox_sandbox import constants
from arraybox_sandbox._logging import get_logger
from arraybox_sandbox.dialects import get_dialect
from arraybox_sandbox.subprocess_utils import run_command

if TYPE_CHECKING:
    from pathlib import Path

    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.models import Language

logger = get_logger(__name__)

DYALOG_MOUNT_POINT = "/opt/dyalog"
CONTAINER_HOME = "/home/sandbox"
CONTAINER_LABEL = "arraybox-sandbox"


def container_name(language: Language, *, interactive: bool) -> str:
    """Unique, recognizable container name (``abx-j-warm-1a2b3c4d``)."""
    kind = "warm" if interactive else "cold"
    return f"abx-{language.value}-{kind}-{uuid4().hex[:8]}"


def build_run_args(
    language: Language,
    config: SandboxConfig,
    *,
    interactive: bool,
    dyalog_path: Path | None = None,
    name: str | None = None,
) -> list[str]:
    """Build the full ``docker run`` argv for one session.

    Args:
        language: Interpreter to run
        config: Resource limits, runtime binary and image names
        interactive: True for a warm REPL (entrypoint override), False for a
            cold batch run using the image's default entrypoint
        dyalog_path: Host Dyalog install mounted read-only for APL
        name: Container name (generated when omitted)

    Returns:
        argv starting with the configured runtime binary
    """
    dialect = get_dialect(language)
    uid = dialect.uid

    args = [
        config.docker_bin,
        "run",
        "--rm",
        "-i",
        "--init",
        "--read-only",
        "--tmpfs",
        constants.SCRATCH_TMPFS,
        "--network=none",
        f"--memory={config.memory_limit}",
        f"--cpus={config.cpu_limit:g}",
        "--security-opt=no-new-privileges",
        f"--pids-limit={config.pids_limit}",
        f"--user={uid}:{uid}",
        f"--name={name or container_name(language, interactive=interactive)}",
        f"--label={CONTAINER_LABEL}.language={language.value}",
    ]

    # JVM startup is much slower without the default capability set
    if not dialect.needs_capabilities:
        args.append("--cap-drop=ALL")

    if dialect.mount_dyalog and dyalog_path is not None:
        args.extend(["-v", f"{dyalog_path}:{DYALOG_MOUNT_POINT}:ro"])

    if dialect.home_tmpfs:
        args.extend(["--tmpfs", f"{CONTAINER_HOME}:rw,exec,uid={uid},gid={uid},size={constants.HOME_TMPFS_SIZE}"])

    if interactive and dialect.entrypoint:
        args.extend(["--entrypoint", dialect.entrypoint])

    args.append(config.image_for(language))

    if interactive:
        args.extend(dialect.entrypoint_args)
    return args


async def remove_container(config: SandboxConfig, name: str) -> bool:
    """Force-remove a container by name (best effort).

    Killing the ``docker run`` client with SIGKILL does not stop its
    container, so timed-out and evicted sessions are removed explicitly.
    """
    try:
        result = await run_command(
            [config.docker_bin, "rm", "-f", name],
            timeout=constants.CONTAINER_REMOVE_TIMEOUT_SECONDS,
        )
    except (OSError, TimeoutError) as e:
        logger.warning("Container removal failed", extra={"container": name, "error": str(e) or type(e).__name__})
        return False
    return result.returncode == 0
