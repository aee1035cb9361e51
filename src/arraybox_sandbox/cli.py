"""Command-line interface for arraybox-sandbox.

Usage:
    abx run -l j '+/ i. 10'            # Run inline code
    abx run primes.apl                 # Run file (language from extension)
    echo '1 2 3 + 4' | abx run -l kap -
    abx status                         # Runtime, images, limits
    abx prewarm                        # Build images and check warm startup
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

import click

from arraybox_sandbox import __version__
from arraybox_sandbox._logging import configure_logging
from arraybox_sandbox.models import ExecutionTier, Language
from arraybox_sandbox.sandbox import Sandbox
from arraybox_sandbox.settings import Settings
from arraybox_sandbox.system_probes import is_runtime_available

if TYPE_CHECKING:
    from arraybox_sandbox.config import SandboxConfig
    from arraybox_sandbox.models import ExecutionResult

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_LANGUAGE_ERROR = 1
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_SANDBOX_ERROR = 125

EXTENSION_MAP: dict[str, Language] = {
    ".ijs": Language.J,
    ".apl": Language.APL,
    ".dyalog": Language.APL,
    ".aplf": Language.APL,
    ".kap": Language.KAP,
}


def detect_language(source: str | None) -> Language | None:
    """Auto-detect language from file extension.

    Args:
        source: File path or stdin marker ("-") or inline code

    Returns:
        Detected language or None if cannot detect
    """
    if not source or source == "-":
        return None
    return EXTENSION_MAP.get(Path(source).suffix.lower())


def read_source(source: str | None) -> str:
    """Resolve SOURCE into code: stdin for "-", file contents, else inline text."""
    if source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe code to stdin.")
        return sys.stdin.read()
    if source:
        path = Path(source)
        return path.read_text() if path.is_file() else source
    raise click.UsageError("No code provided. Provide a CODE, FILE or - argument.")


def exit_code_for(result: ExecutionResult) -> int:
    """Map an ExecutionResult onto the CLI exit code."""
    if result.success:
        return EXIT_SUCCESS
    if result.timed_out:
        return EXIT_TIMEOUT
    if result.tier is ExecutionTier.NONE:
        return EXIT_SANDBOX_ERROR
    return EXIT_LANGUAGE_ERROR


def format_footer(result: ExecutionResult) -> str:
    mark = "✓" if result.success else "✗"
    color = "green" if result.success else "red"
    return click.style(f"{mark} {result.tier.value} tier, {result.execution_time_ms}ms", fg=color, dim=True)


def is_tty() -> bool:
    """Check if stdout is connected to a terminal."""
    return sys.stdout.isatty()


def load_config(*, no_warm: bool = False, no_sandbox: bool = False) -> SandboxConfig:
    """Environment settings plus CLI switches. Never prewarms on startup."""
    config = Settings().to_config()
    update: dict[str, object] = {"prewarm_on_startup": False}
    if no_warm:
        update["use_warm_sessions"] = False
    if no_sandbox:
        update["enabled"] = False
    return config.model_copy(update=update)


async def run_code(config: SandboxConfig, language: Language, code: str, timeout_ms: int | None) -> ExecutionResult:
    async with Sandbox(config) as sandbox:
        return await sandbox.execute(language, code, timeout_ms=timeout_ms)


async def collect_status(config: SandboxConfig) -> dict[str, object]:
    async with Sandbox(config) as sandbox:
        status = await sandbox.status()
        images: dict[str, bool] = {}
        if status.runtime_available:
            for language in Language:
                images[language.value] = await sandbox.provisioner.image_exists(language)
    report = status.model_dump(mode="json")
    report["images_built"] = images
    return report


async def prewarm_all(config: SandboxConfig) -> dict[Language, bool]:
    if not await is_runtime_available(config) and not config.session_commands:
        return {}
    async with Sandbox(config) as sandbox:
        return await sandbox.prewarm()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on stderr")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="arraybox-sandbox")
def main(verbose: bool, quiet: bool) -> None:
    """Run J, APL and Kap code in locked-down containers."""
    configure_logging(level="DEBUG" if verbose else None, quiet=quiet)


@main.command()
@click.argument("source", required=False)
@click.option(
    "-l",
    "--language",
    type=click.Choice([language.value for language in Language], case_sensitive=False),
    help="Language (auto-detected from file extension)",
)
@click.option("-t", "--timeout", "timeout_ms", type=click.IntRange(min=1), help="Timeout in milliseconds")
@click.option("--json", "json_output", is_flag=True, help="Output the result as JSON")
@click.option("--no-warm", is_flag=True, help="Skip warm sessions (cold start only)")
@click.option("--no-sandbox", is_flag=True, help="Run on the host interpreter, unconfined")
def run(
    source: str | None,
    language: str | None,
    timeout_ms: int | None,
    json_output: bool,
    no_warm: bool,
    no_sandbox: bool,
) -> NoReturn:
    """Execute SOURCE and print its output.

    SOURCE can be:

    \b
      - Inline code:  abx run -l j '+/ i. 10'
      - File path:    abx run primes.ijs
      - Stdin:        echo '⍳5' | abx run -l apl -
    """
    code = read_source(source)
    if not code.strip():
        raise click.UsageError("Empty code provided.")

    resolved = Language(language.lower()) if language else detect_language(source)
    if resolved is None:
        raise click.UsageError("Cannot detect language. Use -l/--language.")

    config = load_config(no_warm=no_warm, no_sandbox=no_sandbox)
    result = asyncio.run(run_code(config, resolved, code, timeout_ms))

    if json_output:
        click.echo(json.dumps(result.to_wire(), ensure_ascii=False))
    else:
        if result.output:
            click.echo(result.output)
        if is_tty():
            click.echo(format_footer(result), err=True)
    sys.exit(exit_code_for(result))


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(json_output: bool) -> None:
    """Show runtime availability, images and resource limits."""
    report = asyncio.run(collect_status(load_config()))
    if json_output:
        click.echo(json.dumps(report, indent=2))
        return

    def flag(value: object) -> str:
        return click.style("yes", fg="green") if value else click.style("no", fg="red")

    click.echo(f"Sandbox enabled:    {flag(report['enabled'])}")
    click.echo(f"Runtime available:  {flag(report['runtime_available'])}")
    images = report["images_built"]
    if isinstance(images, dict):
        for name, built in images.items():
            click.echo(f"Image {name:<13} {flag(built)}")
    click.echo(f"Limits:             memory={report['memory_limit']} cpus={report['cpu_limit']} timeout={report['timeout_ms']}ms")


@main.command()
def prewarm() -> NoReturn:
    """Build missing images and start (then stop) one session per language."""
    warmed = asyncio.run(prewarm_all(load_config()))
    if not warmed:
        click.echo(click.style("Error: container runtime not available", fg="red", bold=True), err=True)
        sys.exit(EXIT_SANDBOX_ERROR)
    for language, ok in warmed.items():
        mark = click.style("✓", fg="green") if ok else click.style("✗", fg="red")
        click.echo(f"{mark} {language.value}")
    sys.exit(EXIT_SUCCESS if all(warmed.values()) else EXIT_SANDBOX_ERROR)


if __name__ == "__main__":
    main()
