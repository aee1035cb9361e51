"""Output sanitizer and error classification.

Turns the raw text a REPL emitted for one request into the user-visible
output: the response is cut out between markers, banner/prompt/echo noise is
dropped, and the dialect's error signatures decide success. An error
signature always wins over a clean end marker.
"""

from __future__ import annotations

import textwrap
from dataclasses import dataclass
from typing import TYPE_CHECKING

from arraybox_sandbox.dialects import Framing

if TYPE_CHECKING:
    from collections.abc import Iterable

    from arraybox_sandbox.dialects import Dialect
    from arraybox_sandbox.protocol import MarkerSet

EXECUTION_ERROR_TEXT = "Execution error"


@dataclass(frozen=True)
class SanitizedOutput:
    """Cleaned output and its classification."""

    success: bool
    output: str


def code_lines(code: str) -> frozenset[str]:
    """Verbatim (stripped, non-empty) lines of submitted code."""
    return frozenset(line.strip() for line in code.splitlines() if line.strip())


def _normalize(dialect: Dialect, line: str) -> str:
    stripped = line.strip()
    if dialect.result_prefix and stripped.startswith(dialect.result_prefix):
        stripped = stripped[len(dialect.result_prefix) :]
    return stripped.strip('"').strip()


def find_marker(dialect: Dialect, lines: list[str], marker: str, *, start: int = 0, last: bool = False) -> int | None:
    """Index of the line that *is* ``marker`` (as printed by the REPL).

    Echoed commands that merely contain the marker (``echo '...'``) do not count.
    """
    found = None
    for index in range(start, len(lines)):
        if _normalize(dialect, lines[index]) == marker:
            if not last:
                return index
            found = index
    return found


def marker_seen(dialect: Dialect, text: str, marker: str) -> bool:
    """True if ``marker`` was printed on a line of its own in ``text``."""
    if marker not in text:
        return False
    return find_marker(dialect, text.splitlines(), marker) is not None


def extract_response(dialect: Dialect, stdout: str, markers: MarkerSet) -> str:
    """Slice the response out of a request's stdout.

    MARKER_SPAN: text strictly between the most recent start marker and the
    end marker that follows it. END_TOKEN: everything before the end marker.
    Missing markers leave that side of the slice open.
    """
    lines = stdout.splitlines()
    end = find_marker(dialect, lines, markers.end)
    limit = len(lines) if end is None else end

    if dialect.framing is Framing.MARKER_SPAN:
        start = find_marker(dialect, lines[:limit], markers.start, last=True)
        first = 0 if start is None else start + 1
        return "\n".join(lines[first:limit])
    return "\n".join(lines[:limit])


def filter_noise(
    dialect: Dialect,
    text: str,
    markers: MarkerSet | None = None,
    echo: frozenset[str] = frozenset(),
    *,
    oneshot: bool = False,
) -> list[str]:
    """Drop banner, prompt, control and marker lines.

    Args:
        dialect: Language rules
        text: Raw text
        markers: Request markers; any line containing one is dropped
        echo: Submitted code lines. Indented copies of them are REPL echo.
        oneshot: Also apply the rules for batch-mode (cold/direct) output
    """
    marker_values = (markers.start, markers.end, markers.reset) if markers else ()
    prefixes = dialect.noise_prefixes + (dialect.oneshot_noise_prefixes if oneshot else ())
    substrings = dialect.noise_substrings + (dialect.oneshot_noise_substrings if oneshot else ())

    kept: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if any(marker in stripped for marker in marker_values):
            continue
        if stripped in dialect.noise_lines or stripped.startswith(prefixes):
            continue
        if any(substring in stripped for substring in substrings):
            continue
        indented = line[:1].isspace()
        if indented and dialect.strip_indented_echo:
            continue
        if indented and stripped in echo:
            continue
        kept.append(line.rstrip())
    return kept


def strip_trailing_echo(lines: list[str], echo: Iterable[str]) -> list[str]:
    """Pop trailing lines that repeat submitted input.

    Order-sensitive: trimming stops at the first line from the end that is not
    an echo, so a result that happens to equal an input line earlier in the
    output survives.
    """
    echo_set = set(echo)
    result = list(lines)
    while result and result[-1].strip() in echo_set:
        result.pop()
    return result


def classify(dialect: Dialect, stdout: str, stderr: str) -> bool:
    """True if the text carries one of the dialect's error signatures."""
    return dialect.is_error(stdout, stderr)


def _join(lines: list[str]) -> str:
    return textwrap.dedent("\n".join(lines)).strip("\n")


def _strip_result_prefix(dialect: Dialect, lines: list[str]) -> list[str]:
    prefix = dialect.result_prefix
    if not prefix:
        return lines
    return [line[len(prefix) :] if line.startswith(prefix) else line for line in lines]


def _error_text(dialect: Dialect, lines: list[str], fallback: str) -> str:
    if dialect.error_anchor:
        anchored = [i for i, line in enumerate(lines) if dialect.error_anchor in line]
        if anchored:
            lines = lines[anchored[-1] :]
    return _join(lines) or fallback.strip() or EXECUTION_ERROR_TEXT


def sanitize(dialect: Dialect, stdout: str, stderr: str, code: str, markers: MarkerSet) -> SanitizedOutput:
    """Clean one warm-session response.

    Args:
        dialect: Language rules
        stdout: Session stdout produced since the payload was written
        stderr: Session stderr produced since the payload was written
        code: The user's code as submitted
        markers: The request's markers
    """
    response = extract_response(dialect, stdout, markers)
    if dialect.comment_pattern is not None:
        response = dialect.comment_pattern.sub("", response)

    echo = code_lines(code)
    submitted = echo | code_lines(dialect.build_payload(code, markers)) | dialect.echo_lines
    err_lines = filter_noise(dialect, stderr, markers, echo)

    if classify(dialect, stdout, stderr):
        if dialect.error_anchor:
            # The error may have escaped the marker span; look at everything
            lines = err_lines + filter_noise(dialect, stdout, markers, echo)
        else:
            lines = filter_noise(dialect, response, markers, echo) + err_lines
        lines = strip_trailing_echo(_strip_result_prefix(dialect, lines), submitted)
        return SanitizedOutput(success=False, output=_error_text(dialect, lines, stderr))

    lines = filter_noise(dialect, response, markers, echo) + err_lines
    if dialect.trailing_echo_only:
        lines = strip_trailing_echo(lines, submitted)
    return SanitizedOutput(success=True, output=_join(_strip_result_prefix(dialect, lines)))


def partial_output(dialect: Dialect, stdout: str, stderr: str, markers: MarkerSet) -> str:
    """Best-effort text for a timed-out request: filtered stderr, else filtered stdout."""
    err_lines = filter_noise(dialect, stderr, markers)
    if err_lines:
        return _join(err_lines)
    return _join(_strip_result_prefix(dialect, filter_noise(dialect, stdout, markers)))


def sanitize_oneshot(dialect: Dialect, stdout: str, stderr: str, code: str, exit_code: int | None) -> SanitizedOutput:
    """Clean the final output of a batch-mode (cold or direct) run.

    No markers exist here: the process exit ends the response. The APL boot
    banner is cut through its copyright line.
    """
    lines = stdout.splitlines()
    if dialect.banner_anchor:
        for index, line in enumerate(lines):
            if dialect.banner_anchor in line:
                lines = lines[index + 1 :]
                break

    echo = code_lines(code)
    out_lines = _strip_result_prefix(dialect, filter_noise(dialect, "\n".join(lines), None, echo, oneshot=True))
    err_lines = filter_noise(dialect, stderr, None, echo, oneshot=True)
    output = _join(out_lines)
    error = _join(err_lines)

    failed = exit_code not in (0, None) or classify(dialect, output, error)
    if failed:
        combined = "\n".join(part for part in (output, error) if part)
        return SanitizedOutput(success=False, output=combined or EXECUTION_ERROR_TEXT)
    return SanitizedOutput(success=True, output=output or error)
