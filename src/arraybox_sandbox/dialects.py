"""Per-language dialect descriptors.

Everything that differs between J, APL and Kap lives here as data: how a
request is framed, which lines are noise, what an error looks like, how the
workspace is reset and how the interpreter is launched. The protocol engine,
sanitizer and docker command builder look a Dialect up once per request and
never branch on the language themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from arraybox_sandbox import constants
from arraybox_sandbox.exceptions import UnsupportedLanguageError
from arraybox_sandbox.models import Language

if TYPE_CHECKING:
    from collections.abc import Callable

    from arraybox_sandbox.protocol import MarkerSet


class Framing(str, Enum):
    """How a response is delimited inside the REPL output stream."""

    MARKER_SPAN = "marker_span"
    """Response sits between a start and an end marker line."""

    END_TOKEN = "end_token"
    """Response is everything before a single end marker line."""


STDOUT = "stdout"
STDERR = "stderr"


@dataclass(frozen=True)
class Dialect:
    """Immutable description of one interpreter's REPL conventions."""

    language: Language
    framing: Framing

    # Payload builders
    build_payload: Callable[[str, MarkerSet], str]
    build_reset: Callable[[MarkerSet], str]
    build_cold_payload: Callable[[str, int], str]
    build_direct_payload: Callable[[str], str]
    wrapper: Callable[[int, str], str] | None = None

    # Error classification
    error_patterns: tuple[re.Pattern[str], ...] = ()
    error_streams: frozenset[str] = frozenset({STDOUT, STDERR})
    stderr_error_substring: str | None = None
    error_anchor: str | None = None

    # Boot
    ready_signature: str | None = None
    ready_timeout: float = 3.0
    ready_drain: float = constants.READY_DRAIN_SECONDS

    # Output cleanup
    noise_prefixes: tuple[str, ...] = ()
    noise_lines: frozenset[str] = frozenset()
    noise_substrings: tuple[str, ...] = ()
    oneshot_noise_prefixes: tuple[str, ...] = ()
    oneshot_noise_substrings: tuple[str, ...] = ()
    echo_lines: frozenset[str] = frozenset()
    strip_indented_echo: bool = False
    trailing_echo_only: bool = False
    result_prefix: str | None = None
    comment_pattern: re.Pattern[str] | None = None
    banner_anchor: str | None = None

    # Launch
    uid: int = constants.DEFAULT_SANDBOX_UID
    needs_capabilities: bool = False
    home_tmpfs: bool = False
    mount_dyalog: bool = False
    entrypoint: str = ""
    entrypoint_args: tuple[str, ...] = ()
    direct_candidates: tuple[str, ...] = ()
    direct_args: tuple[str, ...] = ()
    direct_env: dict[str, str] = field(default_factory=dict)

    def is_error(self, stdout: str, stderr: str) -> bool:
        """True if any error signature matches the dialect's error streams."""
        for pattern in self.error_patterns:
            if STDOUT in self.error_streams and pattern.search(stdout):
                return True
            if STDERR in self.error_streams and pattern.search(stderr):
                return True
        return self.stderr_error_substring is not None and self.stderr_error_substring in stderr


# =============================================================================
# J
# =============================================================================

_J_ERROR = re.compile(
    r"^\|(?:domain|syntax|value|index|rank|length|limit|control|stack|nonce|spelling"
    r"|open|locative|interface|assertion|parse|locale) error",
    re.IGNORECASE | re.MULTILINE,
)


def _j_payload(code: str, markers: MarkerSet) -> str:
    return f"{code}\necho '{markers.end}'\n"


def _j_reset(markers: MarkerSet) -> str:
    return f"clear''\necho '{markers.reset}'\n"


def _j_cold(code: str, _timeout_seconds: int) -> str:
    return f"{code}\nexit 0\n"


# =============================================================================
# APL (Dyalog, user code runs inside the Safe3 token whitelist)
# =============================================================================

_APL_ERROR = re.compile(r"(VALUE|DOMAIN|RANK|LENGTH|SYNTAX|INDEX|NONCE|LIMIT|DEFN|STACK|FILE|SYSTEM|INTERRUPT) ERROR")
_APL_SAFE3_SOURCE = "file:///opt/Safe3.dyalog"


def _apl_strip_comment(line: str) -> str:
    """Drop a trailing ``⍝`` comment; a ``⍝`` inside a quoted string is kept."""
    in_quote = False
    for i, char in enumerate(line):
        if char == "'":
            in_quote = not in_quote
        elif char == "⍝" and not in_quote:
            return line[:i]
    return line


def _apl_statements(code: str) -> list[str]:
    statements = []
    for raw in code.splitlines():
        line = _apl_strip_comment(raw).strip()
        if line:
            statements.append(line)
    return statements


def _apl_quote(code: str) -> str:
    """Turn (possibly multi-line) code into one APL string literal body.

    Lines are joined with the statement separator since a literal cannot span
    lines, so comments are dropped first or they would swallow the statements
    after them. Quotes are escaped by doubling.
    """
    return " ⋄ ".join(_apl_statements(code)).replace("'", "''")


def _apl_safe_exec(code: str) -> str:
    return f":Trap 0 ⋄ ⎕←Safe3.Exec '{_apl_quote(code)}' ⋄ :Else ⋄ ⎕←⎕DMX.EM,': ',⎕DMX.Message ⋄ :EndTrap"


def _apl_payload(code: str, markers: MarkerSet) -> str:
    return (
        "]boxing on -s=min\n"
        ")SIC\n"
        f"⎕←'{markers.start}'\n"
        f"{_apl_safe_exec(code)}\n"
        ")SIC\n"
        f"⎕←'{markers.end}'\n"
    )


def _apl_reset(markers: MarkerSet) -> str:
    # Namespaces (class 9) survive so the loaded Safe3 wrapper stays usable
    return f"\n)SIC\n⎕EX ⎕NL ¯2 ¯3 ¯4\n⎕←'{markers.reset}'\n"


def _apl_wrapper(timeout_seconds: int, marker: str) -> str:
    return f"⎕FIX '{_APL_SAFE3_SOURCE}'\nSafe3.DefaultTimeout←{timeout_seconds}\n⎕←'{marker}'\n"


def _apl_cold(code: str, timeout_seconds: int) -> str:
    return (
        f"⎕FIX '{_APL_SAFE3_SOURCE}'\n"
        f"Safe3.DefaultTimeout←{timeout_seconds}\n"
        "]boxing on -s=min\n"
        f"{_apl_safe_exec(code)}\n"
    )


def _apl_direct(code: str) -> str:
    """Host Dyalog has no Safe3; run the code as a single printed expression."""
    lines = _apl_statements(code)
    if not lines:
        return "]boxing on -s=min\n⎕←''\n"
    if len(lines) == 1:
        return f"]boxing on -s=min\n⎕←{lines[0]}\n"
    return f"]boxing on -s=min\n⎕←{{{' ⋄ '.join(lines)}}}⍬\n"


# =============================================================================
# Kap (JVM)
# =============================================================================


def _kap_payload(code: str, markers: MarkerSet) -> str:
    return f'{code}\n⊢"{markers.end}"\n'


def _kap_reset(markers: MarkerSet) -> str:
    # No workspace clear in Kap; recycling bounds state carry-over
    return f'⊢"{markers.reset}"\n'


def _kap_cold(code: str, _timeout_seconds: int) -> str:
    return f"{code}\n"


def _plain_direct(code: str) -> str:
    return f"{code}\n"


def _j_direct(code: str) -> str:
    return f"{code}\nexit 0\n"


# =============================================================================
# Registry
# =============================================================================

_KAP_UID = 1001

_REGISTRY: dict[Language, Dialect] = {
    Language.J: Dialect(
        language=Language.J,
        framing=Framing.END_TOKEN,
        build_payload=_j_payload,
        build_reset=_j_reset,
        build_cold_payload=_j_cold,
        build_direct_payload=_j_direct,
        error_patterns=(_J_ERROR,),
        noise_prefixes=("echo '",),
        noise_lines=frozenset({"clear''", "exit 0"}),
        comment_pattern=re.compile(r"\s*NB\..*$", re.MULTILINE),
        entrypoint="/home/sandbox/j9.6/bin/jconsole",
        direct_candidates=(
            "ijconsole",
            "jconsole",
            "j",
            "~/j9.6/bin/ijconsole",
            "~/j9.6/bin/jconsole",
            "/usr/local/bin/jconsole",
            "/usr/bin/jconsole",
        ),
        direct_env={"DISPLAY": "", "TERM": "dumb"},
    ),
    Language.APL: Dialect(
        language=Language.APL,
        framing=Framing.MARKER_SPAN,
        build_payload=_apl_payload,
        build_reset=_apl_reset,
        build_cold_payload=_apl_cold,
        build_direct_payload=_apl_direct,
        wrapper=_apl_wrapper,
        error_patterns=(_APL_ERROR,),
        error_streams=frozenset({STDOUT}),
        stderr_error_substring="ERROR",
        error_anchor="ERROR",
        ready_signature="Copyright",
        noise_prefixes=("Dyalog APL", "Serial number:", "Copyright", "+---", "|", "⎕←", "]boxing", "Was "),
        noise_lines=frozenset({"clear ws", ")SIC", ")CLEAR"}),
        oneshot_noise_prefixes=("*",),
        oneshot_noise_substrings=("-style=", "ERR: Display.cpp", "glX"),
        echo_lines=frozenset({"Safe3.Exec"}),
        strip_indented_echo=True,
        trailing_echo_only=True,
        banner_anchor="Copyright (c) Dyalog",
        home_tmpfs=True,
        mount_dyalog=True,
        entrypoint="/opt/dyalog/mapl",
        direct_candidates=("dyalog", "/opt/mdyalog/20.0/64/unicode/mapl", "~/dyalog/mapl"),
        direct_args=("-b",),
        direct_env={"DYALOG_NOPOPUPS": "1"},
    ),
    Language.KAP: Dialect(
        language=Language.KAP,
        framing=Framing.END_TOKEN,
        build_payload=_kap_payload,
        build_reset=_kap_reset,
        build_cold_payload=_kap_cold,
        build_direct_payload=_plain_direct,
        error_patterns=(re.compile(r"Error at:|Error:"),),
        error_streams=frozenset({STDOUT}),
        stderr_error_substring="Error",
        ready_timeout=8.0,
        noise_lines=frozenset({"⊢", '"', '""'}),
        oneshot_noise_prefixes=("WARNING:",),
        oneshot_noise_substrings=("jline",),
        result_prefix="⊢ ",
        uid=_KAP_UID,
        needs_capabilities=True,
        home_tmpfs=True,
        entrypoint="/opt/kap/bin/kap-jvm-text",
        entrypoint_args=("--tty", "--no-lineeditor"),
        direct_candidates=("kap-jvm", "kap"),
        direct_args=("--tty", "--no-lineeditor"),
    ),
}


def parse_language(value: str | Language) -> Language:
    """Normalize a language id ("j", "APL", Language.KAP).

    Raises:
        UnsupportedLanguageError: Not one of the supported interpreters
    """
    if isinstance(value, Language):
        return value
    try:
        return Language(str(value).strip().lower())
    except ValueError:
        supported = ", ".join(language.value for language in Language)
        raise UnsupportedLanguageError(
            f"Unsupported language {value!r} (supported: {supported})",
            context={"language": value},
        ) from None


def get_dialect(language: str | Language) -> Dialect:
    """Look up the dialect descriptor for a language."""
    return _REGISTRY[parse_language(language)]
