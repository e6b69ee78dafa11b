"""Reduce command segments to the executables they actually run.

Leading environment assignments, reserved words and function or coprocess
headers are stripped, unquoted brace expressions are expanded, redirections
are separated from arguments, and transparent wrappers such as ``sudo`` or
``env`` are peeled off so that the underlying program is what gets checked.
"""

from __future__ import annotations

import posixpath
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import List, Mapping, Optional, Sequence, Tuple

from cmdguard.utils.permissions.errors import ShellParseError, UnrecognizedOperatorError
from cmdguard.utils.permissions.segmentation import CommandSegment
from cmdguard.utils.shell_token_utils import (
    Token,
    TokenKind,
    find_closing_backtick,
    find_closing_brace,
    find_closing_paren,
    scan_ansi_c_quoted,
    scan_double_quoted,
    tokenize,
    word_texts,
)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\[[^\]]*\])?\+?=")
_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

# Reserved words that only introduce the command that follows them.
_LEADING_RESERVED_WORDS = frozenset({"if", "then", "elif", "else", "do", "while", "until", "!", "{"})
# Reserved words that close a compound command and run nothing themselves.
_CLOSING_RESERVED_WORDS = frozenset({"fi", "done", "esac", "}"})
# Compound command headers whose words are never executed.
_HEADER_RESERVED_WORDS = frozenset({"for", "select", "case"})

_SEQUENCE_RE = re.compile(r"^(-?\d+)\.\.(-?\d+)(?:\.\.(-?\d+))?$")
_LETTER_SEQUENCE_RE = re.compile(r"^([A-Za-z])\.\.([A-Za-z])(?:\.\.(-?\d+))?$")
MAX_BRACE_EXPANSION = 1024

_FIND_EXEC_ACTIONS = frozenset({"-exec", "-execdir", "-ok", "-okdir"})
_FIND_EXEC_TERMINATORS = frozenset({";", "+"})

MAX_WRAPPER_CHAIN = 16
NULL_COMMAND = ":"


class Wrapper(str, Enum):
    """Executables that run another command given as their arguments."""

    SUDO = "sudo"
    DOAS = "doas"
    ENV = "env"
    NICE = "nice"
    NOHUP = "nohup"
    XARGS = "xargs"
    COMMAND = "command"
    BUILTIN = "builtin"
    EXEC = "exec"
    TIME = "time"
    TIMEOUT = "timeout"
    STDBUF = "stdbuf"
    IONICE = "ionice"
    CHRT = "chrt"
    SETSID = "setsid"


@dataclass(frozen=True)
class WrapperSpec:
    """How a wrapper's own options are laid out before the wrapped command."""

    options_with_values: frozenset = frozenset()
    positional_before_command: int = 0
    allows_assignments: bool = False
    # Options under which the wrapper does not run a command at all.
    non_running_flags: frozenset = frozenset()
    # Options whose value is itself a command line (``env -S``).
    split_string_options: frozenset = frozenset()


WRAPPER_SPECS: Mapping[Wrapper, WrapperSpec] = MappingProxyType(
    {
        Wrapper.SUDO: WrapperSpec(
            options_with_values=frozenset(
                {
                    "-u", "-g", "-C", "-D", "-p", "-r", "-t", "-T", "-U",
                    "--user", "--group", "--close-from", "--chdir", "--prompt",
                    "--role", "--type", "--command-timeout", "--other-user", "--host",
                }
            ),
            non_running_flags=frozenset(
                {"-l", "--list", "-v", "--validate", "-K", "--remove-timestamp",
                 "-e", "--edit", "-V", "--version"}
            ),
        ),
        Wrapper.DOAS: WrapperSpec(
            options_with_values=frozenset({"-u", "-a"}),
            non_running_flags=frozenset({"-C", "-L"}),
        ),
        Wrapper.ENV: WrapperSpec(
            options_with_values=frozenset({"-u", "--unset", "-C", "--chdir", "-P"}),
            allows_assignments=True,
            split_string_options=frozenset({"-S", "--split-string"}),
        ),
        Wrapper.NICE: WrapperSpec(options_with_values=frozenset({"-n", "--adjustment"})),
        Wrapper.NOHUP: WrapperSpec(),
        Wrapper.XARGS: WrapperSpec(
            options_with_values=frozenset(
                {
                    "-a", "-d", "-E", "-I", "-L", "-n", "-P", "-s",
                    "--arg-file", "--delimiter", "--max-args", "--max-procs",
                    "--max-chars", "--max-lines", "--process-slot-var",
                }
            ),
        ),
        Wrapper.COMMAND: WrapperSpec(non_running_flags=frozenset({"-v", "-V"})),
        Wrapper.BUILTIN: WrapperSpec(),
        Wrapper.EXEC: WrapperSpec(options_with_values=frozenset({"-a"})),
        Wrapper.TIME: WrapperSpec(options_with_values=frozenset({"-f", "--format", "-o", "--output"})),
        Wrapper.TIMEOUT: WrapperSpec(
            options_with_values=frozenset({"-s", "--signal", "-k", "--kill-after"}),
            positional_before_command=1,
        ),
        Wrapper.STDBUF: WrapperSpec(
            options_with_values=frozenset({"-i", "-o", "-e", "--input", "--output", "--error"})
        ),
        Wrapper.IONICE: WrapperSpec(
            options_with_values=frozenset(
                {"-c", "-n", "--class", "--classdata", "-p", "--pid", "-P", "--pgid", "-u", "--uid"}
            ),
            non_running_flags=frozenset({"-p", "--pid", "-P", "--pgid", "-u", "--uid"}),
        ),
        Wrapper.CHRT: WrapperSpec(
            options_with_values=frozenset({"-T", "-P", "-D", "--sched-runtime", "--sched-period", "--sched-deadline"}),
            positional_before_command=1,
            non_running_flags=frozenset({"-p", "--pid", "-m", "--max"}),
        ),
        Wrapper.SETSID: WrapperSpec(),
    }
)


@dataclass(frozen=True)
class Redirect:
    """A redirection removed from a command's arguments."""

    operator: str
    target: str

    @property
    def is_output(self) -> bool:
        return ">" in self.operator


@dataclass(frozen=True)
class AtomicInvocation:
    """One executable plus arguments that a command string would run."""

    executable: str
    args: Tuple[str, ...]
    source_segment: CommandSegment
    redirects: Tuple[Redirect, ...] = ()
    wrappers: Tuple[Wrapper, ...] = ()
    via: Optional[str] = None

    @property
    def name(self) -> str:
        """Basename of the executable (``/usr/bin/rm`` -> ``rm``)."""
        return posixpath.basename(self.executable) or self.executable

    @property
    def command_line(self) -> str:
        return shlex.join([self.executable, *self.args])


def _wrapper_for(token: Token) -> Optional[Wrapper]:
    try:
        return Wrapper(posixpath.basename(token.text))
    except ValueError:
        return None


def _skip_quoted(text: str, i: int) -> Optional[int]:
    """Return the index past a quoted region or substitution starting at ``i``."""
    ch = text[i]
    nxt = text[i + 1] if i + 1 < len(text) else ""
    if ch == "\\":
        return i + 2
    if ch == "$" and nxt == "'":
        return scan_ansi_c_quoted(text, i)
    if ch == "$" and nxt == '"':
        return scan_double_quoted(text, i + 1)
    if ch == "$" and nxt == "(":
        return find_closing_paren(text, i + 1) + 1
    if ch == "$" and nxt == "{":
        return find_closing_brace(text, i + 1) + 1
    if ch in "<>" and nxt == "(":
        return find_closing_paren(text, i + 1) + 1
    if ch == "'":
        end = text.find("'", i + 1)
        return len(text) if end == -1 else end + 1
    if ch == '"':
        return scan_double_quoted(text, i)
    if ch == "`":
        return find_closing_backtick(text, i) + 1
    return None


def _matching_brace(text: str, open_index: int) -> Optional[int]:
    depth = 0
    i = open_index
    while i < len(text):
        skipped = _skip_quoted(text, i)
        if skipped is not None:
            i = skipped
            continue
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return None


def _zero_padded(number: str) -> bool:
    digits = number.lstrip("-")
    return len(digits) > 1 and digits.startswith("0")


def _sequence(body: str) -> Optional[List[str]]:
    """Expand ``1..10``, ``01..10..3`` or ``a..e`` sequence bodies."""
    match = _SEQUENCE_RE.match(body) or _LETTER_SEQUENCE_RE.match(body)
    if match is None:
        return None
    first, last, step_text = match.groups()
    step = abs(int(step_text or "1")) or 1
    letters = not first.lstrip("-").isdigit()
    start, stop = (ord(first), ord(last)) if letters else (int(first), int(last))
    if abs(stop - start) // step + 1 > MAX_BRACE_EXPANSION:
        raise ShellParseError(f"Brace expansion {{{body}}} produces too many words")
    direction = 1 if stop >= start else -1
    values = range(start, stop + direction, step * direction)
    if letters:
        return [chr(value) for value in values]
    width = max(len(first), len(last)) if _zero_padded(first) or _zero_padded(last) else 0
    return [str(value).zfill(width) for value in values]


def _brace_alternatives(body: str) -> Optional[List[str]]:
    parts: List[str] = []
    depth = 0
    start = 0
    i = 0
    while i < len(body):
        skipped = _skip_quoted(body, i)
        if skipped is not None:
            i = skipped
            continue
        ch = body[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(body[start:i])
            start = i + 1
        i += 1
    if not parts:
        return _sequence(body)
    parts.append(body[start:])
    return parts


def _find_brace_group(text: str) -> Optional[Tuple[int, int, List[str]]]:
    """Locate the first unquoted ``{a,b}`` or ``{1..3}`` expression in ``text``."""
    i = 0
    while i < len(text):
        skipped = _skip_quoted(text, i)
        if skipped is not None:
            i = skipped
            continue
        if text[i] == "{":
            end = _matching_brace(text, i)
            if end is not None:
                alternatives = _brace_alternatives(text[i + 1 : end])
                if alternatives is not None:
                    return i, end, alternatives
        i += 1
    return None


def expand_braces(word: str) -> List[str]:
    """Brace-expand an unquoted word the way the shell does before running it.

    ``{rm,-rf,/}`` becomes ``["rm", "-rf", "/"]``; words that expand to the
    empty string are dropped.

    Raises:
        ShellParseError: if the expansion would produce more than
            ``MAX_BRACE_EXPANSION`` words.
    """
    pending = [word]
    expanded: List[str] = []
    while pending:
        current = pending.pop()
        group = _find_brace_group(current)
        if group is None:
            expanded.append(current)
            continue
        start, end, alternatives = group
        pending.extend(current[:start] + alt + current[end + 1 :] for alt in reversed(alternatives))
        if len(pending) + len(expanded) > MAX_BRACE_EXPANSION:
            raise ShellParseError(f"Brace expansion of '{word}' produces too many words")
    return [text for text in expanded if text]


def _expand_word(token: Token) -> List[Token]:
    if token.kind is not TokenKind.WORD or "{" not in token.raw:
        return [token]
    if _find_brace_group(token.raw) is None:
        return [token]
    if token.raw != token.text:
        raise UnrecognizedOperatorError(
            f"Brace expansion combined with quoting or escapes is not supported: {token.raw}"
        )
    return [Token(text=text, raw=text) for text in expand_braces(token.text)]


def _split_redirects(tokens: Sequence[Token]) -> Tuple[List[Token], List[Redirect]]:
    words: List[Token] = []
    redirects: List[Redirect] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token.kind is TokenKind.REDIRECT:
            target = ""
            if i + 1 < len(tokens) and tokens[i + 1].kind is TokenKind.WORD:
                target = tokens[i + 1].text
                i += 1
            redirects.append(Redirect(token.text, target))
        elif token.kind in (TokenKind.WORD, TokenKind.GROUP):
            words.extend(_expand_word(token))
        i += 1
    return words, redirects


def _strip_assignments(words: List[Token]) -> List[Token]:
    i = 0
    while i < len(words) and words[i].kind is TokenKind.WORD and _ASSIGNMENT_RE.match(words[i].raw):
        i += 1
    return words[i:]


def _is_empty_group(words: List[Token], index: int) -> bool:
    return (
        index < len(words)
        and words[index].kind is TokenKind.GROUP
        and not words[index].raw[1:-1].strip()
    )


def _strip_function_header(words: List[Token]) -> List[Token]:
    """Drop ``function NAME [()]`` or ``NAME ()``; the body that follows still runs."""
    i = 2 if words[0].text == "function" else 1
    if _is_empty_group(words, i):
        i += 1
    return words[i:]


def _strip_coproc_header(words: List[Token]) -> List[Token]:
    """Drop ``coproc`` and, before a compound command, the coprocess name."""
    rest = words[1:]
    if (
        len(rest) > 1
        and rest[0].kind is TokenKind.WORD
        and (rest[1].kind is TokenKind.GROUP or rest[1].text == "{")
    ):
        rest = rest[1:]
    return rest


def _parse_wrapper_options(
    spec: WrapperSpec, words: List[Token]
) -> Tuple[Optional[List[Token]], List[Token]]:
    """Skip a wrapper's options; return ``(remaining, prefix)``.

    ``remaining`` is None when an option means no command is run. ``prefix``
    holds words produced by ``env -S`` style options, which belong in front of
    the wrapped command.
    """
    prefix: List[Token] = []
    i = 1
    while i < len(words):
        text = words[i].text
        if text == "--":
            i += 1
            break
        if not text.startswith("-") or text == "-":
            break

        if text.startswith("--"):
            name, has_value, value = text.partition("=")
            if name in spec.non_running_flags:
                return None, prefix
            if name in spec.split_string_options:
                if not has_value:
                    i += 1
                    value = words[i].text if i < len(words) else ""
                prefix.extend(Token(text=w, raw=w) for w in word_texts(tokenize(value)))
            elif name in spec.options_with_values and not has_value:
                i += 1
            i += 1
            continue

        # Short options may be clustered (-nu root) or carry an attached value (-uroot).
        for pos in range(1, len(text)):
            option = "-" + text[pos]
            if option in spec.non_running_flags:
                return None, prefix
            attached = text[pos + 1 :]
            if option in spec.split_string_options:
                if not attached:
                    i += 1
                    attached = words[i].text if i < len(words) else ""
                prefix.extend(Token(text=w, raw=w) for w in word_texts(tokenize(attached)))
                break
            if option in spec.options_with_values:
                if not attached:
                    i += 1
                break
        i += 1

    i += spec.positional_before_command
    remaining = list(words[i:])
    if spec.allows_assignments:
        while remaining and _ENV_ASSIGNMENT_RE.match(remaining[0].text):
            remaining.pop(0)
    return remaining, prefix


def _resolve(words: List[Token]) -> Tuple[List[Token], List[Wrapper]]:
    """Strip assignments, reserved words and wrappers from the front of ``words``."""
    wrappers: List[Wrapper] = []
    words = _strip_assignments(words)

    while words and words[0].kind is TokenKind.WORD:
        head = words[0].text
        if head in _LEADING_RESERVED_WORDS:
            words = words[1:]
        elif head == "function" or _is_empty_group(words, 1):
            words = _strip_function_header(words)
        elif head == "coproc":
            words = _strip_coproc_header(words)
        else:
            break
        words = _strip_assignments(words)

    while words and words[0].kind is TokenKind.WORD:
        wrapper = _wrapper_for(words[0])
        if wrapper is None:
            break
        remaining, prefix = _parse_wrapper_options(WRAPPER_SPECS[wrapper], words)
        if remaining is None or not (prefix or remaining):
            # Nothing wrapped: the wrapper itself is the program that runs.
            break
        if len(wrappers) == MAX_WRAPPER_CHAIN:
            raise ShellParseError(f"Wrapper chain longer than {MAX_WRAPPER_CHAIN} commands")
        wrappers.append(wrapper)
        words = prefix + remaining
    return words, wrappers


def _build_invocation(
    words: List[Token],
    segment: CommandSegment,
    redirects: Sequence[Redirect],
    via: Optional[str] = None,
) -> Optional[AtomicInvocation]:
    words, wrappers = _resolve(words)
    head = words[0] if words else None
    if (
        head is None
        or head.kind is TokenKind.GROUP
        or head.text in _CLOSING_RESERVED_WORDS
        or head.text in _HEADER_RESERVED_WORDS
    ):
        if not redirects:
            return None
        # "> file" and "( ... ) > file" still open files; model them as the null command.
        return AtomicInvocation(
            executable=NULL_COMMAND,
            args=(),
            source_segment=segment,
            redirects=tuple(redirects),
            via=via,
        )
    args = tuple(token.text for token in words[1:] if token.kind is TokenKind.WORD)
    return AtomicInvocation(
        executable=head.text,
        args=args,
        source_segment=segment,
        redirects=tuple(redirects),
        wrappers=tuple(wrappers),
        via=via,
    )


def extract_invocation(segment: CommandSegment) -> Optional[AtomicInvocation]:
    """Return the invocation a segment runs, or None if it runs nothing."""
    words, redirects = _split_redirects(segment.tokens)
    return _build_invocation(words, segment, redirects)


def _find_exec_invocations(invocation: AtomicInvocation) -> List[AtomicInvocation]:
    found: List[AtomicInvocation] = []
    args = invocation.args
    i = 0
    while i < len(args):
        if args[i] not in _FIND_EXEC_ACTIONS:
            i += 1
            continue
        action = args[i]
        end = i + 1
        while end < len(args) and args[end] not in _FIND_EXEC_TERMINATORS:
            end += 1
        words = [Token(text=arg, raw=shlex.quote(arg)) for arg in args[i + 1 : end]]
        nested = _build_invocation(words, invocation.source_segment, (), via=f"find {action}")
        if nested is not None:
            found.append(nested)
            found.extend(_expand(nested))
        i = end + 1
    return found


def _expand(invocation: AtomicInvocation) -> List[AtomicInvocation]:
    if invocation.name == "find":
        return _find_exec_invocations(invocation)
    return []


def extract_invocations(segment: CommandSegment) -> List[AtomicInvocation]:
    """Return every invocation a segment runs, including ``find -exec`` commands."""
    invocation = extract_invocation(segment)
    if invocation is None:
        return []
    return [invocation, *_expand(invocation)]


__all__ = [
    "AtomicInvocation",
    "MAX_BRACE_EXPANSION",
    "MAX_WRAPPER_CHAIN",
    "NULL_COMMAND",
    "Redirect",
    "WRAPPER_SPECS",
    "Wrapper",
    "WrapperSpec",
    "expand_braces",
    "extract_invocation",
    "extract_invocations",
]
