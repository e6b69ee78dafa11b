"""Split token streams into command segments and discover nested commands.

A segment is the span of tokens between two top-level control operators.
Substitutions (``$(...)``, backticks, ``<(...)``, ``>(...)``), subshell groups
and unquoted here-document bodies each contain further commands; they are
tokenized and segmented again and linked to the segment they came from by id.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Iterable, List, Optional, Sequence, Tuple

from cmdguard.utils.permissions.errors import (
    UnbalancedSubstitutionError,
    UnterminatedQuoteError,
)
from cmdguard.utils.shell_token_utils import (
    Operator,
    Token,
    TokenKind,
    find_closing_backtick,
    find_closing_brace,
    find_closing_paren,
    scan_ansi_c_quoted,
    tokenize,
)

MAX_NESTING_DEPTH = 32

_BACKTICK_ESCAPE_RE = re.compile(r"\\([\\`$])")


class SegmentOrigin(str, Enum):
    """Where a segment's text was found."""

    TOP_LEVEL = "top-level"
    SUBSTITUTION = "substitution"
    SUBSHELL = "subshell"
    INLINE_SCRIPT = "inline-script"


@dataclass(frozen=True)
class CommandSegment:
    """A contiguous run of tokens between top-level operators."""

    id: int
    tokens: Tuple[Token, ...]
    leading_operator: Operator = Operator.NONE
    trailing_operator: Operator = Operator.NONE
    depth: int = 0
    origin: SegmentOrigin = SegmentOrigin.TOP_LEVEL
    parent_id: Optional[int] = None

    @property
    def text(self) -> str:
        return " ".join(token.raw or token.text for token in self.tokens)

    @property
    def runs_in_background(self) -> bool:
        return self.trailing_operator is Operator.BACKGROUND


ChildSource = Tuple[SegmentOrigin, str]


def split_segments(
    tokens: Sequence[Token],
    *,
    depth: int = 0,
    origin: SegmentOrigin = SegmentOrigin.TOP_LEVEL,
    parent_id: Optional[int] = None,
    start_id: int = 0,
) -> List[CommandSegment]:
    """Split ``tokens`` on operator tokens.

    Each operator becomes the leading operator of the segment after it and
    the trailing operator of the segment before it. Segments with no tokens
    (``a ;; b`` never reaches here, but ``a ; ; b`` or a trailing ``&`` do)
    are dropped.
    """
    segments: List[CommandSegment] = []
    current: List[Token] = []
    leading = Operator.NONE

    def close(trailing: Operator) -> None:
        if not current:
            return
        segments.append(
            CommandSegment(
                id=start_id + len(segments),
                tokens=tuple(current),
                leading_operator=leading,
                trailing_operator=trailing,
                depth=depth,
                origin=origin,
                parent_id=parent_id,
            )
        )

    for token in tokens:
        if token.is_operator:
            operator = token.operator or Operator.SEQUENCE
            close(operator)
            current = []
            leading = operator
            continue
        current.append(token)
    close(Operator.NONE)
    return segments


def _unescape_backtick_body(body: str) -> str:
    return _BACKTICK_ESCAPE_RE.sub(r"\1", body)


def find_substitutions(raw: str, *, heredoc: bool = False, depth: int = 0) -> List[str]:
    """Return the bodies of every command substitution in ``raw``.

    ``raw`` is the source text of a single word (or a here-document body when
    ``heredoc`` is set, in which case quotes carry no meaning). Single-quoted
    text is inert; double quotes still allow ``$(...)`` and backticks but
    not process substitution. Parameter expansions and arithmetic are searched
    for substitutions nested inside them, at most ``MAX_NESTING_DEPTH`` deep.
    """
    if depth > MAX_NESTING_DEPTH:
        raise UnbalancedSubstitutionError(
            f"Parameter expansion nesting exceeds the maximum depth of {MAX_NESTING_DEPTH}"
        )
    bodies: List[str] = []
    in_double = False
    i = 0
    length = len(raw)
    while i < length:
        ch = raw[i]
        nxt = raw[i + 1] if i + 1 < length else ""

        if ch == "\\":
            i += 2
            continue
        if ch == "$" and nxt == "'" and not in_double and not heredoc:
            i = scan_ansi_c_quoted(raw, i)
            continue
        if ch == "'" and not in_double and not heredoc:
            end = raw.find("'", i + 1)
            if end == -1:
                raise UnterminatedQuoteError("Unterminated single quote", i)
            i = end + 1
            continue
        if ch == '"' and not heredoc:
            in_double = not in_double
            i += 1
            continue
        if ch == "`":
            end = find_closing_backtick(raw, i)
            bodies.append(_unescape_backtick_body(raw[i + 1 : end]))
            i = end + 1
            continue
        if ch == "$" and nxt == "(":
            end = find_closing_paren(raw, i + 1)
            if raw.startswith("((", i + 1) and find_closing_paren(raw, i + 2) == end - 1:
                # $(( ... )) arithmetic: only nested substitutions run commands.
                bodies.extend(find_substitutions(raw[i + 3 : end - 1], depth=depth + 1))
            else:
                bodies.append(raw[i + 2 : end])
            i = end + 1
            continue
        if ch == "$" and nxt == "{":
            end = find_closing_brace(raw, i + 1)
            bodies.extend(find_substitutions(raw[i + 2 : end], depth=depth + 1))
            i = end + 1
            continue
        if ch in "<>" and nxt == "(" and not in_double and not heredoc:
            end = find_closing_paren(raw, i + 1)
            bodies.append(raw[i + 2 : end])
            i = end + 1
            continue
        i += 1
    return bodies


def extract_substitutions(segment: CommandSegment) -> List[ChildSource]:
    """Return the nested command sources of ``segment`` in document order."""
    children: List[ChildSource] = []
    for token in segment.tokens:
        if token.kind is TokenKind.GROUP:
            children.append((SegmentOrigin.SUBSHELL, token.raw[1:-1]))
        elif token.kind is TokenKind.HEREDOC:
            for body in find_substitutions(token.raw, heredoc=True):
                children.append((SegmentOrigin.SUBSTITUTION, body))
        elif token.kind is TokenKind.WORD:
            for body in find_substitutions(token.raw):
                children.append((SegmentOrigin.SUBSTITUTION, body))
    return children


def collect_segments(
    command: str,
    extra_children: Optional[Callable[[CommandSegment], Iterable[ChildSource]]] = None,
) -> List[CommandSegment]:
    """Tokenize ``command`` and return every segment it contains.

    The result lists the top-level segments first, followed by nested
    segments level by level in document order. ``extra_children`` may supply
    additional nested sources for a segment (for example inline shell
    scripts); they are parsed the same way as substitutions.

    Raises:
        ShellParseError: when any level fails to parse or nesting exceeds
            ``MAX_NESTING_DEPTH``.
    """
    top_level = split_segments(tokenize(command))
    result: List[CommandSegment] = list(top_level)
    queue: Deque[CommandSegment] = deque(top_level)

    while queue:
        segment = queue.popleft()
        sources: List[ChildSource] = extract_substitutions(segment)
        if extra_children is not None:
            sources.extend(extra_children(segment))
        if not sources:
            continue

        depth = segment.depth + 1
        if depth > MAX_NESTING_DEPTH:
            raise UnbalancedSubstitutionError(
                f"Command nesting exceeds the maximum depth of {MAX_NESTING_DEPTH}"
            )
        for origin, body in sources:
            children = split_segments(
                tokenize(body),
                depth=depth,
                origin=origin,
                parent_id=segment.id,
                start_id=len(result),
            )
            result.extend(children)
            queue.extend(children)
    return result


def root_segment(segment: CommandSegment, segments: Sequence[CommandSegment]) -> CommandSegment:
    """Return the top-level ancestor of ``segment``."""
    by_id = {item.id: item for item in segments}
    current = segment
    while current.parent_id is not None and current.parent_id in by_id:
        current = by_id[current.parent_id]
    return current


__all__ = [
    "MAX_NESTING_DEPTH",
    "ChildSource",
    "CommandSegment",
    "SegmentOrigin",
    "collect_segments",
    "extract_substitutions",
    "find_substitutions",
    "root_segment",
    "split_segments",
]
