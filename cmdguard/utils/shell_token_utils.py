"""Shell token parsing utilities.

The tokenizer understands just enough POSIX shell syntax to find every place
a command string could start another program: quoting, escapes, control
operators, redirections, here-documents, subshell groups and the various
substitution forms. It never expands anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from cmdguard.utils.permissions.errors import (
    UnbalancedSubstitutionError,
    UnrecognizedOperatorError,
    UnterminatedQuoteError,
)


class QuoteStyle(str, Enum):
    """First quoting style used inside a word."""

    NONE = "none"
    SINGLE = "single"
    DOUBLE = "double"
    ANSI_C = "ansi-c"


class TokenKind(str, Enum):
    WORD = "word"
    OPERATOR = "operator"
    REDIRECT = "redirect"
    GROUP = "group"
    HEREDOC = "heredoc"


class Operator(str, Enum):
    """Control operators that separate commands."""

    NONE = ""
    SEQUENCE = ";"
    AND = "&&"
    OR = "||"
    PIPE = "|"
    BACKGROUND = "&"
    NEWLINE = "\n"


# Longest spelling first so matching is greedy.
_OPERATOR_SPELLINGS: Tuple[Tuple[str, Operator], ...] = (
    ("&&", Operator.AND),
    ("||", Operator.OR),
    ("|&", Operator.PIPE),
    (";", Operator.SEQUENCE),
    ("|", Operator.PIPE),
    ("&", Operator.BACKGROUND),
)

_REDIRECT_SPELLINGS: Tuple[str, ...] = (
    "&>>",
    "<<<",
    "<<-",
    "&>",
    ">>",
    ">&",
    ">|",
    "<<",
    "<&",
    "<>",
    ">",
    "<",
)

_HEREDOC_OPERATORS = {"<<", "<<-"}
_OPERATOR_CHARS = frozenset(";&|")
_DELIMITER_BREAKS = frozenset(" \t\n;&|<>()")
# Characters after which a `#` starts a comment.
_COMMENT_PRECEDERS = frozenset(" \t\n;&|(")

_ANSI_C_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "e": "\x1b",
    "E": "\x1b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "v": "\v",
    "\\": "\\",
    "'": "'",
    '"': '"',
    "?": "?",
}
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_OCTAL_DIGITS = frozenset("01234567")


@dataclass(frozen=True)
class Token:
    """A lexical token.

    ``text`` is the value after quote removal and escape processing; ``raw`` is
    the exact source slice, which later stages rescan for substitutions.
    """

    text: str
    quoting: QuoteStyle = QuoteStyle.NONE
    kind: TokenKind = TokenKind.WORD
    raw: str = ""
    operator: Optional[Operator] = None

    @property
    def is_operator(self) -> bool:
        return self.kind is TokenKind.OPERATOR


@dataclass(frozen=True)
class _PendingHeredoc:
    delimiter: str
    strip_tabs: bool
    quoted: bool


# =============================================================================
# Balanced scanning (shared with substitution extraction)
# =============================================================================


def find_closing_backtick(source: str, open_index: int) -> int:
    """Return the index of the backtick closing the one at ``open_index``."""
    i = open_index + 1
    length = len(source)
    while i < length:
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "`":
            return i
        i += 1
    raise UnbalancedSubstitutionError("Unterminated backtick command substitution", open_index)


def _read_digits(source: str, index: int, digits: frozenset, limit: int) -> str:
    end = index
    while end < len(source) and end - index < limit and source[end] in digits:
        end += 1
    return source[index:end]


def _ansi_c_escape(source: str, index: int) -> Tuple[str, int]:
    """Decode the escape whose letter is at ``index``; return ``(text, next_index)``."""
    ch = source[index]
    if ch in _ANSI_C_ESCAPES:
        return _ANSI_C_ESCAPES[ch], index + 1
    if ch in _OCTAL_DIGITS:
        digits = _read_digits(source, index, _OCTAL_DIGITS, 3)
        return chr(int(digits, 8) & 0xFF), index + len(digits)
    if ch in "xuU":
        limit = {"x": 2, "u": 4, "U": 8}[ch]
        digits = _read_digits(source, index + 1, _HEX_DIGITS, limit)
        if digits and int(digits, 16) <= 0x10FFFF:
            return chr(int(digits, 16)), index + 1 + len(digits)
        return "\\" + ch, index + 1
    if ch == "c" and index + 1 < len(source):
        return chr(ord(source[index + 1]) & 0x1F), index + 2
    # Unknown escapes keep their backslash.
    return "\\" + ch, index + 1


def scan_ansi_c_quoted(source: str, open_index: int, out: Optional[List[str]] = None) -> int:
    """Scan a ``$'...'`` region whose ``$`` is at ``open_index``.

    Returns the index just past the closing quote. Unlike plain single quotes,
    a backslash escapes the next character here, so ``$'\\''`` is one quote
    character rather than the end of the string. When ``out`` is given, the
    decoded text is appended to it.
    """
    i = open_index + 2
    length = len(source)
    while i < length:
        ch = source[i]
        if ch == "'":
            return i + 1
        if ch == "\\" and i + 1 < length:
            text, i = _ansi_c_escape(source, i + 1)
            if out is not None:
                out.append(text)
            continue
        if out is not None:
            out.append(ch)
        i += 1
    raise UnterminatedQuoteError("Unterminated $'...' quote", open_index)


def scan_double_quoted(source: str, open_index: int, out: Optional[List[str]] = None) -> int:
    """Scan a double-quoted region and return the index just past its closing quote.

    When ``out`` is given, the unquoted text is appended to it. Substitutions
    inside the quotes are copied verbatim.
    """
    i = open_index + 1
    length = len(source)
    while i < length:
        ch = source[i]
        if ch == '"':
            return i + 1
        if ch == "\\" and i + 1 < length:
            nxt = source[i + 1]
            if nxt == "\n":
                i += 2
                continue
            if nxt in '$`"\\':
                if out is not None:
                    out.append(nxt)
                i += 2
                continue
            if out is not None:
                out.append(ch)
            i += 1
            continue
        if ch == "`":
            end = find_closing_backtick(source, i)
            if out is not None:
                out.append(source[i : end + 1])
            i = end + 1
            continue
        if ch == "$" and i + 1 < length and source[i + 1] in "({":
            if source[i + 1] == "(":
                end = find_closing_paren(source, i + 1)
            else:
                end = find_closing_brace(source, i + 1)
            if out is not None:
                out.append(source[i : end + 1])
            i = end + 1
            continue
        if out is not None:
            out.append(ch)
        i += 1
    raise UnterminatedQuoteError("Unterminated double quote", open_index)


def _read_heredoc_delimiter(source: str, index: int) -> Tuple[Optional[_PendingHeredoc], int]:
    """Parse the delimiter word following ``<<`` or ``<<-`` at ``index``."""
    i = index + 2
    strip_tabs = False
    if i < len(source) and source[i] == "-":
        strip_tabs = True
        i += 1
    while i < len(source) and source[i] in " \t":
        i += 1

    chars: List[str] = []
    quoted = False
    while i < len(source) and source[i] not in _DELIMITER_BREAKS:
        ch = source[i]
        if ch == "$" and source.startswith(("$'", '$"'), i):
            raise UnrecognizedOperatorError("Here-document delimiter uses $'...' or $\"...\" quoting", i)
        if ch in "'\"":
            end = source.find(ch, i + 1)
            if end == -1:
                raise UnterminatedQuoteError("Unterminated quote in here-document delimiter", i)
            chars.append(source[i + 1 : end])
            quoted = True
            i = end + 1
            continue
        if ch == "\\" and i + 1 < len(source):
            chars.append(source[i + 1])
            quoted = True
            i += 2
            continue
        chars.append(ch)
        i += 1

    if not chars:
        return None, i
    return _PendingHeredoc("".join(chars), strip_tabs, quoted), i


def _read_heredoc_bodies(
    source: str, start: int, pending: List[_PendingHeredoc]
) -> Tuple[int, List[Tuple[_PendingHeredoc, str]]]:
    """Consume here-document bodies that begin at ``start``."""
    bodies: List[Tuple[_PendingHeredoc, str]] = []
    pos = start
    length = len(source)
    for heredoc in pending:
        lines: List[str] = []
        while pos < length:
            newline = source.find("\n", pos)
            line_end = length if newline == -1 else newline
            line = source[pos:line_end]
            pos = length if newline == -1 else newline + 1
            candidate = line.lstrip("\t") if heredoc.strip_tabs else line
            if candidate == heredoc.delimiter:
                break
            lines.append(line)
        bodies.append((heredoc, "\n".join(lines)))
    return pos, bodies


def _skip_comment(source: str, index: int) -> int:
    newline = source.find("\n", index)
    return len(source) if newline == -1 else newline


def find_closing_paren(source: str, open_index: int) -> int:
    """Return the index of the ``)`` matching the ``(`` at ``open_index``.

    Depth counting honors quotes, escapes, backticks, comments and
    here-document bodies so that a ``)`` inside any of them never closes the
    group.
    """
    depth = 0
    i = open_index
    length = len(source)
    pending: List[_PendingHeredoc] = []
    while i < length:
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "$" and source.startswith("$'", i):
            i = scan_ansi_c_quoted(source, i)
            continue
        if ch == "'":
            end = source.find("'", i + 1)
            if end == -1:
                raise UnterminatedQuoteError("Unterminated single quote", i)
            i = end + 1
            continue
        if ch == '"':
            i = scan_double_quoted(source, i)
            continue
        if ch == "`":
            i = find_closing_backtick(source, i) + 1
            continue
        if ch == "#" and i > open_index and source[i - 1] in _COMMENT_PRECEDERS:
            i = _skip_comment(source, i)
            continue
        if source.startswith("<<", i) and not source.startswith("<<<", i):
            heredoc, i = _read_heredoc_delimiter(source, i)
            if heredoc is not None:
                pending.append(heredoc)
            continue
        if ch == "\n" and pending:
            i, _ = _read_heredoc_bodies(source, i + 1, pending)
            pending = []
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise UnbalancedSubstitutionError(
        "Unbalanced parenthesis in command substitution or subshell", open_index
    )


def find_closing_brace(source: str, open_index: int) -> int:
    """Return the index of the ``}`` closing a ``${`` parameter expansion."""
    depth = 0
    i = open_index
    length = len(source)
    while i < length:
        ch = source[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "$" and source.startswith("$'", i):
            i = scan_ansi_c_quoted(source, i)
            continue
        if ch == "'":
            end = source.find("'", i + 1)
            if end == -1:
                raise UnterminatedQuoteError("Unterminated single quote", i)
            i = end + 1
            continue
        if ch == '"':
            i = scan_double_quoted(source, i)
            continue
        if ch == "`":
            i = find_closing_backtick(source, i) + 1
            continue
        if ch == "$" and i + 1 < length and source[i + 1] == "(":
            i = find_closing_paren(source, i + 1) + 1
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise UnbalancedSubstitutionError("Unterminated ${...} parameter expansion", open_index)


# =============================================================================
# Tokenizer
# =============================================================================


class Tokenizer:
    """Convert a shell command string into a flat token stream."""

    def __init__(self, source: str) -> None:
        self.source = source.replace("\r\n", "\n")
        self.tokens: List[Token] = []
        self._chars: List[str] = []
        self._word_start: Optional[int] = None
        self._quoting = QuoteStyle.NONE
        self._awaiting_delimiter: Optional[bool] = None
        self._pending: List[_PendingHeredoc] = []

    def tokenize(self) -> List[Token]:
        src = self.source
        length = len(src)
        i = 0

        while i < length:
            ch = src[i]
            nxt = src[i + 1] if i + 1 < length else ""

            if ch in " \t\r":
                self._flush(i)
                i += 1
                continue

            if ch == "\n":
                self._flush(i)
                i = self._newline(i)
                continue

            if ch == "#" and self._word_start is None:
                i = _skip_comment(src, i)
                continue

            if ch == "\\":
                if nxt == "\n":
                    # Line continuation joins the surrounding text.
                    i += 2
                    continue
                self._start_word(i)
                self._chars.append(nxt if nxt else "\\")
                i += 2 if nxt else 1
                continue

            if ch == "$" and nxt == "'":
                self._start_word(i)
                i = scan_ansi_c_quoted(src, i, self._chars)
                self._mark_quoting(QuoteStyle.ANSI_C)
                continue

            if ch == "$" and nxt == '"':
                # Locale-translated string: quoted exactly like "...".
                self._start_word(i)
                i = scan_double_quoted(src, i + 1, self._chars)
                self._mark_quoting(QuoteStyle.DOUBLE)
                continue

            if ch == "'":
                self._start_word(i)
                end = src.find("'", i + 1)
                if end == -1:
                    raise UnterminatedQuoteError("Unterminated single quote", i)
                self._chars.append(src[i + 1 : end])
                self._mark_quoting(QuoteStyle.SINGLE)
                i = end + 1
                continue

            if ch == '"':
                self._start_word(i)
                i = scan_double_quoted(src, i, self._chars)
                self._mark_quoting(QuoteStyle.DOUBLE)
                continue

            if ch == "`":
                self._start_word(i)
                end = find_closing_backtick(src, i)
                self._chars.append(src[i : end + 1])
                i = end + 1
                continue

            if ch == "$" and nxt in ("(", "{"):
                self._start_word(i)
                if nxt == "(":
                    end = find_closing_paren(src, i + 1)
                else:
                    end = find_closing_brace(src, i + 1)
                self._chars.append(src[i : end + 1])
                i = end + 1
                continue

            if ch in "<>" and nxt == "(":
                # Process substitution: <(cmd) or >(cmd)
                self._start_word(i)
                end = find_closing_paren(src, i + 1)
                self._chars.append(src[i : end + 1])
                i = end + 1
                continue

            if ch == "(":
                i = self._open_paren(i)
                continue

            if ch == ")":
                raise UnbalancedSubstitutionError("Unexpected ')' without a matching '('", i)

            if ch == "&" and nxt == ">":
                i = self._redirect(i)
                continue

            if ch in _OPERATOR_CHARS:
                i = self._operator(i)
                continue

            if ch in "<>":
                i = self._redirect(i)
                continue

            self._start_word(i)
            self._chars.append(ch)
            i += 1

        self._flush(length)
        if self._awaiting_delimiter is not None:
            raise UnrecognizedOperatorError("Here-document operator is missing its delimiter", length)
        return self.tokens

    # ------------------------------------------------------------------
    # Word handling
    # ------------------------------------------------------------------

    def _start_word(self, index: int) -> None:
        if self._word_start is None:
            self._word_start = index

    def _mark_quoting(self, style: QuoteStyle) -> None:
        if self._quoting is QuoteStyle.NONE:
            self._quoting = style

    def _current_text(self) -> str:
        return "".join(self._chars)

    def _reset_word(self) -> None:
        self._chars = []
        self._word_start = None
        self._quoting = QuoteStyle.NONE

    def _flush(self, end: int) -> None:
        if self._word_start is None:
            return
        raw = self.source[self._word_start : end]
        token = Token(text=self._current_text(), quoting=self._quoting, raw=raw)
        self._reset_word()
        if self._awaiting_delimiter is not None:
            if "$'" in raw or '$"' in raw:
                raise UnrecognizedOperatorError(
                    "Here-document delimiter uses $'...' or $\"...\" quoting", end - len(raw)
                )
            quoted = token.quoting is not QuoteStyle.NONE or "\\" in raw
            self._pending.append(_PendingHeredoc(token.text, self._awaiting_delimiter, quoted))
            self._awaiting_delimiter = None
        self.tokens.append(token)

    # ------------------------------------------------------------------
    # Structural characters
    # ------------------------------------------------------------------

    def _newline(self, index: int) -> int:
        if self._awaiting_delimiter is not None:
            raise UnrecognizedOperatorError("Here-document operator is missing its delimiter", index)
        next_index = index + 1
        if self._pending:
            next_index, bodies = _read_heredoc_bodies(self.source, next_index, self._pending)
            self._pending = []
            for heredoc, body in bodies:
                # Quoted delimiters make the body literal; unquoted bodies are expanded.
                if not heredoc.quoted:
                    self.tokens.append(Token(text=body, kind=TokenKind.HEREDOC, raw=body))
        self.tokens.append(
            Token(text="\n", kind=TokenKind.OPERATOR, raw="\n", operator=Operator.NEWLINE)
        )
        return next_index

    def _open_paren(self, index: int) -> int:
        src = self.source
        if self._word_start is None:
            end = find_closing_paren(src, index)
            group = src[index : end + 1]
            self.tokens.append(Token(text=group, kind=TokenKind.GROUP, raw=group))
            return end + 1

        if self._quoting is QuoteStyle.NONE and self._current_text().endswith("="):
            # Array assignment: NAME=(a b c)
            end = find_closing_paren(src, index)
            self._chars.append(src[index : end + 1])
            return end + 1

        raise UnrecognizedOperatorError("Unexpected '(' inside a word", index)

    def _operator(self, index: int) -> int:
        src = self.source
        self._flush(index)
        for spelling, operator in _OPERATOR_SPELLINGS:
            if src.startswith(spelling, index):
                end = index + len(spelling)
                if end < len(src) and src[end] in _OPERATOR_CHARS:
                    sequence = src[index : end + 1]
                    raise UnrecognizedOperatorError(
                        f"Unrecognized operator sequence '{sequence}'", index
                    )
                self.tokens.append(
                    Token(text=spelling, kind=TokenKind.OPERATOR, raw=spelling, operator=operator)
                )
                return end
        raise UnrecognizedOperatorError(f"Unrecognized operator '{src[index]}'", index)

    def _redirect(self, index: int) -> int:
        src = self.source
        start = index
        fd = ""
        text = self._current_text()
        if (
            self._word_start is not None
            and self._quoting is QuoteStyle.NONE
            and text.isdigit()
            and self.source[self._word_start : index] == text
        ):
            # "2>file": the digits are a file descriptor, not an argument.
            fd = text
            start = self._word_start
            self._reset_word()
        else:
            self._flush(index)

        for spelling in _REDIRECT_SPELLINGS:
            if src.startswith(spelling, index):
                end = index + len(spelling)
                self.tokens.append(
                    Token(
                        text=fd + spelling,
                        kind=TokenKind.REDIRECT,
                        raw=src[start:end],
                    )
                )
                if spelling in _HEREDOC_OPERATORS:
                    self._awaiting_delimiter = spelling == "<<-"
                return end
        raise UnrecognizedOperatorError(f"Unrecognized redirection '{src[index]}'", index)


def tokenize(command: str) -> List[Token]:
    """Tokenize a shell command string.

    Raises:
        ShellParseError: for unterminated quotes, unbalanced substitutions
            and operator sequences the tokenizer refuses to interpret.
    """
    return Tokenizer(command).tokenize()


def word_texts(tokens: List[Token]) -> List[str]:
    """Return the text of every word token, in order."""
    return [token.text for token in tokens if token.kind is TokenKind.WORD]


__all__ = [
    "Operator",
    "QuoteStyle",
    "Token",
    "TokenKind",
    "Tokenizer",
    "find_closing_backtick",
    "find_closing_brace",
    "find_closing_paren",
    "scan_ansi_c_quoted",
    "scan_double_quoted",
    "tokenize",
    "word_texts",
]
