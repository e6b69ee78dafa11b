"""Error types raised while parsing shell commands."""

from __future__ import annotations


class ShellParseError(Exception):
    """Base class for shell parsing failures.

    Every subclass is converted to a deny decision by the permission engine;
    callers of ``authorize`` never see these raised.
    """

    kind = "parse_error"

    def __init__(self, message: str, position: int | None = None) -> None:
        self.message = message
        self.position = position
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.position is None:
            return self.message
        return f"{self.message} (at offset {self.position})"


class UnterminatedQuoteError(ShellParseError):
    """Raised when a single or double quote is never closed."""

    kind = "unterminated_quote"


class UnbalancedSubstitutionError(ShellParseError):
    """Raised when ``$(``, a backtick, or a subshell group is never closed."""

    kind = "unbalanced_substitution"


class UnrecognizedOperatorError(ShellParseError):
    """Raised for operator runs the validator refuses to interpret."""

    kind = "unrecognized_operator"


__all__ = [
    "ShellParseError",
    "UnbalancedSubstitutionError",
    "UnrecognizedOperatorError",
    "UnterminatedQuoteError",
]
