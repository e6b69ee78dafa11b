"""Permission utilities.

Submodules are imported directly (``cmdguard.utils.permissions.segmentation``
and friends); the tokenizer depends on the error types re-exported here.
"""

from .errors import (
    ShellParseError,
    UnbalancedSubstitutionError,
    UnrecognizedOperatorError,
    UnterminatedQuoteError,
)

__all__ = [
    "ShellParseError",
    "UnbalancedSubstitutionError",
    "UnrecognizedOperatorError",
    "UnterminatedQuoteError",
]
