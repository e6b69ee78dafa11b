"""Interpreter command helpers for permission checks."""

from __future__ import annotations

from cmdguard.utils.permissions.invocation import AtomicInvocation, extract_invocations
from cmdguard.utils.permissions.segmentation import ChildSource, CommandSegment, SegmentOrigin


SHELL_INTERPRETERS: frozenset[str] = frozenset({"sh", "bash", "zsh", "dash", "ksh", "ash"})

# Shell options that consume the following word.
_OPTIONS_WITH_VALUES: set[str] = {"-o", "+o", "-O", "+O", "--rcfile", "--init-file"}


def is_inline_script_command(invocation: AtomicInvocation) -> bool:
    """Check if the invocation runs a shell on a code string (``bash -c '...'``) or ``eval``."""
    return bool(inline_scripts(invocation))


def _shell_script(args: tuple[str, ...]) -> str | None:
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in _OPTIONS_WITH_VALUES:
            i += 2
            continue
        if arg == "--" or not arg.startswith(("-", "+")) or arg in ("-", "+"):
            return None
        if not arg.startswith("--") and "c" in arg[1:]:
            # The script is the first operand after the options (bash -lc 'cmd').
            j = i + 1
            while j < len(args) and args[j].startswith(("-", "+")) and args[j] not in ("-", "--"):
                j += 2 if args[j] in _OPTIONS_WITH_VALUES else 1
            if j < len(args) and args[j] == "--":
                j += 1
            return args[j] if j < len(args) else ""
        i += 1
    return None


def inline_scripts(invocation: AtomicInvocation) -> list[str]:
    """Extract code strings the invocation hands to a shell for execution."""
    if invocation.name in SHELL_INTERPRETERS:
        script = _shell_script(invocation.args)
        return [script] if script else []
    if invocation.name == "eval" and invocation.args:
        return [" ".join(invocation.args)]
    return []


def inline_script_children(segment: CommandSegment) -> list[ChildSource]:
    """Nested command sources for every inline script a segment runs."""
    children: list[ChildSource] = []
    for invocation in extract_invocations(segment):
        for script in inline_scripts(invocation):
            children.append((SegmentOrigin.INLINE_SCRIPT, script))
    return children


__all__ = [
    "SHELL_INTERPRETERS",
    "inline_script_children",
    "inline_scripts",
    "is_inline_script_command",
]
