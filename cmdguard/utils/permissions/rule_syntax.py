"""Permission rule syntax parsing and matching helpers."""

from __future__ import annotations

import fnmatch
import posixpath
import re
import shlex
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple

from cmdguard.utils.permissions.invocation import AtomicInvocation


_TOOL_WITH_SPEC_RE = re.compile(r"^\s*([A-Za-z0-9_-]+)\s*\((.*)\)\s*$", re.DOTALL)
_SHELL_TOOL_NAMES = {"Bash", "bash", "Shell", "shell"}

# Directories whose binaries may be matched by bare-name allow rules.
_COMMON_BIN_DIRS: tuple[str, ...] = (
    "/bin",
    "/sbin",
    "/usr/bin",
    "/usr/sbin",
    "/usr/local/bin",
    "/usr/local/sbin",
    "/opt/homebrew/bin",
)


class Decision(str, Enum):
    """Verdict for a command or a single invocation."""

    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {Decision.ALLOW: 0, Decision.ASK: 1, Decision.DENY: 2}


def most_severe(decisions: Iterable[Decision]) -> Decision:
    """Combine decisions: DENY absorbs everything, ASK absorbs ALLOW."""
    return max(decisions, key=lambda decision: decision.severity, default=Decision.ALLOW)


class RuleEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class RuleSource(str, Enum):
    """Where a rule came from; used only for diagnostics."""

    USER = "user"
    PROJECT = "project"
    INFERRED = "inferred"
    PRESET = "preset"


def _strip_trailing_wildcards(patterns: Sequence[str]) -> Tuple[str, ...]:
    # "git add *" also covers a bare "git add".
    trimmed = list(patterns)
    while trimmed and trimmed[-1] == "*":
        trimmed.pop()
    return tuple(trimmed)


def _is_ordered_subsequence(patterns: Sequence[str], args: Sequence[str]) -> bool:
    position = 0
    for pattern in patterns:
        while position < len(args) and not fnmatch.fnmatchcase(args[position], pattern):
            position += 1
        if position >= len(args):
            return False
        position += 1
    return True


def _is_positional_prefix(patterns: Sequence[str], args: Sequence[str]) -> bool:
    if len(patterns) > len(args):
        return False
    return all(fnmatch.fnmatchcase(arg, pattern) for pattern, arg in zip(patterns, args))


@dataclass(frozen=True)
class PermissionRule:
    """An allow or deny rule on an executable and, optionally, its arguments.

    The executable pattern is a glob matched against the whole executable
    name. Argument patterns are globs matched against whole arguments: deny
    rules match when they occur in order anywhere in the argument list, allow
    rules only when they match the leading arguments.
    """

    executable: str
    arguments: Tuple[str, ...] = ()
    effect: RuleEffect = RuleEffect.ALLOW
    source: RuleSource = RuleSource.USER

    @property
    def pattern(self) -> str:
        return " ".join((self.executable, *self.arguments))

    def _matches_executable(self, invocation: AtomicInvocation) -> bool:
        if fnmatch.fnmatchcase(invocation.executable, self.executable):
            return True
        if "/" in self.executable or "/" not in invocation.executable:
            return False
        if self.effect is RuleEffect.DENY:
            return fnmatch.fnmatchcase(invocation.name, self.executable)
        # An allow rule for "rm" must not cover ./rm or some other rm on disk.
        directory = posixpath.dirname(invocation.executable)
        return directory in _COMMON_BIN_DIRS and fnmatch.fnmatchcase(invocation.name, self.executable)

    def matches(self, invocation: AtomicInvocation) -> bool:
        if not self._matches_executable(invocation):
            return False
        patterns = _strip_trailing_wildcards(self.arguments)
        if not patterns:
            return True
        if self.effect is RuleEffect.DENY:
            return _is_ordered_subsequence(patterns, invocation.args)
        return _is_positional_prefix(patterns, invocation.args)


def normalize_legacy_bash_wildcard(specifier: str) -> tuple[str, bool]:
    """Convert deprecated `:*` wildcard suffix syntax to glob ` *`.

    Examples:
        "ls:*" -> "ls *"
        "git add:*" -> "git add *"
    """
    normalized = re.sub(r"(?<!/):\*", " *", specifier)
    return normalized, normalized != specifier


def parse_permission_rule(
    rule: str,
    effect: RuleEffect = RuleEffect.ALLOW,
    source: RuleSource = RuleSource.USER,
) -> Optional[PermissionRule]:
    """Parse a rule such as ``rm``, ``git push *``, ``Bash(npm run:*)``.

    Returns None for empty rules and for rules that name a non-shell tool.

    Raises:
        ValueError: if the argument patterns are not valid shell words.
    """
    text = str(rule).strip()
    match = _TOOL_WITH_SPEC_RE.match(text)
    if match:
        if match.group(1) not in _SHELL_TOOL_NAMES:
            return None
        text = match.group(2).strip()
    elif text in _SHELL_TOOL_NAMES:
        text = "*"
    if not text:
        return None

    text, _ = normalize_legacy_bash_wildcard(text)
    words = shlex.split(text)
    if not words:
        return None
    return PermissionRule(
        executable=words[0],
        arguments=tuple(words[1:]),
        effect=RuleEffect(effect),
        source=RuleSource(source),
    )


def parse_permission_rules(
    rules: Iterable[str],
    effect: RuleEffect = RuleEffect.ALLOW,
    source: RuleSource = RuleSource.USER,
) -> Tuple[PermissionRule, ...]:
    """Parse many rules, skipping the ones that do not apply to shell commands."""
    parsed = []
    for rule in rules:
        if isinstance(rule, PermissionRule):
            parsed.append(rule if rule.effect is effect else replace(rule, effect=RuleEffect(effect)))
            continue
        item = parse_permission_rule(rule, effect, source)
        if item is not None:
            parsed.append(item)
    return tuple(parsed)


def normalize_permission_rule(rule: str) -> str:
    """Return the canonical text form of a permission rule."""
    try:
        parsed = parse_permission_rule(rule)
    except ValueError:
        return str(rule).strip()
    return parsed.pattern if parsed else str(rule).strip()


def find_matching_rule(
    rules: Iterable[PermissionRule], invocation: AtomicInvocation
) -> Optional[PermissionRule]:
    for rule in rules:
        if rule.matches(invocation):
            return rule
    return None


__all__ = [
    "Decision",
    "PermissionRule",
    "RuleEffect",
    "RuleSource",
    "find_matching_rule",
    "most_severe",
    "normalize_legacy_bash_wildcard",
    "normalize_permission_rule",
    "parse_permission_rule",
    "parse_permission_rules",
]
