"""Permission evaluation helpers."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Optional

from cmdguard.utils.permissions.destructive import (
    DestructiveCheckResult,
    check_destructive_invocation,
)
from cmdguard.utils.permissions.invocation import AtomicInvocation, Wrapper
from cmdguard.utils.permissions.rule_syntax import Decision, PermissionRule, find_matching_rule

if TYPE_CHECKING:
    from cmdguard.core.policy import PolicyConfig


_FIND_WRITE_ACTIONS = frozenset({"-delete", "-fprint", "-fprint0", "-fprintf", "-fls"})
_NON_FILE_TARGETS = frozenset({"/dev/null", "/dev/stdout", "/dev/stderr", "/dev/tty"})
PRIVILEGE_WRAPPERS = frozenset({Wrapper.SUDO, Wrapper.DOAS})


class DecisionLayer(str, Enum):
    """Which layer of the policy produced a decision."""

    GUARD = "guard"
    DENY_RULE = "deny-rule"
    ALLOW_RULE = "allow-rule"
    INFERRED_RULE = "inferred-rule"
    PRESET = "preset"
    RESIDUAL = "residual"


@dataclass(frozen=True)
class InvocationDecision:
    """Decision for a single atomic invocation."""

    invocation: AtomicInvocation
    decision: Decision
    reason: str
    layer: DecisionLayer
    rule: Optional[PermissionRule] = None


def writes_files(invocation: AtomicInvocation) -> bool:
    """Return True if the invocation writes files through redirection or find actions."""
    for redirect in invocation.redirects:
        if not redirect.is_output:
            continue
        target = redirect.target
        if redirect.operator.endswith(">&") and (target.isdigit() or target == "-"):
            continue
        if target in _NON_FILE_TARGETS or target.startswith("/dev/fd/"):
            continue
        return True
    if invocation.name == "find":
        return any(arg in _FIND_WRITE_ACTIONS for arg in invocation.args)
    return False


def guard_decision(invocation: AtomicInvocation, result: DestructiveCheckResult) -> InvocationDecision:
    return InvocationDecision(invocation, Decision.DENY, result.message, DecisionLayer.GUARD)


def _evaluate_single(invocation: AtomicInvocation, policy: "PolicyConfig") -> InvocationDecision:
    label = invocation.command_line

    if policy.builtin_guards:
        guard = check_destructive_invocation(invocation)
        if guard is not None:
            return guard_decision(invocation, guard)

    rule = find_matching_rule(policy.deny, invocation)
    if rule is not None:
        return InvocationDecision(
            invocation,
            Decision.DENY,
            f"'{label}' matches deny rule '{rule.pattern}'",
            DecisionLayer.DENY_RULE,
            rule,
        )

    rule = find_matching_rule(policy.allow, invocation)
    if rule is not None:
        return InvocationDecision(
            invocation,
            Decision.ALLOW,
            f"'{label}' matches allow rule '{rule.pattern}'",
            DecisionLayer.ALLOW_RULE,
            rule,
        )

    rule = find_matching_rule(policy.inferred, invocation)
    if rule is not None:
        return InvocationDecision(
            invocation,
            Decision.ALLOW,
            f"'{label}' matches inferred project rule '{rule.pattern}'",
            DecisionLayer.INFERRED_RULE,
            rule,
        )

    definition = policy.preset_definition
    preset_name = definition.preset.value
    rule = find_matching_rule(definition.rules, invocation)
    if rule is not None:
        if not definition.allows_file_writes and writes_files(invocation):
            return InvocationDecision(
                invocation,
                Decision.ASK,
                f"'{label}' writes to files, which the {preset_name} preset does not pre-approve",
                DecisionLayer.PRESET,
                rule,
            )
        return InvocationDecision(
            invocation,
            Decision.ALLOW,
            f"'{invocation.name}' is allowed by the {preset_name} preset",
            DecisionLayer.PRESET,
            rule,
        )

    if definition.residual is Decision.ALLOW:
        reason = f"'{invocation.name}' is allowed by default under the {preset_name} preset"
    else:
        reason = f"'{invocation.name}' is not pre-approved by the {preset_name} preset"
    return InvocationDecision(invocation, definition.residual, reason, DecisionLayer.RESIDUAL)


def evaluate_invocation(invocation: AtomicInvocation, policy: "PolicyConfig") -> InvocationDecision:
    """Evaluate one invocation against the layered policy.

    Order: built-in guards, deny rules, explicit allow rules, inferred rules,
    the preset's default-allow table, then the preset's residual decision.
    Privilege wrappers such as ``sudo`` are evaluated as commands of their own
    and the stricter of the two decisions wins.
    """
    decision = _evaluate_single(invocation, policy)
    for wrapper in invocation.wrappers:
        if decision.decision is Decision.DENY:
            break
        if wrapper not in PRIVILEGE_WRAPPERS:
            continue
        escalated = _evaluate_single(
            replace(
                invocation,
                executable=wrapper.value,
                args=(invocation.executable, *invocation.args),
                wrappers=(),
            ),
            policy,
        )
        if escalated.decision.severity > decision.decision.severity:
            decision = replace(escalated, invocation=invocation)
    return decision


__all__ = [
    "DecisionLayer",
    "InvocationDecision",
    "PRIVILEGE_WRAPPERS",
    "evaluate_invocation",
    "guard_decision",
    "writes_files",
]
