"""Authorization of complete shell command strings.

``authorize`` runs the whole pipeline (tokenize, segment, discover nested
commands, extract invocations, evaluate) and folds the per-invocation
decisions into one verdict. It never raises: parse failures and any other
error raised while validating become DENY.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from cmdguard.core.policy import PolicyConfig
from cmdguard.utils.log import get_logger
from cmdguard.utils.permissions.destructive import check_pipe_to_shell
from cmdguard.utils.permissions.errors import ShellParseError, UnbalancedSubstitutionError
from cmdguard.utils.permissions.interpreter import inline_script_children
from cmdguard.utils.permissions.invocation import AtomicInvocation, extract_invocations
from cmdguard.utils.permissions.rule_syntax import Decision, most_severe
from cmdguard.utils.permissions.segmentation import (
    MAX_NESTING_DEPTH,
    CommandSegment,
    SegmentOrigin,
    collect_segments,
)
from cmdguard.utils.permissions.tool_permission_utils import (
    InvocationDecision,
    evaluate_invocation,
    guard_decision,
)
from cmdguard.utils.shell_token_utils import Operator

logger = get_logger()

INTERNAL_ERROR_KIND = "internal_error"

_ORIGIN_LABELS = {
    SegmentOrigin.SUBSTITUTION: "command substitution",
    SegmentOrigin.SUBSHELL: "subshell",
    SegmentOrigin.INLINE_SCRIPT: "inline script",
}


@dataclass(frozen=True)
class AuthorizationResult:
    """Verdict for a command string."""

    decision: Decision
    reason: str
    decisions: Tuple[InvocationDecision, ...] = ()
    segments: Tuple[CommandSegment, ...] = ()
    error_kind: Optional[str] = None

    @property
    def invocations(self) -> Tuple[AtomicInvocation, ...]:
        return tuple(item.invocation for item in self.decisions)

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "error": self.error_kind,
            "invocations": [
                {
                    "command": item.invocation.command_line,
                    "executable": item.invocation.executable,
                    "origin": item.invocation.source_segment.origin.value,
                    "decision": item.decision.value,
                    "layer": item.layer.value,
                    "reason": item.reason,
                }
                for item in self.decisions
            ],
        }


def collect_invocations(
    command: str,
) -> Tuple[List[CommandSegment], List[Tuple[AtomicInvocation, Optional[AtomicInvocation]]]]:
    """Return every segment and every invocation in ``command``.

    Each invocation is paired with the invocation feeding it through a pipe,
    if any. Top-level invocations come first, then nested ones level by level.

    Raises:
        ShellParseError: if the command cannot be parsed.
    """
    segments = collect_segments(command, extra_children=inline_script_children)
    primary: Dict[int, AtomicInvocation] = {}
    pairs: List[Tuple[AtomicInvocation, Optional[AtomicInvocation]]] = []
    for segment in segments:
        invocations = extract_invocations(segment)
        if not invocations:
            continue
        primary[segment.id] = invocations[0]
        upstream = None
        if segment.leading_operator is Operator.PIPE:
            upstream = primary.get(segment.id - 1)
        pairs.append((invocations[0], upstream))
        pairs.extend((nested, None) for nested in invocations[1:])
    return segments, pairs


def _attribute(item: InvocationDecision, segments: List[CommandSegment]) -> str:
    segment = item.invocation.source_segment
    if segment.parent_id is None:
        return item.reason
    parent = segments[segment.parent_id]
    label = _ORIGIN_LABELS.get(segment.origin, segment.origin.value)
    return f"{item.reason} (in {label} of '{parent.text}')"


def _summarize(decision: Decision, decisions: List[InvocationDecision], segments: List[CommandSegment]) -> str:
    if not decisions:
        return "No commands to run"
    if decision is Decision.ALLOW and len(decisions) > 1:
        return f"All {len(decisions)} commands are allowed"
    first = next(item for item in decisions if item.decision is decision)
    return _attribute(first, segments)


def _parse_failure(exc: ShellParseError) -> AuthorizationResult:
    logger.info(
        "[permissions] Rejected unparseable command",
        extra={"error": exc.kind, "detail": str(exc)},
    )
    return AuthorizationResult(
        Decision.DENY,
        f"Could not parse command: {exc}",
        error_kind=exc.kind,
    )


def authorize(command: str, policy: PolicyConfig) -> AuthorizationResult:
    """Decide whether ``command`` may run under ``policy``."""
    if not command or not command.strip():
        return AuthorizationResult(Decision.ALLOW, "Empty command")

    try:
        segments, pairs = collect_invocations(command)
        decisions: List[InvocationDecision] = []
        for invocation, upstream in pairs:
            piped = check_pipe_to_shell(invocation, upstream) if policy.builtin_guards else None
            if piped is not None:
                decisions.append(guard_decision(invocation, piped))
            else:
                decisions.append(evaluate_invocation(invocation, policy))
    except RecursionError:
        return _parse_failure(
            UnbalancedSubstitutionError(
                f"Command nesting exceeds the maximum depth of {MAX_NESTING_DEPTH}"
            )
        )
    except ShellParseError as exc:
        return _parse_failure(exc)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "[permissions] Validator failed; denying command",
            extra={"error": type(exc).__name__, "detail": str(exc)},
        )
        return AuthorizationResult(
            Decision.DENY,
            f"Command could not be validated: {type(exc).__name__}: {exc}",
            error_kind=INTERNAL_ERROR_KIND,
        )

    decision = most_severe(item.decision for item in decisions)
    reason = _summarize(decision, decisions, segments)
    logger.debug(
        f"[permissions] {decision.value}: {reason}",
        extra={"preset": policy.preset.value, "invocations": len(decisions)},
    )
    return AuthorizationResult(
        decision=decision,
        reason=reason,
        decisions=tuple(decisions),
        segments=tuple(segments),
    )


__all__ = ["INTERNAL_ERROR_KIND", "AuthorizationResult", "authorize", "collect_invocations"]
