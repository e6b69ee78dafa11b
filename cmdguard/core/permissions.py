"""Permission callback adapter for agent runtimes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from cmdguard.core.permission_engine import AuthorizationResult, authorize
from cmdguard.core.policy import PolicyConfig
from cmdguard.core.presets import PermissionPreset
from cmdguard.utils.log import get_logger
from cmdguard.utils.permissions.rule_syntax import Decision

logger = get_logger()

SHELL_TOOL_NAMES = frozenset({"Bash", "bash", "Shell", "shell"})
READ_ONLY_TOOL_NAMES = frozenset({"Read", "Grep", "Glob", "LS"})


@dataclass
class PermissionResult:
    """Result of a permission check."""

    behavior: str  # 'allow' | 'deny' | 'ask'
    message: Optional[str] = None
    updated_input: Any = None
    decision: Optional[AuthorizationResult] = None

    @property
    def result(self) -> bool:
        return self.behavior == "allow"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"behavior": self.behavior}
        if self.message:
            payload["message"] = self.message
        if self.updated_input is not None:
            payload["updatedInput"] = self.updated_input
        return payload


def _get_attr_or_key(data: Any, field: str) -> Optional[str]:
    if isinstance(data, dict):
        value = data.get(field)
    else:
        value = getattr(data, field, None)
    return value if isinstance(value, str) else None


def check_tool_permission(
    tool_name: str,
    tool_input: Any,
    policy: PolicyConfig,
    *,
    shell_tool_names: Iterable[str] = SHELL_TOOL_NAMES,
) -> PermissionResult:
    """Decide whether an agent may use ``tool_name`` with ``tool_input``."""
    if tool_name in set(shell_tool_names):
        command = _get_attr_or_key(tool_input, "command")
        if command is None:
            logger.warning(
                "[permissions] Shell tool input has no command",
                extra={"tool": tool_name},
            )
            return PermissionResult(
                behavior=Decision.DENY.value,
                message=f"{tool_name} input does not contain a command string",
            )
        verdict = authorize(command, policy)
        return PermissionResult(
            behavior=verdict.decision.value,
            message=None if verdict.decision is Decision.ALLOW else verdict.reason,
            updated_input=tool_input if verdict.decision is Decision.ALLOW else None,
            decision=verdict,
        )

    if tool_name in READ_ONLY_TOOL_NAMES:
        return PermissionResult(behavior=Decision.ALLOW.value, updated_input=tool_input)

    if policy.preset is PermissionPreset.READONLY:
        return PermissionResult(
            behavior=Decision.ASK.value,
            message=f"Tool '{tool_name}' is not pre-approved by the readonly preset",
        )
    return PermissionResult(behavior=Decision.ALLOW.value, updated_input=tool_input)


def make_permission_checker(
    policy: PolicyConfig,
    *,
    shell_tool_names: Iterable[str] = SHELL_TOOL_NAMES,
) -> Callable[[str, Any], PermissionResult]:
    """Create a synchronous permission callback bound to ``policy``."""
    names = frozenset(shell_tool_names)

    def can_use_tool(tool_name: str, tool_input: Any) -> PermissionResult:
        result = check_tool_permission(tool_name, tool_input, policy, shell_tool_names=names)
        logger.debug(
            "[permissions] Tool permission checked",
            extra={"tool": tool_name, "behavior": result.behavior},
        )
        return result

    return can_use_tool


def make_async_permission_checker(
    policy: PolicyConfig,
    *,
    shell_tool_names: Iterable[str] = SHELL_TOOL_NAMES,
) -> Callable[[str, Any], Awaitable[PermissionResult]]:
    """Create an async permission callback; validation itself never blocks."""
    check = make_permission_checker(policy, shell_tool_names=shell_tool_names)

    async def can_use_tool(tool_name: str, tool_input: Any) -> PermissionResult:
        return check(tool_name, tool_input)

    return can_use_tool


__all__ = [
    "PermissionResult",
    "READ_ONLY_TOOL_NAMES",
    "SHELL_TOOL_NAMES",
    "check_tool_permission",
    "make_async_permission_checker",
    "make_permission_checker",
]
