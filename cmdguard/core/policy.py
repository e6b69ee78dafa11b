"""Immutable permission policy shared by every validation in a session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple, Union

from cmdguard.core.presets import PermissionPreset, PresetDefinition, get_preset
from cmdguard.utils.permissions.rule_syntax import (
    PermissionRule,
    RuleEffect,
    RuleSource,
    parse_permission_rules,
)

RuleLike = Union[str, PermissionRule]


@dataclass(frozen=True)
class PolicyConfig:
    """Preset plus ordered rule lists.

    Built once per session and never mutated; safe to share between threads.
    """

    preset: PermissionPreset = PermissionPreset.DEV
    inferred: Tuple[PermissionRule, ...] = ()
    allow: Tuple[PermissionRule, ...] = ()
    deny: Tuple[PermissionRule, ...] = ()
    builtin_guards: bool = True

    @property
    def preset_definition(self) -> PresetDefinition:
        return get_preset(self.preset)


def build_policy(
    preset: PermissionPreset | str = PermissionPreset.DEV,
    *,
    allow: Iterable[RuleLike] = (),
    deny: Iterable[RuleLike] = (),
    inferred: Iterable[RuleLike] = (),
    builtin_guards: bool = True,
    source: RuleSource = RuleSource.USER,
) -> PolicyConfig:
    """Build a :class:`PolicyConfig` from rule strings or parsed rules.

    Raises:
        ValueError: for an unknown preset name or a rule that is not valid
            shell syntax.
    """
    return PolicyConfig(
        preset=PermissionPreset(preset),
        inferred=parse_permission_rules(inferred, RuleEffect.ALLOW, RuleSource.INFERRED),
        allow=parse_permission_rules(allow, RuleEffect.ALLOW, source),
        deny=parse_permission_rules(deny, RuleEffect.DENY, source),
        builtin_guards=builtin_guards,
    )


__all__ = ["PolicyConfig", "RuleLike", "build_policy"]
