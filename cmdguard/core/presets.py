"""Permission presets and their default-allow command tables."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from cmdguard.utils.permissions.rule_syntax import (
    Decision,
    PermissionRule,
    RuleEffect,
    RuleSource,
)


class PermissionPreset(str, Enum):
    """Named permission levels."""

    READONLY = "readonly"
    DEV = "dev"
    FULL = "full"

    @classmethod
    def _missing_(cls, value: object) -> Optional["PermissionPreset"]:
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            aliases = {"read-only": cls.READONLY, "ro": cls.READONLY, "development": cls.DEV}
            if normalized in aliases:
                return aliases[normalized]
            for member in cls:
                if member.value == normalized:
                    return member
        return None


READONLY_COMMANDS: Tuple[str, ...] = (
    "ls", "cat", "head", "tail", "wc", "grep", "find", "tree", "pwd", "cd",
    "echo", "date", "which", "env", "true", "false", "test", "[", ":",
)

DEV_COMMANDS: Tuple[str, ...] = READONLY_COMMANDS + (
    # File operations
    "cp", "mv", "mkdir", "chmod", "touch", "rm",
    # Node.js
    "npm", "npx", "node", "yarn", "pnpm", "bun", "tsc", "tsx",
    # Python
    "python", "python3", "pip", "pip3", "poetry", "pytest", "mypy", "ruff", "black",
    # Build tools
    "make", "cargo", "go", "ruby", "bundle",
    "git",
    # Process management
    "ps", "lsof", "sleep", "pkill", "kill",
    # Network and text processing
    "curl", "jq", "wget", "sed", "awk", "sort", "uniq", "diff", "cut", "tr", "xargs",
    "bash", "sh",
)

FULL_COMMANDS: Tuple[str, ...] = DEV_COMMANDS + (
    "docker", "docker-compose",
    "psql", "mysql", "sqlite3", "redis-cli", "mongosh",
    "aws", "gcloud", "az",
    "kubectl", "helm",
    "sudo", "systemctl",
)


@dataclass(frozen=True)
class PresetDefinition:
    """Default-allow rules and residual behavior of a preset."""

    preset: PermissionPreset
    description: str
    commands: Tuple[str, ...]
    residual: Decision
    # Output redirection to files is not read-only even for allowed commands.
    allows_file_writes: bool = True

    @property
    def rules(self) -> Tuple[PermissionRule, ...]:
        return tuple(
            PermissionRule(executable=name, effect=RuleEffect.ALLOW, source=RuleSource.PRESET)
            for name in self.commands
        )


PRESETS: Mapping[PermissionPreset, PresetDefinition] = MappingProxyType(
    {
        PermissionPreset.READONLY: PresetDefinition(
            preset=PermissionPreset.READONLY,
            description="Inspection tools only; anything else needs confirmation.",
            commands=READONLY_COMMANDS,
            residual=Decision.ASK,
            allows_file_writes=False,
        ),
        PermissionPreset.DEV: PresetDefinition(
            preset=PermissionPreset.DEV,
            description="File operations, language toolchains, git and process tools.",
            commands=DEV_COMMANDS,
            residual=Decision.ASK,
        ),
        PermissionPreset.FULL: PresetDefinition(
            preset=PermissionPreset.FULL,
            description="Everything in dev plus containers, databases and cloud CLIs.",
            commands=FULL_COMMANDS,
            residual=Decision.ALLOW,
        ),
    }
)


def get_preset(preset: PermissionPreset | str) -> PresetDefinition:
    """Look up a preset definition by enum member or name.

    Raises:
        ValueError: if ``preset`` is not a known preset name.
    """
    return PRESETS[PermissionPreset(preset)]


__all__ = [
    "DEV_COMMANDS",
    "FULL_COMMANDS",
    "PRESETS",
    "PermissionPreset",
    "PresetDefinition",
    "READONLY_COMMANDS",
    "get_preset",
]
