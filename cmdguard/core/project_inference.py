"""Infer extra allowed commands from project files and plan text.

Inference runs once when a session's policy is built. The resulting rules are
a snapshot: later changes to the project are not picked up.
"""

from __future__ import annotations

import re
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple

from cmdguard.utils.log import get_logger
from cmdguard.utils.permissions.rule_syntax import (
    PermissionRule,
    RuleEffect,
    RuleSource,
)

logger = get_logger()

_PYTHON_COMMANDS = ("python", "python3", "pip", "pip3", "pytest", "mypy", "ruff", "black")

# Marker file -> commands that become available when it exists.
MARKER_COMMANDS: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {
        "package.json": ("npm", "npx", "node", "yarn", "pnpm"),
        "bun.lockb": ("bun",),
        "bun.lock": ("bun",),
        "tsconfig.json": ("tsc", "tsx"),
        "go.mod": ("go",),
        "Cargo.toml": ("cargo",),
        "pyproject.toml": _PYTHON_COMMANDS + ("poetry",),
        "setup.py": _PYTHON_COMMANDS,
        "pytest.ini": _PYTHON_COMMANDS,
        "tox.ini": _PYTHON_COMMANDS + ("tox",),
        "requirements.txt": _PYTHON_COMMANDS,
        "Makefile": ("make",),
        "Gemfile": ("bundle", "ruby"),
        "Dockerfile": ("docker",),
        "docker-compose.yml": ("docker", "docker-compose"),
        "docker-compose.yaml": ("docker", "docker-compose"),
        "compose.yaml": ("docker", "docker-compose"),
    }
)

# Plan keyword -> commands the plan is likely to need.
KEYWORD_COMMANDS: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {
        "docker": ("docker", "docker-compose"),
        "container": ("docker", "docker-compose"),
        "dockerfile": ("docker", "docker-compose"),
        "database": ("psql", "mysql", "sqlite3"),
        "postgres": ("psql",),
        "postgresql": ("psql",),
        "mysql": ("mysql",),
        "sqlite": ("sqlite3",),
        "redis": ("redis-cli",),
        "mongo": ("mongosh",),
        "mongodb": ("mongosh",),
        "aws": ("aws",),
        "s3": ("aws",),
        "lambda": ("aws",),
        "gcloud": ("gcloud",),
        "gcp": ("gcloud",),
        "azure": ("az",),
        "kubernetes": ("kubectl", "helm"),
        "k8s": ("kubectl", "helm"),
        "kubectl": ("kubectl",),
        "helm": ("helm",),
    }
)


def _dedupe_preserve_order(items: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def infer_commands(project_path: Path) -> List[str]:
    """Return commands implied by marker files in ``project_path``."""
    commands: List[str] = []
    for marker, marker_commands in MARKER_COMMANDS.items():
        try:
            present = (project_path / marker).exists()
        except OSError as exc:
            logger.warning(
                "[inference] Failed to check project marker",
                extra={"marker": marker, "error": str(exc)},
            )
            continue
        if present:
            commands.extend(marker_commands)
    return _dedupe_preserve_order(commands)


def infer_commands_from_text(text: str) -> List[str]:
    """Return commands implied by keywords in free-form plan text."""
    lowered = text.lower()
    commands: List[str] = []
    for keyword, keyword_commands in KEYWORD_COMMANDS.items():
        if re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z0-9])", lowered):
            commands.extend(keyword_commands)
    return _dedupe_preserve_order(commands)


def _as_rules(commands: Iterable[str]) -> Tuple[PermissionRule, ...]:
    return tuple(
        PermissionRule(executable=name, effect=RuleEffect.ALLOW, source=RuleSource.INFERRED)
        for name in commands
    )


def infer_rules(project_path: Path) -> Tuple[PermissionRule, ...]:
    """Inferred allow rules for the project's detected tooling."""
    commands = infer_commands(project_path)
    logger.debug(
        "[inference] Inferred commands from project files",
        extra={"project_path": str(project_path), "commands": commands},
    )
    return _as_rules(commands)


def infer_rules_from_text(text: str) -> Tuple[PermissionRule, ...]:
    """Inferred allow rules for the tools a plan mentions."""
    commands = infer_commands_from_text(text)
    logger.debug("[inference] Inferred commands from plan text", extra={"commands": commands})
    return _as_rules(commands)


def infer_project_rules(
    project_path: Optional[Path] = None, plan_text: Optional[str] = None
) -> Tuple[PermissionRule, ...]:
    """Combine file-based and text-based inference, without duplicates."""
    commands: List[str] = []
    if project_path is not None:
        commands.extend(infer_commands(project_path))
    if plan_text:
        commands.extend(infer_commands_from_text(plan_text))
    return _as_rules(_dedupe_preserve_order(commands))


__all__ = [
    "KEYWORD_COMMANDS",
    "MARKER_COMMANDS",
    "infer_commands",
    "infer_commands_from_text",
    "infer_project_rules",
    "infer_rules",
    "infer_rules_from_text",
]
