"""Configuration management for cmdguard.

This module handles user-level and project-specific configuration: the
default preset, stored allow/deny rule lists, and how a session policy is
assembled from them.
"""

import json
import os
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from cmdguard.core.policy import PolicyConfig
from cmdguard.core.presets import PermissionPreset
from cmdguard.core.project_inference import infer_project_rules
from cmdguard.utils.log import get_logger
from cmdguard.utils.permissions.rule_syntax import (
    PermissionRule,
    RuleEffect,
    RuleSource,
    parse_permission_rule,
)


logger = get_logger()

PRESET_ENV_VAR = "CMDGUARD_PRESET"
CONFIG_DIR_NAME = ".cmdguard"

_LOAD_ERRORS = (
    json.JSONDecodeError,
    yaml.YAMLError,
    OSError,
    UnicodeDecodeError,
    ValidationError,
    ValueError,
    TypeError,
)


def _normalize_rule_list(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


class GlobalConfig(BaseModel):
    """User configuration stored in ~/.cmdguard.json"""

    default_preset: Optional[PermissionPreset] = None
    # User-level permission rules (applied to every project)
    user_allow_rules: list[str] = Field(default_factory=list)
    user_deny_rules: list[str] = Field(default_factory=list)
    builtin_guards: bool = True

    @field_validator("user_allow_rules", "user_deny_rules", mode="before")
    @classmethod
    def _coerce_rules(cls, value: Any) -> Any:
        return _normalize_rule_list(value)


class ProjectConfig(BaseModel):
    """Project-specific configuration stored in .cmdguard/config.json"""

    preset: Optional[PermissionPreset] = None
    # Shell permissions (project level - checked into git)
    bash_allow_rules: list[str] = Field(default_factory=list)
    bash_deny_rules: list[str] = Field(default_factory=list)
    # Inference from marker files and plan documents
    infer_rules: bool = True
    plan_files: list[str] = Field(default_factory=list)

    @field_validator("bash_allow_rules", "bash_deny_rules", mode="before")
    @classmethod
    def _coerce_rules(cls, value: Any) -> Any:
        return _normalize_rule_list(value)


class ProjectLocalConfig(BaseModel):
    """Project-local configuration stored in .cmdguard/config.local.json (not checked into git)"""

    local_allow_rules: list[str] = Field(default_factory=list)
    local_deny_rules: list[str] = Field(default_factory=list)


class PolicyFile(BaseModel):
    """Optional YAML policy stored in .cmdguard/policy.yaml"""

    preset: Optional[PermissionPreset] = None
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)

    @field_validator("allow", "deny", mode="before")
    @classmethod
    def _coerce_rules(cls, value: Any) -> Any:
        return _normalize_rule_list(value)


class ConfigManager:
    """Manages user and project-specific configuration."""

    def __init__(self, global_config_path: Optional[Path] = None) -> None:
        self.global_config_path = global_config_path or Path.home() / ".cmdguard.json"
        self._global_config: Optional[GlobalConfig] = None

    @staticmethod
    def project_config_dir(project_path: Path) -> Path:
        return project_path / CONFIG_DIR_NAME

    def _load_json_model(self, path: Path, model: type, label: str) -> Any:
        if not path.exists():
            logger.debug(
                f"[config] {label} not found; using defaults",
                extra={"path": str(path)},
            )
            return model()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            loaded = model(**data)
            logger.debug(f"[config] Loaded {label}", extra={"path": str(path)})
            return loaded
        except _LOAD_ERRORS as e:
            logger.warning(
                "Error loading %s: %s: %s",
                label,
                type(e).__name__,
                e,
                extra={"error": str(e), "path": str(path)},
            )
            return model()

    def _save_json_model(self, path: Path, config: BaseModel, label: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(config.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        logger.debug(f"[config] Saved {label}", extra={"path": str(path)})

    def get_global_config(self) -> GlobalConfig:
        """Load and return user configuration."""
        if self._global_config is None:
            self._global_config = self._load_json_model(
                self.global_config_path, GlobalConfig, "global config"
            )
        return self._global_config

    def save_global_config(self, config: GlobalConfig) -> None:
        """Save user configuration."""
        self._global_config = config
        self._save_json_model(self.global_config_path, config, "global config")

    def get_project_config(self, project_path: Path) -> ProjectConfig:
        """Load and return project configuration."""
        path = self.project_config_dir(project_path) / "config.json"
        return self._load_json_model(path, ProjectConfig, "project config")

    def save_project_config(self, config: ProjectConfig, project_path: Path) -> None:
        """Save project configuration."""
        path = self.project_config_dir(project_path) / "config.json"
        self._save_json_model(path, config, "project config")

    def get_project_local_config(self, project_path: Path) -> ProjectLocalConfig:
        """Load and return project-local configuration (not checked into git)."""
        path = self.project_config_dir(project_path) / "config.local.json"
        return self._load_json_model(path, ProjectLocalConfig, "project-local config")

    def save_project_local_config(self, config: ProjectLocalConfig, project_path: Path) -> None:
        """Save project-local configuration."""
        path = self.project_config_dir(project_path) / "config.local.json"
        self._save_json_model(path, config, "project-local config")
        self._ensure_gitignore_entry(project_path, "config.local.json")

    def get_policy_file(self, project_path: Path) -> PolicyFile:
        """Load the optional YAML policy file of a project."""
        config_dir = self.project_config_dir(project_path)
        for name in ("policy.yaml", "policy.yml"):
            path = config_dir / name
            if not path.exists():
                continue
            try:
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if not isinstance(data, dict):
                    raise TypeError(f"expected a mapping, got {type(data).__name__}")
                return PolicyFile(**data)
            except _LOAD_ERRORS as e:
                logger.warning(
                    "Error loading policy file: %s: %s",
                    type(e).__name__,
                    e,
                    extra={"error": str(e), "path": str(path)},
                )
                return PolicyFile()
        return PolicyFile()

    def _ensure_gitignore_entry(self, project_path: Path, entry: str) -> bool:
        """Ensure an entry exists in .cmdguard/.gitignore. Returns True if added."""
        gitignore_path = self.project_config_dir(project_path) / ".gitignore"
        try:
            text = ""
            if gitignore_path.exists():
                text = gitignore_path.read_text(encoding="utf-8", errors="ignore")
                if entry in text.splitlines():
                    return False
            with gitignore_path.open("a", encoding="utf-8") as f:
                if text and not text.endswith("\n"):
                    f.write("\n")
                f.write(f"{entry}\n")
            return True
        except OSError:
            return False

    def read_plan_text(self, project_path: Path, plan_files: Iterable[str]) -> str:
        """Concatenate the plan documents listed in the project config."""
        chunks: List[str] = []
        for name in plan_files:
            path = project_path / name
            try:
                chunks.append(path.read_text(encoding="utf-8", errors="ignore"))
            except OSError as e:
                logger.warning(
                    "[config] Failed to read plan file",
                    extra={"error": str(e), "path": str(path)},
                )
        return "\n".join(chunks)


config_manager = ConfigManager()


# Narrowest first.
_PRESET_ORDER = (PermissionPreset.READONLY, PermissionPreset.DEV, PermissionPreset.FULL)


def _env_preset() -> Optional[PermissionPreset]:
    value = os.getenv(PRESET_ENV_VAR)
    if not value:
        return None
    try:
        return PermissionPreset(value)
    except ValueError:
        logger.warning(
            "[config] Ignoring unknown preset in environment",
            extra={"env": PRESET_ENV_VAR, "value": value},
        )
        return None


def resolve_preset(
    preset: Optional[PermissionPreset | str] = None,
    *,
    project_preset: Optional[PermissionPreset] = None,
    global_preset: Optional[PermissionPreset] = None,
) -> PermissionPreset:
    """Pick the session preset.

    An explicit argument wins. Otherwise the environment, the user config and
    finally ``dev`` give the user's preset, and a project preset may only
    narrow it.
    """
    if preset is not None:
        return PermissionPreset(preset)
    user_preset = _env_preset() or global_preset or PermissionPreset.DEV
    if project_preset is None or project_preset is user_preset:
        return user_preset
    if _PRESET_ORDER.index(project_preset) < _PRESET_ORDER.index(user_preset):
        return project_preset
    logger.warning(
        "[config] Ignoring project preset wider than the user's preset",
        extra={"project_preset": project_preset.value, "preset": user_preset.value},
    )
    return user_preset


def _parse_rules(
    rules: Iterable[Any], effect: RuleEffect, source: RuleSource
) -> Tuple[PermissionRule, ...]:
    parsed: List[PermissionRule] = []
    for rule in rules:
        if isinstance(rule, PermissionRule):
            parsed.append(rule)
            continue
        try:
            item = parse_permission_rule(rule, effect, source)
        except ValueError as e:
            logger.warning(
                "[config] Skipping malformed permission rule",
                extra={"rule": str(rule), "error": str(e)},
            )
            continue
        if item is not None:
            parsed.append(item)
    return tuple(parsed)


def build_policy_for_project(
    project_path: Optional[Path] = None,
    preset: Optional[PermissionPreset | str] = None,
    extra_allow: Iterable[str] = (),
    extra_deny: Iterable[str] = (),
    plan_text: Optional[str] = None,
    *,
    manager: Optional[ConfigManager] = None,
) -> PolicyConfig:
    """Assemble the session policy for ``project_path``.

    Allow and deny lists are merged from the user config, the project config,
    the project-local config, the optional YAML policy file and the
    ``extra_*`` arguments, in that order.

    Raises:
        ValueError: if ``preset`` is not a known preset name.
    """
    manager = manager or config_manager
    global_config = manager.get_global_config()

    allow: List[Any] = list(global_config.user_allow_rules)
    deny: List[Any] = list(global_config.user_deny_rules)
    project_allow: List[Any] = []
    project_deny: List[Any] = []
    project_preset: Optional[PermissionPreset] = None
    inferred: Tuple[PermissionRule, ...] = ()

    if project_path is not None:
        project_path = project_path.resolve()
        project_config = manager.get_project_config(project_path)
        local_config = manager.get_project_local_config(project_path)
        policy_file = manager.get_policy_file(project_path)

        project_preset = project_config.preset or policy_file.preset
        project_allow = [
            *project_config.bash_allow_rules,
            *local_config.local_allow_rules,
            *policy_file.allow,
        ]
        project_deny = [
            *project_config.bash_deny_rules,
            *local_config.local_deny_rules,
            *policy_file.deny,
        ]
        if project_config.infer_rules:
            texts = [manager.read_plan_text(project_path, project_config.plan_files)]
            if plan_text:
                texts.append(plan_text)
            inferred = infer_project_rules(project_path, "\n".join(t for t in texts if t))
    elif plan_text:
        inferred = infer_project_rules(None, plan_text)

    policy = PolicyConfig(
        preset=resolve_preset(
            preset, project_preset=project_preset, global_preset=global_config.default_preset
        ),
        inferred=inferred,
        allow=_parse_rules(allow, RuleEffect.ALLOW, RuleSource.USER)
        + _parse_rules(project_allow, RuleEffect.ALLOW, RuleSource.PROJECT)
        + _parse_rules(extra_allow, RuleEffect.ALLOW, RuleSource.USER),
        deny=_parse_rules(deny, RuleEffect.DENY, RuleSource.USER)
        + _parse_rules(project_deny, RuleEffect.DENY, RuleSource.PROJECT)
        + _parse_rules(extra_deny, RuleEffect.DENY, RuleSource.USER),
        builtin_guards=global_config.builtin_guards,
    )
    logger.debug(
        "[config] Built session policy",
        extra={
            "preset": policy.preset.value,
            "allow": len(policy.allow),
            "deny": len(policy.deny),
            "inferred": len(policy.inferred),
        },
    )
    return policy


def get_global_config() -> GlobalConfig:
    """Get user configuration."""
    return config_manager.get_global_config()


def save_global_config(config: GlobalConfig) -> None:
    """Save user configuration."""
    config_manager.save_global_config(config)


def get_project_config(project_path: Path) -> ProjectConfig:
    """Get project configuration."""
    return config_manager.get_project_config(project_path)


def save_project_config(config: ProjectConfig, project_path: Path) -> None:
    """Save project configuration."""
    config_manager.save_project_config(config, project_path)


def get_project_local_config(project_path: Path) -> ProjectLocalConfig:
    """Get project-local configuration (not checked into git)."""
    return config_manager.get_project_local_config(project_path)


def save_project_local_config(config: ProjectLocalConfig, project_path: Path) -> None:
    """Save project-local configuration."""
    config_manager.save_project_local_config(config, project_path)
