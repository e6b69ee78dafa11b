"""Tests for configuration loading and session policy assembly."""

import json
from pathlib import Path

import pytest

from cmdguard.core.config import (
    PRESET_ENV_VAR,
    ConfigManager,
    GlobalConfig,
    ProjectConfig,
    ProjectLocalConfig,
    build_policy_for_project,
    resolve_preset,
)
from cmdguard.core.permission_engine import authorize
from cmdguard.core.presets import PermissionPreset
from cmdguard.utils.permissions.rule_syntax import Decision, RuleSource


@pytest.fixture
def manager(tmp_path: Path) -> ConfigManager:
    return ConfigManager(tmp_path / "home" / ".cmdguard.json")


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


def _write_project_config(project: Path, data: dict) -> None:
    config_dir = project / ".cmdguard"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "config.json").write_text(json.dumps(data))


class TestConfigManager:
    """Loading and saving the JSON configuration files."""

    def test_missing_files_give_defaults(self, manager, project):
        assert manager.get_global_config() == GlobalConfig()
        assert manager.get_project_config(project) == ProjectConfig()
        assert manager.get_project_local_config(project) == ProjectLocalConfig()

    def test_malformed_json_falls_back_to_defaults(self, manager):
        manager.global_config_path.parent.mkdir(parents=True)
        manager.global_config_path.write_text("{not json")
        assert manager.get_global_config() == GlobalConfig()

    def test_invalid_preset_falls_back_to_defaults(self, manager, project):
        _write_project_config(project, {"preset": "godmode"})
        assert manager.get_project_config(project).preset is None

    def test_single_rule_string_is_accepted(self, manager, project):
        _write_project_config(project, {"bash_allow_rules": "make build"})
        assert manager.get_project_config(project).bash_allow_rules == ["make build"]

    def test_project_config_round_trip(self, manager, project):
        config = ProjectConfig(preset=PermissionPreset.READONLY, bash_deny_rules=["curl"])
        manager.save_project_config(config, project)
        assert manager.get_project_config(project) == config

    def test_global_config_save_updates_cache(self, manager):
        manager.save_global_config(GlobalConfig(user_deny_rules=["wget"]))
        assert manager.get_global_config().user_deny_rules == ["wget"]
        assert json.loads(manager.global_config_path.read_text())["user_deny_rules"] == ["wget"]

    def test_local_config_is_gitignored(self, manager, project):
        manager.save_project_local_config(ProjectLocalConfig(local_allow_rules=["ls"]), project)
        manager.save_project_local_config(ProjectLocalConfig(local_allow_rules=["pwd"]), project)
        gitignore = (project / ".cmdguard" / ".gitignore").read_text()
        assert gitignore.splitlines() == ["config.local.json"]

    def test_yaml_policy_file(self, manager, project):
        config_dir = project / ".cmdguard"
        config_dir.mkdir()
        (config_dir / "policy.yaml").write_text("preset: readonly\nallow:\n  - make test\ndeny: curl\n")
        policy_file = manager.get_policy_file(project)
        assert policy_file.preset is PermissionPreset.READONLY
        assert policy_file.allow == ["make test"]
        assert policy_file.deny == ["curl"]

    def test_yaml_policy_that_is_not_a_mapping(self, manager, project):
        config_dir = project / ".cmdguard"
        config_dir.mkdir()
        (config_dir / "policy.yml").write_text("- just\n- a list\n")
        assert manager.get_policy_file(project).allow == []


class TestResolvePreset:
    """Preset precedence."""

    def test_explicit_argument_wins(self, monkeypatch):
        monkeypatch.setenv(PRESET_ENV_VAR, "full")
        assert (
            resolve_preset("readonly", project_preset=PermissionPreset.DEV)
            is PermissionPreset.READONLY
        )

    def test_project_narrows_environment(self, monkeypatch):
        monkeypatch.setenv(PRESET_ENV_VAR, "full")
        assert resolve_preset(project_preset=PermissionPreset.READONLY) is PermissionPreset.READONLY

    def test_project_cannot_widen_default(self):
        assert resolve_preset(project_preset=PermissionPreset.FULL) is PermissionPreset.DEV

    def test_project_cannot_widen_environment(self, monkeypatch):
        monkeypatch.setenv(PRESET_ENV_VAR, "dev")
        assert resolve_preset(project_preset=PermissionPreset.FULL) is PermissionPreset.DEV

    def test_project_cannot_widen_user_config(self):
        assert (
            resolve_preset(
                project_preset=PermissionPreset.FULL, global_preset=PermissionPreset.READONLY
            )
            is PermissionPreset.READONLY
        )

    def test_project_matching_user_preset(self):
        assert (
            resolve_preset(project_preset=PermissionPreset.FULL, global_preset=PermissionPreset.FULL)
            is PermissionPreset.FULL
        )

    def test_environment_beats_user_config(self, monkeypatch):
        monkeypatch.setenv(PRESET_ENV_VAR, "full")
        assert resolve_preset(global_preset=PermissionPreset.READONLY) is PermissionPreset.FULL

    def test_unknown_environment_value_is_ignored(self, monkeypatch):
        monkeypatch.setenv(PRESET_ENV_VAR, "nope")
        assert resolve_preset() is PermissionPreset.DEV

    def test_default_is_dev(self):
        assert resolve_preset() is PermissionPreset.DEV


class TestBuildPolicyForProject:
    """Merging every configuration layer into one policy."""

    def test_without_project(self, manager):
        policy = build_policy_for_project(manager=manager)
        assert policy.preset is PermissionPreset.DEV
        assert policy.allow == ()
        assert policy.inferred == ()

    def test_rules_from_every_layer(self, manager, project):
        manager.save_global_config(GlobalConfig(user_deny_rules=["wget"]))
        _write_project_config(project, {"bash_deny_rules": ["curl"], "bash_allow_rules": ["terraform plan"]})
        manager.save_project_local_config(ProjectLocalConfig(local_allow_rules=["aws s3 ls"]), project)

        policy = build_policy_for_project(project, extra_deny=["scp"], manager=manager)

        assert [rule.pattern for rule in policy.deny] == ["wget", "curl", "scp"]
        assert [rule.pattern for rule in policy.allow] == ["terraform plan", "aws s3 ls"]
        assert policy.deny[0].source is RuleSource.USER
        assert policy.deny[1].source is RuleSource.PROJECT
        assert authorize("terraform plan", policy).decision is Decision.ALLOW
        assert authorize("curl x", policy).decision is Decision.DENY

    def test_malformed_rules_are_skipped(self, manager, project):
        _write_project_config(project, {"bash_deny_rules": ["echo 'oops", "curl"]})
        policy = build_policy_for_project(project, manager=manager)
        assert [rule.pattern for rule in policy.deny] == ["curl"]

    def test_project_preset(self, manager, project):
        _write_project_config(project, {"preset": "readonly"})
        assert build_policy_for_project(project, manager=manager).preset is PermissionPreset.READONLY
        assert (
            build_policy_for_project(project, preset="full", manager=manager).preset
            is PermissionPreset.FULL
        )

    def test_project_preset_cannot_widen(self, manager, project):
        manager.save_global_config(GlobalConfig(default_preset=PermissionPreset.READONLY))
        _write_project_config(project, {"preset": "full"})
        policy = build_policy_for_project(project, manager=manager)
        assert policy.preset is PermissionPreset.READONLY
        assert authorize("touch x", policy).decision is Decision.ASK

    def test_user_default_preset(self, manager):
        manager.save_global_config(GlobalConfig(default_preset=PermissionPreset.FULL))
        assert build_policy_for_project(manager=manager).preset is PermissionPreset.FULL

    def test_unknown_preset_raises(self, manager):
        with pytest.raises(ValueError):
            build_policy_for_project(preset="godmode", manager=manager)

    def test_inferred_rules_from_marker_files(self, manager, project):
        (project / "package.json").write_text("{}")
        policy = build_policy_for_project(project, preset="readonly", manager=manager)
        assert authorize("npm test", policy).decision is Decision.ALLOW
        assert authorize("cargo build", policy).decision is Decision.ASK

    def test_inferred_rules_from_plan_files(self, manager, project):
        (project / "PLAN.md").write_text("We will deploy this to Kubernetes.\n")
        _write_project_config(project, {"plan_files": ["PLAN.md", "MISSING.md"]})
        policy = build_policy_for_project(project, preset="dev", manager=manager)
        assert authorize("kubectl get pods", policy).decision is Decision.ALLOW

    def test_plan_text_argument(self, manager):
        policy = build_policy_for_project(plan_text="Set up Redis", manager=manager)
        assert [rule.pattern for rule in policy.inferred] == ["redis-cli"]

    def test_inference_can_be_disabled(self, manager, project):
        (project / "package.json").write_text("{}")
        _write_project_config(project, {"infer_rules": False})
        assert build_policy_for_project(project, manager=manager).inferred == ()

    def test_builtin_guards_setting(self, manager):
        manager.save_global_config(GlobalConfig(builtin_guards=False))
        assert build_policy_for_project(manager=manager).builtin_guards is False
