"""Tests for inferring allowed commands from project files and plans."""

from cmdguard.core.project_inference import (
    infer_commands,
    infer_commands_from_text,
    infer_project_rules,
    infer_rules,
)
from cmdguard.utils.permissions.rule_syntax import RuleSource


def test_marker_files(tmp_path):
    (tmp_path / "go.mod").write_text("module x\n")
    (tmp_path / "Makefile").write_text("all:\n")
    assert infer_commands(tmp_path) == ["go", "make"]


def test_node_project(tmp_path):
    (tmp_path / "package.json").write_text("{}")
    commands = infer_commands(tmp_path)
    assert commands[:3] == ["npm", "npx", "node"]


def test_python_markers_are_deduplicated(tmp_path):
    (tmp_path / "pyproject.toml").write_text("")
    (tmp_path / "requirements.txt").write_text("")
    commands = infer_commands(tmp_path)
    assert commands.count("pytest") == 1
    assert "poetry" in commands


def test_empty_project(tmp_path):
    assert infer_commands(tmp_path) == []


def test_plan_keywords():
    commands = infer_commands_from_text("Use Docker and Postgres, then deploy to AWS.")
    assert commands == ["docker", "docker-compose", "psql", "aws"]


def test_plan_keywords_match_whole_words():
    assert infer_commands_from_text("Update the laws section and s3cret handling") == []
    assert infer_commands_from_text("Upload build artifacts to S3.") == ["aws"]


def test_inferred_rules_are_marked(tmp_path):
    (tmp_path / "Cargo.toml").write_text("")
    rules = infer_rules(tmp_path)
    assert [rule.pattern for rule in rules] == ["cargo"]
    assert rules[0].source is RuleSource.INFERRED


def test_combined_inference(tmp_path):
    (tmp_path / "Dockerfile").write_text("FROM scratch\n")
    rules = infer_project_rules(tmp_path, "Run the container on kubernetes")
    assert [rule.pattern for rule in rules] == ["docker", "docker-compose", "kubectl", "helm"]


def test_no_inputs():
    assert infer_project_rules() == ()
