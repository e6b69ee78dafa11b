"""Tests for the cmdguard command-line interface."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from rich.console import Console

from cmdguard import __version__
from cmdguard.cli import cli as cli_module
from cmdguard.cli.cli import cli


@pytest.fixture
def console(monkeypatch) -> Console:
    recorded = Console(record=True, width=160)
    monkeypatch.setattr(cli_module, "console", recorded)
    return recorded


@pytest.fixture
def run(tmp_path: Path):
    runner = CliRunner()
    config_path = tmp_path / "user.json"

    def invoke(*args: str, input: str = None):
        return runner.invoke(cli, ["--config", str(config_path), *args], input=input)

    return invoke


def test_version(run):
    result = run("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


class TestCheckCommand:
    """Exit codes and output of `cmdguard check`."""

    def test_allowed(self, run, console):
        result = run("check", "git status", "--preset", "dev")
        assert result.exit_code == 0
        assert "ALLOW" in console.export_text()

    def test_denied(self, run, console):
        result = run("check", "rm -rf /")
        assert result.exit_code == 1
        assert "DENY" in console.export_text()

    def test_ask(self, run):
        assert run("check", "touch x", "--preset", "readonly").exit_code == 2

    def test_extra_rules(self, run):
        assert run("check", "terraform plan", "--allow", "terraform plan").exit_code == 0
        assert run("check", "git push", "--deny", "git push").exit_code == 1

    def test_json_output(self, run):
        result = run("check", "echo $(curl x)", "--deny", "curl", "--json")
        assert result.exit_code == 1
        payload = json.loads(result.output)
        assert payload["decision"] == "deny"
        assert [item["executable"] for item in payload["invocations"]] == ["echo", "curl"]

    def test_parse_error(self, run):
        result = run("check", 'echo "oops', "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"] == "unterminated_quote"

    def test_project_inference(self, run, tmp_path):
        project = tmp_path / "app"
        project.mkdir()
        (project / "Cargo.toml").write_text("")
        result = run("check", "cargo test", "--preset", "readonly", "--project", str(project))
        assert result.exit_code == 0

    def test_unknown_preset_is_a_usage_error(self, run):
        assert run("check", "ls", "--preset", "godmode").exit_code == 2

    def test_user_config_rules_apply(self, run, tmp_path):
        (tmp_path / "user.json").write_text(json.dumps({"user_deny_rules": ["make"]}))
        assert run("check", "make build").exit_code == 1


class TestExplainAndPresets:
    """Human-readable output."""

    def test_explain_lists_invocations(self, run, console):
        result = run("explain", "ls && bash -c 'rm -rf /'")
        assert result.exit_code == 0
        text = console.export_text()
        assert "inline-script" in text
        assert "guard" in text
        assert "Verdict: DENY" in text

    def test_explain_parse_error(self, run, console):
        run("explain", "a ;; b")
        assert "Could not parse command" in console.export_text()

    def test_presets(self, run, console):
        assert run("presets").exit_code == 0
        text = console.export_text()
        for name in ("readonly", "dev", "full"):
            assert name in text


class TestHookCommand:
    """Pre-tool-use hook protocol."""

    def _decision(self, result):
        assert result.exit_code == 0
        return json.loads(result.output)["hookSpecificOutput"]

    def test_denied_shell_command(self, run, tmp_path):
        payload = {"tool_name": "Bash", "tool_input": {"command": "rm -rf /"}, "cwd": str(tmp_path)}
        output = self._decision(run("hook", input=json.dumps(payload)))
        assert output["hookEventName"] == "PreToolUse"
        assert output["permissionDecision"] == "deny"
        assert "rm" in output["permissionDecisionReason"]

    def test_allowed_shell_command(self, run):
        payload = {"tool_name": "Bash", "tool_input": {"command": "ls -la"}}
        output = self._decision(run("hook", input=json.dumps(payload)))
        assert output["permissionDecision"] == "allow"
        assert "permissionDecisionReason" not in output

    def test_project_config_from_cwd(self, run, tmp_path):
        config_dir = tmp_path / ".cmdguard"
        config_dir.mkdir()
        (config_dir / "config.json").write_text(json.dumps({"bash_deny_rules": ["ls"]}))
        payload = {"tool_name": "Bash", "tool_input": {"command": "ls"}, "cwd": str(tmp_path)}
        assert self._decision(run("hook", input=json.dumps(payload)))["permissionDecision"] == "deny"

    def test_non_shell_tool(self, run):
        payload = {"tool_name": "Write", "tool_input": {"file_path": "x"}}
        output = self._decision(run("hook", "--preset", "readonly", input=json.dumps(payload)))
        assert output["permissionDecision"] == "ask"

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"tool_input": {}}'])
    def test_malformed_payload_is_denied(self, run, raw):
        output = self._decision(run("hook", input=raw))
        assert output["permissionDecision"] == "deny"
        assert output["permissionDecisionReason"].startswith("Malformed hook payload")


class TestRulesCommands:
    """Editing stored rules."""

    def test_add_list_remove_project_rule(self, run, console, tmp_path):
        project = str(tmp_path)
        result = run("rules", "add", "git push --force", "--deny", "--project", project)
        assert result.exit_code == 0

        stored = json.loads((tmp_path / ".cmdguard" / "config.json").read_text())
        assert stored["bash_deny_rules"] == ["git push --force"]

        run("rules", "list", "--project", project)
        assert "git push --force" in console.export_text()

        assert run("check", "git push origin --force", "--project", project).exit_code == 1

        result = run("rules", "remove", "git push --force", "--deny", "--project", project)
        assert result.exit_code == 0
        stored = json.loads((tmp_path / ".cmdguard" / "config.json").read_text())
        assert stored["bash_deny_rules"] == []

    def test_add_user_rule(self, run, tmp_path):
        result = run("rules", "add", "terraform plan", "--scope", "user", "--project", str(tmp_path))
        assert result.exit_code == 0
        stored = json.loads((tmp_path / "user.json").read_text())
        assert stored["user_allow_rules"] == ["terraform plan"]

    def test_add_local_rule(self, run, tmp_path):
        result = run("rules", "add", "make", "--scope", "local", "--project", str(tmp_path))
        assert result.exit_code == 0
        assert (tmp_path / ".cmdguard" / "config.local.json").exists()
        assert "config.local.json" in (tmp_path / ".cmdguard" / ".gitignore").read_text()

    def test_duplicate_rule_is_not_added_twice(self, run, tmp_path):
        run("rules", "add", "make", "--project", str(tmp_path))
        run("rules", "add", "make", "--project", str(tmp_path))
        stored = json.loads((tmp_path / ".cmdguard" / "config.json").read_text())
        assert stored["bash_allow_rules"] == ["make"]

    def test_rejects_non_shell_rule(self, run, tmp_path):
        result = run("rules", "add", "Read(./.env)", "--project", str(tmp_path))
        assert result.exit_code == 1
        assert "not a shell command rule" in result.output

    def test_rejects_malformed_rule(self, run, tmp_path):
        result = run("rules", "add", "echo 'oops", "--project", str(tmp_path))
        assert result.exit_code == 1
        assert "Invalid rule" in result.output

    def test_remove_missing_rule(self, run, tmp_path):
        result = run("rules", "remove", "nope", "--project", str(tmp_path))
        assert result.exit_code == 1
        assert "Rule not found" in result.output
