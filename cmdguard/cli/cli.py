"""Main CLI entry point for cmdguard.

This module provides the command-line interface for checking shell commands,
explaining verdicts, running as a pre-tool-use hook and editing stored rules.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cmdguard import __version__
from cmdguard.core.config import (
    ConfigManager,
    GlobalConfig,
    ProjectConfig,
    ProjectLocalConfig,
    build_policy_for_project,
    config_manager,
)
from cmdguard.core.permission_engine import AuthorizationResult, authorize
from cmdguard.core.permissions import check_tool_permission
from cmdguard.core.policy import PolicyConfig
from cmdguard.core.presets import PRESETS, PermissionPreset
from cmdguard.utils.log import enable_file_logging, get_logger
from cmdguard.utils.permissions.rule_syntax import Decision, parse_permission_rule

console = Console()
logger = get_logger()

EXIT_CODES = {Decision.ALLOW: 0, Decision.DENY: 1, Decision.ASK: 2}
_DECISION_STYLES = {Decision.ALLOW: "green", Decision.ASK: "yellow", Decision.DENY: "red"}
_PRESET_CHOICE = click.Choice([preset.value for preset in PermissionPreset], case_sensitive=False)
_SCOPES = ("user", "project", "local")


def _manager(ctx: click.Context) -> ConfigManager:
    return ctx.obj.get("manager") or config_manager


def _styled(decision: Decision) -> str:
    style = _DECISION_STYLES[decision]
    return f"[{style}]{decision.value.upper()}[/{style}]"


def _build_policy(
    ctx: click.Context,
    preset: Optional[str],
    allow: Tuple[str, ...],
    deny: Tuple[str, ...],
    project: Optional[Path],
) -> PolicyConfig:
    try:
        return build_policy_for_project(
            project_path=project,
            preset=preset,
            extra_allow=allow,
            extra_deny=deny,
            manager=_manager(ctx),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _policy_options(func: Any) -> Any:
    func = click.option(
        "--project",
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        help="Project directory whose configuration and tooling should be used",
    )(func)
    func = click.option("--deny", "deny", multiple=True, help="Extra deny rule (repeatable)")(func)
    func = click.option("--allow", "allow", multiple=True, help="Extra allow rule (repeatable)")(func)
    func = click.option("--preset", type=_PRESET_CHOICE, help="Permission preset")(func)
    return func


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="User configuration file (default: ~/.cmdguard.json)",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write debug logs to this file",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_file: Optional[Path]) -> None:
    """cmdguard - decide whether an agent may run a shell command."""
    ctx.ensure_object(dict)
    ctx.obj["manager"] = ConfigManager(config_path) if config_path else None
    if log_file:
        enable_file_logging(log_file)


@cli.command(name="check")
@click.argument("command")
@_policy_options
@click.option("--json", "as_json", is_flag=True, help="Print the verdict as JSON")
@click.pass_context
def check_cmd(
    ctx: click.Context,
    command: str,
    preset: Optional[str],
    allow: Tuple[str, ...],
    deny: Tuple[str, ...],
    project: Optional[Path],
    as_json: bool,
) -> None:
    """Check COMMAND. Exit code: 0 allow, 1 deny, 2 ask."""
    policy = _build_policy(ctx, preset, allow, deny, project)
    result = authorize(command, policy)
    logger.debug(
        "[cli] Checked command",
        extra={"decision": result.decision.value, "preset": policy.preset.value},
    )
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        console.print(f"{_styled(result.decision)} {escape(result.reason)}")
    ctx.exit(EXIT_CODES[result.decision])


def _render_explanation(result: AuthorizationResult, policy: PolicyConfig) -> None:
    table = Table(
        title=f"Invocations ({policy.preset.value} preset)",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("#", style="dim")
    table.add_column("Origin", style="dim")
    table.add_column("Command")
    table.add_column("Decision")
    table.add_column("Layer", style="dim")
    table.add_column("Reason")
    for index, item in enumerate(result.decisions, start=1):
        invocation = item.invocation
        origin = invocation.source_segment.origin.value
        if invocation.via:
            origin = f"{origin} ({invocation.via})"
        table.add_row(
            str(index),
            origin,
            escape(invocation.command_line),
            _styled(item.decision),
            item.layer.value,
            escape(item.reason),
        )
    if result.decisions:
        console.print(table)
    console.print(f"\nVerdict: {_styled(result.decision)} {escape(result.reason)}")


@cli.command(name="explain")
@click.argument("command")
@_policy_options
@click.pass_context
def explain_cmd(
    ctx: click.Context,
    command: str,
    preset: Optional[str],
    allow: Tuple[str, ...],
    deny: Tuple[str, ...],
    project: Optional[Path],
) -> None:
    """Show every invocation in COMMAND and how each one was decided."""
    policy = _build_policy(ctx, preset, allow, deny, project)
    _render_explanation(authorize(command, policy), policy)


@cli.command(name="presets")
def presets_cmd() -> None:
    """List the permission presets and the commands they allow."""
    table = Table(title="Permission Presets", show_header=True, header_style="bold cyan")
    table.add_column("Preset", style="bold")
    table.add_column("Unlisted commands")
    table.add_column("Allowed commands")
    for definition in PRESETS.values():
        table.add_row(
            definition.preset.value,
            _styled(definition.residual),
            escape(" ".join(definition.commands)),
        )
    console.print(table)


def _hook_output(decision: str, reason: Optional[str]) -> Dict[str, Any]:
    output: Dict[str, Any] = {
        "hookEventName": "PreToolUse",
        "permissionDecision": decision,
    }
    if reason:
        output["permissionDecisionReason"] = reason
    return {"hookSpecificOutput": output}


@cli.command(name="hook")
@click.option("--preset", type=_PRESET_CHOICE, help="Permission preset")
@click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Project directory (default: the payload's cwd)",
)
@click.pass_context
def hook_cmd(ctx: click.Context, preset: Optional[str], project: Optional[Path]) -> None:
    """Answer a pre-tool-use hook payload read from stdin."""
    raw = click.get_text_stream("stdin").read()
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("hook payload must be a JSON object")
        tool_name = payload["tool_name"]
        tool_input = payload.get("tool_input") or {}
    except (json.JSONDecodeError, ValueError, KeyError) as exc:
        logger.warning("[cli] Malformed hook payload", extra={"error": str(exc)})
        click.echo(json.dumps(_hook_output("deny", f"Malformed hook payload: {exc}")))
        return

    if project is None and isinstance(payload.get("cwd"), str):
        candidate = Path(payload["cwd"])
        project = candidate if candidate.is_dir() else None

    policy = _build_policy(ctx, preset, (), (), project)
    result = check_tool_permission(str(tool_name), tool_input, policy)
    click.echo(json.dumps(_hook_output(result.behavior, result.message)))


# =============================================================================
# Stored rules
# =============================================================================


@cli.group(name="rules")
def rules_group() -> None:
    """List and edit stored allow/deny rules."""


def _rule_lists(
    manager: ConfigManager, scope: str, project: Path
) -> Tuple[Any, list[str], list[str]]:
    if scope == "user":
        config: Any = manager.get_global_config()
        return config, config.user_allow_rules, config.user_deny_rules
    if scope == "project":
        config = manager.get_project_config(project)
        return config, config.bash_allow_rules, config.bash_deny_rules
    config = manager.get_project_local_config(project)
    return config, config.local_allow_rules, config.local_deny_rules


def _save(manager: ConfigManager, scope: str, config: Any, project: Path) -> None:
    if isinstance(config, GlobalConfig):
        manager.save_global_config(config)
    elif isinstance(config, ProjectConfig):
        manager.save_project_config(config, project)
    elif isinstance(config, ProjectLocalConfig):
        manager.save_project_local_config(config, project)


_scope_option = click.option(
    "--scope", type=click.Choice(_SCOPES), default="project", show_default=True
)
_project_option = click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
)


@rules_group.command(name="list")
@_project_option
@click.pass_context
def rules_list_cmd(ctx: click.Context, project: Path) -> None:
    """Show stored rules for every scope."""
    manager = _manager(ctx)
    project = project.resolve()
    table = Table(title="Permission Rules", show_header=True, header_style="bold cyan")
    table.add_column("Scope", style="bold")
    table.add_column("Type", style="dim")
    table.add_column("Rule")
    for scope in _SCOPES:
        _, allow_rules, deny_rules = _rule_lists(manager, scope, project)
        for rule in allow_rules:
            table.add_row(scope, "[green]allow[/green]", escape(rule))
        for rule in deny_rules:
            table.add_row(scope, "[red]deny[/red]", escape(rule))
    console.print(table)


@rules_group.command(name="add")
@click.argument("rule")
@click.option("--deny", "is_deny", is_flag=True, help="Store as a deny rule")
@_scope_option
@_project_option
@click.pass_context
def rules_add_cmd(ctx: click.Context, rule: str, is_deny: bool, scope: str, project: Path) -> None:
    """Store RULE (e.g. 'git push --force' or 'Bash(npm run:*)')."""
    try:
        parsed = parse_permission_rule(rule)
    except ValueError as exc:
        raise click.ClickException(f"Invalid rule '{rule}': {exc}") from exc
    if parsed is None:
        raise click.ClickException(f"'{rule}' is not a shell command rule")

    manager = _manager(ctx)
    project = project.resolve()
    config, allow_rules, deny_rules = _rule_lists(manager, scope, project)
    target = deny_rules if is_deny else allow_rules
    text = rule.strip()
    if text in target:
        console.print(f"[yellow]Rule already present:[/yellow] {escape(text)}")
        return
    target.append(text)
    _save(manager, scope, config, project)
    kind = "deny" if is_deny else "allow"
    console.print(f"[green]Added {kind} rule to {scope} scope:[/green] {escape(text)}")


@rules_group.command(name="remove")
@click.argument("rule")
@click.option("--deny", "is_deny", is_flag=True, help="Remove from the deny list")
@_scope_option
@_project_option
@click.pass_context
def rules_remove_cmd(
    ctx: click.Context, rule: str, is_deny: bool, scope: str, project: Path
) -> None:
    """Remove a stored RULE."""
    manager = _manager(ctx)
    project = project.resolve()
    config, allow_rules, deny_rules = _rule_lists(manager, scope, project)
    target = deny_rules if is_deny else allow_rules
    text = rule.strip()
    if text not in target:
        raise click.ClickException(f"Rule not found in {scope} scope: {text}")
    target.remove(text)
    _save(manager, scope, config, project)
    console.print(f"[green]Removed rule from {scope} scope:[/green] {escape(text)}")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except (RuntimeError, ValueError, TypeError, OSError) as e:
        console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        logger.warning(
            "[cli] Fatal error in main CLI entrypoint: %s: %s",
            type(e).__name__,
            e,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
