from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from workgraph.api import Workgraph, build_workgraph
from workgraph.config import WorkgraphConfig, load_config, save_config
from workgraph.errors import WorkgraphError
from workgraph.logging import configure_logging
from workgraph.models import Action, MergeStrategy, NodeRole, NodeType

WORKSPACE_ENV = "WORKGRAPH_WORKSPACE"


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: WorkgraphConfig
    graph: Workgraph


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    configure_logging(config.effective_log_level())
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        graph=build_workgraph(project_root, config),
    )


def _call(operation: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    try:
        return operation(*args, **kwargs)
    except WorkgraphError as exc:
        raise click.ClickException(f"[{exc.code}] {exc}") from exc


def _workspace_id(runtime: Runtime, workspace: str | None) -> str:
    if not workspace:
        raise click.UsageError(f"Pass --workspace or set {WORKSPACE_ENV}.")
    return _call(runtime.graph.workspaces.resolve, workspace)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def config_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("--config", "config_value", default="workgraph.toml", show_default=True)(
        func
    )


def workspace_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option("--workspace", "-w", envvar=WORKSPACE_ENV, default=None)(func)


@click.group()
def cli() -> None:
    """Workgraph CLI."""


@cli.command("init")
@click.argument("name")
@click.option("--goal", default="")
@click.option("--rule", "rules", multiple=True)
@click.option("--doc", "docs", multiple=True)
@config_option
def init_command(
    name: str, goal: str, rules: tuple[str, ...], docs: tuple[str, ...], config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    if not runtime.config_path.exists():
        save_config(runtime.config_path, runtime.config)
    result = _call(runtime.graph.workspace_init, name, goal, list(rules), list(docs))

    click.echo(f"Initialized workspace {result['name']}")
    click.echo(f"Workspace ID: {result['workspace_id']}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"Storage: {runtime.config.storage_root(runtime.project_root)}")


@cli.command("show")
@workspace_option
@config_option
def show_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(_call(runtime.graph.workspace_get, _workspace_id(runtime, workspace)))


@cli.command("list")
@config_option
def list_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    workspaces = _call(runtime.graph.workspace_list)
    if not workspaces:
        click.echo("No workspaces found.")
        return
    for item in workspaces:
        click.echo(f"{item['workspace_id']} {item['dispatch_mode']:<11} {item['name']}")


@cli.group("node")
def node_group() -> None:
    """Create, inspect and change nodes."""


@node_group.command("create")
@click.argument("parent_id")
@click.argument("title")
@click.option(
    "--type", "node_type", type=click.Choice([item.value for item in NodeType]), default="execution"
)
@click.option("--requirement", default="")
@click.option("--ref", "refs", multiple=True)
@click.option("--role", type=click.Choice([item.value for item in NodeRole]), default=None)
@workspace_option
@config_option
def node_create_command(
    parent_id: str,
    title: str,
    node_type: str,
    requirement: str,
    refs: tuple[str, ...],
    role: str | None,
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    workspace_id = _workspace_id(runtime, workspace)
    _echo_json(
        _call(
            runtime.graph.node_create,
            workspace_id,
            parent_id,
            node_type,
            title,
            requirement,
            list(refs),
            role,
        )
    )


@node_group.command("get")
@click.argument("node_id")
@workspace_option
@config_option
def node_get_command(node_id: str, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(_call(runtime.graph.node_get, _workspace_id(runtime, workspace), node_id))


@node_group.command("tree")
@click.option("--root", "root_id", default=None)
@click.option("--depth", type=int, default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@workspace_option
@config_option
def node_tree_command(
    root_id: str | None, depth: int | None, as_json: bool, workspace: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    tree = _call(runtime.graph.node_list, _workspace_id(runtime, workspace), root_id, depth)
    if as_json:
        _echo_json(tree)
        return
    stack = [(tree, 0)]
    while stack:
        entry, level = stack.pop()
        marker = " [isolated]" if entry["isolate"] else ""
        click.echo(
            f"{'  ' * level}{entry['id']} ({entry['type']}, {entry['status']}) {entry['title']}{marker}"
        )
        stack.extend((child, level + 1) for child in reversed(entry["children"]))


@node_group.command("update")
@click.argument("node_id")
@click.option("--title", default=None)
@click.option("--requirement", default=None)
@click.option("--note", default=None)
@workspace_option
@config_option
def node_update_command(
    node_id: str,
    title: str | None,
    requirement: str | None,
    note: str | None,
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(
            runtime.graph.node_update,
            _workspace_id(runtime, workspace),
            node_id,
            title,
            requirement,
            note,
        )
    )


@node_group.command("transition")
@click.argument("node_id")
@click.argument("action", type=click.Choice([item.value for item in Action]))
@click.option("--conclusion", default=None)
@click.option("--reason", default=None)
@workspace_option
@config_option
def node_transition_command(
    node_id: str,
    action: str,
    conclusion: str | None,
    reason: str | None,
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(
            runtime.graph.node_transition,
            _workspace_id(runtime, workspace),
            node_id,
            action,
            conclusion,
            reason,
        )
    )


@node_group.command("split")
@click.argument("node_id")
@click.argument("title")
@click.option("--requirement", default="")
@click.option("--inherit/--no-inherit", "inherit_context", default=True, show_default=True)
@click.option("--ref", "refs", multiple=True)
@workspace_option
@config_option
def node_split_command(
    node_id: str,
    title: str,
    requirement: str,
    inherit_context: bool,
    refs: tuple[str, ...],
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(
            runtime.graph.node_split,
            _workspace_id(runtime, workspace),
            node_id,
            title,
            requirement,
            inherit_context,
            list(refs),
        )
    )


@node_group.command("move")
@click.argument("node_id")
@click.argument("new_parent_id")
@workspace_option
@config_option
def node_move_command(
    node_id: str, new_parent_id: str, workspace: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(runtime.graph.node_move, _workspace_id(runtime, workspace), node_id, new_parent_id)
    )


@node_group.command("delete")
@click.argument("node_id")
@workspace_option
@config_option
def node_delete_command(node_id: str, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    result = _call(runtime.graph.node_delete, _workspace_id(runtime, workspace), node_id)
    click.echo(f"Deleted {len(result['deleted'])} node(s): {', '.join(result['deleted'])}")


@node_group.command("isolate")
@click.argument("node_id")
@click.option("--on/--off", "value", default=True, show_default=True)
@workspace_option
@config_option
def node_isolate_command(node_id: str, value: bool, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(runtime.graph.node_isolate, _workspace_id(runtime, workspace), node_id, value)
    )


@node_group.command("reference")
@click.argument("node_id")
@click.argument("action", type=click.Choice(["add", "remove", "expire", "activate"]))
@click.argument("target")
@click.option("--description", default="")
@workspace_option
@config_option
def node_reference_command(
    node_id: str,
    action: str,
    target: str,
    description: str,
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(
            runtime.graph.node_reference,
            _workspace_id(runtime, workspace),
            node_id,
            action,
            target,
            description,
        )
    )


@cli.command("context")
@click.argument("node_id")
@click.option("--log/--no-log", "include_log", default=True, show_default=True)
@click.option("--max-log", "max_log_entries", type=int, default=20, show_default=True)
@click.option("--reverse-log", is_flag=True, default=False)
@workspace_option
@config_option
def context_command(
    node_id: str,
    include_log: bool,
    max_log_entries: int,
    reverse_log: bool,
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(
            runtime.graph.context_get,
            _workspace_id(runtime, workspace),
            node_id,
            include_log,
            max_log_entries,
            reverse_log,
        )
    )


@cli.command("focus")
@click.argument("node_id")
@workspace_option
@config_option
def focus_command(node_id: str, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    result = _call(runtime.graph.context_focus, _workspace_id(runtime, workspace), node_id)
    click.echo(f"Focus: {result['previous_focus']} -> {result['current_focus']}")


@cli.command("memo")
@click.argument("title")
@click.option("--summary", default="")
@click.option("--content", default="")
@workspace_option
@config_option
def memo_command(
    title: str, summary: str, content: str, workspace: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(runtime.graph.memo_create, _workspace_id(runtime, workspace), title, summary, content)
    )


@cli.command("log")
@click.argument("event")
@click.option("--node", "node_id", default=None)
@click.option("--operator", default="user", show_default=True)
@workspace_option
@config_option
def log_command(
    event: str, node_id: str | None, operator: str, workspace: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    result = _call(
        runtime.graph.log_append, _workspace_id(runtime, workspace), event, node_id, operator
    )
    click.echo(f"{result['time']} {result['operator']}: {result['event']}")


@cli.group("dispatch")
def dispatch_group() -> None:
    """Git-backed dispatch mode."""


@dispatch_group.command("enable")
@click.option("--git/--no-git", "use_git", default=None)
@workspace_option
@config_option
def dispatch_enable_command(use_git: bool | None, workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    result = _call(runtime.graph.dispatch_enable, _workspace_id(runtime, workspace), use_git)
    click.echo(f"Dispatch enabled: {result['mode']}")
    if result["config"]["process_branch"]:
        click.echo(f"Process branch: {result['config']['process_branch']}")


@dispatch_group.command("status")
@workspace_option
@config_option
def dispatch_status_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(_call(runtime.graph.dispatch_status, _workspace_id(runtime, workspace)))


@dispatch_group.command("query")
@workspace_option
@config_option
def dispatch_query_command(workspace: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(_call(runtime.graph.dispatch_disable_query, _workspace_id(runtime, workspace)))


@dispatch_group.command("record")
@click.argument("node_id")
@click.option("--commit", default=None)
@workspace_option
@config_option
def dispatch_record_command(
    node_id: str, commit: str | None, workspace: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(
            runtime.graph.dispatch_record_commit, _workspace_id(runtime, workspace), node_id, commit
        )
    )


@dispatch_group.command("disable")
@click.argument("strategy", type=click.Choice([item.value for item in MergeStrategy]))
@click.option("--keep-backup", "keep_backup_branch", is_flag=True, default=False)
@click.option("--keep-process", "keep_process_branch", is_flag=True, default=False)
@click.option("--message", "commit_message", default=None)
@click.option("--commit", "commits", multiple=True)
@workspace_option
@config_option
def dispatch_disable_command(
    strategy: str,
    keep_backup_branch: bool,
    keep_process_branch: bool,
    commit_message: str | None,
    commits: tuple[str, ...],
    workspace: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    _echo_json(
        _call(
            runtime.graph.dispatch_disable_execute,
            _workspace_id(runtime, workspace),
            strategy,
            keep_backup_branch=keep_backup_branch,
            keep_process_branch=keep_process_branch,
            commit_message=commit_message,
            commits=list(commits) or None,
        )
    )


@dispatch_group.command("switch")
@click.option("--git/--no-git", "use_git", default=None)
@workspace_option
@config_option
def dispatch_switch_command(use_git: bool | None, workspace: str | None, config_value: str) -> None:
    if use_git is None:
        raise click.UsageError("Pass --git or --no-git.")
    runtime = _load_runtime(config_value)
    result = _call(runtime.graph.dispatch_switch_mode, _workspace_id(runtime, workspace), use_git)
    click.echo(f"Dispatch mode: {result['previous_mode']} -> {result['mode']}")
