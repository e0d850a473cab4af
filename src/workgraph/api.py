"""Operation surface of workgraph.

``Workgraph`` wires the services together and returns plain dicts, the shape
every caller (CLI, tests, protocol adapters) consumes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from workgraph.config import WorkgraphConfig
from workgraph.context import ContextResolver
from workgraph.dispatch import DispatchCoordinator
from workgraph.lifecycle import NodeLifecycle
from workgraph.models import MergeStrategy, NodeRole, NodeType
from workgraph.references import ReferenceRegistry
from workgraph.state import ContentStore, GitAdapter, GraphStore
from workgraph.workspace import WorkspaceService


class Workgraph:
    def __init__(
        self,
        workspaces: WorkspaceService,
        lifecycle: NodeLifecycle,
        references: ReferenceRegistry,
        context: ContextResolver,
        dispatch: DispatchCoordinator,
    ) -> None:
        self.workspaces = workspaces
        self.lifecycle = lifecycle
        self.references = references
        self.context = context
        self.dispatch = dispatch

    # Workspaces

    def workspace_init(
        self, name: str, goal: str = "", rules: list[str] | None = None, docs: list[str] | None = None
    ) -> dict[str, Any]:
        return self.workspaces.init(name, goal, rules or (), docs or ())

    def workspace_get(self, workspace_id: str) -> dict[str, Any]:
        return self.workspaces.get(workspace_id)

    def workspace_list(self) -> list[dict[str, Any]]:
        return self.workspaces.list()

    def memo_create(
        self, workspace_id: str, title: str, summary: str = "", content: str = ""
    ) -> dict[str, Any]:
        return self.workspaces.memo_create(workspace_id, title, summary, content)

    def memo_get(self, workspace_id: str, memo_id: str) -> dict[str, Any]:
        return self.workspaces.memo_get(workspace_id, memo_id)

    def log_append(
        self, workspace_id: str, event: str, node_id: str | None = None, operator: str = "user"
    ) -> dict[str, Any]:
        return self.workspaces.log_append(workspace_id, event, node_id, operator)

    # Nodes

    def node_create(
        self,
        workspace_id: str,
        parent_id: str,
        node_type: NodeType | str,
        title: str,
        requirement: str = "",
        references: list[str] | None = None,
        role: NodeRole | str | None = None,
    ) -> dict[str, Any]:
        return self.lifecycle.create(
            workspace_id, parent_id, node_type, title, requirement, references or (), role
        )

    def node_get(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        return self.lifecycle.get(workspace_id, node_id)

    def node_list(
        self, workspace_id: str, root_id: str | None = None, depth: int | None = None
    ) -> dict[str, Any]:
        return self.lifecycle.list(workspace_id, root_id, depth)

    def node_update(
        self,
        workspace_id: str,
        node_id: str,
        title: str | None = None,
        requirement: str | None = None,
        note: str | None = None,
    ) -> dict[str, Any]:
        return self.lifecycle.update(workspace_id, node_id, title, requirement, note)

    def node_transition(
        self,
        workspace_id: str,
        node_id: str,
        action: str,
        conclusion: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        return self.lifecycle.transition(workspace_id, node_id, action, conclusion, reason)

    def node_split(
        self,
        workspace_id: str,
        node_id: str,
        title: str,
        requirement: str = "",
        inherit_context: bool = True,
        references: list[str] | None = None,
    ) -> dict[str, Any]:
        return self.lifecycle.split(
            workspace_id, node_id, title, requirement, inherit_context, references or ()
        )

    def node_move(self, workspace_id: str, node_id: str, new_parent_id: str) -> dict[str, Any]:
        return self.lifecycle.move(workspace_id, node_id, new_parent_id)

    def node_delete(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        return self.lifecycle.delete(workspace_id, node_id)

    def node_isolate(self, workspace_id: str, node_id: str, value: bool = True) -> dict[str, Any]:
        return self.lifecycle.isolate(workspace_id, node_id, value)

    def node_reference(
        self,
        workspace_id: str,
        node_id: str,
        action: str,
        target: str,
        description: str = "",
    ) -> dict[str, Any]:
        return self.references.apply(workspace_id, node_id, action, target, description)

    # Context

    def context_get(
        self,
        workspace_id: str,
        node_id: str,
        include_log: bool = True,
        max_log_entries: int = 20,
        reverse_log: bool = False,
    ) -> dict[str, Any]:
        return self.context.get(workspace_id, node_id, include_log, max_log_entries, reverse_log)

    def context_focus(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        return self.lifecycle.focus(workspace_id, node_id)

    # Dispatch

    def dispatch_enable(self, workspace_id: str, use_git: bool | None = None) -> dict[str, Any]:
        return self.dispatch.enable(workspace_id, use_git)

    def dispatch_status(self, workspace_id: str) -> dict[str, Any]:
        return self.dispatch.status(workspace_id)

    def dispatch_record_commit(
        self, workspace_id: str, node_id: str, commit: str | None = None
    ) -> dict[str, Any]:
        return self.dispatch.record_commit(workspace_id, node_id, commit)

    def dispatch_disable_query(self, workspace_id: str) -> dict[str, Any]:
        return self.dispatch.disable_query(workspace_id)

    def dispatch_disable_execute(
        self,
        workspace_id: str,
        strategy: MergeStrategy | str,
        keep_backup_branch: bool = False,
        keep_process_branch: bool = False,
        commit_message: str | None = None,
        commits: list[str] | None = None,
    ) -> dict[str, Any]:
        return self.dispatch.disable_execute(
            workspace_id,
            strategy,
            keep_backup_branch=keep_backup_branch,
            keep_process_branch=keep_process_branch,
            commit_message=commit_message,
            commits=commits,
        )

    def dispatch_switch_mode(self, workspace_id: str, use_git: bool) -> dict[str, Any]:
        return self.dispatch.switch_mode(workspace_id, use_git)


def build_workgraph(project_root: Path, config: WorkgraphConfig | None = None) -> Workgraph:
    config = config or WorkgraphConfig.default()
    storage_root = config.storage_root(project_root)
    store = GraphStore(storage_root, lock_timeout_seconds=config.storage.lock_timeout_seconds)
    content = ContentStore(storage_root)
    git = GitAdapter(project_root, timeout_seconds=config.dispatch.timeout_seconds)
    dispatch = DispatchCoordinator(store, content, git, config.dispatch)
    return Workgraph(
        workspaces=WorkspaceService(store, content, config.lifecycle),
        lifecycle=NodeLifecycle(store, content, config.lifecycle, dispatch.on_transition),
        references=ReferenceRegistry(store, content),
        context=ContextResolver(store, content),
        dispatch=dispatch,
    )
