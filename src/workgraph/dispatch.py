"""Git-backed dispatch mode.

While dispatch is enabled for a workspace, execution-node transitions record
markers on the node (commit ids in git mode, millisecond timestamps without
git). Commits themselves are produced by whoever executes the node; this
module only keeps branch bookkeeping and reconciles the process branch back
into the original branch when dispatch is turned off.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from workgraph.config import DispatchSettings
from workgraph.errors import (
    Conflict,
    DispatchFailed,
    GraphCorrupted,
    InvalidOperation,
    NotFound,
    ValidationError,
)
from workgraph.models import (
    Action,
    DispatchConfig,
    DispatchStatus,
    Graph,
    MergeStrategy,
    Node,
    NodeDispatch,
    NodeType,
    utcnow_iso,
)
from workgraph.state import Commit, ContentStore, GitAdapter, GraphStore

logger = logging.getLogger(__name__)

ACTIVE_DISPATCH = (DispatchStatus.EXECUTING, DispatchStatus.TESTING)


def _timestamp_marker() -> str:
    return str(time.time_ns() // 1_000_000)


def active_nodes(graph: Graph) -> list[str]:
    return [
        node.id
        for node in graph.nodes.values()
        if node.dispatch is not None and node.dispatch.status in ACTIVE_DISPATCH
    ]


def select_commits(available: list[Commit], requested: list[str] | None) -> list[Commit]:
    """Resolve requested hashes (full or prefix) against ``available``, kept in process order."""
    if requested is None:
        return list(available)
    chosen: set[str] = set()
    for ref in requested:
        ref = ref.strip()
        matches = [commit.hash for commit in available if ref and commit.hash.startswith(ref)]
        if len(matches) != 1:
            raise ValidationError(
                f"Commit '{ref}' is not a unique commit of the process branch.",
                details={"commit": ref, "available": [commit.hash for commit in available]},
            )
        chosen.add(matches[0])
    return [commit for commit in available if commit.hash in chosen]


class DispatchCoordinator:
    def __init__(
        self,
        store: GraphStore,
        content: ContentStore,
        git: GitAdapter,
        settings: DispatchSettings | None = None,
    ) -> None:
        self.store = store
        self.content = content
        self.git = git
        self.settings = settings or DispatchSettings()

    def backup_branch_name(self, workspace_id: str) -> str:
        return f"{self.settings.branch_prefix}/backup/{workspace_id}/{_timestamp_marker()}"

    def process_branch_name(self, workspace_id: str) -> str:
        return f"{self.settings.branch_prefix}/process/{workspace_id}"

    def _other_active_workspace(self, workspace_id: str) -> str | None:
        for other in self.store.list_workspaces():
            if other == workspace_id:
                continue
            try:
                graph = self.store.read_graph(other)
            except GraphCorrupted:
                logger.warning("unreadable_workspace_skipped", extra={"workspace_id": other})
                continue
            if graph.workspace.dispatch is not None and graph.workspace.dispatch.enabled:
                return other
        return None

    def _require_git(self) -> None:
        if not self.git.is_git_repo():
            raise DispatchFailed(
                f"{self.git.repo_root} is not a git repository; git dispatch is unavailable."
            )

    def _open_branches(self, workspace_id: str) -> tuple[str, str, str]:
        """Snapshot the working line and check out a fresh process branch."""
        original = self.git.current_branch()
        if original == "HEAD":
            raise DispatchFailed("HEAD is detached; check out a branch before enabling dispatch.")
        process = self.process_branch_name(workspace_id)
        if self.git.branch_exists(process):
            raise Conflict(
                f"Branch '{process}' already exists; remove it or finish the previous dispatch.",
                details={"branch": process},
            )
        start = self.git.head_commit()
        backup = self.backup_branch_name(workspace_id)
        self.git.create_branch(backup)
        try:
            self.git.commit_all(
                f"{self.settings.branch_prefix}: backup before dispatch - {workspace_id}"
            )
            self.git.create_branch(process)
        except DispatchFailed:
            logger.error("dispatch_branch_setup_failed", extra={"workspace_id": workspace_id})
            # Pull any snapshot commit back into the working tree before leaving the backup.
            self.git.reset_mixed(start)
            self.git.checkout(original)
            self.git.delete_branch(backup)
            raise
        return original, backup, process

    def enable(self, workspace_id: str, use_git: bool | None = None) -> dict[str, Any]:
        if use_git is None:
            use_git = self.settings.default_mode == "git"

        with self.store.transaction(workspace_id) as txn:
            workspace = txn.graph.workspace
            if workspace.dispatch is not None and workspace.dispatch.enabled:
                raise Conflict(
                    f"Dispatch is already enabled for workspace '{workspace_id}'.",
                    details={"mode": workspace.dispatch_mode.value},
                )
            other = self._other_active_workspace(workspace_id)
            if other is not None:
                raise Conflict(
                    f"Workspace '{other}' is already dispatching; finish it first.",
                    details={"workspace_id": other},
                )
            config = DispatchConfig(
                enabled=True,
                use_git=use_git,
                timeout_seconds=self.settings.timeout_seconds,
            )
            if use_git:
                self._require_git()
                original, backup, process = self._open_branches(workspace_id)
                config.original_branch = original
                config.process_branch = process
                config.backup_branches = [backup]
            workspace.dispatch = config
            workspace.updated_at = config.enabled_at

        detail = f", process branch {config.process_branch}" if use_git else ""
        self.content.append_log(workspace_id, f"dispatch enabled ({config.mode.value}){detail}")
        logger.info(
            "dispatch_enabled",
            extra={"workspace_id": workspace_id, "mode": config.mode.value},
        )
        return {"mode": config.mode.value, "config": config.to_dict()}

    def on_transition(self, graph: Graph, node: Node, action: Action) -> None:
        """Record dispatch markers for an execution node about to change status."""
        config = graph.workspace.dispatch
        if config is None or not config.enabled or node.type != NodeType.EXECUTION:
            return

        if action in (Action.START, Action.RETRY, Action.REOPEN):
            marker = self.git.head_commit() if config.use_git else _timestamp_marker()
            node.dispatch = NodeDispatch(
                status=DispatchStatus.EXECUTING,
                start_marker=marker,
                branch=config.process_branch,
            )
        elif action == Action.SUBMIT and node.dispatch is not None:
            node.dispatch.status = DispatchStatus.TESTING
        elif action == Action.COMPLETE:
            end = (
                self.git.head_commit(config.process_branch or "HEAD")
                if config.use_git
                else _timestamp_marker()
            )
            if node.dispatch is None:
                node.dispatch = NodeDispatch(
                    status=DispatchStatus.PASSED, start_marker=end, branch=config.process_branch
                )
            node.dispatch.status = DispatchStatus.PASSED
            node.dispatch.end_marker = end
        elif action == Action.FAIL and node.dispatch is not None:
            node.dispatch.status = DispatchStatus.FAILED

    def record_commit(
        self, workspace_id: str, node_id: str, commit: str | None = None
    ) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            config = txn.graph.workspace.dispatch
            if config is None or not config.enabled:
                raise InvalidOperation(f"Dispatch is not enabled for workspace '{workspace_id}'.")
            node = txn.graph.get(node_id)
            if node is None:
                raise NotFound(f"Node '{node_id}' does not exist.")
            if node.dispatch is None:
                raise InvalidOperation(f"Node '{node_id}' has not been dispatched.")
            if config.use_git:
                marker = self.git.head_commit(commit or config.process_branch or "HEAD")
            else:
                marker = commit or _timestamp_marker()
            node.dispatch.end_marker = marker
            node.touch()
        return {"node_id": node_id, "end_marker": marker, "status": node.dispatch.status.value}

    def status(self, workspace_id: str) -> dict[str, Any]:
        graph = self.store.read_graph(workspace_id)
        config = graph.workspace.dispatch
        result: dict[str, Any] = {
            "mode": graph.workspace.dispatch_mode.value,
            "active_nodes": active_nodes(graph),
        }
        if config is None or not config.use_git:
            return result
        if not self.git.is_git_repo():
            result["git_environment_lost"] = True
            return result
        current = self.git.current_branch()
        result.update(
            {
                "current_branch": current,
                "clean": self.git.is_clean(),
                "on_process_branch": current == config.process_branch,
                "original_branch": config.original_branch,
                "process_branch": config.process_branch,
            }
        )
        return result

    def disable_query(self, workspace_id: str) -> dict[str, Any]:
        graph = self.store.read_graph(workspace_id)
        config = graph.workspace.dispatch
        if config is None or not config.enabled:
            return {"mode": "disabled"}

        result: dict[str, Any] = {
            "mode": config.mode.value,
            "original_branch": config.original_branch,
            "process_branch": config.process_branch,
            "backup_branches": list(config.backup_branches),
            "process_commits": [],
            "active_nodes": active_nodes(graph),
            "strategies": [],
        }
        if config.process_branch is None:
            return result
        if not self.git.is_git_repo():
            result["git_environment_lost"] = True
            return result
        commits = self.git.list_commits(config.original_branch, config.process_branch)
        result["process_commits"] = [commit.to_dict() for commit in commits]
        result["strategies"] = [strategy.value for strategy in MergeStrategy]
        return result

    def _reconcile(
        self,
        workspace_id: str,
        config: DispatchConfig,
        strategy: MergeStrategy,
        commit_message: str | None,
        commits: list[str] | None,
    ) -> dict[str, Any]:
        original = config.original_branch
        process = config.process_branch
        outcome: dict[str, Any] = {"strategy": strategy.value}
        if strategy == MergeStrategy.SEQUENTIAL:
            outcome["commits"] = [c.hash for c in self.git.list_commits(original, process)]
            self.git.rebase_merge(original, process)
        elif strategy == MergeStrategy.SQUASH:
            message = commit_message or (
                f"{self.settings.branch_prefix}: complete workspace {workspace_id} dispatch"
            )
            outcome["commit"] = self.git.squash_merge(original, process, message)
        elif strategy == MergeStrategy.CHERRY_PICK:
            selected = select_commits(self.git.list_commits(original, process), commits)
            self.git.cherry_pick(original, [commit.hash for commit in selected])
            outcome["commits"] = [commit.hash for commit in selected]
        else:
            self.git.checkout(original)
        return outcome

    def disable_execute(
        self,
        workspace_id: str,
        strategy: MergeStrategy | str,
        keep_backup_branch: bool = False,
        keep_process_branch: bool = False,
        commit_message: str | None = None,
        commits: list[str] | None = None,
    ) -> dict[str, Any]:
        try:
            strategy = MergeStrategy(strategy)
        except ValueError as exc:
            choices = ", ".join(item.value for item in MergeStrategy)
            raise ValidationError(
                f"Unknown strategy '{strategy}'. Expected one of: {choices}."
            ) from exc

        with self.store.transaction(workspace_id) as txn:
            workspace = txn.graph.workspace
            config = workspace.dispatch
            if config is None or not config.enabled:
                txn.changed = False
                return {"mode": "disabled", "strategy": strategy.value, "deleted_branches": []}

            outcome: dict[str, Any] = {"strategy": strategy.value}
            deleted: list[str] = []
            if config.process_branch is not None:
                if self.git.is_git_repo():
                    if not self.git.is_clean():
                        raise DispatchFailed(
                            "Working tree has uncommitted changes; commit or stash them "
                            "before disabling dispatch.",
                            details={"branch": self.git.current_branch()},
                        )
                    outcome = self._reconcile(workspace_id, config, strategy, commit_message, commits)
                    if not keep_process_branch and strategy != MergeStrategy.SKIP:
                        if self.git.delete_branch(config.process_branch):
                            deleted.append(config.process_branch)
                    if not keep_backup_branch:
                        for branch in config.backup_branches:
                            if self.git.delete_branch(branch):
                                deleted.append(branch)
                else:
                    logger.warning("git_environment_lost", extra={"workspace_id": workspace_id})
                    outcome["git_environment_lost"] = True
            previous_mode = config.mode.value
            workspace.dispatch = None
            workspace.updated_at = utcnow_iso()

        self.content.append_log(
            workspace_id, f"dispatch disabled ({previous_mode}, strategy {strategy.value})"
        )
        logger.info(
            "dispatch_disabled",
            extra={"workspace_id": workspace_id, "strategy": strategy.value},
        )
        outcome.update(
            {"mode": "disabled", "previous_mode": previous_mode, "deleted_branches": deleted}
        )
        return outcome

    def switch_mode(self, workspace_id: str, use_git: bool) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            config = txn.graph.workspace.dispatch
            if config is None or not config.enabled:
                raise InvalidOperation(
                    f"Dispatch is not enabled for workspace '{workspace_id}'; nothing to switch."
                )
            busy = active_nodes(txn.graph)
            if busy:
                raise Conflict(
                    f"Cannot switch dispatch mode while {len(busy)} node(s) are executing.",
                    details={"active_nodes": busy},
                )
            previous_mode = config.mode.value
            if config.use_git == use_git:
                txn.changed = False
                return {"previous_mode": previous_mode, "mode": previous_mode, "changed": False}
            if use_git:
                self._require_git()
                if config.process_branch is None:
                    original, backup, process = self._open_branches(workspace_id)
                    config.original_branch = original
                    config.process_branch = process
                    config.backup_branches.append(backup)
            config.use_git = use_git

        self.content.append_log(
            workspace_id, f"dispatch mode switched: {previous_mode} -> {config.mode.value}"
        )
        logger.info(
            "dispatch_mode_switched",
            extra={"workspace_id": workspace_id, "mode": config.mode.value},
        )
        return {"previous_mode": previous_mode, "mode": config.mode.value, "changed": True}
