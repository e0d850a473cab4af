from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from workgraph.config import LifecycleConfig
from workgraph.errors import Conflict, NotFound, ValidationError
from workgraph.lifecycle import validate_title
from workgraph.models import (
    MEMO_PREFIX,
    Graph,
    Memo,
    Node,
    NodeType,
    PlanningStatus,
    ROOT_NODE_ID,
    WorkspaceRecord,
    generate_id,
)
from workgraph.references import build_reference
from workgraph.state import ContentStore, GraphStore, NodeInfo

logger = logging.getLogger(__name__)


class WorkspaceService:
    def __init__(
        self,
        store: GraphStore,
        content: ContentStore,
        config: LifecycleConfig | None = None,
    ) -> None:
        self.store = store
        self.content = content
        self.config = config or LifecycleConfig()

    def _records(self) -> list[WorkspaceRecord]:
        return [self.store.read_graph(ws_id).workspace for ws_id in self.store.list_workspaces()]

    def resolve(self, ref: str) -> str:
        """Accept a workspace id or name and return the id."""
        if self.store.exists(ref):
            return ref
        for record in self._records():
            if record.name == ref:
                return record.id
        raise NotFound(f"Workspace '{ref}' does not exist.", details={"workspace": ref})

    def init(
        self,
        name: str,
        goal: str = "",
        rules: Iterable[str] = (),
        docs: Iterable[str] = (),
    ) -> dict[str, Any]:
        name = validate_title(name, self.config.max_title_length)
        if any(record.name == name for record in self._records()):
            raise Conflict(f"A workspace named '{name}' already exists.", details={"name": name})

        workspace_id = generate_id("ws")
        record = WorkspaceRecord(
            id=workspace_id,
            name=name,
            goal=goal,
            rules=[rule.strip() for rule in rules if rule.strip()],
            current_focus=ROOT_NODE_ID,
        )
        root = Node(
            id=ROOT_NODE_ID,
            type=NodeType.PLANNING,
            parent_id=None,
            status=PlanningStatus.PENDING,
        )
        graph = Graph(workspace=record, nodes={root.id: root})
        record.docs = [build_reference(graph, target) for target in docs if target.strip()]
        self.store.create_graph(workspace_id, graph)

        self.content.write_info(workspace_id, root.id, NodeInfo(title=name, requirement=goal))
        self.content.append_log(workspace_id, f"workspace created: {name}")
        logger.info("workspace_created", extra={"workspace_id": workspace_id, "workspace_name": name})
        return {"workspace_id": workspace_id, "name": name, "root_node_id": root.id}

    def get(self, workspace_id: str) -> dict[str, Any]:
        graph = self.store.read_graph(workspace_id)
        payload = graph.workspace.to_dict()
        payload["rules_hash"] = graph.workspace.rules_hash
        payload["dispatch_mode"] = graph.workspace.dispatch_mode.value
        payload["node_count"] = len(graph.nodes)
        payload["root_status"] = graph.root.status.value
        payload["log"] = [entry.to_dict() for entry in self.content.read_log(workspace_id)]
        return payload

    def list(self) -> list[dict[str, Any]]:
        return [
            {
                "workspace_id": record.id,
                "name": record.name,
                "goal": record.goal,
                "dispatch_mode": record.dispatch_mode.value,
                "updated_at": record.updated_at,
            }
            for record in self._records()
        ]

    def memo_create(
        self, workspace_id: str, title: str, summary: str = "", content: str = ""
    ) -> dict[str, Any]:
        title = validate_title(title, self.config.max_title_length)
        memo = Memo(id=generate_id("memo"), title=title, summary=summary)
        with self.store.transaction(workspace_id) as txn:
            txn.graph.workspace.memos[memo.id] = memo
            txn.graph.workspace.updated_at = memo.created_at

        self.content.write_memo(workspace_id, memo.id, content)
        self.content.append_log(workspace_id, f"memo created: {title}")
        return {"memo_id": memo.id, "target": f"{MEMO_PREFIX}{memo.id}", "title": title}

    def memo_get(self, workspace_id: str, memo_id: str) -> dict[str, Any]:
        if memo_id.startswith(MEMO_PREFIX):
            memo_id = memo_id[len(MEMO_PREFIX):]
        memo = self.store.read_graph(workspace_id).workspace.memos.get(memo_id)
        if memo is None:
            raise NotFound(f"Memo '{memo_id}' does not exist.", details={"memo_id": memo_id})
        payload = memo.to_dict()
        payload["content"] = self.content.read_memo(workspace_id, memo_id)
        return payload

    def log_append(
        self,
        workspace_id: str,
        event: str,
        node_id: str | None = None,
        operator: str = "user",
    ) -> dict[str, Any]:
        if not event.strip():
            raise ValidationError("Log event must not be empty.")
        graph = self.store.read_graph(workspace_id)
        if node_id is not None and node_id not in graph.nodes:
            raise NotFound(f"Node '{node_id}' does not exist.", details={"node_id": node_id})
        entry = self.content.append_log(workspace_id, event, node_id=node_id, operator=operator)
        return {"node_id": node_id, **entry.to_dict()}
