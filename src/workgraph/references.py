from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from workgraph.errors import NotFound, ReferenceExists, ValidationError
from workgraph.models import (
    MEMO_PREFIX,
    Graph,
    Node,
    Reference,
    ReferenceStatus,
)
from workgraph.state import ContentStore, GraphStore

logger = logging.getLogger(__name__)

REFERENCE_ACTIONS = ("add", "remove", "expire", "activate")


def default_description(graph: Graph, target: str) -> str:
    if target.startswith(MEMO_PREFIX):
        memo = graph.workspace.memos.get(target[len(MEMO_PREFIX):])
        return f"memo: {memo.title}" if memo else "memo"
    if target in graph.nodes:
        return "node"
    if target.startswith(("http://", "https://")):
        return "link"
    return "document"


def build_reference(graph: Graph, target: str, description: str = "") -> Reference:
    target = target.strip()
    if not target:
        raise ValidationError("Reference target must not be empty.")
    if target.startswith(MEMO_PREFIX):
        memo_id = target[len(MEMO_PREFIX):]
        if memo_id not in graph.workspace.memos:
            raise NotFound(f"Memo '{memo_id}' does not exist.", details={"target": target})
    return Reference(target=target, description=description or default_description(graph, target))


def merge_references(
    graph: Graph, existing: list[Reference], extra: Iterable[Reference | str]
) -> list[Reference]:
    """Return ``existing`` plus ``extra``, skipping targets already present."""
    merged = list(existing)
    seen = {reference.target for reference in merged}
    for item in extra:
        if isinstance(item, Reference):
            reference = build_reference(graph, item.target, item.description)
        else:
            reference = build_reference(graph, item)
        if reference.target in seen:
            continue
        seen.add(reference.target)
        merged.append(reference)
    return merged


def _require_node(graph: Graph, node_id: str) -> Node:
    node = graph.get(node_id)
    if node is None:
        raise NotFound(f"Node '{node_id}' does not exist.", details={"node_id": node_id})
    return node


def _require_reference(node: Node, target: str) -> Reference:
    reference = node.find_reference(target)
    if reference is None:
        raise NotFound(
            f"Node '{node.id}' has no reference to '{target}'.",
            details={"node_id": node.id, "target": target},
        )
    return reference


class ReferenceRegistry:
    def __init__(self, store: GraphStore, content: ContentStore) -> None:
        self.store = store
        self.content = content

    def add(
        self, workspace_id: str, node_id: str, target: str, description: str = ""
    ) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            node = _require_node(txn.graph, node_id)
            reference = build_reference(txn.graph, target, description)
            existing = node.find_reference(reference.target)
            if existing is not None and existing.is_active:
                raise ReferenceExists(
                    f"Node '{node_id}' already references '{reference.target}'.",
                    details={"node_id": node_id, "target": reference.target},
                )
            reactivated = existing is not None
            if existing is not None:
                existing.status = ReferenceStatus.ACTIVE
                existing.description = reference.description
                reference = existing
            else:
                node.references.append(reference)
            node.touch()

        self.content.append_log(
            workspace_id, f"reference added: {reference.target}", node_id=node_id
        )
        logger.info(
            "reference_added",
            extra={"workspace_id": workspace_id, "node_id": node_id, "target": reference.target},
        )
        return {
            "action": "add",
            "node_id": node_id,
            "reference": reference.to_dict(),
            "changed": True,
            "reactivated": reactivated,
        }

    def remove(self, workspace_id: str, node_id: str, target: str) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            node = _require_node(txn.graph, node_id)
            reference = _require_reference(node, target)
            node.references.remove(reference)
            node.touch()

        self.content.append_log(workspace_id, f"reference removed: {target}", node_id=node_id)
        return {
            "action": "remove",
            "node_id": node_id,
            "reference": reference.to_dict(),
            "changed": True,
        }

    def _set_status(
        self, workspace_id: str, node_id: str, target: str, status: ReferenceStatus
    ) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            node = _require_node(txn.graph, node_id)
            reference = _require_reference(node, target)
            changed = reference.status != status
            if changed:
                reference.status = status
                node.touch()
            else:
                txn.changed = False

        action = "activate" if status == ReferenceStatus.ACTIVE else "expire"
        if changed:
            self.content.append_log(
                workspace_id, f"reference {status.value}: {target}", node_id=node_id
            )
        return {
            "action": action,
            "node_id": node_id,
            "reference": reference.to_dict(),
            "changed": changed,
        }

    def expire(self, workspace_id: str, node_id: str, target: str) -> dict[str, Any]:
        return self._set_status(workspace_id, node_id, target, ReferenceStatus.EXPIRED)

    def activate(self, workspace_id: str, node_id: str, target: str) -> dict[str, Any]:
        return self._set_status(workspace_id, node_id, target, ReferenceStatus.ACTIVE)

    def list(
        self, workspace_id: str, node_id: str, include_expired: bool = True
    ) -> list[dict[str, Any]]:
        node = _require_node(self.store.read_graph(workspace_id), node_id)
        return [
            reference.to_dict()
            for reference in node.references
            if include_expired or reference.is_active
        ]

    def apply(
        self,
        workspace_id: str,
        node_id: str,
        action: str,
        target: str,
        description: str = "",
    ) -> dict[str, Any]:
        if action == "add":
            return self.add(workspace_id, node_id, target, description)
        if action == "remove":
            return self.remove(workspace_id, node_id, target)
        if action == "expire":
            return self.expire(workspace_id, node_id, target)
        if action == "activate":
            return self.activate(workspace_id, node_id, target)
        raise ValidationError(
            f"Unknown reference action '{action}'. Expected one of {', '.join(REFERENCE_ACTIONS)}."
        )
