"""Node lifecycle: creation, status transitions and structural edits.

Every operation is one read-modify-write cycle on the graph store. All checks
run before the graph is written, so a rejected operation leaves the workspace
exactly as it was. Free text goes to the content store after the graph commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from workgraph.config import LifecycleConfig
from workgraph.errors import (
    ConclusionRequired,
    ExecutionCannotHaveChildren,
    IncompleteChildren,
    InvalidOperation,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from workgraph.models import (
    Action,
    ExecutionStatus,
    Graph,
    Node,
    NodeRole,
    NodeType,
    PlanningStatus,
    Reference,
    TERMINAL_STATUSES,
    generate_id,
    parse_status,
)
from workgraph.references import build_reference, merge_references
from workgraph.state import ContentStore, GraphStore, NodeInfo

logger = logging.getLogger(__name__)

DispatchHook = Callable[[Graph, Node, Action], None]

E = NodeType.EXECUTION
P = NodeType.PLANNING

TRANSITIONS: dict[tuple[NodeType, str, Action], str] = {
    (E, "pending", Action.START): "implementing",
    (E, "implementing", Action.SUBMIT): "validating",
    (E, "implementing", Action.COMPLETE): "completed",
    (E, "implementing", Action.FAIL): "failed",
    (E, "validating", Action.COMPLETE): "completed",
    (E, "validating", Action.FAIL): "failed",
    (E, "failed", Action.RETRY): "implementing",
    (E, "completed", Action.REOPEN): "implementing",
    (P, "pending", Action.START): "planning",
    (P, "pending", Action.CANCEL): "cancelled",
    (P, "planning", Action.COMPLETE): "completed",
    (P, "planning", Action.CANCEL): "cancelled",
    (P, "monitoring", Action.COMPLETE): "completed",
    (P, "monitoring", Action.CANCEL): "cancelled",
    (P, "completed", Action.REOPEN): "pending",
    (P, "cancelled", Action.REOPEN): "pending",
}

# Statuses in which a node may be split.
IN_PROGRESS = {
    E: {ExecutionStatus.IMPLEMENTING, ExecutionStatus.VALIDATING},
    P: {PlanningStatus.PLANNING, PlanningStatus.MONITORING},
}

INVALID_TITLE_CHARS = frozenset('/\\:*?"<>|')


def validate_title(title: str, max_length: int) -> str:
    cleaned = title.strip()
    if not cleaned:
        raise ValidationError("Title must not be empty.")
    if len(cleaned) > max_length:
        raise ValidationError(
            f"Title is {len(cleaned)} characters long; the limit is {max_length}."
        )
    bad = sorted({char for char in cleaned if char in INVALID_TITLE_CHARS})
    if bad:
        raise ValidationError(
            f"Title contains forbidden characters: {' '.join(bad)}",
            details={"characters": bad},
        )
    return cleaned


def allowed_actions(node: Node, allow_reopen: bool = True) -> list[str]:
    actions = [
        action.value
        for (node_type, status, action) in TRANSITIONS
        if node_type == node.type and status == node.status.value
    ]
    if not allow_reopen and node.type == E:
        actions = [action for action in actions if action != Action.REOPEN.value]
    return actions


def _parse_enum(enum_type: type, value: Any, label: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as exc:
        choices = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"Unknown {label} '{value}'. Expected one of: {choices}.") from exc


def _require_node(graph: Graph, node_id: str, label: str = "Node") -> Node:
    node = graph.get(node_id)
    if node is None:
        raise NotFound(f"{label} '{node_id}' does not exist.", details={"node_id": node_id})
    return node


def _section_items(text: str, heading: str) -> list[str]:
    items: list[str] = []
    inside = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("## "):
            inside = stripped[3:].strip().lower() == heading
            continue
        if inside and stripped.startswith(("- ", "* ")):
            item = stripped[2:].strip()
            if item:
                items.append(item)
    return items


class NodeLifecycle:
    def __init__(
        self,
        store: GraphStore,
        content: ContentStore,
        config: LifecycleConfig | None = None,
        dispatch_hook: DispatchHook | None = None,
    ) -> None:
        self.store = store
        self.content = content
        self.config = config or LifecycleConfig()
        self.dispatch_hook = dispatch_hook

    def _attach_child(
        self, graph: Graph, parent: Node, child: Node, index: int | None = None
    ) -> str | None:
        """Link ``child`` under ``parent``. Returns the parent's new status if it moved."""
        if index is None:
            parent.children.append(child.id)
        else:
            parent.children.insert(index, child.id)
        graph.nodes[child.id] = child
        parent.touch()
        if parent.type == P and parent.status in (PlanningStatus.PENDING, PlanningStatus.PLANNING):
            parent.status = PlanningStatus.MONITORING
            return parent.status.value
        return None

    def create(
        self,
        workspace_id: str,
        parent_id: str,
        node_type: NodeType | str,
        title: str,
        requirement: str = "",
        references: Sequence[Reference | str] = (),
        role: NodeRole | str | None = None,
    ) -> dict[str, Any]:
        node_type = _parse_enum(NodeType, node_type, "node type")
        node_role = _parse_enum(NodeRole, role, "role") if role else None
        title = validate_title(title, self.config.max_title_length)

        with self.store.transaction(workspace_id) as txn:
            graph = txn.graph
            parent = _require_node(graph, parent_id, "Parent node")
            if parent.type == E:
                raise ExecutionCannotHaveChildren(
                    f"Execution node '{parent_id}' cannot have children.",
                    details={"parent_id": parent_id},
                )
            if parent.is_terminal:
                raise InvalidOperation(
                    f"Parent node '{parent_id}' is {parent.status.value}; reopen it first.",
                    details={"parent_id": parent_id, "status": parent.status.value},
                )
            node = Node(
                id=generate_id("node"),
                type=node_type,
                parent_id=parent_id,
                status=parse_status(node_type, "pending"),
                role=node_role,
            )
            node.references = merge_references(graph, [], references)
            parent_status = self._attach_child(graph, parent, node)

        self.content.write_info(
            workspace_id, node.id, NodeInfo(title=title, requirement=requirement)
        )
        self.content.append_log(workspace_id, f"created {node_type.value} node", node_id=node.id)
        logger.info(
            "node_created",
            extra={"workspace_id": workspace_id, "node_id": node.id, "parent_id": parent_id},
        )
        return {
            "node_id": node.id,
            "parent_id": parent_id,
            "type": node.type.value,
            "status": node.status.value,
            "parent_status": parent_status,
        }

    def get(self, workspace_id: str, node_id: str, include_log: bool = True) -> dict[str, Any]:
        graph = self.store.read_graph(workspace_id)
        node = _require_node(graph, node_id)
        info = self.content.read_info(workspace_id, node_id)
        payload = node.to_dict()
        payload.update(
            {
                "title": info.title,
                "requirement": info.requirement,
                "notes": info.notes,
                "allowed_actions": allowed_actions(node, self.config.allow_reopen),
            }
        )
        if include_log:
            payload["log"] = [
                entry.to_dict() for entry in self.content.read_log(workspace_id, node_id)
            ]
        return payload

    def list(
        self, workspace_id: str, root_id: str | None = None, depth: int | None = None
    ) -> dict[str, Any]:
        graph = self.store.read_graph(workspace_id)
        start = _require_node(graph, root_id or graph.workspace.root_node_id)

        def summary(node: Node) -> dict[str, Any]:
            return {
                "id": node.id,
                "type": node.type.value,
                "title": self.content.read_info(workspace_id, node.id).title,
                "status": node.status.value,
                "isolate": node.isolate,
                "children": [],
            }

        tree = summary(start)
        stack: list[tuple[Node, dict[str, Any], int]] = [(start, tree, 0)]
        while stack:
            node, entry, level = stack.pop()
            if depth is not None and level >= depth:
                continue
            for child_id in node.children:
                child = graph.get(child_id)
                if child is None:
                    logger.warning("missing_child_skipped", extra={"node_id": child_id})
                    continue
                child_entry = summary(child)
                entry["children"].append(child_entry)
                stack.append((child, child_entry, level + 1))
        return tree

    def transition(
        self,
        workspace_id: str,
        node_id: str,
        action: Action | str,
        conclusion: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        action = _parse_enum(Action, action, "action")
        conclusion = conclusion.strip() if conclusion else None
        cascade: list[dict[str, Any]] = []

        with self.store.transaction(workspace_id) as txn:
            graph = txn.graph
            node = _require_node(graph, node_id)
            previous = node.status
            target = TRANSITIONS.get((node.type, previous.value, action))
            if target is None or (
                node.type == E and action == Action.REOPEN and not self.config.allow_reopen
            ):
                raise InvalidTransition(
                    f"Cannot {action.value} a {node.type.value} node in status {previous.value}.",
                    details={
                        "node_id": node_id,
                        "status": previous.value,
                        "action": action.value,
                        "allowed_actions": allowed_actions(node, self.config.allow_reopen),
                    },
                )
            if target in TERMINAL_STATUSES and not conclusion:
                raise ConclusionRequired(
                    f"Moving node '{node_id}' to {target} requires a conclusion.",
                    details={"node_id": node_id, "target_status": target},
                )
            if node.type == P and action == Action.COMPLETE:
                open_children = [
                    child_id
                    for child_id in node.children
                    if child_id in graph.nodes and not graph.nodes[child_id].is_terminal
                ]
                if open_children:
                    raise IncompleteChildren(
                        f"Node '{node_id}' still has unfinished children.",
                        details={"node_id": node_id, "children": open_children},
                    )

            if self.dispatch_hook is not None and graph.workspace.dispatch is not None:
                self.dispatch_hook(graph, node, action)

            node.status = parse_status(node.type, target)
            if action in (Action.RETRY, Action.REOPEN):
                node.conclusion = None
            elif conclusion:
                node.conclusion = conclusion
            node.touch()

            if node.role == NodeRole.INFO_COLLECTION and target == "completed":
                cascade = self._propagate_info(graph, node)

        event = f"{action.value}: {previous.value} -> {node.status.value}"
        if reason:
            event = f"{event} ({reason})"
        self.content.append_log(workspace_id, event, node_id=node_id)
        logger.info(
            "node_transitioned",
            extra={
                "workspace_id": workspace_id,
                "node_id": node_id,
                "from_status": previous.value,
                "to_status": node.status.value,
            },
        )
        return {
            "node_id": node_id,
            "previous_status": previous.value,
            "current_status": node.status.value,
            "conclusion": node.conclusion,
            "cascade_updates": cascade,
        }

    def _propagate_info(self, graph: Graph, node: Node) -> list[dict[str, Any]]:
        workspace = graph.workspace
        text = node.conclusion or ""
        added_rules = []
        for rule in _section_items(text, "rules"):
            if rule not in workspace.rules:
                workspace.rules.append(rule)
                added_rules.append(rule)

        known = {doc.target for doc in workspace.docs}
        added_docs = []
        candidates: list[Reference] = [
            Reference(target=ref.target, description=ref.description)
            for ref in node.active_references()
        ]
        for item in _section_items(text, "docs"):
            target, _, description = item.partition(" - ")
            candidates.append(Reference(target=target.strip(), description=description.strip()))
        for doc in candidates:
            if not doc.target or doc.target in known:
                continue
            known.add(doc.target)
            workspace.docs.append(doc)
            added_docs.append(doc.target)

        if not (added_rules or added_docs):
            return []
        workspace.updated_at = node.updated_at
        return [
            {
                "kind": "workspace",
                "workspace_id": workspace.id,
                "rules_added": added_rules,
                "docs_added": added_docs,
            }
        ]

    def split(
        self,
        workspace_id: str,
        node_id: str,
        title: str,
        requirement: str = "",
        inherit_context: bool = True,
        references: Iterable[Reference | str] = (),
    ) -> dict[str, Any]:
        title = validate_title(title, self.config.max_title_length)

        with self.store.transaction(workspace_id) as txn:
            graph = txn.graph
            node = _require_node(graph, node_id)
            if node.status not in IN_PROGRESS[node.type]:
                raise InvalidOperation(
                    f"Node '{node_id}' is {node.status.value}; only in-progress nodes can be split.",
                    details={"node_id": node_id, "status": node.status.value},
                )
            inherited = (
                [
                    build_reference(graph, ref.target, ref.description)
                    for ref in node.active_references()
                ]
                if inherit_context
                else []
            )
            new_node = Node(
                id=generate_id("node"),
                type=E,
                parent_id=None,
                status=ExecutionStatus.PENDING,
            )
            new_node.references = merge_references(graph, inherited, references)
            if node.type == P:
                new_node.parent_id = node.id
                self._attach_child(graph, node, new_node)
            else:
                parent = graph.nodes[node.parent_id]
                new_node.parent_id = parent.id
                self._attach_child(
                    graph, parent, new_node, index=parent.children.index(node.id) + 1
                )

        self.content.write_info(
            workspace_id, new_node.id, NodeInfo(title=title, requirement=requirement)
        )
        self.content.append_log(workspace_id, f"split from {node_id}", node_id=new_node.id)
        logger.info(
            "node_split",
            extra={"workspace_id": workspace_id, "node_id": node_id, "new_node_id": new_node.id},
        )
        return {
            "node_id": new_node.id,
            "parent_id": new_node.parent_id,
            "split_from": node_id,
            "inherited_references": [ref.target for ref in inherited],
        }

    def move(self, workspace_id: str, node_id: str, new_parent_id: str) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            graph = txn.graph
            node = _require_node(graph, node_id)
            if node.parent_id is None:
                raise InvalidOperation("The root node cannot be moved.")
            new_parent = _require_node(graph, new_parent_id, "Target parent")
            old_parent_id = node.parent_id
            if new_parent_id == old_parent_id:
                txn.changed = False
                return {
                    "node_id": node_id,
                    "previous_parent_id": old_parent_id,
                    "parent_id": new_parent_id,
                    "moved": False,
                }
            if new_parent.type == E:
                raise ExecutionCannotHaveChildren(
                    f"Execution node '{new_parent_id}' cannot have children."
                )
            if new_parent_id == node_id or node_id in graph.ancestors(new_parent_id):
                raise InvalidOperation(
                    f"Cannot move node '{node_id}' under itself or one of its descendants.",
                    details={"node_id": node_id, "new_parent_id": new_parent_id},
                )
            if new_parent.is_terminal:
                raise InvalidOperation(
                    f"Target parent '{new_parent_id}' is {new_parent.status.value}."
                )
            old_parent = graph.nodes[old_parent_id]
            old_parent.children.remove(node_id)
            old_parent.touch()
            node.parent_id = new_parent_id
            node.touch()
            self._attach_child(graph, new_parent, node)

        self.content.append_log(
            workspace_id, f"moved from {old_parent_id} to {new_parent_id}", node_id=node_id
        )
        logger.info(
            "node_moved",
            extra={"workspace_id": workspace_id, "node_id": node_id, "parent_id": new_parent_id},
        )
        return {
            "node_id": node_id,
            "previous_parent_id": old_parent_id,
            "parent_id": new_parent_id,
            "moved": True,
        }

    def delete(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            graph = txn.graph
            node = _require_node(graph, node_id)
            if node.parent_id is None:
                raise InvalidOperation("The root node cannot be deleted.")
            removed = graph.descendants(node_id)
            parent = graph.nodes[node.parent_id]
            parent.children.remove(node_id)
            parent.touch()
            for removed_id in removed:
                del graph.nodes[removed_id]

            gone = set(removed)
            dropped_references = 0
            for survivor in graph.nodes.values():
                kept = [ref for ref in survivor.references if ref.target not in gone]
                if len(kept) != len(survivor.references):
                    dropped_references += len(survivor.references) - len(kept)
                    survivor.references = kept
                    survivor.touch()
            if graph.workspace.current_focus in gone:
                graph.workspace.current_focus = graph.workspace.root_node_id

        for removed_id in removed:
            self.content.delete_node(workspace_id, removed_id)
        self.content.append_log(
            workspace_id, f"deleted {len(removed)} node(s) under {node_id}", node_id=parent.id
        )
        logger.info(
            "node_deleted",
            extra={"workspace_id": workspace_id, "node_id": node_id, "count": len(removed)},
        )
        return {"deleted": removed, "references_removed": dropped_references}

    def isolate(self, workspace_id: str, node_id: str, value: bool) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            node = _require_node(txn.graph, node_id)
            previous = node.isolate
            if previous == value:
                txn.changed = False
            else:
                node.isolate = value
                node.touch()
        return {"node_id": node_id, "isolate": value, "previous": previous}

    def update(
        self,
        workspace_id: str,
        node_id: str,
        title: str | None = None,
        requirement: str | None = None,
        note: str | None = None,
    ) -> dict[str, Any]:
        if title is not None:
            title = validate_title(title, self.config.max_title_length)
        with self.store.transaction(workspace_id) as txn:
            _require_node(txn.graph, node_id).touch()

        info = self.content.read_info(workspace_id, node_id)
        updated: list[str] = []
        if title is not None:
            info.title = title
            updated.append("title")
        if requirement is not None:
            info.requirement = requirement
            updated.append("requirement")
        if note is not None:
            info.notes = note
            updated.append("notes")
        if updated:
            self.content.write_info(workspace_id, node_id, info)
            self.content.append_log(
                workspace_id, f"updated {', '.join(updated)}", node_id=node_id
            )
        return {"node_id": node_id, "updated": updated}

    def focus(self, workspace_id: str, node_id: str) -> dict[str, Any]:
        with self.store.transaction(workspace_id) as txn:
            _require_node(txn.graph, node_id)
            previous = txn.graph.workspace.current_focus
            txn.graph.workspace.current_focus = node_id
        return {"previous_focus": previous, "current_focus": node_id}
