"""Records stored in a workspace graph document.

The graph document is the single authority for structure and status. Free
text (titles, requirements, notes, logs) lives in the content store.
"""

from __future__ import annotations

import hashlib
import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from workgraph.errors import GraphCorrupted

GRAPH_VERSION = "1.0"
ROOT_NODE_ID = "root"
MEMO_PREFIX = "memo://"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def generate_id(prefix: str) -> str:
    return f"{prefix}-{_base36(time.time_ns() // 1_000_000)}-{secrets.token_hex(3)}"


class NodeType(StrEnum):
    PLANNING = "planning"
    EXECUTION = "execution"


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    IMPLEMENTING = "implementing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanningStatus(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


NodeStatus = ExecutionStatus | PlanningStatus

STATUS_SETS: dict[NodeType, type[StrEnum]] = {
    NodeType.EXECUTION: ExecutionStatus,
    NodeType.PLANNING: PlanningStatus,
}

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


class Action(StrEnum):
    START = "start"
    SUBMIT = "submit"
    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"
    REOPEN = "reopen"
    CANCEL = "cancel"


class NodeRole(StrEnum):
    INFO_COLLECTION = "info_collection"
    VALIDATION = "validation"
    SUMMARY = "summary"


class ReferenceStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"


class DispatchStatus(StrEnum):
    EXECUTING = "executing"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"


class DispatchMode(StrEnum):
    DISABLED = "disabled"
    ENABLED = "enabled"
    ENABLED_GIT = "enabled-git"


class MergeStrategy(StrEnum):
    SEQUENTIAL = "sequential"
    SQUASH = "squash"
    CHERRY_PICK = "cherry-pick"
    SKIP = "skip"


def parse_status(node_type: NodeType, value: str) -> NodeStatus:
    status_set = STATUS_SETS[node_type]
    try:
        return status_set(value)  # type: ignore[return-value]
    except ValueError as exc:
        raise GraphCorrupted(
            f"Status '{value}' is not legal for {node_type.value} nodes."
        ) from exc


@dataclass(slots=True)
class Reference:
    target: str
    description: str = ""
    status: ReferenceStatus = ReferenceStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == ReferenceStatus.ACTIVE

    @property
    def is_memo(self) -> bool:
        return self.target.startswith(MEMO_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "description": self.description,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reference:
        return cls(
            target=str(data["target"]),
            description=str(data.get("description", "")),
            status=ReferenceStatus(data.get("status", ReferenceStatus.ACTIVE.value)),
        )


@dataclass(slots=True)
class NodeDispatch:
    status: DispatchStatus
    start_marker: str
    end_marker: str | None = None
    branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "start_marker": self.start_marker,
            "end_marker": self.end_marker,
            "branch": self.branch,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeDispatch:
        return cls(
            status=DispatchStatus(data["status"]),
            start_marker=str(data.get("start_marker", "")),
            end_marker=data.get("end_marker"),
            branch=data.get("branch"),
        )


@dataclass(slots=True)
class Node:
    id: str
    type: NodeType
    parent_id: str | None
    status: NodeStatus
    children: list[str] = field(default_factory=list)
    isolate: bool = False
    references: list[Reference] = field(default_factory=list)
    conclusion: str | None = None
    role: NodeRole | None = None
    dispatch: NodeDispatch | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def is_terminal(self) -> bool:
        return self.status.value in TERMINAL_STATUSES

    def find_reference(self, target: str) -> Reference | None:
        for reference in self.references:
            if reference.target == target:
                return reference
        return None

    def active_references(self) -> list[Reference]:
        return [reference for reference in self.references if reference.is_active]

    def touch(self, at: str | None = None) -> None:
        self.updated_at = at or utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "status": self.status.value,
            "isolate": self.isolate,
            "references": [reference.to_dict() for reference in self.references],
            "conclusion": self.conclusion,
            "role": self.role.value if self.role else None,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        node_type = NodeType(data["type"])
        role = data.get("role")
        dispatch = data.get("dispatch")
        return cls(
            id=str(data["id"]),
            type=node_type,
            parent_id=data.get("parent_id"),
            status=parse_status(node_type, str(data["status"])),
            children=[str(child) for child in data.get("children", [])],
            isolate=bool(data.get("isolate", False)),
            references=[Reference.from_dict(item) for item in data.get("references", [])],
            conclusion=data.get("conclusion"),
            role=NodeRole(role) if role else None,
            dispatch=NodeDispatch.from_dict(dispatch) if dispatch else None,
            created_at=str(data.get("created_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class Memo:
    id: str
    title: str
    summary: str = ""
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Memo:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            summary=str(data.get("summary", "")),
            created_at=str(data.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class DispatchConfig:
    enabled: bool
    use_git: bool
    enabled_at: str = field(default_factory=utcnow_iso)
    original_branch: str | None = None
    process_branch: str | None = None
    backup_branches: list[str] = field(default_factory=list)
    timeout_seconds: float = 60.0

    @property
    def mode(self) -> DispatchMode:
        if not self.enabled:
            return DispatchMode.DISABLED
        return DispatchMode.ENABLED_GIT if self.use_git else DispatchMode.ENABLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "use_git": self.use_git,
            "enabled_at": self.enabled_at,
            "original_branch": self.original_branch,
            "process_branch": self.process_branch,
            "backup_branches": list(self.backup_branches),
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DispatchConfig:
        return cls(
            enabled=bool(data.get("enabled", False)),
            use_git=bool(data.get("use_git", False)),
            enabled_at=str(data.get("enabled_at") or utcnow_iso()),
            original_branch=data.get("original_branch"),
            process_branch=data.get("process_branch"),
            backup_branches=[str(item) for item in data.get("backup_branches", [])],
            timeout_seconds=float(data.get("timeout_seconds", 60.0)),
        )


@dataclass(slots=True)
class WorkspaceRecord:
    id: str
    name: str
    goal: str = ""
    root_node_id: str = ROOT_NODE_ID
    rules: list[str] = field(default_factory=list)
    docs: list[Reference] = field(default_factory=list)
    memos: dict[str, Memo] = field(default_factory=dict)
    current_focus: str | None = None
    dispatch: DispatchConfig | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def dispatch_mode(self) -> DispatchMode:
        if self.dispatch is None:
            return DispatchMode.DISABLED
        return self.dispatch.mode

    @property
    def rules_hash(self) -> str:
        if not self.rules:
            return ""
        digest = hashlib.sha256("\n".join(self.rules).encode("utf-8")).hexdigest()
        return digest[:8]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "root_node_id": self.root_node_id,
            "rules": list(self.rules),
            "docs": [doc.to_dict() for doc in self.docs],
            "memos": {memo_id: memo.to_dict() for memo_id, memo in self.memos.items()},
            "current_focus": self.current_focus,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkspaceRecord:
        dispatch = data.get("dispatch")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            goal=str(data.get("goal", "")),
            root_node_id=str(data.get("root_node_id") or ROOT_NODE_ID),
            rules=[str(rule) for rule in data.get("rules", [])],
            docs=[Reference.from_dict(item) for item in data.get("docs", [])],
            memos={
                str(memo_id): Memo.from_dict(item)
                for memo_id, item in (data.get("memos") or {}).items()
            },
            current_focus=data.get("current_focus"),
            dispatch=DispatchConfig.from_dict(dispatch) if dispatch else None,
            created_at=str(data.get("created_at") or utcnow_iso()),
            updated_at=str(data.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class Graph:
    workspace: WorkspaceRecord
    nodes: dict[str, Node]
    version: str = GRAPH_VERSION

    @property
    def root(self) -> Node:
        return self.nodes[self.workspace.root_node_id]

    def get(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def descendants(self, node_id: str) -> list[str]:
        """Return ``node_id`` and every id below it, pre-order, without recursion."""
        ordered: list[str] = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            node = self.nodes.get(current)
            if node is None:
                continue
            ordered.append(current)
            stack.extend(reversed(node.children))
        return ordered

    def ancestors(self, node_id: str) -> list[str]:
        """Return parent ids from the direct parent up to the root."""
        chain: list[str] = []
        seen = {node_id}
        current = self.nodes[node_id].parent_id
        while current is not None:
            if current in seen:
                raise GraphCorrupted(f"Cycle detected above node '{node_id}'.")
            seen.add(current)
            chain.append(current)
            parent = self.nodes.get(current)
            if parent is None:
                break
            current = parent.parent_id
        return chain

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "workspace": self.workspace.to_dict(),
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> Graph:
        if not isinstance(data, dict):
            raise GraphCorrupted("Graph document must be an object.")
        try:
            workspace = WorkspaceRecord.from_dict(data["workspace"])
            nodes = {
                str(node_id): Node.from_dict(item)
                for node_id, item in data["nodes"].items()
            }
        except GraphCorrupted:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise GraphCorrupted(f"Graph document is malformed: {exc}") from exc
        graph = cls(workspace=workspace, nodes=nodes, version=str(data.get("version", "")))
        graph.validate()
        return graph

    def validate(self) -> None:
        root_id = self.workspace.root_node_id
        roots = [node.id for node in self.nodes.values() if node.parent_id is None]
        if roots != [root_id]:
            raise GraphCorrupted(f"Expected single root '{root_id}', found {roots}.")
        seen_children: set[str] = set()
        for node in self.nodes.values():
            if node.type == NodeType.EXECUTION and node.children:
                raise GraphCorrupted(f"Execution node '{node.id}' has children.")
            for child_id in node.children:
                child = self.nodes.get(child_id)
                if child is None or child.parent_id != node.id or child_id in seen_children:
                    raise GraphCorrupted(
                        f"Child link '{node.id}' -> '{child_id}' is inconsistent."
                    )
                seen_children.add(child_id)
        if len(seen_children) != len(self.nodes) - 1:
            raise GraphCorrupted("Some nodes are not reachable from their parent.")
        if len(self.descendants(root_id)) != len(self.nodes):
            raise GraphCorrupted("Graph contains nodes detached from the root.")
