import json
import os
from pathlib import Path

import pytest

from workgraph.errors import Conflict, GraphCorrupted, NotFound, StoreLockTimeout
from workgraph.models import (
    Graph,
    Node,
    NodeType,
    PlanningStatus,
    WorkspaceRecord,
)
from workgraph.state import ContentStore, GraphStore, NodeInfo


def _graph(workspace_id: str = "ws-1") -> Graph:
    root = Node(id="root", type=NodeType.PLANNING, parent_id=None, status=PlanningStatus.PENDING)
    return Graph(workspace=WorkspaceRecord(id=workspace_id, name="demo"), nodes={"root": root})


def test_create_and_read_graph_roundtrip(tmp_path: Path) -> None:
    store = GraphStore(tmp_path / ".workgraph")
    store.create_graph("ws-1", _graph())

    graph = store.read_graph("ws-1")
    assert graph.workspace.name == "demo"
    assert graph.root.status == PlanningStatus.PENDING
    assert store.list_workspaces() == ["ws-1"]
    assert (tmp_path / ".workgraph" / ".gitignore").read_text(encoding="utf-8") == "*\n"


def test_create_graph_rejects_existing_workspace(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())

    with pytest.raises(Conflict):
        store.create_graph("ws-1", _graph())


def test_transaction_increments_revision(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())
    assert store.revision("ws-1") == 1

    with store.transaction("ws-1") as txn:
        txn.graph.workspace.goal = "ship it"

    assert store.revision("ws-1") == 2
    assert store.read_graph("ws-1").workspace.goal == "ship it"


def test_transaction_without_changes_does_not_write(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())

    with store.transaction("ws-1") as txn:
        txn.changed = False

    assert store.revision("ws-1") == 1


def test_transaction_discards_changes_on_error(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())

    with pytest.raises(RuntimeError):
        with store.transaction("ws-1") as txn:
            txn.graph.workspace.goal = "never stored"
            raise RuntimeError("boom")

    assert store.read_graph("ws-1").workspace.goal == ""
    assert store.revision("ws-1") == 1
    assert not (tmp_path / "ws-1" / ".lock").exists()


def test_write_graph_detects_concurrent_update(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())
    graph, revision = store.read_graph_with_revision("ws-1")
    store.write_graph("ws-1", graph, expected_revision=revision)

    with pytest.raises(Conflict):
        store.write_graph("ws-1", graph, expected_revision=revision)


def test_missing_workspace_is_not_found(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)

    with pytest.raises(NotFound):
        store.read_graph("ws-missing")
    with pytest.raises(NotFound):
        with store.transaction("ws-missing"):
            pass


def test_unparseable_graph_is_corrupted(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())
    graph_file = tmp_path / "ws-1" / "graph.json"
    graph_file.write_text("{not json", encoding="utf-8")

    with pytest.raises(GraphCorrupted):
        store.read_graph("ws-1")

    graph_file.write_bytes(b"\xff\xfe{bad")
    with pytest.raises(GraphCorrupted):
        store.read_graph("ws-1")


def test_structurally_invalid_graph_is_corrupted(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())
    path = tmp_path / "ws-1" / "graph.json"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    envelope["data"]["nodes"]["orphan"] = {
        "id": "orphan",
        "type": "execution",
        "parent_id": None,
        "status": "pending",
    }
    path.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(GraphCorrupted):
        store.read_graph("ws-1")


def test_illegal_status_for_type_is_corrupted(tmp_path: Path) -> None:
    store = GraphStore(tmp_path)
    store.create_graph("ws-1", _graph())
    path = tmp_path / "ws-1" / "graph.json"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    envelope["data"]["nodes"]["root"]["status"] = "implementing"
    path.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(GraphCorrupted):
        store.read_graph("ws-1")


def test_held_lock_times_out(tmp_path: Path) -> None:
    store = GraphStore(tmp_path, lock_timeout_seconds=0.05)
    store.create_graph("ws-1", _graph())
    lock_file = tmp_path / "ws-1" / ".lock"
    lock_file.write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(StoreLockTimeout):
        with store.transaction("ws-1"):
            pass
    assert lock_file.exists()


def test_content_store_info_and_log(tmp_path: Path) -> None:
    content = ContentStore(tmp_path)
    content.write_info(
        "ws-1", "node-a", NodeInfo(title="Parser", requirement="Parse input", notes="first pass")
    )
    content.append_log("ws-1", "started | with pipe", node_id="node-a", operator="agent")
    content.append_log("ws-1", "done", node_id="node-a")

    info = content.read_info("ws-1", "node-a")
    assert info.title == "Parser"
    assert info.requirement == "Parse input"
    assert info.notes == "first pass"

    entries = content.read_log("ws-1", "node-a")
    assert [entry.event for entry in entries] == ["started | with pipe", "done"]
    assert entries[0].operator == "agent"

    content.delete_node("ws-1", "node-a")
    assert content.read_info("ws-1", "node-a") == NodeInfo()
    assert content.read_log("ws-1", "node-a") == []


def test_content_store_memo_bodies(tmp_path: Path) -> None:
    content = ContentStore(tmp_path)
    content.write_memo("ws-1", "memo-1", "# Findings\n\nUse tokens.\n")

    assert content.read_memo("ws-1", "memo-1").startswith("# Findings")
    assert content.read_memo("ws-1", "memo-missing") == ""
