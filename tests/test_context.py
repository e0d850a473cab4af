from pathlib import Path

import pytest

from workgraph.context import ContextResolver
from workgraph.errors import NotFound
from workgraph.lifecycle import NodeLifecycle
from workgraph.references import ReferenceRegistry
from workgraph.state import ContentStore, GraphStore
from workgraph.workspace import WorkspaceService


def _setup(tmp_path: Path):
    store = GraphStore(tmp_path)
    content = ContentStore(tmp_path)
    workspaces = WorkspaceService(store, content)
    ws = workspaces.init("ctx", "ROOT GOAL TEXT", rules=["Keep it small"], docs=["docs/guide.md"])[
        "workspace_id"
    ]
    return (
        ContextResolver(store, content),
        NodeLifecycle(store, content),
        ReferenceRegistry(store, content),
        workspaces,
        store,
        ws,
    )


def test_isolated_ancestor_truncates_chain(tmp_path: Path) -> None:
    resolver, lifecycle, _registry, _workspaces, _store, ws = _setup(tmp_path)
    a = lifecycle.create(ws, "root", "planning", "A", "A requirement")["node_id"]
    b = lifecycle.create(ws, a, "planning", "B", "B requirement")["node_id"]
    c = lifecycle.create(ws, b, "execution", "C", "C requirement")["node_id"]
    lifecycle.isolate(ws, b, True)

    result = resolver.get(ws, c)

    assert [item["node_id"] for item in result["chain"]] == [b, c]
    assert [item["requirement"] for item in result["chain"]] == ["B requirement", "C requirement"]
    assert result["isolated"] is True
    assert "ROOT GOAL TEXT" not in repr(result)
    assert "A requirement" not in repr(result)


def test_chain_runs_root_to_node_without_isolation(tmp_path: Path) -> None:
    resolver, lifecycle, _registry, _workspaces, _store, ws = _setup(tmp_path)
    a = lifecycle.create(ws, "root", "planning", "A", "A requirement")["node_id"]
    c = lifecycle.create(ws, a, "execution", "C")["node_id"]
    lifecycle.update(ws, a, note="watch the latency")

    result = resolver.get(ws, c)

    assert [item["node_id"] for item in result["chain"]] == ["root", a, c]
    assert result["chain"][0]["requirement"] == "ROOT GOAL TEXT"
    assert result["chain"][1]["note"] == "watch the latency"
    assert result["workspace"]["goal"] == "ROOT GOAL TEXT"
    assert result["workspace"]["rules"] == ["Keep it small"]
    assert result["workspace"]["rules_hash"]
    assert [doc["target"] for doc in result["workspace"]["docs"]] == ["docs/guide.md"]
    assert result["workspace"]["dispatch_mode"] == "disabled"


def test_references_union_skips_expired_and_duplicates(tmp_path: Path) -> None:
    resolver, lifecycle, registry, _workspaces, _store, ws = _setup(tmp_path)
    a = lifecycle.create(ws, "root", "planning", "A")["node_id"]
    c = lifecycle.create(ws, a, "execution", "C")["node_id"]
    registry.add(ws, a, "docs/shared.md")
    registry.add(ws, a, "docs/old.md")
    registry.expire(ws, a, "docs/old.md")
    registry.add(ws, c, "docs/shared.md")
    registry.add(ws, c, "docs/own.md")

    result = resolver.get(ws, c)

    assert [ref["target"] for ref in result["references"]] == ["docs/shared.md", "docs/own.md"]
    assert all(ref["target"] != "docs/old.md" for ref in result["chain"][1]["references"])


def test_referenced_nodes_and_memos_are_summarized(tmp_path: Path) -> None:
    resolver, lifecycle, registry, workspaces, _store, ws = _setup(tmp_path)
    other = lifecycle.create(ws, "root", "execution", "Other", "Other requirement")["node_id"]
    target = lifecycle.create(ws, "root", "execution", "Target")["node_id"]
    memo = workspaces.memo_create(ws, "Notes", "short", "long body")
    registry.add(ws, target, other)
    registry.add(ws, target, memo["target"])

    result = resolver.get(ws, target)

    assert result["referenced_nodes"][0]["node_id"] == other
    assert result["referenced_nodes"][0]["requirement"] == "Other requirement"
    assert result["referenced_nodes"][1] == {
        "memo_id": memo["memo_id"],
        "title": "Notes",
        "summary": "short",
        "content": "long body",
    }


def test_child_conclusions_follow_insertion_order(tmp_path: Path) -> None:
    resolver, lifecycle, _registry, _workspaces, _store, ws = _setup(tmp_path)
    plan = lifecycle.create(ws, "root", "planning", "plan")["node_id"]
    first = lifecycle.create(ws, plan, "execution", "first")["node_id"]
    second = lifecycle.create(ws, plan, "execution", "second")["node_id"]
    third = lifecycle.create(ws, plan, "execution", "third")["node_id"]
    for node_id in (second, first):
        lifecycle.transition(ws, node_id, "start")
    lifecycle.transition(ws, second, "fail", conclusion="second failed")
    lifecycle.transition(ws, first, "complete", conclusion="first done")

    result = resolver.get(ws, plan)

    assert result["child_conclusions"] == [
        {"node_id": first, "title": "first", "status": "completed", "conclusion": "first done"},
        {"node_id": second, "title": "second", "status": "failed", "conclusion": "second failed"},
    ]
    assert third not in {item["node_id"] for item in result["child_conclusions"]}


def test_log_tail_options(tmp_path: Path) -> None:
    resolver, lifecycle, _registry, workspaces, _store, ws = _setup(tmp_path)
    node = lifecycle.create(ws, "root", "execution", "impl")["node_id"]
    for index in range(5):
        workspaces.log_append(ws, f"event {index}", node_id=node)

    tail = resolver.get(ws, node, max_log_entries=2)["chain"][-1]["log"]
    assert [entry["event"] for entry in tail] == ["event 3", "event 4"]

    reversed_tail = resolver.get(ws, node, max_log_entries=2, reverse_log=True)["chain"][-1]["log"]
    assert [entry["event"] for entry in reversed_tail] == ["event 4", "event 3"]

    assert "log" not in resolver.get(ws, node, include_log=False)["chain"][-1]


def test_context_is_read_only(tmp_path: Path) -> None:
    resolver, lifecycle, _registry, _workspaces, store, ws = _setup(tmp_path)
    node = lifecycle.create(ws, "root", "execution", "impl")["node_id"]
    revision = store.revision(ws)

    resolver.get(ws, node)

    assert store.revision(ws) == revision
    with pytest.raises(NotFound):
        resolver.get(ws, "node-missing")
