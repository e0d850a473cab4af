import subprocess
from pathlib import Path

import pytest

from workgraph.api import Workgraph, build_workgraph
from workgraph.errors import (
    Conflict,
    DispatchFailed,
    InvalidOperation,
    MergeConflict,
    ValidationError,
)


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "symbolic-ref", "HEAD", "refs/heads/main"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _commit_file(repo: Path, name: str, message: str) -> str:
    (repo / name).write_text(f"{name}\n", encoding="utf-8")
    _run(["git", "add", name], cwd=repo)
    _run(["git", "commit", "-m", message], cwd=repo)
    return _run(["git", "rev-parse", "HEAD"], cwd=repo)


def _branches(repo: Path) -> list[str]:
    return _run(["git", "branch", "--format=%(refname:short)"], cwd=repo).splitlines()


def _git_workspace(tmp_path: Path) -> tuple[Workgraph, Path, str, str]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    wg = build_workgraph(repo)
    ws = wg.workspace_init("dispatch", "Ship the feature")["workspace_id"]
    node = wg.node_create(ws, "root", "execution", "implement")["node_id"]
    return wg, repo, ws, node


def test_git_dispatch_squash_roundtrip(tmp_path: Path) -> None:
    wg, repo, ws, node = _git_workspace(tmp_path)
    seed_head = _run(["git", "rev-parse", "HEAD"], cwd=repo)

    enabled = wg.dispatch_enable(ws, use_git=True)
    assert enabled["mode"] == "enabled-git"
    process = enabled["config"]["process_branch"]
    assert process == f"workgraph/process/{ws}"
    assert _run(["git", "branch", "--show-current"], cwd=repo) == process
    assert enabled["config"]["original_branch"] == "main"

    wg.node_transition(ws, node, "start")
    dispatched = wg.lifecycle.store.read_graph(ws).nodes[node].dispatch
    assert dispatched.status == "executing"
    assert dispatched.start_marker == seed_head

    work = _commit_file(repo, "feature.txt", "feature work")
    wg.node_transition(ws, node, "complete", conclusion="feature done")
    dispatched = wg.lifecycle.store.read_graph(ws).nodes[node].dispatch
    assert dispatched.status == "passed"
    assert dispatched.end_marker == work

    query = wg.dispatch_disable_query(ws)
    assert [commit["hash"] for commit in query["process_commits"]] == [work]
    assert query["active_nodes"] == []
    assert query["strategies"] == ["sequential", "squash", "cherry-pick", "skip"]

    result = wg.dispatch_disable_execute(ws, "squash", commit_message="msg")

    assert result["mode"] == "disabled"
    assert _run(["git", "branch", "--show-current"], cwd=repo) == "main"
    assert _run(["git", "log", "-1", "--pretty=%s"], cwd=repo) == "msg"
    assert (repo / "feature.txt").exists()
    assert _branches(repo) == ["main"]
    assert set(result["deleted_branches"]) == {process, *enabled["config"]["backup_branches"]}
    assert wg.workspace_get(ws)["dispatch_mode"] == "disabled"


def test_squash_while_node_still_executing(tmp_path: Path) -> None:
    wg, repo, ws, node = _git_workspace(tmp_path)
    enabled = wg.dispatch_enable(ws, use_git=True)
    wg.node_transition(ws, node, "start")
    _commit_file(repo, "feature.txt", "feature work")

    result = wg.dispatch_disable_execute(ws, "squash", commit_message="msg")

    assert result["mode"] == "disabled"
    assert _run(["git", "log", "-1", "--pretty=%s"], cwd=repo) == "msg"
    assert _branches(repo) == ["main"]
    assert set(result["deleted_branches"]) == {
        enabled["config"]["process_branch"],
        *enabled["config"]["backup_branches"],
    }
    assert wg.workspace_get(ws)["dispatch_mode"] == "disabled"


def test_disable_refuses_uncommitted_changes(tmp_path: Path) -> None:
    wg, repo, ws, _node = _git_workspace(tmp_path)
    enabled = wg.dispatch_enable(ws, use_git=True)
    _commit_file(repo, "a.txt", "first")
    (repo / "seed.txt").write_text("UNCOMMITTED WORK\n", encoding="utf-8")

    with pytest.raises(DispatchFailed) as excinfo:
        wg.dispatch_disable_execute(ws, "sequential")

    assert not isinstance(excinfo.value, MergeConflict)
    assert "uncommitted" in str(excinfo.value)
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "UNCOMMITTED WORK\n"
    assert _run(["git", "branch", "--show-current"], cwd=repo) == enabled["config"]["process_branch"]
    assert wg.workspace_get(ws)["dispatch_mode"] == "enabled-git"


def test_failed_branch_setup_leaves_repository_untouched(tmp_path: Path) -> None:
    wg, repo, ws, _node = _git_workspace(tmp_path)
    _run(["git", "branch", f"workgraph/process/{ws}/blocker"], cwd=repo)
    (repo / "seed.txt").write_text("local edit\n", encoding="utf-8")

    with pytest.raises(DispatchFailed):
        wg.dispatch_enable(ws, use_git=True)

    assert _run(["git", "branch", "--show-current"], cwd=repo) == "main"
    assert _run(["git", "branch", "--list", "workgraph/backup/*"], cwd=repo) == ""
    assert _run(["git", "status", "--porcelain"], cwd=repo) == "M seed.txt"
    assert (repo / "seed.txt").read_text(encoding="utf-8") == "local edit\n"
    assert wg.workspace_get(ws)["dispatch_mode"] == "disabled"


def test_skip_keeps_branches_and_original_line(tmp_path: Path) -> None:
    wg, repo, ws, _node = _git_workspace(tmp_path)
    enabled = wg.dispatch_enable(ws, use_git=True)
    _commit_file(repo, "experiment.txt", "experiment")

    result = wg.dispatch_disable_execute(ws, "skip", keep_backup_branch=True)

    assert result["deleted_branches"] == []
    assert _run(["git", "branch", "--show-current"], cwd=repo) == "main"
    assert not (repo / "experiment.txt").exists()
    branches = _branches(repo)
    assert enabled["config"]["process_branch"] in branches
    assert enabled["config"]["backup_branches"][0] in branches


def test_sequential_replays_every_process_commit(tmp_path: Path) -> None:
    wg, repo, ws, _node = _git_workspace(tmp_path)
    wg.dispatch_enable(ws, use_git=True)
    first = _commit_file(repo, "a.txt", "first")
    second = _commit_file(repo, "b.txt", "second")

    result = wg.dispatch_disable_execute(ws, "sequential")

    assert result["commits"] == [first, second]
    assert _run(["git", "branch", "--show-current"], cwd=repo) == "main"
    assert _run(["git", "log", "-2", "--pretty=%s"], cwd=repo).splitlines() == ["second", "first"]


def test_cherry_pick_selects_commits_by_prefix(tmp_path: Path) -> None:
    wg, repo, ws, _node = _git_workspace(tmp_path)
    wg.dispatch_enable(ws, use_git=True)
    _commit_file(repo, "a.txt", "first")
    second = _commit_file(repo, "b.txt", "second")

    with pytest.raises(ValidationError):
        wg.dispatch_disable_execute(ws, "cherry-pick", commits=["0000000000"])
    assert wg.workspace_get(ws)["dispatch_mode"] == "enabled-git"

    result = wg.dispatch_disable_execute(ws, "cherry-pick", commits=[second[:10]])

    assert result["commits"] == [second]
    assert (repo / "b.txt").exists()
    assert not (repo / "a.txt").exists()


def test_enable_conflicts(tmp_path: Path) -> None:
    wg, _repo, ws, _node = _git_workspace(tmp_path)
    other = wg.workspace_init("other", "Another goal")["workspace_id"]
    wg.dispatch_enable(ws, use_git=False)

    with pytest.raises(Conflict):
        wg.dispatch_enable(ws, use_git=False)
    with pytest.raises(Conflict) as excinfo:
        wg.dispatch_enable(other, use_git=False)
    assert excinfo.value.details["workspace_id"] == ws


def test_enable_git_outside_repository_fails(tmp_path: Path) -> None:
    wg = build_workgraph(tmp_path)
    ws = wg.workspace_init("plain", "No repository here")["workspace_id"]

    with pytest.raises(DispatchFailed):
        wg.dispatch_enable(ws, use_git=True)
    assert wg.workspace_get(ws)["dispatch_mode"] == "disabled"


def test_dispatch_without_git_uses_timestamps(tmp_path: Path) -> None:
    wg = build_workgraph(tmp_path)
    ws = wg.workspace_init("plain", "No repository here")["workspace_id"]
    node = wg.node_create(ws, "root", "execution", "implement")["node_id"]

    assert wg.dispatch_enable(ws, use_git=False)["mode"] == "enabled"
    wg.node_transition(ws, node, "start")
    wg.node_transition(ws, node, "submit")

    dispatched = wg.lifecycle.store.read_graph(ws).nodes[node].dispatch
    assert dispatched.status == "testing"
    assert dispatched.start_marker.isdigit()
    assert wg.dispatch_status(ws)["active_nodes"] == [node]

    recorded = wg.dispatch_record_commit(ws, node, "manual-marker")
    assert recorded["end_marker"] == "manual-marker"

    query = wg.dispatch_disable_query(ws)
    assert query["mode"] == "enabled"
    assert query["process_commits"] == []
    assert query["active_nodes"] == [node]

    assert wg.dispatch_disable_execute(ws, "skip")["mode"] == "disabled"
    assert wg.dispatch_disable_query(ws) == {"mode": "disabled"}


def test_transitions_without_dispatch_leave_no_markers(tmp_path: Path) -> None:
    wg = build_workgraph(tmp_path)
    ws = wg.workspace_init("plain", "No dispatch")["workspace_id"]
    node = wg.node_create(ws, "root", "execution", "implement")["node_id"]

    wg.node_transition(ws, node, "start")

    assert wg.lifecycle.store.read_graph(ws).nodes[node].dispatch is None
    with pytest.raises(InvalidOperation):
        wg.dispatch_record_commit(ws, node)


def test_switch_mode_rules(tmp_path: Path) -> None:
    wg, repo, ws, node = _git_workspace(tmp_path)

    with pytest.raises(InvalidOperation):
        wg.dispatch_switch_mode(ws, True)

    wg.dispatch_enable(ws, use_git=False)
    wg.node_transition(ws, node, "start")
    with pytest.raises(Conflict):
        wg.dispatch_switch_mode(ws, True)

    wg.node_transition(ws, node, "complete", conclusion="done")
    assert wg.dispatch_switch_mode(ws, False)["changed"] is False

    switched = wg.dispatch_switch_mode(ws, True)
    assert switched == {"previous_mode": "enabled", "mode": "enabled-git", "changed": True}
    assert _run(["git", "branch", "--show-current"], cwd=repo) == f"workgraph/process/{ws}"

    status = wg.dispatch_status(ws)
    assert status["on_process_branch"] is True
    assert status["original_branch"] == "main"
