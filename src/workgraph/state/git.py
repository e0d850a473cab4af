from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from workgraph.errors import DispatchFailed, MergeConflict

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Commit:
    hash: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"hash": self.hash, "message": self.message}


class GitAdapter:
    """Thin wrapper over the ``git`` executable used by dispatch mode.

    Every call is bounded by ``timeout_seconds``. Failures surface as
    ``DispatchFailed``; reconciliation conflicts restore the previous head and
    surface as ``MergeConflict``.
    """

    def __init__(self, repo_root: Path, *, timeout_seconds: float = 60.0) -> None:
        self.repo_root = repo_root.resolve()
        self.timeout_seconds = timeout_seconds

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        logger.debug("git_command", extra={"git_args": " ".join(args)})
        try:
            proc = subprocess.run(
                command,
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise DispatchFailed(
                f"git {args[0]} timed out after {self.timeout_seconds}s.",
                command=command,
            ) from exc
        except OSError as exc:
            raise DispatchFailed(f"Unable to run git: {exc}", command=command) from exc
        if check and proc.returncode != 0:
            raise DispatchFailed(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed.",
                command=command,
                exit_code=proc.returncode,
            )
        return proc

    def is_git_repo(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except DispatchFailed:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def head_commit(self, ref: str = "HEAD") -> str:
        return self._run_git(["rev-parse", ref]).stdout.strip()

    def is_clean(self) -> bool:
        return not self._run_git(["status", "--porcelain"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        proc = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return proc.returncode == 0

    def create_branch(self, name: str, *, checkout: bool = True) -> None:
        if checkout:
            self._run_git(["checkout", "-b", name])
        else:
            self._run_git(["branch", name])

    def checkout(self, name: str) -> None:
        self._run_git(["checkout", name])

    def commit_all(self, message: str) -> str | None:
        """Stage everything and commit. Returns the new commit, or None if clean."""
        self._run_git(["add", "-A"])
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return None
        self._run_git(["commit", "-m", message])
        return self.head_commit()

    def reset_mixed(self, ref: str) -> None:
        """Move the current branch to ``ref`` keeping every change in the working tree."""
        self._run_git(["reset", "--mixed", "-q", ref])

    def list_commits(self, base: str, head: str) -> list[Commit]:
        proc = self._run_git(["log", "--reverse", "--pretty=format:%H%x09%s", f"{base}..{head}"])
        commits: list[Commit] = []
        for line in proc.stdout.splitlines():
            commit_hash, _, subject = line.partition("\t")
            if commit_hash.strip():
                commits.append(Commit(hash=commit_hash.strip(), message=subject.strip()))
        return commits

    def delete_branch(self, name: str) -> bool:
        if not self.branch_exists(name):
            logger.warning("branch_already_gone", extra={"branch": name})
            return False
        self._run_git(["branch", "-D", name])
        return True

    def _restore(self, branch: str, head: str, abort: list[str] | None) -> None:
        if abort:
            self._run_git(abort, check=False)
        self._run_git(["checkout", "-f", branch], check=False)
        self._run_git(["reset", "--hard", head], check=False)

    def rebase_merge(self, target: str, source: str) -> None:
        """Replay ``source`` onto ``target`` and fast-forward ``target`` to it."""
        source_head = self.head_commit(source)
        proc = self._run_git(["rebase", target, source], check=False)
        if proc.returncode != 0:
            self._restore(source, source_head, ["rebase", "--abort"])
            self.checkout(target)
            raise MergeConflict(
                "Rebase of the process branch hit a conflict. Branches restored.",
                command=["git", "rebase", target, source],
                exit_code=proc.returncode,
            )
        self.checkout(target)
        self._run_git(["merge", "--ff-only", source])

    def squash_merge(self, target: str, source: str, message: str) -> str | None:
        self.checkout(target)
        target_head = self.head_commit()
        proc = self._run_git(["merge", "--squash", source], check=False)
        if proc.returncode != 0:
            self._restore(target, target_head, None)
            raise MergeConflict(
                "Squash merge hit a conflict. Working line restored.",
                command=["git", "merge", "--squash", source],
                exit_code=proc.returncode,
            )
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            return None
        self._run_git(["commit", "-m", message])
        return self.head_commit()

    def cherry_pick(self, target: str, commits: list[str]) -> None:
        self.checkout(target)
        target_head = self.head_commit()
        for commit in commits:
            proc = self._run_git(["cherry-pick", "--allow-empty", commit], check=False)
            if proc.returncode != 0:
                self._restore(target, target_head, ["cherry-pick", "--abort"])
                raise MergeConflict(
                    f"Cherry-pick of {commit[:8]} hit a conflict. Working line restored.",
                    command=["git", "cherry-pick", commit],
                    exit_code=proc.returncode,
                )
