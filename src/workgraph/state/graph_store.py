from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from workgraph.errors import Conflict, GraphCorrupted, NotFound, StoreLockTimeout
from workgraph.models import Graph, utcnow_iso

logger = logging.getLogger(__name__)

GRAPH_FILE = "graph.json"


@dataclass(slots=True)
class GraphTransaction:
    """One read-modify-write cycle against a workspace graph.

    The graph is written back when the ``with`` block exits normally and
    ``changed`` is still true. Any exception leaves the stored graph as it was.
    """

    graph: Graph
    revision: int
    changed: bool = True


class GraphStore:
    SCHEMA_VERSION = 1

    def __init__(self, root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.root = root.resolve()
        self.lock_timeout_seconds = lock_timeout_seconds

    def workspace_dir(self, workspace_id: str) -> Path:
        return self.root / workspace_id

    def _graph_file(self, workspace_id: str) -> Path:
        return self.workspace_dir(workspace_id) / GRAPH_FILE

    def _lock_file(self, workspace_id: str) -> Path:
        return self.workspace_dir(workspace_id) / ".lock"

    def exists(self, workspace_id: str) -> bool:
        return self._graph_file(workspace_id).exists()

    def list_workspaces(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and (entry / GRAPH_FILE).exists()
        )

    @contextmanager
    def _workspace_lock(self, workspace_id: str) -> Iterator[None]:
        lock_file = self._lock_file(workspace_id)
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StoreLockTimeout(
                        f"Timed out waiting for the lock on workspace '{workspace_id}'."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, workspace_id: str) -> dict[str, Any]:
        path = self._graph_file(workspace_id)
        if not path.exists():
            raise NotFound(f"Workspace '{workspace_id}' does not exist.")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.error("graph_parse_failed", extra={"workspace_id": workspace_id})
            raise GraphCorrupted(
                f"Graph of workspace '{workspace_id}' is not readable UTF-8 JSON."
            ) from exc
        if not (
            isinstance(raw, dict)
            and "schema_version" in raw
            and "revision" in raw
            and "data" in raw
        ):
            raise GraphCorrupted(f"Graph of workspace '{workspace_id}' has no envelope.")
        return raw

    def read_graph(self, workspace_id: str) -> Graph:
        graph, _revision = self.read_graph_with_revision(workspace_id)
        return graph

    def read_graph_with_revision(self, workspace_id: str) -> tuple[Graph, int]:
        envelope = self._read_envelope(workspace_id)
        try:
            revision = int(envelope["revision"])
        except (TypeError, ValueError) as exc:
            raise GraphCorrupted(f"Graph of workspace '{workspace_id}' has a bad revision.") from exc
        return Graph.from_dict(envelope["data"]), revision

    def revision(self, workspace_id: str) -> int:
        return self.read_graph_with_revision(workspace_id)[1]

    def _write_atomic(self, path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".graph-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            Path(tmp).replace(path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _write(self, workspace_id: str, graph: Graph, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": graph.to_dict(),
        }
        self._write_atomic(self._graph_file(workspace_id), envelope)

    def write_graph(
        self, workspace_id: str, graph: Graph, expected_revision: int | None = None
    ) -> int:
        """Replace the whole graph. Returns the new revision."""
        graph.validate()
        with self._workspace_lock(workspace_id):
            current_revision = self.revision(workspace_id) if self.exists(workspace_id) else 0
            if expected_revision is not None and expected_revision != current_revision:
                raise Conflict(
                    f"Concurrent update detected for workspace '{workspace_id}'."
                )
            self._write(workspace_id, graph, current_revision + 1)
            return current_revision + 1

    def _ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        # Keep store files out of the project's git history and checkouts.
        ignore_file = self.root / ".gitignore"
        if not ignore_file.exists():
            ignore_file.write_text("*\n", encoding="utf-8")

    def create_graph(self, workspace_id: str, graph: Graph) -> None:
        graph.validate()
        self._ensure_root()
        with self._workspace_lock(workspace_id):
            if self.exists(workspace_id):
                raise Conflict(f"Workspace '{workspace_id}' already exists.")
            self._write(workspace_id, graph, 1)

    @contextmanager
    def transaction(self, workspace_id: str) -> Iterator[GraphTransaction]:
        if not self.exists(workspace_id):
            raise NotFound(f"Workspace '{workspace_id}' does not exist.")
        with self._workspace_lock(workspace_id):
            graph, revision = self.read_graph_with_revision(workspace_id)
            txn = GraphTransaction(graph=graph, revision=revision)
            yield txn
            if txn.changed:
                graph.validate()
                self._write(workspace_id, graph, revision + 1)
                logger.debug(
                    "graph_written",
                    extra={"workspace_id": workspace_id, "revision": revision + 1},
                )
