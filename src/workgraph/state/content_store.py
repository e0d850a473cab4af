from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from workgraph.models import utcnow_iso

logger = logging.getLogger(__name__)

LOG_HEADER = "| time | operator | event |\n| --- | --- | --- |\n"
_CELL_SPLIT = re.compile(r"(?<!\\)\|")
_SECTION_HEADINGS = {"## Requirement": "requirement", "## Notes": "notes"}


@dataclass(slots=True)
class NodeInfo:
    title: str = ""
    requirement: str = ""
    notes: str = ""


@dataclass(slots=True)
class LogEntry:
    time: str
    operator: str
    event: str

    def to_dict(self) -> dict[str, str]:
        return {"time": self.time, "operator": self.operator, "event": self.event}


def _escape_cell(value: str) -> str:
    return " ".join(value.replace("|", "\\|").split())


def _unescape_cell(value: str) -> str:
    return value.strip().replace("\\|", "|")


def render_info(info: NodeInfo) -> str:
    return (
        f"# {info.title}\n\n"
        f"## Requirement\n\n{info.requirement.strip()}\n\n"
        f"## Notes\n\n{info.notes.strip()}\n"
    )


def parse_info(text: str) -> NodeInfo:
    info = NodeInfo()
    sections: dict[str, list[str]] = {"requirement": [], "notes": []}
    current: str | None = None
    for line in text.splitlines():
        if current is None and not info.title and line.startswith("# "):
            info.title = line[2:].strip()
            continue
        heading = _SECTION_HEADINGS.get(line.strip())
        if heading:
            current = heading
            continue
        if current:
            sections[current].append(line)
    info.requirement = "\n".join(sections["requirement"]).strip()
    info.notes = "\n".join(sections["notes"]).strip()
    return info


def parse_log(text: str) -> list[LogEntry]:
    entries: list[LogEntry] = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("|") or line.startswith("| time") or line.startswith("| ---"):
            continue
        cells = [_unescape_cell(cell) for cell in _CELL_SPLIT.split(line.strip("|"))]
        if len(cells) != 3:
            logger.warning("log_line_skipped", extra={"line": line[:80]})
            continue
        entries.append(LogEntry(time=cells[0], operator=cells[1], event=cells[2]))
    return entries


class ContentStore:
    """Markdown files holding free text: node info, logs and memo bodies.

    Never the source of truth for status or structure.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _workspace_dir(self, workspace_id: str) -> Path:
        return self.root / workspace_id

    def _node_dir(self, workspace_id: str, node_id: str) -> Path:
        return self._workspace_dir(workspace_id) / "nodes" / node_id

    def _log_file(self, workspace_id: str, node_id: str | None) -> Path:
        if node_id is None:
            return self._workspace_dir(workspace_id) / "Log.md"
        return self._node_dir(workspace_id, node_id) / "Log.md"

    def read_info(self, workspace_id: str, node_id: str) -> NodeInfo:
        path = self._node_dir(workspace_id, node_id) / "Info.md"
        if not path.exists():
            return NodeInfo()
        return parse_info(path.read_text(encoding="utf-8"))

    def write_info(self, workspace_id: str, node_id: str, info: NodeInfo) -> None:
        path = self._node_dir(workspace_id, node_id) / "Info.md"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_info(info), encoding="utf-8")

    def delete_node(self, workspace_id: str, node_id: str) -> None:
        shutil.rmtree(self._node_dir(workspace_id, node_id), ignore_errors=True)

    def append_log(
        self,
        workspace_id: str,
        event: str,
        *,
        node_id: str | None = None,
        operator: str = "system",
    ) -> LogEntry:
        entry = LogEntry(time=utcnow_iso(), operator=operator, event=event)
        path = self._log_file(workspace_id, node_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(LOG_HEADER, encoding="utf-8")
        with path.open("a", encoding="utf-8") as handle:
            handle.write(
                f"| {_escape_cell(entry.time)} | {_escape_cell(entry.operator)} "
                f"| {_escape_cell(entry.event)} |\n"
            )
        return entry

    def read_log(self, workspace_id: str, node_id: str | None = None) -> list[LogEntry]:
        path = self._log_file(workspace_id, node_id)
        if not path.exists():
            return []
        return parse_log(path.read_text(encoding="utf-8"))

    def write_memo(self, workspace_id: str, memo_id: str, content: str) -> None:
        path = self._workspace_dir(workspace_id) / "memos" / f"{memo_id}.md"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    def read_memo(self, workspace_id: str, memo_id: str) -> str:
        path = self._workspace_dir(workspace_id) / "memos" / f"{memo_id}.md"
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")
