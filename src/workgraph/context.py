from __future__ import annotations

import logging
from typing import Any

from workgraph.errors import NotFound
from workgraph.models import MEMO_PREFIX, Graph, Node, Reference
from workgraph.state import ContentStore, GraphStore

logger = logging.getLogger(__name__)


class ContextResolver:
    """Assemble what an executor needs to work on one node.

    Read-only. The graph is read once per call so the result is a consistent
    snapshot even while other operations write.
    """

    def __init__(self, store: GraphStore, content: ContentStore) -> None:
        self.store = store
        self.content = content

    def chain_ids(self, graph: Graph, node_id: str) -> list[str]:
        """Ids from the context boundary down to ``node_id``.

        The walk climbs parents and stops after the first node flagged
        ``isolate``; nothing above it is visible.
        """
        chain: list[str] = []
        current: str | None = node_id
        seen: set[str] = set()
        while current is not None and current not in seen:
            node = graph.get(current)
            if node is None:
                logger.warning("missing_ancestor_skipped", extra={"node_id": current})
                break
            seen.add(current)
            chain.append(current)
            if node.isolate:
                break
            current = node.parent_id
        chain.reverse()
        return chain

    def _item(
        self,
        workspace_id: str,
        node: Node,
        *,
        include_log: bool,
        max_log_entries: int,
        reverse_log: bool,
    ) -> dict[str, Any]:
        info = self.content.read_info(workspace_id, node.id)
        item: dict[str, Any] = {
            "node_id": node.id,
            "type": node.type.value,
            "status": node.status.value,
            "title": info.title,
            "requirement": info.requirement,
            "note": info.notes,
            "conclusion": node.conclusion,
            "references": [ref.to_dict() for ref in node.active_references()],
        }
        if include_log:
            entries = self.content.read_log(workspace_id, node.id)
            if max_log_entries >= 0:
                entries = entries[-max_log_entries:] if max_log_entries else []
            if reverse_log:
                entries = list(reversed(entries))
            item["log"] = [entry.to_dict() for entry in entries]
        return item

    def get(
        self,
        workspace_id: str,
        node_id: str,
        include_log: bool = True,
        max_log_entries: int = 20,
        reverse_log: bool = False,
    ) -> dict[str, Any]:
        graph = self.store.read_graph(workspace_id)
        node = graph.get(node_id)
        if node is None:
            raise NotFound(f"Node '{node_id}' does not exist.", details={"node_id": node_id})
        options = {
            "include_log": include_log,
            "max_log_entries": max_log_entries,
            "reverse_log": reverse_log,
        }

        chain_ids = self.chain_ids(graph, node_id)
        chain_nodes = [graph.nodes[chain_id] for chain_id in chain_ids]
        truncated = chain_nodes[0].parent_id is not None
        chain = [self._item(workspace_id, item, **options) for item in chain_nodes]

        references: list[Reference] = []
        seen_targets: set[str] = set()
        for chain_node in chain_nodes:
            for ref in chain_node.active_references():
                if ref.target in seen_targets:
                    continue
                seen_targets.add(ref.target)
                references.append(ref)

        referenced_nodes: list[dict[str, Any]] = []
        for ref in references:
            if ref.target in graph.nodes:
                referenced_nodes.append(
                    self._item(workspace_id, graph.nodes[ref.target], **options)
                )
            elif ref.is_memo:
                memo_id = ref.target[len(MEMO_PREFIX):]
                memo = graph.workspace.memos.get(memo_id)
                if memo is None:
                    logger.warning("missing_memo_skipped", extra={"memo_id": memo_id})
                    continue
                referenced_nodes.append(
                    {
                        "memo_id": memo.id,
                        "title": memo.title,
                        "summary": memo.summary,
                        "content": self.content.read_memo(workspace_id, memo.id),
                    }
                )

        child_conclusions = []
        for child_id in node.children:
            child = graph.get(child_id)
            if child is None or not child.is_terminal or not child.conclusion:
                continue
            child_conclusions.append(
                {
                    "node_id": child.id,
                    "title": self.content.read_info(workspace_id, child.id).title,
                    "status": child.status.value,
                    "conclusion": child.conclusion,
                }
            )

        workspace = graph.workspace
        return {
            "workspace": {
                "id": workspace.id,
                "name": workspace.name,
                # The goal is the root's requirement; an isolation boundary hides it.
                "goal": None if truncated else workspace.goal,
                "rules": list(workspace.rules),
                "rules_hash": workspace.rules_hash,
                "docs": [doc.to_dict() for doc in workspace.docs if doc.is_active],
                "dispatch_mode": workspace.dispatch_mode.value,
            },
            "isolated": truncated,
            "chain": chain,
            "references": [ref.to_dict() for ref in references],
            "referenced_nodes": referenced_nodes,
            "child_conclusions": child_conclusions,
        }
