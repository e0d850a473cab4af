from workgraph.state.content_store import ContentStore, LogEntry, NodeInfo
from workgraph.state.git import Commit, GitAdapter
from workgraph.state.graph_store import GraphStore, GraphTransaction

__all__ = [
    "Commit",
    "ContentStore",
    "GitAdapter",
    "GraphStore",
    "GraphTransaction",
    "LogEntry",
    "NodeInfo",
]
