from __future__ import annotations


class WorkgraphError(RuntimeError):
    """Base class for every failure raised by workgraph operations."""

    code = "WORKGRAPH_ERROR"

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), "details": dict(self.details)}


class NotFound(WorkgraphError):
    """Raised when a workspace, node, reference or memo does not exist."""

    code = "NOT_FOUND"


class Conflict(WorkgraphError):
    """Raised when the operation collides with existing state."""

    code = "CONFLICT"


class ReferenceExists(Conflict):
    pass


class InvalidTransition(WorkgraphError):
    """Raised when a (type, status, action) triple has no table entry."""

    code = "INVALID_TRANSITION"


class ConclusionRequired(WorkgraphError):
    code = "CONCLUSION_REQUIRED"


class InvalidOperation(WorkgraphError):
    """Raised when a structural rule of the tree would be broken."""

    code = "INVALID_OPERATION"


class ExecutionCannotHaveChildren(InvalidOperation):
    pass


class IncompleteChildren(InvalidOperation):
    pass


class GraphCorrupted(WorkgraphError):
    """Raised when the stored graph cannot be parsed. Fatal for the workspace."""

    code = "GRAPH_CORRUPTED"


class StoreLockTimeout(Conflict):
    pass


class DispatchFailed(WorkgraphError):
    """Raised when a version-control operation fails or times out."""

    code = "DISPATCH_FAILED"

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        exit_code: int | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.command = list(command or [])
        self.exit_code = exit_code


class MergeConflict(DispatchFailed):
    code = "MERGE_CONFLICT"


class ValidationError(WorkgraphError):
    code = "VALIDATION_ERROR"
