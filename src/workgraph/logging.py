"""Logging setup for workgraph entry points.

Modules log through ``logging.getLogger(__name__)`` with snake_case event
names and structured ``extra`` fields. Only entry points configure handlers.

Levels:
- DEBUG: git commands and store reads
- INFO: committed mutations (node created, transitioned, dispatch enabled)
- WARNING: recoverable oddities (missing node skipped, branch already gone)
- ERROR: failures surfaced to the caller
"""

import logging

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class ExtraFormatter(logging.Formatter):
    """Append structured ``extra`` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if not extras:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{base} | {rendered}"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once at startup."""
    normalized = level.upper()
    if normalized not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        normalized = "INFO"

    handler = logging.StreamHandler()
    handler.setFormatter(
        ExtraFormatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    logging.basicConfig(level=getattr(logging, normalized), handlers=[handler], force=True)
