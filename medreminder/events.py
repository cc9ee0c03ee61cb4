"""
Event types for medreminder's background workers.

Realtime change notifications arrive on the transport's thread and are
handed to worker threads as typed events on queue.Queue channels; no
component applies a change directly from another thread.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Optional
import time


class EventType(Enum):
    """All event types flowing between components."""

    # Realtime
    REMOTE_CHANGE = auto()              # Row-level change pushed by the store (data: ChangeEvent)
    RELOAD_REQUESTED = auto()           # A subject's derived state must be rebuilt (data: table name)

    # System
    SHUTDOWN = auto()                   # Worker should exit


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Event:
    """A typed event flowing through a worker queue."""

    type: EventType
    data: Any = None
    timestamp: float = field(default_factory=time.monotonic)
    source: str = ""

    def __repr__(self):
        data_repr = repr(self.data)
        if len(data_repr) > 80:
            data_repr = data_repr[:77] + "..."
        return f"Event({self.type.name}, data={data_repr}, source={self.source!r})"


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change from the remote store.

    record is the post-image (insert/update); old_record is the pre-image
    (delete). Delivery order across events is not guaranteed.
    """

    table: str
    kind: ChangeKind
    record: Optional[dict] = None
    old_record: Optional[dict] = None

    def snapshot(self) -> dict:
        """The row image that carries the filter key for this kind of change."""
        if self.kind == ChangeKind.DELETE:
            return self.old_record or {}
        return self.record or {}

    def key(self, column: str) -> Optional[str]:
        value = self.snapshot().get(column)
        return str(value) if value is not None else None
