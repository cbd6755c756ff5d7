"""Transient value types shared by the pipeline stages.

None of these are persisted. `SourceItem` describes an entry of a remote
listing, `RemoteQueueSnapshot` is the parsed view of the lftp queue and
`RunContext` is the immutable state handed from one stage to the next.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ItemSize:
    """Total bytes and regular file count of a file or directory tree."""
    size_bytes: int
    file_count: int


@dataclass(frozen=True)
class SourceItem:
    """An immediate child of a remote source directory."""
    name: str
    mtime: int
    size: int
    is_dir: bool
    path: str
    source_dir: str


class QueueState(Enum):
    INACTIVE = "inactive"  # no backgrounded lftp session
    ACTIVE = "active"
    UNPARSABLE = "unparsable"


@dataclass(frozen=True)
class RemoteQueueSnapshot:
    """Structured view of the lftp queue listing."""
    state: QueueState
    terminal_id: Optional[str] = None
    active: Tuple[str, ...] = ()
    queued: Tuple[str, ...] = ()
    raw: Tuple[str, ...] = ()

    @property
    def is_backgrounded(self) -> bool:
        return self.terminal_id is not None

    @property
    def candidates(self) -> List[str]:
        """Active entries followed by queued entries, in listing order."""
        return list(self.active) + list(self.queued)

    @classmethod
    def inactive(cls, raw: Tuple[str, ...] = ()) -> "RemoteQueueSnapshot":
        return cls(state=QueueState.INACTIVE, raw=raw)


@dataclass(frozen=True)
class RunContext:
    """State threaded through one invocation's stages.

    Stages never mutate a context; they return a copy made with
    `dataclasses.replace`.

    Attributes:
        run_id: Unique identifier of this invocation.
        started_at: When the invocation began.
        last_run: When the previous invocation began (equal to `started_at`
            on the very first run).
        snapshot: Parsed lftp queue, or None before probing.
        mapped_queue: Store item id -> index in `snapshot.candidates`.
        new_transfers: Items handed to lftp by this run.
        moved_items: Names of items relocated by this run.
        cleaned_items: Source paths removed by this run.
        messages: Free-form notes for the end-of-run summary.
    """
    run_id: str
    started_at: datetime
    last_run: datetime
    snapshot: Optional[RemoteQueueSnapshot] = None
    mapped_queue: Dict[int, int] = field(default_factory=dict)
    new_transfers: Tuple[SourceItem, ...] = ()
    moved_items: Tuple[str, ...] = ()
    cleaned_items: Tuple[str, ...] = ()
    messages: Tuple[str, ...] = ()

    @property
    def queue_count(self) -> int:
        """Number of store items currently known to be in the lftp queue."""
        return len(self.mapped_queue)

    @property
    def queue_is_readable(self) -> bool:
        return self.snapshot is None or self.snapshot.state != QueueState.UNPARSABLE

    def with_message(self, message: str) -> "RunContext":
        return replace(self, messages=self.messages + (message,))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "queue_count": self.queue_count,
            "new_transfers": [item.name for item in self.new_transfers],
            "moved_items": list(self.moved_items),
            "cleaned_items": list(self.cleaned_items),
        }
