from __future__ import annotations
"""Data models representing listings, cache nodes and transfer jobs."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import threading
from typing import Optional, Union

from .errors import OperationCancelledError


@dataclass(frozen=True)
class ObjectEntry:
    """A stored object returned under a listed prefix."""

    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    also_prefix: bool = False

    @property
    def is_folder(self) -> bool:
        return False


@dataclass(frozen=True)
class FolderEntry:
    """A common prefix synthesized by a delimited listing."""

    key: str

    @property
    def prefix(self) -> str:
        return self.key

    @property
    def is_folder(self) -> bool:
        return True


ListingEntry = Union[ObjectEntry, FolderEntry]


@dataclass(frozen=True)
class ListingPage:
    """One page of a ``list_objects`` response."""

    entries: tuple[ListingEntry, ...] = ()
    next_continuation_token: Optional[str] = None
    is_truncated: bool = False


class FetchState(str, Enum):
    NOT_FETCHED = "not_fetched"
    FETCHING = "fetching"
    FRESH = "fresh"
    STALE = "stale"
    FAILED = "failed"


@dataclass(frozen=True)
class NodeSnapshot:
    """Immutable view of one cached prefix handed to readers."""

    remote_name: str
    prefix: str
    entries: tuple[ListingEntry, ...] = ()
    state: FetchState = FetchState.NOT_FETCHED
    fetched_at: Optional[datetime] = None
    error: Optional[Exception] = None
    continuation_token: Optional[str] = None

    @property
    def is_fresh(self) -> bool:
        return self.state is FetchState.FRESH

    @property
    def folders(self) -> list[FolderEntry]:
        return [entry for entry in self.entries if isinstance(entry, FolderEntry)]

    @property
    def objects(self) -> list[ObjectEntry]:
        return [entry for entry in self.entries if isinstance(entry, ObjectEntry)]


class TransferKind(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"


class TransferState(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.FAILED, TransferState.CANCELLED)


@dataclass(frozen=True)
class TransferSnapshot:
    """Read-only view of a transfer job."""

    id: str
    kind: TransferKind
    remote_name: str
    key: str
    state: TransferState = TransferState.QUEUED
    bytes_done: int = 0
    bytes_total: Optional[int] = None
    reason: Optional[str] = None
    local_path: Optional[str] = None
    error: Optional[Exception] = field(default=None, compare=False)

    @property
    def fraction(self) -> float | None:
        if not self.bytes_total:
            return None
        return min(self.bytes_done / self.bytes_total, 1.0)


class CancelToken:
    """Cooperative cancellation flag shared between a caller and a worker.

    The flag may be set from any thread; workers poll it between pages or chunks.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, message: str = "Operation cancelled") -> None:
        if self._event.is_set():
            raise OperationCancelledError(message)
