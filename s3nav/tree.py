from __future__ import annotations
"""In-memory cache of listed prefixes, keyed by (remote, prefix)."""
from dataclasses import replace
from datetime import datetime, timezone
import itertools
import logging
import threading
from typing import Callable, Iterable, Optional

from .errors import OperationCancelledError
from .models import FetchState, FolderEntry, ListingEntry, ListingPage, NodeSnapshot, ObjectEntry
from .notify import ANY, Notifier

LOGGER = logging.getLogger(__name__)

NodeKey = tuple[str, str]


class _Node:
    """Mutable cache entry; only :class:`PathTree` touches it."""

    def __init__(self, remote_name: str, prefix: str):
        self.remote_name = remote_name
        self.prefix = prefix
        # Last settled listing, and the pages of the fetch in progress.
        self.entries: list[ListingEntry] = []
        self.pending: Optional[list[ListingEntry]] = None
        self.state = FetchState.NOT_FETCHED
        self.fetched_at: Optional[datetime] = None
        self.error: Optional[Exception] = None
        self.continuation_token: Optional[str] = None
        self.invalidated = False
        # Identifies the fetch allowed to write; None when idle.
        self.generation: Optional[int] = None
        self.snapshot = NodeSnapshot(remote_name=remote_name, prefix=prefix)


class PathTree:
    """Cache storage and read-side API for listings.

    Every mutation of a node happens under that node's own lock; readers only
    ever see the immutable :class:`NodeSnapshot` published after the mutation.
    """

    def __init__(self, delimiter: str = "/", notifier: Notifier | None = None):
        self._delimiter = delimiter
        self._notifier = notifier or Notifier()
        self._nodes: dict[NodeKey, _Node] = {}
        self._locks: dict[NodeKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._generations = itertools.count(1)

    @property
    def delimiter(self) -> str:
        return self._delimiter

    def subscribe(self, remote_name: str, prefix: str, callback: Callable[[NodeSnapshot], None]) -> Callable[[], None]:
        return self._notifier.subscribe((remote_name, prefix), callback)

    def subscribe_all(self, callback: Callable[[NodeSnapshot], None]) -> Callable[[], None]:
        return self._notifier.subscribe(ANY, callback)

    def get_cached(self, remote_name: str, prefix: str) -> Optional[NodeSnapshot]:
        node = self._nodes.get((remote_name, prefix))
        return node.snapshot if node is not None else None

    def cached_prefixes(self, remote_name: str) -> list[str]:
        with self._registry_lock:
            return sorted(prefix for remote, prefix in self._nodes if remote == remote_name)

    def begin_fetch(self, remote_name: str, prefix: str) -> Optional[int]:
        """Move a node to ``FETCHING`` and return the fetch's generation.

        Returns ``None`` if a fetch is already running. The generation is unique
        for the lifetime of the tree; passing it to the write methods rejects
        writes from a fetch that has since been superseded or cleared.
        """

        key = (remote_name, prefix)
        with self._lock_for(key):
            node = self._get_or_create(key)
            if node.state is FetchState.FETCHING:
                return None
            node.state = FetchState.FETCHING
            node.generation = next(self._generations)
            node.pending = []
            node.error = None
            node.invalidated = False
            node.continuation_token = None
            generation = node.generation
            snapshot = self._commit(node)
        self._notifier.publish(key, snapshot)
        return generation

    def apply_page(
        self,
        remote_name: str,
        prefix: str,
        page: ListingPage,
        generation: Optional[int] = None,
    ) -> NodeSnapshot:
        key = (remote_name, prefix)
        with self._lock_for(key):
            node = self._writable(key, generation)
            if node.state is not FetchState.FETCHING or node.pending is None:
                raise RuntimeError(f"No fetch in progress for '{prefix}' on '{remote_name}'")
            node.pending = self._merge(node.pending, page.entries, prefix)
            node.continuation_token = page.next_continuation_token if page.is_truncated else None
            snapshot = self._commit(node)
        self._notifier.publish(key, snapshot)
        return snapshot

    def complete_fetch(self, remote_name: str, prefix: str, generation: Optional[int] = None) -> NodeSnapshot:
        key = (remote_name, prefix)
        with self._lock_for(key):
            node = self._writable(key, generation)
            node.entries = node.pending or []
            node.pending = None
            node.continuation_token = None
            node.error = None
            node.generation = None
            node.fetched_at = datetime.now(timezone.utc)
            node.state = FetchState.STALE if node.invalidated else FetchState.FRESH
            node.invalidated = False
            snapshot = self._commit(node)
        self._notifier.publish(key, snapshot)
        return snapshot

    def fail_fetch(
        self,
        remote_name: str,
        prefix: str,
        error: Exception,
        generation: Optional[int] = None,
    ) -> NodeSnapshot:
        return self._settle(remote_name, prefix, FetchState.FAILED, error, generation)

    def cancel_fetch(self, remote_name: str, prefix: str, generation: Optional[int] = None) -> NodeSnapshot:
        return self._settle(remote_name, prefix, FetchState.STALE, None, generation)

    def invalidate(self, remote_name: str, prefix: str) -> bool:
        """Mark one cached node stale. Returns ``False`` if nothing is cached."""

        key = (remote_name, prefix)
        if key not in self._nodes:
            return False
        with self._lock_for(key):
            node = self._nodes.get(key)
            if node is None:
                return False
            if node.state is FetchState.FETCHING:
                node.invalidated = True
            elif node.state is FetchState.FRESH:
                node.state = FetchState.STALE
            snapshot = self._commit(node)
        self._notifier.publish(key, snapshot)
        return True

    def invalidate_subtree(self, remote_name: str, prefix: str) -> list[str]:
        """Mark ``prefix`` and every cached descendant stale."""

        with self._registry_lock:
            prefixes = [p for remote, p in self._nodes if remote == remote_name and p.startswith(prefix)]
        marked = [p for p in sorted(prefixes) if self.invalidate(remote_name, p)]
        LOGGER.debug("Invalidated %d cached prefix(es) under '%s' on '%s'", len(marked), prefix, remote_name)
        return marked

    def clear_remote(self, remote_name: str) -> int:
        with self._registry_lock:
            keys = [key for key in self._nodes if key[0] == remote_name]
            for key in keys:
                del self._nodes[key]
                self._locks.pop(key, None)
        for remote, prefix in keys:
            self._notifier.publish((remote, prefix), NodeSnapshot(remote_name=remote, prefix=prefix))
        LOGGER.debug("Cleared %d cached prefix(es) for '%s'", len(keys), remote_name)
        return len(keys)

    def _settle(
        self,
        remote_name: str,
        prefix: str,
        state: FetchState,
        error: Optional[Exception],
        generation: Optional[int],
    ) -> NodeSnapshot:
        key = (remote_name, prefix)
        with self._lock_for(key):
            node = self._nodes.get(key)
            if node is None or (generation is not None and node.generation != generation):
                # A cleared or superseded fetch leaves the current node alone.
                return NodeSnapshot(remote_name=remote_name, prefix=prefix, state=state, error=error)
            # Pages already received replace the old listing up to the last key seen.
            node.entries = self._overlay(node)
            node.pending = None
            node.continuation_token = None
            node.generation = None
            node.invalidated = False
            node.state = state
            node.error = error
            snapshot = self._commit(node)
        self._notifier.publish(key, snapshot)
        return snapshot

    def _lock_for(self, key: NodeKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _writable(self, key: NodeKey, generation: Optional[int]) -> _Node:
        node = self._nodes.get(key)
        if node is None:
            raise OperationCancelledError(f"Cache for '{key[0]}' was cleared")
        if generation is not None and node.generation != generation:
            raise OperationCancelledError(f"Listing of '{key[1]}' on '{key[0]}' was superseded")
        return node

    def _get_or_create(self, key: NodeKey) -> _Node:
        with self._registry_lock:
            node = self._nodes.get(key)
            if node is None:
                node = self._nodes[key] = _Node(*key)
            return node

    def _commit(self, node: _Node) -> NodeSnapshot:
        entries = self._flag_collisions(self._overlay(node))
        node.snapshot = NodeSnapshot(
            remote_name=node.remote_name,
            prefix=node.prefix,
            entries=tuple(entries),
            state=node.state,
            fetched_at=node.fetched_at,
            error=node.error,
            continuation_token=node.continuation_token,
        )
        return node.snapshot

    @staticmethod
    def _overlay(node: _Node) -> list[ListingEntry]:
        if not node.pending:
            return list(node.entries)
        last_key = node.pending[-1].key
        return node.pending + [entry for entry in node.entries if entry.key > last_key]

    @staticmethod
    def _merge(existing: list[ListingEntry], incoming: Iterable[ListingEntry], prefix: str) -> list[ListingEntry]:
        merged = {(entry.is_folder, entry.key): entry for entry in existing}
        for entry in incoming:
            if not entry.is_folder and prefix and entry.key == prefix:
                # Folder marker object for the listed prefix itself.
                continue
            merged[(entry.is_folder, entry.key)] = entry
        return sorted(merged.values(), key=lambda entry: (entry.key, entry.is_folder))

    def _flag_collisions(self, entries: list[ListingEntry]) -> list[ListingEntry]:
        folder_keys = {entry.key for entry in entries if isinstance(entry, FolderEntry)}
        flagged: list[ListingEntry] = []
        for entry in entries:
            if isinstance(entry, ObjectEntry):
                also_prefix = entry.key + self._delimiter in folder_keys
                if entry.also_prefix != also_prefix:
                    entry = replace(entry, also_prefix=also_prefix)
            flagged.append(entry)
        return flagged
