from __future__ import annotations
"""Deduplicated, paginated listing of prefixes."""
import asyncio
import logging
from typing import Callable, Optional, Union

from .client import SignedRequestClient
from .errors import OperationCancelledError, PartialFailureError, S3NavError
from .models import CancelToken, NodeSnapshot
from .profiles import ProfileRegistry, RemoteProfile
from .tree import PathTree

LOGGER = logging.getLogger(__name__)

RemoteRef = Union[str, RemoteProfile]


class ListingHandle:
    """Shared handle to one listing operation of a (remote, prefix)."""

    def __init__(self, remote_name: str, prefix: str, future: asyncio.Future, token: CancelToken):
        self.remote_name = remote_name
        self.prefix = prefix
        self._future = future
        self._token = token

    @classmethod
    def completed(cls, snapshot: NodeSnapshot) -> "ListingHandle":
        future = asyncio.get_running_loop().create_future()
        future.set_result(snapshot)
        return cls(snapshot.remote_name, snapshot.prefix, future, CancelToken())

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> None:
        """Stop issuing further pages; pages already applied stay cached."""
        if not self._future.done():
            self._token.cancel()

    def result(self) -> NodeSnapshot:
        return self._future.result()

    def add_done_callback(self, callback: Callable[["ListingHandle"], None]) -> None:
        self._future.add_done_callback(lambda _future: callback(self))

    async def wait(self) -> NodeSnapshot:
        return await asyncio.shield(self._future)


class ListingCoordinator:
    """Single entry point for "children of prefix P on remote R"."""

    def __init__(
        self,
        registry: ProfileRegistry,
        client: SignedRequestClient,
        tree: PathTree | None = None,
    ):
        self._registry = registry
        self._client = client
        self._tree = tree or PathTree()
        self._inflight: dict[tuple[str, str], ListingHandle] = {}

    @property
    def tree(self) -> PathTree:
        return self._tree

    def in_flight(self, remote: RemoteRef, prefix: str) -> Optional[ListingHandle]:
        handle = self._inflight.get((self._resolve(remote).name, prefix))
        return handle if handle is not None and not handle.done() else None

    def request_listing(self, remote: RemoteRef, prefix: str, *, force: bool = False) -> ListingHandle:
        """Return a handle to the listing of ``prefix``.

        Joins an in-flight fetch when there is one, serves a fresh cached node
        without touching the network unless ``force`` is set, and otherwise
        starts a paginated fetch.
        """

        profile = self._resolve(remote)
        key = (profile.name, prefix)
        inflight = self._inflight.get(key)
        if inflight is not None and not inflight.done():
            LOGGER.debug("Joining in-flight listing of '%s' on '%s'", prefix, profile.name)
            return inflight

        cached = self._tree.get_cached(*key)
        if not force and cached is not None and cached.is_fresh:
            return ListingHandle.completed(cached)

        loop = asyncio.get_running_loop()
        generation = self._tree.begin_fetch(*key)
        if generation is None:
            raise RuntimeError(f"Listing of '{prefix}' on '{profile.name}' is already being fetched")
        token = CancelToken()
        task = loop.create_task(self._fetch(profile, prefix, token, generation))
        handle = ListingHandle(profile.name, prefix, task, token)
        self._inflight[key] = handle
        task.add_done_callback(lambda done, key=key, handle=handle: self._finished(key, handle, done))
        return handle

    def invalidate(self, remote: RemoteRef, prefix: str) -> bool:
        return self._tree.invalidate(self._resolve(remote).name, prefix)

    def invalidate_subtree(self, remote: RemoteRef, prefix: str) -> list[str]:
        return self._tree.invalidate_subtree(self._resolve(remote).name, prefix)

    def cancel_all(self, remote_name: str | None = None) -> int:
        handles = [
            handle
            for (name, _prefix), handle in list(self._inflight.items())
            if remote_name is None or name == remote_name
        ]
        for handle in handles:
            handle.cancel()
        return len(handles)

    def clear_remote(self, remote_name: str) -> None:
        """Stop fetches for a remote and purge its cached nodes."""
        self.cancel_all(remote_name)
        for key in [key for key in self._inflight if key[0] == remote_name]:
            self._inflight.pop(key, None)
        self._tree.clear_remote(remote_name)

    def _resolve(self, remote: RemoteRef) -> RemoteProfile:
        name = remote.name if isinstance(remote, RemoteProfile) else remote
        return self._registry.get(name)

    async def _fetch(
        self,
        profile: RemoteProfile,
        prefix: str,
        token: CancelToken,
        generation: int,
    ) -> NodeSnapshot:
        remote_name = profile.name
        pages = 0
        continuation: Optional[str] = None
        cancelled = f"Listing of '{prefix}' cancelled"
        LOGGER.debug("Fetching listing of '%s' on '%s'", prefix, remote_name)
        try:
            while True:
                token.raise_if_cancelled(cancelled)
                page = await self._client.list_objects(profile, prefix, self._tree.delimiter, continuation)
                # Raises if the node was cleared or refetched while the request ran.
                snapshot = self._tree.apply_page(remote_name, prefix, page, generation=generation)
                pages += 1
                # A page received after cancel is kept, but the node must not end FRESH.
                token.raise_if_cancelled(cancelled)
                if not page.is_truncated:
                    break
                continuation = snapshot.continuation_token
        except (OperationCancelledError, asyncio.CancelledError):
            LOGGER.debug("Listing of '%s' on '%s' cancelled after %d page(s)", prefix, remote_name, pages)
            self._tree.cancel_fetch(remote_name, prefix, generation=generation)
            raise
        except S3NavError as exc:
            error: S3NavError = exc
            if pages:
                error = PartialFailureError(
                    f"Listing of '{prefix}' interrupted after {pages} page(s): {exc}",
                    pages_applied=pages,
                    cause=exc,
                )
            LOGGER.warning("Listing of '%s' on '%s' failed: %s", prefix, remote_name, error)
            self._tree.fail_fetch(remote_name, prefix, error, generation=generation)
            if error is exc:
                raise
            raise error from exc
        except Exception as exc:
            LOGGER.exception("Unexpected listing error for '%s' on '%s'", prefix, remote_name)
            self._tree.fail_fetch(remote_name, prefix, exc, generation=generation)
            raise
        LOGGER.debug("Listed '%s' on '%s' in %d page(s)", prefix, remote_name, pages)
        return self._tree.complete_fetch(remote_name, prefix, generation=generation)

    def _finished(self, key: tuple[str, str], handle: ListingHandle, task: asyncio.Task) -> None:
        if self._inflight.get(key) is handle:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the outcome retrieved; waiters get it through the handle.
            task.exception()
