from __future__ import annotations
"""Top-level facade the presentation layer binds to."""
import logging
import os
from pathlib import Path
from typing import Callable, Optional, Union

from .client import SignedRequestClient
from .coordinator import ListingCoordinator, ListingHandle
from .errors import NotFoundError
from .models import FolderEntry, NodeSnapshot, ObjectEntry, TransferSnapshot
from .profiles import ProfileRegistry, RemoteProfile
from .settings import AppSettings
from .transfers import TransferHandle, TransferManager
from .tree import PathTree
from .ui_utils import compose_key, display_name, normalize_prefix, parent_prefix, suggest_local_filename

LOGGER = logging.getLogger(__name__)


class NoActiveRemoteError(RuntimeError):
    """Raised when a remote-scoped operation runs before a remote is selected."""


class BrowserSession:
    """Owns one active remote, the current path and in-flight operations.

    All methods that start network work must be called from the event loop
    running the session; cache reads are safe from any thread.
    """

    def __init__(
        self,
        registry: ProfileRegistry,
        *,
        settings: AppSettings | None = None,
        client: SignedRequestClient | None = None,
        tree: PathTree | None = None,
        client_factory: Callable[..., object] | None = None,
    ):
        self._registry = registry
        self._settings = settings or AppSettings()
        self._client = client or SignedRequestClient(self._settings, client_factory=client_factory)
        self._tree = tree or PathTree()
        self._coordinator = ListingCoordinator(registry, self._client, self._tree)
        self._transfers = TransferManager(registry, self._client, self._tree, self._settings)
        self._active_remote: str | None = None
        self._history: list[str] = [""]
        self._listings: dict[tuple[str, str], ListingHandle] = {}

    @property
    def registry(self) -> ProfileRegistry:
        return self._registry

    @property
    def settings(self) -> AppSettings:
        return self._settings

    @property
    def coordinator(self) -> ListingCoordinator:
        return self._coordinator

    @property
    def transfers(self) -> TransferManager:
        return self._transfers

    @property
    def tree(self) -> PathTree:
        return self._tree

    @property
    def active_remote(self) -> str | None:
        return self._active_remote

    @property
    def current_path(self) -> str:
        return self._history[-1]

    def remotes(self) -> list[str]:
        return self._registry.names()

    def select_remote(self, name: str) -> ListingHandle:
        self._registry.get(name)
        if name != self._active_remote:
            LOGGER.debug("Switching active remote to '%s'", name)
            self.cancel_listings()
            self._active_remote = name
            self._history = [""]
        return self.browse(path="")

    def browse(self, remote: str | None = None, path: str | None = None) -> ListingHandle:
        """Navigate to ``path`` and return the listing handle for it."""

        if remote is not None and remote != self._active_remote:
            self._registry.get(remote)
            self.cancel_listings()
            self._active_remote = remote
            self._history = [""]
        remote_name = self._require_remote()
        prefix = normalize_prefix(self.current_path if path is None else path, self._tree.delimiter)
        if prefix != self.current_path:
            self._history.append(prefix)
        return self._request(remote_name, prefix)

    def refresh(self, remote: str | None = None, path: str | None = None) -> ListingHandle:
        """Refetch a prefix even if its cached listing is fresh."""

        remote_name = remote or self._require_remote()
        prefix = normalize_prefix(self.current_path if path is None else path, self._tree.delimiter)
        self._coordinator.invalidate(remote_name, prefix)
        return self._request(remote_name, prefix, force=True)

    def get_cached(self, path: str | None = None, remote: str | None = None) -> Optional[NodeSnapshot]:
        remote_name = remote or self._require_remote()
        prefix = normalize_prefix(self.current_path if path is None else path, self._tree.delimiter)
        return self._tree.get_cached(remote_name, prefix)

    def open(self, name: str) -> Union[ListingHandle, ObjectEntry]:
        """Open a child of the current path by display name.

        A folder is navigated into and its listing handle returned; an object
        entry is returned as-is. When both share the name, ``prefix_collision``
        decides which one wins.
        """

        snapshot = self.get_cached()
        entries = snapshot.entries if snapshot is not None else ()
        prefix = self.current_path
        folder = next(
            (e for e in entries if isinstance(e, FolderEntry) and display_name(e.key, prefix) == name),
            None,
        )
        obj = next(
            (e for e in entries if isinstance(e, ObjectEntry) and display_name(e.key, prefix) == name),
            None,
        )
        if folder is not None and (obj is None or self._settings.prefix_collision == "folder"):
            return self.browse(path=folder.key)
        if obj is not None:
            return obj
        raise NotFoundError(f"'{name}' is not listed under '{prefix}'")

    def go_up(self) -> ListingHandle:
        return self.browse(path=parent_prefix(self.current_path, self._tree.delimiter))

    def back(self) -> ListingHandle | None:
        if len(self._history) <= 1:
            return None
        self._history.pop()
        return self._request(self._require_remote(), self.current_path)

    def breadcrumbs(self) -> list[tuple[str, str]]:
        """(label, prefix) pairs from the bucket root to the current path."""

        remote_name = self._require_remote()
        crumbs = [(self._registry.get(remote_name).bucket_name, "")]
        prefix = ""
        for part in [p for p in self.current_path.split(self._tree.delimiter) if p]:
            prefix = f"{prefix}{part}{self._tree.delimiter}"
            crumbs.append((part, prefix))
        return crumbs

    def trim_to(self, index: int) -> ListingHandle:
        crumbs = self.breadcrumbs()
        if not 0 <= index < len(crumbs):
            raise IndexError(f"Breadcrumb {index} out of range")
        return self.browse(path=crumbs[index][1])

    def cancel_listings(self) -> int:
        handles = [handle for handle in self._listings.values() if not handle.done()]
        for handle in handles:
            handle.cancel()
        return len(handles)

    def upload(
        self,
        source: str | Path,
        name: str | None = None,
        *,
        path: str | None = None,
        remote: str | None = None,
    ) -> TransferHandle:
        remote_name = remote or self._require_remote()
        target = self.current_path if path is None else path
        key = compose_key(target, name or Path(source).name, self._tree.delimiter)
        return self._transfers.upload(remote_name, key, source)

    def download(self, key: str, destination: str | Path, *, remote: str | None = None) -> TransferHandle:
        remote_name = remote or self._require_remote()
        if os.path.isdir(destination):
            destination = Path(destination) / suggest_local_filename(key, self._tree.delimiter)
        return self._transfers.download(remote_name, key, destination)

    def delete(self, key: str, *, remote: str | None = None) -> TransferHandle:
        return self._transfers.delete(remote or self._require_remote(), key)

    def delete_folder(self, prefix: str, *, remote: str | None = None) -> TransferHandle:
        folder = normalize_prefix(prefix, self._tree.delimiter)
        if not folder:
            raise ValueError("Refusing to delete the bucket root")
        return self.delete(folder, remote=remote)

    async def create_folder(self, name: str, *, path: str | None = None, remote: str | None = None) -> str:
        """Create an empty folder marker object and return its key."""

        remote_name = remote or self._require_remote()
        target = self.current_path if path is None else path
        key = normalize_prefix(compose_key(target, name, self._tree.delimiter), self._tree.delimiter)
        await self._client.put_object(self._registry.get(remote_name), key, b"")
        self._transfers.invalidate_key(remote_name, key)
        return key

    def retry_transfer(self, job_id: str) -> TransferHandle:
        return self._transfers.retry(job_id)

    def cancel_transfer(self, job_id: str) -> None:
        self._transfers.cancel(job_id)

    def subscribe(
        self,
        callback: Callable[[NodeSnapshot], None],
        *,
        path: str | None = None,
        remote: str | None = None,
    ) -> Callable[[], None]:
        remote_name = remote or self._require_remote()
        prefix = normalize_prefix(self.current_path if path is None else path, self._tree.delimiter)
        return self._tree.subscribe(remote_name, prefix, callback)

    def subscribe_transfer(self, job_id: str, callback: Callable[[TransferSnapshot], None]) -> Callable[[], None]:
        return self._transfers.subscribe(job_id, callback)

    async def test_connection(self, profile: RemoteProfile) -> None:
        await self._client.check_bucket(profile)

    def add_remote(self, profile: RemoteProfile) -> None:
        self._registry.add(profile)

    def update_remote(self, profile: RemoteProfile, *, original_name: str | None = None) -> None:
        """Replace a profile; cached listings and connections for it are dropped."""

        previous = self._registry.replace(profile, original_name=original_name)
        self._forget_remote(previous.name)
        if self._active_remote == previous.name:
            self._active_remote = profile.name
            self._history = [""]

    def remove_remote(self, name: str) -> None:
        self._registry.remove(name)
        self._forget_remote(name)
        if self._active_remote == name:
            self._active_remote = None
            self._history = [""]

    def close(self) -> None:
        self._coordinator.cancel_all()
        for job in self._transfers.jobs():
            if not job.state.is_finished:
                self._transfers.cancel(job.id)

    def _forget_remote(self, name: str) -> None:
        self._coordinator.clear_remote(name)
        self._client.forget(name)
        for key in [key for key in self._listings if key[0] == name]:
            self._listings.pop(key, None)

    def _require_remote(self) -> str:
        if self._active_remote is None:
            raise NoActiveRemoteError("No remote selected")
        return self._active_remote

    def _request(self, remote_name: str, prefix: str, *, force: bool = False) -> ListingHandle:
        handle = self._coordinator.request_listing(remote_name, prefix, force=force)
        key = (remote_name, prefix)
        self._listings[key] = handle

        def _release(done: ListingHandle) -> None:
            if self._listings.get(key) is done:
                del self._listings[key]

        handle.add_done_callback(_release)
        return handle
