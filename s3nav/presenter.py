from __future__ import annotations
"""View-agnostic presenter that runs session operations off the UI thread."""
import asyncio
from concurrent.futures import Future
from dataclasses import replace
import logging
import threading
from typing import Any, Awaitable, Callable

from .errors import S3NavError
from .models import NodeSnapshot, TransferSnapshot
from .profiles import ProfileStorage, RemoteProfile
from .session import BrowserSession
from .settings import AppSettings, SettingsStorage


DispatchFn = Callable[[Callable[[], None]], None]
ErrorFn = Callable[[str], None]
DoneFn = Callable[[], None]

LOGGER = logging.getLogger(__name__)


def _format_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class BrowserPresenter:
    """Owns the event loop thread and returns results via callbacks.

    Every callback, including change notifications, is delivered through
    ``dispatch`` so the UI can marshal it onto its own thread.
    """

    def __init__(
        self,
        *,
        session: BrowserSession | None = None,
        profile_storage: ProfileStorage | None = None,
        settings_storage: SettingsStorage | None = None,
        dispatch: DispatchFn | None = None,
        client_factory: Callable[..., object] | None = None,
    ) -> None:
        self._settings_storage = settings_storage or SettingsStorage()
        self._profile_storage = profile_storage or ProfileStorage()
        if session is None:
            session = BrowserSession(
                self._profile_storage.load(),
                settings=self._settings_storage.load(),
                client_factory=client_factory,
            )
        self._session = session
        self._dispatch = dispatch or (lambda func: func())
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="s3nav-loop", daemon=True)
        self._thread.start()

    @property
    def session(self) -> BrowserSession:
        return self._session

    @property
    def settings(self) -> AppSettings:
        return replace(self._session.settings)

    @property
    def profile_warnings(self) -> list[str]:
        return list(self._session.registry.warnings)

    def save_settings(self, settings: AppSettings) -> None:
        """Persist settings; they apply to the next session."""
        self._settings_storage.save(settings)

    def list_profiles(self) -> list[RemoteProfile]:
        return list(self._session.registry)

    def close(self, timeout: float = 5.0) -> None:
        if not self._loop.is_running():
            return
        self._call_in_loop(self._session.close).result(timeout)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)

    def save_profile(
        self,
        profile: RemoteProfile,
        *,
        original_name: str | None = None,
        on_success: DoneFn | None = None,
        on_error: ErrorFn | None = None,
    ) -> Future:
        async def task() -> None:
            if original_name or profile.name in self._session.registry:
                self._session.update_remote(profile, original_name=original_name)
            else:
                self._session.add_remote(profile)
            await asyncio.to_thread(self._profile_storage.save, list(self._session.registry))

        return self._run(task, on_success=lambda _result: on_success and on_success(), on_error=on_error)

    def delete_profile(self, name: str, *, on_success: DoneFn | None = None, on_error: ErrorFn | None = None) -> Future:
        async def task() -> None:
            self._session.remove_remote(name)
            await asyncio.to_thread(self._profile_storage.save, list(self._session.registry))

        return self._run(task, on_success=lambda _result: on_success and on_success(), on_error=on_error)

    def test_connection(self, profile: RemoteProfile, *, on_success: DoneFn, on_error: ErrorFn) -> Future:
        LOGGER.debug("Testing connection for remote '%s'", profile.name)
        return self._run(
            lambda: self._session.test_connection(profile),
            on_success=lambda _result: on_success(),
            on_error=on_error,
        )

    def browse(
        self,
        *,
        remote: str | None = None,
        path: str | None = None,
        on_success: Callable[[NodeSnapshot], None],
        on_error: ErrorFn,
        on_done: DoneFn | None = None,
    ) -> Future:
        LOGGER.debug("Browsing '%s' on remote '%s'", path, remote)

        async def task() -> NodeSnapshot:
            return await self._session.browse(remote, path).wait()

        return self._run(task, on_success=on_success, on_error=on_error, on_done=on_done)

    def refresh(
        self,
        *,
        remote: str | None = None,
        path: str | None = None,
        on_success: Callable[[NodeSnapshot], None],
        on_error: ErrorFn,
        on_done: DoneFn | None = None,
    ) -> Future:
        LOGGER.debug("Refreshing '%s' on remote '%s'", path, remote)

        async def task() -> NodeSnapshot:
            return await self._session.refresh(remote, path).wait()

        return self._run(task, on_success=on_success, on_error=on_error, on_done=on_done)

    def create_folder(self, name: str, *, on_success: Callable[[str], None], on_error: ErrorFn) -> Future:
        return self._run(lambda: self._session.create_folder(name), on_success=on_success, on_error=on_error)

    def upload(
        self,
        source: str,
        *,
        name: str | None = None,
        on_started: Callable[[str], None],
        on_error: ErrorFn,
    ) -> Future:
        return self._start_transfer(lambda: self._session.upload(source, name).id, on_started, on_error)

    def download(self, key: str, destination: str, *, on_started: Callable[[str], None], on_error: ErrorFn) -> Future:
        return self._start_transfer(lambda: self._session.download(key, destination).id, on_started, on_error)

    def delete(self, key: str, *, on_started: Callable[[str], None], on_error: ErrorFn) -> Future:
        return self._start_transfer(lambda: self._session.delete(key).id, on_started, on_error)

    def retry_transfer(self, job_id: str, *, on_started: Callable[[str], None], on_error: ErrorFn) -> Future:
        return self._start_transfer(lambda: self._session.retry_transfer(job_id).id, on_started, on_error)

    def cancel_transfer(self, job_id: str) -> Future:
        return self._call_in_loop(lambda: self._session.cancel_transfer(job_id))

    def subscribe(self, remote: str, prefix: str, callback: Callable[[NodeSnapshot], None]) -> Callable[[], None]:
        return self._session.tree.subscribe(remote, prefix, self._dispatching(callback))

    def subscribe_transfers(self, callback: Callable[[TransferSnapshot], None]) -> Callable[[], None]:
        return self._session.transfers.subscribe_all(self._dispatching(callback))

    def _dispatching(self, callback: Callable[[Any], None]) -> Callable[[Any], None]:
        return lambda payload: self._dispatch(lambda: callback(payload))

    def _start_transfer(self, start: Callable[[], str], on_started: Callable[[str], None], on_error: ErrorFn) -> Future:
        async def task() -> str:
            return start()

        return self._run(task, on_success=on_started, on_error=on_error)

    def _call_in_loop(self, func: Callable[[], Any]) -> Future:
        async def task() -> Any:
            return func()

        return asyncio.run_coroutine_threadsafe(task(), self._loop)

    def _run(
        self,
        factory: Callable[[], Awaitable[Any]],
        *,
        on_success: Callable[[Any], None],
        on_error: ErrorFn | None,
        on_done: DoneFn | None = None,
    ) -> Future:
        async def runner() -> Any:
            return await factory()

        future = asyncio.run_coroutine_threadsafe(runner(), self._loop)

        def finished(done: Future) -> None:
            try:
                result = done.result()
            except S3NavError as exc:
                LOGGER.warning("Operation failed: %s", exc)
                if on_error:
                    self._dispatch(lambda: on_error(_format_error(exc)))
            except Exception as exc:
                LOGGER.exception("Unexpected error in background operation")
                if on_error:
                    self._dispatch(lambda: on_error(_format_error(exc)))
            else:
                self._dispatch(lambda: on_success(result))
            finally:
                if on_done:
                    self._dispatch(on_done)

        future.add_done_callback(finished)
        return future
