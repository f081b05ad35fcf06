from __future__ import annotations
"""Upload, download and delete jobs with progress, retry and cancellation."""
import asyncio
import logging
import os
from pathlib import Path
import threading
from time import monotonic
from typing import Awaitable, Callable, Optional, Union
import uuid

from .client import DELETE_BATCH_SIZE, SignedRequestClient
from .errors import NotFoundError, OperationCancelledError, S3NavError, TransientError
from .models import CancelToken, TransferKind, TransferSnapshot, TransferState
from .notify import ANY, Notifier
from .profiles import ProfileRegistry, RemoteProfile
from .settings import AppSettings
from .tree import PathTree
from .ui_utils import ancestor_prefixes, parent_prefix

LOGGER = logging.getLogger(__name__)

PART_SUFFIX = ".part"

PathLike = Union[str, Path]


class _Job:
    """Mutable job state owned by :class:`TransferManager`."""

    def __init__(self, kind: TransferKind, profile: RemoteProfile, key: str, local_path: Optional[str] = None):
        self.id = uuid.uuid4().hex
        self.kind = kind
        self.profile = profile
        self.key = key
        self.local_path = local_path
        self.state = TransferState.QUEUED
        self.bytes_done = 0
        self.bytes_total: Optional[int] = None
        self.reason: Optional[str] = None
        self.error: Optional[Exception] = None
        self.token = CancelToken()
        self.task: Optional[asyncio.Task] = None
        self.lock = threading.Lock()
        self.last_published = 0.0
        # Multipart progress retained across retries.
        self.upload_id: Optional[str] = None
        self.part_size = 0
        self.parts: list[tuple[int, str]] = []
        self.snapshot = self._build_snapshot()

    def _build_snapshot(self) -> TransferSnapshot:
        return TransferSnapshot(
            id=self.id,
            kind=self.kind,
            remote_name=self.profile.name,
            key=self.key,
            state=self.state,
            bytes_done=self.bytes_done,
            bytes_total=self.bytes_total,
            reason=self.reason,
            local_path=self.local_path,
            error=self.error,
        )


class TransferHandle:
    """Read-only view of a job plus its cancellation control."""

    def __init__(self, manager: "TransferManager", job_id: str):
        self._manager = manager
        self.id = job_id

    def snapshot(self) -> TransferSnapshot:
        return self._manager.get(self.id)

    def cancel(self) -> None:
        self._manager.cancel(self.id)

    async def wait(self) -> TransferSnapshot:
        return await self._manager.wait(self.id)


class TransferManager:
    """Runs transfer jobs as independent asyncio tasks.

    Progress is published at most once per ``progress_interval`` seconds per job;
    state transitions are always published. For deletes of a folder prefix,
    ``bytes_done`` counts deleted objects.
    """

    def __init__(
        self,
        registry: ProfileRegistry,
        client: SignedRequestClient,
        tree: PathTree | None = None,
        settings: AppSettings | None = None,
        notifier: Notifier | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._registry = registry
        self._client = client
        self._tree = tree
        self._settings = settings or client.settings
        self._notifier = notifier or Notifier()
        self._sleep = sleep or asyncio.sleep
        self._jobs: dict[str, _Job] = {}
        self._slots = asyncio.Semaphore(self._settings.max_concurrent_transfers)

    def upload(self, remote: str, key: str, source: PathLike) -> TransferHandle:
        return self._submit(TransferKind.UPLOAD, remote, key, os.fspath(source))

    def download(self, remote: str, key: str, destination: PathLike) -> TransferHandle:
        return self._submit(TransferKind.DOWNLOAD, remote, key, os.fspath(destination))

    def delete(self, remote: str, key: str) -> TransferHandle:
        """Delete one object, or every object under ``key`` if it ends with ``/``."""
        return self._submit(TransferKind.DELETE, remote, key, None)

    def retry(self, job_id: str) -> TransferHandle:
        """Re-run a failed job, resuming from its retained progress."""

        job = self._job(job_id)
        if job.state is not TransferState.FAILED:
            raise ValueError(f"Only failed jobs can be retried (job is {job.state.value})")
        job.token = CancelToken()
        self._update(job, state=TransferState.QUEUED, reason=None, error=None)
        self._start(job)
        return TransferHandle(self, job.id)

    def cancel(self, job_id: str) -> None:
        job = self._job(job_id)
        if job.state.is_finished and job.state is not TransferState.FAILED:
            return
        job.token.cancel()
        if job.state is TransferState.QUEUED:
            self._update(job, state=TransferState.CANCELLED, reason="Cancelled by user")
        elif job.state is TransferState.FAILED:
            job.task = asyncio.get_running_loop().create_task(self._cancel_failed(job))

    def get(self, job_id: str) -> TransferSnapshot:
        return self._job(job_id).snapshot

    def jobs(self) -> list[TransferSnapshot]:
        return [job.snapshot for job in self._jobs.values()]

    def forget(self, job_id: str) -> None:
        job = self._job(job_id)
        if not job.state.is_finished:
            raise ValueError("Cannot forget a job that is still running")
        del self._jobs[job_id]

    def subscribe(self, job_id: str, callback: Callable[[TransferSnapshot], None]) -> Callable[[], None]:
        return self._notifier.subscribe(job_id, callback)

    def subscribe_all(self, callback: Callable[[TransferSnapshot], None]) -> Callable[[], None]:
        return self._notifier.subscribe(ANY, callback)

    async def wait(self, job_id: str) -> TransferSnapshot:
        job = self._job(job_id)
        if job.task is not None:
            await asyncio.shield(job.task)
        return job.snapshot

    def _job(self, job_id: str) -> _Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise ValueError(f"Transfer '{job_id}' does not exist") from None

    def _submit(self, kind: TransferKind, remote: str, key: str, local_path: Optional[str]) -> TransferHandle:
        if not key:
            raise ValueError("Object key cannot be empty")
        profile = self._registry.get(remote)
        job = _Job(kind, profile, key, local_path)
        self._jobs[job.id] = job
        LOGGER.debug("Queued %s of '%s' on '%s' as job %s", kind.value, key, profile.name, job.id)
        self._start(job)
        self._notifier.publish(job.id, job.snapshot)
        return TransferHandle(self, job.id)

    def _start(self, job: _Job) -> None:
        job.task = asyncio.get_running_loop().create_task(self._run(job, job.token))

    def _update(self, job: _Job, **changes) -> TransferSnapshot:
        force = "state" in changes
        with job.lock:
            for name, value in changes.items():
                setattr(job, name, value)
            job.snapshot = job._build_snapshot()
            snapshot = job.snapshot
            now = monotonic()
            if not force and now - job.last_published < self._settings.progress_interval:
                return snapshot
            job.last_published = now
        self._notifier.publish(job.id, snapshot)
        return snapshot

    async def _run(self, job: _Job, token: CancelToken) -> TransferSnapshot:
        async with self._slots:
            if token.cancelled:
                return job.snapshot
            self._update(job, state=TransferState.IN_PROGRESS)
            try:
                if job.kind is TransferKind.UPLOAD:
                    await self._upload(job, token)
                elif job.kind is TransferKind.DOWNLOAD:
                    await self._download(job, token)
                else:
                    await self._delete(job, token)
            except OperationCancelledError:
                LOGGER.debug("Job %s cancelled at %d byte(s)", job.id, job.bytes_done)
                await self._discard_partial(job)
                self._update(job, state=TransferState.CANCELLED, reason="Cancelled by user")
            except asyncio.CancelledError:
                await self._discard_partial(job)
                self._update(job, state=TransferState.CANCELLED, reason="Cancelled")
                raise
            except (S3NavError, OSError) as exc:
                LOGGER.warning("%s of '%s' on '%s' failed: %s", job.kind.value, job.key, job.profile.name, exc)
                self._update(job, state=TransferState.FAILED, reason=str(exc), error=exc)
            except Exception as exc:
                LOGGER.exception("Unexpected error in job %s", job.id)
                self._update(job, state=TransferState.FAILED, reason=str(exc), error=exc)
            else:
                LOGGER.debug("Job %s completed", job.id)
                self._update(job, state=TransferState.COMPLETED)
            finally:
                if job.kind is not TransferKind.DOWNLOAD and (
                    job.state is TransferState.COMPLETED or job.kind is TransferKind.DELETE
                ):
                    self.invalidate_key(job.profile.name, job.key)
        return job.snapshot

    async def _download(self, job: _Job, token: CancelToken) -> None:
        destination = job.local_path
        part_path = destination + PART_SUFFIX
        if job.bytes_done and os.path.exists(part_path):
            os.truncate(part_path, job.bytes_done)
            mode = "ab"
        else:
            job.bytes_done = 0
            mode = "wb"
        chunk_size = self._settings.chunk_size
        attempts = 0
        stream = None
        with open(part_path, mode) as handle:
            try:
                while True:
                    token.raise_if_cancelled()
                    if job.bytes_total is not None and job.bytes_done >= job.bytes_total:
                        break
                    if stream is None:
                        stream = await self._client.get_object(job.profile, job.key, start=job.bytes_done)
                        if stream.total_size is not None:
                            self._update(job, bytes_total=stream.total_size)
                    try:
                        chunk = await stream.read(chunk_size)
                    except TransientError as exc:
                        stream.close()
                        stream = None
                        attempts += 1
                        if attempts >= self._settings.max_attempts:
                            raise
                        LOGGER.debug("Resuming '%s' at byte %d after: %s", job.key, job.bytes_done, exc)
                        await self._sleep(self._settings.backoff_delay(attempts))
                        continue
                    if not chunk:
                        break
                    await asyncio.to_thread(handle.write, chunk)
                    attempts = 0
                    self._update(job, bytes_done=job.bytes_done + len(chunk))
            finally:
                if stream is not None:
                    stream.close()
        token.raise_if_cancelled()
        os.replace(part_path, destination)

    async def _upload(self, job: _Job, token: CancelToken) -> None:
        source = job.local_path
        size = os.path.getsize(source)
        self._update(job, bytes_total=size)
        if size <= self._settings.multipart_threshold and job.upload_id is None:
            data = await asyncio.to_thread(Path(source).read_bytes)
            token.raise_if_cancelled()
            await self._client.put_object(job.profile, job.key, data)
            self._update(job, bytes_done=len(data))
            return

        if job.upload_id is None:
            job.part_size = self._settings.chunk_size
            job.parts = []
            job.upload_id = await self._client.create_multipart_upload(job.profile, job.key)
        offset = len(job.parts) * job.part_size
        self._update(job, bytes_done=offset)
        with open(source, "rb") as handle:
            handle.seek(offset)
            while offset < size:
                token.raise_if_cancelled()
                data = await asyncio.to_thread(handle.read, job.part_size)
                if not data:
                    break
                part_number = len(job.parts) + 1
                try:
                    etag = await self._client.upload_part(job.profile, job.key, job.upload_id, part_number, data)
                except NotFoundError:
                    # The store discarded the upload; the next retry starts over.
                    job.upload_id = None
                    job.parts = []
                    raise
                job.parts.append((part_number, etag))
                offset += len(data)
                self._update(job, bytes_done=offset)
        await self._client.complete_multipart_upload(job.profile, job.key, job.upload_id, job.parts)
        job.upload_id = None
        job.parts = []

    async def _delete(self, job: _Job, token: CancelToken) -> None:
        delimiter = self._tree.delimiter if self._tree is not None else "/"
        if not job.key.endswith(delimiter):
            await self._client.delete_object(job.profile, job.key)
            return
        continuation: Optional[str] = None
        deleted = 0
        while True:
            token.raise_if_cancelled()
            page = await self._client.list_objects(job.profile, job.key, None, continuation)
            keys = [entry.key for entry in page.entries if not entry.is_folder]
            for start in range(0, len(keys), DELETE_BATCH_SIZE):
                token.raise_if_cancelled()
                batch = keys[start:start + DELETE_BATCH_SIZE]
                await self._client.delete_objects(job.profile, batch)
                deleted += len(batch)
                self._update(job, bytes_done=deleted)
            if not page.is_truncated:
                break
            continuation = page.next_continuation_token
        self._update(job, bytes_total=deleted)

    async def _cancel_failed(self, job: _Job) -> TransferSnapshot:
        await self._discard_partial(job)
        return self._update(job, state=TransferState.CANCELLED, reason="Cancelled by user")

    async def _discard_partial(self, job: _Job) -> None:
        if job.kind is TransferKind.DOWNLOAD and job.local_path:
            part_path = job.local_path + PART_SUFFIX
            try:
                os.remove(part_path)
            except FileNotFoundError:
                pass
            job.bytes_done = 0
        elif job.kind is TransferKind.UPLOAD and job.upload_id:
            upload_id, job.upload_id, job.parts = job.upload_id, None, []
            try:
                await self._client.abort_multipart_upload(job.profile, job.key, upload_id)
            except S3NavError as exc:
                LOGGER.warning("Failed to abort multipart upload of '%s' (%s): %s", job.key, upload_id, exc)

    def invalidate_key(self, remote_name: str, key: str) -> None:
        """Mark listings affected by a write to ``key`` as stale."""

        if self._tree is None:
            return
        delimiter = self._tree.delimiter
        parent = parent_prefix(key, delimiter)
        self._tree.invalidate_subtree(remote_name, parent)
        for ancestor in ancestor_prefixes(parent, delimiter):
            self._tree.invalidate(remote_name, ancestor)
