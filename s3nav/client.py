from __future__ import annotations
"""Signed, retrying access to the S3-compatible object API."""
import asyncio
import heapq
import logging
from operator import attrgetter
import threading
from typing import Any, Awaitable, Callable, Iterable, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    IncompleteReadError,
    NoCredentialsError,
    PartialCredentialsError,
)

from .errors import (
    AccessDeniedError,
    InvalidCredentialsError,
    NotFoundError,
    RequestError,
    S3NavError,
    TransientError,
)
from .models import FolderEntry, ListingPage, ObjectEntry
from .profiles import RemoteProfile
from .settings import AppSettings

LOGGER = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000

CREDENTIAL_CODES = {
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "AuthorizationHeaderMalformed",
    "InvalidToken",
    "ExpiredToken",
    "InvalidSecurity",
}
ACCESS_DENIED_CODES = {"AccessDenied", "AllAccessDisabled", "AccountProblem", "Forbidden", "403"}
NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "NoSuchUpload", "NotFound", "404"}
TRANSIENT_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
    "Throttling",
    "ThrottlingException",
}


def error_for_code(code: str, message: str, status: int | None = None) -> S3NavError:
    """Map a store error code and HTTP status to a core error."""

    if code in CREDENTIAL_CODES:
        cls = InvalidCredentialsError
    elif code in ACCESS_DENIED_CODES or status == 403:
        cls = AccessDeniedError
    elif code in NOT_FOUND_CODES or status == 404:
        cls = NotFoundError
    elif code in TRANSIENT_CODES or (status is not None and status >= 500):
        cls = TransientError
    else:
        cls = RequestError
    return cls(message, code=code or None, status=status)


def translate_error(exc: Exception) -> S3NavError:
    if isinstance(exc, S3NavError):
        return exc
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code") or "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return error_for_code(code, error.get("Message") or str(exc), status)
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return InvalidCredentialsError(str(exc))
    if isinstance(exc, (HTTPClientError, BotoConnectionError, IncompleteReadError)):
        return TransientError(str(exc))
    if isinstance(exc, BotoCoreError):
        return RequestError(str(exc))
    if isinstance(exc, OSError):
        return TransientError(str(exc))
    raise TypeError(f"Cannot translate {type(exc).__name__}") from exc


def check_credentials(profile: RemoteProfile) -> None:
    """Fail fast on keys that cannot produce a valid signature."""

    for label, value in (
        ("access key id", profile.access_key_id),
        ("secret access key", profile.secret_access_key),
    ):
        if not value:
            raise InvalidCredentialsError(f"Remote '{profile.name}' has an empty {label}")
        if not value.isascii() or not value.isprintable() or any(ch.isspace() for ch in value):
            raise InvalidCredentialsError(f"Remote '{profile.name}' has a malformed {label}")


def _clean_etag(etag: Optional[str]) -> Optional[str]:
    return etag.strip('"') if etag else etag


def parse_listing_page(response: dict[str, Any]) -> ListingPage:
    objects = [
        ObjectEntry(
            key=item["Key"],
            size=int(item.get("Size") or 0),
            last_modified=item.get("LastModified"),
            etag=_clean_etag(item.get("ETag")),
        )
        for item in response.get("Contents", []) or []
    ]
    folders = [
        FolderEntry(key=item["Prefix"])
        for item in response.get("CommonPrefixes", []) or []
        if item.get("Prefix")
    ]
    # Both sequences arrive in key order; interleave without re-sorting.
    entries = tuple(heapq.merge(folders, objects, key=attrgetter("key")))
    truncated = bool(response.get("IsTruncated"))
    token = response.get("NextContinuationToken")
    if truncated and not token:
        LOGGER.warning("Truncated listing without a continuation token; treating as complete")
        truncated = False
    return ListingPage(
        entries=entries,
        next_continuation_token=token if truncated else None,
        is_truncated=truncated,
    )


def _parse_total_size(response: dict[str, Any], start: int) -> Optional[int]:
    content_range = response.get("ContentRange")
    if content_range and "/" in content_range:
        total = content_range.rsplit("/", 1)[-1]
        if total.isdigit():
            return int(total)
    length = response.get("ContentLength")
    return start + int(length) if length is not None else None


class ObjectStream:
    """Byte stream over a ``get_object`` body, read in chunks off the event loop."""

    def __init__(self, body, *, content_length: Optional[int], total_size: Optional[int], etag: Optional[str] = None):
        self._body = body
        self.content_length = content_length
        self.total_size = total_size
        self.etag = etag

    async def read(self, amount: int) -> bytes:
        return await asyncio.to_thread(self._read, amount)

    def _read(self, amount: int) -> bytes:
        try:
            return self._body.read(amount)
        except (BotoCoreError, OSError) as exc:
            raise translate_error(exc) from exc

    def close(self) -> None:
        close = getattr(self._body, "close", None)
        if close:
            close()


class SignedRequestClient:
    """Encapsulates signed S3 requests independent of any UI technology."""

    def __init__(
        self,
        settings: AppSettings | None = None,
        client_factory: Callable[..., object] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._settings = settings or AppSettings()
        self._client_factory = client_factory or boto3.client
        self._sleep = sleep or asyncio.sleep
        self._clients: dict[str, tuple[RemoteProfile, object]] = {}
        self._lock = threading.Lock()

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def forget(self, remote_name: str) -> None:
        """Drop the cached connection for a remote whose profile changed."""
        with self._lock:
            self._clients.pop(remote_name, None)

    def _client(self, profile: RemoteProfile):
        check_credentials(profile)
        with self._lock:
            cached = self._clients.get(profile.name)
            if cached is not None and cached[0] == profile:
                return cached[1]
            config = Config(
                signature_version="s3v4",
                s3={"addressing_style": "path"},
                retries={"total_max_attempts": 1, "mode": "standard"},
            )
            try:
                client = self._client_factory(
                    "s3",
                    endpoint_url=profile.endpoint,
                    aws_access_key_id=profile.access_key_id,
                    aws_secret_access_key=profile.secret_access_key,
                    region_name=profile.region,
                    config=config,
                )
            except (BotoCoreError, ValueError) as exc:
                raise InvalidCredentialsError(f"Unable to configure remote '{profile.name}': {exc}") from exc
            self._clients[profile.name] = (profile, client)
            return client

    async def _call(self, profile: RemoteProfile, operation: str, **params: Any) -> dict[str, Any]:
        client = self._client(profile)
        attempt = 1
        while True:
            try:
                return await asyncio.to_thread(self._invoke, client, operation, params)
            except TransientError as exc:
                if attempt >= self._settings.max_attempts:
                    LOGGER.warning(
                        "%s on '%s' failed after %d attempt(s): %s",
                        operation,
                        profile.name,
                        attempt,
                        exc,
                    )
                    raise
                delay = self._settings.backoff_delay(attempt)
                LOGGER.debug(
                    "Retrying %s on '%s' in %.2fs (attempt %d/%d): %s",
                    operation,
                    profile.name,
                    delay,
                    attempt,
                    self._settings.max_attempts,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1

    @staticmethod
    def _invoke(client, operation: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            return getattr(client, operation)(**params)
        except (ClientError, BotoCoreError) as exc:
            raise translate_error(exc) from exc

    async def list_objects(
        self,
        profile: RemoteProfile,
        prefix: str = "",
        delimiter: str | None = "/",
        continuation_token: str | None = None,
    ) -> ListingPage:
        params: dict[str, Any] = {"Bucket": profile.bucket_name, "MaxKeys": self._settings.page_size}
        if prefix:
            params["Prefix"] = prefix
        if delimiter:
            params["Delimiter"] = delimiter
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        LOGGER.debug("Listing '%s' on remote '%s' (token=%s)", prefix, profile.name, continuation_token)
        response = await self._call(profile, "list_objects_v2", **params)
        return parse_listing_page(response)

    async def get_object(self, profile: RemoteProfile, key: str, *, start: int = 0) -> ObjectStream:
        params: dict[str, Any] = {"Bucket": profile.bucket_name, "Key": key}
        if start:
            params["Range"] = f"bytes={start}-"
        LOGGER.debug("Fetching '%s' on remote '%s' from byte %d", key, profile.name, start)
        response = await self._call(profile, "get_object", **params)
        return ObjectStream(
            response["Body"],
            content_length=response.get("ContentLength"),
            total_size=_parse_total_size(response, start),
            etag=_clean_etag(response.get("ETag")),
        )

    async def put_object(self, profile: RemoteProfile, key: str, body: bytes) -> Optional[str]:
        LOGGER.debug("Uploading %d byte(s) to '%s' on remote '%s'", len(body), key, profile.name)
        response = await self._call(profile, "put_object", Bucket=profile.bucket_name, Key=key, Body=body)
        return _clean_etag(response.get("ETag"))

    async def create_multipart_upload(self, profile: RemoteProfile, key: str) -> str:
        response = await self._call(profile, "create_multipart_upload", Bucket=profile.bucket_name, Key=key)
        return response["UploadId"]

    async def upload_part(
        self,
        profile: RemoteProfile,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> str:
        LOGGER.debug("Uploading part %d of '%s' on remote '%s'", part_number, key, profile.name)
        response = await self._call(
            profile,
            "upload_part",
            Bucket=profile.bucket_name,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    async def complete_multipart_upload(
        self,
        profile: RemoteProfile,
        key: str,
        upload_id: str,
        parts: Iterable[tuple[int, str]],
    ) -> None:
        await self._call(
            profile,
            "complete_multipart_upload",
            Bucket=profile.bucket_name,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [{"PartNumber": number, "ETag": etag} for number, etag in parts]},
        )

    async def abort_multipart_upload(self, profile: RemoteProfile, key: str, upload_id: str) -> None:
        await self._call(
            profile,
            "abort_multipart_upload",
            Bucket=profile.bucket_name,
            Key=key,
            UploadId=upload_id,
        )

    async def delete_object(self, profile: RemoteProfile, key: str) -> None:
        LOGGER.debug("Deleting '%s' on remote '%s'", key, profile.name)
        await self._call(profile, "delete_object", Bucket=profile.bucket_name, Key=key)

    async def delete_objects(self, profile: RemoteProfile, keys: list[str]) -> None:
        """Delete up to :data:`DELETE_BATCH_SIZE` keys in one request."""

        if not keys:
            return
        if len(keys) > DELETE_BATCH_SIZE:
            raise ValueError(f"At most {DELETE_BATCH_SIZE} keys can be deleted per request")
        LOGGER.debug("Deleting %d key(s) on remote '%s'", len(keys), profile.name)
        response = await self._call(
            profile,
            "delete_objects",
            Bucket=profile.bucket_name,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
        )
        errors = response.get("Errors") or []
        if errors:
            first = errors[0]
            raise error_for_code(
                str(first.get("Code") or ""),
                f"Failed to delete {len(errors)} key(s), first '{first.get('Key')}': {first.get('Message')}",
            )

    async def check_bucket(self, profile: RemoteProfile) -> None:
        """Confirm the bucket is reachable with the profile's credentials."""
        await self._call(profile, "head_bucket", Bucket=profile.bucket_name)
