from __future__ import annotations
"""Error kinds raised by the browsing core."""
from typing import Optional


class S3NavError(RuntimeError):
    """Base class for all errors surfaced by the core."""

    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class InvalidCredentialsError(S3NavError):
    """Raised when a request cannot be signed or the store rejects the keys."""


class AccessDeniedError(S3NavError):
    """Raised when the credentials are valid but lack permission."""


class NotFoundError(S3NavError):
    """Raised when the bucket or key does not exist."""


class TransientError(S3NavError):
    """Network failure or 5xx response; retried before being surfaced."""


class RequestError(S3NavError):
    """Any other client-side (4xx) failure; never retried."""


class OperationCancelledError(S3NavError):
    """Raised when a listing or transfer is cancelled by the caller."""


class PartialFailureError(S3NavError):
    """A multi-page listing was interrupted after some pages were applied."""

    def __init__(self, message: str, *, pages_applied: int, cause: Exception):
        super().__init__(
            message,
            code=getattr(cause, "code", None),
            status=getattr(cause, "status", None),
        )
        self.pages_applied = pages_applied
        self.cause = cause


class UnknownRemoteError(S3NavError):
    """Raised when an operation names a remote that is not configured."""
