"""Exception hierarchy for s3-uploads."""

from __future__ import annotations

__all__ = [
    "ConfigurationError",
    "InsufficientDataError",
    "InternalError",
    "InvalidArgumentError",
    "ServerError",
    "StorageConnectionError",
    "StorageError",
    "UploadAbortedError",
    "UploadClosedError",
]


class StorageError(Exception):
    """Base exception for all upload-related errors.

    Transports and the upload engine raise exceptions derived from this class
    so callers can handle every failure of an upload with a single ``except``.
    """


class InvalidArgumentError(StorageError, ValueError):
    """Raised when an upload cannot be planned with the given sizes.

    This is raised synchronously, before any request is sent, when:
    - A requested part size is outside 5MiB..5GiB
    - The object size exceeds 5TiB
    - The resulting part count exceeds 10000
    - The object size is unknown and no part size was given
    """


class InsufficientDataError(StorageError):
    """Raised when a source is exhausted before the declared length was read.

    Attributes:
        expected: Number of bytes that were declared
        actual: Number of bytes actually read before EOF
    """

    def __init__(self, expected: int, actual: int) -> None:
        """Initialize InsufficientDataError.

        Args:
            expected: Number of bytes that were declared
            actual: Number of bytes actually read before EOF
        """
        self.expected = expected
        self.actual = actual
        super().__init__(f"Insufficient data: read {actual} bytes, expected {expected}")


class StorageConnectionError(StorageError):
    """Raised when a request cannot reach the storage service.

    This typically occurs when:
    - Network connectivity issues prevent access
    - The endpoint refuses or drops the connection
    - A request times out
    """


class ServerError(StorageError):
    """Raised when the storage service answers with a non-2xx response.

    Attributes:
        status_code: HTTP status code of the response
        code: S3 error code (e.g. ``NoSuchUpload``, ``EntityTooSmall``)
        bucket: Bucket the request targeted
        key: Object key the request targeted
        request_id: Request id reported by the service, if any
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        code: str | None = None,
        bucket: str | None = None,
        key: str | None = None,
        request_id: str | None = None,
    ) -> None:
        """Initialize ServerError.

        Args:
            message: Human readable error message
            status_code: HTTP status code of the response
            code: S3 error code
            bucket: Bucket the request targeted
            key: Object key the request targeted
            request_id: Request id reported by the service
        """
        self.status_code = status_code
        self.code = code
        self.bucket = bucket
        self.key = key
        self.request_id = request_id
        super().__init__(f"{code or 'ServerError'} ({status_code}): {message}")


class InternalError(StorageError):
    """Raised when an internal invariant is violated.

    This typically occurs when upload methods are called out of order, for
    example uploading parts before the session was initiated.
    """


class UploadAbortedError(InternalError):
    """Raised when writing to or closing an upload that was aborted."""


class UploadClosedError(InternalError):
    """Raised when writing to an upload that was already closed."""


class ConfigurationError(StorageError):
    """Raised when client or transport configuration is invalid.

    This typically occurs when:
    - Required configuration parameters are missing
    - Configuration values are invalid or incompatible
    - An optional dependency needed by a transport is not installed
    """
