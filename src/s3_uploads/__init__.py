"""s3-uploads - Streaming, parallel multipart uploads to S3-compatible storage."""

from __future__ import annotations

from s3_uploads.__metadata__ import __project__, __version__
from s3_uploads.backends import (
    HttpConfig,
    HttpTransport,
    MemoryConfig,
    MemoryTransport,
    S3Config,
    S3Transport,
)
from s3_uploads.base import BaseTransport, Transport
from s3_uploads.client import UploadClient, UploadConfig
from s3_uploads.coordinator import MultipartUploadCoordinator
from s3_uploads.exceptions import (
    ConfigurationError,
    InsufficientDataError,
    InternalError,
    InvalidArgumentError,
    ServerError,
    StorageConnectionError,
    StorageError,
    UploadAbortedError,
    UploadClosedError,
)
from s3_uploads.planner import MAX_OBJECT_SIZE, MAX_PART_COUNT, MAX_PART_SIZE, MIN_PART_SIZE, plan_upload
from s3_uploads.pool import BufferPool, PartBuffer
from s3_uploads.retry import RetryConfig, retry, with_retry
from s3_uploads.stream import PutObjectOutputStream
from s3_uploads.types import (
    ObjectWriteResult,
    Part,
    PartResult,
    ProgressCallback,
    ProgressInfo,
    UploadPlan,
    UploadState,
)

__all__ = (
    # Metadata
    "__project__",
    "__version__",
    # Protocol and base class
    "BaseTransport",
    "Transport",
    # Transports
    "HttpConfig",
    "HttpTransport",
    "MemoryConfig",
    "MemoryTransport",
    "S3Config",
    "S3Transport",
    # Upload engine
    "BufferPool",
    "MultipartUploadCoordinator",
    "PartBuffer",
    "PutObjectOutputStream",
    "UploadClient",
    "UploadConfig",
    "plan_upload",
    # Limits
    "MAX_OBJECT_SIZE",
    "MAX_PART_COUNT",
    "MAX_PART_SIZE",
    "MIN_PART_SIZE",
    # Retry
    "RetryConfig",
    "retry",
    "with_retry",
    # Exceptions
    "ConfigurationError",
    "InsufficientDataError",
    "InternalError",
    "InvalidArgumentError",
    "ServerError",
    "StorageConnectionError",
    "StorageError",
    "UploadAbortedError",
    "UploadClosedError",
    # Types
    "ObjectWriteResult",
    "Part",
    "PartResult",
    "ProgressCallback",
    "ProgressInfo",
    "UploadPlan",
    "UploadState",
)
