"""Type definitions for s3-uploads."""

from __future__ import annotations

import enum
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from s3_uploads.pool import PartBuffer

__all__ = (
    "ObjectWriteResult",
    "Part",
    "PartResult",
    "PendingPart",
    "ProgressCallback",
    "ProgressInfo",
    "UploadPlan",
    "UploadState",
)


@dataclass(frozen=True)
class UploadPlan:
    """How an object is split into parts.

    Attributes:
        part_size: Size of every part except possibly the last one
        part_count: Number of parts, or -1 when the object size is unknown
        object_size: Total object size in bytes (None if unknown)
    """

    part_size: int
    part_count: int
    object_size: int | None = None

    @property
    def is_streaming(self) -> bool:
        """True when the number of parts is decided by stream exhaustion."""
        return self.part_count == -1

    @property
    def is_single_part(self) -> bool:
        """True when the object is sent with one PUT instead of a multipart session."""
        return 0 <= self.part_count <= 1


@dataclass(frozen=True)
class Part:
    """A part acknowledged by the service.

    Attributes:
        number: Part number (1-indexed)
        etag: ETag returned for the part, without quotes
        checksum: Checksum reported by the service, if any
    """

    number: int
    etag: str
    checksum: str | None = None


@dataclass(frozen=True)
class PartResult:
    """Response of a single part upload.

    Attributes:
        etag: ETag returned for the part, without quotes
        checksum: Checksum reported by the service, if any
    """

    etag: str
    checksum: str | None = None


@dataclass
class PendingPart:
    """A filled buffer waiting for the upload id to be known.

    Attributes:
        number: Part number (1-indexed)
        length: Number of valid bytes in the buffer
        body: Buffer holding the part data
    """

    number: int
    length: int
    body: PartBuffer


@dataclass(frozen=True)
class ObjectWriteResult:
    """Identity of an object after a successful upload.

    Attributes:
        bucket: Bucket the object was written to
        key: Object key
        etag: ETag of the final object, without quotes
        version_id: Version id if the bucket is versioned
        region: Region the request was sent to
        headers: Response headers of the final request
    """

    bucket: str
    key: str
    etag: str
    version_id: str | None = None
    region: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


class UploadState(enum.Enum):
    """States of a multipart upload session."""

    PLANNING = "planning"
    AWAITING_UPLOAD_ID = "awaiting_upload_id"
    UPLOADING_PARTS = "uploading_parts"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadState.COMPLETED, UploadState.ABORTED)


@dataclass
class ProgressInfo:
    """Information about upload progress.

    Attributes:
        bytes_transferred: Number of bytes acknowledged by the service so far
        total_bytes: Total number of bytes to transfer (None if unknown)
        percentage: Percentage complete (0-100, None if total unknown)
        operation: Type of operation ("upload")
        key: Object key being transferred
    """

    bytes_transferred: int
    total_bytes: int | None
    operation: str
    key: str

    @property
    def percentage(self) -> float | None:
        """Calculate percentage complete."""
        if self.total_bytes is None or self.total_bytes == 0:
            return None
        return (self.bytes_transferred / self.total_bytes) * 100


class ProgressCallback(Protocol):
    """Protocol for progress callback functions.

    Progress callbacks are called every time a part (or a single PUT) is
    acknowledged by the service. They can be sync or async.

    Example::

        def my_progress(info: ProgressInfo) -> None:
            if info.percentage:
                print(f"{info.key}: {info.percentage:.1f}%")
            else:
                print(f"{info.key}: {info.bytes_transferred} bytes")
    """

    def __call__(self, info: ProgressInfo) -> None | Awaitable[None]:
        """Called with progress information.

        Args:
            info: Current progress information
        """
        ...
