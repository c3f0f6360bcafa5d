"""Part size and part count planning for multipart uploads."""

from __future__ import annotations

from s3_uploads.exceptions import InvalidArgumentError
from s3_uploads.types import UploadPlan

__all__ = (
    "MAX_OBJECT_SIZE",
    "MAX_PART_COUNT",
    "MAX_PART_SIZE",
    "MIN_PART_SIZE",
    "plan_upload",
)

MiB = 1024 * 1024

MIN_PART_SIZE = 5 * MiB
MAX_PART_SIZE = 5 * 1024 * MiB
MAX_OBJECT_SIZE = 5 * 1024 * 1024 * MiB
MAX_PART_COUNT = 10_000


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def plan_upload(object_size: int | None = None, part_size: int | None = None) -> UploadPlan:
    """Compute part size and part count for an upload.

    When the object size is known and no part size is requested, the smallest
    multiple of 5MiB that keeps the upload within 10000 parts is chosen. If that
    part size covers the whole object, a single-part plan is returned and the
    object is sent with one PUT.

    When the object size is unknown the part count is -1 and a part size must
    be given; the number of parts is decided when the stream is exhausted.

    Args:
        object_size: Total object size in bytes, or None if unknown
        part_size: Requested part size in bytes, or None to compute one

    Returns:
        UploadPlan for the upload

    Raises:
        InvalidArgumentError: If the sizes cannot be satisfied within S3 limits
    """
    if part_size is not None:
        if part_size < MIN_PART_SIZE:
            raise InvalidArgumentError(f"part size {part_size} is not supported; minimum allowed 5MiB")
        if part_size > MAX_PART_SIZE:
            raise InvalidArgumentError(f"part size {part_size} is not supported; maximum allowed 5GiB")

    if object_size is None:
        if part_size is None:
            raise InvalidArgumentError("valid part size must be provided when object size is unknown")
        return UploadPlan(part_size=part_size, part_count=-1)

    if object_size < 0:
        raise InvalidArgumentError(f"object size {object_size} must not be negative")
    if object_size > MAX_OBJECT_SIZE:
        raise InvalidArgumentError(f"object size {object_size} is not supported; maximum allowed 5TiB")

    if part_size is None:
        part_size = _ceil_div(_ceil_div(object_size, MAX_PART_COUNT), MIN_PART_SIZE) * MIN_PART_SIZE
        # A zero-byte object still needs a valid part size for the buffer pool
        part_size = max(part_size, MIN_PART_SIZE)

    if part_size >= object_size:
        return UploadPlan(part_size=part_size, part_count=1, object_size=object_size)

    part_count = _ceil_div(object_size, part_size)
    if part_count > MAX_PART_COUNT:
        raise InvalidArgumentError(
            f"object size {object_size} and part size {part_size} make more than {MAX_PART_COUNT} parts"
        )

    return UploadPlan(part_size=part_size, part_count=part_count, object_size=object_size)
