"""High level upload API on top of a transport."""

from __future__ import annotations

import inspect
import logging
import mimetypes
from collections.abc import AsyncIterable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from s3_uploads.exceptions import ConfigurationError, InvalidArgumentError
from s3_uploads.planner import MAX_PART_COUNT, MAX_PART_SIZE
from s3_uploads.retry import RetryConfig, with_retry
from s3_uploads.stream import PutObjectOutputStream
from s3_uploads.types import Part

if TYPE_CHECKING:
    from os import PathLike

    from s3_uploads.base import Body, Transport
    from s3_uploads.types import ObjectWriteResult, ProgressCallback

__all__ = ("UploadClient", "UploadConfig")

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class UploadConfig:
    """Configuration for :class:`UploadClient`.

    Attributes:
        max_parallel_requests: Maximum number of parts of one upload in flight
            at once (None or 0 for no cap)
        buffer_pool_capacity: Idle part buffers kept for reuse per upload.
            Defaults to ``max_parallel_requests + 1``, or 4 without a cap.
        default_content_type: Content-Type used when none is given
        retry: Retry policy for every request (None disables retries)
        write_chunk_size: Size of reads from file and stream sources
    """

    max_parallel_requests: int | None = 4
    buffer_pool_capacity: int | None = None
    default_content_type: str = DEFAULT_CONTENT_TYPE
    retry: RetryConfig | None = None
    write_chunk_size: int = 64 * 1024

    def __post_init__(self) -> None:
        if self.max_parallel_requests is not None and self.max_parallel_requests < 0:
            raise ConfigurationError("max_parallel_requests must not be negative")
        if self.buffer_pool_capacity is not None and self.buffer_pool_capacity < 1:
            raise ConfigurationError("buffer_pool_capacity must be positive")
        if self.write_chunk_size < 1:
            raise ConfigurationError("write_chunk_size must be positive")
        if not self.default_content_type:
            raise ConfigurationError("default_content_type must not be empty")

    @property
    def pool_capacity(self) -> int:
        if self.buffer_pool_capacity is not None:
            return self.buffer_pool_capacity
        if self.max_parallel_requests:
            return self.max_parallel_requests + 1
        return 4


class UploadClient:
    """Uploads objects to S3 through a transport.

    Offers the raw multipart operations as well as streaming uploads that
    split data into parts automatically.

    Example:
        >>> async with UploadClient(S3Transport(S3Config(region="us-east-1"))) as client:
        ...     result = await client.upload_file("bucket", "backups/db.tar", "/tmp/db.tar")
        ...     async with client.open_writer("bucket", "logs/today.txt") as writer:
        ...         await writer.write(b"hello")
    """

    def __init__(self, transport: Transport, config: UploadConfig | None = None) -> None:
        """Initialize UploadClient.

        Args:
            transport: Transport used to send requests
            config: Client configuration (optional)
        """
        self.transport = transport
        self.config = config or UploadConfig()

    def _object_headers(
        self,
        content_type: str | None,
        metadata: Mapping[str, str] | None,
        headers: Mapping[str, str] | None,
    ) -> dict[str, str]:
        result = {"Content-Type": content_type or self.config.default_content_type}
        for name, value in (metadata or {}).items():
            result[f"x-amz-meta-{name}"] = value
        result.update(headers or {})
        return result

    async def _call(self, func: Any, description: str) -> Any:
        if self.config.retry is None:
            return await func()
        return await with_retry(func, self.config.retry, description=description)

    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        *,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Start a multipart upload.

        Args:
            bucket: Bucket name
            key: Object key
            content_type: MIME type of the object
            metadata: User metadata, sent as ``x-amz-meta-*`` headers
            headers: Additional request headers

        Returns:
            Upload id of the new session
        """
        upload_id = await self._call(
            lambda: self.transport.create_multipart_upload(
                bucket, key, headers=self._object_headers(content_type, metadata, headers)
            ),
            f"create multipart upload of {bucket}/{key}",
        )
        logger.info("Created multipart upload %s for %s/%s", upload_id, bucket, key)
        return upload_id

    async def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: Body,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> Part:
        """Upload one part of a multipart upload.

        Args:
            bucket: Bucket name
            key: Object key
            upload_id: Upload id returned by :meth:`create_multipart_upload`
            part_number: Part number between 1 and 10000
            data: Part contents, at most 5GiB
            headers: Additional request headers

        Returns:
            Part to pass to :meth:`complete_multipart_upload`

        Raises:
            InvalidArgumentError: If the part number or size is out of range
        """
        if not 1 <= part_number <= MAX_PART_COUNT:
            raise InvalidArgumentError(f"part number must be between 1 and {MAX_PART_COUNT}, got {part_number}")
        if len(data) > MAX_PART_SIZE:
            raise InvalidArgumentError("part size cannot exceed 5GiB")
        result = await self._call(
            lambda: self.transport.upload_part(bucket, key, upload_id, part_number, data, headers=headers),
            f"part {part_number} of upload {upload_id}",
        )
        logger.debug("Uploaded part %d (%d bytes) of %s", part_number, len(data), upload_id)
        return Part(number=part_number, etag=result.etag, checksum=result.checksum)

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Part],
    ) -> ObjectWriteResult:
        """Complete a multipart upload.

        Parts may be given in any order; they are sent sorted by number.

        Raises:
            InvalidArgumentError: If no parts are given or a part number repeats
        """
        if not parts:
            raise InvalidArgumentError("at least one part is required")
        ordered = sorted(parts, key=lambda p: p.number)
        for previous, current in zip(ordered, ordered[1:]):
            if previous.number == current.number:
                raise InvalidArgumentError(f"part {current.number} is listed more than once")
        result = await self._call(
            lambda: self.transport.complete_multipart_upload(bucket, key, upload_id, ordered),
            f"complete multipart upload {upload_id}",
        )
        logger.info("Completed multipart upload %s for %s/%s with %d parts", upload_id, bucket, key, len(ordered))
        return result

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts."""
        await self.transport.abort_multipart_upload(bucket, key, upload_id)
        logger.info("Aborted multipart upload %s for %s/%s", upload_id, bucket, key)

    def open_writer(
        self,
        bucket: str,
        key: str,
        *,
        object_size: int | None = None,
        part_size: int | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> PutObjectOutputStream:
        """Create a writer that uploads everything written to it.

        Args:
            bucket: Bucket name
            key: Object key
            object_size: Total size in bytes, or None if unknown
            part_size: Part size, required when object_size is None
            content_type: MIME type of the object
            metadata: User metadata, sent as ``x-amz-meta-*`` headers
            headers: Additional request headers
            progress_callback: Called each time the service acknowledges data

        Returns:
            PutObjectOutputStream, best used as an async context manager

        Raises:
            InvalidArgumentError: If the sizes cannot be planned
        """
        return PutObjectOutputStream(
            self.transport,
            bucket,
            key,
            object_size=object_size,
            part_size=part_size,
            headers=self._object_headers(content_type, metadata, headers),
            max_parallel_requests=self.config.max_parallel_requests,
            buffer_pool_capacity=self.config.pool_capacity,
            retry_config=self.config.retry,
            progress_callback=progress_callback,
        )

    async def put_object(
        self,
        bucket: str,
        key: str,
        data: Body | Any,
        *,
        length: int | None = None,
        part_size: int | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> ObjectWriteResult:
        """Upload an object from bytes, a file object or an iterator of chunks.

        File objects may be synchronous or asynchronous (``read`` returning
        an awaitable). Small objects are sent with one PUT, larger ones as a
        multipart upload.

        Args:
            bucket: Bucket name
            key: Object key
            data: Bytes, a binary file object, or a (async) iterable of bytes
            length: Number of bytes to upload; exactly this many are read from
                a file object. Required unless data is bytes or part_size is given.
            part_size: Part size (derived from length when omitted)
            content_type: MIME type of the object
            metadata: User metadata, sent as ``x-amz-meta-*`` headers
            headers: Additional request headers
            progress_callback: Called each time the service acknowledges data

        Returns:
            ObjectWriteResult of the uploaded object

        Raises:
            InsufficientDataError: If the source ends before length bytes
            InvalidArgumentError: If the sizes cannot be planned or the source
                delivers more than length bytes
        """
        if isinstance(data, (bytes, bytearray, memoryview)):
            if length is not None and length != len(data):
                raise InvalidArgumentError(f"length {length} does not match data of {len(data)} bytes")
            length = len(data)

        writer = self.open_writer(
            bucket,
            key,
            object_size=length,
            part_size=part_size,
            content_type=content_type,
            metadata=metadata,
            headers=headers,
            progress_callback=progress_callback,
        )
        async with writer:
            if isinstance(data, (bytes, bytearray, memoryview)):
                await writer.write(data)
            elif hasattr(data, "read"):
                await self._copy_file(data, writer, length)
            elif isinstance(data, AsyncIterable):
                async for chunk in data:
                    await writer.write(chunk)
            elif isinstance(data, Iterable):
                for chunk in data:
                    await writer.write(chunk)
            else:
                raise InvalidArgumentError(f"cannot upload data of type {type(data).__name__}")
        return await writer.close()

    async def _copy_file(self, source: Any, writer: PutObjectOutputStream, length: int | None) -> None:
        remaining = length
        while remaining is None or remaining > 0:
            size = self.config.write_chunk_size if remaining is None else min(self.config.write_chunk_size, remaining)
            chunk = source.read(size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                break
            await writer.write(chunk)
            if remaining is not None:
                remaining -= len(chunk)

    async def upload_file(
        self,
        bucket: str,
        key: str,
        path: str | PathLike[str],
        *,
        part_size: int | None = None,
        content_type: str | None = None,
        metadata: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> ObjectWriteResult:
        """Upload a local file.

        The file size is taken from the file system, so the part layout is
        known up front. The Content-Type is guessed from the file name when
        not given.

        Raises:
            ConfigurationError: If aiofiles is not installed
            InsufficientDataError: If the file shrank while being read
        """
        try:
            import aiofiles
            import aiofiles.os
        except ImportError as e:
            raise ConfigurationError(
                "aiofiles is required for upload_file. Install it with: pip install s3-uploads[file]"
            ) from e

        path = Path(path)
        stat = await aiofiles.os.stat(path)
        if content_type is None:
            content_type = mimetypes.guess_type(path.name)[0]
        logger.info("Uploading %s (%d bytes) to %s/%s", path, stat.st_size, bucket, key)

        async with aiofiles.open(path, "rb") as f:
            return await self.put_object(
                bucket,
                key,
                f,
                length=stat.st_size,
                part_size=part_size,
                content_type=content_type,
                metadata=metadata,
                headers=headers,
                progress_callback=progress_callback,
            )

    async def close(self) -> None:
        """Close the underlying transport."""
        await self.transport.close()

    async def __aenter__(self) -> UploadClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
