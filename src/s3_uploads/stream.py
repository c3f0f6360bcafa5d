"""Byte-stream writer that turns arbitrary writes into S3 parts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from s3_uploads.coordinator import MultipartUploadCoordinator
from s3_uploads.exceptions import InsufficientDataError, InvalidArgumentError, UploadClosedError
from s3_uploads.planner import plan_upload
from s3_uploads.pool import BufferPool, PartBuffer

if TYPE_CHECKING:
    from types import TracebackType

    from s3_uploads.base import Body, Transport
    from s3_uploads.retry import RetryConfig
    from s3_uploads.types import ObjectWriteResult, ProgressCallback, UploadPlan, UploadState

__all__ = ("PutObjectOutputStream",)

logger = logging.getLogger(__name__)

#: First allocation of a buffer that may end up as a single PUT
SMALL_BUFFER_SIZE = 16 * 1024


class PutObjectOutputStream:
    """Async writer that uploads everything written to it as one object.

    Writes are copied into part-sized buffers taken from a
    :class:`~s3_uploads.pool.BufferPool`. A full buffer is handed to the
    :class:`~s3_uploads.coordinator.MultipartUploadCoordinator` when more data
    arrives, so the final part is always sent by :meth:`close`. If the whole
    object fits in one buffer it is sent with a single PUT.

    When ``object_size`` is given and needs more than one part, the multipart
    session is created as soon as the writer is started so the upload id
    request overlaps with the first writes. Otherwise the session is created
    when the first buffer fills up.

    Use it as an async context manager: leaving the block normally closes the
    writer, leaving it with an exception aborts the upload.

    Example::

        async with PutObjectOutputStream(transport, "bucket", "key", object_size=size) as writer:
            async for chunk in source:
                await writer.write(chunk)
        print(writer.result.etag)
    """

    def __init__(
        self,
        transport: Transport,
        bucket: str,
        key: str,
        *,
        object_size: int | None = None,
        part_size: int | None = None,
        headers: Mapping[str, str] | None = None,
        max_parallel_requests: int | None = None,
        buffer_pool: BufferPool | None = None,
        buffer_pool_capacity: int | None = None,
        retry_config: RetryConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Initialize PutObjectOutputStream.

        Args:
            transport: Transport used to send requests
            bucket: Bucket name
            key: Object key
            object_size: Total object size in bytes, or None if unknown
            part_size: Part size in bytes, or None to derive it from object_size
            headers: Headers for create-multipart-upload or the single PUT
            max_parallel_requests: Maximum number of parts in flight (None or 0 for no cap)
            buffer_pool: Pool to take part buffers from; its buffer size must
                equal the planned part size
            buffer_pool_capacity: Idle buffers kept by the pool created when
                buffer_pool is not given
            retry_config: Retry policy applied to every request
            progress_callback: Called each time the service acknowledges data

        Raises:
            InvalidArgumentError: If the sizes cannot be planned or the pool
                does not match the part size
        """
        self.bucket = bucket
        self.key = key
        self.plan: UploadPlan = plan_upload(object_size, part_size)

        if buffer_pool is None:
            if buffer_pool_capacity is None:
                buffer_pool_capacity = max_parallel_requests + 1 if max_parallel_requests else 4
            initial_size = None
            if self.plan.part_count <= 1:
                # Grow from a small allocation until the data outgrows a single PUT
                initial_size = min(self.plan.part_size, self.plan.object_size or SMALL_BUFFER_SIZE)
            buffer_pool = BufferPool(buffer_pool_capacity, self.plan.part_size, initial_size)
        elif buffer_pool.buffer_size != self.plan.part_size:
            raise InvalidArgumentError(
                f"buffer pool holds {buffer_pool.buffer_size} byte buffers, part size is {self.plan.part_size}"
            )
        self._pool = buffer_pool
        self._coordinator = MultipartUploadCoordinator(
            transport,
            bucket,
            key,
            self.plan,
            headers=headers,
            max_parallel_requests=max_parallel_requests,
            buffer_pool=buffer_pool,
            retry_config=retry_config,
            progress_callback=progress_callback,
        )
        self._buffer: PartBuffer | None = None
        self._written = 0
        self._closed = False
        self._close_task: asyncio.Future[ObjectWriteResult] | None = None
        self.result: ObjectWriteResult | None = None

    @property
    def bytes_written(self) -> int:
        """Number of bytes accepted by :meth:`write` so far."""
        return self._written

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> UploadState:
        return self._coordinator.state

    @property
    def upload_id(self) -> str | None:
        return self._coordinator.upload_id

    @property
    def coordinator(self) -> MultipartUploadCoordinator:
        return self._coordinator

    def start(self) -> None:
        """Create the multipart session now if the known size needs several parts."""
        if self.plan.part_count > 1 and not self._coordinator.is_multipart:
            self._coordinator.start()

    async def write(self, data: Body) -> int:
        """Append data to the object.

        Args:
            data: Bytes to append

        Returns:
            Number of bytes written

        Raises:
            UploadClosedError: If the writer was closed or aborted
            InvalidArgumentError: If the write would exceed the declared object size
            StorageError: The first error of a failed upload
        """
        if self._closed:
            raise UploadClosedError(f"writer for {self.bucket}/{self.key} is closed")
        self._coordinator.ensure_open()

        view = memoryview(data).cast("B")
        size = len(view)
        if self.plan.object_size is not None and self._written + size > self.plan.object_size:
            raise InvalidArgumentError(
                f"write of {size} bytes exceeds object size {self.plan.object_size} "
                f"({self._written} bytes already written)"
            )
        if size == 0:
            return 0
        self.start()

        offset = 0
        while offset < size:
            if self._buffer is None:
                self._buffer = self._pool.take()
            elif self._buffer.is_full:
                buffer, self._buffer = self._buffer, None
                await self._coordinator.submit_part(buffer)
                continue
            n = min(self._buffer.remaining, size - offset)
            self._buffer.write(view[offset : offset + n])
            offset += n
            self._written += n
        return size

    async def close(self) -> ObjectWriteResult:
        """Send the remaining data and finish the upload.

        Calling close again returns the first result, or raises the first
        error, without sending any request.

        Returns:
            ObjectWriteResult of the uploaded object

        Raises:
            InsufficientDataError: If fewer than object_size bytes were written;
                the upload is aborted
            StorageError: The first error of a failed upload
        """
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._close())
        return await asyncio.shield(self._close_task)

    async def _close(self) -> ObjectWriteResult:
        self._closed = True
        buffer, self._buffer = self._buffer, None

        expected = self.plan.object_size
        if expected is not None and self._written < expected:
            if buffer is not None:
                self._pool.put(buffer)
            error = InsufficientDataError(expected, self._written)
            logger.warning("Closing %s/%s early: %s", self.bucket, self.key, error)
            await self._abort_with(error)
            raise error

        self.result = await self._coordinator.complete(buffer)
        return self.result

    async def _abort_with(self, error: BaseException) -> None:
        try:
            await self._coordinator.abort()
        except Exception as abort_error:
            error.add_note(f"aborting the upload also failed: {abort_error!r}")

    async def abort(self) -> None:
        """Abort the upload and discard all written data.

        Raises:
            InternalError: If the upload already completed
            StorageError: If the abort request failed
        """
        self._closed = True
        if self._buffer is not None:
            self._pool.put(self._buffer)
            self._buffer = None
        await self._coordinator.abort()

    async def __aenter__(self) -> PutObjectOutputStream:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_val is None:
            await self.close()
            return
        if self._close_task is not None and self._close_task.done():
            # close() already ran and either finished or aborted the upload
            return
        logger.info("Aborting upload of %s/%s after %s", self.bucket, self.key, exc_type.__name__ if exc_type else "error")
        self._closed = True
        if self._buffer is not None:
            self._pool.put(self._buffer)
            self._buffer = None
        await self._abort_with(exc_val)
