"""Multipart upload session state machine."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, TypeVar

from s3_uploads.exceptions import InternalError, InvalidArgumentError, UploadAbortedError
from s3_uploads.planner import MAX_PART_COUNT
from s3_uploads.retry import RetryConfig, with_retry
from s3_uploads.types import ObjectWriteResult, Part, PendingPart, ProgressInfo, UploadState

if TYPE_CHECKING:
    from s3_uploads.base import Transport
    from s3_uploads.pool import BufferPool, PartBuffer
    from s3_uploads.types import ProgressCallback, UploadPlan

__all__ = ("MultipartUploadCoordinator",)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MultipartUploadCoordinator:
    """Drives one upload from initiate through parts to complete or abort.

    Parts are handed over with :meth:`submit_part` in the order they are
    filled. Each part is uploaded by its own task, so several parts can be in
    flight at once; ``max_parallel_requests`` caps how many, and
    :meth:`submit_part` waits for a slot when the cap is reached.

    The create-multipart-upload request runs concurrently with the producer.
    Parts submitted before the upload id is known are queued and dispatched
    in submission order as soon as it arrives.

    The first failure of any request is recorded and triggers an abort of the
    session; failures seen after that are ignored. :meth:`complete` waits for
    every part and either completes the upload or raises the recorded error.
    If the abort request itself fails, that error is kept in ``abort_error``
    and noted on the raised error, never raised in its place.

    When the plan describes a single part and no part was submitted,
    :meth:`complete` sends the data with one PUT and no multipart calls.

    Example::

        coordinator = MultipartUploadCoordinator(transport, "bucket", "key", plan)
        coordinator.start()
        await coordinator.submit_part(buffer1)
        await coordinator.submit_part(buffer2)
        result = await coordinator.complete(last_buffer)
    """

    def __init__(
        self,
        transport: Transport,
        bucket: str,
        key: str,
        plan: UploadPlan,
        *,
        headers: Mapping[str, str] | None = None,
        max_parallel_requests: int | None = None,
        buffer_pool: BufferPool | None = None,
        retry_config: RetryConfig | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Initialize MultipartUploadCoordinator.

        Args:
            transport: Transport used to send requests
            bucket: Bucket name
            key: Object key
            plan: Part layout of the upload
            headers: Headers for create-multipart-upload or the single PUT
            max_parallel_requests: Maximum number of parts in flight (None or 0 for no cap)
            buffer_pool: Pool that receives part buffers once their request finished
            retry_config: Retry policy applied to every request
            progress_callback: Called each time the service acknowledges data
        """
        if max_parallel_requests is not None and max_parallel_requests < 0:
            raise InvalidArgumentError("max_parallel_requests must not be negative")

        self.transport = transport
        self.bucket = bucket
        self.key = key
        self.plan = plan
        self.headers = dict(headers or {})
        self.max_parallel_requests = max_parallel_requests or 0
        self.state = UploadState.PLANNING
        self.upload_id: str | None = None
        self.error: BaseException | None = None
        self.abort_error: BaseException | None = None

        self._pool = buffer_pool
        self._retry = retry_config
        self._progress = progress_callback
        # Guards _parts, _pending, _in_flight and upload_id
        self._cond = asyncio.Condition()
        self._parts: dict[int, Part] = {}
        self._pending: list[PendingPart] = []
        self._part_tasks: list[asyncio.Task[None]] = []
        self._in_flight = 0
        self._part_number = 0
        self._bytes_acked = 0
        self._initiate_task: asyncio.Task[None] | None = None
        self._abort_task: asyncio.Task[None] | None = None
        self._complete_task: asyncio.Task[ObjectWriteResult] | None = None
        self._abort_noted = False

    @property
    def parts(self) -> list[Part]:
        """Acknowledged parts ordered by part number."""
        return [self._parts[number] for number in sorted(self._parts)]

    @property
    def part_count(self) -> int:
        """Number of parts submitted so far."""
        return self._part_number

    @property
    def in_flight(self) -> int:
        """Number of submitted parts whose request has not finished."""
        return self._in_flight

    @property
    def is_multipart(self) -> bool:
        return self._initiate_task is not None

    @property
    def _stopping(self) -> bool:
        return self.error is not None or self._abort_task is not None

    def start(self) -> None:
        """Issue create-multipart-upload in the background.

        Calling this more than once has no effect. Must be called from a
        running event loop.
        """
        if self._initiate_task is not None:
            return
        if self.state is not UploadState.PLANNING:
            raise InternalError(f"cannot start upload in state {self.state.value}")
        self.state = UploadState.AWAITING_UPLOAD_ID
        self._initiate_task = asyncio.create_task(self._initiate())

    async def _call(self, func: Callable[[], Awaitable[T]], description: str) -> T:
        if self._retry is None:
            return await func()
        return await with_retry(func, self._retry, description=description)

    async def _initiate(self) -> None:
        try:
            upload_id = await self._call(
                lambda: self.transport.create_multipart_upload(self.bucket, self.key, headers=self.headers),
                f"create multipart upload of {self.bucket}/{self.key}",
            )
        except Exception as e:
            logger.warning("Failed to create multipart upload for %s/%s: %s", self.bucket, self.key, e)
            self._record_error(e)
            self._trigger_abort()
            return

        logger.info("Created multipart upload %s for %s/%s", upload_id, self.bucket, self.key)
        async with self._cond:
            self.upload_id = upload_id
            if self._stopping:
                # The abort task waits for this task and cleans up the session
                return
            self.state = UploadState.UPLOADING_PARTS
            for pending in self._pending:
                self._dispatch(pending)
            self._pending.clear()

    def ensure_open(self) -> None:
        """Raise if the upload can no longer accept parts."""
        if self.error is not None:
            raise self.error
        if self._abort_task is not None:
            raise UploadAbortedError(f"upload of {self.bucket}/{self.key} was aborted")
        if self.state in (UploadState.COMPLETING, UploadState.COMPLETED):
            raise InternalError(f"upload of {self.bucket}/{self.key} is already {self.state.value}")

    def _release(self, buffer: PartBuffer) -> None:
        if self._pool is not None:
            self._pool.put(buffer)

    async def submit_part(self, buffer: PartBuffer) -> int:
        """Hand a filled buffer over as the next part.

        Starts the multipart session if needed. Waits while
        ``max_parallel_requests`` parts are already in flight. Ownership of
        the buffer passes to the coordinator, which returns it to the pool
        when the part request has finished.

        Args:
            buffer: Buffer holding the part data

        Returns:
            Part number assigned to the buffer

        Raises:
            StorageError: The recorded error if the upload already failed
            UploadAbortedError: If the upload was aborted
            InternalError: If the upload is completing or more parts than planned are submitted
        """
        try:
            self.ensure_open()
            self.start()
            async with self._cond:
                while (
                    self.max_parallel_requests
                    and self._in_flight >= self.max_parallel_requests
                    and not self._stopping
                ):
                    await self._cond.wait()
                self.ensure_open()
                number = self._part_number + 1
                if number > MAX_PART_COUNT:
                    raise InvalidArgumentError(f"upload exceeds {MAX_PART_COUNT} parts")
                if self.plan.part_count > 0 and number > self.plan.part_count:
                    raise InternalError(f"part {number} exceeds planned part count {self.plan.part_count}")

                self._part_number = number
                self._in_flight += 1
                pending = PendingPart(number=number, length=buffer.length, body=buffer)
                if self.upload_id is None:
                    logger.debug("Queueing part %d of %s/%s until upload id is known", number, self.bucket, self.key)
                    self._pending.append(pending)
                else:
                    self._dispatch(pending)
        except BaseException:
            # Includes cancellation while waiting at the parallelism cap
            self._release(buffer)
            raise
        return number

    def _dispatch(self, pending: PendingPart) -> None:
        logger.debug("Dispatching part %d (%d bytes) of %s", pending.number, pending.length, self.upload_id)
        self._part_tasks.append(asyncio.create_task(self._upload_part(pending)))

    async def _upload_part(self, pending: PendingPart) -> None:
        upload_id = self.upload_id
        if upload_id is None:
            raise InternalError("part dispatched before upload id is known")

        result = None
        try:
            data = pending.body.getbuffer()
            result = await self._call(
                lambda: self.transport.upload_part(self.bucket, self.key, upload_id, pending.number, data),
                f"part {pending.number} of upload {upload_id}",
            )
        except Exception as e:
            logger.warning("Part %d of upload %s failed: %s", pending.number, upload_id, e)
            self._record_error(e)
            self._trigger_abort()
        finally:
            self._release(pending.body)
            async with self._cond:
                self._in_flight -= 1
                if result is not None:
                    if self._stopping:
                        logger.debug("Discarding part %d of aborted upload %s", pending.number, upload_id)
                        result = None
                    elif pending.number in self._parts:
                        raise InternalError(f"part {pending.number} was acknowledged twice")
                    else:
                        self._parts[pending.number] = Part(pending.number, result.etag, result.checksum)
                self._cond.notify_all()

        if result is not None:
            await self._report_progress(pending.length)

    async def _report_progress(self, length: int) -> None:
        self._bytes_acked += length
        if self._progress is None:
            return
        outcome = self._progress(
            ProgressInfo(
                bytes_transferred=self._bytes_acked,
                total_bytes=self.plan.object_size,
                operation="upload",
                key=self.key,
            )
        )
        if inspect.isawaitable(outcome):
            await outcome

    def _record_error(self, error: BaseException) -> None:
        # First error wins; anything after an abort started is ignored
        if self.error is None and self._abort_task is None:
            self.error = error

    def _trigger_abort(self) -> asyncio.Task[None]:
        if self._abort_task is None:
            self.state = UploadState.ABORTING
            self._abort_task = asyncio.create_task(self._run_abort())
        return self._abort_task

    async def _run_abort(self) -> None:
        async with self._cond:
            for pending in self._pending:
                self._release(pending.body)
                self._in_flight -= 1
            self._pending.clear()
            self._cond.notify_all()

        initiate = self._initiate_task
        if initiate is not None and not initiate.done():
            await asyncio.wait([initiate])

        if self.upload_id is not None:
            try:
                await self.transport.abort_multipart_upload(self.bucket, self.key, self.upload_id)
                logger.info("Aborted multipart upload %s for %s/%s", self.upload_id, self.bucket, self.key)
            except Exception as e:
                logger.exception("Failed to abort multipart upload %s for %s/%s", self.upload_id, self.bucket, self.key)
                self.abort_error = e

        self.state = UploadState.ABORTED
        async with self._cond:
            self._cond.notify_all()

    def _note_abort_failure(self, error: BaseException) -> None:
        if self.abort_error is not None and not self._abort_noted:
            self._abort_noted = True
            error.add_note(
                f"aborting upload {self.upload_id} also failed: {self.abort_error!r}; uploaded parts may remain"
            )

    async def abort(self) -> None:
        """Abort the upload, discarding queued parts.

        In-flight part requests are left to finish but their results are
        discarded. Calling abort again has no further effect.

        Raises:
            InternalError: If the upload already completed
            StorageError: If the abort request itself failed
        """
        if self.state is UploadState.COMPLETED:
            raise InternalError(f"upload of {self.bucket}/{self.key} already completed")
        await asyncio.shield(self._trigger_abort())
        if self.abort_error is not None:
            raise self.abort_error

    async def complete(self, final: PartBuffer | None = None) -> ObjectWriteResult:
        """Finish the upload.

        ``final`` holds the unsent tail of the object. If no multipart session
        was started it is sent with a single PUT; otherwise it becomes the
        last part (unless it is empty). The call then waits for every part and
        completes the multipart upload.

        Calling complete again returns the first result, or raises the first
        error, without sending any request.

        Args:
            final: Buffer holding the remaining data, owned by the coordinator afterwards

        Returns:
            ObjectWriteResult of the uploaded object

        Raises:
            StorageError: The first error recorded during the upload
            UploadAbortedError: If the upload was aborted by the caller
        """
        if self._complete_task is None:
            self._complete_task = asyncio.create_task(self._complete(final))
        elif final is not None:
            self._release(final)
        return await asyncio.shield(self._complete_task)

    async def _complete(self, final: PartBuffer | None) -> ObjectWriteResult:
        if self._initiate_task is None and self.plan.part_count != -1 and self.plan.part_count > 1:
            self.start()

        if self._initiate_task is None:
            return await self._put_single(final)

        if final is not None:
            if final.length > 0 or self._part_number == 0:
                try:
                    await self.submit_part(final)
                except Exception:
                    # A failed session is reported below, after the abort finished
                    if not self._stopping:
                        raise
            else:
                self._release(final)

        try:
            self.ensure_open()
        except UploadAbortedError:
            await self._wait_aborted()
            raise
        except BaseException as e:
            await self._wait_aborted()
            self._note_abort_failure(e)
            raise
        self.state = UploadState.COMPLETING

        await asyncio.wait([self._initiate_task])
        while True:
            tasks = list(self._part_tasks)
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            if len(tasks) == len(self._part_tasks):
                break

        if self.error is not None or self._abort_task is not None:
            await self._wait_aborted()
            if self.error is None:
                raise UploadAbortedError(f"upload of {self.bucket}/{self.key} was aborted")
            self._note_abort_failure(self.error)
            raise self.error

        async with self._cond:
            parts = self.parts
        if len(parts) != self._part_number or (self.plan.part_count > 0 and len(parts) != self.plan.part_count):
            raise InternalError(
                f"expected {self.plan.part_count if self.plan.part_count > 0 else self._part_number} parts, "
                f"got {len(parts)}"
            )

        upload_id = self.upload_id
        if upload_id is None:
            raise InternalError("completing upload without an upload id")
        try:
            result = await self._call(
                lambda: self.transport.complete_multipart_upload(self.bucket, self.key, upload_id, parts),
                f"complete multipart upload {upload_id}",
            )
        except Exception as e:
            logger.warning("Failed to complete multipart upload %s: %s", upload_id, e)
            self._record_error(e)
            self._trigger_abort()
            await self._wait_aborted()
            self._note_abort_failure(e)
            raise

        self.state = UploadState.COMPLETED
        logger.info("Completed multipart upload %s for %s/%s with %d parts", upload_id, self.bucket, self.key, len(parts))
        return result

    async def _wait_aborted(self) -> None:
        if self._abort_task is not None:
            await asyncio.shield(self._abort_task)

    async def _put_single(self, final: PartBuffer | None) -> ObjectWriteResult:
        if self._abort_task is not None:
            if final is not None:
                self._release(final)
            await self._wait_aborted()
            raise UploadAbortedError(f"upload of {self.bucket}/{self.key} was aborted")

        self.state = UploadState.COMPLETING
        length = final.length if final is not None else 0
        try:
            data = final.getbuffer() if final is not None else b""
            result = await self._call(
                lambda: self.transport.put_object(self.bucket, self.key, data, headers=self.headers),
                f"put object {self.bucket}/{self.key}",
            )
        except Exception as e:
            logger.warning("Failed to put object %s/%s: %s", self.bucket, self.key, e)
            self._record_error(e)
            self.state = UploadState.ABORTED
            raise
        finally:
            if final is not None:
                self._release(final)

        self.state = UploadState.COMPLETED
        logger.info("Uploaded %s/%s with a single request (%d bytes)", self.bucket, self.key, length)
        await self._report_progress(length)
        return result
