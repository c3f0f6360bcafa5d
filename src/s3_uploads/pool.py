"""Reusable part buffers for concurrent part uploads."""

from __future__ import annotations

import logging
import queue

from s3_uploads.exceptions import InternalError, InvalidArgumentError
from s3_uploads.planner import MAX_PART_SIZE

__all__ = ("BufferPool", "PartBuffer")

logger = logging.getLogger(__name__)


class PartBuffer:
    """A bounded byte buffer holding the data of one part.

    The backing ``bytearray`` is allocated at full ``size`` on the first
    write and kept across :meth:`reset`, so a buffer returned to a
    :class:`BufferPool` does not have to be allocated again for the next
    part. With ``initial_size`` it starts that small instead and doubles
    up to ``size`` as data arrives. Growing swaps in a new ``bytearray``
    rather than resizing in place, which keeps views handed out by
    :meth:`getbuffer` from blocking later writes.
    """

    def __init__(self, size: int, initial_size: int | None = None) -> None:
        """Initialize PartBuffer.

        Args:
            size: Maximum number of bytes this buffer can hold
            initial_size: Bytes allocated by the first write, or None to
                allocate the full size at once

        Raises:
            InvalidArgumentError: If size exceeds the maximum part size
        """
        if size > MAX_PART_SIZE:
            raise InvalidArgumentError("buffer size cannot exceed 5GiB")
        self._size = size
        self._initial_size = size if initial_size is None else max(1, min(initial_size, size))
        self._data = bytearray()
        self._length = 0
        self._closed = False

    @property
    def size(self) -> int:
        """Maximum number of bytes this buffer can hold."""
        return self._size

    @property
    def length(self) -> int:
        """Number of bytes written since the last reset."""
        return self._length

    @property
    def remaining(self) -> int:
        return self._size - self._length

    @property
    def is_full(self) -> bool:
        return self._length >= self._size

    def write(self, data: bytes | bytearray | memoryview) -> int:
        """Append data to the buffer.

        Args:
            data: Bytes to append

        Returns:
            Number of bytes written

        Raises:
            InternalError: If the buffer is closed
            InvalidArgumentError: If data does not fit in the remaining space
        """
        if self._closed:
            raise InternalError("buffer is closed")
        n = len(data)
        if n > self.remaining:
            raise InvalidArgumentError(f"write of {n} bytes exceeds remaining buffer space {self.remaining}")
        end = self._length + n
        if end > len(self._data):
            self._grow(end)
        self._data[self._length : end] = data
        self._length = end
        return n

    def _grow(self, needed: int) -> None:
        capacity = max(self._initial_size, len(self._data))
        while capacity < needed:
            capacity *= 2
        data = bytearray(min(capacity, self._size))
        data[: self._length] = self._data[: self._length]
        self._data = data

    @property
    def allocated_bytes(self) -> int:
        """Number of bytes currently allocated for the buffer."""
        return len(self._data)

    def getbuffer(self) -> memoryview:
        """Return a read-only view of the written bytes without copying."""
        return memoryview(self._data)[: self._length].toreadonly()

    def getvalue(self) -> bytes:
        """Return a copy of the written bytes."""
        return bytes(self._data[: self._length])

    def reset(self) -> None:
        """Forget the written bytes but keep the allocation for reuse.

        Raises:
            InternalError: If the buffer is closed
        """
        if self._closed:
            raise InternalError("cannot reset a closed buffer")
        self._length = 0

    def close(self) -> None:
        """Release the backing memory. The buffer cannot be used afterwards."""
        if not self._closed:
            self._closed = True
            self._data = bytearray()
            self._length = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return self._length

    def __repr__(self) -> str:
        return f"PartBuffer(size={self._size}, length={self._length})"


class BufferPool:
    """Bounded pool of equally sized part buffers.

    :meth:`take` never blocks: it hands out an idle buffer if one is available
    and allocates a fresh one otherwise. :meth:`put` resets a buffer and keeps
    it for reuse unless the pool already holds ``capacity`` idle buffers, in
    which case the buffer is dropped. Peak memory held by the pool is therefore
    bounded by ``capacity * buffer_size``.

    Both methods are safe to call from several tasks or threads at once.
    """

    def __init__(self, capacity: int, buffer_size: int, initial_size: int | None = None) -> None:
        """Initialize BufferPool.

        Args:
            capacity: Maximum number of idle buffers kept for reuse
            buffer_size: Size of every buffer handed out by this pool
            initial_size: Bytes a new buffer allocates on its first write
                before growing, or None to allocate buffer_size at once

        Raises:
            InvalidArgumentError: If capacity is not positive or buffer_size exceeds 5GiB
        """
        if capacity < 1:
            raise InvalidArgumentError(f"buffer pool capacity must be positive, got {capacity}")
        if buffer_size > MAX_PART_SIZE:
            raise InvalidArgumentError("buffer size cannot exceed 5GiB")
        self._idle: queue.Queue[PartBuffer] = queue.Queue(maxsize=capacity)
        self.capacity = capacity
        self.buffer_size = buffer_size
        self.initial_size = initial_size
        self.allocated = 0

    def take(self) -> PartBuffer:
        """Remove an idle buffer from the pool, or allocate a new one if none is idle."""
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            self.allocated += 1
            logger.debug("Allocating part buffer #%d of %d bytes", self.allocated, self.buffer_size)
            return PartBuffer(self.buffer_size, self.initial_size)

    def put(self, buffer: PartBuffer) -> None:
        """Reset a buffer and return it to the pool; drop it if the pool is full.

        Args:
            buffer: Buffer previously obtained from :meth:`take`

        Raises:
            InvalidArgumentError: If the buffer does not belong to a pool of this size
        """
        if buffer.size != self.buffer_size:
            raise InvalidArgumentError(f"buffer of size {buffer.size} does not belong to this pool")
        if buffer.closed:
            return
        buffer.reset()
        try:
            self._idle.put_nowait(buffer)
        except queue.Full:
            buffer.close()

    @property
    def idle(self) -> int:
        """Number of buffers currently waiting in the pool."""
        return self._idle.qsize()
