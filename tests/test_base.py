"""Tests for BaseTransport default implementations.

Uses a minimal transport that only implements the abstract methods, so the
behavior inherited from the base class can be checked in isolation.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import pytest

from s3_uploads.base import BaseTransport, Body, Transport
from s3_uploads.types import ObjectWriteResult, Part, PartResult


class MinimalTransport(BaseTransport):
    """Transport implementing only the required abstract methods."""

    def __init__(self) -> None:
        self.puts: dict[str, bytes] = {}

    async def create_multipart_upload(self, bucket: str, key: str, *, headers: Mapping[str, str] | None = None) -> str:
        return "upload-1"

    async def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: Body,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> PartResult:
        return PartResult(etag=f"etag-{part_number}")

    async def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: Sequence[Part]
    ) -> ObjectWriteResult:
        return ObjectWriteResult(bucket=bucket, key=key, etag=f"done-{len(parts)}")

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        return None

    async def put_object(
        self, bucket: str, key: str, data: Body, *, headers: Mapping[str, str] | None = None
    ) -> ObjectWriteResult:
        self.puts[key] = bytes(data)
        return ObjectWriteResult(bucket=bucket, key=key, etag="single")


@pytest.fixture
def minimal_transport() -> MinimalTransport:
    """Create a minimal transport that uses base class defaults."""
    return MinimalTransport()


@pytest.mark.unit
class TestBaseTransport:
    """Test the behavior BaseTransport provides."""

    def test_cannot_instantiate_abstract(self) -> None:
        """Test a transport missing operations cannot be created."""

        class Incomplete(BaseTransport):
            async def put_object(self, bucket, key, data, *, headers=None):
                return None

        with pytest.raises(TypeError):
            Incomplete()  # type: ignore[abstract]

    def test_satisfies_protocol(self, minimal_transport: MinimalTransport) -> None:
        """Test subclasses satisfy the Transport protocol."""
        assert isinstance(minimal_transport, Transport)
        assert minimal_transport.region is None

    async def test_default_close(self, minimal_transport: MinimalTransport) -> None:
        """Test the default close is a no-op that can be repeated."""
        await minimal_transport.close()
        await minimal_transport.close()

        result = await minimal_transport.put_object("bucket", "key", b"after close")
        assert result.etag == "single"

    async def test_async_context_manager(self, minimal_transport: MinimalTransport) -> None:
        """Test the transport closes itself when leaving the context."""
        closed = []

        async def close() -> None:
            closed.append(True)

        minimal_transport.close = close  # type: ignore[method-assign]

        async with minimal_transport as transport:
            assert transport is minimal_transport

        assert closed == [True]

    async def test_drives_upload_engine(self, minimal_transport: MinimalTransport) -> None:
        """Test the upload engine works with nothing but the abstract methods."""
        from s3_uploads.client import UploadClient

        result = await UploadClient(minimal_transport).put_object("bucket", "key", b"payload")

        assert result.etag == "single"
        assert minimal_transport.puts["key"] == b"payload"
