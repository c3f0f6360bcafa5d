"""Transport protocol and abstract implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from s3_uploads.types import ObjectWriteResult, Part, PartResult

__all__ = ["BaseTransport", "Body", "Transport"]

Body = bytes | bytearray | memoryview


@runtime_checkable
class Transport(Protocol):
    """Async protocol of the S3 operations the upload engine relies on.

    All transports must implement this protocol so the multipart coordinator
    behaves the same against AWS S3, S3-compatible services and the in-memory
    emulation used for tests.
    """

    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Start a multipart upload.

        Args:
            bucket: Bucket name
            key: Object key
            headers: Request headers such as Content-Type and ``x-amz-meta-*``

        Returns:
            Upload id identifying the multipart session

        Raises:
            ServerError: If the service rejects the request
            StorageConnectionError: If the service cannot be reached
        """
        ...

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
        """Upload one part of a multipart upload.

        Args:
            bucket: Bucket name
            key: Object key
            upload_id: Upload id returned by create_multipart_upload
            part_number: Part number (1-indexed)
            data: Part contents. The caller keeps ownership; the transport must
                not hold on to it after returning.
            headers: Extra request headers (checksums, SSE-C keys)

        Returns:
            PartResult with the ETag of the part

        Raises:
            ServerError: If the service rejects the part
            StorageConnectionError: If the service cannot be reached
        """
        ...

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Part],
    ) -> ObjectWriteResult:
        """Stitch uploaded parts into the final object.

        Args:
            bucket: Bucket name
            key: Object key
            upload_id: Upload id returned by create_multipart_upload
            parts: Uploaded parts, ordered by part number

        Returns:
            ObjectWriteResult with the ETag and version id of the object

        Raises:
            ServerError: If the service rejects the part list
            StorageConnectionError: If the service cannot be reached
        """
        ...

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its uploaded parts.

        Raises:
            ServerError: If the service rejects the request
            StorageConnectionError: If the service cannot be reached
        """
        ...

    async def put_object(
        self,
        bucket: str,
        key: str,
        data: Body,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ObjectWriteResult:
        """Upload a whole object with a single PUT.

        Raises:
            ServerError: If the service rejects the request
            StorageConnectionError: If the service cannot be reached
        """
        ...

    async def close(self) -> None:
        """Release resources such as HTTP sessions or connection pools."""
        ...


class BaseTransport(ABC):
    """Abstract base class providing common functionality for transports.

    Subclasses must implement:
    - create_multipart_upload()
    - upload_part()
    - complete_multipart_upload()
    - abort_multipart_upload()
    - put_object()
    """

    region: str | None = None

    @abstractmethod
    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Start a multipart upload. Must be implemented by subclasses."""

    @abstractmethod
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
        """Upload one part. Must be implemented by subclasses."""

    @abstractmethod
    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Part],
    ) -> ObjectWriteResult:
        """Complete a multipart upload. Must be implemented by subclasses."""

    @abstractmethod
    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload. Must be implemented by subclasses."""

    @abstractmethod
    async def put_object(
        self,
        bucket: str,
        key: str,
        data: Body,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ObjectWriteResult:
        """Upload a whole object. Must be implemented by subclasses."""

    async def close(self) -> None:  # noqa: B027
        """Default implementation: no-op.

        Subclasses that manage resources (HTTP sessions, connection pools, etc.)
        should override this method to properly release them.
        """

    async def __aenter__(self) -> BaseTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
