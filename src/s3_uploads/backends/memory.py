"""In-memory S3 emulation for testing and development."""

from __future__ import annotations

import hashlib
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from s3_uploads.base import BaseTransport
from s3_uploads.exceptions import ServerError
from s3_uploads.planner import MAX_PART_COUNT, MIN_PART_SIZE
from s3_uploads.types import ObjectWriteResult, PartResult

if TYPE_CHECKING:
    from s3_uploads.base import Body
    from s3_uploads.types import Part

__all__ = ("MemoryConfig", "MemoryTransport", "StoredObject")


def _md5(data: bytes) -> bytes:
    return hashlib.md5(data, usedforsecurity=False).digest()


@dataclass(frozen=True)
class MemoryConfig:
    """Configuration for the in-memory transport.

    Attributes:
        region: Region reported in write results
        enforce_min_part_size: Reject non-final parts smaller than 5MiB on
            complete, as S3 does
    """

    region: str = "us-east-1"
    enforce_min_part_size: bool = True


@dataclass
class StoredObject:
    """An object held by :class:`MemoryTransport`.

    Attributes:
        data: Object contents
        etag: ETag without quotes
        headers: Headers the object was created with
    """

    data: bytes
    etag: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str | None:
        return self.headers.get("Content-Type")

    @property
    def metadata(self) -> dict[str, str]:
        """User metadata from ``x-amz-meta-*`` headers."""
        prefix = "x-amz-meta-"
        return {k[len(prefix) :]: v for k, v in self.headers.items() if k.lower().startswith(prefix)}


@dataclass
class _Session:
    bucket: str
    key: str
    headers: dict[str, str]
    parts: dict[int, tuple[bytes, str]] = field(default_factory=dict)


class MemoryTransport(BaseTransport):
    """In-memory transport emulating the S3 multipart API.

    Objects and open multipart sessions live in dictionaries. ETags follow the
    S3 conventions: the MD5 of the data for single PUTs and
    ``md5(concatenated part MD5s)-N`` for multipart objects. Completing
    validates the part list the way S3 does.

    Example:
        >>> transport = MemoryTransport()
        >>> upload_id = await transport.create_multipart_upload("bucket", "key")
        >>> part = await transport.upload_part("bucket", "key", upload_id, 1, b"data")
        >>> await transport.complete_multipart_upload("bucket", "key", upload_id, [Part(1, part.etag)])
        >>> transport.get_object("bucket", "key").data
        b'data'

    Note:
        Not suitable for production use; everything is lost when the process exits.
    """

    def __init__(self, config: MemoryConfig | None = None) -> None:
        """Initialize MemoryTransport.

        Args:
            config: Configuration for the transport (optional)
        """
        self.config = config or MemoryConfig()
        self.region = self.config.region
        self.objects: dict[tuple[str, str], StoredObject] = {}
        self.uploads: dict[str, _Session] = {}

    def get_object(self, bucket: str, key: str) -> StoredObject:
        """Return a stored object.

        Raises:
            ServerError: ``NoSuchKey`` if the object does not exist
        """
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise ServerError(
                "The specified key does not exist.", status_code=404, code="NoSuchKey", bucket=bucket, key=key
            ) from None

    def _session(self, bucket: str, key: str, upload_id: str) -> _Session:
        session = self.uploads.get(upload_id)
        if session is None or session.bucket != bucket or session.key != key:
            raise ServerError(
                "The specified upload does not exist.", status_code=404, code="NoSuchUpload", bucket=bucket, key=key
            )
        return session

    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Open a multipart session and return its id."""
        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = _Session(bucket, key, dict(headers or {}))
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
    ) -> PartResult:
        """Store one part; uploading the same number again replaces it."""
        session = self._session(bucket, key, upload_id)
        if not 1 <= part_number <= MAX_PART_COUNT:
            raise ServerError(
                f"Part number must be an integer between 1 and {MAX_PART_COUNT}, inclusive",
                status_code=400,
                code="InvalidArgument",
                bucket=bucket,
                key=key,
            )
        payload = bytes(data)
        etag = _md5(payload).hex()
        session.parts[part_number] = (payload, etag)
        return PartResult(etag=etag)

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Part],
    ) -> ObjectWriteResult:
        """Assemble the listed parts into an object and close the session.

        Raises:
            ServerError: ``NoSuchUpload``, ``InvalidPart``, ``InvalidPartOrder``
                or ``EntityTooSmall`` as S3 would report them
        """
        session = self._session(bucket, key, upload_id)

        def reject(code: str, message: str) -> ServerError:
            return ServerError(message, status_code=400, code=code, bucket=bucket, key=key)

        if not parts:
            raise reject("MalformedXML", "You must specify at least one part")

        numbers = [part.number for part in parts]
        if any(later <= earlier for earlier, later in zip(numbers, numbers[1:], strict=False)):
            raise reject("InvalidPartOrder", "The list of parts was not in ascending order.")

        chunks: list[bytes] = []
        digests: list[bytes] = []
        for index, part in enumerate(parts):
            stored = session.parts.get(part.number)
            if stored is None or stored[1] != part.etag.strip('"'):
                raise reject("InvalidPart", f"Part {part.number} could not be found or its ETag did not match.")
            payload = stored[0]
            if self.config.enforce_min_part_size and index < len(parts) - 1 and len(payload) < MIN_PART_SIZE:
                raise reject("EntityTooSmall", "Your proposed upload is smaller than the minimum allowed size")
            chunks.append(payload)
            digests.append(_md5(payload))

        etag = f"{_md5(b''.join(digests)).hex()}-{len(parts)}"
        self.objects[(bucket, key)] = StoredObject(data=b"".join(chunks), etag=etag, headers=session.headers)
        del self.uploads[upload_id]
        return ObjectWriteResult(bucket=bucket, key=key, etag=etag, region=self.region)

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Discard a multipart session and its parts."""
        self._session(bucket, key, upload_id)
        del self.uploads[upload_id]

    async def put_object(
        self,
        bucket: str,
        key: str,
        data: Body,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ObjectWriteResult:
        """Store a whole object."""
        payload = bytes(data)
        etag = _md5(payload).hex()
        self.objects[(bucket, key)] = StoredObject(data=payload, etag=etag, headers=dict(headers or {}))
        return ObjectWriteResult(bucket=bucket, key=key, etag=etag, region=self.region)
