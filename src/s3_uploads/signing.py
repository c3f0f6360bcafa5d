"""AWS Signature Version 4 request signing and chunked payload signing.

Implements header-based SigV4 signing of S3 requests and the streaming
extension (``STREAMING-AWS4-HMAC-SHA256-PAYLOAD``) where the body is sent as
a sequence of chunks, each carrying a signature chained to the previous one.

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-authenticating-requests.html
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sigv4-streaming.html
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
import urllib.parse
from collections.abc import AsyncIterator, Iterator, Mapping
from datetime import datetime, timezone
from typing import Protocol

from s3_uploads.exceptions import InsufficientDataError, InternalError

__all__ = (
    "CHUNK_SIZE",
    "EMPTY_SHA256",
    "STREAMING_PAYLOAD",
    "UNSIGNED_PAYLOAD",
    "ChunkSigner",
    "ChunkedPayload",
    "chunk_signature",
    "chunked_length",
    "derive_signing_key",
    "sign_request",
)

logger = logging.getLogger(__name__)

# Constants
ALGORITHM = "AWS4-HMAC-SHA256"
CHUNK_ALGORITHM = "AWS4-HMAC-SHA256-PAYLOAD"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"
SERVICE_NAME = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
STREAMING_PAYLOAD = "STREAMING-AWS4-HMAC-SHA256-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
SIGNER_DATE_FORMAT = "%Y%m%d"

# Chunk size in chunked upload is 64KiB
CHUNK_SIZE = 64 * 1024
# ";chunk-signature=" + 64 hex chars + "\r\n" + "\r\n" after the data
CHUNK_SIGNATURE_METADATA_LEN = 17 + 64 + 2 + 2

# Headers that proxies or the HTTP client may rewrite
_UNSIGNED_HEADERS = frozenset({"authorization", "user-agent", "content-length", "accept-encoding", "expect"})


class Readable(Protocol):
    """Anything with a blocking ``read(size)`` returning bytes."""

    def read(self, size: int = -1, /) -> bytes: ...


def derive_signing_key(secret_key: str, date: str, region: str, service: str = SERVICE_NAME) -> bytes:
    """Derive the SigV4 signing key via the HMAC-SHA256 chain.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: AWS region.
        service: AWS service name.

    Returns:
        The 32-byte signing key.
    """
    k_date = hmac.new((KEY_PREFIX + secret_key).encode("utf-8"), date.encode("utf-8"), hashlib.sha256).digest()
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(k_service, SCOPE_TERMINATOR.encode("utf-8"), hashlib.sha256).digest()


def _scope(date: datetime, region: str, service: str = SERVICE_NAME) -> str:
    return f"{date.strftime(SIGNER_DATE_FORMAT)}/{region}/{service}/{SCOPE_TERMINATOR}"


def _utc(date: datetime) -> datetime:
    if date.tzinfo is None:
        return date.replace(tzinfo=timezone.utc)
    return date.astimezone(timezone.utc)


def _uri_encode(s: str, encode_slash: bool = True) -> str:
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def _canonical_query_string(query: Mapping[str, str]) -> str:
    pairs = sorted((_uri_encode(k), _uri_encode(v)) for k, v in query.items())
    return "&".join(f"{k}={v}" for k, v in pairs)


def _trim_header_value(value: str) -> str:
    return " ".join(value.split())


def sign_request(
    method: str,
    host: str,
    path: str,
    query: Mapping[str, str],
    headers: Mapping[str, str],
    *,
    access_key: str,
    secret_key: str,
    region: str,
    content_sha256: str,
    date: datetime | None = None,
    session_token: str | None = None,
) -> tuple[dict[str, str], str]:
    """Sign an S3 request with AWS Signature Version 4.

    Args:
        method: HTTP method
        host: Value of the Host header (``host[:port]``)
        path: Request path, not yet URI-encoded
        query: Query parameters, not yet URI-encoded
        headers: Headers to send; every header except a few transport-level
            ones is covered by the signature
        access_key: Access key id
        secret_key: Secret access key
        region: Region used in the credential scope
        content_sha256: Hex SHA-256 of the body, ``UNSIGNED-PAYLOAD`` or
            ``STREAMING-AWS4-HMAC-SHA256-PAYLOAD``
        date: Signing time (defaults to now)
        session_token: Session token for temporary credentials

    Returns:
        Tuple of (headers including Authorization, signature). The signature
        seeds the chunk signature chain of a streaming upload.
    """
    date = _utc(date or datetime.now(tz=timezone.utc))
    amz_date = date.strftime(AMZ_DATE_FORMAT)

    signed = {k: v for k, v in headers.items()}
    signed["Host"] = host
    signed["x-amz-date"] = amz_date
    signed["x-amz-content-sha256"] = content_sha256
    if session_token:
        signed["x-amz-security-token"] = session_token

    canonical = sorted(
        (name.lower(), _trim_header_value(str(value)))
        for name, value in signed.items()
        if name.lower() not in _UNSIGNED_HEADERS
    )
    signed_headers = ";".join(name for name, _ in canonical)
    canonical_request = "\n".join(
        [
            method.upper(),
            _uri_encode(path, encode_slash=False),
            _canonical_query_string(query),
            "".join(f"{name}:{value}\n" for name, value in canonical),
            signed_headers,
            content_sha256,
        ]
    )

    scope = _scope(date, region)
    string_to_sign = "\n".join(
        [ALGORITHM, amz_date, scope, hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()]
    )
    signing_key = derive_signing_key(secret_key, date.strftime(SIGNER_DATE_FORMAT), region)
    signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    signed["Authorization"] = (
        f"{ALGORITHM} Credential={access_key}/{scope}, SignedHeaders={signed_headers}, Signature={signature}"
    )
    return signed, signature


def chunk_signature(chunk_sha256: str, date: datetime, region: str, secret_key: str, prev_signature: str) -> str:
    """Return the signature of one chunk of a streaming upload.

    Args:
        chunk_sha256: Hex SHA-256 of the chunk data
        date: Signing time of the request the chunk belongs to
        region: Region used in the credential scope
        secret_key: Secret access key
        prev_signature: Signature of the previous chunk, or the request signature for the first chunk

    Returns:
        64-character lowercase hex signature
    """
    date = _utc(date)
    string_to_sign = "\n".join(
        [
            CHUNK_ALGORITHM,
            date.strftime(AMZ_DATE_FORMAT),
            _scope(date, region),
            prev_signature,
            EMPTY_SHA256,
            chunk_sha256,
        ]
    )
    signing_key = derive_signing_key(secret_key, date.strftime(SIGNER_DATE_FORMAT), region)
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def _frame_length(data_length: int) -> int:
    return len(f"{data_length:x}") + CHUNK_SIGNATURE_METADATA_LEN + data_length


def chunked_length(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Return the encoded length of a chunk-signed body carrying ``size`` bytes.

    Every full chunk of 64KiB encodes to 65626 bytes, a partial last chunk to
    ``len(hex(n)) + 85 + n`` bytes, and the terminating zero-length chunk to
    86 bytes.

    Args:
        size: Number of plain data bytes
        chunk_size: Size of a full chunk

    Returns:
        Exact Content-Length of the encoded body
    """
    full_chunks, last = divmod(size, chunk_size)
    length = full_chunks * _frame_length(chunk_size)
    if last > 0:
        length += _frame_length(last)
    return length + _frame_length(0)


class ChunkSigner:
    """Signature chain of one streaming upload.

    Each call to :meth:`sign` derives the next signature from the previous
    one, so chunks must be signed strictly in order and by a single consumer.
    Signing from two threads at once raises :class:`InternalError`.
    """

    def __init__(self, seed_signature: str, date: datetime, region: str, secret_key: str) -> None:
        """Initialize ChunkSigner.

        Args:
            seed_signature: Signature of the request carrying the chunks
            date: Signing time of that request
            region: Region used in the credential scope
            secret_key: Secret access key
        """
        self.prev_signature = seed_signature
        date = _utc(date)
        self._amz_date = date.strftime(AMZ_DATE_FORMAT)
        self._scope = _scope(date, region)
        # Derived once; the key only depends on date, region and secret
        self._signing_key = derive_signing_key(secret_key, date.strftime(SIGNER_DATE_FORMAT), region)
        self._lock = threading.Lock()

    def sign(self, chunk: bytes | memoryview) -> str:
        """Sign the next chunk and advance the chain.

        Args:
            chunk: Chunk data (empty for the terminating chunk)

        Returns:
            Signature of the chunk
        """
        if not self._lock.acquire(blocking=False):
            raise InternalError("chunks of one upload must be signed sequentially")
        try:
            string_to_sign = "\n".join(
                [
                    CHUNK_ALGORITHM,
                    self._amz_date,
                    self._scope,
                    self.prev_signature,
                    EMPTY_SHA256,
                    hashlib.sha256(chunk).hexdigest(),
                ]
            )
            signature = hmac.new(self._signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
            self.prev_signature = signature
            return signature
        finally:
            self._lock.release()

    def frame(self, chunk: bytes | memoryview) -> bytes:
        """Sign a chunk and return it framed for the request body."""
        signature = self.sign(chunk)
        return b"".join(
            [
                f"{len(chunk):x};chunk-signature={signature}\r\n".encode("ascii"),
                bytes(chunk),
                b"\r\n",
            ]
        )


def _read_exact(source: Readable, size: int) -> bytes:
    parts: list[bytes] = []
    remaining = size
    while remaining > 0:
        data = source.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


class ChunkedPayload:
    """A chunk-signed request body read from a source of known size.

    The body is produced lazily, one 64KiB chunk at a time, so the source is
    consumed sequentially and never held in memory as a whole. The payload can
    be iterated (sync or async) frame by frame or read like a file.

    Example::

        headers, seed = sign_request(..., content_sha256=STREAMING_PAYLOAD)
        payload = ChunkedPayload(source, size, ChunkSigner(seed, date, region, secret))
        headers["Content-Length"] = str(payload.length)
    """

    def __init__(self, source: Readable, size: int, signer: ChunkSigner, chunk_size: int = CHUNK_SIZE) -> None:
        """Initialize ChunkedPayload.

        Args:
            source: Object to read plain data from
            size: Number of bytes the source must deliver
            signer: Signature chain seeded with the request signature
            chunk_size: Size of a full chunk
        """
        self._source = source
        self._size = size
        self._signer = signer
        self._chunk_size = chunk_size
        self._frames: Iterator[bytes] | None = None
        self._pending = b""
        self._started = False

    @property
    def length(self) -> int:
        """Exact number of bytes this payload encodes to."""
        return chunked_length(self._size, self._chunk_size)

    @property
    def decoded_length(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[bytes]:
        if self._started:
            raise InternalError("chunked payload can only be consumed once")
        self._started = True
        return self._generate()

    def _generate(self) -> Iterator[bytes]:
        consumed = 0
        while consumed < self._size:
            want = min(self._chunk_size, self._size - consumed)
            chunk = _read_exact(self._source, want)
            if len(chunk) != want:
                raise InsufficientDataError(self._size, consumed + len(chunk))
            consumed += want
            yield self._signer.frame(chunk)
        yield self._signer.frame(b"")

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for frame in self:
            yield frame

    def read(self, size: int = -1) -> bytes:
        """Read encoded bytes like a binary file object."""
        if self._frames is None:
            self._frames = iter(self)
        if size is None or size < 0:
            rest = self._pending + b"".join(self._frames)
            self._pending = b""
            return rest
        while len(self._pending) < size:
            frame = next(self._frames, None)
            if frame is None:
                break
            self._pending += frame
        data, self._pending = self._pending[:size], self._pending[size:]
        return data
