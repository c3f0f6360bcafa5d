"""Plain HTTP transport speaking the S3 REST API through aiohttp."""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import urllib.parse
import xml.etree.ElementTree as ET  # noqa: N817
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import aiohttp
from yarl import URL

from s3_uploads.base import BaseTransport
from s3_uploads.exceptions import ConfigurationError, ServerError, StorageConnectionError, StorageError
from s3_uploads.signing import (
    STREAMING_PAYLOAD,
    UNSIGNED_PAYLOAD,
    ChunkedPayload,
    ChunkSigner,
    sign_request,
)
from s3_uploads.types import ObjectWriteResult, PartResult

if TYPE_CHECKING:
    from s3_uploads.base import Body
    from s3_uploads.types import Part

__all__ = ("HttpConfig", "HttpTransport")

logger = logging.getLogger(__name__)

_S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


def _findtext(element: ET.Element, name: str) -> str | None:
    """Return the text of the first descendant named ``name``, ignoring XML namespaces."""
    for child in element.iter():
        if child.tag == name or child.tag.endswith("}" + name):
            return child.text
    return None


def _parse(content: bytes, bucket: str, key: str) -> ET.Element:
    """Parse a successful response body, reporting a non-XML body as a server failure."""
    try:
        return ET.fromstring(content)
    except ET.ParseError as e:
        raise ServerError(
            f"response is not an XML document: {e}", status_code=500, bucket=bucket, key=key
        ) from e


def _is_error_document(content: bytes) -> bool:
    """Whether a response body is an S3 ``<Error>`` document."""
    head = content.lstrip()
    if head.startswith(b"<?xml"):
        head = head[head.find(b"?>") + 2 :].lstrip()
    return head.startswith(b"<Error")


@dataclass(frozen=True)
class HttpConfig:
    """Configuration for the aiohttp transport.

    Attributes:
        endpoint_url: Base URL of the service (e.g., "http://localhost:9000")
        region: Region used in the signature scope
        access_key_id: Access key ID
        secret_access_key: Secret access key
        session_token: Session token for temporary credentials
        chunked_signing: Sign part and object bodies chunk by chunk
            (``aws-chunked``). Defaults to on for ``http://`` endpoints and off
            for ``https://`` endpoints, where the payload is sent unsigned.
        timeout: Total timeout of one request in seconds
    """

    endpoint_url: str
    region: str
    access_key_id: str
    secret_access_key: str
    session_token: str | None = None
    chunked_signing: bool | None = None
    timeout: float = 300.0

    def __post_init__(self) -> None:
        parsed = urllib.parse.urlsplit(self.endpoint_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"endpoint_url must be an http(s) URL, got {self.endpoint_url!r}")
        if parsed.query or parsed.fragment:
            raise ConfigurationError("endpoint_url must not carry a query or fragment")
        if not self.region:
            raise ConfigurationError("region is required")
        if not self.access_key_id or not self.secret_access_key:
            raise ConfigurationError("access_key_id and secret_access_key are required")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")

    @property
    def secure(self) -> bool:
        return self.endpoint_url.startswith("https://")

    @property
    def use_chunked_signing(self) -> bool:
        if self.chunked_signing is None:
            return not self.secure
        return self.chunked_signing


class HttpTransport(BaseTransport):
    """Transport sending SigV4-signed S3 REST requests with aiohttp.

    Objects are addressed path-style (``{endpoint}/{bucket}/{key}``), which
    every S3-compatible service supports. Part and object bodies are either
    chunk-signed, hashed, or sent as ``UNSIGNED-PAYLOAD`` over TLS.

    Example:
        >>> transport = HttpTransport(
        ...     HttpConfig(
        ...         endpoint_url="http://localhost:9000",
        ...         region="us-east-1",
        ...         access_key_id="minioadmin",
        ...         secret_access_key="minioadmin",
        ...     )
        ... )
        >>> async with transport:
        ...     upload_id = await transport.create_multipart_upload("bucket", "key")
    """

    def __init__(self, config: HttpConfig, session: aiohttp.ClientSession | None = None) -> None:
        """Initialize HttpTransport.

        Args:
            config: Configuration for the transport
            session: aiohttp session to use; the transport creates (and
                closes) its own when not given
        """
        self.config = config
        self.region = config.region
        self._session = session
        self._owns_session = session is None
        parsed = urllib.parse.urlsplit(config.endpoint_url)
        self._host = parsed.netloc
        self._base_path = parsed.path.rstrip("/")
        self._origin = f"{parsed.scheme}://{parsed.netloc}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.config.timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session if the transport created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _payload_hash(self, data: bytes) -> str:
        if self.config.secure:
            return UNSIGNED_PAYLOAD
        return hashlib.sha256(data).hexdigest()

    async def _request(
        self,
        method: str,
        bucket: str,
        key: str,
        *,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        body: bytes = b"",
        content_sha256: str | None = None,
        chunked: bool = False,
    ) -> tuple[int, Mapping[str, str], bytes]:
        """Sign and send one request.

        Returns:
            Tuple of (status, response headers, response body)

        Raises:
            ServerError: For non-2xx responses or an error document in a 200 response
            StorageConnectionError: If the service cannot be reached
        """
        query = dict(query or {})
        path = f"{self._base_path}/{bucket}/{key}"
        request_headers = dict(headers or {})
        date = datetime.now(tz=timezone.utc)

        if chunked:
            content_sha256 = STREAMING_PAYLOAD
            request_headers["Content-Encoding"] = "aws-chunked"
            request_headers["x-amz-decoded-content-length"] = str(len(body))
        elif content_sha256 is None:
            content_sha256 = hashlib.sha256(body).hexdigest()

        signed, signature = sign_request(
            method,
            self._host,
            path,
            query,
            request_headers,
            access_key=self.config.access_key_id,
            secret_key=self.config.secret_access_key,
            region=self.config.region,
            content_sha256=content_sha256,
            date=date,
            session_token=self.config.session_token,
        )

        data: Any = body
        if chunked:
            signer = ChunkSigner(signature, date, self.config.region, self.config.secret_access_key)
            data = ChunkedPayload(io.BytesIO(body), len(body), signer)
            signed["Content-Length"] = str(data.length)

        url = self._origin + urllib.parse.quote(path, safe="-_.~/")
        if query:
            url += "?" + urllib.parse.urlencode(sorted(query.items()), quote_via=urllib.parse.quote, safe="-_.~")

        logger.debug("%s %s (%d bytes)", method, url, len(body))
        try:
            async with self._get_session().request(
                method, URL(url, encoded=True), data=data, headers=signed
            ) as response:
                content = await response.read()
                status = response.status
                response_headers = response.headers.copy()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StorageConnectionError(f"{method} {bucket}/{key} failed: {e}") from e

        if status >= 300 or _is_error_document(content):
            raise self._error(status, response_headers, content, bucket, key)
        return status, response_headers, content

    @staticmethod
    def _error(status: int, headers: Mapping[str, str], content: bytes, bucket: str, key: str) -> ServerError:
        code = message = request_id = None
        if content:
            try:
                element = ET.fromstring(content)
            except ET.ParseError:
                message = content.decode("utf-8", "replace")
            else:
                code = _findtext(element, "Code")
                message = _findtext(element, "Message")
                request_id = _findtext(element, "RequestId")
        return ServerError(
            message or f"server failed with HTTP status code {status}",
            # A 200 response carrying an error document is reported as a server failure
            status_code=status if status >= 300 else 500,
            code=code,
            bucket=bucket,
            key=key,
            request_id=request_id or headers.get("x-amz-request-id"),
        )

    def _write_result(self, bucket: str, key: str, etag: str | None, headers: Mapping[str, str]) -> ObjectWriteResult:
        if etag is None:
            raise StorageError(f"Response for {bucket}/{key} carries no ETag")
        return ObjectWriteResult(
            bucket=bucket,
            key=key,
            etag=etag.strip('"'),
            version_id=headers.get("x-amz-version-id"),
            region=self.region,
            headers=dict(headers),
        )

    async def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Start a multipart upload with ``POST ?uploads``.

        Raises:
            ServerError: If the service rejects the request or returns no upload id
            StorageConnectionError: If the service cannot be reached
        """
        status, _, content = await self._request("POST", bucket, key, query={"uploads": ""}, headers=headers)
        upload_id = _findtext(_parse(content, bucket, key), "UploadId") if content else None
        if not upload_id:
            raise ServerError("response carries no UploadId", status_code=status, bucket=bucket, key=key)
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
        """Upload one part with ``PUT ?partNumber&uploadId``."""
        body = bytes(data)
        chunked = self.config.use_chunked_signing
        _, response_headers, _ = await self._request(
            "PUT",
            bucket,
            key,
            query={"partNumber": str(part_number), "uploadId": upload_id},
            headers=headers,
            body=body,
            content_sha256=None if chunked else self._payload_hash(body),
            chunked=chunked,
        )
        etag = response_headers.get("ETag")
        if etag is None:
            raise StorageError(f"Response for part {part_number} of {bucket}/{key} carries no ETag")
        return PartResult(etag=etag.strip('"'), checksum=response_headers.get("x-amz-checksum-crc32"))

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Part],
    ) -> ObjectWriteResult:
        """Complete a multipart upload with ``POST ?uploadId``."""
        element = ET.Element("CompleteMultipartUpload", xmlns=_S3_NAMESPACE)
        for part in parts:
            tag = ET.SubElement(element, "Part")
            ET.SubElement(tag, "PartNumber").text = str(part.number)
            ET.SubElement(tag, "ETag").text = f'"{part.etag}"'
        body = ET.tostring(element, encoding="utf-8", xml_declaration=False)

        _, response_headers, content = await self._request(
            "POST",
            bucket,
            key,
            query={"uploadId": upload_id},
            headers={"Content-Type": "application/xml"},
            body=body,
        )
        etag = _findtext(_parse(content, bucket, key), "ETag") if content else None
        return self._write_result(bucket, key, etag, response_headers)

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload with ``DELETE ?uploadId``."""
        await self._request("DELETE", bucket, key, query={"uploadId": upload_id})

    async def put_object(
        self,
        bucket: str,
        key: str,
        data: Body,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ObjectWriteResult:
        """Upload a whole object with a single ``PUT``."""
        body = bytes(data)
        chunked = self.config.use_chunked_signing
        _, response_headers, _ = await self._request(
            "PUT",
            bucket,
            key,
            headers=headers,
            body=body,
            content_sha256=None if chunked else self._payload_hash(body),
            chunked=chunked,
        )
        return self._write_result(bucket, key, response_headers.get("ETag"), response_headers)
