"""HttpTransport-specific tests.

Runs the transport against a small S3 emulation served by aiohttp, which
decodes ``aws-chunked`` bodies and checks their signature chain.
"""

from __future__ import annotations

import hashlib
import uuid
import xml.etree.ElementTree as ET  # noqa: N817
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest
from aiohttp import web

from s3_uploads.backends.http import HttpConfig, HttpTransport
from s3_uploads.exceptions import ConfigurationError, ServerError, StorageConnectionError
from s3_uploads.signing import AMZ_DATE_FORMAT, STREAMING_PAYLOAD, UNSIGNED_PAYLOAD, chunk_signature, chunked_length
from s3_uploads.types import Part

MiB = 1024 * 1024
SECRET = "fake-secret"
REGION = "us-east-1"


@dataclass
class FakeS3:
    """State of the S3 emulation."""

    objects: dict[str, bytes] = field(default_factory=dict)
    object_headers: dict[str, dict[str, str]] = field(default_factory=dict)
    uploads: dict[str, dict[int, bytes]] = field(default_factory=dict)
    requests: list[web.Request] = field(default_factory=list)
    fail_next: tuple[int, str] | None = None


def _error_document(code: str, message: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Error><Code>{code}</Code><Message>{message}</Message><RequestId>req-42</RequestId></Error>"
    )


def decode_chunked(request: web.Request, body: bytes) -> bytes:
    """Decode an aws-chunked body and verify every chunk signature."""
    seed = request.headers["Authorization"].rsplit("Signature=", 1)[1]
    date = datetime.strptime(request.headers["x-amz-date"], AMZ_DATE_FORMAT).replace(tzinfo=timezone.utc)
    decoded = bytearray()
    previous = seed
    offset = 0
    while True:
        line_end = body.index(b"\r\n", offset)
        size_hex, _, signature = body[offset:line_end].decode("ascii").partition(";chunk-signature=")
        size = int(size_hex, 16)
        chunk = body[line_end + 2 : line_end + 2 + size]
        assert body[line_end + 2 + size : line_end + 4 + size] == b"\r\n"
        expected = chunk_signature(hashlib.sha256(chunk).hexdigest(), date, REGION, SECRET, previous)
        assert signature == expected, "chunk signature chain broken"
        previous = signature
        offset = line_end + 4 + size
        if size == 0:
            break
        decoded += chunk
    assert offset == len(body)
    return bytes(decoded)


def create_app(state: FakeS3) -> web.Application:
    async def handle(request: web.Request) -> web.Response:
        state.requests.append(request)
        if state.fail_next is not None:
            status, document = state.fail_next
            state.fail_next = None
            return web.Response(status=status, text=document, content_type="application/xml")

        key = request.match_info["key"]
        body = await request.read()
        if request.headers.get("x-amz-content-sha256") == STREAMING_PAYLOAD:
            assert request.headers["Content-Encoding"] == "aws-chunked"
            decoded_length = int(request.headers["x-amz-decoded-content-length"])
            assert request.content_length == chunked_length(decoded_length)
            body = decode_chunked(request, body)
            assert len(body) == decoded_length
        elif request.headers.get("x-amz-content-sha256") != UNSIGNED_PAYLOAD:
            assert request.headers["x-amz-content-sha256"] == hashlib.sha256(body).hexdigest()

        if request.method == "POST" and "uploads" in request.query:
            upload_id = uuid.uuid4().hex
            state.uploads[upload_id] = {}
            state.object_headers[key] = dict(request.headers)
            return web.Response(
                text=f"<InitiateMultipartUploadResult><UploadId>{upload_id}</UploadId></InitiateMultipartUploadResult>",
                content_type="application/xml",
            )
        if request.method == "PUT" and "partNumber" in request.query:
            upload_id = request.query["uploadId"]
            if upload_id not in state.uploads:
                return web.Response(status=404, text=_error_document("NoSuchUpload", "gone"))
            state.uploads[upload_id][int(request.query["partNumber"])] = body
            return web.Response(headers={"ETag": f'"{hashlib.md5(body).hexdigest()}"'})
        if request.method == "POST" and "uploadId" in request.query:
            parts = state.uploads.pop(request.query["uploadId"])
            element = ET.fromstring(body)
            numbers = [int(p.text) for p in element.iter("{http://s3.amazonaws.com/doc/2006-03-01/}PartNumber")]
            state.objects[key] = b"".join(parts[n] for n in numbers)
            etag = f"{hashlib.md5(state.objects[key]).hexdigest()}-{len(numbers)}"
            return web.Response(
                text=f"<CompleteMultipartUploadResult><ETag>&quot;{etag}&quot;</ETag></CompleteMultipartUploadResult>",
                content_type="application/xml",
                headers={"x-amz-version-id": "v1"},
            )
        if request.method == "DELETE":
            state.uploads.pop(request.query["uploadId"], None)
            return web.Response(status=204)
        if request.method == "PUT":
            state.objects[key] = body
            state.object_headers[key] = dict(request.headers)
            return web.Response(headers={"ETag": f'"{hashlib.md5(body).hexdigest()}"'})
        return web.Response(status=405)

    app = web.Application(client_max_size=64 * MiB)
    app.router.add_route("*", "/{bucket}/{key:.+}", handle)
    return app


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
async def endpoint(aiohttp_server, fake_s3: FakeS3) -> str:
    server = await aiohttp_server(create_app(fake_s3))
    return str(server.make_url("")).rstrip("/")


def make_transport(endpoint: str, **kwargs) -> HttpTransport:
    return HttpTransport(
        HttpConfig(endpoint_url=endpoint, region=REGION, access_key_id="AKIDEXAMPLE", secret_access_key=SECRET, **kwargs)
    )


@pytest.fixture
async def transport(endpoint: str):
    transport = make_transport(endpoint)
    yield transport
    await transport.close()


@pytest.mark.unit
class TestHttpConfig:
    """Test HttpConfig validation and defaults."""

    def test_chunked_signing_default(self) -> None:
        """
        Test the payload signing mode.

        Verifies:
        - Plain http endpoints sign bodies chunk by chunk
        - https endpoints send unsigned payloads
        - An explicit setting wins
        """
        plain = HttpConfig("http://localhost:9000", REGION, "id", "secret")
        secure = HttpConfig("https://s3.amazonaws.com", REGION, "id", "secret")
        forced = HttpConfig("https://s3.amazonaws.com", REGION, "id", "secret", chunked_signing=True)

        assert plain.use_chunked_signing and not plain.secure
        assert not secure.use_chunked_signing and secure.secure
        assert forced.use_chunked_signing

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"endpoint_url": "ftp://host"},
            {"endpoint_url": "http://host?x=1"},
            {"region": ""},
            {"secret_access_key": ""},
            {"timeout": 0},
        ],
    )
    def test_invalid(self, kwargs: dict) -> None:
        """Test invalid settings are rejected."""
        values = {
            "endpoint_url": "http://localhost:9000",
            "region": REGION,
            "access_key_id": "id",
            "secret_access_key": "secret",
        }
        values.update(kwargs)

        with pytest.raises(ConfigurationError):
            HttpConfig(**values)


@pytest.mark.unit
class TestHttpTransport:
    """Test HttpTransport against the S3 emulation."""

    async def test_multipart_chunked(self, transport: HttpTransport, fake_s3: FakeS3, payload) -> None:
        """
        Test a multipart session with chunk-signed parts.

        Verifies:
        - Content-Length matches the encoded length of every part
        - The chunk signature chain is valid
        - Parts are completed in order and the ETag is unquoted
        """
        first, second = payload(200 * 1024 + 7), b"end"
        upload_id = await transport.create_multipart_upload("bucket", "dir/a b.bin", headers={"Content-Type": "x/y"})
        one = await transport.upload_part("bucket", "dir/a b.bin", upload_id, 1, first)
        two = await transport.upload_part("bucket", "dir/a b.bin", upload_id, 2, memoryview(second))

        result = await transport.complete_multipart_upload(
            "bucket", "dir/a b.bin", upload_id, [Part(1, one.etag), Part(2, two.etag)]
        )

        assert one.etag == hashlib.md5(first).hexdigest()
        assert fake_s3.objects["dir/a b.bin"] == first + second
        assert fake_s3.object_headers["dir/a b.bin"]["Content-Type"] == "x/y"
        assert result.etag.endswith("-2")
        assert not result.etag.startswith('"')
        assert result.version_id == "v1"

    async def test_put_object_hashed(self, endpoint: str, fake_s3: FakeS3) -> None:
        """Test a PUT without chunked signing carries the body hash."""
        transport = make_transport(endpoint, chunked_signing=False)

        async with transport:
            result = await transport.put_object("bucket", "plain.txt", b"hello", headers={"x-amz-meta-a": "1"})

        assert fake_s3.objects["plain.txt"] == b"hello"
        assert fake_s3.requests[0].headers["x-amz-content-sha256"] == hashlib.sha256(b"hello").hexdigest()
        assert fake_s3.object_headers["plain.txt"]["x-amz-meta-a"] == "1"
        assert result.etag == hashlib.md5(b"hello").hexdigest()

    async def test_empty_object(self, transport: HttpTransport, fake_s3: FakeS3) -> None:
        """Test an empty chunk-signed body carries only the final chunk."""
        await transport.put_object("bucket", "empty", b"")

        assert fake_s3.objects["empty"] == b""
        assert fake_s3.requests[0].content_length == chunked_length(0)

    async def test_abort(self, transport: HttpTransport, fake_s3: FakeS3) -> None:
        """Test aborting sends DELETE with the upload id."""
        upload_id = await transport.create_multipart_upload("bucket", "key")

        await transport.abort_multipart_upload("bucket", "key", upload_id)

        assert fake_s3.uploads == {}
        assert fake_s3.requests[-1].method == "DELETE"

    async def test_error_document(self, transport: HttpTransport, fake_s3: FakeS3) -> None:
        """Test an error response is parsed into ServerError."""
        fake_s3.fail_next = (403, _error_document("AccessDenied", "Access Denied"))

        with pytest.raises(ServerError) as exc_info:
            await transport.create_multipart_upload("bucket", "key")

        error = exc_info.value
        assert error.status_code == 403
        assert error.code == "AccessDenied"
        assert error.request_id == "req-42"
        assert error.key == "key"

    async def test_error_in_ok_response(self, transport: HttpTransport, fake_s3: FakeS3) -> None:
        """Test an error document in a 200 response is reported as a server failure."""
        fake_s3.fail_next = (200, _error_document("InternalError", "We encountered an internal error."))

        with pytest.raises(ServerError) as exc_info:
            await transport.complete_multipart_upload("bucket", "key", "id", [Part(1, "etag")])

        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "InternalError"

    async def test_non_xml_ok_response(self, transport: HttpTransport, fake_s3: FakeS3) -> None:
        """Test a 200 response that is not XML is reported as a server failure."""
        fake_s3.fail_next = (200, "<html>proxy page")
        with pytest.raises(ServerError) as exc_info:
            await transport.create_multipart_upload("bucket", "key")
        assert exc_info.value.status_code == 500
        assert exc_info.value.key == "key"

        fake_s3.fail_next = (200, "<html>proxy page")
        with pytest.raises(ServerError):
            await transport.complete_multipart_upload("bucket", "key", "id", [Part(1, "etag")])

    async def test_unknown_upload(self, transport: HttpTransport) -> None:
        """Test a part for an unknown upload id raises ServerError."""
        with pytest.raises(ServerError) as exc_info:
            await transport.upload_part("bucket", "key", "missing", 1, b"data")

        assert exc_info.value.code == "NoSuchUpload"

    async def test_connection_error(self) -> None:
        """Test an unreachable endpoint raises StorageConnectionError."""
        transport = make_transport("http://127.0.0.1:1")

        async with transport:
            with pytest.raises(StorageConnectionError):
                await transport.put_object("bucket", "key", b"data")

    async def test_upload_client(self, transport: HttpTransport, fake_s3: FakeS3, payload) -> None:
        """Test an upload through UploadClient split into chunk-signed parts."""
        from s3_uploads.client import UploadClient

        data = payload(11 * MiB)
        client = UploadClient(transport)

        result = await client.put_object("bucket", "big.bin", data)

        assert fake_s3.objects["big.bin"] == data
        assert result.etag.endswith("-3")
