"""Shared pytest fixtures for s3-uploads tests."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

import pytest

from s3_uploads.backends.memory import MemoryConfig, MemoryTransport
from s3_uploads.exceptions import ServerError

if TYPE_CHECKING:
    from s3_uploads.backends.s3 import S3Transport
    from s3_uploads.base import Body
    from s3_uploads.types import ObjectWriteResult, Part, PartResult

MiB = 1024 * 1024


# ==================================================================================== #
# PYTEST CONFIGURATION
# ==================================================================================== #


def pytest_configure(config):
    """Configure pytest with custom settings and markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Tests that take more than 1 second")

    os.environ["PYTHONDONTWRITEBYTECODE"] = "1"


# ==================================================================================== #
# TRANSPORTS
# ==================================================================================== #


class RecordingTransport(MemoryTransport):
    """Memory transport that records calls and injects faults.

    Attributes:
        calls: Names of the operations in the order they were invoked
        part_numbers: Part numbers in the order their upload started
        fail_parts: Part numbers mapped to the exception their upload raises
        fail_create: Exception raised by create_multipart_upload
        fail_abort: Exception raised by abort_multipart_upload
        fail_complete: Exception raised by complete_multipart_upload
        part_delays: Part numbers mapped to a delay in seconds before the part is stored
        create_delay: Delay in seconds before create_multipart_upload answers
        max_in_flight: Highest number of concurrent upload_part calls seen
    """

    def __init__(self, config: MemoryConfig | None = None) -> None:
        super().__init__(config)
        self.calls: list[str] = []
        self.part_numbers: list[int] = []
        self.fail_parts: dict[int, BaseException] = {}
        self.fail_create: BaseException | None = None
        self.fail_abort: BaseException | None = None
        self.fail_complete: BaseException | None = None
        self.part_delays: dict[int, float] = {}
        self.create_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def create_multipart_upload(self, bucket: str, key: str, *, headers: Mapping[str, str] | None = None) -> str:
        self.calls.append("create_multipart_upload")
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.fail_create is not None:
            raise self.fail_create
        return await super().create_multipart_upload(bucket, key, headers=headers)

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
        self.calls.append("upload_part")
        self.part_numbers.append(part_number)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.part_delays.get(part_number, 0))
            if part_number in self.fail_parts:
                raise self.fail_parts[part_number]
            return await super().upload_part(bucket, key, upload_id, part_number, data, headers=headers)
        finally:
            self.in_flight -= 1

    async def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: Sequence[Part]
    ) -> ObjectWriteResult:
        self.calls.append("complete_multipart_upload")
        self.completed_parts = list(parts)
        if self.fail_complete is not None:
            raise self.fail_complete
        return await super().complete_multipart_upload(bucket, key, upload_id, parts)

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        self.calls.append("abort_multipart_upload")
        if self.fail_abort is not None:
            raise self.fail_abort
        await super().abort_multipart_upload(bucket, key, upload_id)

    async def put_object(
        self, bucket: str, key: str, data: Body, *, headers: Mapping[str, str] | None = None
    ) -> ObjectWriteResult:
        self.calls.append("put_object")
        return await super().put_object(bucket, key, data, headers=headers)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def memory_transport() -> MemoryTransport:
    """
    Fresh memory transport for each test.

    Enforces the 5MiB minimum size of non-final parts like S3 does.
    """
    return MemoryTransport(config=MemoryConfig())


@pytest.fixture
def recording_transport() -> RecordingTransport:
    """
    Memory transport that records every call and can inject failures.

    Tests set ``fail_parts``, ``part_delays`` and friends before uploading.
    """
    return RecordingTransport()


@pytest.fixture
def server_error() -> ServerError:
    """A non-retryable error as S3 would report it."""
    return ServerError("Access Denied", status_code=403, code="AccessDenied")


# ==================================================================================== #
# DATA
# ==================================================================================== #


@pytest.fixture
def payload():
    """
    Factory for deterministic test payloads.

    Returns bytes whose content depends on the position, so misplaced parts
    are detected when the assembled object is compared.
    """

    def _payload(size: int) -> bytes:
        pattern = bytes(range(251))
        repeats, rest = divmod(size, len(pattern))
        return pattern * repeats + pattern[:rest]

    return _payload


@pytest.fixture
def async_chunks():
    """Factory turning bytes into an async iterator of fixed-size chunks."""

    def _chunks(data: bytes, chunk_size: int = 64 * 1024):
        async def generate():
            for offset in range(0, len(data), chunk_size):
                await asyncio.sleep(0)
                yield data[offset : offset + chunk_size]

        return generate()

    return _chunks


# ==================================================================================== #
# S3 (moto)
# ==================================================================================== #
# NOTE: Uses moto server mode for aiobotocore compatibility.
# The decorator-based mock_aws() doesn't work with aiobotocore's async API.


@pytest.fixture(scope="session")
def moto_server():
    """
    Start moto server for S3 mocking with aiobotocore (session-scoped).

    Uses moto's ThreadedMotoServer to run moto in a separate thread,
    which properly handles aiobotocore's async requests.
    """
    from moto.server import ThreadedMotoServer

    server = ThreadedMotoServer(port="0", verbose=False)
    server.start()
    host, port = server.get_host_and_port()
    endpoint_url = f"http://{host}:{port}"

    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"

    yield endpoint_url

    server.stop()


@pytest.fixture(scope="session")
def mock_s3_bucket_setup(moto_server: str):
    """
    Create mock S3 bucket once per session (session-scoped).

    Args:
        moto_server: Endpoint URL from moto server fixture
    """
    import boto3

    s3_client = boto3.client(
        "s3",
        endpoint_url=moto_server,
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    s3_client.create_bucket(Bucket="test-bucket")

    return {"client": s3_client, "endpoint_url": moto_server}


@pytest.fixture
def mock_s3_bucket(mock_s3_bucket_setup: dict):
    """
    Provide S3 bucket with per-test cleanup (function-scoped).

    Deletes all objects and aborts dangling multipart uploads after each test.
    """
    yield mock_s3_bucket_setup

    s3_client = mock_s3_bucket_setup["client"]
    response = s3_client.list_objects_v2(Bucket="test-bucket")
    objects = [{"Key": obj["Key"]} for obj in response.get("Contents", [])]
    if objects:
        s3_client.delete_objects(Bucket="test-bucket", Delete={"Objects": objects})
    uploads = s3_client.list_multipart_uploads(Bucket="test-bucket")
    for upload in uploads.get("Uploads", []):
        s3_client.abort_multipart_upload(Bucket="test-bucket", Key=upload["Key"], UploadId=upload["UploadId"])


@pytest.fixture
def s3_transport(mock_s3_bucket: dict) -> S3Transport:
    """
    S3 transport against the moto server.

    All operations are local and fast.
    """
    from s3_uploads.backends.s3 import S3Config, S3Transport

    return S3Transport(
        config=S3Config(
            region="us-east-1",
            endpoint_url=mock_s3_bucket["endpoint_url"],
            access_key_id="testing",
            secret_access_key="testing",
        )
    )
