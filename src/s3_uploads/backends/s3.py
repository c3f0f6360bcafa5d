"""Amazon S3 and S3-compatible transport backed by aioboto3."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from s3_uploads.base import BaseTransport
from s3_uploads.exceptions import ConfigurationError, ServerError, StorageConnectionError, StorageError
from s3_uploads.types import ObjectWriteResult, PartResult

if TYPE_CHECKING:
    from s3_uploads.base import Body
    from s3_uploads.types import Part

__all__ = ("S3Config", "S3Transport")

# Request headers that have a dedicated parameter in the boto3 API
_HEADER_PARAMS = {
    "cache-control": "CacheControl",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
    "content-language": "ContentLanguage",
    "content-md5": "ContentMD5",
    "content-type": "ContentType",
    "x-amz-server-side-encryption": "ServerSideEncryption",
    "x-amz-server-side-encryption-aws-kms-key-id": "SSEKMSKeyId",
    "x-amz-server-side-encryption-customer-algorithm": "SSECustomerAlgorithm",
    "x-amz-server-side-encryption-customer-key": "SSECustomerKey",
    "x-amz-server-side-encryption-customer-key-md5": "SSECustomerKeyMD5",
    "x-amz-storage-class": "StorageClass",
    "x-amz-tagging": "Tagging",
}

_PART_HEADER_PARAMS = (
    "content-md5",
    "x-amz-server-side-encryption-customer-algorithm",
    "x-amz-server-side-encryption-customer-key",
    "x-amz-server-side-encryption-customer-key-md5",
)

_META_PREFIX = "x-amz-meta-"


def _headers_to_params(headers: Mapping[str, str] | None, allowed: Sequence[str] | None = None) -> dict[str, Any]:
    """Translate raw S3 request headers into boto3 keyword arguments.

    Args:
        headers: Request headers
        allowed: Lower-case header names accepted; None accepts every known header

    Returns:
        Keyword arguments for the boto3 call

    Raises:
        ConfigurationError: If a header has no boto3 counterpart
    """
    params: dict[str, Any] = {}
    metadata: dict[str, str] = {}
    for name, value in (headers or {}).items():
        lower = name.lower()
        if allowed is None and lower.startswith(_META_PREFIX):
            metadata[lower[len(_META_PREFIX) :]] = value
        elif lower in _HEADER_PARAMS and (allowed is None or lower in allowed):
            params[_HEADER_PARAMS[lower]] = value
        else:
            raise ConfigurationError(f"Header {name!r} is not supported by S3Transport")
    if metadata:
        params["Metadata"] = metadata
    return params


def _translate_error(e: Exception, action: str, bucket: str, key: str) -> StorageError:
    """Map a botocore exception to the library's exception hierarchy."""
    from botocore.exceptions import ClientError, HTTPClientError
    from botocore.exceptions import ConnectionError as BotoConnectionError

    if isinstance(e, ClientError):
        error = e.response.get("Error", {})
        meta = e.response.get("ResponseMetadata", {})
        return ServerError(
            error.get("Message") or str(e),
            status_code=meta.get("HTTPStatusCode", 0),
            code=error.get("Code"),
            bucket=bucket,
            key=key,
            request_id=meta.get("RequestId"),
        )
    if isinstance(e, (HTTPClientError, BotoConnectionError, ConnectionError, TimeoutError)):
        return StorageConnectionError(f"Failed to {action} {bucket}/{key}: {e}")
    return StorageError(f"Failed to {action} {bucket}/{key}: {e}")


@dataclass(frozen=True)
class S3Config:
    """Configuration for the aioboto3 transport.

    Supports AWS S3 and S3-compatible services like:
    - Cloudflare R2
    - DigitalOcean Spaces
    - MinIO
    - Backblaze B2

    Attributes:
        region: AWS region (e.g., "us-east-1")
        endpoint_url: Custom endpoint for S3-compatible services
        access_key_id: AWS access key ID (falls back to environment/IAM)
        secret_access_key: AWS secret access key
        session_token: AWS session token for temporary credentials
        use_ssl: Use SSL/TLS for connections
        verify_ssl: Verify SSL certificates
        max_pool_connections: Maximum connection pool size
    """

    region: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    session_token: str | None = None
    use_ssl: bool = True
    verify_ssl: bool = True
    max_pool_connections: int = 10

    def __post_init__(self) -> None:
        if (self.access_key_id is None) != (self.secret_access_key is None):
            raise ConfigurationError("access_key_id and secret_access_key must be given together")
        if self.max_pool_connections < 1:
            raise ConfigurationError("max_pool_connections must be positive")


class S3Transport(BaseTransport):
    """Transport for Amazon S3 and S3-compatible services.

    Uses aioboto3 for the multipart API, so requests are signed and retried
    at the connection level by botocore.

    Example:
        >>> # AWS S3
        >>> transport = S3Transport(config=S3Config(region="us-east-1"))

        >>> # MinIO
        >>> transport = S3Transport(
        ...     config=S3Config(
        ...         endpoint_url="http://localhost:9000",
        ...         access_key_id="minioadmin",
        ...         secret_access_key="minioadmin",
        ...     )
        ... )

    Note:
        The session is lazily created on first use. Credentials can come from:
        1. Explicit configuration (access_key_id, secret_access_key)
        2. Environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)
        3. IAM roles (when running on EC2/ECS/Lambda)
    """

    def __init__(self, config: S3Config | None = None) -> None:
        """Initialize S3Transport.

        Args:
            config: Configuration for the S3 transport (optional)
        """
        self.config = config or S3Config()
        self.region = self.config.region
        self._session: Any = None

    def _get_client(self) -> Any:
        """Create an S3 client context manager.

        Returns:
            aioboto3 S3 client, to be entered with ``async with``

        Raises:
            ConfigurationError: If aioboto3 is not installed
            StorageConnectionError: If unable to create client
        """
        try:
            import aioboto3
        except ImportError as e:
            raise ConfigurationError(
                "aioboto3 is required for S3Transport. Install it with: pip install s3-uploads[s3]"
            ) from e

        try:
            from botocore.config import Config

            if self._session is None:
                self._session = aioboto3.Session(
                    aws_access_key_id=self.config.access_key_id,
                    aws_secret_access_key=self.config.secret_access_key,
                    aws_session_token=self.config.session_token,
                    region_name=self.config.region,
                )

            # aioboto3 clients are async context managers that can only be entered once
            return self._session.client(
                "s3",
                endpoint_url=self.config.endpoint_url,
                use_ssl=self.config.use_ssl,
                verify=self.config.verify_ssl,
                config=Config(max_pool_connections=self.config.max_pool_connections),
            )
        except Exception as e:
            raise StorageConnectionError(f"Failed to create S3 client: {e}") from e

    def _result(self, bucket: str, key: str, response: Mapping[str, Any]) -> ObjectWriteResult:
        meta = response.get("ResponseMetadata", {})
        return ObjectWriteResult(
            bucket=bucket,
            key=key,
            etag=response.get("ETag", "").strip('"'),
            version_id=response.get("VersionId"),
            region=self.region,
            headers=dict(meta.get("HTTPHeaders", {})),
        )

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
            headers: Content-Type, ``x-amz-meta-*`` and other object headers

        Returns:
            Upload id of the new session

        Raises:
            ServerError: If S3 rejects the request
            StorageConnectionError: If S3 cannot be reached
        """
        params = _headers_to_params(headers)
        client = self._get_client()
        try:
            async with client as s3:
                response = await s3.create_multipart_upload(Bucket=bucket, Key=key, **params)
        except Exception as e:
            raise _translate_error(e, "create multipart upload for", bucket, key) from e
        return response["UploadId"]

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
        """Upload one part.

        Raises:
            ServerError: If S3 rejects the part
            StorageConnectionError: If S3 cannot be reached
        """
        params = _headers_to_params(headers, _PART_HEADER_PARAMS)
        client = self._get_client()
        try:
            async with client as s3:
                response = await s3.upload_part(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    Body=bytes(data),
                    **params,
                )
        except Exception as e:
            raise _translate_error(e, f"upload part {part_number} of", bucket, key) from e
        return PartResult(etag=response.get("ETag", "").strip('"'), checksum=response.get("ChecksumCRC32"))

    async def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[Part],
    ) -> ObjectWriteResult:
        """Complete a multipart upload.

        Raises:
            ServerError: If S3 rejects the part list
            StorageConnectionError: If S3 cannot be reached
        """
        client = self._get_client()
        try:
            async with client as s3:
                response = await s3.complete_multipart_upload(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": [{"PartNumber": p.number, "ETag": f'"{p.etag}"'} for p in parts]},
                )
        except Exception as e:
            raise _translate_error(e, "complete multipart upload of", bucket, key) from e
        return self._result(bucket, key, response)

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload.

        Raises:
            ServerError: If S3 rejects the request
            StorageConnectionError: If S3 cannot be reached
        """
        client = self._get_client()
        try:
            async with client as s3:
                await s3.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except Exception as e:
            raise _translate_error(e, "abort multipart upload of", bucket, key) from e

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
            ServerError: If S3 rejects the request
            StorageConnectionError: If S3 cannot be reached
        """
        params = _headers_to_params(headers)
        client = self._get_client()
        try:
            async with client as s3:
                response = await s3.put_object(Bucket=bucket, Key=key, Body=bytes(data), **params)
        except Exception as e:
            raise _translate_error(e, "upload", bucket, key) from e
        return self._result(bucket, key, response)

    async def close(self) -> None:
        """Drop the aioboto3 session.

        Clients are opened per request, so there is no connection to close.
        """
        self._session = None
