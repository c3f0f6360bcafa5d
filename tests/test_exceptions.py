"""Tests for the exception hierarchy."""

from __future__ import annotations

import pytest

from s3_uploads.exceptions import (
    ConfigurationError,
    InsufficientDataError,
    InternalError,
    InvalidArgumentError,
    ServerError,
    StorageConnectionError,
    StorageError,
    UploadAbortedError,
    UploadClosedError,
)


@pytest.mark.unit
class TestHierarchy:
    """All errors derive from StorageError."""

    @pytest.mark.parametrize(
        "error",
        [
            ConfigurationError("bad config"),
            InsufficientDataError(10, 5),
            InternalError("out of order"),
            InvalidArgumentError("bad size"),
            ServerError("denied", status_code=403),
            StorageConnectionError("down"),
            UploadAbortedError("aborted"),
            UploadClosedError("closed"),
        ],
    )
    def test_storage_error_base(self, error: StorageError) -> None:
        """Test every error can be caught as StorageError."""
        with pytest.raises(StorageError):
            raise error

    def test_invalid_argument_is_value_error(self) -> None:
        """Test argument errors can be caught as ValueError."""
        with pytest.raises(ValueError):
            raise InvalidArgumentError("part size too small")

    def test_terminal_state_errors(self) -> None:
        """Test aborted and closed uploads report internal errors."""
        assert issubclass(UploadAbortedError, InternalError)
        assert issubclass(UploadClosedError, InternalError)


@pytest.mark.unit
class TestInsufficientDataError:
    """Tests for InsufficientDataError."""

    def test_attributes(self) -> None:
        """Test expected and actual byte counts are kept."""
        error = InsufficientDataError(expected=100, actual=42)

        assert error.expected == 100
        assert error.actual == 42
        assert str(error) == "Insufficient data: read 42 bytes, expected 100"


@pytest.mark.unit
class TestServerError:
    """Tests for ServerError."""

    def test_attributes(self) -> None:
        """Test response details are kept."""
        error = ServerError(
            "Your proposed upload is smaller than the minimum allowed size",
            status_code=400,
            code="EntityTooSmall",
            bucket="bucket",
            key="key",
            request_id="req-1",
        )

        assert error.status_code == 400
        assert error.code == "EntityTooSmall"
        assert error.bucket == "bucket"
        assert error.key == "key"
        assert error.request_id == "req-1"
        assert str(error).startswith("EntityTooSmall (400): Your proposed upload")

    def test_without_code(self) -> None:
        """Test the message of an error without S3 error code."""
        error = ServerError("bad gateway", status_code=502)

        assert error.code is None
        assert str(error) == "ServerError (502): bad gateway"
