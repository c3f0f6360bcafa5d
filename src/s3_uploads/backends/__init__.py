"""Transports for s3-uploads."""

from __future__ import annotations

from s3_uploads.backends.http import HttpConfig, HttpTransport
from s3_uploads.backends.memory import MemoryConfig, MemoryTransport, StoredObject
from s3_uploads.backends.s3 import S3Config, S3Transport

__all__ = (
    "HttpConfig",
    "HttpTransport",
    "MemoryConfig",
    "MemoryTransport",
    "S3Config",
    "S3Transport",
    "StoredObject",
)
