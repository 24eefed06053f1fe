"""Object storage abstraction layer.

This module provides a protocol-based abstraction for object storage backends,
enabling support for S3, MinIO, and other S3-compatible services.
"""

from .client import (
    DEFAULT_CONTENT_TYPE,
    BackendError,
    InFlightUpload,
    ObjectHead,
    ObjectListing,
    ObjectStoreClient,
    ObjectSummary,
    PartListing,
    ProtocolViolationError,
    StorageError,
    TransportError,
    UploadedPart,
    UploadListing,
    UploadSession,
)

__all__ = [
    "DEFAULT_CONTENT_TYPE",
    "BackendError",
    "InFlightUpload",
    "ObjectHead",
    "ObjectListing",
    "ObjectStoreClient",
    "ObjectSummary",
    "PartListing",
    "ProtocolViolationError",
    "StorageError",
    "TransportError",
    "UploadedPart",
    "UploadListing",
    "UploadSession",
]
