"""Object store client protocol and data types.

This module defines the abstract interface the storage driver consumes:
single-object operations, multipart upload primitives and the paged
listings used to resume an in-flight upload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Protocol, Sequence

NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NoSuchUpload", "NotFound"})
# Registry content is opaque bytes; every object is stored with this type.
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class TransportError(StorageError):
    """Raised when the store could not be reached or the connection failed."""


class BackendError(StorageError):
    """Raised when the store answers with a non-success status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or (self.code or "") in NOT_FOUND_CODES


class ProtocolViolationError(StorageError):
    """Raised when a store response is missing data the protocol requires."""


@dataclass(frozen=True, slots=True)
class UploadSession:
    """An in-progress multipart upload."""

    upload_id: str
    bucket: str
    object_key: str


@dataclass(frozen=True, slots=True)
class UploadedPart:
    """A part already stored within a multipart upload."""

    part_number: int
    etag: str
    size_bytes: int


@dataclass(frozen=True, slots=True)
class InFlightUpload:
    """One entry of the outstanding multipart upload listing."""

    object_key: str
    upload_id: str
    initiated: datetime | None = None


@dataclass(frozen=True, slots=True)
class PartListing:
    """A single page of parts for one upload."""

    parts: list[UploadedPart]
    is_truncated: bool = False
    next_part_number_marker: int | None = None


@dataclass(frozen=True, slots=True)
class UploadListing:
    """A single page of in-flight multipart uploads."""

    uploads: list[InFlightUpload]
    is_truncated: bool = False
    next_key_marker: str | None = None
    next_upload_id_marker: str | None = None


@dataclass(frozen=True, slots=True)
class ObjectHead:
    """Metadata from a HEAD object request."""

    size_bytes: int
    etag: str | None
    content_type: str | None
    last_modified: datetime | None = None


@dataclass(frozen=True, slots=True)
class ObjectSummary:
    """An object entry in a bucket listing."""

    object_key: str
    size_bytes: int
    last_modified: datetime | None = None


@dataclass(frozen=True, slots=True)
class ObjectListing:
    """Every object and common prefix found under a listing prefix."""

    objects: list[ObjectSummary] = field(default_factory=list)
    common_prefixes: list[str] = field(default_factory=list)


class ObjectStoreClient(Protocol):
    """Protocol defining the interface for object storage backends.

    Every method performs one logical round trip (listings excepted) and
    raises a StorageError subclass on failure:

    - TransportError when the store cannot be reached,
    - BackendError when it answers with an error status,
    - ProtocolViolationError when the answer lacks required data.
    """

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        content_type: str | None = None,
    ) -> UploadSession:
        """Initialize a multipart upload session.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            content_type: MIME type of the object.

        Returns:
            UploadSession containing the upload_id for subsequent operations.
        """
        ...

    def upload_part(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        body: bytes,
    ) -> UploadedPart:
        """Upload one part of a multipart upload.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            upload_id: Multipart upload ID.
            part_number: Part number (1-based, max 10000).
            body: Part content.

        Returns:
            UploadedPart carrying the ETag returned by the store.

        Raises:
            ProtocolViolationError: If the store returned no ETag.
        """
        ...

    def upload_part_copy(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        source_key: str,
        source_range: str | None = None,
    ) -> UploadedPart:
        """Copy an existing object (or a byte range of it) into a part.

        Args:
            source_key: Key of the object to copy, in the same bucket.
            source_range: Optional ``bytes=first-last`` range.
        """
        ...

    def list_parts(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        max_parts: int,
        part_number_marker: int = 0,
    ) -> PartListing:
        """List one page of the parts already uploaded for a session."""
        ...

    def list_multipart_uploads(
        self,
        *,
        bucket: str,
        prefix: str = "",
        key_marker: str | None = None,
        upload_id_marker: str | None = None,
    ) -> UploadListing:
        """List one page of in-flight multipart uploads.

        The prefix is a hint: some stores ignore it, so callers must filter
        the returned keys themselves.
        """
        ...

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[UploadedPart],
    ) -> str:
        """Complete a multipart upload by combining all parts.

        Returns:
            The ETag of the assembled object.
        """
        ...

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Abort a multipart upload and clean up uploaded parts."""
        ...

    def get_object(self, *, bucket: str, object_key: str) -> BinaryIO:
        """Open a stream on an object's content."""
        ...

    def get_object_range(
        self,
        *,
        bucket: str,
        object_key: str,
        start: int,
        end: int | None = None,
    ) -> BinaryIO:
        """Open a stream on bytes ``start..end`` (inclusive, open-ended if None)."""
        ...

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        body: bytes,
        content_type: str | None = None,
    ) -> None:
        """Store an object in a single request."""
        ...

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        """Get object metadata without downloading the content."""
        ...

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        """Delete an object from storage."""
        ...

    def delete_objects(self, *, bucket: str, object_keys: Sequence[str]) -> None:
        """Delete a batch of objects."""
        ...

    def copy_object(self, *, bucket: str, source_key: str, dest_key: str) -> None:
        """Copy an object server side within a bucket."""
        ...

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        delimiter: str | None = None,
        max_keys: int | None = None,
    ) -> ObjectListing:
        """List objects under a prefix, following continuation tokens.

        ``max_keys`` caps the total number of entries returned.
        """
        ...

    def presign_download(
        self,
        *,
        bucket: str,
        object_key: str,
        expires_in: int,
        method: str = "GET",
    ) -> str:
        """Generate a presigned URL for reading an object."""
        ...
