"""S3-compatible object store client implementation.

This module provides an S3-compatible client that works with AWS S3, MinIO
and other S3-compatible object storage services. Request signing, XML
decoding and listing pagination are left to boto3.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, BinaryIO, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from blobdriver.infra.storage.client import (
    BackendError,
    InFlightUpload,
    ObjectHead,
    ObjectListing,
    ObjectSummary,
    PartListing,
    ProtocolViolationError,
    StorageError,
    TransportError,
    UploadedPart,
    UploadListing,
    UploadSession,
)

if TYPE_CHECKING:
    from blobdriver.common.config import Settings

# Maximum number of keys accepted by a single DeleteObjects request
DELETE_BATCH_SIZE = 1000

PRESIGN_OPERATIONS = {"GET": "get_object", "HEAD": "head_object"}


def _storage_error(message: str, exc: Exception) -> StorageError:
    """Map a boto3 failure onto the storage error hierarchy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error") or {}
        metadata = exc.response.get("ResponseMetadata") or {}
        return BackendError(
            f"{message}: {exc}",
            status_code=metadata.get("HTTPStatusCode"),
            code=error.get("Code"),
        )
    if isinstance(exc, BotoCoreError):
        return TransportError(f"{message}: {exc}")
    return StorageError(f"{message}: {exc}")


def _range_length(source_range: str) -> int:
    """Length of an inclusive ``bytes=first-last`` range."""
    byte_range = source_range.split("=", 1)[-1]
    first, _, last = byte_range.partition("-")
    return int(last) - int(first) + 1


class S3ObjectStoreClient:
    """S3-compatible object store client.

    Supports AWS S3, MinIO, and other S3-compatible services.
    Uses boto3 for all storage operations.
    """

    def __init__(self, *, settings: "Settings") -> None:
        """Initialize the S3 client with configuration from settings.

        Args:
            settings: Application settings containing S3 configuration.
        """
        self._settings = settings
        self._client = self._build_client(settings)

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        """Create a boto3 S3 client from settings."""
        addressing_style = (settings.S3_ADDRESSING_STYLE or "path").strip().lower()
        config = Config(
            signature_version="s3v4",
            s3={"addressing_style": addressing_style},
        )

        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        content_type: str | None = None,
    ) -> UploadSession:
        """Initialize a multipart upload session."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        if content_type:
            params["ContentType"] = content_type

        try:
            response = self._client.create_multipart_upload(**params)
        except Exception as exc:
            raise _storage_error("Failed to create multipart upload", exc) from exc

        upload_id = response.get("UploadId")
        if not upload_id:
            raise ProtocolViolationError("S3 response missing UploadId")

        return UploadSession(
            upload_id=str(upload_id),
            bucket=bucket,
            object_key=object_key,
        )

    def upload_part(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        body: bytes,
    ) -> UploadedPart:
        """Upload one part of a multipart upload."""
        try:
            response = self._client.upload_part(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
                PartNumber=int(part_number),
                Body=body,
            )
        except Exception as exc:
            raise _storage_error("Failed to upload part", exc) from exc

        etag = response.get("ETag")
        if not etag:
            raise ProtocolViolationError(
                f"S3 response missing ETag for part {part_number}"
            )

        return UploadedPart(
            part_number=int(part_number), etag=str(etag), size_bytes=len(body)
        )

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
        """Copy an existing object (or a byte range of it) into a part."""
        # The copy result carries no size, so take it from the source.
        if source_range:
            size = _range_length(source_range)
        else:
            size = self.head_object(bucket=bucket, object_key=source_key).size_bytes

        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": object_key,
            "UploadId": upload_id,
            "PartNumber": int(part_number),
            "CopySource": {"Bucket": bucket, "Key": source_key},
        }
        if source_range:
            params["CopySourceRange"] = source_range

        try:
            response = self._client.upload_part_copy(**params)
        except Exception as exc:
            raise _storage_error("Failed to copy part", exc) from exc

        etag = (response.get("CopyPartResult") or {}).get("ETag")
        if not etag:
            raise ProtocolViolationError(
                f"S3 response missing ETag for copied part {part_number}"
            )

        return UploadedPart(
            part_number=int(part_number), etag=str(etag), size_bytes=size
        )

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
        try:
            response = self._client.list_parts(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
                MaxParts=int(max_parts),
                PartNumberMarker=int(part_number_marker),
            )
        except Exception as exc:
            raise _storage_error("Failed to list parts", exc) from exc

        parts = [
            UploadedPart(
                part_number=int(item["PartNumber"]),
                etag=str(item.get("ETag", "")),
                size_bytes=int(item.get("Size", 0)),
            )
            for item in response.get("Parts", [])
        ]
        next_marker = response.get("NextPartNumberMarker")
        return PartListing(
            parts=parts,
            is_truncated=bool(response.get("IsTruncated")),
            next_part_number_marker=int(next_marker) if next_marker else None,
        )

    def list_multipart_uploads(
        self,
        *,
        bucket: str,
        prefix: str = "",
        key_marker: str | None = None,
        upload_id_marker: str | None = None,
    ) -> UploadListing:
        """List one page of in-flight multipart uploads."""
        params: dict[str, Any] = {"Bucket": bucket}
        if prefix:
            params["Prefix"] = prefix
        if key_marker:
            params["KeyMarker"] = key_marker
            if upload_id_marker:
                params["UploadIdMarker"] = upload_id_marker

        try:
            response = self._client.list_multipart_uploads(**params)
        except Exception as exc:
            raise _storage_error("Failed to list multipart uploads", exc) from exc

        uploads = [
            InFlightUpload(
                object_key=str(item["Key"]),
                upload_id=str(item["UploadId"]),
                initiated=item.get("Initiated"),
            )
            for item in response.get("Uploads", [])
        ]
        return UploadListing(
            uploads=uploads,
            is_truncated=bool(response.get("IsTruncated")),
            next_key_marker=response.get("NextKeyMarker") or None,
            next_upload_id_marker=response.get("NextUploadIdMarker") or None,
        )

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[UploadedPart],
    ) -> str:
        """Complete a multipart upload by combining all parts."""
        multipart_payload = {
            "Parts": [
                {"ETag": part.etag, "PartNumber": int(part.part_number)}
                for part in sorted(parts, key=lambda p: p.part_number)
            ]
        }

        try:
            response = self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload=multipart_payload,
            )
        except Exception as exc:
            raise _storage_error("Failed to complete multipart upload", exc) from exc

        return str(response.get("ETag") or "")

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Abort a multipart upload and clean up uploaded parts."""
        try:
            self._client.abort_multipart_upload(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
            )
        except Exception as exc:
            raise _storage_error("Failed to abort multipart upload", exc) from exc

    def get_object(self, *, bucket: str, object_key: str) -> BinaryIO:
        """Open a stream on an object's content."""
        try:
            response = self._client.get_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise _storage_error("Failed to get object", exc) from exc
        return response["Body"]

    def get_object_range(
        self,
        *,
        bucket: str,
        object_key: str,
        start: int,
        end: int | None = None,
    ) -> BinaryIO:
        """Open a stream on bytes ``start..end`` of an object."""
        byte_range = f"bytes={int(start)}-{'' if end is None else int(end)}"
        try:
            response = self._client.get_object(
                Bucket=bucket, Key=object_key, Range=byte_range
            )
        except Exception as exc:
            raise _storage_error("Failed to get object range", exc) from exc
        return response["Body"]

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        body: bytes,
        content_type: str | None = None,
    ) -> None:
        """Store an object in a single request."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key, "Body": body}
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client.put_object(**params)
        except Exception as exc:
            raise _storage_error("Failed to put object", exc) from exc

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        """Get object metadata without downloading the content."""
        try:
            response = self._client.head_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise _storage_error("Failed to get object metadata", exc) from exc

        size = response.get("ContentLength")
        return ObjectHead(
            size_bytes=int(size) if size is not None else 0,
            etag=response.get("ETag"),
            content_type=response.get("ContentType"),
            last_modified=response.get("LastModified"),
        )

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        """Delete an object from storage."""
        try:
            self._client.delete_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise _storage_error("Failed to delete object", exc) from exc

    def delete_objects(self, *, bucket: str, object_keys: Sequence[str]) -> None:
        """Delete objects in batches of DELETE_BATCH_SIZE."""
        keys = list(object_keys)
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            try:
                response = self._client.delete_objects(
                    Bucket=bucket,
                    Delete={
                        "Objects": [{"Key": key} for key in batch],
                        "Quiet": True,
                    },
                )
            except Exception as exc:
                raise _storage_error("Failed to delete objects", exc) from exc

            errors = response.get("Errors") or []
            if errors:
                first = errors[0]
                raise BackendError(
                    f"Failed to delete {len(errors)} object(s), "
                    f"first: {first.get('Key')} ({first.get('Message')})",
                    code=first.get("Code"),
                )

    def copy_object(self, *, bucket: str, source_key: str, dest_key: str) -> None:
        """Copy an object server side; boto3 switches to multipart for large objects."""
        try:
            self._client.copy(
                {"Bucket": bucket, "Key": source_key},
                bucket,
                dest_key,
            )
        except Exception as exc:
            raise _storage_error("Failed to copy object", exc) from exc

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        delimiter: str | None = None,
        max_keys: int | None = None,
    ) -> ObjectListing:
        """List objects under a prefix, following continuation tokens."""
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
        if delimiter:
            params["Delimiter"] = delimiter
        if max_keys:
            params["PaginationConfig"] = {"MaxItems": int(max_keys)}

        objects: list[ObjectSummary] = []
        prefixes: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(**params):
                for item in page.get("Contents", []):
                    objects.append(
                        ObjectSummary(
                            object_key=str(item["Key"]),
                            size_bytes=int(item.get("Size", 0)),
                            last_modified=item.get("LastModified"),
                        )
                    )
                for item in page.get("CommonPrefixes", []):
                    prefixes.append(str(item["Prefix"]))
        except Exception as exc:
            raise _storage_error("Failed to list objects", exc) from exc

        return ObjectListing(objects=objects, common_prefixes=prefixes)

    def presign_download(
        self,
        *,
        bucket: str,
        object_key: str,
        expires_in: int,
        method: str = "GET",
    ) -> str:
        """Generate a presigned URL for reading an object."""
        operation = PRESIGN_OPERATIONS.get(method.upper())
        if operation is None:
            raise StorageError(f"Cannot presign {method} requests")

        try:
            url = self._client.generate_presigned_url(
                operation,
                Params={"Bucket": bucket, "Key": object_key},
                ExpiresIn=int(expires_in),
            )
        except Exception as exc:
            raise _storage_error("Failed to generate download URL", exc) from exc

        if not url:
            raise ProtocolViolationError("Generated presigned URL is empty")

        return str(url)
