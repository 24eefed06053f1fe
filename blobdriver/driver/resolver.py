"""Upload session resolution for new and resumed writers."""

from __future__ import annotations

import logging
from typing import Iterator

from blobdriver.common.config import MAX_LIST_PAGE_SIZE
from blobdriver.driver.errors import PathNotFoundError
from blobdriver.infra.storage.client import (
    DEFAULT_CONTENT_TYPE,
    BackendError,
    InFlightUpload,
    ObjectStoreClient,
    ProtocolViolationError,
    UploadedPart,
    UploadSession,
)

logger = logging.getLogger("storage")


class UploadSessionResolver:
    """Starts multipart upload sessions, or finds the one to append to.

    In-flight uploads are matched on exact key equality on the client side:
    not every store honours the listing prefix, and a prefix also matches
    longer keys.
    """

    def __init__(
        self,
        client: ObjectStoreClient,
        *,
        bucket: str,
        page_size: int = MAX_LIST_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._page_size = page_size

    def open(
        self, object_key: str, *, append: bool
    ) -> tuple[UploadSession, list[UploadedPart]]:
        """Return the session to write ``object_key`` through and its parts.

        Raises:
            PathNotFoundError: If ``append`` is set and no upload is in flight
                for the key.
        """
        if not append:
            session = self._client.init_multipart_upload(
                bucket=self._bucket,
                object_key=object_key,
                content_type=DEFAULT_CONTENT_TYPE,
            )
            return session, []

        try:
            upload = self.find_upload(object_key)
            if upload is None:
                raise PathNotFoundError(object_key)
            session = UploadSession(
                upload_id=upload.upload_id,
                bucket=self._bucket,
                object_key=object_key,
            )
            parts = self.list_parts(session)
        except BackendError as exc:
            if exc.is_not_found:
                raise PathNotFoundError(object_key) from exc
            raise

        logger.info(
            "multipart_session_resumed key=%s upload_id=%s parts=%s",
            object_key,
            session.upload_id,
            len(parts),
        )
        return session, parts

    def find_upload(self, object_key: str) -> InFlightUpload | None:
        """First in-flight upload whose key is exactly ``object_key``."""
        for upload in self.iter_uploads(object_key):
            if upload.object_key == object_key:
                return upload
        return None

    def iter_uploads(self, prefix: str = "") -> Iterator[InFlightUpload]:
        """Walk every page of the in-flight upload listing."""
        key_marker: str | None = None
        upload_id_marker: str | None = None
        while True:
            listing = self._client.list_multipart_uploads(
                bucket=self._bucket,
                prefix=prefix,
                key_marker=key_marker,
                upload_id_marker=upload_id_marker,
            )
            yield from listing.uploads
            if not listing.is_truncated:
                return
            if not listing.next_key_marker:
                raise ProtocolViolationError(
                    "Truncated multipart upload listing without a next key marker"
                )
            key_marker = listing.next_key_marker
            upload_id_marker = listing.next_upload_id_marker

    def list_parts(self, session: UploadSession) -> list[UploadedPart]:
        """Every part of ``session``, in ascending part number order."""
        parts: dict[int, UploadedPart] = {}
        marker = 0
        while True:
            listing = self._client.list_parts(
                bucket=session.bucket,
                object_key=session.object_key,
                upload_id=session.upload_id,
                max_parts=self._page_size,
                part_number_marker=marker,
            )
            for part in listing.parts:
                parts[part.part_number] = part
            if not listing.is_truncated:
                break
            if not listing.next_part_number_marker:
                raise ProtocolViolationError(
                    "Truncated part listing without a next part number marker"
                )
            marker = listing.next_part_number_marker
        return [parts[number] for number in sorted(parts)]
