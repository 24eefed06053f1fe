"""File-like storage driver backed by an S3-compatible object store.

Paths are absolute, ``/``-separated registry paths. They map onto object keys
below an optional root directory inside a single bucket.
"""

from __future__ import annotations

import io
import logging
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Iterator

from blobdriver.common.config import (
    MAX_LIST_PAGE_SIZE,
    MIN_CHUNK_SIZE,
    Settings,
    get_settings,
)
from blobdriver.driver.buffer_pool import PartBufferPool
from blobdriver.driver.errors import (
    InvalidOffsetError,
    PathNotFoundError,
    StorageBackendNotConfiguredError,
    UnsupportedMethodError,
)
from blobdriver.driver.resolver import UploadSessionResolver
from blobdriver.driver.writer import ChunkSizePolicy, MultipartWriter
from blobdriver.infra.storage.client import (
    DEFAULT_CONTENT_TYPE,
    BackendError,
    InFlightUpload,
    ObjectStoreClient,
)
from blobdriver.infra.storage.s3_client import S3ObjectStoreClient

logger = logging.getLogger("storage")

DEFAULT_PRESIGN_EXPIRES_SECONDS = 20 * 60
URL_METHODS = ("GET", "HEAD")


@dataclass(frozen=True, slots=True)
class FileInfo:
    """What ``stat`` knows about a path."""

    path: str
    size_bytes: int
    mod_time: datetime | None
    is_dir: bool


@contextmanager
def _not_found_as_path(path: str) -> Iterator[None]:
    try:
        yield
    except BackendError as exc:
        if exc.is_not_found:
            raise PathNotFoundError(path) from exc
        raise


def _normalize_root(root_directory: str) -> str:
    root = root_directory.strip("/")
    return f"{root}/" if root else ""


class StorageDriver:
    """Storage driver for a content-addressable blob registry."""

    name = "s3"

    def __init__(
        self,
        client: ObjectStoreClient,
        *,
        bucket: str,
        policy: ChunkSizePolicy,
        root_directory: str = "",
        presign_expires_in: int = DEFAULT_PRESIGN_EXPIRES_SECONDS,
        list_page_size: int = MAX_LIST_PAGE_SIZE,
        pool: PartBufferPool | None = None,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._policy = policy
        self._root = _normalize_root(root_directory)
        self._presign_expires_in = presign_expires_in
        self._pool = pool or PartBufferPool(policy.chunk_size)
        self._resolver = UploadSessionResolver(
            client, bucket=bucket, page_size=list_page_size
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def policy(self) -> ChunkSizePolicy:
        return self._policy

    def _key(self, path: str) -> str:
        return self._root + path.lstrip("/")

    def _dir_prefix(self, path: str) -> str:
        key = self._key(path)
        if not key or key.endswith("/"):
            return key
        return key + "/"

    def _path(self, key: str) -> str:
        return "/" + key[len(self._root) :]

    def get_content(self, path: str) -> bytes:
        """Return the whole content stored at ``path``."""
        with _not_found_as_path(path):
            body = self._client.get_object(
                bucket=self._bucket, object_key=self._key(path)
            )
        with closing(body):
            return body.read()

    def put_content(self, path: str, content: bytes) -> None:
        """Store ``content`` at ``path`` in a single request."""
        self._client.put_object(
            bucket=self._bucket,
            object_key=self._key(path),
            body=content,
            content_type=DEFAULT_CONTENT_TYPE,
        )

    def reader(self, path: str, offset: int = 0) -> BinaryIO:
        """Open a stream on the content at ``path`` starting at ``offset``.

        Reading at or past the end of the object yields an empty stream.
        """
        if offset < 0:
            raise InvalidOffsetError(path, offset)
        try:
            return self._client.get_object_range(
                bucket=self._bucket, object_key=self._key(path), start=offset
            )
        except BackendError as exc:
            if exc.status_code == 416 or exc.code == "InvalidRange":
                return io.BytesIO()
            if exc.is_not_found:
                raise PathNotFoundError(path) from exc
            raise

    def writer(self, path: str, *, append: bool = False) -> MultipartWriter:
        """Return a writer storing data at ``path`` once committed.

        With ``append`` the in-flight upload left behind by a closed writer
        is resumed; ``PathNotFoundError`` is raised when there is none.
        """
        try:
            session, parts = self._resolver.open(self._key(path), append=append)
        except PathNotFoundError as exc:
            raise PathNotFoundError(path) from exc
        return MultipartWriter(
            self._client,
            session,
            parts,
            policy=self._policy,
            pool=self._pool,
        )

    def stat(self, path: str) -> FileInfo:
        """Describe the object or directory at ``path``."""
        key = self._key(path)
        if key and not key.endswith("/"):
            try:
                head = self._client.head_object(bucket=self._bucket, object_key=key)
            except BackendError as exc:
                if not exc.is_not_found:
                    raise
            else:
                return FileInfo(
                    path=path,
                    size_bytes=head.size_bytes,
                    mod_time=head.last_modified,
                    is_dir=False,
                )

        listing = self._client.list_objects(
            bucket=self._bucket, prefix=self._dir_prefix(path), max_keys=1
        )
        if listing.objects:
            return FileInfo(path=path, size_bytes=0, mod_time=None, is_dir=True)
        raise PathNotFoundError(path)

    def list(self, path: str) -> list[str]:
        """Paths of the direct children of ``path``, files first."""
        listing = self._client.list_objects(
            bucket=self._bucket, prefix=self._dir_prefix(path), delimiter="/"
        )
        files = [self._path(item.object_key) for item in listing.objects]
        directories = [
            self._path(prefix.rstrip("/")) for prefix in listing.common_prefixes
        ]
        return files + directories

    def move(self, source_path: str, dest_path: str) -> None:
        """Move an object by copying it server side and deleting the source."""
        source_key = self._key(source_path)
        with _not_found_as_path(source_path):
            self._client.copy_object(
                bucket=self._bucket,
                source_key=source_key,
                dest_key=self._key(dest_path),
            )
        self._client.delete_object(bucket=self._bucket, object_key=source_key)

    def delete(self, path: str) -> None:
        """Recursively delete the object at ``path`` and everything below it."""
        key = self._key(path)
        subtree = self._dir_prefix(path)
        listing = self._client.list_objects(bucket=self._bucket, prefix=key)
        keys = [
            item.object_key
            for item in listing.objects
            if item.object_key == key or item.object_key.startswith(subtree)
        ]
        if not keys:
            raise PathNotFoundError(path)
        self._client.delete_objects(bucket=self._bucket, object_keys=keys)
        logger.info("storage_deleted path=%s objects=%s", path, len(keys))

    def url_for(
        self,
        path: str,
        *,
        method: str = "GET",
        expires_in: int | None = None,
    ) -> str:
        """Presigned URL for reading ``path`` directly from the store."""
        method = method.upper()
        if method not in URL_METHODS:
            raise UnsupportedMethodError(method)
        return self._client.presign_download(
            bucket=self._bucket,
            object_key=self._key(path),
            expires_in=(
                self._presign_expires_in if expires_in is None else int(expires_in)
            ),
            method=method,
        )

    def abort_uploads(
        self,
        prefix: str = "/",
        *,
        older_than: timedelta | None = None,
        dry_run: bool = False,
    ) -> list[InFlightUpload]:
        """Abort in-flight uploads under ``prefix``.

        Uploads of unknown age are kept when ``older_than`` is given.
        Returns the uploads aborted (or that would be, with ``dry_run``).
        """
        key_prefix = self._key(prefix)
        threshold = (
            datetime.now(timezone.utc) - older_than if older_than is not None else None
        )
        stale = [
            upload
            for upload in self._resolver.iter_uploads(key_prefix)
            if upload.object_key.startswith(key_prefix)
            and (
                threshold is None
                or (upload.initiated is not None and upload.initiated <= threshold)
            )
        ]
        if dry_run:
            return stale

        for upload in stale:
            self._client.abort_multipart_upload(
                bucket=self._bucket,
                object_key=upload.object_key,
                upload_id=upload.upload_id,
            )
            logger.info(
                "multipart_stale_aborted key=%s upload_id=%s initiated=%s",
                upload.object_key,
                upload.upload_id,
                upload.initiated,
            )
        return stale


def build_driver(
    settings: Settings | None = None,
    *,
    client: ObjectStoreClient | None = None,
) -> StorageDriver:
    """Build a StorageDriver from settings.

    Raises:
        StorageBackendNotConfiguredError: If the bucket or credentials are
            incompletely configured.
    """
    settings = settings or get_settings()
    if not settings.S3_BUCKET:
        raise StorageBackendNotConfiguredError("S3_BUCKET is required")
    if bool(settings.S3_ACCESS_KEY_ID) != bool(settings.S3_SECRET_ACCESS_KEY):
        raise StorageBackendNotConfiguredError(
            "S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY must be set together"
        )

    policy = ChunkSizePolicy(
        min_chunk_size=MIN_CHUNK_SIZE,
        chunk_size=int(settings.STORAGE_CHUNK_SIZE_BYTES),
    )
    return StorageDriver(
        client or S3ObjectStoreClient(settings=settings),
        bucket=settings.S3_BUCKET,
        policy=policy,
        root_directory=settings.S3_ROOT_DIRECTORY,
        presign_expires_in=int(settings.STORAGE_PRESIGN_EXPIRES_SECONDS),
        list_page_size=int(settings.STORAGE_LIST_PAGE_SIZE),
        pool=PartBufferPool(
            policy.chunk_size, max_idle=settings.STORAGE_POOL_MAX_IDLE
        ),
    )
