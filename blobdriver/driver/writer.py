"""Buffered multipart upload writer.

The writer turns an unbounded stream of ``write`` calls into multipart upload
parts. Two part-sized buffers are kept: ``ready`` holds the next part and
``pending`` holds the one after. A part is only flushed once ``pending`` is
full, so the final flush can fold a short remainder into the previous part
instead of leaving an undersized part in the middle of the upload. Every part
except the last one is therefore at least ``chunk_size`` bytes, and a closed
upload can be resumed later by appending more parts.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from blobdriver.driver.buffer_pool import PartBufferPool
from blobdriver.driver.errors import (
    WriterCancelledError,
    WriterClosedError,
    WriterCommittedError,
)
from blobdriver.infra.observability.metrics import (
    PART_BYTES,
    PARTS_UPLOADED,
    SESSION_REPAIRS,
    WRITERS_FINISHED,
)
from blobdriver.infra.storage.client import (
    DEFAULT_CONTENT_TYPE,
    ObjectStoreClient,
    ProtocolViolationError,
    StorageError,
    UploadedPart,
    UploadSession,
)

logger = logging.getLogger("storage")


@dataclass(frozen=True, slots=True)
class ChunkSizePolicy:
    """Part sizing: the store's floor and the configured target size."""

    min_chunk_size: int
    chunk_size: int

    def __post_init__(self) -> None:
        if self.min_chunk_size <= 0:
            raise ValueError("min_chunk_size must be positive")
        if self.chunk_size < self.min_chunk_size:
            raise ValueError(
                f"chunk_size ({self.chunk_size}) must be larger than or equal to "
                f"min_chunk_size ({self.min_chunk_size})"
            )


class WriterState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


class RepairState(str, Enum):
    """Whether a resumed session must be replaced before new parts are added."""

    NOT_NEEDED = "not_needed"
    REQUIRED = "required"
    DONE = "done"


class _PartBuffer:
    """Fixed-capacity staging area filled front to back."""

    __slots__ = ("storage", "length")

    def __init__(self, storage: bytearray) -> None:
        self.storage = storage
        self.length = 0

    def __len__(self) -> int:
        return self.length

    @property
    def is_full(self) -> bool:
        return self.length >= len(self.storage)

    def fill(self, data: memoryview) -> int:
        count = min(len(self.storage) - self.length, len(data))
        if count:
            self.storage[self.length : self.length + count] = data[:count]
            self.length += count
        return count

    def getvalue(self) -> bytes:
        return bytes(memoryview(self.storage)[: self.length])

    def clear(self) -> None:
        self.length = 0


class _PartSlots:
    """The ready/pending buffer pair borrowed from the pool."""

    def __init__(self, pool: PartBufferPool) -> None:
        self._pool = pool
        self.ready = _PartBuffer(pool.acquire())
        self.pending = _PartBuffer(pool.acquire())

    @property
    def is_empty(self) -> bool:
        return not self.ready.length and not self.pending.length

    def fill(self, data: memoryview) -> int:
        consumed = self.ready.fill(data)
        return consumed + self.pending.fill(data[consumed:])

    def next_part(self) -> tuple[bytes, bool]:
        """Body of the next part, and whether pending was folded into it."""
        if self.pending.is_full:
            return self.ready.getvalue(), False
        return self.ready.getvalue() + self.pending.getvalue(), True

    def shift(self) -> None:
        self.ready, self.pending = self.pending, self.ready
        self.pending.clear()

    def clear(self) -> None:
        self.ready.clear()
        self.pending.clear()

    def release(self) -> None:
        self._pool.release(self.ready.storage)
        self._pool.release(self.pending.storage)


class MultipartWriter:
    """Writes a stream to one object through a multipart upload session.

    Not safe for concurrent use: callers serialize ``write``, ``close``,
    ``commit`` and ``cancel``.
    """

    def __init__(
        self,
        client: ObjectStoreClient,
        session: UploadSession,
        parts: Sequence[UploadedPart] = (),
        *,
        policy: ChunkSizePolicy,
        pool: PartBufferPool,
    ) -> None:
        if pool.capacity != policy.chunk_size:
            raise ValueError("buffer pool capacity must equal the chunk size")
        self._client = client
        self._session = session
        self._parts: list[UploadedPart] = list(parts)
        self._policy = policy
        self._pool = pool
        self._slots: _PartSlots | None = None
        self._size = sum(part.size_bytes for part in self._parts)
        self._state = WriterState.OPEN
        # Set while a repair completed the resumed session but failed later.
        self._source_completed = False
        if self._parts and self._parts[-1].size_bytes < policy.min_chunk_size:
            self._repair = RepairState.REQUIRED
        else:
            self._repair = RepairState.NOT_NEEDED

    @property
    def session(self) -> UploadSession:
        return self._session

    @property
    def parts(self) -> tuple[UploadedPart, ...]:
        return tuple(self._parts)

    @property
    def size(self) -> int:
        """Bytes in the object so far, resumed parts included."""
        return self._size

    @property
    def state(self) -> WriterState:
        return self._state

    @property
    def repair_state(self) -> RepairState:
        return self._repair

    @property
    def closed(self) -> bool:
        return self._state is WriterState.CLOSED

    @property
    def committed(self) -> bool:
        return self._state is WriterState.COMMITTED

    @property
    def cancelled(self) -> bool:
        return self._state is WriterState.CANCELLED

    def write(self, data: bytes | bytearray | memoryview) -> int:
        """Buffer ``data``, flushing parts as the buffers fill up.

        Returns the number of bytes consumed. If a flush fails the exception
        propagates, and ``size`` still accounts for every byte taken in.
        A failed session repair raises before any byte is consumed.
        """
        self._ensure_open()
        view = memoryview(data).cast("B")
        if not len(view):
            return 0

        if self._repair is RepairState.REQUIRED:
            self._replace_session()

        slots = self._ensure_slots()
        consumed = 0
        try:
            while consumed < len(view):
                consumed += slots.fill(view[consumed:])
                if slots.pending.is_full:
                    self._flush_part()
        finally:
            self._size += consumed
        return consumed

    def close(self) -> None:
        """Flush buffered data as parts, leaving the session open for resumption."""
        self._ensure_open()
        self._state = WriterState.CLOSED
        if self._source_completed:
            logger.warning(
                "multipart_close_after_repair key=%s upload_id=%s: "
                "object already completed, nothing left to resume",
                self._session.object_key,
                self._session.upload_id,
            )
        try:
            self._flush_part()
        finally:
            self._release_buffers()
            WRITERS_FINISHED.labels(outcome="closed").inc()

    def commit(self) -> None:
        """Flush buffered data and complete the upload.

        If completion fails the session is aborted and the completion error
        is raised.
        """
        self._ensure_open()
        if self._source_completed:
            # A failed repair already completed the resumed upload and no
            # bytes were accepted since, so the object is whole.
            self._state = WriterState.COMMITTED
            self._release_buffers()
            WRITERS_FINISHED.labels(outcome="committed").inc()
            logger.info(
                "multipart_committed key=%s upload_id=%s parts=%s size=%s",
                self._session.object_key,
                self._session.upload_id,
                len(self._parts),
                self._size,
            )
            return

        self._flush_part()
        if not self._parts:
            # S3 refuses to complete an upload without parts.
            self._upload_part(b"")
        self._state = WriterState.COMMITTED
        self._release_buffers()

        session = self._session
        try:
            etag = self._client.complete_multipart_upload(
                bucket=session.bucket,
                object_key=session.object_key,
                upload_id=session.upload_id,
                parts=self._parts,
            )
        except Exception as exc:
            logger.error(
                "multipart_complete_failed key=%s upload_id=%s parts=%s error=%s",
                session.object_key,
                session.upload_id,
                len(self._parts),
                exc,
            )
            self._abort_quietly(session)
            WRITERS_FINISHED.labels(outcome="commit_failed").inc()
            raise

        WRITERS_FINISHED.labels(outcome="committed").inc()
        logger.info(
            "multipart_committed key=%s upload_id=%s parts=%s size=%s",
            session.object_key,
            session.upload_id,
            len(self._parts),
            self._size,
            extra={
                "extra": {
                    "object_key": session.object_key,
                    "upload_id": session.upload_id,
                    "parts": len(self._parts),
                    "size": self._size,
                    "etag": etag,
                }
            },
        )

    def cancel(self) -> None:
        """Drop buffered data and abort the upload session.

        The writer is cancelled before the abort is sent. If the abort fails
        its error is raised, but the writer stays cancelled and the upload
        is left for ``StorageDriver.abort_uploads`` to clean up.
        """
        self._ensure_open()
        self._state = WriterState.CANCELLED
        self._release_buffers()
        WRITERS_FINISHED.labels(outcome="cancelled").inc()
        if self._source_completed:
            # the resumed upload was completed by a failed repair
            return

        session = self._session
        try:
            self._client.abort_multipart_upload(
                bucket=session.bucket,
                object_key=session.object_key,
                upload_id=session.upload_id,
            )
        except StorageError as exc:
            logger.warning(
                "multipart_abort_failed key=%s upload_id=%s error=%s",
                session.object_key,
                session.upload_id,
                exc,
            )
            raise

    def _ensure_open(self) -> None:
        if self._state is WriterState.CLOSED:
            raise WriterClosedError()
        if self._state is WriterState.COMMITTED:
            raise WriterCommittedError()
        if self._state is WriterState.CANCELLED:
            raise WriterCancelledError()

    def _ensure_slots(self) -> _PartSlots:
        if self._slots is None:
            self._slots = _PartSlots(self._pool)
        return self._slots

    def _release_buffers(self) -> None:
        if self._slots is not None:
            self._slots.release()
            self._slots = None

    def _flush_part(self) -> None:
        slots = self._slots
        if slots is None or slots.is_empty:
            return
        body, merged = slots.next_part()
        self._upload_part(body)
        if merged:
            slots.clear()
        else:
            slots.shift()

    def _upload_part(self, body: bytes) -> None:
        session = self._session
        part = self._client.upload_part(
            bucket=session.bucket,
            object_key=session.object_key,
            upload_id=session.upload_id,
            part_number=len(self._parts) + 1,
            body=body,
        )
        self._parts.append(part)
        PARTS_UPLOADED.inc()
        PART_BYTES.inc(part.size_bytes)

    def _replace_session(self) -> None:
        """Restart a resumed upload whose last part is below the size floor.

        The store cannot append behind an undersized part, so the old session
        is completed and its object becomes the head of a new session: copied
        server side when it meets the floor, re-read into ``ready`` otherwise.

        Writer state only changes once every step succeeded. A failed attempt
        aborts the new session and can be retried by the next ``write``; the
        old session is not completed twice.
        """
        old = self._session
        if not self._source_completed:
            try:
                self._client.complete_multipart_upload(
                    bucket=old.bucket,
                    object_key=old.object_key,
                    upload_id=old.upload_id,
                    parts=self._parts,
                )
            except Exception:
                self._abort_quietly(old)
                raise
            self._source_completed = True

        session = self._client.init_multipart_upload(
            bucket=old.bucket,
            object_key=old.object_key,
            content_type=DEFAULT_CONTENT_TYPE,
        )
        refetch = self._size < self._policy.min_chunk_size
        content = b""
        try:
            if refetch:
                content = self._refetch(old)
                parts: list[UploadedPart] = []
            else:
                parts = [
                    self._client.upload_part_copy(
                        bucket=old.bucket,
                        object_key=old.object_key,
                        upload_id=session.upload_id,
                        part_number=1,
                        source_key=old.object_key,
                    )
                ]
        except Exception:
            self._abort_quietly(session)
            raise

        self._session = session
        self._source_completed = False
        self._parts = parts
        if refetch:
            self._ensure_slots().ready.fill(memoryview(content))
        mode = "refetch" if refetch else "copy"

        self._repair = RepairState.DONE
        SESSION_REPAIRS.labels(mode=mode).inc()
        logger.info(
            "multipart_session_replaced key=%s old_upload_id=%s upload_id=%s mode=%s",
            old.object_key,
            old.upload_id,
            self._session.upload_id,
            mode,
            extra={
                "extra": {
                    "object_key": old.object_key,
                    "old_upload_id": old.upload_id,
                    "upload_id": self._session.upload_id,
                    "mode": mode,
                    "size": self._size,
                }
            },
        )

    def _refetch(self, session: UploadSession) -> bytes:
        with closing(
            self._client.get_object(
                bucket=session.bucket, object_key=session.object_key
            )
        ) as body:
            content = body.read()
        if len(content) != self._size:
            raise ProtocolViolationError(
                f"expected {self._size} bytes for {session.object_key}, "
                f"read {len(content)}"
            )
        return content

    def _abort_quietly(self, session: UploadSession) -> None:
        try:
            self._client.abort_multipart_upload(
                bucket=session.bucket,
                object_key=session.object_key,
                upload_id=session.upload_id,
            )
        except Exception as exc:
            logger.warning(
                "multipart_abort_failed key=%s upload_id=%s error=%s",
                session.object_key,
                session.upload_id,
                exc,
            )
