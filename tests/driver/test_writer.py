"""Tests for MultipartWriter."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from blobdriver.driver.buffer_pool import PartBufferPool
from blobdriver.driver.errors import (
    WriterCancelledError,
    WriterClosedError,
    WriterCommittedError,
    WriterStateError,
)
from blobdriver.driver.writer import (
    ChunkSizePolicy,
    MultipartWriter,
    RepairState,
    WriterState,
)
from blobdriver.infra.storage.client import BackendError, TransportError

KEY = "docker/registry/v2/blobs/data"


def _payload(size: int, offset: int = 0) -> bytes:
    return bytes((offset + i) % 251 for i in range(size))


def _new_writer(store, resolver, policy, pool, *, append: bool = False):
    session, parts = resolver.open(KEY, append=append)
    return MultipartWriter(store, session, parts, policy=policy, pool=pool)


def _completed_sizes(store) -> list[int]:
    (complete,) = store.called("complete_multipart_upload")
    return [part.size_bytes for part in complete["parts"]]


def _method_names(store) -> list[str]:
    return [name for name, _ in store.calls]


def _repairs(mode: str) -> float:
    value = REGISTRY.get_sample_value(
        "storage_session_repairs_total", {"mode": mode}
    )
    return value or 0.0


class TestChunkSizePolicy:
    def test_rejects_chunk_size_below_floor(self):
        with pytest.raises(ValueError, match="chunk_size"):
            ChunkSizePolicy(min_chunk_size=10, chunk_size=9)

    def test_rejects_non_positive_floor(self):
        with pytest.raises(ValueError, match="min_chunk_size"):
            ChunkSizePolicy(min_chunk_size=0, chunk_size=10)

    def test_pool_capacity_must_match_chunk_size(self, store, resolver, policy):
        session, parts = resolver.open(KEY, append=False)
        with pytest.raises(ValueError, match="capacity"):
            MultipartWriter(
                store, session, parts, policy=policy, pool=PartBufferPool(11)
            )


class TestChunking:
    def test_single_write_folds_remainder_into_last_part(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)
        data = _payload(25)

        assert writer.write(data) == 25
        writer.commit()

        # The 5 byte tail rides along with the previous full chunk.
        assert _completed_sizes(store) == [10, 15]
        assert store.objects[KEY] == data

    def test_small_write_commits_single_part(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)

        writer.write(b"hello")
        writer.commit()

        assert _completed_sizes(store) == [5]
        assert store.objects[KEY] == b"hello"

    def test_no_part_uploaded_until_pending_buffer_fills(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)

        writer.write(_payload(19))
        assert store.called("upload_part") == []

        writer.write(_payload(1))
        assert [c["size"] for c in store.called("upload_part")] == [10]

    @pytest.mark.parametrize("step", [1, 3, 7, 10, 13, 47])
    def test_part_sizes_independent_of_write_boundaries(
        self, store, resolver, policy, pool, step
    ):
        writer = _new_writer(store, resolver, policy, pool)
        data = _payload(47)

        for start in range(0, len(data), step):
            writer.write(data[start : start + step])
        writer.commit()

        assert _completed_sizes(store) == [10, 10, 10, 17]
        assert store.objects[KEY] == data

    def test_larger_chunk_size(self, store, resolver):
        policy = ChunkSizePolicy(min_chunk_size=10, chunk_size=20)
        writer = _new_writer(store, resolver, policy, PartBufferPool(20))

        writer.write(_payload(45))
        writer.commit()

        assert _completed_sizes(store) == [20, 25]

    def test_accepts_bytearray_and_memoryview(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)

        writer.write(bytearray(b"abcde"))
        writer.write(memoryview(b"fghij"))
        writer.commit()

        assert store.objects[KEY] == b"abcdefghij"

    def test_committed_parts_are_contiguous_and_above_floor(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)
        for size in (4, 9, 17, 1, 30, 2):
            writer.write(_payload(size))
        writer.commit()

        (complete,) = store.called("complete_multipart_upload")
        numbers = [part.part_number for part in complete["parts"]]
        sizes = [part.size_bytes for part in complete["parts"]]
        assert numbers == list(range(1, len(numbers) + 1))
        assert all(size >= policy.min_chunk_size for size in sizes[:-1])
        assert sum(sizes) == writer.size == 63


class TestSizeAccounting:
    def test_size_tracks_bytes_written(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)

        for size in (3, 12, 0, 8):
            writer.write(_payload(size))

        assert writer.size == 23

    def test_size_counts_consumed_bytes_when_flush_fails(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)
        store.fail("upload_part", TransportError("connection reset"))

        with pytest.raises(TransportError):
            writer.write(_payload(20))

        assert writer.size == 20
        assert writer.parts == ()

    def test_failed_flush_is_retried_by_next_write(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)
        data = _payload(25)
        store.fail("upload_part", TransportError("connection reset"))

        with pytest.raises(TransportError):
            writer.write(data[:20])
        assert writer.write(data[20:]) == 5
        writer.commit()

        assert writer.size == 25
        assert _completed_sizes(store) == [10, 15]
        assert store.objects[KEY] == data

    def test_empty_write_is_a_noop(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)
        store.calls.clear()

        assert writer.write(b"") == 0
        assert writer.size == 0
        assert store.calls == []


class TestTerminalStates:
    def test_cancel_aborts_without_completing(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)
        writer.write(_payload(10))

        writer.cancel()

        assert store.called("complete_multipart_upload") == []
        (abort,) = store.called("abort_multipart_upload")
        assert abort["upload_id"] == writer.session.upload_id
        assert store.called("upload_part") == []
        with pytest.raises(WriterCancelledError):
            writer.write(b"x")

    def test_cancel_surfaces_abort_failure(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)
        store.fail("abort_multipart_upload", TransportError("timed out"))

        with pytest.raises(TransportError):
            writer.cancel()

        assert writer.cancelled

    def test_close_flushes_without_completing(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)
        writer.write(_payload(25))

        writer.close()

        assert [c["size"] for c in store.called("upload_part")] == [10, 15]
        assert store.called("complete_multipart_upload") == []
        assert store.called("abort_multipart_upload") == []
        assert store.in_flight() == [writer.session.upload_id]

    @pytest.mark.parametrize(
        ("finish", "error"),
        [
            ("close", WriterClosedError),
            ("commit", WriterCommittedError),
            ("cancel", WriterCancelledError),
        ],
    )
    def test_every_operation_fails_after_terminal_state(
        self, store, resolver, policy, pool, finish, error
    ):
        writer = _new_writer(store, resolver, policy, pool)
        writer.write(b"abc")
        getattr(writer, finish)()
        store.calls.clear()

        for operation in ("close", "commit", "cancel"):
            with pytest.raises(error):
                getattr(writer, operation)()
        with pytest.raises(WriterStateError):
            writer.write(b"more")

        assert store.calls == []
        assert writer.size == 3
        flags = [writer.closed, writer.committed, writer.cancelled]
        assert flags.count(True) == 1

    def test_commit_failure_aborts_and_raises_completion_error(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)
        writer.write(_payload(12))
        failure = BackendError("InvalidPart", status_code=400, code="InvalidPart")
        store.fail("complete_multipart_upload", failure)

        with pytest.raises(BackendError) as excinfo:
            writer.commit()

        assert excinfo.value is failure
        assert len(store.called("abort_multipart_upload")) == 1
        assert writer.state is WriterState.COMMITTED

    def test_abort_failure_does_not_mask_completion_error(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)
        writer.write(_payload(12))
        failure = BackendError("InvalidPart", status_code=400, code="InvalidPart")
        store.fail("complete_multipart_upload", failure)
        store.fail("abort_multipart_upload", TransportError("timed out"))

        with pytest.raises(BackendError) as excinfo:
            writer.commit()

        assert excinfo.value is failure

    def test_commit_flush_failure_keeps_writer_open(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)
        writer.write(b"hello")
        store.fail("upload_part", TransportError("connection reset"))

        with pytest.raises(TransportError):
            writer.commit()
        assert writer.state is WriterState.OPEN

        writer.commit()
        assert store.objects[KEY] == b"hello"

    def test_commit_without_data_creates_empty_object(
        self, store, resolver, policy, pool
    ):
        writer = _new_writer(store, resolver, policy, pool)

        writer.commit()

        assert _completed_sizes(store) == [0]
        assert store.objects[KEY] == b""

    def test_buffers_return_to_pool_zeroed(self, store, resolver, policy, pool):
        writer = _new_writer(store, resolver, policy, pool)
        writer.write(_payload(15, offset=1))

        writer.commit()

        assert pool.idle_count == 2
        buf = pool.acquire()
        assert buf == bytearray(policy.chunk_size)


class TestResume:
    def test_resume_after_close_appends_parts(self, store, resolver, policy, pool):
        first = _new_writer(store, resolver, policy, pool)
        head = _payload(25)
        first.write(head)
        first.close()

        resumed = _new_writer(store, resolver, policy, pool, append=True)
        assert resumed.size == 25
        assert resumed.session.upload_id == first.session.upload_id
        assert resumed.repair_state is RepairState.NOT_NEEDED

        resumed.write(b"tail!")
        resumed.commit()

        assert _completed_sizes(store) == [10, 15, 5]
        assert store.objects[KEY] == head + b"tail!"

    def test_undersized_small_object_is_refetched(
        self, store, resolver, policy, pool
    ):
        old_upload = store.start_upload(KEY, [b"abc"])
        writer = _new_writer(store, resolver, policy, pool, append=True)
        assert writer.repair_state is RepairState.REQUIRED
        assert writer.size == 3
        store.calls.clear()
        before = _repairs("refetch")

        writer.write(b"defgh")

        assert _method_names(store) == [
            "complete_multipart_upload",
            "init_multipart_upload",
            "get_object",
        ]
        assert store.called("complete_multipart_upload")[0]["upload_id"] == old_upload
        assert writer.session.upload_id != old_upload
        assert writer.parts == ()
        assert writer.repair_state is RepairState.DONE
        assert _repairs("refetch") == before + 1

        writer.commit()
        assert store.objects[KEY] == b"abcdefgh"
        assert writer.size == 8

    def test_undersized_large_object_is_copied_into_first_part(
        self, store, resolver, policy, pool
    ):
        head = _payload(14)
        store.start_upload(KEY, [head[:10], head[10:]])
        writer = _new_writer(store, resolver, policy, pool, append=True)
        store.calls.clear()

        writer.write(b"012345")

        assert _method_names(store) == [
            "complete_multipart_upload",
            "init_multipart_upload",
            "upload_part_copy",
        ]
        assert [part.size_bytes for part in writer.parts] == [14]
        assert [part.part_number for part in writer.parts] == [1]

        writer.write(b"6789")
        writer.commit()

        assert len(store.called("complete_multipart_upload")) == 2
        assert _completed_sizes_last(store) == [14, 10]
        assert store.objects[KEY] == head + b"0123456789"
        assert writer.size == 24

    def test_repair_happens_once(self, store, resolver, policy, pool):
        store.start_upload(KEY, [b"abc"])
        writer = _new_writer(store, resolver, policy, pool, append=True)

        for _ in range(5):
            writer.write(_payload(7))
        writer.commit()

        assert len(store.called("init_multipart_upload")) == 1
        assert len(store.called("complete_multipart_upload")) == 2
        assert writer.size == 38

    def test_repair_completion_failure_aborts_old_session(
        self, store, resolver, policy, pool
    ):
        old_upload = store.start_upload(KEY, [b"abc"])
        writer = _new_writer(store, resolver, policy, pool, append=True)
        store.fail(
            "complete_multipart_upload",
            BackendError("InternalError", status_code=500, code="InternalError"),
        )

        with pytest.raises(BackendError):
            writer.write(b"more")

        (abort,) = store.called("abort_multipart_upload")
        assert abort["upload_id"] == old_upload
        assert store.called("init_multipart_upload") == []
        assert writer.size == 3

    def test_refetch_failure_aborts_new_session_and_can_be_retried(
        self, store, resolver, policy, pool
    ):
        old_upload = store.start_upload(KEY, [b"abc"])
        writer = _new_writer(store, resolver, policy, pool, append=True)
        store.fail("get_object", TransportError("connection reset"))

        with pytest.raises(TransportError):
            writer.write(b"defgh")

        assert writer.size == 3
        assert writer.session.upload_id == old_upload
        assert writer.repair_state is RepairState.REQUIRED
        # old session completed, replacement aborted
        assert store.in_flight() == []
        assert store.objects[KEY] == b"abc"

        assert writer.write(b"defgh") == 5
        writer.commit()

        old_completions = [
            c
            for c in store.called("complete_multipart_upload")
            if c["upload_id"] == old_upload
        ]
        assert len(old_completions) == 1
        assert writer.repair_state is RepairState.DONE
        assert store.objects[KEY] == b"abcdefgh"
        assert writer.size == 8

    def test_copy_failure_aborts_new_session_and_can_be_retried(
        self, store, resolver, policy, pool
    ):
        head = _payload(14)
        store.start_upload(KEY, [head[:10], head[10:]])
        writer = _new_writer(store, resolver, policy, pool, append=True)
        store.fail(
            "upload_part_copy",
            BackendError("SlowDown", status_code=503, code="SlowDown"),
        )

        with pytest.raises(BackendError):
            writer.write(b"0123456789")

        assert writer.size == 14
        assert [part.size_bytes for part in writer.parts] == [10, 4]
        (abort,) = store.called("abort_multipart_upload")
        assert abort["upload_id"] != writer.session.upload_id
        assert store.in_flight() == []

        writer.write(b"0123456789")
        writer.commit()

        assert _completed_sizes_last(store) == [14, 10]
        assert store.objects[KEY] == head + b"0123456789"
        assert writer.size == 24

    def test_initiate_failure_then_commit_keeps_completed_object(
        self, store, resolver, policy, pool
    ):
        store.start_upload(KEY, [b"abc"])
        writer = _new_writer(store, resolver, policy, pool, append=True)
        store.fail("init_multipart_upload", TransportError("timed out"))

        with pytest.raises(TransportError):
            writer.write(b"defgh")

        assert writer.size == 3
        assert store.called("abort_multipart_upload") == []

        writer.commit()

        assert writer.committed
        assert len(store.called("complete_multipart_upload")) == 1
        assert store.objects[KEY] == b"abc"

    def test_cancel_after_failed_repair_keeps_completed_object(
        self, store, resolver, policy, pool
    ):
        store.start_upload(KEY, [b"abc"])
        writer = _new_writer(store, resolver, policy, pool, append=True)
        store.fail("init_multipart_upload", TransportError("timed out"))
        with pytest.raises(TransportError):
            writer.write(b"defgh")

        writer.cancel()

        assert writer.cancelled
        assert store.called("abort_multipart_upload") == []
        assert store.objects[KEY] == b"abc"

    def test_commit_without_writes_skips_repair(self, store, resolver, policy, pool):
        old_upload = store.start_upload(KEY, [b"abc"])
        writer = _new_writer(store, resolver, policy, pool, append=True)

        writer.commit()

        assert store.called("init_multipart_upload") == []
        assert store.called("complete_multipart_upload")[0]["upload_id"] == old_upload
        assert store.objects[KEY] == b"abc"


def _completed_sizes_last(store) -> list[int]:
    complete = store.called("complete_multipart_upload")[-1]
    return [part.size_bytes for part in complete["parts"]]
