from __future__ import annotations

import pytest

from blobdriver.common.config import get_settings
from blobdriver.driver.buffer_pool import PartBufferPool
from blobdriver.driver.driver import StorageDriver
from blobdriver.driver.resolver import UploadSessionResolver
from blobdriver.driver.writer import ChunkSizePolicy
from tests.driver.memory_store import MemoryObjectStore

BUCKET = "test-bucket"


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture()
def store() -> MemoryObjectStore:
    return MemoryObjectStore(min_part_size=10)


@pytest.fixture()
def policy() -> ChunkSizePolicy:
    return ChunkSizePolicy(min_chunk_size=10, chunk_size=10)


@pytest.fixture()
def pool(policy) -> PartBufferPool:
    return PartBufferPool(policy.chunk_size)


@pytest.fixture()
def resolver(store) -> UploadSessionResolver:
    return UploadSessionResolver(store, bucket=BUCKET)


@pytest.fixture()
def driver(store, policy, pool) -> StorageDriver:
    return StorageDriver(
        store,
        bucket=BUCKET,
        policy=policy,
        root_directory="registry",
        pool=pool,
    )
