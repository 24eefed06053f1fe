from .buffer_pool import PartBufferPool
from .driver import FileInfo, StorageDriver, build_driver
from .errors import (
    DriverError,
    InvalidOffsetError,
    PathNotFoundError,
    StorageBackendNotConfiguredError,
    UnsupportedMethodError,
    WriterCancelledError,
    WriterClosedError,
    WriterCommittedError,
    WriterStateError,
)
from .resolver import UploadSessionResolver
from .writer import ChunkSizePolicy, MultipartWriter, RepairState, WriterState

__all__ = [
    "StorageDriver",
    "FileInfo",
    "build_driver",
    "MultipartWriter",
    "ChunkSizePolicy",
    "WriterState",
    "RepairState",
    "UploadSessionResolver",
    "PartBufferPool",
    "DriverError",
    "PathNotFoundError",
    "InvalidOffsetError",
    "UnsupportedMethodError",
    "StorageBackendNotConfiguredError",
    "WriterStateError",
    "WriterClosedError",
    "WriterCommittedError",
    "WriterCancelledError",
]
