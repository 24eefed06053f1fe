from __future__ import annotations


class DriverError(Exception):
    """Base class for storage driver level exceptions."""


class StorageBackendNotConfiguredError(DriverError):
    """Raised when the storage backend is not properly configured."""


class PathNotFoundError(DriverError):
    """Raised when nothing is stored at the requested path."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Path not found: {path}")
        self.path = path


class InvalidOffsetError(DriverError):
    """Raised when a read is requested at an invalid offset."""

    def __init__(self, path: str, offset: int) -> None:
        super().__init__(f"Invalid offset {offset} for path: {path}")
        self.path = path
        self.offset = offset


class UnsupportedMethodError(DriverError):
    """Raised when a URL is requested for an HTTP method the driver cannot sign."""

    def __init__(self, method: str) -> None:
        super().__init__(f"Unsupported method: {method}")
        self.method = method


class WriterStateError(DriverError):
    """Raised when a writer is used after reaching a terminal state."""


class WriterClosedError(WriterStateError):
    def __init__(self) -> None:
        super().__init__("already closed")


class WriterCommittedError(WriterStateError):
    def __init__(self) -> None:
        super().__init__("already committed")


class WriterCancelledError(WriterStateError):
    def __init__(self) -> None:
        super().__init__("already cancelled")
