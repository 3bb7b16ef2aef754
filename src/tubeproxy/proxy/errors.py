"""Failures raised while acquiring or storing content."""

from __future__ import annotations


class FetchError(RuntimeError):
    """Base class for failures that turn a cache miss into a not-found response."""

    kind = "fetch_failed"

    def __init__(self, identifier: str, message: str) -> None:
        super().__init__(message)
        self.identifier = identifier


class ToolUnavailable(FetchError):
    """The external downloader process could not be started."""

    kind = "tool_unavailable"


class TransferFailed(FetchError):
    """The download stream broke or exceeded the size limit."""

    kind = "transfer_failed"

    def __init__(self, identifier: str, message: str, *, bytes_read: int = 0) -> None:
        super().__init__(identifier, message)
        self.bytes_read = bytes_read


class StorageFailed(FetchError):
    """The downloaded content could not be written to the cache directory."""

    kind = "storage_failed"
