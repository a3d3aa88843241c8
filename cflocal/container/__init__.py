from .engine import Container
from .interface import (
    EXIT_STATUS_CANCELLED,
    ArchiveEntryNotFound,
    CancelContext,
    CancelledError,
    ContainerError,
    ContainerRuntime,
    CreationError,
    InMemoryLogSink,
    LogSink,
    RuntimeCallError,
    Stream,
    StreamIOError,
)

__all__ = [
    "EXIT_STATUS_CANCELLED",
    "ArchiveEntryNotFound",
    "CancelContext",
    "CancelledError",
    "Container",
    "ContainerError",
    "ContainerRuntime",
    "CreationError",
    "InMemoryLogSink",
    "LogSink",
    "RuntimeCallError",
    "Stream",
    "StreamIOError",
]
