from __future__ import annotations

import io
import logging
from queue import Empty, Full, Queue
from threading import Event, Lock, Thread
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

# Exit status reported by Container.start() when the caller stopped it.
EXIT_STATUS_CANCELLED = 128

CANCELLED_MESSAGE = "context canceled"


class ContainerError(RuntimeError):
    """Base class for container runtime failures surfaced to callers."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.__cause__ = cause


class CreationError(ContainerError):
    """The runtime refused to create the container."""


class RuntimeCallError(ContainerError):
    """A blocking runtime call failed for a reason other than cancellation."""


class ArchiveEntryNotFound(ContainerError):
    """The requested path was absent from a copy-out archive."""


class StreamIOError(ContainerError):
    """Read or write failure while copying logs or archive data."""


class CancelledError(Exception):
    """A runtime call was abandoned because its CancelContext was cancelled."""

    def __init__(self, message: str = CANCELLED_MESSAGE) -> None:
        super().__init__(message)


def is_cancelled(exc: Optional[BaseException]) -> bool:
    """True if exc represents cancellation rather than a real failure."""
    if exc is None:
        return False
    if isinstance(exc, CancelledError):
        return True
    return str(exc).endswith(CANCELLED_MESSAGE)


class Stream:
    """A readable resource and its declared size.

    Whoever receives a Stream owns it and must close it. Closing is
    idempotent: only the first call reaches the underlying reader.
    """

    def __init__(self, reader: Any, size: int) -> None:
        self.reader = reader
        self.size = size
        self._closed = False
        self._lock = Lock()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Stream":
        return cls(io.BytesIO(data), len(data))

    def read(self, size: int = -1) -> bytes:
        return self.reader.read(size)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        close = getattr(self.reader, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "Stream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class CancelContext:
    """Shared cancellation for every runtime call made during one start().

    Blocking calls are executed through run() on a helper thread so that
    cancel() can abandon them. Callbacks registered with on_cancel() run
    exactly once, on the cancelling thread.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._event = Event()
        self._lock = Lock()
        self._callbacks: List[Callable[[], Any]] = []
        self._poll_interval = poll_interval

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.debug("cancel callback %r failed: %s", callback, exc)

    def on_cancel(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError()

    def run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call func on a helper thread, raising CancelledError if cancelled first."""
        self.raise_if_cancelled()
        done = Event()
        outcome: Dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["value"] = func(*args, **kwargs)
            except BaseException as exc:
                outcome["error"] = exc
            finally:
                done.set()

        name = getattr(func, "__name__", "call")
        Thread(target=target, name=f"cflocal-call-{name}", daemon=True).start()
        while not done.wait(self._poll_interval):
            if self._event.is_set():
                raise CancelledError()
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value")


class SourceHandoff:
    """Capacity-zero handoff of log sources to a single consumer.

    deliver() returns only after the consumer has taken the source, and the
    consumer only takes the next source once it is done with the current
    one. That pairing is what keeps at most one source active.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queue: "Queue[Tuple[Any, Event]]" = Queue(maxsize=1)
        self._closed = Event()
        self._poll_interval = poll_interval

    def deliver(self, source: Any, ctx: Optional[CancelContext] = None) -> None:
        accepted = Event()
        while True:
            if ctx is not None:
                ctx.raise_if_cancelled()
            try:
                self._queue.put((source, accepted), timeout=self._poll_interval)
                break
            except Full:
                continue
        while not accepted.wait(self._poll_interval):
            if ctx is not None and ctx.cancelled:
                raise CancelledError()

    def close(self) -> None:
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                source, accepted = self._queue.get(timeout=self._poll_interval)
            except Empty:
                if self._closed.is_set():
                    return
                continue
            accepted.set()
            yield source


class LogSink(Protocol):
    """Destination for prefixed container output."""

    def write(self, data: bytes) -> Optional[int]:  # pragma: no cover - protocol
        ...


class ContainerRuntime(Protocol):
    """Container runtime operations driven by the engine.

    Implementations translate their client library's failures into the
    ContainerError hierarchy. All calls block; cancellation is applied by
    the caller through CancelContext.
    """

    def create(
        self,
        config: Mapping[str, Any],
        host_config: Mapping[str, Any],
        name: str,
    ) -> str:  # pragma: no cover - protocol
        """Create a container and return its id. Raises CreationError."""
        ...

    def remove(self, container_id: str, force: bool = True) -> None:  # pragma: no cover - protocol
        """Remove a container; an already-removed container is not an error."""
        ...

    def start(self, container_id: str) -> None:  # pragma: no cover - protocol
        ...

    def wait(self, container_id: str) -> int:  # pragma: no cover - protocol
        """Block until the container exits and return its exit status."""
        ...

    def logs(self, container_id: str, since: Optional[str] = None) -> BinaryIO:  # pragma: no cover - protocol
        """Open a followed, timestamped, multiplexed stdout/stderr stream."""
        ...

    def restart(self, container_id: str, timeout: int) -> None:  # pragma: no cover - protocol
        ...

    def inspect(self, container_id: str) -> Dict[str, Any]:  # pragma: no cover - protocol
        ...

    def put_archive(self, container_id: str, path: str, data: BinaryIO) -> None:  # pragma: no cover - protocol
        """Extract a tar archive at path inside the container."""
        ...

    def get_archive(self, container_id: str, path: str) -> Tuple[BinaryIO, Dict[str, Any]]:  # pragma: no cover - protocol
        """Return a tar stream of path and its file-stat metadata."""
        ...

    def commit(
        self,
        container_id: str,
        ref: str,
        *,
        author: str,
        pause: bool,
        config: Mapping[str, Any],
    ) -> str:  # pragma: no cover - protocol
        """Snapshot the container as image ref and return the image id."""
        ...


class InMemoryLogSink:
    """Simple bytes-accumulating sink useful for tests and bootstrap wiring."""

    def __init__(self) -> None:
        self._data = bytearray()
        self._lock = Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self._data.extend(data)
        return len(data)

    @property
    def data(self) -> bytes:
        with self._lock:
            return bytes(self._data)

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")
