"""Demultiplexing of the runtime's combined stdout/stderr log stream.

Each frame is an 8-byte header (stream type, three reserved bytes, a
big-endian payload length) followed by the payload. Frames are copied to
the sink one at a time, prefixed, without added framing.
"""

from __future__ import annotations

import logging
import struct
from threading import Thread
from typing import Any, Iterable, Optional

from .interface import CancelContext, LogSink, SourceHandoff

logger = logging.getLogger(__name__)

FRAME_HEADER = struct.Struct(">BxxxI")

STREAM_STDERR = 2

BOLD = b"\x1b[1m"
RESET = b"\x1b[0m"

_COPY_CHUNK = 32 * 1024


def _read_exact(src: Any, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = src.read(size - len(buf))
        if not chunk:
            raise EOFError(f"short read: wanted {size} bytes, got {len(buf)}")
        buf.extend(chunk)
    return bytes(buf)


def _copy_exact(dst: LogSink, src: Any, size: int) -> None:
    remaining = size
    while remaining > 0:
        chunk = src.read(min(remaining, _COPY_CHUNK))
        if not chunk:
            raise EOFError(f"frame truncated with {remaining} bytes left")
        dst.write(chunk)
        remaining -= len(chunk)


def copy_frames(dst: LogSink, src: Any, prefix: bytes, bold_stderr: bool = False) -> int:
    """Copy frames from src to dst until src fails or ends.

    Returns the number of complete frames copied.
    """
    frames = 0
    while True:
        try:
            header = _read_exact(src, FRAME_HEADER.size)
        except Exception as exc:
            # Any read failure ends this source, never the relay thread
            logger.debug("log source ended: %s", exc)
            return frames
        stream_type, length = FRAME_HEADER.unpack(header)
        emphasize = bold_stderr and stream_type == STREAM_STDERR
        try:
            written = dst.write(prefix)
            if written is not None and written != len(prefix):
                return frames
            if emphasize:
                dst.write(BOLD)
            _copy_exact(dst, src, length)
            if emphasize:
                dst.write(RESET)
        except Exception as exc:
            logger.debug("abandoning log source after copy failure: %s", exc)
            return frames
        frames += 1


def copy_streams(dst: LogSink, sources: Iterable[Any], prefix: str, bold_stderr: bool = False) -> None:
    """Copy each source in turn to dst; returns once sources is exhausted."""
    raw_prefix = prefix.encode("utf-8")
    for src in sources:
        copy_frames(dst, src, raw_prefix, bold_stderr=bold_stderr)


class LogMultiplexer:
    """Background thread feeding log sources, one at a time, into a sink."""

    def __init__(
        self,
        sink: LogSink,
        prefix: str,
        *,
        bold_stderr: bool = False,
        name: str = "cflocal-log-mux",
    ) -> None:
        self._handoff = SourceHandoff()
        self._thread = Thread(
            target=copy_streams,
            args=(sink, self._handoff, prefix, bold_stderr),
            name=name,
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def deliver(self, source: Any, ctx: Optional[CancelContext] = None) -> None:
        """Hand over the next source; blocks until the previous one has ended."""
        self._handoff.deliver(source, ctx)

    def close(self) -> None:
        """No more sources; the thread exits once the current one ends."""
        self._handoff.close()

    def join(self, timeout: Optional[float] = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()
