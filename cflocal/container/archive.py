"""Single-file tar helpers used to move data into and out of containers."""

from __future__ import annotations

import io
import logging
import tarfile
import time
from typing import Any, BinaryIO

from .interface import ArchiveEntryNotFound, StreamIOError

logger = logging.getLogger(__name__)


def tar_file(path: str, reader: Any, size: int, mode: int) -> BinaryIO:
    """Wrap reader as the only entry of an in-memory tar archive.

    The entry is named after path with the leading "/" dropped, so the
    archive is meant to be extracted at the container's root.
    """
    info = tarfile.TarInfo(name=path.lstrip("/"))
    info.size = size
    info.mode = mode
    info.mtime = int(time.time())

    archive = io.BytesIO()
    try:
        with tarfile.open(fileobj=archive, mode="w") as tar:
            tar.addfile(info, fileobj=reader)
    except (OSError, tarfile.TarError) as exc:
        raise StreamIOError(f"failed to archive {path}", cause=exc)
    archive.seek(0)
    return archive


def file_from_tar(name: str, archive: BinaryIO) -> BinaryIO:
    """Scan a tar stream for the entry called name and return its reader.

    The archive is read sequentially and never rewound. The returned
    reader is only valid until the archive is advanced or closed.
    """
    try:
        tar = tarfile.open(fileobj=archive, mode="r|")
        for member in tar:
            if member.name == name:
                entry = tar.extractfile(member)
                if entry is None:
                    raise ArchiveEntryNotFound(f"archive entry is not a regular file: {name}")
                return entry
    except tarfile.ReadError as exc:
        if str(exc) == "empty file":
            raise ArchiveEntryNotFound(f"archive entry not found: {name}", cause=exc)
        raise StreamIOError(f"failed to read archive looking for {name}", cause=exc)
    except OSError as exc:
        raise StreamIOError(f"failed to read archive looking for {name}", cause=exc)
    raise ArchiveEntryNotFound(f"archive entry not found: {name}")


class SplitStream:
    """Reads from one object, closes another.

    Used when the readable part is an entry inside an archive whose
    underlying stream must be released on close.
    """

    def __init__(self, reader: Any, closer: Any) -> None:
        self._reader = reader
        self._closer = closer

    def read(self, size: int = -1) -> bytes:
        return self._reader.read(size)

    def close(self) -> None:
        try:
            self._reader.close()
        finally:
            self._closer.close()


class CloseWrapper:
    """Runs an extra cleanup step after the wrapped reader is closed.

    The cleanup always runs, exactly once. If closing the reader fails,
    that error wins and a cleanup failure is only logged.
    """

    def __init__(self, reader: Any, after) -> None:
        self._reader = reader
        self._after = after
        self._done = False

    def read(self, size: int = -1) -> bytes:
        return self._reader.read(size)

    def close(self) -> None:
        if self._done:
            return
        self._done = True
        close = getattr(self._reader, "close", None)
        try:
            if close is not None:
                close()
        except BaseException:
            try:
                self._after()
            except Exception as exc:
                logger.warning("cleanup after stream close failed: %s", exc)
            raise
        self._after()
