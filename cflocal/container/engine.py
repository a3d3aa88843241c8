from __future__ import annotations

import copy
import logging
import posixpath
import re
import uuid
from datetime import datetime, timedelta, timezone
from queue import Empty, Queue
from threading import Event, Lock, Thread
from typing import Any, BinaryIO, Mapping, Optional

from .. import config as cf_config
from .archive import CloseWrapper, SplitStream, file_from_tar, tar_file
from .interface import (
    EXIT_STATUS_CANCELLED,
    CancelContext,
    CancelledError,
    ContainerError,
    ContainerRuntime,
    LogSink,
    Stream,
    is_cancelled,
)
from .logmux import LogMultiplexer

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp with up to nanosecond precision.

    Fractional seconds beyond microseconds are truncated. Naive values are
    taken as UTC.
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class _LogFeed:
    """The restart loop's view of the source currently feeding the multiplexer."""

    def __init__(self, mux: LogMultiplexer, ctx: CancelContext) -> None:
        self._mux = mux
        self._ctx = ctx
        self._source: Optional[Any] = None
        self._lock = Lock()
        ctx.on_cancel(self.close)

    def push(self, source: Any) -> None:
        with self._lock:
            self._source = source
        if self._ctx.cancelled:
            self.close()
        self._mux.deliver(source, self._ctx)

    def close(self) -> None:
        with self._lock:
            source, self._source = self._source, None
        if source is not None:
            source.close()


class Container:
    """Handle on one runtime container.

    The handle is the only owner of the container; close() force-removes
    it. Set ``exit`` to a threading.Event to be able to stop start() from
    another thread.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        container_id: str,
        config: Mapping[str, Any],
        exit: Optional[Event] = None,
    ) -> None:
        self.runtime = runtime
        self.exit = exit
        self._id = container_id
        self._config = config

    @classmethod
    def create(
        cls,
        runtime: ContainerRuntime,
        config: Mapping[str, Any],
        host_config: Optional[Mapping[str, Any]] = None,
        exit: Optional[Event] = None,
    ) -> "Container":
        """Create a container named after config's Hostname plus a random suffix.

        Raises:
            CreationError: the runtime could not create the container
        """
        retained = copy.deepcopy(dict(config))
        hostname = retained.get("Hostname") or ""
        name = "-".join(part for part in (hostname, str(uuid.uuid4())) if part)
        container_id = runtime.create(retained, dict(host_config or {}), name)
        logger.debug("created container %s (%s)", name, container_id)
        return cls(runtime, container_id, retained, exit=exit)

    @property
    def id(self) -> str:
        return self._id

    @property
    def short_id(self) -> str:
        return self._id[:12]

    @property
    def config(self) -> Mapping[str, Any]:
        return self._config

    # --- teardown ---

    def close(self) -> None:
        """Force-remove the container, running or not."""
        self.runtime.remove(self._id, force=True)
        logger.debug("removed container %s", self.short_id)

    def close_after_stream(self, stream: Optional[Stream]) -> None:
        """Defer close() until stream has been closed by its consumer.

        Without a stream the container is closed immediately.
        """
        if stream is None or stream.reader is None:
            self.close()
            return
        stream.reader = CloseWrapper(stream.reader, after=self.close)

    def __enter__(self) -> "Container":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # --- lifecycle ---

    def start(self, log_prefix: str, logs: LogSink, restart: Optional["Queue[Any]"] = None) -> int:
        """Run the container, relaying its output to logs, until it stops.

        Each item put on ``restart`` restarts the process; the log relay
        follows the new process without interleaving output of the old
        one. Without ``restart`` this returns the process exit status.

        Returns:
            The exit status, or 128 when the exit signal stopped the run.

        Raises:
            RuntimeCallError: the container could not be started or waited on
        """
        ctx = CancelContext()
        done = Event()
        stopping = Event()
        watcher = Thread(
            target=self._watch_exit,
            args=(ctx, done, stopping),
            name=f"cflocal-exit-watcher-{self.short_id}",
            daemon=True,
        )
        watcher.start()
        mux = LogMultiplexer(
            logs,
            log_prefix,
            bold_stderr=cf_config.bold_stderr(),
            name=f"cflocal-log-mux-{self.short_id}",
        )
        mux.start()
        try:
            return self._run(ctx, mux, restart, stopping)
        except (CancelledError, ContainerError) as exc:
            if is_cancelled(exc):
                logger.info("container %s stopped on request", self.short_id)
                return EXIT_STATUS_CANCELLED
            raise
        finally:
            mux.close()
            done.set()
            watcher.join()

    def _watch_exit(self, ctx: CancelContext, done: Event, stopping: Event) -> None:
        poll = cf_config.restart_poll_interval()
        while not done.wait(poll):
            if self._exit_requested():
                stopping.set()
                break
        ctx.cancel()

    def _exit_requested(self) -> bool:
        return self.exit is not None and self.exit.is_set()

    def _run(
        self,
        ctx: CancelContext,
        mux: LogMultiplexer,
        restart: Optional["Queue[Any]"],
        stopping: Event,
    ) -> int:
        ctx.run(self.runtime.start, self._id)
        logger.debug("started container %s", self.short_id)
        feed = _LogFeed(mux, ctx)
        try:
            feed.push(ctx.run(self.runtime.logs, self._id, None))
            if restart is None:
                status = ctx.run(self.runtime.wait, self._id)
                mux.close()
                if not mux.join(cf_config.log_drain_timeout()):
                    logger.debug("log relay for %s still busy after exit", self.short_id)
                logger.info("container %s exited with status %s", self.short_id, status)
                return int(status)
            return self._restart_loop(ctx, feed, restart, stopping)
        finally:
            feed.close()

    def _restart_loop(
        self,
        ctx: CancelContext,
        feed: _LogFeed,
        restart: "Queue[Any]",
        stopping: Event,
    ) -> int:
        poll = cf_config.restart_poll_interval()
        while True:
            if stopping.is_set() or self._exit_requested():
                return EXIT_STATUS_CANCELLED
            try:
                restart.get(timeout=poll)
            except Empty:
                continue
            if stopping.is_set() or self._exit_requested():
                return EXIT_STATUS_CANCELLED
            self._restart(ctx, feed)

    def _restart(self, ctx: CancelContext, feed: _LogFeed) -> bool:
        """One restart attempt. Failures are logged and left for the next trigger."""
        try:
            ctx.run(self.runtime.restart, self._id, cf_config.restart_grace())
        except ContainerError as exc:
            logger.warning("restart of container %s failed, retrying on next trigger: %s", self.short_id, exc)
            return False

        try:
            info = ctx.run(self.runtime.inspect, self._id)
        except ContainerError as exc:
            logger.warning("inspecting container %s failed, retrying on next trigger: %s", self.short_id, exc)
            return False
        started_at = self._started_at(info)
        since = started_at - timedelta(milliseconds=cf_config.log_since_backoff_ms())
        feed.close()
        try:
            source = ctx.run(self.runtime.logs, self._id, format_timestamp(since))
        except ContainerError as exc:
            logger.warning("reopening logs of container %s failed: %s", self.short_id, exc)
            return False
        feed.push(source)
        logger.info("restarted container %s", self.short_id)
        return True

    def _started_at(self, info: Mapping[str, Any]) -> datetime:
        try:
            return parse_timestamp(info["State"]["StartedAt"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("container %s has no usable start time: %s", self.short_id, exc)
            return EPOCH

    # --- images and files ---

    def commit(self, ref: str) -> str:
        """Snapshot the container as image ``ref`` and return the image id.

        The container is paused while the snapshot is taken, and the image
        keeps the config the container was created with.
        """
        image_id = self.runtime.commit(
            self._id,
            ref,
            author=cf_config.commit_author(),
            pause=True,
            config=self._config,
        )
        logger.info("committed container %s as %s (%s)", self.short_id, ref, image_id)
        return image_id

    def extract_to(self, archive: BinaryIO, path: str) -> None:
        self.runtime.put_archive(self._id, path, archive)

    def copy_to(self, stream: Stream, path: str) -> None:
        """Write stream to path inside the container; stream is always closed."""
        try:
            archive = tar_file(path, stream, stream.size, cf_config.copy_file_mode())
            self.extract_to(archive, "/")
        except BaseException:
            try:
                stream.close()
            except Exception as exc:
                logger.warning("closing stream for %s failed: %s", path, exc)
            raise
        stream.close()

    def copy_from(self, path: str) -> Stream:
        """Open path inside the container for reading.

        Raises:
            ArchiveEntryNotFound: path is not in the archive the runtime returned
        """
        archive, stat = self.runtime.get_archive(self._id, path)
        try:
            entry = file_from_tar(posixpath.basename(path), archive)
        except BaseException:
            archive.close()
            raise
        return Stream(SplitStream(entry, archive), int(stat.get("size", 0)))
