"""
Watch Layer

RESPONSIBILITY: Turn filesystem notifications into a ChangeEvent stream
ALLOWED INPUTS: watchdog callbacks for the content root (recursive)
OUTPUTS: Debounced ChangeEvents through an async iterator

WHAT THIS LAYER MUST NOT DO:
============================
- Render, store or broadcast anything
- Retry a failed subscription silently
- Emit events for paths outside the content root

Watchdog delivers callbacks on its own observer thread. They are handed
to the event loop with call_soon_threadsafe, so everything downstream
is plain sequential consumption on the loop.

A Watcher subscribes once. After a fatal error its stream cannot be
resumed; build a new Watcher instead.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional
import asyncio
import logging
import os

from watchdog.events import (
    EVENT_TYPE_CLOSED, EVENT_TYPE_CREATED, EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED, FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from ..contracts.base import InvalidPath, WatchSubscriptionError
from ..contracts.events import ChangeEvent, ChangeKind
from ..mapping import PathMapper, is_ignored
from .debounce import DebounceBuffer

logger = logging.getLogger(__name__)


@dataclass
class WatchConfig:
    """Configuration for the watcher."""
    debounce_ms: int = 100
    max_delay_factor: int = 10
    # Upper bound between health checks while idle
    poll_interval: float = 0.5

    def __post_init__(self):
        if self.debounce_ms < 0:
            raise ValueError("debounce_ms must not be negative")
        if self.max_delay_factor < 1:
            raise ValueError("max_delay_factor must be at least 1")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

    @property
    def window(self) -> float:
        return self.debounce_ms / 1000.0


_KIND_BY_TYPE = {
    EVENT_TYPE_CREATED: ChangeKind.CREATED,
    EVENT_TYPE_MODIFIED: ChangeKind.MODIFIED,
    EVENT_TYPE_CLOSED: ChangeKind.MODIFIED,
    EVENT_TYPE_DELETED: ChangeKind.REMOVED,
}

_STOP = object()


class _ContentEventHandler(FileSystemEventHandler):
    """Runs on the observer thread; only translates and forwards."""

    def __init__(self, watcher: Watcher):
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent):
        self._watcher._on_raw_event(event)


class Watcher:
    """
    Filesystem subscription for one content root.
    """

    def __init__(self, mapper: PathMapper, config: Optional[WatchConfig] = None):
        self._mapper = mapper
        self._config = config or WatchConfig()
        self._buffer = DebounceBuffer(
            self._config.window,
            self._config.window * self._config.max_delay_factor,
        )
        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._raw: Optional[asyncio.Queue] = None
        self._root_inode: Optional[int] = None
        self._failure: Optional[WatchSubscriptionError] = None
        self._stopping = False

    @property
    def started(self) -> bool:
        return self._observer is not None

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Subscribe to the content root. Only once per Watcher."""
        if self._observer is not None:
            raise WatchSubscriptionError("watcher already subscribed", root=str(self._mapper.root))

        self._loop = loop or asyncio.get_running_loop()
        self._raw = asyncio.Queue()
        root = self._mapper.root
        try:
            self._root_inode = os.stat(root).st_ino
            observer = Observer()
            observer.schedule(_ContentEventHandler(self), str(root), recursive=True)
            observer.start()
        except OSError as e:
            raise WatchSubscriptionError(
                f"cannot watch content root: {e.strerror or e}", root=str(root)
            ) from e

        self._observer = observer
        logger.info("watching %s (debounce %d ms)", root, self._config.debounce_ms)

    def stop(self):
        """Unsubscribe and end the event stream normally."""
        if self._observer is None or self._stopping:
            return
        self._stopping = True
        self._observer.stop()
        self._observer.join(timeout=5)
        self._post(_STOP)
        logger.info("stopped watching %s", self._mapper.root)

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """
        Debounced ChangeEvents until stop(), which flushes whatever is
        still pending. Raises WatchSubscriptionError when the
        subscription dies.
        """
        if self._failure is not None:
            raise self._failure
        if self._observer is None:
            raise WatchSubscriptionError("watcher was never started", root=str(self._mapper.root))

        loop = asyncio.get_running_loop()
        poll = self._config.poll_interval
        while True:
            deadline = self._buffer.next_deadline()
            timeout = poll if deadline is None else min(max(0.0, deadline - loop.time()), poll)
            try:
                item = await asyncio.wait_for(self._raw.get(), timeout)
            except asyncio.TimeoutError:
                item = None

            if item is _STOP:
                # Edits made just before stop() still reach the pipeline
                for event in self._buffer.flush():
                    yield event
                return
            if isinstance(item, WatchSubscriptionError):
                self._fail(item)
            if item is not None:
                source, kind = item
                for event in self._buffer.add(source, kind, loop.time()):
                    yield event

            self._check_health()

            for event in self._buffer.pop_due(loop.time()):
                yield event

    # -------------------------------------------------------------------------
    # Observer thread side
    # -------------------------------------------------------------------------

    def _on_raw_event(self, event: FileSystemEvent):
        for item in self._translate(event):
            self._post(item)

    def _translate(self, event: FileSystemEvent) -> List[object]:
        src = os.fsdecode(event.src_path)

        if event.is_directory:
            if event.event_type == EVENT_TYPE_DELETED and os.path.abspath(src) == str(self._mapper.root):
                return [WatchSubscriptionError("content root was deleted", root=src)]
            return []

        if event.event_type == EVENT_TYPE_MOVED:
            items = self._changes(src, ChangeKind.REMOVED)
            dest = os.fsdecode(event.dest_path) if event.dest_path else ""
            if dest:
                items += self._changes(dest, ChangeKind.CREATED)
            return items

        kind = _KIND_BY_TYPE.get(event.event_type)
        if kind is None:
            return []
        return self._changes(src, kind)

    def _changes(self, path: str, kind: ChangeKind) -> List[object]:
        try:
            source = self._mapper.relative_source(path)
        except InvalidPath:
            logger.debug("ignoring change outside the content root: %s", path)
            return []
        if is_ignored(source) or self._mapper.is_excluded(source):
            return []
        return [(source, kind)]

    def _post(self, item: object):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._raw.put_nowait, item)

    # -------------------------------------------------------------------------
    # Loop side
    # -------------------------------------------------------------------------

    def _check_health(self):
        if self._stopping:
            return
        root = self._mapper.root
        try:
            inode = os.stat(root).st_ino
        except FileNotFoundError:
            self._fail(WatchSubscriptionError("content root was deleted", root=str(root)))
        except OSError as e:
            self._fail(WatchSubscriptionError(f"content root is unreadable: {e.strerror or e}", root=str(root)))
        if inode != self._root_inode:
            self._fail(WatchSubscriptionError("content root was replaced", root=str(root)))

        observer = self._observer
        if not observer.is_alive() or not all(e.is_alive() for e in observer.emitters):
            self._fail(WatchSubscriptionError("filesystem observer stopped unexpectedly", root=str(root)))

    def _fail(self, error: WatchSubscriptionError):
        self._failure = error
        logger.error("watch subscription failed: %s", error.message)
        if self._observer is not None and not self._stopping:
            self._stopping = True
            self._observer.stop()
        raise error
