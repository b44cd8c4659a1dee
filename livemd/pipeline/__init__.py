"""
Pipeline Coordination Layer

RESPONSIBILITY: ChangeEvent -> render -> store -> reload signal
ALLOWED INPUTS: An async iterator of ChangeEvents
OUTPUTS: Store updates and ReloadSignals

WHAT THIS LAYER MUST NOT DO:
============================
- Hold any lock while reading or rendering
- Publish a signal before the matching store update is visible
- Reorder events for the same source

ORDERING:
=========
Every source gets a lane: a FIFO of jobs drained by one task that
exists only while the lane has work. Jobs for one source therefore run
strictly in arrival order; different sources run concurrently. The
generated index is one more lane, keyed so it cannot collide with a
real path.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Awaitable, Callable, Deque, Dict, Optional, Tuple
import asyncio
import logging
import time

from ..contracts.base import (
    SourcePath, OutputPath, InvalidPath, RenderIoError, INDEX_OUTPUT
)
from ..contracts.events import (
    ChangeEvent, ChangeKind, ContentKind, ReloadSignal, AuditEventType
)
from ..mapping import PathMapper
from ..rendering import MarkdownRenderer, load_source
from ..rendering.index import render_index
from ..storage import ArtifactStore
from ..broadcast import ReloadBroadcaster
from ..observability import Observability
from .state_machine import SourceState, SourceStateTracker, SourceStatus

logger = logging.getLogger(__name__)


INDEX_LANE = "\x00index"


@dataclass
class PipelineConfig:
    """Configuration for the coordinator."""
    generate_index: bool = True


@dataclass
class _Job:
    run: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    discardable: bool = True


@dataclass
class _Lane:
    jobs: Deque[_Job] = field(default_factory=deque)
    task: Optional[asyncio.Task] = None


class PipelineCoordinator:
    """
    Consumes ChangeEvents and keeps the Artifact Store current.
    """

    def __init__(
        self,
        mapper: PathMapper,
        renderer: MarkdownRenderer,
        store: ArtifactStore,
        broadcaster: ReloadBroadcaster,
        observability: Optional[Observability] = None,
        config: Optional[PipelineConfig] = None
    ):
        self._mapper = mapper
        self._renderer = renderer
        self._store = store
        self._broadcaster = broadcaster
        self._observability = observability or Observability()
        self._config = config or PipelineConfig()
        self._tracker = SourceStateTracker()
        self._lanes: Dict[str, _Lane] = {}
        self._pending_index: Optional[asyncio.Future] = None
        self._closing = False
        self._crash: Optional[BaseException] = None
        self._runner: Optional[asyncio.Task] = None

    # =========================================================================
    # EVENT INTAKE
    # =========================================================================

    async def run(self, events: AsyncIterable[ChangeEvent]):
        """
        Feed every event into its lane until the stream ends.
        WatchSubscriptionError from the stream propagates unchanged.

        A crashed lane cancels this task, so the crash surfaces here
        right away rather than with the next event.
        """
        self._runner = asyncio.current_task()
        try:
            if self._crash is not None:
                raise self._crash
            async for event in events:
                self.submit(event)
        except asyncio.CancelledError:
            if self._crash is not None:
                raise self._crash from None
            raise
        finally:
            self._runner = None

    def submit(self, event: ChangeEvent) -> asyncio.Future:
        if self._closing:
            raise RuntimeError("coordinator is draining; no new events accepted")
        return self._schedule(event.source.value, lambda: self.process(event))

    async def build_all(self) -> int:
        """Initial build of every source under the content root."""
        sources = await asyncio.to_thread(
            lambda: list(self._mapper.iter_sources())
        )
        for source in sources:
            self.submit(ChangeEvent(source, ChangeKind.CREATED))
        await self.join()
        await self._refresh_index()
        logger.info("initial build: %d sources, %d artifacts", len(sources), len(self._store))
        return len(sources)

    async def join(self):
        """Wait until every lane is idle."""
        while self._lanes:
            await asyncio.gather(*(lane.task for lane in list(self._lanes.values())))
        if self._crash is not None:
            raise self._crash

    async def drain(self):
        """
        Shutdown: accept nothing new, drop queued events, let in-flight
        jobs finish. Queued index regenerations still run.
        """
        self._closing = True
        dropped = 0
        for lane in self._lanes.values():
            kept: Deque[_Job] = deque()
            for job in lane.jobs:
                if job.discardable:
                    job.future.cancel()
                    dropped += 1
                else:
                    kept.append(job)
            lane.jobs = kept
        if dropped:
            logger.info("dropped %d queued events on shutdown", dropped)

        while self._lanes:
            await asyncio.gather(*(lane.task for lane in list(self._lanes.values())))

    # =========================================================================
    # UNIT OF WORK
    # =========================================================================

    async def process(self, event: ChangeEvent) -> Optional[ReloadSignal]:
        if event.is_removal:
            return await self._process_removal(event.source)
        return await self._process_update(event.source)

    async def _process_update(self, source: SourcePath) -> Optional[ReloadSignal]:
        output = self._mapper.to_output(source)
        self._tracker.transition(source, SourceState.STALE)
        self._tracker.transition(source, SourceState.RENDERING)

        started = time.perf_counter()
        try:
            kind, body = await asyncio.to_thread(self._read_and_render, source)
        except (InvalidPath, RenderIoError) as e:
            # Unreadable, a symlink loop, or a symlink leading out of the root
            error = e.to_error().with_context("source", source.value)
            self._tracker.transition(source, SourceState.FAILED, error)
            self._observability.metrics.increment("render_failures_total")
            self._observability.record_error("pipeline", error, source.value)
            return None
        duration_ms = (time.perf_counter() - started) * 1000

        is_new = self._store.get(output) is None
        # The file backend writes to disk, keep that off the loop
        version = await asyncio.to_thread(self._store.put, output, body, kind, source)
        self._tracker.transition(source, SourceState.FRESH)

        self._observability.metrics.increment("renders_total")
        self._observability.metrics.record_timing("render_duration_ms", duration_ms)
        self._observability.record(
            "pipeline", "rendered", AuditEventType.RENDER, output.value,
            version=str(version), bytes=str(len(body)), ms=f"{duration_ms:.1f}",
        )

        if is_new:
            await self._refresh_index()

        # The put above has returned, so any get from here on sees it
        signal = ReloadSignal(output)
        self._broadcaster.publish(signal)
        return signal

    async def _process_removal(self, source: SourcePath) -> ReloadSignal:
        output = self._mapper.to_output(source)
        removed = await asyncio.to_thread(self._store.remove, output)
        self._tracker.forget(source)

        if removed:
            self._observability.metrics.increment("removals_total")
            self._observability.record("pipeline", "removed", AuditEventType.REMOVAL, output.value)

        await self._refresh_index()

        signal = ReloadSignal(None)
        self._broadcaster.publish(signal)
        return signal

    def _read_and_render(self, source: SourcePath) -> Tuple[ContentKind, bytes]:
        """Runs in a worker thread."""
        data = load_source(self._mapper.resolve(source))
        return self._renderer.render_artifact(source, data)

    # =========================================================================
    # INDEX
    # =========================================================================

    async def _refresh_index(self):
        """
        Regenerate index.html from the current listing. A regeneration
        that is queued but not yet started is shared, since it will read
        the listing after our store update anyway.
        """
        if not self._config.generate_index:
            return
        if self._pending_index is None:
            self._pending_index = self._schedule(INDEX_LANE, self._regenerate_index, discardable=False)
        await self._pending_index

    async def _regenerate_index(self) -> Optional[int]:
        self._pending_index = None
        if self._user_index_present():
            return None
        body = render_index(self._store.list_all(), self._renderer.config.reload_path)
        return await asyncio.to_thread(self._store.put, OutputPath(INDEX_OUTPUT), body, ContentKind.HTML)

    def _user_index_present(self) -> bool:
        """A README.md, index.md or index.html at the root owns index.html."""
        candidates = self._mapper.sources_for(OutputPath(INDEX_OUTPUT))
        return any(self._tracker.knows(c) for c in candidates)

    # =========================================================================
    # LANES
    # =========================================================================

    def _schedule(self, key: str, run: Callable[[], Awaitable[Any]], discardable: bool = True) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        job = _Job(run=run, future=loop.create_future(), discardable=discardable)
        lane = self._lanes.get(key)
        if lane is None:
            lane = _Lane()
            self._lanes[key] = lane
            lane.task = asyncio.create_task(self._drive(key, lane))
        lane.jobs.append(job)
        return job.future

    async def _drive(self, key: str, lane: _Lane):
        while lane.jobs:
            job = lane.jobs.popleft()
            if job.future.cancelled():
                continue
            try:
                result = await job.run()
            except asyncio.CancelledError:
                job.future.cancel()
                raise
            except Exception as e:
                logger.exception("pipeline job for %r crashed", key)
                if self._crash is None:
                    self._crash = e
                    if self._runner is not None and not self._runner.done():
                        self._runner.cancel()
                job.future.set_exception(e)
                # Mark retrieved: the crash resurfaces through run() and join()
                job.future.exception()
            else:
                if not job.future.done():
                    job.future.set_result(result)
        # No await since the emptiness check, so no job can slip in unseen
        del self._lanes[key]

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def state_of(self, source: SourcePath) -> Optional[SourceState]:
        return self._tracker.state_of(source)

    def status_of(self, source: SourcePath) -> Optional[SourceStatus]:
        return self._tracker.status_of(source)

    def states(self) -> Dict[SourcePath, SourceState]:
        return self._tracker.snapshot()

    @property
    def busy(self) -> bool:
        return bool(self._lanes)
