"""
livemd Engine
=============

Wires the layers into one live preview server.

LAYER FLOW:
===========
1. Watcher: filesystem notifications -> debounced ChangeEvents
2. Pipeline: ChangeEvent -> read + render (worker thread) -> Artifact Store
3. Broadcast: ReloadSignal -> every connected browser
4. API: serves the store and the reload stream (see livemd.api.server)

The HTTP layer only ever reads from the store and subscribes to the
broadcaster; nothing flows backwards.
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import asyncio
import ipaddress
import logging
import os

from .contracts.base import WatchSubscriptionError
from .mapping import PathMapper
from .rendering import MarkdownRenderer, RenderConfig
from .storage import ArtifactStore, StorageConfig
from .watcher import Watcher, WatchConfig
from .pipeline import PipelineCoordinator, PipelineConfig
from .broadcast import ReloadBroadcaster, BroadcastConfig
from .observability import Observability, ObservabilityConfig

logger = logging.getLogger(__name__)


ENV_PREFIX = "LIVEMD_"


def is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


@dataclass
class ServerConfig:
    """Unified configuration for the whole server."""
    content_dir: str = "doc"
    # When set, artifacts are also mirrored to disk here
    output_dir: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 3000
    open_browser: bool = True
    debounce_ms: int = 100
    broadcast_capacity: int = 16
    generate_index: bool = True

    def __post_init__(self):
        if not is_loopback(self.host):
            raise ValueError(f"refusing to bind non-loopback host {self.host!r}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.debounce_ms < 0:
            raise ValueError("debounce_ms must not be negative")
        if self.output_dir and Path(self.output_dir).resolve() == Path(self.content_dir).resolve():
            raise ValueError("output_dir must differ from content_dir")

    @classmethod
    def from_env(cls, **overrides) -> ServerConfig:
        """
        Defaults, then LIVEMD_* environment variables, then overrides.
        """
        values = {}
        env = os.environ
        if f"{ENV_PREFIX}CONTENT_DIR" in env:
            values["content_dir"] = env[f"{ENV_PREFIX}CONTENT_DIR"]
        if f"{ENV_PREFIX}OUTPUT_DIR" in env:
            values["output_dir"] = env[f"{ENV_PREFIX}OUTPUT_DIR"] or None
        if f"{ENV_PREFIX}HOST" in env:
            values["host"] = env[f"{ENV_PREFIX}HOST"]
        if f"{ENV_PREFIX}PORT" in env:
            values["port"] = int(env[f"{ENV_PREFIX}PORT"])
        if f"{ENV_PREFIX}DEBOUNCE_MS" in env:
            values["debounce_ms"] = int(env[f"{ENV_PREFIX}DEBOUNCE_MS"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def server_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}/"

    # Per-layer configs

    @property
    def render(self) -> RenderConfig:
        return RenderConfig()

    @property
    def storage(self) -> StorageConfig:
        if self.output_dir:
            return StorageConfig(backend_type="file", output_dir=self.output_dir)
        return StorageConfig()

    @property
    def watch(self) -> WatchConfig:
        return WatchConfig(debounce_ms=self.debounce_ms)

    @property
    def broadcast(self) -> BroadcastConfig:
        return BroadcastConfig(capacity=self.broadcast_capacity)

    @property
    def pipeline(self) -> PipelineConfig:
        return PipelineConfig(generate_index=self.generate_index)


class LiveServer:
    """
    Owns every layer instance and their lifecycle.

    start() and stop() are idempotent so the HTTP lifespan and the CLI
    can both call them.
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        self._config = config or ServerConfig()
        self._observability = Observability(ObservabilityConfig())
        # A mirror nested in the content tree must never be read back as content
        self._mapper = PathMapper(self._config.content_dir, exclude=self._config.output_dir)
        self._renderer = MarkdownRenderer(self._mapper, self._config.render)
        self._store = ArtifactStore(self._config.storage)
        self._broadcaster = ReloadBroadcaster(self._config.broadcast, self._observability)
        self._coordinator = PipelineCoordinator(
            self._mapper,
            self._renderer,
            self._store,
            self._broadcaster,
            self._observability,
            self._config.pipeline,
        )
        self._watcher = Watcher(self._mapper, self._config.watch)

        self._pipeline_task: Optional[asyncio.Task] = None
        self._finished: Optional[asyncio.Event] = None
        self._fatal: Optional[BaseException] = None
        self._started = False
        self._stopped = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        """
        Subscribe first, then build: edits made during the initial build
        are queued behind it instead of lost.
        """
        if self._started:
            return
        self._finished = asyncio.Event()
        self._watcher.start()
        self._started = True
        logger.info("serving %s", self._mapper.root)

        await self._coordinator.build_all()
        self._pipeline_task = asyncio.create_task(self._run_pipeline())

    async def stop(self):
        if not self._started or self._stopped:
            return
        self._stopped = True
        await asyncio.to_thread(self._watcher.stop)
        if self._pipeline_task is not None:
            await asyncio.wait({self._pipeline_task})
        await self._coordinator.drain()
        self._broadcaster.close_all()
        logger.info("live server stopped")

    async def wait_fatal(self):
        """
        Block until the pipeline ends. Raises the error that ended it,
        returns normally after a regular stop().
        """
        if self._finished is None:
            raise RuntimeError("live server was never started")
        await self._finished.wait()
        if self._fatal is not None:
            raise self._fatal

    async def _run_pipeline(self):
        try:
            await self._coordinator.run(self._watcher.events())
        except WatchSubscriptionError as e:
            self._fatal = e
            self._observability.record_error("engine", e.to_error())
        except Exception as e:
            logger.exception("pipeline stopped unexpectedly")
            self._fatal = e
        finally:
            self._finished.set()

    # =========================================================================
    # LAYER ACCESS
    # =========================================================================

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def mapper(self) -> PathMapper:
        return self._mapper

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def broadcaster(self) -> ReloadBroadcaster:
        return self._broadcaster

    @property
    def coordinator(self) -> PipelineCoordinator:
        return self._coordinator

    @property
    def watcher(self) -> Watcher:
        return self._watcher

    @property
    def observability(self) -> Observability:
        return self._observability

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    @property
    def failed(self) -> bool:
        return self._fatal is not None

    @property
    def content_root(self) -> Path:
        return self._mapper.root
