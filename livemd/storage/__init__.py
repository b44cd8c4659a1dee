"""
Artifact Storage Layer

RESPONSIBILITY: Versioned, atomically replaced rendered artifacts
ALLOWED INPUTS: (OutputPath, bytes, ContentKind) from the Coordinator
OUTPUTS: Artifact snapshots for the HTTP layer and the Index Generator

WHAT THIS LAYER MUST NOT DO:
============================
- Render, read sources or decide what is stale
- Expose a partially written artifact
- Hold its lock across disk I/O

GUARANTEES:
===========
1. put/get/remove are individually atomic
2. Versions are per-path and strictly increasing, even across a
   remove followed by a new put
3. A get that starts after put() returned sees that version or newer

The in-memory map is the single source of truth. A backend may mirror
artifacts to disk, but the HTTP layer never reads the mirror.
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
import logging
import os
import tempfile
import threading

from ..contracts.base import OutputPath, SourcePath, StoreNotFound
from ..contracts.events import Artifact, ContentKind

logger = logging.getLogger(__name__)


# =============================================================================
# STORAGE BACKENDS (Dependency Inversion)
# =============================================================================

class ArtifactBackend:
    """
    Abstract persistence backend for artifacts.

    Called after the in-memory swap, outside the store lock. Per-path
    calls arrive in order because the Coordinator serializes each path.
    """

    def persist(self, artifact: Artifact):
        raise NotImplementedError

    def discard(self, path: OutputPath):
        raise NotImplementedError


class InMemoryArtifactBackend(ArtifactBackend):
    """Keeps nothing beyond the store's own map."""

    def persist(self, artifact: Artifact):
        pass

    def discard(self, path: OutputPath):
        pass


class FileArtifactBackend(ArtifactBackend):
    """
    Mirrors artifacts into an output directory.

    Each write goes to a temp file in the target directory and is moved
    into place with os.replace, so readers of the directory never see a
    truncated file either.
    """

    def __init__(self, output_dir: str):
        self._output_dir = Path(output_dir).resolve()
        os.makedirs(self._output_dir, exist_ok=True)

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def _target(self, path: OutputPath) -> Path:
        return self._output_dir / path.value

    def persist(self, artifact: Artifact):
        target = self._target(artifact.path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".livemd-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(artifact.body)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def discard(self, path: OutputPath):
        try:
            self._target(path).unlink()
        except FileNotFoundError:
            pass


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class StorageConfig:
    """Configuration for the artifact store."""
    backend_type: str = "memory"  # "memory" or "file"
    output_dir: Optional[str] = None

    def __post_init__(self):
        if self.backend_type not in ("memory", "file"):
            raise ValueError(f"Unknown backend_type: {self.backend_type}")
        if self.backend_type == "file" and not self.output_dir:
            raise ValueError("output_dir is required for the file backend")


# =============================================================================
# ARTIFACT STORE
# =============================================================================

class ArtifactStore:
    """
    The one shared, mutable structure in the pipeline.

    Artifacts are immutable; under the lock put() only allocates the next
    version and swaps a reference. Disk mirroring happens after release.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        self._config = config or StorageConfig()
        self._lock = threading.Lock()
        self._artifacts: Dict[OutputPath, Artifact] = {}
        # Survives remove() so a recreated path keeps counting upwards
        self._versions: Dict[OutputPath, int] = {}

        if self._config.backend_type == "file":
            self._backend: ArtifactBackend = FileArtifactBackend(self._config.output_dir)
        else:
            self._backend = InMemoryArtifactBackend()

    @property
    def backend(self) -> ArtifactBackend:
        return self._backend

    def get(self, path: OutputPath) -> Optional[Artifact]:
        with self._lock:
            return self._artifacts.get(path)

    def require(self, path: OutputPath) -> Artifact:
        artifact = self.get(path)
        if artifact is None:
            raise StoreNotFound("no artifact at this path", path=path.value)
        return artifact

    def put(
        self,
        path: OutputPath,
        body: bytes,
        content_kind: ContentKind,
        source: Optional[SourcePath] = None
    ) -> int:
        """Store a complete artifact and return its new version."""
        body = bytes(body)
        with self._lock:
            version = self._versions.get(path, 0) + 1
            artifact = Artifact(
                path=path,
                body=body,
                version=version,
                content_kind=content_kind,
                source=source,
            )
            self._versions[path] = version
            self._artifacts[path] = artifact

        self._mirror(artifact)
        return version

    def remove(self, path: OutputPath) -> bool:
        """Drop an artifact. Returns False if nothing was stored."""
        with self._lock:
            existed = self._artifacts.pop(path, None) is not None

        if existed:
            try:
                self._backend.discard(path)
            except OSError as e:
                logger.warning("could not remove mirrored %s: %s", path, e)
        return existed

    def list_all(self) -> List[OutputPath]:
        with self._lock:
            return sorted(self._artifacts)

    def _mirror(self, artifact: Artifact):
        try:
            self._backend.persist(artifact)
        except OSError as e:
            # The in-memory copy is authoritative; a failed mirror is not fatal
            logger.warning("could not mirror %s to disk: %s", artifact.path, e)

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)

    def __contains__(self, path: OutputPath) -> bool:
        return self.get(path) is not None
