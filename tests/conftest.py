"""
Shared fixtures for livemd tests.

Everything that touches the filesystem works inside tmp_path.
"""

from pathlib import Path

import pytest

from livemd.mapping import PathMapper
from livemd.rendering import MarkdownRenderer
from livemd.storage import ArtifactStore
from livemd.broadcast import ReloadBroadcaster
from livemd.observability import Observability
from livemd.pipeline import PipelineCoordinator, PipelineConfig


@pytest.fixture
def content_root(tmp_path) -> Path:
    root = tmp_path / "doc"
    root.mkdir()
    return root


@pytest.fixture
def mapper(content_root) -> PathMapper:
    return PathMapper(content_root)


@pytest.fixture
def observability() -> Observability:
    return Observability()


@pytest.fixture
def pipeline_parts(mapper, observability):
    """
    Unwired layer instances. Coordinators must be built inside a running
    loop by the test itself.
    """
    renderer = MarkdownRenderer(mapper)
    store = ArtifactStore()
    broadcaster = ReloadBroadcaster(observability=observability)

    def build(generate_index: bool = True) -> PipelineCoordinator:
        return PipelineCoordinator(
            mapper, renderer, store, broadcaster, observability,
            PipelineConfig(generate_index=generate_index),
        )

    return build, store, broadcaster
