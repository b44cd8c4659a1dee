"""
Pipeline Coordinator Tests

AXIOMS UNDER TEST:
==================
- A reload signal is published only after its artifact is visible
- Events for one source are processed in arrival order, never overlapping
- Different sources do not wait for each other
- A failed read keeps the last good artifact
- Removal always wins over earlier work for the same source
"""

import asyncio
import tempfile
import threading
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from livemd.broadcast import ReloadBroadcaster
from livemd.contracts import (
    SourcePath, OutputPath, ChangeEvent, ChangeKind, ContentKind, INDEX_OUTPUT,
)
from livemd.mapping import PathMapper
from livemd.observability import Observability
from livemd.pipeline import PipelineCoordinator, PipelineConfig
from livemd.pipeline.state_machine import SourceState
from livemd.rendering import MarkdownRenderer
from livemd.rendering.index import INDEX_TITLE
from livemd.storage import ArtifactStore, StorageConfig

from ..fixtures import write_tree


A = SourcePath("a.md")
A_OUT = OutputPath("a.html")
INDEX = OutputPath(INDEX_OUTPUT)


def modified(source: SourcePath) -> ChangeEvent:
    return ChangeEvent(source, ChangeKind.MODIFIED)


def removed(source: SourcePath) -> ChangeEvent:
    return ChangeEvent(source, ChangeKind.REMOVED)


class RecordingBroadcaster(ReloadBroadcaster):
    """Captures what the store held at the moment of each publish."""

    def __init__(self, store: ArtifactStore):
        super().__init__()
        self.store = store
        self.seen = []

    def publish(self, signal):
        visible = self.store.get(signal.path) if signal.path else None
        self.seen.append((signal, visible))
        return super().publish(signal)


# =============================================================================
# INITIAL BUILD
# =============================================================================

class TestBuildAll:

    def test_builds_every_source_and_an_index(self, content_root, pipeline_parts):
        write_tree(content_root, {
            "a.md": "# A\n\nSee [b](docs/b.md).",
            "docs/b.md": "# B",
            "img/x.png": "png-bytes",
        })
        build, store, _ = pipeline_parts

        async def scenario():
            coordinator = build()
            assert await coordinator.build_all() == 3
            return coordinator

        coordinator = asyncio.run(scenario())

        assert store.list_all() == [
            A_OUT, OutputPath("docs/b.html"), OutputPath("img/x.png"), INDEX,
        ]
        assert b'href="docs/b.html"' in store.get(A_OUT).body
        assert store.get(OutputPath("img/x.png")).content_kind is ContentKind.ASSET
        index = store.get(INDEX).body.decode("utf-8")
        assert INDEX_TITLE in index
        assert 'href="docs/b.html"' in index
        assert all(state is SourceState.FRESH for state in coordinator.states().values())

    def test_user_index_is_not_overwritten(self, content_root, pipeline_parts):
        write_tree(content_root, {"index.md": "# Home", "a.md": "# A"})
        build, store, _ = pipeline_parts

        async def scenario():
            await build().build_all()

        asyncio.run(scenario())
        body = store.get(INDEX).body.decode("utf-8")
        assert "<h1>Home</h1>" in body
        assert INDEX_TITLE not in body

    def test_readme_is_the_home_page(self, content_root, pipeline_parts):
        write_tree(content_root, {
            "README.md": "# Home\n\nRead [the guide](guide/README.md).",
            "guide/README.md": "# Guide",
            "a.md": "# A",
        })
        build, store, _ = pipeline_parts

        async def scenario():
            await build().build_all()

        asyncio.run(scenario())
        assert OutputPath("README.html") not in store
        home = store.get(INDEX)
        assert home.source == SourcePath("README.md")
        assert b"<h1>Home</h1>" in home.body
        assert INDEX_TITLE.encode() not in home.body
        assert b'href="guide/index.html"' in home.body
        assert b"<h1>Guide</h1>" in store.get(OutputPath("guide/index.html")).body

    def test_removed_readme_gives_back_the_generated_index(self, content_root, pipeline_parts):
        write_tree(content_root, {"README.md": "# Home", "a.md": "# A"})
        build, store, _ = pipeline_parts
        readme = SourcePath("README.md")

        async def scenario():
            coordinator = build()
            await coordinator.build_all()
            (content_root / "README.md").unlink()
            await coordinator.process(removed(readme))

        asyncio.run(scenario())
        body = store.get(INDEX).body.decode("utf-8")
        assert INDEX_TITLE in body
        assert 'href="a.html"' in body

    def test_symlink_loop_fails_only_that_source(self, content_root, pipeline_parts):
        write_tree(content_root, {"a.md": "# A"})
        (content_root / "loop.md").symlink_to("loop.md")
        build, store, _ = pipeline_parts

        async def scenario():
            coordinator = build()
            assert await coordinator.build_all() == 2
            return coordinator

        coordinator = asyncio.run(scenario())
        assert coordinator.state_of(A) is SourceState.FRESH
        loop = coordinator.status_of(SourcePath("loop.md"))
        assert loop.state is SourceState.FAILED
        assert dict(loop.last_error.context)["source"] == "loop.md"
        assert A_OUT in store
        assert OutputPath("loop.html") not in store

    def test_index_generation_can_be_disabled(self, content_root, pipeline_parts):
        write_tree(content_root, {"a.md": "# A"})
        build, store, _ = pipeline_parts

        async def scenario():
            await build(generate_index=False).build_all()

        asyncio.run(scenario())
        assert INDEX not in store

    def test_empty_tree_still_gets_an_index(self, pipeline_parts):
        build, store, _ = pipeline_parts

        async def scenario():
            await build().build_all()

        asyncio.run(scenario())
        assert store.list_all() == [INDEX]


# =============================================================================
# UNIT OF WORK
# =============================================================================

class TestProcess:

    def test_publish_happens_after_put(self, content_root, mapper):
        write_tree(content_root, {"a.md": "v1"})
        store = ArtifactStore()
        broadcaster = RecordingBroadcaster(store)

        async def scenario():
            coordinator = PipelineCoordinator(mapper, MarkdownRenderer(mapper), store, broadcaster)
            for i in range(1, 4):
                (content_root / "a.md").write_text(f"version {i}")
                signal = await coordinator.process(modified(A))
                assert signal.path == A_OUT

        asyncio.run(scenario())

        page_signals = [(s, v) for s, v in broadcaster.seen if s.path == A_OUT]
        assert [v.version for _, v in page_signals] == [1, 2, 3]
        for i, (_, visible) in enumerate(page_signals, start=1):
            assert f"version {i}".encode() in visible.body

    def test_read_failure_keeps_last_good_artifact(self, content_root, pipeline_parts, observability):
        write_tree(content_root, {"a.md": "# Good"})
        build, store, broadcaster = pipeline_parts

        async def scenario():
            coordinator = build()
            await coordinator.process(modified(A))
            client = broadcaster.subscribe()

            (content_root / "a.md").unlink()
            assert await coordinator.process(modified(A)) is None
            assert coordinator.state_of(A) is SourceState.FAILED
            assert coordinator.status_of(A).last_error is not None
            assert client._queue.empty()

            (content_root / "a.md").write_text("# Back")
            await coordinator.process(modified(A))
            assert coordinator.state_of(A) is SourceState.FRESH

        asyncio.run(scenario())

        artifact = store.get(A_OUT)
        assert b"<h1>Back</h1>" in artifact.body
        assert artifact.version == 2
        assert observability.metrics.counter("render_failures_total") == 1
        assert observability.audit_log.get_entries(layer="pipeline")

    def test_removal(self, content_root, pipeline_parts):
        write_tree(content_root, {"a.md": "# A", "b.md": "# B"})
        build, store, broadcaster = pipeline_parts

        async def scenario():
            coordinator = build()
            await coordinator.build_all()
            client = broadcaster.subscribe()
            (content_root / "a.md").unlink()

            signal = await coordinator.process(removed(A))
            assert signal.is_full_reload
            assert (await client.receive()) is signal
            assert coordinator.state_of(A) is None

        asyncio.run(scenario())
        assert A_OUT not in store
        assert b'href="a.html"' not in store.get(INDEX).body
        assert b'href="b.html"' in store.get(INDEX).body

    def test_removal_wins_over_queued_render(self, content_root, pipeline_parts):
        write_tree(content_root, {"a.md": "# A"})
        build, store, _ = pipeline_parts

        async def scenario():
            coordinator = build()
            coordinator.submit(modified(A))
            coordinator.submit(removed(A))
            await coordinator.join()

        asyncio.run(scenario())
        assert A_OUT not in store

    def test_escaping_symlink_fails_the_source(self, content_root, tmp_path, pipeline_parts):
        (tmp_path / "secret.md").write_text("secret")
        (content_root / "link.md").symlink_to(tmp_path / "secret.md")
        build, store, _ = pipeline_parts

        async def scenario():
            coordinator = build()
            assert await coordinator.process(modified(SourcePath("link.md"))) is None
            return coordinator

        coordinator = asyncio.run(scenario())
        assert coordinator.state_of(SourcePath("link.md")) is SourceState.FAILED
        assert OutputPath("link.html") not in store


# =============================================================================
# ORDERING
# =============================================================================

class TestOrdering:

    @settings(max_examples=25, deadline=None)
    @given(st.lists(st.sampled_from(["a.md", "b.md", "c.md"]), min_size=1, max_size=15), st.randoms())
    def test_same_path_events_run_in_order_without_overlap(self, names, rnd):
        mapper = PathMapper("/srv/doc")
        coordinator_log = []

        async def scenario():
            coordinator = PipelineCoordinator(
                mapper, MarkdownRenderer(mapper), ArtifactStore(), ReloadBroadcaster(),
                config=PipelineConfig(generate_index=False),
            )
            active = set()

            async def fake_process(event):
                assert event.source not in active, "overlapping work for one source"
                active.add(event.source)
                coordinator_log.append(event)
                await asyncio.sleep(rnd.random() * 0.002)
                active.discard(event.source)

            coordinator.process = fake_process
            submitted = [
                ChangeEvent(SourcePath(n), ChangeKind.REMOVED if i % 2 else ChangeKind.MODIFIED)
                for i, n in enumerate(names)
            ]
            for event in submitted:
                coordinator.submit(event)
            await coordinator.join()
            return submitted

        submitted = asyncio.run(scenario())

        for name in set(names):
            source = SourcePath(name)
            expected = [id(e) for e in submitted if e.source == source]
            actual = [id(e) for e in coordinator_log if e.source == source]
            assert actual == expected

    def test_different_paths_run_concurrently(self, pipeline_parts):
        build, _, _ = pipeline_parts

        async def scenario():
            coordinator = build(generate_index=False)
            b_started = asyncio.Event()

            async def fake_process(event):
                if event.source == A:
                    # Would deadlock if b.md had to wait for a.md
                    await asyncio.wait_for(b_started.wait(), 2)
                else:
                    b_started.set()

            coordinator.process = fake_process
            coordinator.submit(modified(A))
            coordinator.submit(modified(SourcePath("b.md")))
            await coordinator.join()

        asyncio.run(scenario())


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycle:

    def test_drain_discards_queued_and_refuses_new_events(self, pipeline_parts):
        build, _, _ = pipeline_parts
        processed = []

        async def scenario():
            coordinator = build(generate_index=False)
            release = asyncio.Event()

            async def fake_process(event):
                processed.append(event)
                await release.wait()

            coordinator.process = fake_process
            coordinator.submit(modified(A))
            queued = coordinator.submit(removed(A))
            await asyncio.sleep(0)

            drain = asyncio.create_task(coordinator.drain())
            await asyncio.sleep(0)
            release.set()
            await drain

            assert queued.cancelled()
            assert not coordinator.busy
            with pytest.raises(RuntimeError):
                coordinator.submit(modified(A))

        asyncio.run(scenario())
        assert processed == [modified(A)]

    def test_unexpected_crash_surfaces_from_join(self, pipeline_parts):
        build, _, _ = pipeline_parts

        async def scenario():
            coordinator = build(generate_index=False)

            async def broken(event):
                raise ZeroDivisionError("bug")

            coordinator.process = broken
            coordinator.submit(modified(A))
            with pytest.raises(ZeroDivisionError):
                await coordinator.join()

        asyncio.run(scenario())

    def test_run_consumes_a_stream(self, content_root, pipeline_parts):
        write_tree(content_root, {"a.md": "# A"})
        build, store, _ = pipeline_parts

        async def events():
            yield ChangeEvent(A, ChangeKind.CREATED)

        async def scenario():
            coordinator = build(generate_index=False)
            await coordinator.run(events())
            await coordinator.join()

        asyncio.run(scenario())
        assert A_OUT in store

    def test_crash_ends_run_without_another_event(self, pipeline_parts):
        build, _, _ = pipeline_parts

        async def events():
            yield modified(A)
            # The watcher stays quiet from here on
            await asyncio.Event().wait()

        async def scenario():
            coordinator = build(generate_index=False)

            async def broken(event):
                raise ZeroDivisionError("bug")

            coordinator.process = broken
            with pytest.raises(ZeroDivisionError):
                await asyncio.wait_for(coordinator.run(events()), 2)

        asyncio.run(scenario())

    def test_disk_mirror_is_written_off_the_loop(self, content_root, mapper, tmp_path):
        write_tree(content_root, {"a.md": "# A"})
        out = tmp_path / "_dist"
        store = ArtifactStore(StorageConfig(backend_type="file", output_dir=str(out)))
        broadcaster = RecordingBroadcaster(store)
        persist = store.backend.persist
        writer_threads = []

        def recording_persist(artifact):
            writer_threads.append(threading.get_ident())
            persist(artifact)

        store.backend.persist = recording_persist

        async def scenario():
            coordinator = PipelineCoordinator(mapper, MarkdownRenderer(mapper), store, broadcaster)
            await coordinator.build_all()
            return threading.get_ident()

        loop_thread = asyncio.run(scenario())

        assert writer_threads
        assert loop_thread not in writer_threads
        assert b"<h1>A</h1>" in (out / "a.html").read_bytes()
        assert (out / INDEX_OUTPUT).exists()
        (signal, visible), = broadcaster.seen
        assert signal.path == A_OUT and visible is not None


@settings(max_examples=20, deadline=None)
@given(st.lists(st.one_of(st.integers(min_value=0, max_value=99), st.none()), min_size=1, max_size=10))
def test_final_artifact_matches_last_event(operations):
    """
    Each operation either rewrites a.md (int) or deletes it (None) and
    submits the matching event without waiting. After the lanes settle
    the store reflects the last operation.
    """
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        mapper = PathMapper(root)
        store = ArtifactStore()

        async def scenario():
            coordinator = PipelineCoordinator(
                mapper, MarkdownRenderer(mapper), store, ReloadBroadcaster(),
                config=PipelineConfig(generate_index=False),
            )
            for op in operations:
                if op is None:
                    (root / "a.md").unlink(missing_ok=True)
                    coordinator.submit(removed(A))
                else:
                    (root / "a.md").write_text(f"content {op}")
                    coordinator.submit(modified(A))
            await coordinator.join()

        asyncio.run(scenario())

        last = operations[-1]
        if last is None:
            assert store.get(A_OUT) is None
        else:
            assert f"content {last}".encode() in store.get(A_OUT).body
