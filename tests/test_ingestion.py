"""
Tests for the ingestion orchestrator.

All collaborators are in-memory: the store is InMemoryVectorStore, the
embedder is FakeEmbedder and fetchers are plain coroutines.
"""

import pytest

from knowledge_rag.errors import EmbeddingUnavailable, SourceUnavailable
from knowledge_rag.ingestion import IngestionOrchestrator, IngestionState
from knowledge_rag.models import SourceKind
from knowledge_rag.sources import SourceSpec
from knowledge_rag.throttle import MinIntervalThrottle

from .conftest import FakeEmbedder


def fetch_returning(value):
    calls = []

    async def fetch():
        calls.append(1)
        return value

    fetch.calls = calls
    return fetch


async def fetch_failing():
    raise SourceUnavailable("404 Not Found")


@pytest.fixture
def orchestrator(store, embedder) -> IngestionOrchestrator:
    return IngestionOrchestrator(store, embedder, words_per_chunk=3)


class TestIngestSource:
    @pytest.mark.asyncio
    async def test_loads_chunks_in_order(self, orchestrator, store, embedder) -> None:
        state = await orchestrator.ingest_source("pdf", "doc1", fetch_returning("a b c d e f g"))

        assert state is IngestionState.LOADED
        assert orchestrator.states["pdf:doc1"] is IngestionState.LOADED
        assert embedder.calls == ["a b c", "d e f", "g"]
        results = store.nearest_neighbors([1, 0, 0, 0], 10)
        assert [(r.chunk.chunk_index, r.chunk.content) for r in results] == [
            (0, "a b c"),
            (1, "d e f"),
            (2, "g"),
        ]

    @pytest.mark.asyncio
    async def test_second_ingest_is_a_skip(self, orchestrator, store, embedder) -> None:
        fetch = fetch_returning("one two three four")

        first = await orchestrator.ingest_source(SourceKind.ARTICLE, "hover-polo", fetch)
        count_after_first = store.count()
        second = await orchestrator.ingest_source(SourceKind.ARTICLE, "hover-polo", fetch)

        assert first is IngestionState.LOADED
        assert second is IngestionState.SKIPPED
        assert store.count() == count_after_first == 2
        # Skipped sources are not fetched again.
        assert len(fetch.calls) == 1
        assert len(embedder.calls) == 2

    @pytest.mark.asyncio
    async def test_chat_lines_form_one_document(self, store) -> None:
        embedder = FakeEmbedder()
        orchestrator = IngestionOrchestrator(store, embedder, words_per_chunk=100)

        await orchestrator.ingest_source(
            "slack", "lab-notes", fetch_returning(["ada: it floats", "bob: nice"])
        )

        assert embedder.calls == ["ada: it floats bob: nice"]

    @pytest.mark.asyncio
    async def test_document_prefix_is_sent_to_embedder(self, store, embedder) -> None:
        orchestrator = IngestionOrchestrator(store, embedder, document_prefix="search_document: ")
        await orchestrator.ingest_source("pdf", "doc1", fetch_returning("hello"))
        assert embedder.calls == ["search_document: hello"]

    @pytest.mark.asyncio
    async def test_embedding_failure_stores_nothing(self, store) -> None:
        embedder = FakeEmbedder(fail_on="d")
        orchestrator = IngestionOrchestrator(store, embedder, words_per_chunk=3)

        with pytest.raises(EmbeddingUnavailable):
            await orchestrator.ingest_source("pdf", "doc1", fetch_returning("a b c d e f"))

        assert not store.exists("pdf", "doc1")
        assert store.count() == 0
        assert orchestrator.states["pdf:doc1"] is IngestionState.NOT_LOADED

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, orchestrator, store) -> None:
        with pytest.raises(SourceUnavailable):
            await orchestrator.ingest_source("article", "missing", fetch_failing)
        assert store.count() == 0
        assert orchestrator.states["article:missing"] is IngestionState.NOT_LOADED

    @pytest.mark.asyncio
    async def test_empty_source_is_not_stored(self, orchestrator, store, embedder) -> None:
        state = await orchestrator.ingest_source("pdf", "blank", fetch_returning("   \n  "))

        assert state is IngestionState.NOT_LOADED
        assert not store.exists("pdf", "blank")
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_embedding_calls_are_throttled(self, store, embedder) -> None:
        now = [0.0]
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            now[0] += seconds

        throttle = MinIntervalThrottle(0.5, clock=lambda: now[0], sleep=fake_sleep)
        orchestrator = IngestionOrchestrator(store, embedder, throttle=throttle, words_per_chunk=1)

        await orchestrator.ingest_source("pdf", "doc1", fetch_returning("a b c"))

        assert len(embedder.calls) == 3
        assert sleeps == [0.5, 0.5]


class TestLoadAll:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_rest(self, orchestrator, store) -> None:
        store.replace("pdf", "already", [("stored", [1.0, 0.0, 0.0, 0.0])])
        sources = [
            SourceSpec(SourceKind.PDF, "already", fetch_returning("ignored")),
            SourceSpec(SourceKind.ARTICLE, "broken", fetch_failing),
            SourceSpec(SourceKind.ARTICLE, "good", fetch_returning("it works")),
            SourceSpec(SourceKind.CHAT_FEED, "quiet", fetch_returning([])),
        ]

        report = await orchestrator.load_all(sources)

        assert report.skipped == ["pdf:already"]
        assert report.loaded == ["article:good"]
        assert report.empty == ["slack:quiet"]
        assert list(report.failed) == ["article:broken"]
        assert "404" in report.failed["article:broken"]
        assert not report.ok
        assert store.exists("article", "good")
        assert not store.exists("article", "broken")

    @pytest.mark.asyncio
    async def test_clean_run_is_ok(self, orchestrator) -> None:
        report = await orchestrator.load_all(
            [SourceSpec(SourceKind.PDF, "doc1", fetch_returning("text"))]
        )
        assert report.ok
        assert report.loaded == ["pdf:doc1"]
