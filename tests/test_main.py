"""
Tests for the HTTP API.

The app is created with pre-built Services holding in-memory fakes, so the
lifespan never connects to PostgreSQL or a model server.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from knowledge_rag.errors import SourceUnavailable, StoreUnavailable
from knowledge_rag.ingestion import IngestionOrchestrator
from knowledge_rag.main import Services, create_app
from knowledge_rag.models import SourceKind
from knowledge_rag.rag_pipeline import EMPTY_KNOWLEDGE_BASE_MESSAGE, RAGPipeline
from knowledge_rag.sources import SourceSpec
from knowledge_rag.vector_store import InMemoryVectorStore

from .conftest import DIMENSION, FakeEmbedder, FakeGenerator


async def fetch_article():
    return "Hover polo is played on Lev-Boots."


async def fetch_channel():
    return ["ada: it floats", "bob: nice"]


async def fetch_missing():
    raise SourceUnavailable("404 Not Found")


def make_services(store, generator=None, catalog=None) -> Services:
    embedder = FakeEmbedder()
    generator = generator or FakeGenerator()
    return Services(
        store=store,
        embedder=embedder,
        generator=generator,
        ingestion=IngestionOrchestrator(store, embedder, words_per_chunk=3),
        pipeline=RAGPipeline(store, embedder, generator, top_k=3),
        catalog=catalog
        if catalog is not None
        else [
            SourceSpec(SourceKind.ARTICLE, "hover-polo", fetch_article),
            SourceSpec(SourceKind.CHAT_FEED, "lab-notes", fetch_channel),
            SourceSpec(SourceKind.ARTICLE, "missing", fetch_missing),
        ],
    )


class UnreachableStore(InMemoryVectorStore):
    def count(self) -> int:
        raise StoreUnavailable("connection refused")

    def stats(self):
        raise StoreUnavailable("connection refused")


@pytest.fixture
def services(store) -> Services:
    return make_services(store)


@pytest.fixture
def client(test_config, services):
    with TestClient(create_app(test_config, services)) as client:
        yield client


class TestHealth:
    def test_health_reports_chunk_count(self, client, store) -> None:
        store.replace("pdf", "doc", [("a", [1.0, 0.0, 0.0, 0.0])])

        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "chunks": 1}

    def test_health_is_degraded_without_database(self, test_config) -> None:
        services = make_services(UnreachableStore(dimension=DIMENSION))
        with TestClient(create_app(test_config, services)) as client:
            response = client.get("/api/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"


class TestAsk:
    def test_empty_store_returns_sentinel(self, client) -> None:
        response = client.post("/api/ask", json={"question": "What are Lev-Boots?"})

        assert response.status_code == 200
        assert response.json() == {"answer": EMPTY_KNOWLEDGE_BASE_MESSAGE}

    def test_answer_comes_from_generator(self, client, store, services) -> None:
        store.replace("article", "hover-polo", [("Hover polo rules", [1.0, 0.0, 0.0, 0.0])])

        response = client.post("/api/ask", json={"question": "How is hover polo played?"})

        assert response.status_code == 200
        assert response.json() == {"answer": "It levitates."}
        assert "How is hover polo played?" in services.generator.prompts[0]

    def test_missing_question_is_rejected(self, client) -> None:
        assert client.post("/api/ask", json={}).status_code == 422
        assert client.post("/api/ask", json={"question": ""}).status_code == 422

    def test_generation_failure_is_bad_gateway(self, test_config, store, failing_generator) -> None:
        store.replace("pdf", "doc", [("a", [1.0, 0.0, 0.0, 0.0])])
        services = make_services(store, generator=failing_generator)

        with TestClient(create_app(test_config, services)) as client:
            response = client.post("/api/ask", json={"question": "anything"})

        assert response.status_code == 502
        assert "model is down" in response.json()["detail"]

    def test_store_failure_is_service_unavailable(self, test_config) -> None:
        services = make_services(UnreachableStore(dimension=DIMENSION))
        with TestClient(create_app(test_config, services)) as client:
            response = client.post("/api/ask", json={"question": "anything"})
        assert response.status_code == 503


class TestLoadData:
    def test_load_reports_each_source(self, client, store) -> None:
        response = client.post("/api/load_data")

        assert response.status_code == 200
        body = response.json()
        assert body["loaded"] == ["article:hover-polo", "slack:lab-notes"]
        assert body["skipped"] == []
        assert list(body["failed"]) == ["article:missing"]
        assert store.exists("article", "hover-polo")
        assert store.exists("slack", "lab-notes")

    def test_second_load_skips_loaded_sources(self, client, store) -> None:
        client.post("/api/load_data")
        count = store.count()

        body = client.post("/api/load_data").json()

        assert body["loaded"] == []
        assert body["skipped"] == ["article:hover-polo", "slack:lab-notes"]
        assert store.count() == count


class TestStatsAndRemove:
    def test_stats(self, client, store) -> None:
        store.replace("pdf", "doc", [("a", [1.0, 0.0, 0.0, 0.0]), ("b", None)])
        store.replace("slack", "lab-notes", [("c", [1.0, 0.0, 0.0, 0.0])])

        response = client.get("/api/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total_chunks": 3,
            "chunks_with_embeddings": 2,
            "chunks_by_source": {"pdf": 2, "slack": 1},
        }

    def test_remove_source(self, client, store) -> None:
        store.replace("pdf", "White Paper.pdf", [("a", [1.0, 0.0, 0.0, 0.0])])

        response = client.delete("/api/sources/pdf/White Paper.pdf")

        assert response.status_code == 200
        assert response.json() == {"source": "pdf", "source_id": "White Paper.pdf", "removed": 1}
        assert not store.exists("pdf", "White Paper.pdf")

    def test_remove_unknown_kind_is_rejected(self, client) -> None:
        assert client.delete("/api/sources/email/inbox").status_code == 422


def wait_until(condition, timeout: float = 5.0) -> bool:
    """Poll while the app's event loop runs in TestClient's worker thread."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class TestStartupAutoLoad:
    def test_empty_store_is_loaded_in_background(self, test_config, store) -> None:
        config = test_config.model_copy(update={"auto_load_data": True})
        services = make_services(store)

        with TestClient(create_app(config, services)):
            assert wait_until(lambda: store.exists("slack", "lab-notes"))

        assert store.exists("article", "hover-polo")
        assert not store.exists("article", "missing")

    def test_populated_store_is_left_alone(self, test_config, store) -> None:
        config = test_config.model_copy(update={"auto_load_data": True})
        store.replace("pdf", "doc", [("a", [1.0, 0.0, 0.0, 0.0])])
        services = make_services(store)

        with TestClient(create_app(config, services)) as client:
            client.get("/api/health")
            time.sleep(0.05)

        assert services.embedder.calls == []
        assert store.count() == 1

    def test_disabled_auto_load_does_nothing(self, client, services, store) -> None:
        client.get("/api/health")
        time.sleep(0.05)

        assert services.embedder.calls == []
        assert store.count() == 0


class TestLoadConflict:
    @pytest.fixture
    def held_lock(self, services):
        # An uncontended acquire never waits, so it needs no particular loop.
        asyncio.run(services.load_lock.acquire())
        yield services.load_lock
        services.load_lock.release()

    def test_load_while_loading_is_conflict(self, client, held_lock, store) -> None:
        response = client.post("/api/load_data")

        assert response.status_code == 409
        assert store.count() == 0

    def test_remove_while_loading_is_conflict(self, client, held_lock, store) -> None:
        store.replace("pdf", "doc", [("a", [1.0, 0.0, 0.0, 0.0])])

        response = client.delete("/api/sources/pdf/doc")

        assert response.status_code == 409
        assert store.exists("pdf", "doc")

    def test_load_is_allowed_again_after_release(self, client, services) -> None:
        asyncio.run(services.load_lock.acquire())
        services.load_lock.release()

        assert client.post("/api/load_data").status_code == 200
