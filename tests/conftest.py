"""
Shared test fixtures.

Provides: in-memory knowledge store, fake embedding and generation clients
that record their calls, and a small test Config. Nothing here touches the
network or a database.
"""

from typing import Optional

import pytest

from knowledge_rag.config import Config
from knowledge_rag.errors import EmbeddingUnavailable, GenerationUnavailable
from knowledge_rag.vector_store import InMemoryVectorStore

DIMENSION = 4


class FakeEmbedder:
    """
    Embeds text via a lookup table; unknown text maps to a fixed unit vector.

    `fail_on` makes any text containing that substring raise
    EmbeddingUnavailable, to exercise fail-fast paths.
    """

    def __init__(
        self,
        vectors: Optional[dict[str, list[float]]] = None,
        dimension: int = DIMENSION,
        fail_on: Optional[str] = None,
    ) -> None:
        self.vectors = vectors or {}
        self.dimension = dimension
        self.fail_on = fail_on
        self.calls: list[str] = []

    async def embed(self, text: str, prefix: str = "") -> list[float]:
        self.calls.append(f"{prefix}{text}")
        if self.fail_on is not None and self.fail_on in text:
            raise EmbeddingUnavailable(f"cannot embed {text[:20]!r}")
        if text in self.vectors:
            return list(self.vectors[text])
        return [1.0] + [0.0] * (self.dimension - 1)

    async def aclose(self) -> None:
        self.closed = True


class FakeGenerator:
    """Returns a canned answer (or raises) and records every prompt."""

    def __init__(self, answer: str = "It levitates.", error: Optional[Exception] = None) -> None:
        self.answer = answer
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.fixture
def store() -> InMemoryVectorStore:
    """Empty in-memory knowledge store with 4-dimensional vectors."""
    return InMemoryVectorStore(dimension=DIMENSION)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def failing_generator() -> FakeGenerator:
    return FakeGenerator(error=GenerationUnavailable("model is down"))


@pytest.fixture
def test_config(tmp_path) -> Config:
    """Config with a tiny catalog and no delays, independent of the environment."""
    return Config(
        _env_file=None,
        embedding_dimension=DIMENSION,
        embedding_min_interval=0.0,
        chat_feed_page_delay=0.0,
        chunk_size_words=5,
        rag_top_k=3,
        pdf_directory=str(tmp_path),
        pdf_files=["missing.pdf"],
        article_ids=["hover-tech"],
        article_url_template="https://articles.test/article-{number}_{article_id}.md",
        chat_feed_url="https://chat.test/",
        chat_feed_channels=["lab-notes"],
    )
