"""
Ingestion Orchestrator -- Loads each source into the knowledge store.

=== The pipeline for one source ===

  NotLoaded --(already stored?)--> Skipped
      |
      v
  Fetching   raw text (PDF, article) or "speaker: message" lines (chat feed)
      |
      v
  Chunking   400-word windows (see chunker)
      |
      v
  Embedding  one call per chunk, in order, throttled
      |
      v
  Storing    store.replace(): delete old rows, insert new ones
      |
      v
  Loaded

=== Idempotency ===
A source that already has rows is skipped without being fetched. Re-running
ingestion never duplicates or refreshes a loaded source; to pick up new
content, remove the source first (store.remove / DELETE /api/sources/...).

=== Failure ===
Within a source, ingestion is fail-fast: if one chunk cannot be embedded, the
whole source fails and replace() is never called, so nothing partial is
stored and the source is still NotLoaded for the next attempt. Across
sources, load_all() logs the failure and moves on.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .chunker import DEFAULT_WORDS_PER_CHUNK, chunk_text
from .config import Config
from .embedder import Embedder
from .models import SourceKind, source_value
from .sources import SourceSpec
from .throttle import MinIntervalThrottle
from .vector_store import KnowledgeStore

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    NOT_LOADED = "not_loaded"
    FETCHING = "fetching"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    LOADED = "loaded"
    SKIPPED = "skipped"


@dataclass
class IngestionReport:
    """Outcome of load_all(), keyed by "source:source_id"."""

    loaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    empty: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class IngestionOrchestrator:
    """
    Drives fetch -> chunk -> embed -> store for each source.

    The store, the embedding client and the throttle are passed in, so tests
    can substitute in-memory fakes for all of them.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: Embedder,
        throttle: Optional[MinIntervalThrottle] = None,
        words_per_chunk: int = DEFAULT_WORDS_PER_CHUNK,
        document_prefix: str = "",
    ) -> None:
        """
        Parameters
        ----------
        store : KnowledgeStore
            Where chunk rows are written.
        embedder : Embedder
            Embedding client; called once per chunk.
        throttle : MinIntervalThrottle, optional
            Minimum interval between two embedding calls. None disables it.
        words_per_chunk : int
            Chunk window size in words.
        document_prefix : str
            Task prefix prepended to every chunk before embedding.
        """
        self.store = store
        self.embedder = embedder
        self.throttle = throttle
        self.words_per_chunk = words_per_chunk
        self.document_prefix = document_prefix
        # Last known state of every source this orchestrator has touched.
        self.states: dict[str, IngestionState] = {}

    @classmethod
    def from_config(
        cls, config: Config, store: KnowledgeStore, embedder: Embedder
    ) -> "IngestionOrchestrator":
        return cls(
            store=store,
            embedder=embedder,
            throttle=MinIntervalThrottle(config.embedding_min_interval),
            words_per_chunk=config.chunk_size_words,
            document_prefix=config.embedding_document_prefix,
        )

    def _transition(self, key: str, state: IngestionState) -> None:
        self.states[key] = state
        logger.debug("%s -> %s", key, state.value)

    async def ingest_source(
        self,
        source: SourceKind | str,
        source_id: str,
        fetch: Callable[[], Awaitable[str | list[str]]],
    ) -> IngestionState:
        """
        Ingest one source unless it is already stored.

        Args:
            source: Source category.
            source_id: Identifier of the document within its category.
            fetch: Async callable returning the raw text, or a list of lines
                that are joined with newlines.

        Returns:
            LOADED, SKIPPED, or NOT_LOADED when the source had no content.

        Raises:
            SourceUnavailable, EmbeddingUnavailable, StoreUnavailable: from
                the collaborators; nothing is stored for this source.
        """
        source = source_value(source)
        key = f"{source}:{source_id}"

        # Store calls are synchronous; run them in a worker thread.
        if await asyncio.to_thread(self.store.exists, source, source_id):
            logger.info("%s already loaded, skipping", key)
            self._transition(key, IngestionState.SKIPPED)
            return IngestionState.SKIPPED

        try:
            self._transition(key, IngestionState.FETCHING)
            raw = await fetch()
            content = "\n".join(raw) if isinstance(raw, list) else raw

            self._transition(key, IngestionState.CHUNKING)
            chunks = chunk_text(content, self.words_per_chunk)
            if not chunks:
                logger.warning("No content found for %s, nothing to store", key)
                self._transition(key, IngestionState.NOT_LOADED)
                return IngestionState.NOT_LOADED

            self._transition(key, IngestionState.EMBEDDING)
            logger.info("Getting embeddings for %d chunks from %s...", len(chunks), key)
            embeddings: list[list[float]] = []
            for chunk in chunks:
                if self.throttle is not None:
                    await self.throttle.wait()
                embeddings.append(await self.embedder.embed(chunk, prefix=self.document_prefix))

            self._transition(key, IngestionState.STORING)
            await asyncio.to_thread(
                self.store.replace, source, source_id, list(zip(chunks, embeddings))
            )
        except Exception:
            self._transition(key, IngestionState.NOT_LOADED)
            raise

        self._transition(key, IngestionState.LOADED)
        logger.info("Loaded %s (%d chunks)", key, len(chunks))
        return IngestionState.LOADED

    async def load_all(self, sources: Iterable[SourceSpec]) -> IngestionReport:
        """
        Ingest every source in order; one failing source does not stop the rest.
        """
        report = IngestionReport()
        logger.info("Starting to load all data...")

        for spec in sources:
            try:
                state = await self.ingest_source(spec.kind, spec.source_id, spec.fetch)
            except Exception as exc:
                logger.exception("Failed to ingest %s", spec.key)
                report.failed[spec.key] = str(exc)
                continue

            if state is IngestionState.LOADED:
                report.loaded.append(spec.key)
            elif state is IngestionState.SKIPPED:
                report.skipped.append(spec.key)
            else:
                report.empty.append(spec.key)

        logger.info(
            "Load finished: %d loaded, %d skipped, %d empty, %d failed",
            len(report.loaded),
            len(report.skipped),
            len(report.empty),
            len(report.failed),
        )
        return report
