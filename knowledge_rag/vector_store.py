"""
Vector Store Module -- Chunk rows with embeddings in PostgreSQL + pgvector.

=== What is stored? ===
One row per chunk:

  source | source_id | chunk_index | content | embedding | created_at | updated_at

(source, source_id, chunk_index) is unique. The embedding column is a pgvector
`vector(D)`, or NULL if the chunk was stored without one. NULL rows are never
returned by a similarity search.

=== Replacement, not upsert ===
A source is always written as a whole: `replace()` deletes every row of the
(source, source_id) pair and inserts the new chunk list in one transaction.
chunk_index is simply the chunk's position in that list. A PostgreSQL
advisory lock keyed on the pair serializes two writers of the same source;
writers of different sources never wait on each other.

=== What is cosine similarity? ===
pgvector's `<=>` operator is the cosine DISTANCE, 1 - (a.b)/(|a||b|):
  - 0: same direction (same meaning)
  - 1: perpendicular (unrelated)
  - 2: opposite directions
We report similarity = 1 - distance, so 1.0 is a perfect match. Results are
ordered by ascending distance, then by row id, so ties always come back in
insertion order.

Vectors are always sent as bound parameters (pgvector's SQLAlchemy type
encodes them), never formatted into the SQL text.

The extension and the table are created on first use. If the database is
down at that moment the operation fails with StoreUnavailable and the next
one tries again, so a store built while PostgreSQL was starting recovers
without a restart.

`InMemoryVectorStore` implements the same operations with a full scan. It
produces the same ranking and backs the test suite.
"""

import logging
import math
import threading
from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.sql import Select

from .config import Config
from .errors import StoreUnavailable
from .models import source_value

logger = logging.getLogger(__name__)

# (content, embedding-or-None) in chunk order.
ChunkInput = tuple[str, Optional[Sequence[float]]]


@dataclass
class ChunkRecord:
    """A persisted chunk, the unit of retrieval."""

    source: str
    source_id: str
    chunk_index: int
    content: str
    embedding: Optional[list[float]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ScoredChunk:
    """A chunk returned by a similarity search, with 1 - cosine distance."""

    chunk: ChunkRecord
    similarity: float


@dataclass
class StoreStats:
    total_chunks: int
    chunks_with_embeddings: int
    chunks_by_source: dict[str, int] = field(default_factory=dict)


class KnowledgeStore(Protocol):
    """Operations the ingestion and answering pipelines rely on."""

    def exists(self, source: str, source_id: str) -> bool: ...

    def replace(self, source: str, source_id: str, chunks: Sequence[ChunkInput]) -> int: ...

    def count(self) -> int: ...

    def nearest_neighbors(self, query_vector: Sequence[float], k: int) -> list[ScoredChunk]: ...

    def remove(self, source: str, source_id: str) -> int: ...

    def stats(self) -> StoreStats: ...


def _to_pyfloats(vector: Sequence[float]) -> list[float]:
    """Convert any numeric iterable (e.g. the numpy arrays pgvector returns) into floats."""
    return [float(x) for x in vector]


def _validate_chunks(chunks: Sequence[ChunkInput], dimension: int) -> None:
    for index, (content, embedding) in enumerate(chunks):
        if not content or not content.strip():
            raise ValueError(f"Chunk {index} has empty content")
        if embedding is not None and len(embedding) != dimension:
            raise ValueError(
                f"Chunk {index} embedding has dimension {len(embedding)}, expected {dimension}"
            )


def _validate_query(query_vector: Sequence[float], dimension: int) -> None:
    if len(query_vector) != dimension:
        raise ValueError(
            f"Query vector has dimension {len(query_vector)}, expected {dimension}"
        )


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cosine distance. A zero-length vector is treated as unrelated (0.0)."""
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return math.fsum(x * y for x, y in zip(a, b)) / (norm_a * norm_b)


# =============================================================================
# PostgreSQL + pgvector
# =============================================================================


def build_knowledge_table(
    metadata: MetaData, dimension: int, name: str = "knowledge_base"
) -> Table:
    """Describe the chunk table with a `vector(dimension)` embedding column."""
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("source", String(32), nullable=False),
        Column("source_id", String(512), nullable=False),
        Column("chunk_index", Integer, nullable=False),
        Column("content", Text, nullable=False),
        Column("embedding", Vector(dimension), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
        # Also serves (source, source_id) lookups as a leading-column index.
        UniqueConstraint("source", "source_id", "chunk_index", name=f"uq_{name}_chunk"),
    )


def build_nearest_neighbors_query(
    table: Table, query_vector: Sequence[float], k: int
) -> Select:
    """
    SELECT ..., 1 - (embedding <=> :q) AS similarity
    FROM table WHERE embedding IS NOT NULL
    ORDER BY embedding <=> :q, id LIMIT :k
    """
    distance = table.c.embedding.cosine_distance(_to_pyfloats(query_vector))
    return (
        select(table, (1 - distance).label("similarity"))
        .where(table.c.embedding.is_not(None))
        .order_by(distance, table.c.id)
        .limit(k)
    )


class PgVectorStore:
    """
    Knowledge store backed by PostgreSQL with the pgvector extension.

    Uses a synchronous SQLAlchemy engine. Each operation checks out its own
    connection from the pool, so one instance can be shared by the HTTP
    handlers and ingestion tasks.
    """

    def __init__(
        self,
        engine: Engine,
        dimension: int = 768,
        table_name: str = "knowledge_base",
    ) -> None:
        """
        Parameters
        ----------
        engine : Engine
            SQLAlchemy engine for a PostgreSQL database.
        dimension : int
            Size of the embedding column. Must match the embedding client.
        table_name : str
            Name of the chunk table.
        """
        self.engine = engine
        self.dimension = dimension
        self.metadata = MetaData()
        self.table = build_knowledge_table(self.metadata, dimension, table_name)
        self._schema_ready = False

    @classmethod
    def from_config(cls, config: Config) -> "PgVectorStore":
        engine = create_engine(
            config.database_url,
            pool_size=config.database_pool_size,
            pool_pre_ping=True,
        )
        return cls(engine, config.embedding_dimension, config.knowledge_table)

    @contextmanager
    def _unavailable_on_connection_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(f"Knowledge store unavailable during {operation}: {exc}") from exc

    def _require_schema(self) -> None:
        """Create the schema on first use; retried until the database accepts it."""
        if not self._schema_ready:
            self.ensure_schema()

    def _pair_filter(self, source: str, source_id: str):
        return (self.table.c.source == source) & (self.table.c.source_id == source_id)

    def ensure_schema(self) -> None:
        """
        Create the pgvector extension and the chunk table if they don't exist.

        Idempotent -- safe to call on every startup and every ingestion run.
        """
        with self._unavailable_on_connection_errors("ensure_schema"):
            with self.engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                self.metadata.create_all(conn)
        self._schema_ready = True
        logger.info(
            "Ensured table '%s' (dimension=%d)", self.table.name, self.dimension
        )

    def exists(self, source: str, source_id: str) -> bool:
        source = source_value(source)
        stmt = select(self.table.c.id).where(self._pair_filter(source, source_id)).limit(1)
        self._require_schema()
        with self._unavailable_on_connection_errors("exists"):
            with self.engine.connect() as conn:
                return conn.execute(stmt).first() is not None

    def replace(self, source: str, source_id: str, chunks: Sequence[ChunkInput]) -> int:
        """
        Delete every row of (source, source_id), then insert `chunks`.

        Parameters
        ----------
        source : str
            Source category ("pdf", "article", "slack").
        source_id : str
            Identifier of the document within its category.
        chunks : sequence of (content, embedding-or-None)
            The new chunk list. chunk_index is the position in this list.

        Returns
        -------
        int
            Number of rows inserted.
        """
        source = source_value(source)
        _validate_chunks(chunks, self.dimension)

        rows = [
            {
                "source": source,
                "source_id": source_id,
                "chunk_index": index,
                "content": content,
                "embedding": _to_pyfloats(embedding) if embedding is not None else None,
            }
            for index, (content, embedding) in enumerate(chunks)
        ]

        self._require_schema()

        with self._unavailable_on_connection_errors("replace"):
            with self.engine.begin() as conn:
                # Held until commit; serializes concurrent writers of one pair.
                conn.execute(
                    select(func.pg_advisory_xact_lock(func.hashtext(f"{source}:{source_id}")))
                )
                deleted = conn.execute(
                    delete(self.table).where(self._pair_filter(source, source_id))
                ).rowcount
                if rows:
                    conn.execute(insert(self.table), rows)

        logger.info(
            "Stored %d chunks for %s:%s (replaced %d)", len(rows), source, source_id, deleted
        )
        return len(rows)

    def count(self) -> int:
        stmt = select(func.count()).select_from(self.table)
        self._require_schema()
        with self._unavailable_on_connection_errors("count"):
            with self.engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())

    def nearest_neighbors(self, query_vector: Sequence[float], k: int) -> list[ScoredChunk]:
        """
        Return up to k chunks ranked by descending cosine similarity.

        Rows without an embedding are excluded. There is no similarity
        threshold: a poor best match is still returned.
        """
        if k <= 0:
            return []
        _validate_query(query_vector, self.dimension)

        stmt = build_nearest_neighbors_query(self.table, query_vector, k)
        self._require_schema()
        with self._unavailable_on_connection_errors("nearest_neighbors"):
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).mappings().all()

        results = [
            ScoredChunk(
                chunk=ChunkRecord(
                    source=row["source"],
                    source_id=row["source_id"],
                    chunk_index=row["chunk_index"],
                    content=row["content"],
                    embedding=_to_pyfloats(row["embedding"]),
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                ),
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]
        logger.debug("Nearest-neighbor query returned %d rows (k=%d)", len(results), k)
        return results

    def remove(self, source: str, source_id: str) -> int:
        """Delete every row of (source, source_id). Returns the number of rows removed."""
        source = source_value(source)
        self._require_schema()
        with self._unavailable_on_connection_errors("remove"):
            with self.engine.begin() as conn:
                removed = conn.execute(
                    delete(self.table).where(self._pair_filter(source, source_id))
                ).rowcount
        logger.info("Removed %d chunks for %s:%s", removed, source, source_id)
        return removed

    def stats(self) -> StoreStats:
        by_source_stmt = (
            select(self.table.c.source, func.count())
            .group_by(self.table.c.source)
            .order_by(self.table.c.source)
        )
        with_embeddings_stmt = (
            select(func.count())
            .select_from(self.table)
            .where(self.table.c.embedding.is_not(None))
        )
        self._require_schema()
        with self._unavailable_on_connection_errors("stats"):
            with self.engine.connect() as conn:
                by_source = {source: int(n) for source, n in conn.execute(by_source_stmt)}
                with_embeddings = int(conn.execute(with_embeddings_stmt).scalar_one())

        return StoreStats(
            total_chunks=sum(by_source.values()),
            chunks_with_embeddings=with_embeddings,
            chunks_by_source=by_source,
        )

    def close(self) -> None:
        self.engine.dispose()


# =============================================================================
# In-memory reference store (full scan)
# =============================================================================


class InMemoryVectorStore:
    """
    Process-local store with the same semantics as PgVectorStore.

    Similarity search scans every row; ties are broken by insertion order,
    like the `ORDER BY distance, id` of the SQL query.
    """

    def __init__(self, dimension: int = 768) -> None:
        self.dimension = dimension
        self._rows: list[tuple[int, ChunkRecord]] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def ensure_schema(self) -> None:
        """Nothing to create; present so both stores can be bootstrapped alike."""

    def close(self) -> None:
        pass

    def exists(self, source: str, source_id: str) -> bool:
        source = source_value(source)
        with self._lock:
            return any(
                r.source == source and r.source_id == source_id for _, r in self._rows
            )

    def replace(self, source: str, source_id: str, chunks: Sequence[ChunkInput]) -> int:
        source = source_value(source)
        _validate_chunks(chunks, self.dimension)
        now = datetime.now(timezone.utc)

        with self._lock:
            self._rows = [
                (row_id, r)
                for row_id, r in self._rows
                if not (r.source == source and r.source_id == source_id)
            ]
            for index, (content, embedding) in enumerate(chunks):
                record = ChunkRecord(
                    source=source,
                    source_id=source_id,
                    chunk_index=index,
                    content=content,
                    embedding=_to_pyfloats(embedding) if embedding is not None else None,
                    created_at=now,
                    updated_at=now,
                )
                self._rows.append((self._next_id, record))
                self._next_id += 1
        return len(chunks)

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def nearest_neighbors(self, query_vector: Sequence[float], k: int) -> list[ScoredChunk]:
        if k <= 0:
            return []
        _validate_query(query_vector, self.dimension)

        with self._lock:
            scored = [
                (cosine_similarity(query_vector, r.embedding), row_id, r)
                for row_id, r in self._rows
                if r.embedding is not None
            ]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [ScoredChunk(chunk=r, similarity=sim) for sim, _, r in scored[:k]]

    def remove(self, source: str, source_id: str) -> int:
        source = source_value(source)
        with self._lock:
            before = len(self._rows)
            self._rows = [
                (row_id, r)
                for row_id, r in self._rows
                if not (r.source == source and r.source_id == source_id)
            ]
            return before - len(self._rows)

    def stats(self) -> StoreStats:
        with self._lock:
            by_source: dict[str, int] = {}
            for _, r in self._rows:
                by_source[r.source] = by_source.get(r.source, 0) + 1
            with_embeddings = sum(1 for _, r in self._rows if r.embedding is not None)
        return StoreStats(
            total_chunks=sum(by_source.values()),
            chunks_with_embeddings=with_embeddings,
            chunks_by_source=dict(sorted(by_source.items())),
        )
