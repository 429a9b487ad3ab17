"""
Ingestion Job -- one-shot batch load of the whole source catalog.

Runs the same pipeline as POST /api/load_data, without the HTTP server:

    python -m knowledge_rag.ingest

Useful as a Kubernetes Job or CronJob. Sources that are already stored are
skipped, so running it twice is harmless. The process exits with status 1
if any source failed, so the scheduler can flag the run.
"""

import asyncio
import logging
import sys

import httpx

from .config import get_config
from .embedder import EmbeddingClient
from .ingestion import IngestionOrchestrator
from .sources import build_source_catalog
from .vector_store import PgVectorStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


async def main() -> int:
    """Load every catalog source; return the process exit status."""
    config = get_config()
    logging.getLogger().setLevel(config.log_level)
    logger.info("Configuration loaded:")
    logger.info("  Table: %s (dim=%d)", config.knowledge_table, config.embedding_dimension)
    logger.info("  Embedding: %s (%s)", config.embedding_url, config.embedding_api)
    logger.info("  Chunking: %d words per chunk", config.chunk_size_words)

    store = PgVectorStore.from_config(config)
    embedder = EmbeddingClient.from_config(config)
    orchestrator = IngestionOrchestrator.from_config(config, store, embedder)

    try:
        store.ensure_schema()
        async with httpx.AsyncClient(timeout=config.source_timeout) as http_client:
            catalog = build_source_catalog(config, http_client)
            logger.info("Found %d source(s) to process", len(catalog))
            report = await orchestrator.load_all(catalog)

        stats = store.stats()
        logger.info(
            "Table '%s' now contains %d chunks (%s)",
            config.knowledge_table,
            stats.total_chunks,
            ", ".join(f"{source}={n}" for source, n in stats.chunks_by_source.items()) or "empty",
        )
    finally:
        await embedder.aclose()
        store.close()

    if not report.ok:
        for key, error in report.failed.items():
            logger.error("  %s: %s", key, error)
        logger.error("Ingestion finished with %d failed source(s)", len(report.failed))
        return 1

    logger.info("Ingestion complete!")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
