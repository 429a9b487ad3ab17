"""
FastAPI application for the knowledge base.

This is a thin HTTP adapter around the two orchestrators:

  GET    /api/health                         liveness + chunk count
  POST   /api/ask                            {"question": ...} -> {"answer": ...}
  POST   /api/load_data                      ingest every catalog source
  GET    /api/stats                          chunks per source
  DELETE /api/sources/{source}/{source_id}   remove a source so it can be re-ingested

WHAT HAPPENS AT STARTUP?
The lifespan context manager builds the store, the embedding and generation
clients, and the source catalog once, and keeps them on app.state for every
request. If AUTO_LOAD_DATA=true and the store is empty, a full ingestion is
started in the background so the server can take requests right away.

ERRORS
Pipeline failures are turned into status codes here:
  - 502 when a remote collaborator (source, embedding, generation) fails
  - 503 when the database is unreachable
  - 500 for anything else
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import Config, get_config
from .embedder import Embedder, EmbeddingClient
from .errors import (
    EmbeddingUnavailable,
    GenerationUnavailable,
    SourceUnavailable,
    StoreUnavailable,
)
from .generator import GenerationClient, TextGenerator
from .ingestion import IngestionOrchestrator
from .models import (
    AskRequest,
    AskResponse,
    LoadResponse,
    RemoveResponse,
    SourceKind,
    StatsResponse,
)
from .rag_pipeline import RAGPipeline
from .sources import SourceSpec, build_source_catalog
from .vector_store import KnowledgeStore, PgVectorStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    store: KnowledgeStore
    embedder: Embedder
    generator: TextGenerator
    ingestion: IngestionOrchestrator
    pipeline: RAGPipeline
    catalog: list[SourceSpec]
    load_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def build_services(config: Config, http_client: httpx.AsyncClient) -> Services:
    """Wire the production collaborators from configuration."""
    store = PgVectorStore.from_config(config)
    try:
        store.ensure_schema()
    except StoreUnavailable:
        # Keep serving; the store retries schema creation on its next operation.
        logger.error("Failed to connect to the database. Store operations will retry.", exc_info=True)

    embedder = EmbeddingClient.from_config(config)
    generator = GenerationClient.from_config(config)
    return Services(
        store=store,
        embedder=embedder,
        generator=generator,
        ingestion=IngestionOrchestrator.from_config(config, store, embedder),
        pipeline=RAGPipeline.from_config(config, store, embedder, generator),
        catalog=build_source_catalog(config, http_client),
    )


async def _run_load(services: Services):
    async with services.load_lock:
        return await services.ingestion.load_all(services.catalog)


async def _auto_load(services: Services) -> None:
    logger.info("Database is empty. Auto-loading data (this may take several minutes)...")
    try:
        report = await _run_load(services)
    except Exception:
        logger.error("Failed to auto-load data. Call POST /api/load_data to retry.", exc_info=True)
        return
    logger.info("Auto-load finished: %d sources loaded, %d failed", len(report.loaded), len(report.failed))


def _http_error(exc: Exception) -> HTTPException:
    """Map a pipeline failure to an HTTP error, logging the traceback."""
    if isinstance(exc, (SourceUnavailable, EmbeddingUnavailable, GenerationUnavailable)):
        status_code = 502
    elif isinstance(exc, StoreUnavailable):
        status_code = 503
    else:
        status_code = 500
    logger.error("Error processing request: %s", exc, exc_info=exc)
    return HTTPException(status_code=status_code, detail=str(exc))


def get_services(request: Request) -> Services:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=503,
            detail="Services not initialized. The server may still be starting up.",
        )
    return services


router = APIRouter(prefix="/api")


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    """Liveness probe; also reports how many chunks are stored."""
    try:
        chunks = await asyncio.to_thread(services.store.count)
    except StoreUnavailable as exc:
        return JSONResponse(status_code=503, content={"status": "degraded", "detail": str(exc)})
    return {"status": "healthy", "chunks": chunks}


@router.post("/ask", response_model=AskResponse)
async def ask(body: AskRequest, services: Services = Depends(get_services)):
    """Answer a question from the knowledge base."""
    try:
        answer = await services.pipeline.answer(body.question)
    except Exception as exc:
        raise _http_error(exc) from exc
    return AskResponse(answer=answer)


@router.post("/load_data", response_model=LoadResponse)
async def load_data(services: Services = Depends(get_services)):
    """Ingest every catalog source that isn't stored yet."""
    if services.load_lock.locked():
        raise HTTPException(status_code=409, detail="A data load is already running")
    try:
        report = await _run_load(services)
    except Exception as exc:
        raise _http_error(exc) from exc
    return LoadResponse(
        loaded=report.loaded,
        skipped=report.skipped,
        empty=report.empty,
        failed=report.failed,
    )


@router.get("/stats", response_model=StatsResponse)
async def stats(services: Services = Depends(get_services)):
    try:
        store_stats = await asyncio.to_thread(services.store.stats)
    except Exception as exc:
        raise _http_error(exc) from exc
    return StatsResponse(
        total_chunks=store_stats.total_chunks,
        chunks_with_embeddings=store_stats.chunks_with_embeddings,
        chunks_by_source=store_stats.chunks_by_source,
    )


@router.delete("/sources/{source}/{source_id:path}", response_model=RemoveResponse)
async def remove_source(source: SourceKind, source_id: str, services: Services = Depends(get_services)):
    """Delete a source's chunks so the next load ingests it again."""
    if services.load_lock.locked():
        raise HTTPException(status_code=409, detail="A data load is running")
    try:
        removed = await asyncio.to_thread(services.store.remove, source.value, source_id)
    except Exception as exc:
        raise _http_error(exc) from exc
    return RemoveResponse(source=source, source_id=source_id, removed=removed)


def create_app(config: Optional[Config] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Configuration; read from the environment when omitted.
        services: Pre-built collaborators (used by tests). When omitted they
            are built from `config` at startup and closed at shutdown.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client: Optional[httpx.AsyncClient] = None
        owned = services is None
        if owned:
            http_client = httpx.AsyncClient(timeout=config.source_timeout)
            app.state.services = build_services(config, http_client)
        else:
            app.state.services = services
        active: Services = app.state.services

        logger.info("Knowledge base service initialized")
        logger.info("  Embedding: %s (%s, dim=%d)", config.embedding_url, config.embedding_api, config.embedding_dimension)
        logger.info("  Generation: %s (%s)", config.generation_url, config.generation_model)
        logger.info("  Top-K: %d, chunk size: %d words", config.rag_top_k, config.chunk_size_words)

        load_task: Optional[asyncio.Task] = None
        try:
            total_chunks = await asyncio.to_thread(active.store.count)
            logger.info("Current chunks in database: %d", total_chunks)
            if total_chunks == 0:
                if config.auto_load_data:
                    load_task = asyncio.create_task(_auto_load(active))
                else:
                    logger.info("Database is empty. To load data, call: POST /api/load_data")
                    logger.info("Or set AUTO_LOAD_DATA=true to auto-load on startup")
        except StoreUnavailable:
            logger.error("Failed to connect to the database. Server will continue but database operations may fail.")

        yield

        if load_task is not None and not load_task.done():
            load_task.cancel()
        if owned:
            await active.embedder.aclose()
            await active.generator.aclose()
            await http_client.aclose()
            active.store.close()
        logger.info("Knowledge base service shut down")

    app = FastAPI(
        title="Knowledge Base RAG",
        description="Ask questions about PDFs, articles and chat feeds using Retrieval-Augmented Generation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


logging.basicConfig(
    level=get_config().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = create_app()
