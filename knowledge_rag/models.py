"""
Shared types: the source categories stored in the knowledge base and the
Pydantic models that shape the HTTP API's requests and responses.

FastAPI uses the Pydantic models below to validate incoming JSON and to
generate the OpenAPI documentation served at /docs.
"""

from enum import Enum

from pydantic import BaseModel, Field


class SourceKind(str, Enum):
    """Category of the document a chunk came from."""

    PDF = "pdf"
    ARTICLE = "article"
    CHAT_FEED = "slack"


def source_value(source: "SourceKind | str") -> str:
    """Plain string stored in the `source` column."""
    return source.value if isinstance(source, SourceKind) else str(source)


class AskRequest(BaseModel):
    """Body of POST /api/ask."""

    question: str = Field(..., min_length=1, description="Natural-language question")


class AskResponse(BaseModel):
    """The generator's answer, returned verbatim."""

    answer: str


class LoadResponse(BaseModel):
    """Outcome of a bulk ingestion run, keyed by "source:source_id"."""

    loaded: list[str]
    skipped: list[str]
    empty: list[str]
    failed: dict[str, str]


class StatsResponse(BaseModel):
    """Population of the knowledge store."""

    total_chunks: int
    chunks_with_embeddings: int
    chunks_by_source: dict[str, int]


class RemoveResponse(BaseModel):
    source: SourceKind
    source_id: str
    removed: int
