"""
Embedding Client -- Calls a remote embedding model and turns whatever it
returns into a vector of exactly `embedding_dimension` floats.

=== Why so much care about the response shape? ===
Different embedding servers wrap the same thing -- a list of numbers -- in
different envelopes:

  - Gemini embedContent:        {"embedding": {"values": [0.1, ...]}}
  - Text Embeddings Inference:  [[0.1, ...]]            (one vector per input)
  - OpenAI-compatible servers:  {"data": [{"embedding": [0.1, ...]}]}

Instead of sniffing shapes ad hoc, extraction is an ordered chain of small
pure functions (`EXTRACTION_STRATEGIES`). Each takes the decoded response and
returns a vector or None; the first non-empty vector wins:

  1. extract_values_field      -- the canonical embedding.values field
  2. extract_bare_array        -- a plain array (or a batch holding one array)
  3. extract_alternate_fields  -- best-effort scan of other known field names

If every strategy comes back empty, the call fails with EmbeddingUnavailable.

=== Dimension reconciliation ===
The pgvector column has a fixed size. A vector longer than the configured
dimension keeps its first `dimension` entries; a shorter one is right-padded
with zeros. Both cases log a warning, because they usually mean the model
behind the URL is not the one the table was built for.
"""

import logging
import time
from collections.abc import Callable, Mapping
from numbers import Real
from typing import Any, Optional, Protocol

import httpx

from .config import Config
from .errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)

Extractor = Callable[[Any], Optional[list[float]]]

# Field names tried, in order, by the best-effort scan.
ALTERNATE_FIELDS = ("values", "embedding", "embeddings", "vector", "data")


def _field(obj: Any, name: str) -> Any:
    """Read `name` from a mapping (JSON object) or an attribute (SDK object)."""
    if isinstance(obj, Mapping):
        return obj.get(name)
    if isinstance(obj, (str, bytes, list, tuple)):
        return None
    return getattr(obj, name, None)


def _as_vector(value: Any) -> Optional[list[float]]:
    """Return `value` as a list of floats if it is a non-empty flat numeric array."""
    if value is None:
        return None
    if hasattr(value, "tolist") and not isinstance(value, (list, tuple)):
        value = value.tolist()
    if not isinstance(value, (list, tuple)) or not value:
        return None
    if not all(isinstance(x, Real) and not isinstance(x, bool) for x in value):
        return None
    return [float(x) for x in value]


def extract_values_field(raw: Any) -> Optional[list[float]]:
    """Canonical shape: an `embedding` object exposing a `values` array."""
    return _as_vector(_field(_field(raw, "embedding"), "values"))


def extract_bare_array(raw: Any) -> Optional[list[float]]:
    """A bare array, a batch containing a single array, or `embedding` holding an array."""
    vector = _as_vector(raw)
    if vector:
        return vector
    if isinstance(raw, (list, tuple)) and len(raw) == 1:
        vector = _as_vector(raw[0])
        if vector:
            return vector
    return _as_vector(_field(raw, "embedding"))


def extract_alternate_fields(raw: Any, _depth: int = 0) -> Optional[list[float]]:
    """Scan ALTERNATE_FIELDS, descending into the first item of nested batches."""
    for name in ALTERNATE_FIELDS:
        value = _field(raw, name)
        if value is None:
            continue

        vector = _as_vector(value)
        if vector:
            return vector

        # Batch envelopes such as {"data": [{"embedding": [...]}]} or
        # {"embeddings": [{"values": [...]}]}: look at the first item.
        if isinstance(value, (list, tuple)) and value:
            value = value[0]
            vector = _as_vector(value)
            if vector:
                return vector

        if _depth < 2:
            vector = extract_alternate_fields(value, _depth + 1)
            if vector:
                return vector
    return None


EXTRACTION_STRATEGIES: tuple[Extractor, ...] = (
    extract_values_field,
    extract_bare_array,
    extract_alternate_fields,
)


def extract_vector(
    raw: Any,
    strategies: tuple[Extractor, ...] = EXTRACTION_STRATEGIES,
) -> list[float]:
    """
    Run the extraction strategies in order and return the first vector found.

    Raises
    ------
    EmbeddingUnavailable
        If no strategy yields a non-empty numeric array.
    """
    for strategy in strategies:
        vector = strategy(raw)
        if vector:
            return vector
    raise EmbeddingUnavailable(
        f"Failed to extract an embedding vector from response of type {type(raw).__name__}"
    )


def fit_dimension(vector: list[float], dimension: int) -> list[float]:
    """
    Truncate or zero-pad `vector` to exactly `dimension` entries.

    Examples (dimension=4)
    ----------------------
      [1, 2, 3, 4, 5, 6]  ->  [1, 2, 3, 4]
      [1, 2]              ->  [1, 2, 0, 0]
    """
    if len(vector) > dimension:
        logger.warning(
            "Embedding is longer than expected (%d > %d), truncating",
            len(vector),
            dimension,
        )
        return list(vector[:dimension])
    if len(vector) < dimension:
        logger.warning(
            "Embedding is shorter than expected (%d < %d), padding with zeros",
            len(vector),
            dimension,
        )
        return list(vector) + [0.0] * (dimension - len(vector))
    return list(vector)


class Embedder(Protocol):
    async def embed(self, text: str, prefix: str = "") -> list[float]: ...


class EmbeddingClient:
    """
    Async HTTP client for the embedding model.

    One call embeds one text. Ingestion calls this sequentially (with a
    throttle between calls, see knowledge_rag.throttle), so at most one
    request is in flight per ingestion task.
    """

    def __init__(
        self,
        base_url: str,
        dimension: int = 768,
        api: str = "tei",
        model: str = "text-embedding-004",
        api_key: str = "",
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Parameters
        ----------
        base_url : str
            URL of the embedding server, e.g. "http://embedding:8080".
        dimension : int
            Length of every returned vector (must match the pgvector column).
        api : str
            Wire format: "tei", "gemini" or "openai".
        model : str
            Model name for Gemini / OpenAI-compatible servers.
        api_key : str
            Sent as x-goog-api-key (Gemini) or a Bearer token (others).
        http_client : httpx.AsyncClient, optional
            Injected client; when omitted one is created and owned here.
        """
        if api not in ("tei", "gemini", "openai"):
            raise ValueError(f"Unsupported embedding api: {api!r}")

        self.base_url = base_url.rstrip("/")
        self.dimension = dimension
        self.api = api
        self.model = model
        self.api_key = api_key
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(
        cls, config: Config, http_client: httpx.AsyncClient | None = None
    ) -> "EmbeddingClient":
        return cls(
            base_url=config.embedding_url,
            dimension=config.embedding_dimension,
            api=config.embedding_api,
            model=config.embedding_model,
            api_key=config.embedding_api_key,
            timeout=config.embedding_timeout,
            http_client=http_client,
        )

    def _build_request(self, text: str) -> tuple[str, dict, dict]:
        """Return (url, json body, headers) for the configured wire format."""
        headers: dict[str, str] = {}

        if self.api == "gemini":
            if self.api_key:
                headers["x-goog-api-key"] = self.api_key
            return (
                f"{self.base_url}/models/{self.model}:embedContent",
                {
                    "model": f"models/{self.model}",
                    "content": {"parts": [{"text": text}]},
                },
                headers,
            )

        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        if self.api == "openai":
            return (
                f"{self.base_url}/v1/embeddings",
                {"model": self.model, "input": text},
                headers,
            )

        # TEI expects a batch under "inputs" and returns one vector per input.
        return f"{self.base_url}/embed", {"inputs": [text]}, headers

    async def embed(self, text: str, prefix: str = "") -> list[float]:
        """
        Embed a single text.

        Parameters
        ----------
        text : str
            The text to embed.
        prefix : str
            Optional task prefix (e.g. "search_query: ") prepended to the text.

        Returns
        -------
        list[float]
            A vector of exactly `self.dimension` floats.

        Raises
        ------
        EmbeddingUnavailable
            On transport errors, error status codes, invalid JSON, or a
            response with no extractable vector.
        """
        start = time.monotonic()
        url, payload, headers = self._build_request(f"{prefix}{text}")

        try:
            response = await self.http_client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            raw = response.json()
        except httpx.HTTPError as exc:
            raise EmbeddingUnavailable(f"Embedding request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingUnavailable(f"Embedding server at {url} returned invalid JSON") from exc

        vector = fit_dimension(extract_vector(raw), self.dimension)

        logger.debug(
            "Embedded %d chars in %.3fs (dimension=%d)",
            len(text),
            time.monotonic() - start,
            len(vector),
        )
        return vector

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
