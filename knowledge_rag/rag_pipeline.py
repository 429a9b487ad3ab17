"""
RAG Pipeline -- answers questions from the knowledge base.

For every question:

    1. CHECK  -- if the store is empty, say so and stop. No model is called.
    2. EMBED  -- turn the question into a vector with the embedding model.
    3. SEARCH -- fetch the k chunks closest to that vector (cosine similarity).
                 No chunks at all is a normal outcome with its own message.
    4. PROMPT -- instructions, then the chunks labelled with their source,
                 then the question, verbatim.
    5. GENERATE -- send the prompt to the generation model and return its
                 answer unmodified.

There is no similarity threshold: the k best chunks are always
sent, even if they are poor matches, and the instructions tell the model to
say so when the context doesn't answer the question.

Embedding and generation failures propagate to the caller (the HTTP layer
turns them into error responses). Nothing is retried.
"""

import asyncio
import logging
import time

from .config import Config
from .embedder import Embedder
from .generator import TextGenerator
from .vector_store import KnowledgeStore, ScoredChunk

logger = logging.getLogger(__name__)

EMPTY_KNOWLEDGE_BASE_MESSAGE = (
    "The knowledge base is empty. "
    "Please load data first by calling the /api/load_data endpoint."
)

NO_RELEVANT_CHUNKS_MESSAGE = (
    "I couldn't find any relevant information in the knowledge base "
    "to answer your question."
)

PROMPT_PREAMBLE = """You are a helpful assistant answering questions based on the provided knowledge base.

Instructions:
- Answer the question based ONLY on the information provided in the context below
- If the context doesn't contain enough information to answer the question, say so clearly
- Do not make up information or use knowledge outside of the provided context
- Be concise and accurate
- Cite the source when relevant (e.g., "According to [source name]...")"""

CONTEXT_SEPARATOR = "\n\n---\n\n"


class RAGPipeline:
    """
    Orchestrates retrieval and answering.

    Holds the three collaborators -- the knowledge store, the embedding
    client and the generation client -- which are passed in rather than
    created here, so tests can substitute fakes.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: Embedder,
        generator: TextGenerator,
        top_k: int = 5,
        query_prefix: str = "",
    ) -> None:
        """
        Args:
            store: Knowledge store to search.
            embedder: Embedding client used for the question.
            generator: Text-generation client.
            top_k: Default number of chunks per question.
            query_prefix: Task prefix prepended to questions before embedding.
        """
        self.store = store
        self.embedder = embedder
        self.generator = generator
        self.top_k = top_k
        self.query_prefix = query_prefix

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: KnowledgeStore,
        embedder: Embedder,
        generator: TextGenerator,
    ) -> "RAGPipeline":
        return cls(
            store=store,
            embedder=embedder,
            generator=generator,
            top_k=config.rag_top_k,
            query_prefix=config.embedding_query_prefix,
        )

    async def retrieve(self, question: str, k: int) -> list[ScoredChunk]:
        """Embed the question and return its k nearest chunks, best first."""
        start = time.monotonic()
        query_vector = await self.embedder.embed(question, prefix=self.query_prefix)
        results = await asyncio.to_thread(self.store.nearest_neighbors, query_vector, k)

        logger.info(
            "Retrieved %d chunks in %.3fs (k=%d)", len(results), time.monotonic() - start, k
        )
        for i, result in enumerate(results, start=1):
            logger.debug(
                "  Result %d: similarity=%.4f, source=%s:%s, chunk=%d",
                i,
                result.similarity,
                result.chunk.source,
                result.chunk.source_id,
                result.chunk.chunk_index,
            )
        return results

    def build_prompt(self, question: str, context_chunks: list[ScoredChunk]) -> str:
        """
        Assemble the prompt: instructions, labelled context, then the question.

        Each chunk is rendered as

            [Source 1: pdf - White Paper.pdf]
            <chunk text>

        with chunks separated by a "---" line.
        """
        context_text = CONTEXT_SEPARATOR.join(
            f"[Source {i}: {scored.chunk.source} - {scored.chunk.source_id}]\n{scored.chunk.content}"
            for i, scored in enumerate(context_chunks, start=1)
        )
        logger.debug("Context length: %d characters", len(context_text))

        return (
            f"{PROMPT_PREAMBLE}\n\n"
            f"Context from knowledge base:\n{context_text}\n\n"
            f"User question: {question}\n\n"
            f"Answer:"
        )

    async def answer(self, question: str, k: int | None = None) -> str:
        """
        Answer a question from the knowledge base.

        Args:
            question: The user's natural-language question.
            k: Number of chunks to retrieve; defaults to `top_k`.

        Returns:
            The generation model's answer, or one of the fixed messages when
            the store is empty or nothing was retrieved.

        Raises:
            EmbeddingUnavailable: if the question cannot be embedded.
            GenerationUnavailable: if the generation model fails.
            StoreUnavailable: if the store cannot be reached.
        """
        k = self.top_k if k is None else k
        total_start = time.monotonic()
        logger.info("Processing question: %s", question[:100])

        total_chunks = await asyncio.to_thread(self.store.count)
        if total_chunks == 0:
            logger.info("Knowledge base is empty, not calling any model")
            return EMPTY_KNOWLEDGE_BASE_MESSAGE

        results = await self.retrieve(question, k)
        if not results:
            logger.info("No chunks with embeddings found (%d rows in store)", total_chunks)
            return NO_RELEVANT_CHUNKS_MESSAGE

        prompt = self.build_prompt(question, results)
        answer = await self.generator.generate(prompt)

        logger.info(
            "Answered in %.3fs using %d chunks (answer length=%d chars)",
            time.monotonic() - total_start,
            len(results),
            len(answer),
        )
        return answer
