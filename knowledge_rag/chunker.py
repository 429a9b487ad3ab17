"""
Text Chunking Module -- Splits documents into fixed-size word windows.

=== Why do we chunk documents? ===
The generation model only gets to see a handful of snippets per question.
By splitting every document into small chunks, we can:
  1. Store each chunk as its own row (with its own vector) in the database.
  2. At query time, retrieve ONLY the few chunks closest to the question.
  3. Send just those chunks to the model, keeping the prompt focused.

=== Why words, and why 400 of them? ===
Counting whitespace-separated words needs no tokenizer and gives the same
boundaries for every embedding model we might point at. 400 words is large
enough for a chunk to carry a complete thought and small enough to stay well
inside the embedding model's input limit.

Windows do NOT overlap: concatenating the chunks' words in order gives back
exactly the words of the original text. The position of a chunk in the
returned list becomes its chunk_index in the store.

This module is data-source agnostic -- PDFs, articles and chat feeds are all
chunked the same way.
"""

import logging

logger = logging.getLogger(__name__)

DEFAULT_WORDS_PER_CHUNK = 400


def chunk_text(text: str, words_per_chunk: int = DEFAULT_WORDS_PER_CHUNK) -> list[str]:
    """
    Split text into consecutive windows of at most `words_per_chunk` words.

    Parameters
    ----------
    text : str
        The raw document text.
    words_per_chunk : int
        Window size in words. Must be at least 1.

    Returns
    -------
    list[str]
        Chunks in document order. Each chunk is its words joined by single
        spaces. Empty or whitespace-only input produces no chunks.

    Example (words_per_chunk=3)
    ---------------------------
      "a b  c\\nd e"  ->  ["a b c", "d e"]
    """
    if words_per_chunk < 1:
        raise ValueError(f"words_per_chunk must be >= 1, got {words_per_chunk}")

    words = text.split()

    chunks: list[str] = []
    for start in range(0, len(words), words_per_chunk):
        chunk = " ".join(words[start : start + words_per_chunk]).strip()
        if chunk:
            chunks.append(chunk)

    logger.debug(
        "Chunked %d words into %d chunks (words_per_chunk=%d)",
        len(words),
        len(chunks),
        words_per_chunk,
    )
    return chunks
