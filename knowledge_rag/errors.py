"""Errors raised by the retrieval pipeline and its collaborators."""


class RAGError(Exception):
    """Base class for every failure the pipeline reports."""


class SourceUnavailable(RAGError):
    """A document source (file, article URL, chat feed) could not be read."""


class EmbeddingUnavailable(RAGError):
    """The embedding model failed or returned no usable vector."""


class GenerationUnavailable(RAGError):
    """The text-generation model failed or returned no usable answer."""


class StoreUnavailable(RAGError):
    """The knowledge store could not be reached."""
