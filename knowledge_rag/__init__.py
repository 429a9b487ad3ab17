"""Retrieval-augmented question answering over a PostgreSQL + pgvector knowledge base."""

__version__ = "0.1.0"
