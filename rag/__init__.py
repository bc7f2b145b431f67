"""Retrieval-augmented generation over per-tenant knowledge bases.

Ingest: document -> chunk -> embed -> upsert into the org's namespace.
Query: embed -> similarity search -> cited context -> language model.
"""

from rag.pipeline import BatchRAGPipeline, RAGPipeline, RetrievedChunk, build_context

__all__ = ["BatchRAGPipeline", "RAGPipeline", "RetrievedChunk", "build_context"]
