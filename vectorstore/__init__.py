"""Vector store module for the tenant RAG pipeline.

Provides token-aware chunking, embedding generation, and namespaced
vector storage (in-memory or ChromaDB).
"""
