"""Per-tenant RAG pipeline: chunk -> embed -> store, and retrieve -> context.

One pipeline instance serves one org and one vector-store namespace.
Vector ids are derived from ``(doc_id, chunk_index)``, so re-ingesting a
document overwrites its previous vectors instead of duplicating them.

Document deletion and update are not atomic: ``update_document`` deletes
then re-ingests, and a failure in between leaves the document absent
until the next successful ingest.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from analytics.collector import EMBEDDINGS_CREATED, UsageEvent, UsageSink
from llm.citations import format_citation
from schemas.document import ChunkOptions, Document, IngestResult
from vectorstore.chunker import Chunker
from vectorstore.embedder import EmbeddingProvider, build_embedding_provider
from vectorstore.store import Match, VectorRecord, VectorStore, build_vector_store

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 6
DELETE_SCAN_LIMIT = 10000
CONTEXT_SEPARATOR = "\n\n---\n\n"

# Keys written by the pipeline; document metadata never overrides them
RESERVED_METADATA_KEYS = (
    "org_id",
    "doc_id",
    "chunk_index",
    "uri",
    "title",
    "content",
    "token_count",
    "start_offset",
    "end_offset",
)

# Moved out of ``metadata`` into RetrievedChunk's own fields
_PROJECTED_KEYS = {"org_id", "doc_id", "chunk_index", "content"}


class InvariantViolation(AssertionError):
    """Internal consistency check failed (e.g. embedding count != chunk count)."""


@dataclass
class RetrievedChunk:
    """A single retrieved chunk with metadata and relevance score."""

    chunk_id: str
    doc_id: str
    chunk_index: int
    content: str
    score: float  # cosine similarity, higher = more relevant
    metadata: dict = field(default_factory=dict)

    @property
    def title(self) -> str:
        return str(self.metadata.get("title") or "")

    @property
    def uri(self) -> str:
        return str(self.metadata.get("uri") or "")

    @classmethod
    def from_match(cls, match: Match) -> "RetrievedChunk":
        meta = match.metadata
        return cls(
            chunk_id=match.id,
            doc_id=str(meta.get("doc_id", "")),
            chunk_index=int(meta.get("chunk_index", 0)),
            content=str(meta.get("content", "")),
            score=match.score,
            metadata={k: v for k, v in meta.items() if k not in _PROJECTED_KEYS},
        )


def chunk_vector_id(doc_id: str, chunk_index: int) -> str:
    """Deterministic vector id for one chunk of one document."""
    return hashlib.sha256(f"{doc_id}:{chunk_index}".encode("utf-8")).hexdigest()[:32]


def default_namespace(org_id: str) -> str:
    return f"{org_id}-vectors"


def build_context(chunks: list[RetrievedChunk]) -> str:
    """Render chunks as cited blocks, in the order given. Empty input gives ""."""
    if not chunks:
        return ""
    blocks = [
        f"Document {i} {format_citation(chunk.doc_id, chunk.chunk_index)}:\n"
        f"Title: {chunk.title}\n"
        f"Content: {chunk.content}"
        for i, chunk in enumerate(chunks, 1)
    ]
    return CONTEXT_SEPARATOR.join(blocks)


class RAGPipeline:
    """Ingest and retrieval for one org over one vector-store namespace."""

    def __init__(
        self,
        org_id: str,
        embedder: EmbeddingProvider,
        store: VectorStore,
        chunker: Optional[Chunker] = None,
        namespace: Optional[str] = None,
        chunk_options: Optional[ChunkOptions] = None,
        usage_sink: Optional[UsageSink] = None,
    ):
        self.org_id = org_id
        self.namespace = namespace or default_namespace(org_id)
        self.embedder = embedder
        self.store = store
        self.chunker = chunker or Chunker()
        self.chunk_options = chunk_options or ChunkOptions()
        self.usage_sink = usage_sink

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _chunk_metadata(self, document: Document, chunk) -> dict[str, Any]:
        reserved = {
            "org_id": self.org_id,
            "doc_id": document.id,
            "chunk_index": chunk.index,
            "uri": document.uri,
            "title": document.title,
            "content": chunk.content,
            "token_count": chunk.token_count,
            "start_offset": chunk.start_offset,
            "end_offset": chunk.end_offset,
        }
        overridden = set(document.metadata) & set(RESERVED_METADATA_KEYS)
        if overridden:
            logger.debug(
                "Document %s metadata keys %s are reserved and were ignored",
                document.id, sorted(overridden),
            )
        return {**document.metadata, **reserved}

    async def ingest(self, document: Document) -> IngestResult:
        """Chunk, embed and upsert one document.

        Documents that produce no chunks are not an error: the result has
        ``embedded=False`` and zero counts.
        """
        t0 = time.perf_counter()
        chunks = self.chunker.chunk(document.content, self.chunk_options)
        if not chunks:
            logger.info("[%s] Document %s produced no chunks", self.org_id, document.id)
            return IngestResult(doc_id=document.id)

        embeddings = await self.embedder.embed([chunk.content for chunk in chunks])
        if len(embeddings) != len(chunks):
            raise InvariantViolation(
                f"Embedding provider returned {len(embeddings)} vectors for {len(chunks)} chunks "
                f"(document {document.id})"
            )

        vectors = [
            VectorRecord(
                id=chunk_vector_id(document.id, chunk.index),
                embedding=embedding,
                metadata=self._chunk_metadata(document, chunk),
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        await self.store.upsert(self.namespace, vectors)

        total_tokens = sum(chunk.token_count for chunk in chunks)
        if self.usage_sink is not None:
            self.usage_sink.record(UsageEvent(
                org_id=self.org_id,
                kind=EMBEDDINGS_CREATED,
                value=len(vectors),
                metadata={"doc_id": document.id, "tokens": total_tokens},
            ))

        logger.info(
            "[%s] Ingested %s: %d chunks, %d tokens in %.2fs",
            self.org_id, document.id, len(chunks), total_tokens, time.perf_counter() - t0,
        )
        return IngestResult(
            doc_id=document.id,
            chunk_count=len(chunks),
            total_tokens=total_tokens,
            embedded=True,
        )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        filter: Optional[dict] = None,
        min_score: float = 0.0,
    ) -> list[RetrievedChunk]:
        """Nearest chunks to ``query`` with score >= ``min_score``, best first."""
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")

        query_vector = (await self.embedder.embed([query]))[0]
        matches = await self.store.query(self.namespace, query_vector, top_k=top_k, filter=filter)
        chunks = [RetrievedChunk.from_match(m) for m in matches if m.score >= min_score]
        logger.debug(
            "[%s] Retrieved %d/%d chunks for query '%.60s'",
            self.org_id, len(chunks), len(matches), query,
        )
        return chunks

    def build_context(self, chunks: list[RetrievedChunk]) -> str:
        return build_context(chunks)

    # ------------------------------------------------------------------
    # Document lifecycle
    # ------------------------------------------------------------------

    async def delete_document(self, doc_id: str) -> int:
        """Remove every vector of ``doc_id``; returns how many were removed.

        The store has no delete-by-filter, so chunk ids are enumerated with
        a filtered query and deleted by id, one scan page at a time.
        """
        scan_vector = [1.0] * self.embedder.dimensions
        removed = 0
        while True:
            matches = await self.store.query(
                self.namespace, scan_vector, top_k=DELETE_SCAN_LIMIT, filter={"doc_id": doc_id}
            )
            if not matches:
                break
            await self.store.delete(self.namespace, [m.id for m in matches])
            removed += len(matches)
            if len(matches) < DELETE_SCAN_LIMIT:
                break

        logger.info("[%s] Deleted %d vectors for document %s", self.org_id, removed, doc_id)
        return removed

    async def update_document(self, document: Document) -> IngestResult:
        """Delete then re-ingest. Not atomic."""
        await self.delete_document(document.id)
        return await self.ingest(document)

    async def get_stats(self) -> dict:
        return {
            "namespace": self.namespace,
            "vector_count": await self.store.count(self.namespace),
            "dimensions": self.embedder.dimensions,
        }

    async def clear(self) -> None:
        """Remove the whole namespace."""
        await self.store.delete_namespace(self.namespace)
        logger.warning("[%s] Cleared namespace '%s'", self.org_id, self.namespace)


class BatchRAGPipeline(RAGPipeline):
    """Adds concurrent multi-document ingest and multi-query retrieval."""

    async def ingest_batch(
        self,
        documents: list[Document],
        concurrency: int = 5,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> list[IngestResult]:
        """Ingest documents in concurrent groups of ``concurrency``.

        Results are in input order. ``on_progress(completed, total)`` is
        called after each group.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        results: list[IngestResult] = []
        for start in range(0, len(documents), concurrency):
            group = documents[start:start + concurrency]
            results.extend(await asyncio.gather(*(self.ingest(doc) for doc in group)))
            if on_progress is not None:
                on_progress(len(results), len(documents))
        return results

    async def retrieve_multi(
        self,
        queries: list[str],
        top_k: int = DEFAULT_TOP_K,
        filter: Optional[dict] = None,
        min_score: float = 0.0,
        deduplicate: bool = True,
    ) -> list[RetrievedChunk]:
        """Retrieve for every query concurrently; merged, best score first."""
        result_sets = await asyncio.gather(
            *(self.retrieve(q, top_k=top_k, filter=filter, min_score=min_score) for q in queries)
        )
        chunks = [chunk for result_set in result_sets for chunk in result_set]

        if deduplicate:
            seen: set[str] = set()
            unique = []
            for chunk in chunks:
                if chunk.chunk_id in seen:
                    continue
                seen.add(chunk.chunk_id)
                unique.append(chunk)
            chunks = unique

        return sorted(chunks, key=lambda c: c.score, reverse=True)


def build_rag_pipeline(
    settings,
    org_id: str,
    namespace: Optional[str] = None,
    usage_sink: Optional[UsageSink] = None,
    embedder: Optional[EmbeddingProvider] = None,
    store: Optional[VectorStore] = None,
) -> BatchRAGPipeline:
    """Assemble a pipeline from ``settings``; explicit collaborators take precedence."""
    return BatchRAGPipeline(
        org_id=org_id,
        embedder=embedder or build_embedding_provider(settings),
        store=store or build_vector_store(settings),
        chunker=Chunker(model=settings.tokenizer_model),
        namespace=namespace,
        chunk_options=settings.chunk_options(),
        usage_sink=usage_sink,
    )
