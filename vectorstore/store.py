"""Vector store interface with in-memory and ChromaDB backends.

Every operation is scoped to a namespace, the per-tenant isolation unit;
no query ever spans two namespaces. Namespaces are created lazily on the
first upsert, with the dimensionality of the vectors in that call, and
querying a namespace that does not exist yet returns no matches.

Chroma is synchronous; its calls run in a worker thread so the event
loop is never blocked.
"""

import asyncio
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import orjson

from vectorstore.embedder import cosine_similarity

logger = logging.getLogger(__name__)


class VectorStoreError(Exception):
    """Vector dimensionality does not match the namespace."""


@dataclass
class VectorRecord:
    id: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Match:
    """One similarity-search hit. ``score`` is cosine similarity, higher is better."""

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


def _active_filter(filter: Optional[dict]) -> dict:
    """Filter entries with a ``None`` value place no constraint."""
    return {k: v for k, v in (filter or {}).items() if v is not None}


class VectorStore(ABC):
    """Namespace-scoped vector storage and similarity search."""

    @abstractmethod
    async def upsert(self, namespace: str, vectors: list[VectorRecord]) -> None:
        """Insert or overwrite vectors by id."""

    @abstractmethod
    async def query(
        self,
        namespace: str,
        vector: list[float],
        top_k: int = 10,
        filter: Optional[dict] = None,
    ) -> list[Match]:
        """Nearest neighbours by descending score, restricted to metadata equality ``filter``."""

    @abstractmethod
    async def delete(self, namespace: str, ids: list[str]) -> None:
        """Delete vectors by id. Unknown ids are ignored."""

    @abstractmethod
    async def delete_namespace(self, namespace: str) -> None:
        """Remove a namespace and everything in it. No-op if it does not exist."""

    @abstractmethod
    async def count(self, namespace: str) -> int:
        """Number of vectors in ``namespace`` (0 if it does not exist)."""


# ---------------------------------------------------------------------------
# In-memory reference store
# ---------------------------------------------------------------------------


class InMemoryVectorStore(VectorStore):
    """Brute-force cosine similarity over a linear scan.

    Meant for tests and small local runs; same contract as the Chroma store.
    """

    def __init__(self):
        self._namespaces: dict[str, dict[str, VectorRecord]] = {}
        self._dimensions: dict[str, int] = {}

    def _check_dimensions(self, namespace: str, vector: list[float]) -> None:
        expected = self._dimensions.get(namespace)
        if expected is not None and len(vector) != expected:
            raise VectorStoreError(
                f"Namespace '{namespace}' holds {expected}-dimensional vectors, got {len(vector)}"
            )

    async def upsert(self, namespace: str, vectors: list[VectorRecord]) -> None:
        if not vectors:
            return
        dims = self._dimensions.get(namespace, len(vectors[0].embedding))
        for record in vectors:
            if len(record.embedding) != dims:
                raise VectorStoreError(
                    f"Namespace '{namespace}' holds {dims}-dimensional vectors, "
                    f"got {len(record.embedding)} for id {record.id}"
                )

        records = self._namespaces.setdefault(namespace, {})
        self._dimensions[namespace] = dims
        for record in vectors:
            records[record.id] = VectorRecord(
                id=record.id,
                embedding=list(record.embedding),
                metadata=dict(record.metadata),
            )
        logger.debug("Upserted %d vectors into namespace '%s'", len(vectors), namespace)

    async def query(
        self,
        namespace: str,
        vector: list[float],
        top_k: int = 10,
        filter: Optional[dict] = None,
    ) -> list[Match]:
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        records = self._namespaces.get(namespace)
        if not records:
            return []
        self._check_dimensions(namespace, vector)

        conditions = _active_filter(filter)
        matches = [
            Match(
                id=record.id,
                score=cosine_similarity(vector, record.embedding),
                metadata=dict(record.metadata),
            )
            for record in records.values()
            if all(record.metadata.get(k) == v for k, v in conditions.items())
        ]
        # sorted() is stable, so equal scores keep insertion order
        matches = sorted(matches, key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    async def delete(self, namespace: str, ids: list[str]) -> None:
        records = self._namespaces.get(namespace)
        if not records:
            return
        for vector_id in ids:
            records.pop(vector_id, None)

    async def delete_namespace(self, namespace: str) -> None:
        self._namespaces.pop(namespace, None)
        self._dimensions.pop(namespace, None)

    async def count(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, {}))


# ---------------------------------------------------------------------------
# ChromaDB store
# ---------------------------------------------------------------------------

# Chroma accepts 3-63 chars of [a-zA-Z0-9._-], alphanumeric at both ends, no ".."
MAX_COLLECTION_NAME = 63
_VALID_COLLECTION_NAME = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9._-]{1,61}[a-zA-Z0-9]")
_INVALID_COLLECTION_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def _sanitize_metadata(metadata: dict) -> dict:
    """Chroma accepts only scalar metadata values; others are stored as JSON."""
    clean: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            clean[key] = value
        else:
            clean[key] = orjson.dumps(value, default=str).decode()
    return clean


def _build_where(filter: Optional[dict]) -> Optional[dict]:
    """Build a ChromaDB where clause from equality filters."""
    conditions = [{k: v} for k, v in _active_filter(filter).items()]
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


class ChromaVectorStore(VectorStore):
    """One Chroma collection per namespace, cosine space.

    Operates in three modes:
    - Client/server (HttpClient) when ``host`` is given
    - Embedded (PersistentClient) when ``path`` is given
    - Ephemeral in-process client otherwise
    """

    def __init__(
        self,
        path: Optional[str] = None,
        host: Optional[str] = None,
        port: int = 8000,
        collection_prefix: str = "ratu_",
        client=None,
    ):
        import chromadb

        self.collection_prefix = collection_prefix
        if client is not None:
            self.client = client
        elif host:
            self.client = chromadb.HttpClient(host=host, port=port)
            logger.info("Chroma: connected to %s:%d", host, port)
        elif path:
            Path(path).mkdir(parents=True, exist_ok=True)
            self.client = chromadb.PersistentClient(path=path)
            logger.info("Chroma: persistent at %s", path)
        else:
            self.client = chromadb.EphemeralClient()
            logger.info("Chroma: ephemeral (in-memory)")

    def collection_name(self, namespace: str) -> str:
        """Chroma collection name for ``namespace``.

        Names Chroma accepts are used as-is. Anything else is sanitized,
        truncated and suffixed with a sha256 digest of the raw namespace,
        so two namespaces never resolve to the same collection.
        """
        name = f"{self.collection_prefix}{namespace}"
        if _VALID_COLLECTION_NAME.fullmatch(name) and ".." not in name:
            return name
        digest = hashlib.sha256(namespace.encode("utf-8")).hexdigest()[:12]
        base = _INVALID_COLLECTION_CHARS.sub("_", name).lstrip("_-")
        base = base[:MAX_COLLECTION_NAME - len(digest) - 1]
        return f"{base}_{digest}" if base else digest

    def _get_collection(self, namespace: str):
        try:
            return self.client.get_collection(self.collection_name(namespace))
        except Exception:
            return None  # collection doesn't exist yet

    @staticmethod
    def _collection_dimensions(collection) -> Optional[int]:
        dims = (collection.metadata or {}).get("dimensions")
        return int(dims) if dims is not None else None

    def _upsert_sync(self, namespace: str, vectors: list[VectorRecord]) -> None:
        dims = len(vectors[0].embedding)
        collection = self.client.get_or_create_collection(
            name=self.collection_name(namespace),
            metadata={"hnsw:space": "cosine", "dimensions": dims},
        )
        expected = self._collection_dimensions(collection) or dims
        for record in vectors:
            if len(record.embedding) != expected:
                raise VectorStoreError(
                    f"Namespace '{namespace}' holds {expected}-dimensional vectors, "
                    f"got {len(record.embedding)} for id {record.id}"
                )

        collection.upsert(
            ids=[r.id for r in vectors],
            embeddings=[r.embedding for r in vectors],
            documents=[str(r.metadata.get("content", "")) for r in vectors],
            metadatas=[_sanitize_metadata(r.metadata) for r in vectors],
        )
        logger.debug("Upserted %d vectors into collection '%s'", len(vectors), collection.name)

    async def upsert(self, namespace: str, vectors: list[VectorRecord]) -> None:
        if not vectors:
            return
        await asyncio.to_thread(self._upsert_sync, namespace, vectors)

    def _query_sync(
        self,
        namespace: str,
        vector: list[float],
        top_k: int,
        filter: Optional[dict],
    ) -> list[Match]:
        collection = self._get_collection(namespace)
        if collection is None:
            return []
        total = collection.count()
        if total == 0:
            return []
        expected = self._collection_dimensions(collection)
        if expected is not None and len(vector) != expected:
            raise VectorStoreError(
                f"Namespace '{namespace}' holds {expected}-dimensional vectors, got {len(vector)}"
            )

        kwargs: dict[str, Any] = {
            "query_embeddings": [vector],
            "n_results": min(top_k, total),
            "include": ["metadatas", "distances"],
        }
        where = _build_where(filter)
        if where:
            kwargs["where"] = where
        results = collection.query(**kwargs)

        matches: list[Match] = []
        if results and results.get("ids") and results["ids"][0]:
            for i, vector_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i]
                meta = results["metadatas"][0][i] or {}
                # cosine distance -> similarity
                matches.append(Match(id=vector_id, score=1.0 - distance, metadata=dict(meta)))
        return matches

    async def query(
        self,
        namespace: str,
        vector: list[float],
        top_k: int = 10,
        filter: Optional[dict] = None,
    ) -> list[Match]:
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        return await asyncio.to_thread(self._query_sync, namespace, vector, top_k, filter)

    def _delete_sync(self, namespace: str, ids: list[str]) -> None:
        collection = self._get_collection(namespace)
        if collection is not None:
            collection.delete(ids=ids)

    async def delete(self, namespace: str, ids: list[str]) -> None:
        if not ids:
            return
        await asyncio.to_thread(self._delete_sync, namespace, ids)

    def _delete_namespace_sync(self, namespace: str) -> None:
        if self._get_collection(namespace) is None:
            return
        self.client.delete_collection(self.collection_name(namespace))
        logger.info("Deleted collection '%s'", self.collection_name(namespace))

    async def delete_namespace(self, namespace: str) -> None:
        await asyncio.to_thread(self._delete_namespace_sync, namespace)

    def _count_sync(self, namespace: str) -> int:
        collection = self._get_collection(namespace)
        return collection.count() if collection is not None else 0

    async def count(self, namespace: str) -> int:
        return await asyncio.to_thread(self._count_sync, namespace)


def build_vector_store(settings) -> VectorStore:
    """Select the vector store backend named by ``settings.vector_db_provider``."""
    provider = settings.vector_db_provider
    if provider == "memory":
        return InMemoryVectorStore()
    if provider == "chroma":
        return ChromaVectorStore(
            path=settings.vector_db_path,
            host=settings.vector_db_host,
            port=settings.vector_db_port,
            collection_prefix=settings.vector_db_collection_prefix,
        )
    raise ValueError(f"Unknown vector store provider: {provider!r}")
