"""
Shared test fixtures for the RAG pipeline and council suites.

Provides: deterministic hashing embedder, scripted chat client, in-memory
vector store, usage sink, and a ready pipeline for one org.
No fixture touches the network.
"""

import asyncio
import hashlib
import re
from typing import Callable, Optional, Union

import pytest

from analytics.collector import InMemoryUsageSink
from llm.client import ChatResponse, ChatUsage, LLMClient
from rag.pipeline import BatchRAGPipeline
from schemas.document import ChunkOptions
from vectorstore.chunker import Chunker, approximate_tokens
from vectorstore.embedder import EmbeddingProvider
from vectorstore.store import InMemoryVectorStore

WORD = re.compile(r"[a-z0-9]+")


class HashingEmbedder(EmbeddingProvider):
    """Bag-of-words vectors: each word hashes into one of ``dimensions`` buckets."""

    def __init__(self, dimensions: int = 32, batch_size: int = 100):
        self.model = "hashing-test"
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        for word in WORD.findall(text.lower()):
            bucket = int(hashlib.sha256(word.encode()).hexdigest()[:8], 16) % self.dimensions
            vec[bucket] += 1.0
        return vec

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


Reply = Union[ChatResponse, str, Exception]


def reply(content: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> ChatResponse:
    return ChatResponse(
        content=content,
        usage=ChatUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
        model="scripted",
        finish_reason="stop",
    )


class ScriptedLLMClient(LLMClient):
    """Chat client whose replies come from ``responder(messages) -> reply``.

    A reply may be a ChatResponse, a plain string, or an exception to raise.
    ``delays`` maps a system-prompt substring to seconds to sleep first.
    """

    provider = "scripted"

    def __init__(
        self,
        responder: Callable[[list[dict]], Reply],
        delays: Optional[dict[str, float]] = None,
    ):
        super().__init__(model="scripted", max_retries=1, retry_backoff=0)
        self.responder = responder
        self.delays = delays or {}
        self.calls: list[dict] = []

    async def _chat_once(self, messages, tools, temperature, max_tokens) -> ChatResponse:
        self.calls.append({
            "messages": messages,
            "tools": tools,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        system = messages[0]["content"] if messages and messages[0]["role"] == "system" else ""
        for needle, seconds in self.delays.items():
            if needle in system:
                await asyncio.sleep(seconds)
        result = self.responder(messages)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, str):
            return reply(result)
        return result

    def system_prompts(self) -> list[str]:
        return [c["messages"][0]["content"] for c in self.calls]


@pytest.fixture
def chunker() -> Chunker:
    return Chunker(token_counter=approximate_tokens)


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def usage_sink() -> InMemoryUsageSink:
    return InMemoryUsageSink(capacity=100)


@pytest.fixture
def chunk_options() -> ChunkOptions:
    return ChunkOptions(target_tokens=60, overlap=20, min_chunk_size=5)


@pytest.fixture
def pipeline(embedder, store, chunker, chunk_options, usage_sink) -> BatchRAGPipeline:
    return BatchRAGPipeline(
        org_id="org-a",
        embedder=embedder,
        store=store,
        chunker=chunker,
        chunk_options=chunk_options,
        usage_sink=usage_sink,
    )


def make_paragraphs(count: int, word: str = "tenant") -> str:
    """``count`` one-sentence paragraphs.

    With a six-letter ``word`` each paragraph is 60 characters, i.e. 15
    tokens under the chars / 4 counter.
    """
    return "\n\n".join(
        f"Paragraph {i:02d} explains how the {word} system handles item {i:02d}."
        for i in range(count)
    )
