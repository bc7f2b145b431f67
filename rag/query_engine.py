"""Query engine: retrieval plus generation for one tenant.

``ask`` answers a question in a single chat call grounded on retrieved
chunks; ``run_council`` hands the same retrieved context to a council.
Both record usage events on the optional sink, including an
``error_count`` event before re-raising a failure.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from analytics.collector import (
    ERROR_COUNT,
    LATENCY_MS,
    QUERY_COUNT,
    TOKENS_IN,
    TOKENS_OUT,
    UsageEvent,
    UsageSink,
)
from council.engine import DEFAULT_ROUNDS, Council
from council.models import CouncilContext, CouncilResult, CouncilRole, Strategy
from llm.citations import Citation, enrich_citations, parse_citations
from llm.client import LLMClient
from rag.pipeline import DEFAULT_TOP_K, RAGPipeline
from rag.prompts import build_answer_prompt

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Complete result of a single-shot cited answer."""

    query: str
    answer: str
    citations: list[Citation] = field(default_factory=list)
    chunks_retrieved: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0


class QueryEngine:
    """Orchestrates retrieval and generation for one org."""

    def __init__(
        self,
        pipeline: RAGPipeline,
        llm: LLMClient,
        org_name: str,
        usage_sink: Optional[UsageSink] = None,
    ):
        self.pipeline = pipeline
        self.llm = llm
        self.org_name = org_name
        self.usage_sink = usage_sink
        self.council = Council(llm)

    def _record(self, kind: str, value: float, **metadata) -> None:
        if self.usage_sink is not None:
            self.usage_sink.record(UsageEvent(
                org_id=self.pipeline.org_id, kind=kind, value=value, metadata=metadata,
            ))

    def _record_success(self, mode: str, tokens_in: int, tokens_out: int, latency_ms: int) -> None:
        self._record(QUERY_COUNT, 1, mode=mode)
        self._record(TOKENS_IN, tokens_in, mode=mode)
        self._record(TOKENS_OUT, tokens_out, mode=mode)
        self._record(LATENCY_MS, latency_ms, mode=mode)

    async def ask(
        self,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        filter: Optional[dict] = None,
        min_score: float = 0.0,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> QueryResult:
        """Retrieve, then answer in one chat call with inline citations."""
        t_start = time.time()
        try:
            chunks = await self.pipeline.retrieve(
                query, top_k=top_k, filter=filter, min_score=min_score
            )
            context = self.pipeline.build_context(chunks)
            response = await self.llm.chat(
                [
                    {"role": "system", "content": build_answer_prompt(self.org_name, context)},
                    {"role": "user", "content": query},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as e:
            self._record(ERROR_COUNT, 1, mode="ask", error=type(e).__name__)
            raise

        citations = enrich_citations(parse_citations(response.content), chunks)
        latency_ms = int((time.time() - t_start) * 1000)
        self._record_success(
            "ask", response.usage.prompt_tokens, response.usage.completion_tokens, latency_ms
        )
        logger.info(
            "[%s] Answered query with %d chunks, %d citations in %dms",
            self.pipeline.org_id, len(chunks), len(citations), latency_ms,
        )
        return QueryResult(
            query=query,
            answer=response.content,
            citations=citations,
            chunks_retrieved=len(chunks),
            tokens_in=response.usage.prompt_tokens,
            tokens_out=response.usage.completion_tokens,
            latency_ms=latency_ms,
        )

    async def run_council(
        self,
        query: str,
        roles: Optional[list[CouncilRole]] = None,
        strategy: str = Strategy.CONSENSUS.value,
        rounds: int = DEFAULT_ROUNDS,
        top_k: int = DEFAULT_TOP_K,
        filter: Optional[dict] = None,
        tools: Optional[list[dict]] = None,
    ) -> CouncilResult:
        """Retrieve context for ``query`` and run a council over it."""
        t_start = time.time()
        try:
            chunks = await self.pipeline.retrieve(query, top_k=top_k, filter=filter)
            context = CouncilContext(
                query=query,
                retrieved_context=self.pipeline.build_context(chunks),
                org_name=self.org_name,
            )
            result = await self.council.run(
                context, roles=roles, strategy=strategy, rounds=rounds, tools=tools
            )
        except Exception as e:
            self._record(ERROR_COUNT, 1, mode="council", error=type(e).__name__)
            raise

        result.all_citations = enrich_citations(result.all_citations, chunks)
        self._record_success(
            "council",
            result.total_tokens_in,
            result.total_tokens_out,
            int((time.time() - t_start) * 1000),
        )
        return result
