"""Tests for QueryEngine: cited answers, council runs and usage accounting."""

import pytest

from analytics.collector import ERROR_COUNT, LATENCY_MS, QUERY_COUNT, TOKENS_IN, TOKENS_OUT
from llm.client import LLMClientError
from rag.query_engine import QueryEngine
from schemas.document import Document
from tests.conftest import ScriptedLLMClient, make_paragraphs, reply


class TestAsk:
    """Test suite for QueryEngine.ask."""

    @pytest.mark.asyncio
    async def test_ask_should_return_enriched_citations(self, pipeline, usage_sink) -> None:
        # Arrange
        await pipeline.ingest(Document(
            id="refunds",
            uri="https://kb.test/refunds",
            title="Refund policy",
            content=make_paragraphs(3, "refund"),
        ))
        client = ScriptedLLMClient(
            lambda messages: reply("Refunds are handled per item [CIT:refunds:0] [CIT:gone:9].", 120, 30)
        )
        engine = QueryEngine(pipeline, client, "Acme", usage_sink=usage_sink)

        # Act
        result = await engine.ask("How are refunds handled?")

        # Assert
        assert result.chunks_retrieved == 1
        assert result.tokens_in == 120
        assert result.tokens_out == 30
        assert [c.key for c in result.citations] == [("refunds", 0), ("gone", 9)]
        assert result.citations[0].title == "Refund policy"
        assert result.citations[0].uri == "https://kb.test/refunds"
        assert result.citations[0].snippet.startswith("Paragraph 00")
        assert result.citations[1].title == ""

        system = client.calls[0]["messages"][0]["content"]
        assert "You are the AI assistant for Acme." in system
        assert "Document 1 [CIT:refunds:0]:" in system
        assert client.calls[0]["messages"][1] == {"role": "user", "content": "How are refunds handled?"}

    @pytest.mark.asyncio
    async def test_ask_should_record_usage_events(self, pipeline, usage_sink) -> None:
        client = ScriptedLLMClient(lambda messages: reply("No data.", 40, 6))
        engine = QueryEngine(pipeline, client, "Acme", usage_sink=usage_sink)

        await engine.ask("anything")

        totals = usage_sink.totals("org-a")
        assert totals[QUERY_COUNT] == 1
        assert totals[TOKENS_IN] == 40
        assert totals[TOKENS_OUT] == 6
        assert LATENCY_MS in totals
        assert usage_sink.events(kind=QUERY_COUNT)[0].metadata == {"mode": "ask"}

    @pytest.mark.asyncio
    async def test_ask_without_context_should_use_no_context_prompt(self, pipeline) -> None:
        client = ScriptedLLMClient(lambda messages: "I don't have that information yet.")
        engine = QueryEngine(pipeline, client, "Acme")

        result = await engine.ask("What is the refund window?")

        assert result.chunks_retrieved == 0
        assert result.citations == []
        assert "No relevant context is available" in client.calls[0]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_failed_chat_should_record_error_and_reraise(self, pipeline, usage_sink) -> None:
        client = ScriptedLLMClient(lambda messages: RuntimeError("provider down"))
        engine = QueryEngine(pipeline, client, "Acme", usage_sink=usage_sink)

        with pytest.raises(LLMClientError):
            await engine.ask("anything")

        errors = usage_sink.events(org_id="org-a", kind=ERROR_COUNT)
        assert len(errors) == 1
        assert errors[0].metadata == {"mode": "ask", "error": "LLMClientError"}
        assert usage_sink.events(kind=QUERY_COUNT) == []


class TestRunCouncil:
    """Test suite for QueryEngine.run_council."""

    @pytest.mark.asyncio
    async def test_run_council_should_share_retrieved_context_and_record_usage(
        self, pipeline, usage_sink
    ) -> None:
        # Arrange
        await pipeline.ingest(Document(
            id="refunds",
            uri="https://kb.test/refunds",
            title="Refund policy",
            content=make_paragraphs(3, "refund"),
        ))

        def respond(messages):
            if messages[1]["content"].startswith("Synthesize"):
                return reply("Final [CIT:refunds:0]", 50, 20)
            return reply("Note [CIT:refunds:0]")

        client = ScriptedLLMClient(respond)
        engine = QueryEngine(pipeline, client, "Acme", usage_sink=usage_sink)

        # Act
        result = await engine.run_council("How are refunds handled?")

        # Assert
        assert result.total_tokens_in == 80
        assert result.all_citations[0].title == "Refund policy"
        for call in client.calls[:3]:
            assert "Document 1 [CIT:refunds:0]:" in call["messages"][0]["content"]
        totals = usage_sink.totals("org-a")
        assert totals[TOKENS_IN] == 80
        assert totals[TOKENS_OUT] == 35
        assert usage_sink.events(kind=QUERY_COUNT)[0].metadata == {"mode": "council"}
