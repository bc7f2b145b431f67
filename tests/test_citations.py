"""Tests for citation marker formatting, parsing and enrichment."""

from types import SimpleNamespace

import pytest

from llm.citations import (
    Citation,
    dedupe_citations,
    enrich_citations,
    format_citation,
    parse_citations,
)


class TestParseCitations:
    """Test suite for parse_citations."""

    def test_parse_should_return_markers_in_first_seen_order(self) -> None:
        text = "Pricing changed [CIT:doc1:0]. Also [CIT:doc2:5] and again [CIT:doc1:0]."

        citations = parse_citations(text)

        assert [c.key for c in citations] == [("doc1", 0), ("doc2", 5)]

    def test_parse_should_ignore_malformed_markers(self) -> None:
        text = "See [CIT:doc1] and [CIT::3] and [CIT:doc 2:1] and [cit:doc3:1]."

        assert parse_citations(text) == []

    def test_parse_should_accept_uuid_document_ids(self) -> None:
        doc_id = "3f2b9c1e-8a7d-4e21-9b0a-5c6d7e8f9a01"

        citations = parse_citations(f"Fact {format_citation(doc_id, 12)}")

        assert citations == [Citation(doc_id=doc_id, chunk_index=12)]

    def test_parse_should_accept_non_hex_document_ids(self) -> None:
        text = "See [CIT:doc1:0] and [CIT:Policy-Zq9:2]."

        citations = parse_citations(text)

        assert [c.key for c in citations] == [("doc1", 0), ("Policy-Zq9", 2)]

    def test_parse_of_empty_text_should_return_empty_list(self) -> None:
        assert parse_citations("") == []

    def test_formatted_marker_should_parse_back_to_same_pair(self) -> None:
        marker = format_citation("doc-7", 3)

        assert marker == "[CIT:doc-7:3]"
        assert parse_citations(marker)[0].key == ("doc-7", 3)


class TestFormatCitation:
    """Test suite for format_citation and Citation helpers."""

    def test_negative_chunk_index_should_be_rejected(self) -> None:
        with pytest.raises(ValueError):
            format_citation("doc1", -1)

    def test_marker_property_should_match_format_citation(self) -> None:
        assert Citation("doc1", 4).marker == "[CIT:doc1:4]"

    def test_dedupe_should_keep_first_occurrence(self) -> None:
        first = Citation("doc1", 0, title="First")
        second = Citation("doc1", 0, title="Second")

        assert dedupe_citations([first, Citation("doc2", 1), second]) == [first, Citation("doc2", 1)]


class TestEnrichCitations:
    """Test suite for enrich_citations."""

    def test_enrich_should_attach_title_uri_and_snippet(self) -> None:
        # Arrange
        chunk = SimpleNamespace(
            doc_id="doc1",
            chunk_index=2,
            content="x" * 300,
            metadata={"title": "Refund policy", "uri": "https://acme.test/refunds"},
        )

        # Act
        enriched = enrich_citations([Citation("doc1", 2), Citation("doc9", 0)], [chunk])

        # Assert
        assert enriched[0].title == "Refund policy"
        assert enriched[0].uri == "https://acme.test/refunds"
        assert enriched[0].snippet == "x" * 200
        assert enriched[1] == Citation("doc9", 0)
