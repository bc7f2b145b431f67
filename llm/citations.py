"""Inline citation markers: ``[CIT:<doc_id>:<chunk_index>]``.

Models are asked to tag every claim with a marker pointing at a retrieved
chunk. Parsing is tolerant: anything that does not match the marker
grammar is ignored, so malformed markers yield no citations.
"""

import re
from dataclasses import dataclass, replace
from typing import Iterable

# Doc ids are any alphanumerics and hyphens, not only hex UUIDs, so ids like "doc1" parse
CITATION_PATTERN = re.compile(r"\[CIT:([A-Za-z0-9-]+):(\d+)\]")

SNIPPET_CHARS = 200


@dataclass(frozen=True)
class Citation:
    """A reference to one chunk of one document."""

    doc_id: str
    chunk_index: int
    title: str = ""
    uri: str = ""
    snippet: str = ""

    @property
    def key(self) -> tuple[str, int]:
        return (self.doc_id, self.chunk_index)

    @property
    def marker(self) -> str:
        return format_citation(self.doc_id, self.chunk_index)


def format_citation(doc_id: str, chunk_index: int) -> str:
    if chunk_index < 0:
        raise ValueError(f"chunk_index must be non-negative, got {chunk_index}")
    return f"[CIT:{doc_id}:{chunk_index}]"


def dedupe_citations(citations: Iterable[Citation]) -> list[Citation]:
    """Drop repeated (doc_id, chunk_index) pairs, keeping the first occurrence."""
    seen: set[tuple[str, int]] = set()
    unique: list[Citation] = []
    for citation in citations:
        if citation.key in seen:
            continue
        seen.add(citation.key)
        unique.append(citation)
    return unique


def parse_citations(text: str) -> list[Citation]:
    """Extract citation markers from model output, deduplicated in first-seen order."""
    if not text:
        return []
    return dedupe_citations(
        Citation(doc_id=match.group(1), chunk_index=int(match.group(2)))
        for match in CITATION_PATTERN.finditer(text)
    )


def enrich_citations(citations: Iterable[Citation], chunks: Iterable) -> list[Citation]:
    """Attach title, uri and a content snippet from the matching retrieved chunk.

    ``chunks`` are retrieved chunks exposing ``doc_id``, ``chunk_index``,
    ``content`` and a ``metadata`` dict. Citations with no matching chunk
    are returned unchanged.
    """
    by_key = {}
    for chunk in chunks:
        by_key.setdefault((chunk.doc_id, chunk.chunk_index), chunk)

    enriched: list[Citation] = []
    for citation in citations:
        chunk = by_key.get(citation.key)
        if chunk is None:
            enriched.append(citation)
            continue
        enriched.append(
            replace(
                citation,
                title=str(chunk.metadata.get("title") or ""),
                uri=str(chunk.metadata.get("uri") or ""),
                snippet=chunk.content[:SNIPPET_CHARS],
            )
        )
    return enriched
