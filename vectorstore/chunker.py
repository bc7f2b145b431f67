"""Token-aware document chunker for tenant knowledge bases.

Splits normalized document text into overlapping, token-bounded chunks:
- Paragraphs (blank-line separated) are packed greedily up to the target budget
- Each new chunk is seeded with an overlap tail of whole sentences from the
  previous chunk
- Paragraphs larger than the budget are split at sentence boundaries
- A trailing fragment smaller than ``min_chunk_size`` is dropped

Token counts come from tiktoken; when no encoding can be loaded the counter
falls back to ``ceil(len(text) / 4)``.
"""

import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

import tiktoken

from schemas.document import ChunkOptions

logger = logging.getLogger(__name__)

DEFAULT_TOKENIZER_MODEL = "gpt-3.5-turbo"

# ---------------------------------------------------------------------------
# Token counting (shared encoder instances)
# ---------------------------------------------------------------------------


@lru_cache(maxsize=8)
def get_encoder(model: str = DEFAULT_TOKENIZER_MODEL) -> Optional[tiktoken.Encoding]:
    """Return the tiktoken encoding for ``model``, or None if none can be loaded."""
    for candidate in (model, DEFAULT_TOKENIZER_MODEL):
        try:
            return tiktoken.encoding_for_model(candidate)
        except Exception as e:
            logger.warning("No tiktoken encoding for '%s': %s", candidate, e)
    return None


def approximate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def make_token_counter(model: str = DEFAULT_TOKENIZER_MODEL) -> Callable[[str], int]:
    encoder = get_encoder(model)
    if encoder is None:
        logger.warning("Falling back to approximate token counting (chars / 4)")
        return approximate_tokens

    def count(text: str) -> int:
        try:
            return len(encoder.encode(text, disallowed_special=()))
        except Exception:
            return approximate_tokens(text)

    return count


# ---------------------------------------------------------------------------
# Chunk record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Chunk:
    """One token-bounded slice of a document's normalized text."""

    content: str
    token_count: int
    index: int
    start_offset: int
    end_offset: int


# (text, start, end) with offsets into the normalized document text
_Span = tuple[str, int, int]

PARAGRAPH_BREAK = re.compile(r"\n\n+")
SENTENCE_BREAK = re.compile(r"([.!?]+\s+)")


def normalize_text(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    return text.strip()


def split_sentences(text: str) -> list[str]:
    return [s for s, _, _ in _sentence_spans(text, 0)]


def _sentence_spans(text: str, base: int) -> list[_Span]:
    """Split on terminal punctuation followed by whitespace, keeping the punctuation."""
    parts = SENTENCE_BREAK.split(text)
    spans: list[_Span] = []
    pos = 0
    for i in range(0, len(parts), 2):
        raw = parts[i] + (parts[i + 1] if i + 1 < len(parts) else "")
        if parts[i].strip():
            sentence = raw.strip()
            start = base + pos + (len(raw) - len(raw.lstrip()))
            spans.append((sentence, start, start + len(sentence)))
        pos += len(raw)
    return spans


def _paragraph_spans(text: str) -> list[_Span]:
    spans: list[_Span] = []
    pos = 0
    for match in PARAGRAPH_BREAK.finditer(text):
        spans.extend(_stripped_span(text[pos:match.start()], pos))
        pos = match.end()
    spans.extend(_stripped_span(text[pos:], pos))
    return spans


def _stripped_span(raw: str, base: int) -> list[_Span]:
    stripped = raw.strip()
    if not stripped:
        return []
    start = base + (len(raw) - len(raw.lstrip()))
    return [(stripped, start, start + len(stripped))]


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------


class Chunker:
    """Deterministic paragraph/sentence chunker with token overlap."""

    def __init__(
        self,
        model: str = DEFAULT_TOKENIZER_MODEL,
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        self.model = model
        self._count = token_counter

    def count_tokens(self, text: str) -> int:
        # Encoder is loaded on first use
        if self._count is None:
            self._count = make_token_counter(self.model)
        return self._count(text)

    def chunk(self, text: str, options: Optional[ChunkOptions] = None) -> list[Chunk]:
        """Split ``text`` into chunks. Empty or whitespace-only input yields []."""
        options = options or ChunkOptions()
        normalized = normalize_text(text)
        if not normalized:
            return []

        if options.preserve_paragraphs:
            segments = _paragraph_spans(normalized)
        else:
            segments = [(normalized, 0, len(normalized))]

        builder = _ChunkBuilder(normalized, self.count_tokens)
        rest, rest_start, rest_end = self._pack(
            segments, "\n\n", normalized, options, builder.emit, split_oversized=True
        )

        if rest.strip():
            rest_tokens = self.count_tokens(rest.strip())
            if rest_tokens >= options.min_chunk_size:
                builder.emit(rest, rest_start, rest_end)
            else:
                logger.debug(
                    "Dropping trailing fragment of %d tokens (< min_chunk_size=%d)",
                    rest_tokens, options.min_chunk_size,
                )

        return builder.chunks

    # -------------------------------------------------------------------
    # Core splitting utilities
    # -------------------------------------------------------------------

    def _pack(
        self,
        units: list[_Span],
        joiner: str,
        normalized: str,
        options: ChunkOptions,
        emit: Callable[[str, int, int], None],
        split_oversized: bool,
    ) -> _Span:
        """Greedily pack units into buffers of at most ``target_tokens``.

        Full buffers are passed to ``emit``; the unflushed remainder is returned.
        """
        current = ""
        start = end = 0
        # Last flushed text and its start; the next buffer is seeded from it
        carry: Optional[tuple[str, int]] = None

        for unit, unit_start, unit_end in units:
            if split_oversized and self.count_tokens(unit) > options.target_tokens:
                if current.strip():
                    emit(current, start, end)
                    carry = (current, start)
                    current = ""
                pieces = self._split_large_segment(unit, unit_start, normalized, options)
                if pieces and carry is not None:
                    text, piece_start, piece_end = pieces[0]
                    text, piece_start = self._seed_with_overlap(
                        carry[0], carry[1], text, piece_start, joiner, normalized, options
                    )
                    pieces[0] = (text, piece_start, piece_end)
                for piece in pieces:
                    emit(*piece)
                if pieces:
                    carry = (pieces[-1][0], pieces[-1][1])
                continue

            if not current and carry is not None:
                current, start = self._seed_with_overlap(
                    carry[0], carry[1], unit, unit_start, joiner, normalized, options
                )
                carry = None
                end = unit_end
                continue

            candidate = f"{current}{joiner}{unit}" if current else unit
            if current.strip() and self.count_tokens(candidate) > options.target_tokens:
                emit(current, start, end)
                current, start = self._seed_with_overlap(
                    current, start, unit, unit_start, joiner, normalized, options
                )
            else:
                if not current:
                    start = unit_start
                current = candidate
            end = unit_end

        return current, start, end

    def _split_large_segment(
        self,
        segment: str,
        seg_start: int,
        normalized: str,
        options: ChunkOptions,
    ) -> list[_Span]:
        """Sentence-level packing for one paragraph that alone exceeds the budget.

        A single sentence longer than the budget becomes its own chunk.
        """
        pieces: list[_Span] = []
        rest = self._pack(
            _sentence_spans(segment, seg_start),
            " ",
            normalized,
            options,
            lambda text, start, end: pieces.append((text, start, end)),
            split_oversized=False,
        )
        if rest[0].strip():
            pieces.append(rest)
        return pieces

    def _seed_with_overlap(
        self,
        previous: str,
        previous_start: int,
        unit: str,
        unit_start: int,
        joiner: str,
        normalized: str,
        options: ChunkOptions,
    ) -> tuple[str, int]:
        """Start a new buffer: overlap tail of ``previous`` followed by ``unit``.

        The tail is the longest run of trailing sentences that fits both the
        overlap budget and the room ``unit`` leaves under the target. It is
        dropped only when not even one sentence fits.
        """
        room = options.target_tokens - self.count_tokens(f"{joiner}{unit}")
        spans = self._overlap_spans(previous, min(options.overlap, room))
        while spans:
            tail = previous[spans[0][1]:].strip()
            seeded = f"{tail}{joiner}{unit}"
            if self.count_tokens(seeded) <= options.target_tokens:
                located = normalized.rfind(spans[0][0], previous_start, unit_start)
                return seeded, located if located >= 0 else unit_start
            spans = spans[1:]
        return unit, unit_start

    def _overlap_spans(self, text: str, overlap_tokens: int) -> list[_Span]:
        """Trailing sentences of ``text`` (offsets relative to it) within ``overlap_tokens``."""
        if overlap_tokens <= 0:
            return []
        tail: list[_Span] = []
        tokens = 0
        for span in reversed(_sentence_spans(text, 0)):
            sentence_tokens = self.count_tokens(span[0])
            if tokens + sentence_tokens > overlap_tokens:
                break
            tail.insert(0, span)
            tokens += sentence_tokens
        return tail


class _ChunkBuilder:
    """Assigns sequential indexes and keeps offsets monotonically non-decreasing."""

    def __init__(self, normalized: str, count_tokens: Callable[[str], int]):
        self.normalized = normalized
        self.count_tokens = count_tokens
        self.chunks: list[Chunk] = []
        self._last_start = 0

    def emit(self, content: str, start: int, end: int) -> None:
        content = content.strip()
        start = max(start, self._last_start)
        end = min(max(end, start), len(self.normalized))
        self._last_start = start
        self.chunks.append(
            Chunk(
                content=content,
                token_count=self.count_tokens(content),
                index=len(self.chunks),
                start_offset=start,
                end_offset=end,
            )
        )
