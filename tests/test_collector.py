"""Tests for usage events and the in-memory sink."""

import pytest

from analytics.collector import (
    EMBEDDINGS_CREATED,
    QUERY_COUNT,
    TOKENS_IN,
    InMemoryUsageSink,
    UsageEvent,
)


class TestInMemoryUsageSink:
    """Test suite for InMemoryUsageSink."""

    def test_sink_should_filter_by_org_and_kind(self) -> None:
        sink = InMemoryUsageSink()
        sink.record(UsageEvent("org-a", QUERY_COUNT))
        sink.record(UsageEvent("org-b", QUERY_COUNT))
        sink.record(UsageEvent("org-a", TOKENS_IN, 42))

        assert len(sink.events(org_id="org-a")) == 2
        assert [e.org_id for e in sink.events(kind=QUERY_COUNT)] == ["org-a", "org-b"]
        assert sink.events(org_id="org-a", kind=TOKENS_IN)[0].value == 42

    def test_totals_should_sum_values_per_kind(self) -> None:
        sink = InMemoryUsageSink()
        sink.record(UsageEvent("org-a", TOKENS_IN, 10))
        sink.record(UsageEvent("org-a", TOKENS_IN, 15))
        sink.record(UsageEvent("org-a", EMBEDDINGS_CREATED, 4))
        sink.record(UsageEvent("org-b", TOKENS_IN, 99))

        assert sink.totals("org-a") == {TOKENS_IN: 25, EMBEDDINGS_CREATED: 4}

    def test_sink_should_evict_oldest_beyond_capacity(self) -> None:
        sink = InMemoryUsageSink(capacity=2)
        for value in (1, 2, 3):
            sink.record(UsageEvent("org-a", TOKENS_IN, value))

        assert len(sink) == 2
        assert [e.value for e in sink.events()] == [2, 3]

    def test_clear_should_drop_all_events(self) -> None:
        sink = InMemoryUsageSink()
        sink.record(UsageEvent("org-a", QUERY_COUNT))

        sink.clear()

        assert len(sink) == 0

    def test_invalid_capacity_should_raise(self) -> None:
        with pytest.raises(ValueError):
            InMemoryUsageSink(capacity=0)

    def test_event_timestamp_should_be_timezone_aware(self) -> None:
        event = UsageEvent("org-a", QUERY_COUNT)

        assert event.timestamp.tzinfo is not None
