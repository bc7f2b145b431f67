"""Usage events and an in-memory, capacity-bounded sink.

The RAG pipeline and query engine accept any object with a
``record(event)`` method; whoever constructs the sink owns its capacity
and lifetime.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10000

# Event kinds recorded by the core
EMBEDDINGS_CREATED = "embeddings_created"
QUERY_COUNT = "query_count"
TOKENS_IN = "tokens_in"
TOKENS_OUT = "tokens_out"
LATENCY_MS = "latency_ms"
ERROR_COUNT = "error_count"


@dataclass
class UsageEvent:
    org_id: str
    kind: str
    value: float = 1.0
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class UsageSink(Protocol):
    def record(self, event: UsageEvent) -> None:
        ...


class InMemoryUsageSink:
    """Keeps the most recent ``capacity`` events; older ones are evicted."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._events: deque[UsageEvent] = deque(maxlen=capacity)

    def record(self, event: UsageEvent) -> None:
        self._events.append(event)
        logger.debug("usage %s org=%s value=%s", event.kind, event.org_id, event.value)

    def events(self, org_id: Optional[str] = None, kind: Optional[str] = None) -> list[UsageEvent]:
        return [
            e for e in self._events
            if (org_id is None or e.org_id == org_id) and (kind is None or e.kind == kind)
        ]

    def totals(self, org_id: str) -> dict[str, float]:
        """Sum of event values per kind for one org."""
        totals: dict[str, float] = {}
        for event in self.events(org_id=org_id):
            totals[event.kind] = totals.get(event.kind, 0) + event.value
        return totals

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)
