"""Usage accounting for tenant queries and ingestion."""

from analytics.collector import InMemoryUsageSink, UsageEvent, UsageSink

__all__ = ["InMemoryUsageSink", "UsageEvent", "UsageSink"]
