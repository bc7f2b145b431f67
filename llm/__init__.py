"""Language-model clients, retry policy and citation markers."""

from llm.citations import Citation, format_citation, parse_citations
from llm.client import ChatResponse, ChatUsage, LLMClient, LLMClientError

__all__ = [
    "ChatResponse",
    "ChatUsage",
    "Citation",
    "LLMClient",
    "LLMClientError",
    "format_citation",
    "parse_citations",
]
