"""Chat-completion clients for OpenAI-compatible and Anthropic APIs.

Both backends accept OpenAI-style message dicts
(``{"role": ..., "content": ...}``) and OpenAI function-tool definitions,
and return a provider-neutral ``ChatResponse``. The default
OpenAI-compatible endpoint is Moonshot (Kimi).
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from llm.citations import Citation, parse_citations
from llm.retry import DEFAULT_BACKOFF_BASE, call_with_retry, status_code_of

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "moonshot-v1-128k"
DEFAULT_OPENAI_API_BASE = "https://api.moonshot.cn/v1"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-6"


class LLMClientError(Exception):
    """Chat call failed. ``status_code`` is set for HTTP-status failures."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.cause = cause


@dataclass
class ChatUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatResponse:
    content: str
    usage: ChatUsage = field(default_factory=ChatUsage)
    model: str = ""
    finish_reason: Optional[str] = None
    tool_calls: list[dict] = field(default_factory=list)


class LLMClient(ABC):
    """Stateless chat completions with transient-failure retry."""

    provider = "base"

    def __init__(
        self,
        model: str,
        max_tokens: int = 4096,
        temperature: float = 0.4,
        max_retries: int = 3,
        retry_backoff: float = DEFAULT_BACKOFF_BASE,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    @abstractmethod
    async def _chat_once(
        self,
        messages: list[dict],
        tools: Optional[list[dict]],
        temperature: float,
        max_tokens: int,
    ) -> ChatResponse:
        """Issue exactly one upstream request."""

    async def chat(
        self,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatResponse:
        """Send a chat completion request.

        Raises:
            LLMClientError: the call failed (after retries for transient errors).
        """
        temperature = self.temperature if temperature is None else temperature
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        try:
            return await call_with_retry(
                lambda: self._chat_once(messages, tools, temperature, max_tokens),
                max_attempts=self.max_retries,
                label=f"{self.provider} chat",
                backoff_base=self.retry_backoff,
            )
        except LLMClientError:
            raise
        except Exception as e:
            status = status_code_of(e)
            raise LLMClientError(
                f"{self.provider} chat failed: {e}", status_code=status, cause=e
            ) from e

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Single-turn completion returning only the text."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        response = await self.chat(messages, temperature=temperature, max_tokens=max_tokens)
        return response.content

    @staticmethod
    def parse_citations(text: str) -> list[Citation]:
        return parse_citations(text)


class OpenAIChatClient(LLMClient):
    """OpenAI Chat Completions API, or any compatible endpoint via ``api_base``."""

    provider = "openai"

    def __init__(
        self,
        model: str = DEFAULT_OPENAI_MODEL,
        api_key: Optional[str] = None,
        api_base: Optional[str] = DEFAULT_OPENAI_API_BASE,
        timeout: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
        **kwargs,
    ):
        super().__init__(model, **kwargs)
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=api_base,
            timeout=timeout,
            max_retries=0,
        )

    async def _chat_once(self, messages, tools, temperature, max_tokens) -> ChatResponse:
        params = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            params["tools"] = tools

        response = await self.client.chat.completions.create(**params)

        choice = response.choices[0] if response.choices else None
        message = choice.message if choice is not None else None
        tool_calls = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.function.name, "arguments": call.function.arguments},
            }
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        usage = response.usage
        return ChatResponse(
            content=(message.content if message is not None else None) or "",
            usage=ChatUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                total_tokens=getattr(usage, "total_tokens", 0) or 0,
            ),
            model=getattr(response, "model", None) or self.model,
            finish_reason=choice.finish_reason if choice is not None else None,
            tool_calls=tool_calls,
        )


def to_anthropic_tool(tool: dict) -> dict:
    """Convert an OpenAI function-tool definition to Anthropic's tool shape."""
    function = tool.get("function", tool)
    return {
        "name": function["name"],
        "description": function.get("description", ""),
        "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
    }


class AnthropicChatClient(LLMClient):
    """Anthropic Messages API. System messages are lifted into ``system``."""

    provider = "anthropic"

    def __init__(
        self,
        model: str = DEFAULT_ANTHROPIC_MODEL,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[AsyncAnthropic] = None,
        **kwargs,
    ):
        super().__init__(model, **kwargs)
        self.client = client or AsyncAnthropic(
            api_key=api_key,
            base_url=api_base,
            timeout=timeout,
            max_retries=0,
        )

    def _build_params(self, messages, tools, temperature, max_tokens) -> dict:
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        conversation = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m.get("role") in ("user", "assistant")
        ]
        params = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": conversation,
        }
        if system_parts:
            params["system"] = "\n\n".join(system_parts)
        if tools:
            params["tools"] = [to_anthropic_tool(t) for t in tools]
        return params

    async def _chat_once(self, messages, tools, temperature, max_tokens) -> ChatResponse:
        response = await self.client.messages.create(
            **self._build_params(messages, tools, temperature, max_tokens)
        )

        text = ""
        tool_calls = []
        for block in response.content:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                text += block.text
            elif block_type == "tool_use":
                tool_calls.append({
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": json.dumps(block.input)},
                })

        usage = response.usage
        prompt_tokens = getattr(usage, "input_tokens", 0) or 0
        completion_tokens = getattr(usage, "output_tokens", 0) or 0
        return ChatResponse(
            content=text,
            usage=ChatUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            model=getattr(response, "model", None) or self.model,
            finish_reason=getattr(response, "stop_reason", None),
            tool_calls=tool_calls,
        )


def build_llm_client(settings) -> LLMClient:
    """Select the chat backend named by ``settings.llm_provider``."""
    common = {
        "max_tokens": settings.llm_max_tokens,
        "temperature": settings.llm_temperature,
        "max_retries": settings.llm_max_retries,
    }
    if settings.llm_provider == "openai":
        return OpenAIChatClient(
            model=settings.llm_model or DEFAULT_OPENAI_MODEL,
            api_key=settings.llm_api_key,
            api_base=settings.llm_api_base,
            timeout=settings.llm_timeout,
            **common,
        )
    if settings.llm_provider == "anthropic":
        return AnthropicChatClient(
            model=settings.llm_model or DEFAULT_ANTHROPIC_MODEL,
            api_key=settings.llm_api_key,
            api_base=settings.llm_api_base,
            timeout=settings.llm_timeout,
            **common,
        )
    raise ValueError(f"Unsupported provider: {settings.llm_provider!r}")
