"""
AI capability abstraction for extraction, embeddings and answer generation.

This module provides one interface over interchangeable model backends,
selected from configuration at startup.

Features:
- Async HTTP requests (httpx)
- OpenAI-compatible and Ollama backends
- Streaming chat with typed events
- Tool-calling loop shared by every backend
- Structured (JSON schema) output
- Deterministic mock client for testing

Operations:
- generate_embedding(text) -> vector
- generate_chat(messages, options) -> text
- generate_chat_stream(messages, options) -> stream of StreamEvent
- generate_chat_with_tools / generate_chat_stream_with_tools(tools)
- generate_image_description(prompt, base64_image) -> text
- generate_completion(prompt) -> text
- generate_structured(messages, schema) -> dict
"""

import hashlib
import json
import math
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from src.core.config import settings
from src.core.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# Enums and Constants
# =============================================================================


class AIProvider(str, Enum):
    """Supported AI backends."""

    OPENAI = "openai"
    OLLAMA = "ollama"
    MOCK = "mock"


class StreamEventType(str, Enum):
    """Kinds of events produced by streaming generation."""

    STEP = "step"
    CONTENT = "content"
    CITATION = "citation"
    TOOL = "tool"
    ERROR = "error"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatMessage:
    """Represents a message in the conversation."""

    role: str  # "system", "user", "assistant" or "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None


@dataclass
class ChatOptions:
    """Per-call generation options."""

    system_prompts: list[str] = field(default_factory=list)
    model: str | None = None
    thinking: bool = False
    temperature: float = 0.0
    max_tokens: int = 4096

    def with_system_prompts(self, *prompts: str) -> "ChatOptions":
        """Return a copy with prompts prepended before the caller's own."""
        return ChatOptions(
            system_prompts=[p for p in prompts if p] + list(self.system_prompts),
            model=self.model,
            thinking=self.thinking,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


@dataclass
class StreamEvent:
    """One event of a generation stream."""

    type: StreamEventType
    content: str = ""
    step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "content": self.content}
        if self.step is not None:
            data["step"] = self.step
        return data


ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


@dataclass
class AITool:
    """A function the model may call during agentic generation."""

    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler

    def to_schema(self) -> dict[str, Any]:
        """OpenAI-style function declaration (also accepted by Ollama)."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ChatResult:
    """Outcome of a single non-streaming model round."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)


# =============================================================================
# Exceptions
# =============================================================================


class AIError(Exception):
    """Base exception for AI client errors."""

    pass


class AIRateLimitError(AIError):
    """Raised when rate limited or the provider is overloaded (retryable)."""

    pass


class AIConnectionError(AIError):
    """Raised on network failures and timeouts (retryable)."""

    pass


class AIAPIError(AIError):
    """Raised when the provider rejects the request."""

    pass


class AIParseError(AIError):
    """Raised when a response cannot be parsed."""

    pass


RETRYABLE_AI_ERRORS: tuple[type[Exception], ...] = (AIRateLimitError, AIConnectionError)

# Embeddings are called from many places; retry them at the client. Chat
# retries are owned by the callers that know whether a call is idempotent.
embedding_retry = retry(
    retry=retry_if_exception_type(RETRYABLE_AI_ERRORS),
    stop=stop_after_attempt(3),
    wait=wait_random_exponential(multiplier=1, min=1, max=20),
    reraise=True,
)


def raise_for_status(response: httpx.Response, provider: str) -> None:
    """Map provider HTTP status codes onto the AI error taxonomy."""
    if response.status_code < 400:
        return

    body = response.text[:500]
    if response.status_code == 429 or response.status_code >= 500:
        logger.warning(
            "AI provider unavailable",
            provider=provider,
            status_code=response.status_code,
        )
        raise AIRateLimitError(f"{provider} returned status {response.status_code}")

    logger.error(
        "AI provider error",
        provider=provider,
        status_code=response.status_code,
        response=body,
    )
    if response.status_code in (401, 403):
        raise AIAPIError(f"{provider} API key invalid or lacks permissions")
    if response.status_code == 404:
        raise AIAPIError(f"{provider} model or endpoint not found: {body}")
    raise AIAPIError(f"{provider} returned status {response.status_code}: {body}")


def parse_json_content(content: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating markdown fences."""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise AIParseError(f"Model output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AIParseError("Model output is not a JSON object")
    return data


# =============================================================================
# Base AI Client
# =============================================================================


class BaseAIClient(ABC):
    """
    Abstract base class for AI clients.

    Subclasses implement one non-streaming round, one streaming round,
    embeddings and image description. Tool loops, completion and structured
    output are built on top of those here.
    """

    def __init__(
        self,
        model: str | None = None,
        embedding_model: str | None = None,
        timeout: float | None = None,
        max_tool_rounds: int | None = None,
    ):
        self.model = model or settings.chat_model
        self.embedding_model = embedding_model or settings.embedding_model
        self.timeout = timeout or settings.ai_timeout_seconds
        self.max_tool_rounds = max_tool_rounds or settings.query_tool_max_rounds
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BaseAIClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client."""
        if self._client is None:
            raise RuntimeError(
                "AI client must be used as async context manager: "
                "async with get_ai_client() as ai: ..."
            )
        return self._client

    @abstractmethod
    def provider(self) -> AIProvider:
        """Get the provider type."""
        pass

    # ----- backend primitives -----

    @abstractmethod
    async def _chat_round(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> ChatResult:
        """Run one non-streaming model round."""
        pass

    @abstractmethod
    def _chat_round_stream(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None,
        tool_calls: list[ToolCall],
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one model round.

        Content deltas are yielded as events; tool calls requested by the
        model are appended to `tool_calls` once the round finishes.
        """
        pass

    @abstractmethod
    async def generate_embedding(self, text: str) -> list[float]:
        """Embed a text."""
        pass

    @abstractmethod
    async def generate_image_description(
        self,
        prompt: str,
        base64_image: str,
        mime_prefix: str = "data:image/png;base64,",
    ) -> str:
        """Describe an image in text."""
        pass

    # ----- composed operations -----

    async def generate_chat(
        self,
        messages: list[ChatMessage],
        options: ChatOptions | None = None,
    ) -> str:
        """Generate one assistant reply."""
        result = await self._chat_round(messages, options or ChatOptions())
        return result.content

    async def generate_chat_stream(
        self,
        messages: list[ChatMessage],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one assistant reply as content events."""
        async for event in self._chat_round_stream(messages, options or ChatOptions(), None, []):
            yield event

    async def generate_completion(self, prompt: str, options: ChatOptions | None = None) -> str:
        """Single-prompt completion."""
        return await self.generate_chat([ChatMessage(role="user", content=prompt)], options)

    async def generate_structured(
        self,
        messages: list[ChatMessage],
        json_schema: dict[str, Any],
        options: ChatOptions | None = None,
    ) -> dict[str, Any]:
        """Generate a JSON object conforming to `json_schema`."""
        result = await self._chat_round(messages, options or ChatOptions(), json_schema=json_schema)
        return parse_json_content(result.content)

    async def generate_chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[AITool],
        options: ChatOptions | None = None,
    ) -> str:
        """Let the model call tools until it produces a final answer."""
        options = options or ChatOptions()
        conversation = list(messages)

        for _ in range(self.max_tool_rounds):
            result = await self._chat_round(conversation, options, tools=tools)
            if not result.tool_calls:
                return result.content
            conversation.append(
                ChatMessage(role="assistant", content=result.content, tool_calls=result.tool_calls)
            )
            conversation.extend(await self._run_tools(result.tool_calls, tools))

        # Out of rounds: ask for an answer with what was gathered.
        result = await self._chat_round(conversation, options)
        return result.content

    async def generate_chat_stream_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[AITool],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming variant of the tool loop; tool invocations become tool events."""
        options = options or ChatOptions()
        conversation = list(messages)

        for _ in range(self.max_tool_rounds):
            calls: list[ToolCall] = []
            content_parts: list[str] = []
            async for event in self._chat_round_stream(conversation, options, tools, calls):
                if event.type == StreamEventType.CONTENT:
                    content_parts.append(event.content)
                yield event
            if not calls:
                return
            conversation.append(
                ChatMessage(role="assistant", content="".join(content_parts), tool_calls=calls)
            )
            for call in calls:
                yield StreamEvent(type=StreamEventType.TOOL, content=call.name, step=call.name)
            conversation.extend(await self._run_tools(calls, tools))

        async for event in self._chat_round_stream(conversation, options, None, []):
            yield event

    async def _run_tools(self, calls: list[ToolCall], tools: list[AITool]) -> list[ChatMessage]:
        """Execute requested tools; failures are reported back to the model as text."""
        by_name = {tool.name: tool for tool in tools}
        replies = []
        for call in calls:
            tool = by_name.get(call.name)
            if tool is None:
                output = f"Unknown tool: {call.name}"
            else:
                try:
                    output = await tool.handler(call.arguments)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning("Tool call rejected", tool=call.name, error=str(e))
                    output = f"Invalid arguments for {call.name}: {e}"
            logger.debug("Tool executed", tool=call.name, output_chars=len(output))
            replies.append(ChatMessage(role="tool", content=output, tool_call_id=call.id))
        return replies

    def _system_messages(self, options: ChatOptions) -> list[dict[str, Any]]:
        return [{"role": "system", "content": prompt} for prompt in options.system_prompts if prompt]


# =============================================================================
# OpenAI-compatible Client
# =============================================================================


class OpenAIClient(BaseAIClient):
    """Client for OpenAI and OpenAI-compatible chat/embedding APIs."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key or settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")

        if not self.api_key:
            raise ValueError("OpenAI API key not configured. Set OPENAI_API_KEY in .env")

    def provider(self) -> AIProvider:
        return AIProvider.OPENAI

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _serialize(self, message: ChatMessage) -> dict[str, Any]:
        data: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            data["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            data["tool_call_id"] = message.tool_call_id
        return data

    def _payload(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None,
        json_schema: dict[str, Any] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model or self.model,
            "messages": self._system_messages(options) + [self._serialize(m) for m in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.thinking:
            payload["reasoning_effort"] = "high"
            payload.pop("temperature")
        if tools:
            payload["tools"] = [tool.to_schema() for tool in tools]
        if json_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "extraction", "schema": json_schema},
            }
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls = []
        for raw in raw_calls:
            function = raw.get("function", {})
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError as e:
                raise AIParseError(f"Tool call arguments are not JSON: {e}") from e
            calls.append(ToolCall(id=raw.get("id", ""), name=function.get("name", ""), arguments=arguments))
        return calls

    async def _chat_round(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> ChatResult:
        payload = self._payload(messages, options, tools, json_schema)
        logger.debug("OpenAI chat request", model=payload["model"], messages=len(payload["messages"]))

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers,
                json=payload,
            )
        except httpx.HTTPError as e:
            raise AIConnectionError(f"OpenAI request failed: {e}") from e
        raise_for_status(response, "openai")

        data = response.json()
        choices = data.get("choices", [])
        if not choices:
            raise AIParseError("OpenAI response has no choices")
        message = choices[0].get("message", {})
        usage = data.get("usage", {})

        return ChatResult(
            content=message.get("content") or "",
            tool_calls=self._parse_tool_calls(message.get("tool_calls") or []),
            usage={
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
            },
        )

    async def _chat_round_stream(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None,
        tool_calls: list[ToolCall],
    ) -> AsyncIterator[StreamEvent]:
        payload = self._payload(messages, options, tools, stream=True)
        partial_calls: dict[int, dict[str, Any]] = {}

        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                headers=self._headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise_for_status(response, "openai")
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise AIParseError(f"Invalid stream chunk: {e}") from e
                    for choice in chunk.get("choices", []):
                        delta = choice.get("delta", {})
                        if delta.get("content"):
                            yield StreamEvent(type=StreamEventType.CONTENT, content=delta["content"])
                        for raw in delta.get("tool_calls") or []:
                            slot = partial_calls.setdefault(
                                raw.get("index", 0),
                                {"id": "", "function": {"name": "", "arguments": ""}},
                            )
                            if raw.get("id"):
                                slot["id"] = raw["id"]
                            function = raw.get("function", {})
                            slot["function"]["name"] += function.get("name") or ""
                            slot["function"]["arguments"] += function.get("arguments") or ""
        except httpx.HTTPError as e:
            raise AIConnectionError(f"OpenAI stream failed: {e}") from e

        tool_calls.extend(self._parse_tool_calls([partial_calls[i] for i in sorted(partial_calls)]))

    @embedding_retry
    async def generate_embedding(self, text: str) -> list[float]:
        payload: dict[str, Any] = {"model": self.embedding_model, "input": text}
        if settings.embedding_dimensions:
            payload["dimensions"] = settings.embedding_dimensions
        try:
            response = await self.client.post(
                f"{self.base_url}/embeddings",
                headers=self._headers,
                json=payload,
            )
        except httpx.HTTPError as e:
            raise AIConnectionError(f"OpenAI embedding request failed: {e}") from e
        raise_for_status(response, "openai")

        data = response.json().get("data", [])
        if not data:
            raise AIParseError("OpenAI embedding response is empty")
        return data[0]["embedding"]

    async def generate_image_description(
        self,
        prompt: str,
        base64_image: str,
        mime_prefix: str = "data:image/png;base64,",
    ) -> str:
        payload = {
            "model": settings.image_model or self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"{mime_prefix}{base64_image}"}},
                    ],
                }
            ],
        }
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                headers=self._headers,
                json=payload,
            )
        except httpx.HTTPError as e:
            raise AIConnectionError(f"OpenAI image request failed: {e}") from e
        raise_for_status(response, "openai")

        choices = response.json().get("choices", [])
        if not choices:
            raise AIParseError("OpenAI image response has no choices")
        return choices[0].get("message", {}).get("content") or ""


# =============================================================================
# Ollama Client
# =============================================================================


class OllamaClient(BaseAIClient):
    """Client for a local Ollama server."""

    def __init__(self, base_url: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")

    def provider(self) -> AIProvider:
        return AIProvider.OLLAMA

    def _serialize(self, message: ChatMessage) -> dict[str, Any]:
        data: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.tool_calls:
            data["tool_calls"] = [
                {"function": {"name": call.name, "arguments": call.arguments}}
                for call in message.tool_calls
            ]
        return data

    def _payload(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None,
        json_schema: dict[str, Any] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model or self.model,
            "messages": self._system_messages(options) + [self._serialize(m) for m in messages],
            "stream": stream,
            "options": {"temperature": options.temperature, "num_predict": options.max_tokens},
        }
        if options.thinking:
            payload["think"] = True
        if tools:
            payload["tools"] = [tool.to_schema() for tool in tools]
        if json_schema is not None:
            payload["format"] = json_schema
        return payload

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        return [
            ToolCall(
                id=f"call_{i}",
                name=raw.get("function", {}).get("name", ""),
                arguments=raw.get("function", {}).get("arguments") or {},
            )
            for i, raw in enumerate(raw_calls)
        ]

    async def _chat_round(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> ChatResult:
        payload = self._payload(messages, options, tools, json_schema)
        logger.debug("Ollama chat request", model=payload["model"], messages=len(payload["messages"]))

        try:
            response = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        except httpx.HTTPError as e:
            raise AIConnectionError(f"Ollama request failed: {e}") from e
        raise_for_status(response, "ollama")

        data = response.json()
        message = data.get("message", {})
        return ChatResult(
            content=message.get("content") or "",
            tool_calls=self._parse_tool_calls(message.get("tool_calls") or []),
            usage={
                "input_tokens": data.get("prompt_eval_count", 0),
                "output_tokens": data.get("eval_count", 0),
            },
        )

    async def _chat_round_stream(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None,
        tool_calls: list[ToolCall],
    ) -> AsyncIterator[StreamEvent]:
        payload = self._payload(messages, options, tools, stream=True)
        raw_calls: list[dict[str, Any]] = []

        try:
            async with self.client.stream("POST", f"{self.base_url}/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise_for_status(response, "ollama")
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise AIParseError(f"Invalid stream chunk: {e}") from e
                    message = chunk.get("message", {})
                    if message.get("content"):
                        yield StreamEvent(type=StreamEventType.CONTENT, content=message["content"])
                    raw_calls.extend(message.get("tool_calls") or [])
                    if chunk.get("done"):
                        break
        except httpx.HTTPError as e:
            raise AIConnectionError(f"Ollama stream failed: {e}") from e

        tool_calls.extend(self._parse_tool_calls(raw_calls))

    @embedding_retry
    async def generate_embedding(self, text: str) -> list[float]:
        try:
            response = await self.client.post(
                f"{self.base_url}/api/embed",
                json={"model": self.embedding_model, "input": text},
            )
        except httpx.HTTPError as e:
            raise AIConnectionError(f"Ollama embedding request failed: {e}") from e
        raise_for_status(response, "ollama")

        embeddings = response.json().get("embeddings", [])
        if not embeddings:
            raise AIParseError("Ollama embedding response is empty")
        return embeddings[0]

    async def generate_image_description(
        self,
        prompt: str,
        base64_image: str,
        mime_prefix: str = "data:image/png;base64,",  # noqa: ARG002 - Ollama takes raw base64
    ) -> str:
        payload = {
            "model": settings.image_model or self.model,
            "messages": [{"role": "user", "content": prompt, "images": [base64_image]}],
            "stream": False,
        }
        try:
            response = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        except httpx.HTTPError as e:
            raise AIConnectionError(f"Ollama image request failed: {e}") from e
        raise_for_status(response, "ollama")
        return response.json().get("message", {}).get("content") or ""


# =============================================================================
# Mock Client (for testing)
# =============================================================================


class MockAIClient(BaseAIClient):
    """
    Mock AI client for testing without API calls.

    - Embeddings are deterministic unit vectors derived from the text hash.
    - Chat replies come from `set_responses` in order (last one repeats).
    - Structured replies come from `set_structured_responses`; an entry may be
      an exception instance, which is raised instead.
    - `set_tool_script` makes the first rounds request the given tool calls.
    - `fail_on` names operations that raise AIAPIError.
    """

    def __init__(self, model: str = "mock-model", dimensions: int | None = None, **kwargs):
        super().__init__(model=model, embedding_model="mock-embedding", **kwargs)
        self.dimensions = dimensions or settings.embedding_dimensions
        self._responses: list[str] = []
        self._structured: list[dict[str, Any] | Exception] = []
        self._tool_script: list[list[ToolCall]] = []
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self.seen_system_prompts: list[list[str]] = []

    async def __aenter__(self) -> "MockAIClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    def provider(self) -> AIProvider:
        return AIProvider.MOCK

    def set_responses(self, responses: list[str]) -> None:
        """Set predefined chat responses."""
        self._responses = list(responses)

    def set_structured_responses(self, responses: list[dict[str, Any] | Exception]) -> None:
        """Set predefined structured outputs, consumed one per call."""
        self._structured = list(responses)

    def set_tool_script(self, rounds: list[list[ToolCall]]) -> None:
        """Set tool calls the model requests on its first rounds."""
        self._tool_script = list(rounds)

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail_on:
            raise AIAPIError(f"mock failure for {operation}")

    def _next_response(self) -> str:
        if not self._responses:
            return "mock response"
        if len(self._responses) == 1:
            return self._responses[0]
        return self._responses.pop(0)

    async def _chat_round(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> ChatResult:
        self.seen_system_prompts.append(list(options.system_prompts))
        if json_schema is not None:
            self._record("structured")
            if not self._structured:
                return ChatResult(content=json.dumps({"entities": [], "relationships": []}))
            item = self._structured.pop(0)
            if isinstance(item, Exception):
                raise item
            return ChatResult(content=json.dumps(item))

        self._record("tools" if tools else "chat")
        if tools and self._tool_script:
            return ChatResult(content="", tool_calls=self._tool_script.pop(0))
        return ChatResult(content=self._next_response(), usage={"input_tokens": 100, "output_tokens": 50})

    async def _chat_round_stream(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        tools: list[AITool] | None,
        tool_calls: list[ToolCall],
    ) -> AsyncIterator[StreamEvent]:
        self.seen_system_prompts.append(list(options.system_prompts))
        self._record("tools_stream" if tools else "chat_stream")
        if tools and self._tool_script:
            tool_calls.extend(self._tool_script.pop(0))
            return
        # Emit in small pieces so consumers see markers split across chunks.
        text = self._next_response()
        for start in range(0, len(text), 4):
            yield StreamEvent(type=StreamEventType.CONTENT, content=text[start:start + 4])

    async def generate_embedding(self, text: str) -> list[float]:
        self._record("embedding")
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        raw = [digest[i % len(digest)] - 127.5 for i in range(self.dimensions)]
        norm = math.sqrt(sum(v * v for v in raw)) or 1.0
        return [v / norm for v in raw]

    async def generate_image_description(
        self,
        prompt: str,  # noqa: ARG002 - Required by interface
        base64_image: str,
        mime_prefix: str = "data:image/png;base64,",  # noqa: ARG002 - Required by interface
    ) -> str:
        self._record("image")
        return f"An image ({len(base64_image)} base64 characters)."


# =============================================================================
# Factory Function
# =============================================================================


def get_ai_client(
    provider: str | AIProvider | None = None,
    **kwargs,
) -> BaseAIClient:
    """
    Factory function to get an AI client.

    Args:
        provider: Provider name ("openai", "ollama", "mock")
        **kwargs: Additional arguments passed to client constructor

    Returns:
        Configured AI client

    Example:
        async with get_ai_client() as ai:
            vector = await ai.generate_embedding("hello")
    """
    if provider is None:
        provider = settings.ai_provider

    if isinstance(provider, str):
        provider = AIProvider(provider.lower())

    if provider == AIProvider.OPENAI:
        return OpenAIClient(**kwargs)
    elif provider == AIProvider.OLLAMA:
        return OllamaClient(**kwargs)
    elif provider == AIProvider.MOCK:
        return MockAIClient(**kwargs)
    else:
        raise ValueError(f"Unsupported AI provider: {provider}")
