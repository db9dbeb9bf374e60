"""
Retrieval-augmented query engine.

Modes:
- local: embed the question, answer from the nearest entities, their
  relationships and source passages
- global: answer from a whole-graph overview (types, hubs, strongest
  relationships)
- agentic: the model searches the graph itself through tools

Every mode has a blocking and a streaming variant. Streaming variants emit a
`step` event ("db_query") before retrieval and then forward the generation
events unchanged.

Failure policy:
- retrieval failures (RetrievalError) propagate; they signal a storage
  problem, not a content gap
- generation and tool failures degrade to the "no relevant data" answer
- an empty context never reaches the main generation prompt
"""

import asyncio
import contextlib
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from src.core.config import settings
from src.core.exceptions import RetrievalError
from src.core.logging import get_logger
from src.services.ai_client import (
    AIError,
    BaseAIClient,
    ChatMessage,
    ChatOptions,
    StreamEvent,
    StreamEventType,
)
from src.services.query_prompts import (
    AGENT_PROMPT,
    CITATION_RULES,
    CLARIFICATION_PROMPT,
    GLOBAL_CONTEXT_PROMPT,
    LOCAL_CONTEXT_PROMPT,
    NO_DATA_PROMPT,
    SERVER_ERROR_RESPONSE,
)
from src.services.query_store import QueryStore
from src.services.query_tools import GraphTools
from src.services.query_trace import QueryTrace

logger = get_logger(__name__)

DB_QUERY_STEP = "db_query"

Emit = Callable[[StreamEvent], Awaitable[None]]


class QueryMode(str, Enum):
    """Retrieval strategy of a query."""

    LOCAL = "local"
    GLOBAL = "global"
    AGENTIC = "agentic"


@dataclass
class QueryOptions:
    """Caller-supplied knobs for one query."""

    system_prompts: list[str] = field(default_factory=list)
    model: str | None = None
    thinking: bool = False
    enable_clarification: bool | None = None


@dataclass
class _Done:
    """End of a stream; carries the producer's error, if any."""

    error: BaseException | None = None


def last_user_message(messages: list[ChatMessage]) -> str:
    """The question being asked: the content of the last user message."""
    for message in reversed(messages):
        if message.role == "user" and message.content.strip():
            return message.content.strip()
    raise ValueError("Conversation has no user message")


class QueryEngine:
    """
    Answers questions against one project's graph.

    Usage:
        engine = QueryEngine(ai, GraphStore(db), project_id)
        answer = await engine.query(QueryMode.LOCAL, messages)
        async for event in engine.stream(QueryMode.AGENTIC, messages):
            ...
        engine.trace.snapshot()
    """

    def __init__(
        self,
        ai_client: BaseAIClient,
        store: QueryStore,
        graph_id: uuid.UUID,
        options: QueryOptions | None = None,
        trace: QueryTrace | None = None,
        buffer_size: int | None = None,
    ):
        self.ai = ai_client
        self.store = store
        self.graph_id = graph_id
        self.options = options or QueryOptions()
        self.trace = trace or QueryTrace()
        self.buffer_size = buffer_size or settings.stream_buffer_size

    # =========================================================================
    # Prompt composition
    # =========================================================================

    def _chat_options(self, *prompts: str) -> ChatOptions:
        """Mode prompt first, then the caller's own system prompts."""
        return ChatOptions(
            system_prompts=list(self.options.system_prompts),
            model=self.options.model,
            thinking=self.options.thinking,
        ).with_system_prompts(*prompts)

    def _agent_prompts(self) -> list[str]:
        prompts = [AGENT_PROMPT.format(citation_rules=CITATION_RULES)]
        clarify = self.options.enable_clarification
        if settings.enable_clarification if clarify is None else clarify:
            prompts.append(CLARIFICATION_PROMPT)
        return prompts

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def _context(self, mode: QueryMode, question: str) -> str | None:
        """
        Fetch the context block for local/global mode.

        Returns None when the question cannot be embedded (treated like an
        empty context); RetrievalError propagates.
        """
        try:
            embedding = await self.ai.generate_embedding(question)
        except AIError as e:
            logger.warning("Query embedding failed", graph_id=str(self.graph_id), error=str(e))
            return None

        if mode == QueryMode.LOCAL:
            context = await self.store.get_local_query_context(question, embedding, self.graph_id, self.trace)
        else:
            context = await self.store.get_global_query_context(question, embedding, self.graph_id, self.trace)
        return context.strip() or None

    def _context_prompt(self, mode: QueryMode, context: str) -> str:
        template = LOCAL_CONTEXT_PROMPT if mode == QueryMode.LOCAL else GLOBAL_CONTEXT_PROMPT
        return template.format(citation_rules=CITATION_RULES, context=context)

    # =========================================================================
    # No-data fallback
    # =========================================================================

    async def no_data_response(self, question: str) -> str:
        """A short "nothing relevant found" answer in the question's language."""
        try:
            answer = await self.ai.generate_completion(
                NO_DATA_PROMPT.format(question=question),
                ChatOptions(model=self.options.model),
            )
        except AIError as e:
            logger.error("No-data response failed", graph_id=str(self.graph_id), error=str(e))
            return SERVER_ERROR_RESPONSE
        return answer.strip() or SERVER_ERROR_RESPONSE

    # =========================================================================
    # Blocking
    # =========================================================================

    async def query(self, mode: QueryMode, messages: list[ChatMessage]) -> str:
        if mode == QueryMode.AGENTIC:
            return await self.query_agentic(messages)
        return await self._query_with_context(mode, messages)

    async def query_local(self, messages: list[ChatMessage]) -> str:
        return await self._query_with_context(QueryMode.LOCAL, messages)

    async def query_global(self, messages: list[ChatMessage]) -> str:
        return await self._query_with_context(QueryMode.GLOBAL, messages)

    async def _query_with_context(self, mode: QueryMode, messages: list[ChatMessage]) -> str:
        question = last_user_message(messages)
        context = await self._context(mode, question)
        if context is None:
            logger.info("No context for query", mode=mode.value, graph_id=str(self.graph_id))
            return await self.no_data_response(question)

        try:
            return await self.ai.generate_chat(messages, self._chat_options(self._context_prompt(mode, context)))
        except AIError as e:
            logger.warning("Query generation failed", mode=mode.value, graph_id=str(self.graph_id), error=str(e))
            return await self.no_data_response(question)

    async def query_agentic(self, messages: list[ChatMessage]) -> str:
        question = last_user_message(messages)
        tools = GraphTools(self.ai, self.store, self.graph_id, self.trace).build()
        try:
            answer = await self.ai.generate_chat_with_tools(
                messages, tools, self._chat_options(*self._agent_prompts())
            )
        except (AIError, RetrievalError) as e:
            logger.warning("Agentic query failed", graph_id=str(self.graph_id), error=str(e))
            return await self.no_data_response(question)
        return answer if answer.strip() else await self.no_data_response(question)

    # =========================================================================
    # Streaming
    # =========================================================================

    def stream(self, mode: QueryMode, messages: list[ChatMessage]) -> AsyncIterator[StreamEvent]:
        if mode == QueryMode.AGENTIC:
            return self.stream_agentic(messages)
        return self._buffered(lambda emit: self._produce_with_context(mode, messages, emit))

    def stream_local(self, messages: list[ChatMessage]) -> AsyncIterator[StreamEvent]:
        return self.stream(QueryMode.LOCAL, messages)

    def stream_global(self, messages: list[ChatMessage]) -> AsyncIterator[StreamEvent]:
        return self.stream(QueryMode.GLOBAL, messages)

    def stream_agentic(self, messages: list[ChatMessage]) -> AsyncIterator[StreamEvent]:
        return self._buffered(lambda emit: self._produce_agentic(messages, emit))

    async def _buffered(self, produce: Callable[[Emit], Awaitable[None]]) -> AsyncIterator[StreamEvent]:
        """
        Run `produce` as a task feeding a bounded queue and yield its events.

        The producer always ends the stream with a _Done marker unless it is
        cancelled, which happens when the consumer stops early. Producer
        errors are re-raised in the consumer.
        """
        queue: asyncio.Queue[StreamEvent | _Done] = asyncio.Queue(maxsize=self.buffer_size)

        async def run() -> None:
            try:
                await produce(queue.put)
            except Exception as e:
                await queue.put(_Done(e))
            else:
                await queue.put(_Done())

        producer = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _Done):
                    if item.error is not None:
                        raise item.error
                    return
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    async def _emit_no_data(self, question: str, emit: Emit) -> None:
        await emit(StreamEvent(type=StreamEventType.CONTENT, content=await self.no_data_response(question)))

    async def _produce_with_context(self, mode: QueryMode, messages: list[ChatMessage], emit: Emit) -> None:
        question = last_user_message(messages)
        await emit(StreamEvent(type=StreamEventType.STEP, step=DB_QUERY_STEP))

        context = await self._context(mode, question)
        if context is None:
            logger.info("No context for query", mode=mode.value, graph_id=str(self.graph_id))
            await self._emit_no_data(question, emit)
            return

        options = self._chat_options(self._context_prompt(mode, context))
        try:
            async for event in self.ai.generate_chat_stream(messages, options):
                await emit(event)
        except AIError as e:
            logger.warning("Query stream failed", mode=mode.value, graph_id=str(self.graph_id), error=str(e))
            await self._emit_no_data(question, emit)

    async def _produce_agentic(self, messages: list[ChatMessage], emit: Emit) -> None:
        question = last_user_message(messages)
        await emit(StreamEvent(type=StreamEventType.STEP, step=DB_QUERY_STEP))

        tools = GraphTools(self.ai, self.store, self.graph_id, self.trace).build()
        produced_content = False
        try:
            async for event in self.ai.generate_chat_stream_with_tools(
                messages, tools, self._chat_options(*self._agent_prompts())
            ):
                if event.type == StreamEventType.CONTENT and event.content:
                    produced_content = True
                await emit(event)
        except (AIError, RetrievalError) as e:
            logger.warning("Agentic query stream failed", graph_id=str(self.graph_id), error=str(e))
            await self._emit_no_data(question, emit)
            return

        if not produced_content:
            await self._emit_no_data(question, emit)
