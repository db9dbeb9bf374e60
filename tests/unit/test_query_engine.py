"""Unit tests for the query engine's modes, streaming and failure policy."""

import uuid

import pytest

from src.core.exceptions import RetrievalError
from src.services.ai_client import ChatMessage, StreamEvent, StreamEventType, ToolCall
from src.services.query_engine import (
    DB_QUERY_STEP,
    QueryEngine,
    QueryMode,
    QueryOptions,
    last_user_message,
)
from src.services.query_prompts import SERVER_ERROR_RESPONSE

pytestmark = pytest.mark.asyncio

GRAPH_ID = uuid.UUID(int=42)
QUESTION = [ChatMessage(role="user", content="Who founded Acme?")]
LOCAL_CONTEXT = "Relevant Entities:\nAcme Corp,ent-acme: A widget maker"


def engine(mock_ai, query_store, **options) -> QueryEngine:
    return QueryEngine(mock_ai, query_store, GRAPH_ID, QueryOptions(**options), buffer_size=2)


async def collect(stream) -> list[StreamEvent]:
    return [event async for event in stream]


def content_of(events: list[StreamEvent]) -> str:
    return "".join(e.content for e in events if e.type == StreamEventType.CONTENT)


# =============================================================================
# Helpers
# =============================================================================


class TestLastUserMessage:
    """Tests for picking the question out of a conversation."""

    async def test_last_user_message_wins(self) -> None:
        messages = [
            ChatMessage(role="user", content="first"),
            ChatMessage(role="assistant", content="answer"),
            ChatMessage(role="user", content="  second  "),
            ChatMessage(role="user", content="   "),
        ]
        assert last_user_message(messages) == "second"

    async def test_no_user_message(self) -> None:
        with pytest.raises(ValueError):
            last_user_message([ChatMessage(role="assistant", content="hi")])


# =============================================================================
# Blocking
# =============================================================================


class TestBlockingQuery:
    """Tests for local, global and agentic blocking calls."""

    async def test_local_answer_uses_context(self, mock_ai, query_store, sample_sources) -> None:
        query_store.local_context = LOCAL_CONTEXT
        query_store.sources = sample_sources
        mock_ai.set_responses(["Jane Doe founded it [[unit-1]]."])
        qe = engine(mock_ai, query_store, system_prompts=["Be brief."])

        answer = await qe.query(QueryMode.LOCAL, QUESTION)

        assert answer == "Jane Doe founded it [[unit-1]]."
        assert query_store.calls == ["local"]
        prompts = mock_ai.seen_system_prompts[-1]
        # Mode prompt first, caller prompts after
        assert LOCAL_CONTEXT in prompts[0]
        assert prompts[1:] == ["Be brief."]
        assert qe.trace.snapshot().used_source_ids == ["file-a", "file-b"]

    async def test_global_mode_uses_global_context(self, mock_ai, query_store) -> None:
        query_store.global_context = "Entity Types:\nORGANIZATION: 2"

        await engine(mock_ai, query_store).query(QueryMode.GLOBAL, QUESTION)

        assert query_store.calls == ["global"]
        assert "ORGANIZATION: 2" in mock_ai.seen_system_prompts[-1][0]

    async def test_empty_context_gives_no_data_answer(self, mock_ai, query_store) -> None:
        mock_ai.set_responses(["Nothing relevant was found."])

        answer = await engine(mock_ai, query_store).query(QueryMode.LOCAL, QUESTION)

        assert answer == "Nothing relevant was found."
        assert mock_ai.calls == ["embedding", "chat"]
        # The no-data call carries no context prompt
        assert mock_ai.seen_system_prompts == [[]]

    async def test_embedding_failure_is_treated_as_no_context(self, mock_ai, query_store) -> None:
        mock_ai.fail_on = {"embedding"}
        query_store.local_context = LOCAL_CONTEXT

        await engine(mock_ai, query_store).query(QueryMode.LOCAL, QUESTION)

        assert query_store.calls == []
        assert mock_ai.seen_system_prompts == [[]]

    async def test_retrieval_error_propagates(self, mock_ai, query_store) -> None:
        query_store.fail_with = RetrievalError("database down")

        with pytest.raises(RetrievalError):
            await engine(mock_ai, query_store).query(QueryMode.LOCAL, QUESTION)

    async def test_generation_failure_degrades_to_no_data(self, mock_ai, query_store) -> None:
        query_store.local_context = LOCAL_CONTEXT
        mock_ai.fail_on = {"chat"}

        answer = await engine(mock_ai, query_store).query(QueryMode.LOCAL, QUESTION)

        # The no-data call fails as well
        assert answer == SERVER_ERROR_RESPONSE
        assert mock_ai.calls.count("chat") == 2

    async def test_agentic_runs_tools(self, mock_ai, query_store, sample_entities) -> None:
        query_store.entities = sample_entities
        mock_ai.set_tool_script([[ToolCall(id="c1", name="search_entities", arguments={"query": "Acme"})]])
        mock_ai.set_responses(["Acme Corp [[ent-acme]] is a widget maker."])
        qe = engine(mock_ai, query_store)

        answer = await qe.query(QueryMode.AGENTIC, QUESTION)

        assert answer == "Acme Corp [[ent-acme]] is a widget maker."
        assert query_store.calls == ["search_entities"]
        assert qe.trace.snapshot().queried_entity_ids == ["ent-acme", "ent-jane"]

    async def test_agentic_clarification_prompt(self, mock_ai, query_store) -> None:
        await engine(mock_ai, query_store, enable_clarification=True).query(QueryMode.AGENTIC, QUESTION)
        with_clarification = mock_ai.seen_system_prompts[-1]

        await engine(mock_ai, query_store, enable_clarification=False).query(QueryMode.AGENTIC, QUESTION)
        without = mock_ai.seen_system_prompts[-1]

        assert len(with_clarification) == len(without) + 1

    async def test_agentic_empty_answer_gives_no_data(self, mock_ai, query_store) -> None:
        mock_ai.set_responses(["   ", "No data found."])

        answer = await engine(mock_ai, query_store).query(QueryMode.AGENTIC, QUESTION)

        assert answer == "No data found."

    async def test_agentic_retrieval_error_degrades(self, mock_ai, query_store) -> None:
        query_store.fail_with = RetrievalError("database down")
        mock_ai.set_tool_script([[ToolCall(id="c1", name="get_entity_types")]])
        mock_ai.set_responses(["No data found."])

        answer = await engine(mock_ai, query_store).query(QueryMode.AGENTIC, QUESTION)

        assert answer == "No data found."


# =============================================================================
# Streaming
# =============================================================================


class TestStreamingQuery:
    """Tests for the streaming variants."""

    async def test_step_event_comes_first(self, mock_ai, query_store) -> None:
        query_store.local_context = LOCAL_CONTEXT
        mock_ai.set_responses(["Jane Doe founded Acme [[unit-1]]."])

        events = await collect(engine(mock_ai, query_store).stream(QueryMode.LOCAL, QUESTION))

        assert events[0] == StreamEvent(type=StreamEventType.STEP, step=DB_QUERY_STEP)
        assert content_of(events) == "Jane Doe founded Acme [[unit-1]]."
        assert len(events) > 3
        assert "chat_stream" in mock_ai.calls

    async def test_empty_context_streams_no_data(self, mock_ai, query_store) -> None:
        mock_ai.set_responses(["Nothing relevant."])

        events = await collect(engine(mock_ai, query_store).stream(QueryMode.GLOBAL, QUESTION))

        assert events[0].type == StreamEventType.STEP
        assert content_of(events) == "Nothing relevant."
        assert "chat_stream" not in mock_ai.calls

    async def test_retrieval_error_reaches_consumer(self, mock_ai, query_store) -> None:
        query_store.fail_with = RetrievalError("database down")
        received: list[StreamEvent] = []

        with pytest.raises(RetrievalError):
            async for event in engine(mock_ai, query_store).stream(QueryMode.LOCAL, QUESTION):
                received.append(event)

        assert [e.type for e in received] == [StreamEventType.STEP]

    async def test_stream_failure_degrades_to_no_data(self, mock_ai, query_store) -> None:
        query_store.local_context = LOCAL_CONTEXT
        mock_ai.fail_on = {"chat_stream"}
        mock_ai.set_responses(["No data found."])

        events = await collect(engine(mock_ai, query_store).stream(QueryMode.LOCAL, QUESTION))

        assert content_of(events) == "No data found."

    async def test_agentic_stream_reports_tools(self, mock_ai, query_store, sample_entities) -> None:
        query_store.entities = sample_entities
        mock_ai.set_tool_script([[ToolCall(id="c1", name="search_entities", arguments={"query": "Acme"})]])
        mock_ai.set_responses(["Acme [[ent-acme]]."])

        events = await collect(engine(mock_ai, query_store).stream(QueryMode.AGENTIC, QUESTION))

        types = [e.type for e in events]
        assert types[0] == StreamEventType.STEP
        assert StreamEventType.TOOL in types
        assert types.index(StreamEventType.TOOL) < types.index(StreamEventType.CONTENT)
        assert content_of(events) == "Acme [[ent-acme]]."

    async def test_agentic_stream_without_content_gives_no_data(self, mock_ai, query_store) -> None:
        mock_ai.set_responses(["", "No data found."])

        events = await collect(engine(mock_ai, query_store).stream(QueryMode.AGENTIC, QUESTION))

        assert content_of(events) == "No data found."

    async def test_consumer_may_stop_early(self, mock_ai, query_store) -> None:
        """Leaving the loop cancels the producer instead of blocking on the full buffer."""
        query_store.local_context = LOCAL_CONTEXT
        mock_ai.set_responses(["x" * 400])
        stream = engine(mock_ai, query_store).stream(QueryMode.LOCAL, QUESTION)

        seen = 0
        async for _ in stream:
            seen += 1
            if seen == 3:
                break
        await stream.aclose()

        assert seen == 3
