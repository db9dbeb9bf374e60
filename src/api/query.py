"""
Query endpoints: questions answered from a project's knowledge graph.

POST /projects/{id}/query
    → Blocking answer with citations separated out and the query trace

POST /projects/{id}/query/stream
    → NDJSON stream, one event per line:
      {"type": "step", "step": "db_query"}
      {"type": "content", "content": "..."}
      {"type": "citation", "content": "<id>"}
      {"type": "tool", "content": "<tool name>", "step": "<tool name>"}
      {"type": "error", "content": "..."}
      {"type": "step", "step": "done", "trace": {...}}
    Generated text passes through the citation parser, so markers never
    reach the client as content.
"""

import json
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from src.api.deps import QueryResources, get_query_resources
from src.core.exceptions import RetrievalError
from src.core.logging import get_logger
from src.schemas import BAD_GATEWAY, NOT_FOUND, QueryRequest, QueryResponse, TraceResponse
from src.services.ai_client import BaseAIClient, ChatMessage, StreamEventType
from src.services.citations import CitationStreamParser
from src.services.query_engine import QueryEngine, QueryOptions
from src.services.query_store import QueryStore
from src.services.query_trace import QueryTrace

logger = get_logger(__name__)

router = APIRouter()

NDJSON_MEDIA_TYPE = "application/x-ndjson"
RETRIEVAL_ERROR_MESSAGE = "The knowledge base could not be queried, please try again later."


def _trace_response(trace: QueryTrace) -> TraceResponse:
    snapshot = trace.snapshot()
    return TraceResponse(
        **snapshot.to_dict(),
        considered_files=len(snapshot.considered_source_ids),
        used_files=len(snapshot.used_source_ids),
    )


async def _ensure_project(store: QueryStore, project_id: UUID) -> None:
    if not await store.graph_exists(project_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Project {project_id} not found")


def _engine(project_id: UUID, request: QueryRequest, ai: BaseAIClient, store: QueryStore) -> QueryEngine:
    options = QueryOptions(
        system_prompts=list(request.system_prompts),
        model=request.model,
        thinking=request.thinking,
        enable_clarification=request.enable_clarification,
    )
    return QueryEngine(ai, store, project_id, options=options)


def _messages(request: QueryRequest) -> list[ChatMessage]:
    return [ChatMessage(role=m.role, content=m.content) for m in request.messages]


@router.post(
    "/projects/{project_id}/query",
    response_model=QueryResponse,
    responses={**NOT_FOUND, **BAD_GATEWAY},
    summary="Ask a question",
    description="Answer a question from the project's graph (local, global or agentic retrieval).",
)
async def query_project(
    project_id: UUID,
    request: QueryRequest,
    resources: QueryResources = Depends(get_query_resources),
) -> QueryResponse:
    async with resources() as (ai, store):
        await _ensure_project(store, project_id)
        engine = _engine(project_id, request, ai, store)
        try:
            raw_answer = await engine.query(request.mode, _messages(request))
        except RetrievalError as e:
            logger.error("Query retrieval failed", project_id=str(project_id), error=str(e))
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=RETRIEVAL_ERROR_MESSAGE) from e

    content: list[str] = []
    citations: list[str] = []
    for kind, value in CitationStreamParser().parse(raw_answer):
        if kind == "citation":
            if value not in citations:
                citations.append(value)
        else:
            content.append(value)

    return QueryResponse(
        answer="".join(content),
        raw_answer=raw_answer,
        citations=citations,
        mode=request.mode,
        trace=_trace_response(engine.trace),
    )


async def ndjson_events(engine: QueryEngine, request: QueryRequest) -> AsyncIterator[str]:
    """Serialise engine events as NDJSON, splitting citations out of the content."""
    parser = CitationStreamParser()
    pending: list[dict[str, Any]] = []

    def on_content(text: str) -> None:
        pending.append({"type": StreamEventType.CONTENT.value, "content": text})

    def on_citation(citation_id: str) -> None:
        pending.append({"type": StreamEventType.CITATION.value, "content": citation_id})

    def drain() -> list[str]:
        lines = [json.dumps(event, ensure_ascii=False) + "\n" for event in pending]
        pending.clear()
        return lines

    try:
        async for event in engine.stream(request.mode, _messages(request)):
            if event.type == StreamEventType.CONTENT:
                parser.consume(event.content, on_content, on_citation)
            else:
                parser.flush(on_content)
                pending.append(event.to_dict())
            for line in drain():
                yield line
        parser.flush(on_content)
    except RetrievalError as e:
        logger.error("Query stream retrieval failed", graph_id=str(engine.graph_id), error=str(e))
        parser.flush(on_content)
        pending.append({"type": StreamEventType.ERROR.value, "content": RETRIEVAL_ERROR_MESSAGE})

    pending.append(
        {"type": StreamEventType.STEP.value, "step": "done", "trace": _trace_response(engine.trace).model_dump()}
    )
    for line in drain():
        yield line


@router.post(
    "/projects/{project_id}/query/stream",
    responses={
        200: {"content": {NDJSON_MEDIA_TYPE: {}}, "description": "Stream of query events"},
        **NOT_FOUND,
    },
    summary="Ask a question (streaming)",
)
async def stream_query_project(
    project_id: UUID,
    request: QueryRequest,
    resources: QueryResources = Depends(get_query_resources),
) -> StreamingResponse:
    stack = AsyncExitStack()
    ai, store = await stack.enter_async_context(resources())
    try:
        await _ensure_project(store, project_id)
    except BaseException:
        await stack.aclose()
        raise

    async def body() -> AsyncIterator[str]:
        async with stack:
            async for line in ndjson_events(_engine(project_id, request, ai, store), request):
                yield line

    return StreamingResponse(body(), media_type=NDJSON_MEDIA_TYPE)
