"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from fastapi import Depends

from src.db import get_db_context
from src.services.ai_client import BaseAIClient, get_ai_client
from src.services.graph_store import GraphStore
from src.services.orchestrator import BatchOrchestrator, TaskDispatcher
from src.services.query_store import QueryStore

QueryResources = Callable[[], AbstractAsyncContextManager[tuple[BaseAIClient, QueryStore]]]


async def get_ai() -> AsyncGenerator[BaseAIClient, None]:
    """AI client for the request, closed when the response is done."""
    async with get_ai_client() as ai:
        yield ai


def get_dispatcher() -> TaskDispatcher:
    """Queue batch stages on the Celery workers."""
    from src.workers.tasks import CeleryDispatcher

    return CeleryDispatcher()


async def get_orchestrator(
    ai: BaseAIClient = Depends(get_ai),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
) -> AsyncGenerator[BatchOrchestrator, None]:
    orchestrator = BatchOrchestrator(ai, dispatcher=dispatcher)
    try:
        yield orchestrator
    finally:
        await orchestrator.aclose()


@asynccontextmanager
async def open_query_resources() -> AsyncIterator[tuple[BaseAIClient, QueryStore]]:
    async with get_ai_client() as ai, get_db_context() as db:
        yield ai, GraphStore(db)


def get_query_resources() -> QueryResources:
    """
    Opener for the AI client and graph store of one query.

    Streaming responses outlive request-scoped dependencies, so query
    endpoints open their resources inside the response body instead.
    """
    return open_query_resources
