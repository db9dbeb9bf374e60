"""
Services package - Business logic and external API clients.

This package contains:
- AI client abstraction for multiple providers
- Unit splitting, entity/relationship extraction and merging
- Batch orchestration, staging, dedupe and lease locks
- The query engine, its graph tools, trace and citation parser

Heavier modules (orchestrator, graph_store, query_engine) are imported from
their own modules so the package stays cheap to import.
"""

from src.services.ai_client import (
    AIError,
    AIProvider,
    BaseAIClient,
    ChatMessage,
    ChatOptions,
    MockAIClient,
    StreamEvent,
    StreamEventType,
    get_ai_client,
)
from src.services.citations import CitationStreamParser
from src.services.merge import EntityData, GraphAccumulator, RelationshipData, merge
from src.services.query_trace import QueryTrace, TraceKind, TraceSnapshot
from src.services.units import UnitData, UnitSplitter

__all__ = [
    # AI Client
    "BaseAIClient",
    "MockAIClient",
    "AIProvider",
    "ChatMessage",
    "ChatOptions",
    "StreamEvent",
    "StreamEventType",
    "AIError",
    "get_ai_client",
    # Ingestion
    "UnitData",
    "UnitSplitter",
    "EntityData",
    "RelationshipData",
    "GraphAccumulator",
    "merge",
    # Query
    "CitationStreamParser",
    "QueryTrace",
    "TraceKind",
    "TraceSnapshot",
]
