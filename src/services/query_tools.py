"""
Graph tools offered to the model in agentic query mode.

Each tool reads from the query store for one graph and records what it
touched into the query trace. Results are rendered as the same
"name,id: text" lines used by the context prompts, so the model can cite
every line it reads.
"""

import functools
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from src.core.config import settings
from src.core.exceptions import RetrievalError
from src.services.ai_client import AITool, BaseAIClient
from src.services.query_store import (
    QueryStore,
    render_entity,
    render_relationship,
    render_source,
)
from src.services.query_trace import QueryTrace

NOTHING_FOUND = "No results."


def _require(arguments: dict[str, Any], name: str) -> str:
    value = arguments.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{name}' must be a non-empty string")
    return value.strip()


def _limit(arguments: dict[str, Any], default: int) -> int:
    value = arguments.get("limit", default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError("'limit' must be an integer")
    return max(1, min(value, default))


def _lines(lines: list[str]) -> str:
    return "\n".join(lines) if lines else NOTHING_FOUND


_LIMIT_PARAM = {"type": "integer", "description": "Maximum number of results", "minimum": 1}


def _store_errors(handler):
    """Surface database failures inside a tool as RetrievalError."""

    @functools.wraps(handler)
    async def run(arguments: dict[str, Any]) -> str:
        try:
            return await handler(arguments)
        except SQLAlchemyError as e:
            raise RetrievalError(f"Tool {handler.__name__} failed: {e}") from e

    return run


class GraphTools:
    """Builds the tool set bound to one graph, store and trace."""

    def __init__(
        self,
        ai_client: BaseAIClient,
        store: QueryStore,
        graph_id: uuid.UUID,
        trace: QueryTrace,
        entity_limit: int | None = None,
        source_limit: int | None = None,
    ):
        self.ai = ai_client
        self.store = store
        self.graph_id = graph_id
        self.trace = trace
        self.entity_limit = entity_limit or settings.query_entity_limit
        self.source_limit = source_limit or settings.query_source_limit

    async def search_entities(self, arguments: dict[str, Any]) -> str:
        query = _require(arguments, "query")
        embedding = await self.ai.generate_embedding(query)
        hits = await self.store.search_entities(
            self.graph_id, embedding, _limit(arguments, self.entity_limit)
        )
        self.trace.queried_entity(*(hit.public_id for hit in hits))
        return _lines([f"{render_entity(hit)} [{hit.type}]" for hit in hits])

    async def search_entities_by_type(self, arguments: dict[str, Any]) -> str:
        entity_type = _require(arguments, "entity_type").upper()
        query = _require(arguments, "query")
        self.trace.queried_entity_type(entity_type)
        embedding = await self.ai.generate_embedding(query)
        hits = await self.store.search_entities_by_type(
            self.graph_id, entity_type, embedding, _limit(arguments, self.entity_limit)
        )
        self.trace.queried_entity(*(hit.public_id for hit in hits))
        return _lines([render_entity(hit) for hit in hits])

    async def get_entity_neighbours(self, arguments: dict[str, Any]) -> str:
        entity_id = _require(arguments, "entity_id")
        neighbours = await self.store.get_entity_neighbours(
            self.graph_id, entity_id, _limit(arguments, self.entity_limit)
        )
        self.trace.queried_entity(entity_id, *(n.neighbour.public_id for n in neighbours))
        self.trace.queried_relationship(*(n.relationship.public_id for n in neighbours))
        return _lines(
            [f"{render_relationship(n.relationship)}\n  {render_entity(n.neighbour)}" for n in neighbours]
        )

    async def get_entity_sources(self, arguments: dict[str, Any]) -> str:
        entity_id = _require(arguments, "entity_id")
        sources = await self.store.get_entity_sources(
            self.graph_id, entity_id, _limit(arguments, self.source_limit)
        )
        self.trace.queried_entity(entity_id)
        self.trace.considered_source(*(s.file_id for s in sources))
        self.trace.used_source(*(s.file_id for s in sources))
        return _lines([render_source(s) for s in sources])

    async def get_relationship_sources(self, arguments: dict[str, Any]) -> str:
        relationship_id = _require(arguments, "relationship_id")
        sources = await self.store.get_relationship_sources(
            self.graph_id, relationship_id, _limit(arguments, self.source_limit)
        )
        self.trace.queried_relationship(relationship_id)
        self.trace.considered_source(*(s.file_id for s in sources))
        self.trace.used_source(*(s.file_id for s in sources))
        return _lines([render_source(s) for s in sources])

    async def get_entity_types(self, arguments: dict[str, Any]) -> str:  # noqa: ARG002
        types = await self.store.get_entity_types(self.graph_id)
        return _lines([f"{entity_type}: {count}" for entity_type, count in types])

    def build(self) -> list[AITool]:
        """The tool declarations handed to the model."""
        return [
            AITool(
                name="search_entities",
                description="Find entities whose description is similar to a phrase.",
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Phrase to search for"},
                        "limit": _LIMIT_PARAM,
                    },
                    "required": ["query"],
                },
                handler=_store_errors(self.search_entities),
            ),
            AITool(
                name="search_entities_by_type",
                description="Find entities of one type whose description is similar to a phrase.",
                parameters={
                    "type": "object",
                    "properties": {
                        "entity_type": {"type": "string", "description": "Entity type, e.g. PERSON"},
                        "query": {"type": "string", "description": "Phrase to search for"},
                        "limit": _LIMIT_PARAM,
                    },
                    "required": ["entity_type", "query"],
                },
                handler=_store_errors(self.search_entities_by_type),
            ),
            AITool(
                name="get_entity_neighbours",
                description="List the relationships of an entity and the entities on their other end.",
                parameters={
                    "type": "object",
                    "properties": {
                        "entity_id": {"type": "string", "description": "Entity id from a previous result"},
                        "limit": _LIMIT_PARAM,
                    },
                    "required": ["entity_id"],
                },
                handler=_store_errors(self.get_entity_neighbours),
            ),
            AITool(
                name="get_entity_sources",
                description="Return the source passages an entity was extracted from.",
                parameters={
                    "type": "object",
                    "properties": {
                        "entity_id": {"type": "string", "description": "Entity id from a previous result"},
                        "limit": _LIMIT_PARAM,
                    },
                    "required": ["entity_id"],
                },
                handler=_store_errors(self.get_entity_sources),
            ),
            AITool(
                name="get_relationship_sources",
                description="Return the source passages a relationship was extracted from.",
                parameters={
                    "type": "object",
                    "properties": {
                        "relationship_id": {
                            "type": "string",
                            "description": "Relationship id from a previous result",
                        },
                        "limit": _LIMIT_PARAM,
                    },
                    "required": ["relationship_id"],
                },
                handler=_store_errors(self.get_relationship_sources),
            ),
            AITool(
                name="get_entity_types",
                description="List the entity types in the knowledge base with their counts.",
                parameters={"type": "object", "properties": {}},
                handler=_store_errors(self.get_entity_types),
            ),
        ]
