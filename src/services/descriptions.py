"""
Condensed descriptions and embeddings for entities and relationships.

After a batch is indexed and deduplicated, every entity and relationship it
touched gets a description built from all of its sources, and an embedding
of that description. Source descriptions get their own embeddings, which
rank sources at query time.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TypeVar

from src.core.config import settings
from src.core.logging import get_logger, log_duration
from src.services.ai_client import BaseAIClient
from src.services.graph_store import DescriptionInput, GraphStore

logger = get_logger(__name__)

T = TypeVar("T")

SUMMARY_PROMPT = """Combine the following descriptions of "{label}" into one concise, comprehensive description.
Keep every distinct fact, remove repetition, resolve contradictions where possible and write in the language of the descriptions.

Descriptions:
{descriptions}"""


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


@dataclass
class DescriptionResult:
    entities: int = 0
    relationships: int = 0
    sources: int = 0


class DescriptionService:
    """Generates descriptions and embeddings for touched graph items."""

    def __init__(self, ai_client: BaseAIClient, store: GraphStore, parallel_requests: int | None = None):
        self.ai = ai_client
        self.store = store
        self.parallel_requests = parallel_requests or settings.parallel_ai_requests

    async def _bounded(self, items: list[T], worker: Callable[[T], Awaitable]) -> list:
        """Run AI work for items with bounded concurrency, preserving order."""
        semaphore = asyncio.Semaphore(self.parallel_requests)

        async def run(item: T):
            async with semaphore:
                return await worker(item)

        return list(await asyncio.gather(*(run(item) for item in items)))

    async def condense(self, item: DescriptionInput) -> str:
        """Single-source items reuse their description; others are summarised."""
        unique = list(dict.fromkeys(d.strip() for d in item.source_descriptions if d.strip()))
        if not unique:
            return ""
        if len(unique) == 1:
            return normalize_whitespace(unique[0])
        prompt = SUMMARY_PROMPT.format(
            label=item.label,
            descriptions="\n".join(f"- {d}" for d in unique),
        )
        return normalize_whitespace(await self.ai.generate_completion(prompt))

    async def _describe(self, item: DescriptionInput) -> tuple[uuid.UUID, str, list[float] | None]:
        description = await self.condense(item)
        embedding = await self.ai.generate_embedding(f"{item.label}: {description}") if description else None
        return item.id, description, embedding

    async def update(
        self,
        entity_ids: Iterable[uuid.UUID],
        relationship_ids: Iterable[uuid.UUID],
    ) -> DescriptionResult:
        """
        Refresh descriptions and embeddings for the given items.

        AI calls run concurrently (bounded); database writes happen after,
        sequentially on the store's session.
        """
        entity_ids = set(entity_ids)
        relationship_ids = set(relationship_ids)
        result = DescriptionResult()

        with log_duration(logger, "Descriptions generated") as extra:
            entity_inputs = await self.store.entity_description_inputs(entity_ids)
            for entity_id, description, embedding in await self._bounded(entity_inputs, self._describe):
                await self.store.update_entity_description(entity_id, description, embedding)
            result.entities = len(entity_inputs)

            rel_inputs = await self.store.relationship_description_inputs(relationship_ids)
            for rel_id, description, embedding in await self._bounded(rel_inputs, self._describe):
                await self.store.update_relationship_description(rel_id, description, embedding)
            result.relationships = len(rel_inputs)

            pending = await self.store.sources_without_embedding(entity_ids, relationship_ids)
            pending = [p for p in pending if p[2].strip()]

            async def embed(item: tuple[str, uuid.UUID, str]) -> list[float]:
                return await self.ai.generate_embedding(item[2])

            for (kind, source_id, _), embedding in zip(pending, await self._bounded(pending, embed)):
                await self.store.update_source_embedding(kind, source_id, embedding)
            result.sources = len(pending)

            extra.update(entities=result.entities, relationships=result.relationships, sources=result.sources)

        return result
