"""
Cross-batch deduplication of the persisted graph.

After a batch is written, entities of the same type whose names are fuzzily
similar (trigram similarity above a threshold) become duplicate candidates.
Candidates are grouped with union-find and each group is shown to the model,
which answers which names denote the same real-world entity and what the
canonical name is. Only confirmed groups are merged: all sources move to the
canonical entity, which takes the canonical name, and duplicates are
deleted. Relationships that then connect the same unordered pair of
entities are merged into one canonical relationship.

Large candidate groups are split into chunks of `dedupe_batch_size`; the
pass is repeated with a different ordering so that duplicates landing in
different chunks meet in a later iteration.

Canonical choice:
- Entity: most sources, ties broken by the smallest (oldest) id
- Relationship: smallest (oldest) id; rank recomputed as the mean strength
  of the combined sources
"""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from src.core.config import settings
from src.core.exceptions import ExtractionError, TransientError
from src.core.logging import get_logger
from src.services.ai_client import (
    RETRYABLE_AI_ERRORS,
    AIParseError,
    BaseAIClient,
    ChatMessage,
    ChatOptions,
)

logger = get_logger(__name__)

WORD = re.compile(r"[^\W_]+", re.UNICODE)
WHITESPACE = re.compile(r"\s+")


# =============================================================================
# Prompt
# =============================================================================

DEDUPE_SYSTEM_PROMPT = """You identify duplicate entities in a knowledge graph. You will be given a list of entities with their type and number of sources.

Rules:
- Entities are duplicates if they denote the same real-world entity despite minor naming differences
- Entities with distinct identities stay separate (e.g. "EWE", "EWE AG" and "EWE TEL" are separate entities)
- Variations that may denote the same entity:
  * Case differences ("Acme Corp" vs "ACME CORP")
  * Added legal suffixes ("IBM" vs "IBM Corporation")
  * Abbreviations and full names ("AT&T" vs "American Telephone and Telegraph")
  * Whitespace and punctuation differences
- Only group entities of the same type
- Choose one canonical name per group, usually the most complete or most commonly used one

Duplicates:
- "Microsoft" and "Microsoft Corporation"
- "Google LLC" and "Google"
- "Apple Inc." and "Apple"

Not duplicates:
- "EWE" and "EWE AG" (different legal entities)
- "BMW" and "BMW Group" (different corporate structures)
- "Amazon" and "Amazon Web Services" (different business units)

Respond with ONLY a JSON object of the form
{"duplicates": [{"canonicalName": "<final name>", "entities": ["<name 1>", "<name 2>"]}]}
Use the entity names exactly as listed. Return an empty list when nothing is duplicated."""

DEDUPE_USER_PROMPT = """Entities:
{entities}"""


class DuplicateGroup(BaseModel):
    """One group of names the model considers the same entity."""

    model_config = ConfigDict(populate_by_name=True)

    canonical_name: str = Field(alias="canonicalName")
    entities: list[str] = Field(default_factory=list)


class DuplicatesOutput(BaseModel):
    duplicates: list[DuplicateGroup] = Field(default_factory=list)


DEDUPE_SCHEMA: dict[str, Any] = DuplicatesOutput.model_json_schema(by_alias=True)


def normalize_dedupe_value(value: str) -> str:
    """Trim and collapse whitespace (newlines included)."""
    return WHITESPACE.sub(" ", value).strip()


def dedupe_key(value: str) -> str:
    return normalize_dedupe_value(value).casefold()


# =============================================================================
# Trigram similarity
# =============================================================================


def trigrams(text: str) -> set[str]:
    """
    Trigram set of a string, computed the way pg_trgm does.

    Lower-cased words of alphanumeric characters, each padded with two
    leading blanks and one trailing blank.
    """
    grams: set[str] = set()
    for word in WORD.findall(text.lower()):
        padded = f"  {word} "
        grams.update(padded[i:i + 3] for i in range(len(padded) - 2))
    return grams


def trigram_similarity(a: str, b: str) -> float:
    """pg_trgm `similarity(a, b)`: shared trigrams over the union."""
    ta, tb = trigrams(a), trigrams(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


# =============================================================================
# Store capability
# =============================================================================


@dataclass
class DedupeCandidate:
    """An entity shown to the model for duplicate confirmation."""

    id: uuid.UUID
    name: str
    type: str
    source_count: int


class DedupeStore(ABC):
    """Graph operations the dedupe pass needs."""

    @abstractmethod
    async def find_similar_entity_pairs(
        self, project_id: uuid.UUID, threshold: float
    ) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """Pairs (a, b), a < b, of same-type entities with similarity above threshold."""
        pass

    @abstractmethod
    async def dedupe_candidates(
        self, project_id: uuid.UUID, entity_ids: list[uuid.UUID]
    ) -> list[DedupeCandidate]:
        pass

    @abstractmethod
    async def rename_entity(self, project_id: uuid.UUID, entity_id: uuid.UUID, name: str) -> bool:
        """Rename unless another entity of the same type already has the name."""
        pass

    @abstractmethod
    async def merge_entities(
        self, project_id: uuid.UUID, canonical_id: uuid.UUID, duplicate_ids: list[uuid.UUID]
    ) -> None:
        """Move sources and relationship endpoints to canonical; delete duplicates."""
        pass

    @abstractmethod
    async def find_duplicate_relationship_groups(
        self, project_id: uuid.UUID
    ) -> list[list[uuid.UUID]]:
        """Groups (size > 1) of relationships sharing an unordered endpoint pair."""
        pass

    @abstractmethod
    async def merge_relationships(
        self, project_id: uuid.UUID, canonical_id: uuid.UUID, duplicate_ids: list[uuid.UUID]
    ) -> None:
        """Move sources to canonical, recompute its rank, delete duplicates."""
        pass

    @abstractmethod
    async def delete_orphans(self, project_id: uuid.UUID) -> tuple[int, int]:
        """Delete entities and relationships without sources; (entities, relationships)."""
        pass


# =============================================================================
# Union-find
# =============================================================================


class UnionFind:
    """Disjoint sets over hashable, orderable items."""

    def __init__(self) -> None:
        self._parent: dict = {}

    def find(self, item):
        self._parent.setdefault(item, item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a, b) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Smaller root wins so components are stable across runs
            if rb < ra:
                ra, rb = rb, ra
            self._parent[rb] = ra

    def components(self) -> list[list]:
        groups: dict = {}
        for item in self._parent:
            groups.setdefault(self.find(item), []).append(item)
        return [sorted(members) for _, members in sorted(groups.items()) if len(members) > 1]


# =============================================================================
# Chunking
# =============================================================================


def interleave(items: list, chunk_size: int) -> list:
    """Column-wise read of the chunked list: item i of every chunk, then i + 1."""
    chunk_count = -(-len(items) // chunk_size)
    return [
        items[chunk * chunk_size + i]
        for i in range(chunk_size)
        for chunk in range(chunk_count)
        if chunk * chunk_size + i < len(items)
    ]


def order_candidates(candidates: list[DedupeCandidate], iteration: int, chunk_size: int) -> list[DedupeCandidate]:
    """
    Vary the candidate order between iterations.

    0: by name and type, 1: as given (id order), 2: name order interleaved
    across chunks. Repeats every three iterations.
    """
    by_name = sorted(candidates, key=lambda c: (dedupe_key(c.name), dedupe_key(c.type), c.id))
    if iteration % 3 == 1:
        return list(candidates)
    if iteration % 3 == 2:
        return interleave(by_name, chunk_size)
    return by_name


def chunked(items: list, size: int) -> list[list]:
    return [items[start:start + size] for start in range(0, len(items), size)]


# =============================================================================
# Service
# =============================================================================


@dataclass
class DedupeResult:
    iterations: int = 0
    entities_merged: int = 0
    relationships_merged: int = 0
    orphan_entities_deleted: int = 0
    orphan_relationships_deleted: int = 0
    canonical_entity_ids: set[uuid.UUID] = field(default_factory=set)
    canonical_relationship_ids: set[uuid.UUID] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(
            self.entities_merged
            or self.relationships_merged
            or self.orphan_entities_deleted
            or self.orphan_relationships_deleted
        )


class DedupeService:
    """
    Runs the dedupe pass for one project.

    Usage:
        result = await DedupeService(ai, GraphStore(db)).run(project_id)
    """

    def __init__(
        self,
        ai_client: BaseAIClient,
        store: DedupeStore,
        threshold: float | None = None,
        max_iterations: int | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        retry_wait_max: float = 10.0,
    ):
        self.ai = ai_client
        self.store = store
        self.threshold = settings.dedupe_similarity_threshold if threshold is None else threshold
        self.max_iterations = max_iterations or settings.dedupe_max_iterations
        self.batch_size = batch_size or settings.dedupe_batch_size
        self.max_retries = max_retries or settings.extraction_max_retries
        self.retry_wait_max = retry_wait_max

    async def run(self, project_id: uuid.UUID) -> DedupeResult:
        result = DedupeResult()

        await self._dedupe_entities(project_id, result)
        await self._dedupe_relationships(project_id, result)

        result.orphan_entities_deleted, result.orphan_relationships_deleted = (
            await self.store.delete_orphans(project_id)
        )

        if result.changed:
            logger.info(
                "Graph deduplicated",
                project_id=str(project_id),
                iterations=result.iterations,
                entities_merged=result.entities_merged,
                relationships_merged=result.relationships_merged,
                orphan_entities=result.orphan_entities_deleted,
                orphan_relationships=result.orphan_relationships_deleted,
            )
        return result

    # =========================================================================
    # Entities
    # =========================================================================

    async def _dedupe_entities(self, project_id: uuid.UUID, result: DedupeResult) -> None:
        for iteration in range(self.max_iterations):
            pairs = await self.store.find_similar_entity_pairs(project_id, self.threshold)
            if not pairs:
                return
            result.iterations += 1

            groups = UnionFind()
            for a, b in pairs:
                groups.union(a, b)
            components = groups.components()

            candidates = {
                c.id: c
                for c in await self.store.dedupe_candidates(
                    project_id, [member for component in components for member in component]
                )
            }

            merged = 0
            chunked_component = False
            for component in components:
                members = [candidates[entity_id] for entity_id in component if entity_id in candidates]
                if len(members) > self.batch_size:
                    chunked_component = True
                for chunk in chunked(order_candidates(members, iteration, self.batch_size), self.batch_size):
                    if len(chunk) < 2:
                        continue
                    confirmed = await self.confirm_duplicates(chunk)
                    merged += await self._apply_groups(project_id, chunk, confirmed, result)

            # Another round only helps when a component was split over chunks
            if not merged or not chunked_component:
                return

        logger.warning(
            "Entity dedupe stopped at iteration limit",
            project_id=str(project_id),
            max_iterations=self.max_iterations,
        )

    async def confirm_duplicates(self, candidates: list[DedupeCandidate]) -> list[DuplicateGroup]:
        """Ask the model which of the candidates are duplicates of each other."""
        lines = [f"- {c.name} (type: {c.type}, sources: {c.source_count})" for c in candidates]
        messages = [ChatMessage(role="user", content=DEDUPE_USER_PROMPT.format(entities="\n".join(lines)))]
        options = ChatOptions(system_prompts=[DEDUPE_SYSTEM_PROMPT])

        retrying = AsyncRetrying(
            retry=retry_if_exception_type((*RETRYABLE_AI_ERRORS, TransientError)),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_random_exponential(multiplier=0.5, max=self.retry_wait_max),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    raw = await self.ai.generate_structured(messages, DEDUPE_SCHEMA, options)
        except AIParseError as e:
            raise ExtractionError(f"Unparseable dedupe output: {e}") from e

        try:
            return DuplicatesOutput.model_validate(raw).duplicates
        except ValidationError as e:
            raise ExtractionError(f"Invalid dedupe output: {e.error_count()} errors") from e

    async def _apply_groups(
        self,
        project_id: uuid.UUID,
        chunk: list[DedupeCandidate],
        groups: list[DuplicateGroup],
        result: DedupeResult,
    ) -> int:
        """Merge confirmed groups; names outside the chunk are ignored. Returns merged count."""
        by_key: dict[str, list[DedupeCandidate]] = {}
        for candidate in chunk:
            by_key.setdefault(dedupe_key(candidate.name), []).append(candidate)

        merged = 0
        used: set[uuid.UUID] = set()
        for group in groups:
            members: dict[uuid.UUID, DedupeCandidate] = {}
            for name in group.entities:
                for candidate in by_key.get(dedupe_key(name), []):
                    if candidate.id not in used:
                        members[candidate.id] = candidate
            if len(members) < 2:
                continue

            canonical = min(members.values(), key=lambda c: (-c.source_count, c.id))
            # Components are single-typed; guard against a model mixing types anyway
            duplicates = sorted(
                c.id for c in members.values() if c.id != canonical.id and c.type == canonical.type
            )
            if not duplicates:
                continue

            # Merge first: a duplicate may hold the canonical name
            await self.store.merge_entities(project_id, canonical.id, duplicates)
            canonical_name = normalize_dedupe_value(group.canonical_name)
            if (
                canonical_name
                and canonical_name != canonical.name
                and await self.store.rename_entity(project_id, canonical.id, canonical_name)
            ):
                canonical.name = canonical_name

            used.update(duplicates)
            used.add(canonical.id)
            merged += len(duplicates)
            result.entities_merged += len(duplicates)
            result.canonical_entity_ids.add(canonical.id)
            result.canonical_entity_ids.difference_update(duplicates)
            logger.debug(
                "Duplicate entities merged",
                canonical=canonical.name,
                duplicates=len(duplicates),
            )
        return merged

    # =========================================================================
    # Relationships
    # =========================================================================

    async def _dedupe_relationships(self, project_id: uuid.UUID, result: DedupeResult) -> None:
        for group in await self.store.find_duplicate_relationship_groups(project_id):
            ordered = sorted(group)
            canonical, duplicates = ordered[0], ordered[1:]
            await self.store.merge_relationships(project_id, canonical, duplicates)
            result.relationships_merged += len(duplicates)
            result.canonical_relationship_ids.add(canonical)
