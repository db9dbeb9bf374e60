"""
Entity and relationship extraction service.

This module asks the AI capability for the entities and relationships in
each text unit and merges the per-unit results of a file.

Features:
- Structured output validated with pydantic
- Bounded per-unit retry on transient errors (tenacity)
- Parallel fan-out over the units of a file, bounded by a semaphore
- All-or-nothing file results: the first unrecoverable unit error cancels
  the remaining work and discards everything already merged
- Custom entity types and file metadata passed to the model

Usage:
    async with get_ai_client() as ai:
        service = ExtractionService(ai)
        graph = await service.extract_file(units, "report.pdf")
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from src.core.config import settings
from src.core.exceptions import ExtractionError, TransientError
from src.core.logging import get_logger, log_duration
from src.services.ai_client import (
    RETRYABLE_AI_ERRORS,
    AIParseError,
    BaseAIClient,
    ChatMessage,
    ChatOptions,
)
from src.services.merge import (
    EntityData,
    EntitySourceData,
    GraphAccumulator,
    RelationshipData,
    RelationshipSourceData,
    entity_key,
    normalize_name,
    normalize_type,
)
from src.services.units import UnitData

logger = get_logger(__name__)


# =============================================================================
# Prompts
# =============================================================================

EXTRACTION_SYSTEM_PROMPT = """You build knowledge graphs from documents. Extract the entities and relationships stated in the given text.

For each entity, provide:
1. entity_name: The name as written in the text
2. entity_type: One of these types ONLY: {entity_types}
3. entity_description: What the text says about the entity

For each relationship between two extracted entities, provide:
1. source_entity: entity_name of the first entity
2. target_entity: entity_name of the second entity
3. relationship_description: How the two entities are related according to the text
4. relationship_strength: A number from 1 to 10 for how strongly the text supports the relationship

Rules:
- Only extract what the text states or strongly implies
- Relationships may only connect entities you extracted from this text
- Write descriptions in the language of the text

Respond with ONLY a JSON object with the keys "entities" and "relationships"."""

EXTRACTION_USER_PROMPT = """File: {filename}

TEXT:
{text}"""

METADATA_PROMPT = "Additional information about the document:\n{metadata}"


# =============================================================================
# Structured Output
# =============================================================================

MIN_STRENGTH = 0.0
MAX_STRENGTH = 10.0


class ExtractedEntity(BaseModel):
    """Entity as returned by the model."""

    entity_name: str
    entity_type: str
    entity_description: str = ""


class ExtractedRelationship(BaseModel):
    """Relationship as returned by the model."""

    source_entity: str
    target_entity: str
    relationship_description: str = ""
    relationship_strength: float = Field(default=1.0)

    @field_validator("relationship_strength", mode="before")
    @classmethod
    def clamp_strength(cls, value: Any) -> float:
        try:
            strength = float(value)
        except (TypeError, ValueError):
            return 1.0
        return min(MAX_STRENGTH, max(MIN_STRENGTH, strength))


class ExtractionOutput(BaseModel):
    """Top-level structured output of one extraction call."""

    entities: list[ExtractedEntity] = Field(default_factory=list)
    relationships: list[ExtractedRelationship] = Field(default_factory=list)


EXTRACTION_SCHEMA: dict[str, Any] = ExtractionOutput.model_json_schema()


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class UnitExtraction:
    """Entities and relationships found in a single unit."""

    unit: UnitData
    entities: list[EntityData] = field(default_factory=list)
    relationships: list[RelationshipData] = field(default_factory=list)
    dropped_relationships: int = 0

    @property
    def entity_count(self) -> int:
        return len(self.entities)

    @property
    def relationship_count(self) -> int:
        return len(self.relationships)


# =============================================================================
# Extraction Service
# =============================================================================


class ExtractionService:
    """
    Extracts graph fragments from units with the AI capability.

    Handles:
    - Prompt assembly (entity types, file metadata)
    - Retry of transient failures per unit
    - Parsing and validation of the structured output
    - Bounded parallel fan-out and merge per file
    """

    def __init__(
        self,
        ai_client: BaseAIClient,
        parallel_requests: int | None = None,
        max_retries: int | None = None,
        retry_wait_max: float = 10.0,
    ):
        """
        Initialize extraction service.

        Args:
            ai_client: AI capability used for structured extraction
            parallel_requests: Max concurrent AI calls per file
            max_retries: Max attempts per unit on transient errors
            retry_wait_max: Upper bound of the randomized backoff in seconds
        """
        self.ai = ai_client
        self.parallel_requests = parallel_requests or settings.parallel_ai_requests
        self.max_retries = max_retries or settings.extraction_max_retries
        self.retry_wait_max = retry_wait_max

    # =========================================================================
    # Single Unit
    # =========================================================================

    async def extract_from_unit(
        self,
        unit: UnitData,
        filename: str,
        entity_types: list[str] | None = None,
        metadata: str | None = None,
    ) -> UnitExtraction:
        """
        Extract entities and relationships from one unit.

        Transient errors (rate limit, network) are retried up to
        `max_retries` attempts; anything else surfaces at once.
        """
        types = entity_types or settings.default_entity_types
        messages = [
            ChatMessage(
                role="user",
                content=EXTRACTION_USER_PROMPT.format(filename=filename, text=unit.text),
            )
        ]
        system_prompts = [EXTRACTION_SYSTEM_PROMPT.format(entity_types=", ".join(types))]
        if metadata and metadata.strip():
            system_prompts.append(METADATA_PROMPT.format(metadata=metadata.strip()))
        options = ChatOptions(system_prompts=system_prompts)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type((*RETRYABLE_AI_ERRORS, TransientError)),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_random_exponential(multiplier=0.5, max=self.retry_wait_max),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "Retrying unit extraction",
                            unit_id=unit.public_id,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    raw = await self.ai.generate_structured(messages, EXTRACTION_SCHEMA, options)
        except AIParseError as e:
            raise ExtractionError(f"Unparseable extraction output for unit {unit.public_id}: {e}") from e

        try:
            output = ExtractionOutput.model_validate(raw)
        except ValidationError as e:
            raise ExtractionError(
                f"Invalid extraction output for unit {unit.public_id}: {e.error_count()} errors"
            ) from e

        return self._to_graph(unit, output)

    def _to_graph(self, unit: UnitData, output: ExtractionOutput) -> UnitExtraction:
        """Convert validated model output into unit-scoped graph fragments."""
        result = UnitExtraction(unit=unit)
        keys_by_name: dict[str, tuple[str, str]] = {}

        for item in output.entities:
            name = normalize_name(item.entity_name)
            entity_type = normalize_type(item.entity_type)
            if not name or not entity_type:
                continue
            result.entities.append(
                EntityData(
                    name=name,
                    type=entity_type,
                    sources=[EntitySourceData(unit_id=unit.public_id, description=item.entity_description.strip())],
                )
            )
            keys_by_name.setdefault(self._lookup_name(name), entity_key(name, entity_type))

        for item in output.relationships:
            source = keys_by_name.get(self._lookup_name(normalize_name(item.source_entity)))
            target = keys_by_name.get(self._lookup_name(normalize_name(item.target_entity)))
            if source is None or target is None:
                result.dropped_relationships += 1
                continue
            result.relationships.append(
                RelationshipData(
                    source=source,
                    target=target,
                    sources=[
                        RelationshipSourceData(
                            unit_id=unit.public_id,
                            description=item.relationship_description.strip(),
                            strength=item.relationship_strength,
                            source_name=normalize_name(item.source_entity),
                            target_name=normalize_name(item.target_entity),
                        )
                    ],
                )
            )

        if result.dropped_relationships:
            logger.debug(
                "Dropped relationships with unknown endpoints",
                unit_id=unit.public_id,
                dropped=result.dropped_relationships,
            )
        return result

    @staticmethod
    def _lookup_name(name: str) -> str:
        # Models are inconsistent about case when referring back to entities
        return name.casefold()

    # =========================================================================
    # File Fan-out
    # =========================================================================

    async def extract_file(
        self,
        units: list[UnitData],
        filename: str,
        entity_types: list[str] | None = None,
        metadata: str | None = None,
    ) -> GraphAccumulator:
        """
        Extract all units of one file in parallel and merge the results.

        Raises:
            ExtractionError: if any unit fails after its retries; no partial
                result for the file is returned.
        """
        accumulator = GraphAccumulator()
        lock = asyncio.Lock()
        semaphore = asyncio.Semaphore(self.parallel_requests)

        async def run(unit: UnitData) -> None:
            async with semaphore:
                extraction = await self.extract_from_unit(unit, filename, entity_types, metadata)
            async with lock:
                accumulator.add(extraction.entities, extraction.relationships)

        with log_duration(logger, "File extracted", filename=filename, units=len(units)) as extra:
            try:
                async with asyncio.TaskGroup() as group:
                    for unit in units:
                        group.create_task(run(unit))
            except ExceptionGroup as eg:
                first = eg.exceptions[0]
                while isinstance(first, ExceptionGroup):
                    first = first.exceptions[0]
                logger.error(
                    "File extraction failed",
                    filename=filename,
                    error_type=type(first).__name__,
                    error=str(first),
                )
                if isinstance(first, ExtractionError):
                    raise first from eg
                raise ExtractionError(f"Extraction failed for {filename}: {type(first).__name__}: {first}") from first
            extra["entities"] = len(accumulator.entities)
            extra["relationships"] = len(accumulator.relationships)

        return accumulator
