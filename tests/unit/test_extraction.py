"""Unit tests for extraction service parsing, retry and fan-out logic."""

from typing import Any

import pytest

from src.core.exceptions import ExtractionError
from src.services.ai_client import AIAPIError, AIRateLimitError, MockAIClient
from src.services.extraction import ExtractedRelationship, ExtractionService
from src.services.units import UnitData


def make_unit(public_id: str = "unit-1", text: str = "Jane Doe founded Acme Corp.") -> UnitData:
    return UnitData(
        public_id=public_id,
        unit_index=0,
        text=text,
        start_offset=0,
        end_offset=len(text),
        token_count=len(text.split()),
    )


def service(ai: MockAIClient) -> ExtractionService:
    return ExtractionService(ai, parallel_requests=2, max_retries=3, retry_wait_max=0.01)


# =============================================================================
# Structured Output
# =============================================================================


class TestStrengthValidation:
    """Tests for relationship strength coercion."""

    def test_strength_is_clamped(self) -> None:
        rel = ExtractedRelationship(source_entity="a", target_entity="b", relationship_strength=15)
        assert rel.relationship_strength == 10.0

        rel = ExtractedRelationship(source_entity="a", target_entity="b", relationship_strength=-2)
        assert rel.relationship_strength == 0.0

    def test_unparseable_strength_defaults(self) -> None:
        rel = ExtractedRelationship(source_entity="a", target_entity="b", relationship_strength="strong")
        assert rel.relationship_strength == 1.0


# =============================================================================
# Single Unit
# =============================================================================


@pytest.mark.asyncio
class TestExtractFromUnit:
    """Tests for extraction of one unit."""

    async def test_entities_are_normalized(
        self, mock_ai: MockAIClient, sample_extraction_output: dict[str, Any]
    ) -> None:
        mock_ai.set_structured_responses([sample_extraction_output])

        result = await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

        assert [(e.name, e.type) for e in result.entities] == [
            ("Acme Corp", "ORGANIZATION"),
            ("Jane Doe", "PERSON"),
        ]
        assert result.entities[0].sources[0].unit_id == "unit-1"
        assert result.entities[0].sources[0].description == "A widget maker"

    async def test_relationships_resolve_case_insensitively(
        self, mock_ai: MockAIClient, sample_extraction_output: dict[str, Any]
    ) -> None:
        mock_ai.set_structured_responses([sample_extraction_output])

        result = await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

        assert result.relationship_count == 1
        rel = result.relationships[0]
        assert rel.source == ("Jane Doe", "PERSON")
        assert rel.target == ("Acme Corp", "ORGANIZATION")
        assert rel.sources[0].strength == 8.0

    async def test_unknown_endpoints_are_dropped(
        self, mock_ai: MockAIClient, sample_extraction_output: dict[str, Any]
    ) -> None:
        mock_ai.set_structured_responses([sample_extraction_output])

        result = await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

        assert result.dropped_relationships == 1

    async def test_blank_entities_are_skipped(self, mock_ai: MockAIClient) -> None:
        mock_ai.set_structured_responses([
            {"entities": [{"entity_name": "  ", "entity_type": "PERSON"}, {"entity_name": "Acme", "entity_type": ""}]}
        ])

        result = await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

        assert result.entity_count == 0

    async def test_transient_errors_are_retried(self, mock_ai: MockAIClient) -> None:
        mock_ai.set_structured_responses([
            AIRateLimitError("slow down"),
            {"entities": [{"entity_name": "Acme", "entity_type": "ORGANIZATION"}]},
        ])

        result = await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

        assert result.entity_count == 1
        assert mock_ai.calls.count("structured") == 2

    async def test_retries_are_bounded(self, mock_ai: MockAIClient) -> None:
        mock_ai.set_structured_responses([AIRateLimitError("slow down")] * 5)

        with pytest.raises(AIRateLimitError):
            await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

        assert mock_ai.calls.count("structured") == 3

    async def test_fatal_errors_are_not_retried(self, mock_ai: MockAIClient) -> None:
        mock_ai.set_structured_responses([AIAPIError("bad request")])

        with pytest.raises(AIAPIError):
            await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

        assert mock_ai.calls.count("structured") == 1

    async def test_invalid_output_is_extraction_error(self, mock_ai: MockAIClient) -> None:
        mock_ai.set_structured_responses([{"entities": "not a list"}])

        with pytest.raises(ExtractionError):
            await service(mock_ai).extract_from_unit(make_unit(), "acme.txt")

    async def test_custom_types_and_metadata_reach_the_prompt(self, mock_ai: MockAIClient) -> None:
        await service(mock_ai).extract_from_unit(
            make_unit(), "acme.txt", entity_types=["COMPANY", "FOUNDER"], metadata="Annual report 2020"
        )

        prompts = mock_ai.seen_system_prompts[-1]
        assert "COMPANY, FOUNDER" in prompts[0]
        assert "Annual report 2020" in prompts[1]


# =============================================================================
# File Fan-out
# =============================================================================


@pytest.mark.asyncio
class TestExtractFile:
    """Tests for per-file extraction and merge."""

    async def test_units_merge_into_one_graph(self, mock_ai: MockAIClient) -> None:
        output = {
            "entities": [
                {"entity_name": "Acme Corp", "entity_type": "ORGANIZATION", "entity_description": "Maker"},
                {"entity_name": "Jane Doe", "entity_type": "PERSON", "entity_description": "Founder"},
            ],
            "relationships": [
                {"source_entity": "Jane Doe", "target_entity": "Acme Corp", "relationship_strength": 6},
            ],
        }
        second = {**output, "relationships": [
            {"source_entity": "Acme Corp", "target_entity": "Jane Doe", "relationship_strength": 10},
        ]}
        mock_ai.set_structured_responses([output, second])

        graph = await service(mock_ai).extract_file([make_unit("u1"), make_unit("u2")], "acme.txt")

        assert len(graph.entities) == 2
        assert all(len(e.sources) == 2 for e in graph.entities)
        assert len(graph.relationships) == 1
        assert graph.relationships[0].rank == 8.0

    async def test_one_failing_unit_fails_the_file(self, mock_ai: MockAIClient) -> None:
        mock_ai.set_structured_responses([
            {"entities": [{"entity_name": "Acme", "entity_type": "ORGANIZATION"}]},
            AIAPIError("rejected"),
        ])

        with pytest.raises(ExtractionError, match="AIAPIError"):
            await service(mock_ai).extract_file([make_unit("u1"), make_unit("u2")], "acme.txt")

    async def test_empty_file(self, mock_ai: MockAIClient) -> None:
        graph = await service(mock_ai).extract_file([], "empty.txt")
        assert graph.is_empty
