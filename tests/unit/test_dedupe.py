"""Unit tests for cross-batch deduplication."""

import uuid

import pytest

from src.core.exceptions import ExtractionError
from src.services.ai_client import AIParseError
from src.services.dedupe import (
    DedupeCandidate,
    DedupeService,
    UnionFind,
    interleave,
    order_candidates,
    trigram_similarity,
    trigrams,
)


def uid(n: int) -> uuid.UUID:
    return uuid.UUID(int=n)


def confirm(canonical: str, *names: str) -> dict:
    return {"duplicates": [{"canonicalName": canonical, "entities": list(names)}]}


@pytest.fixture
def store(graph_store):
    graph_store.add_entity("Acme Corp", "ORGANIZATION", "u1", entity_id=uid(1))
    graph_store.add_entity("ACME corp.", "ORGANIZATION", "u2", "u3", entity_id=uid(2))
    graph_store.add_entity("Jane Doe", "PERSON", "u1", entity_id=uid(3))
    graph_store.add_entity("Globex", "ORGANIZATION", "u4", entity_id=uid(4))
    graph_store.add_entity("Acme Corp", "PRODUCT", "u5", entity_id=uid(5))
    graph_store.add_relationship(uid(3), uid(1), 6.0, relationship_id=uid(10))
    graph_store.add_relationship(uid(2), uid(3), 10.0, relationship_id=uid(11))
    graph_store.add_relationship(uid(4), uid(1), 2.0, relationship_id=uid(12))
    return graph_store


def candidate(n: int, name: str) -> DedupeCandidate:
    return DedupeCandidate(uid(n), name, "ORGANIZATION", 1)


# =============================================================================
# Trigram similarity
# =============================================================================


class TestTrigrams:
    """Tests for the pg_trgm-compatible similarity."""

    def test_trigrams_are_padded_words(self) -> None:
        assert trigrams("Cat") == {"  c", " ca", "cat", "at "}

    def test_similarity_ignores_case_and_punctuation(self) -> None:
        assert trigram_similarity("Acme Corp.", "acme corp") == 1.0

    def test_similarity_of_unrelated_names(self) -> None:
        assert trigram_similarity("Acme", "Globex") == 0.0

    def test_similarity_of_empty_string(self) -> None:
        assert trigram_similarity("", "Acme") == 0.0


class TestUnionFind:
    """Tests for grouping similar pairs."""

    def test_transitive_components(self) -> None:
        groups = UnionFind()
        groups.union(3, 2)
        groups.union(2, 1)
        groups.union(7, 8)
        groups.find(5)

        assert groups.components() == [[1, 2, 3], [7, 8]]


class TestCandidateOrder:
    """Tests for the per-iteration ordering of large groups."""

    def test_interleave_reads_chunks_column_wise(self) -> None:
        assert interleave([1, 2, 3, 4, 5], 2) == [1, 3, 5, 2, 4]

    def test_orders_rotate(self) -> None:
        candidates = [candidate(1, "Zeta"), candidate(2, "alpha"), candidate(3, "Beta")]

        assert [c.name for c in order_candidates(candidates, 0, 2)] == ["alpha", "Beta", "Zeta"]
        assert [c.name for c in order_candidates(candidates, 1, 2)] == ["Zeta", "alpha", "Beta"]
        assert [c.name for c in order_candidates(candidates, 2, 2)] == ["alpha", "Zeta", "Beta"]
        assert order_candidates(candidates, 3, 2) == order_candidates(candidates, 0, 2)


# =============================================================================
# Service
# =============================================================================


@pytest.mark.asyncio
class TestDedupeService:
    """Tests for the dedupe pass."""

    async def test_confirmed_entities_merge_into_best_sourced(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([confirm("Acme Corp", "Acme Corp", "ACME corp.")])

        result = await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert result.entities_merged == 1
        # uid(2) has more sources than uid(1)
        assert uid(1) not in store.entities
        assert store.entities[uid(2)].unit_ids == ["u1", "u2", "u3"]
        assert store.entities[uid(2)].name == "Acme Corp"
        assert result.canonical_entity_ids == {uid(2)}
        assert mock_ai.calls == ["structured"]

    async def test_candidates_are_shown_to_the_model(self, store, mock_ai) -> None:
        await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert any("duplicate entities" in prompt for prompt in mock_ai.seen_system_prompts[0])

    async def test_declined_candidates_stay_separate(self, graph_store, mock_ai) -> None:
        """Similar names the model does not confirm are never merged."""
        graph_store.add_entity("John Smith", "PERSON", "u1", entity_id=uid(1))
        graph_store.add_entity("John Smithson", "PERSON", "u2", entity_id=uid(2))

        result = await DedupeService(mock_ai, graph_store, threshold=0.5).run(uuid.uuid4())

        assert result.iterations == 1
        assert result.entities_merged == 0
        assert set(graph_store.entities) == {uid(1), uid(2)}

    async def test_canonical_name_from_model(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([confirm("Acme Corporation", "acme corp", "ACME corp.")])

        await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert store.entities[uid(2)].name == "Acme Corporation"

    async def test_canonical_name_taken_keeps_old_name(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([confirm("Globex", "Acme Corp", "ACME corp.")])

        result = await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert result.entities_merged == 1
        assert store.entities[uid(2)].name == "ACME corp."
        assert store.entities[uid(4)].name == "Globex"

    async def test_names_outside_the_group_are_ignored(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([confirm("Acme Corp", "Acme Corp", "Globex", "Initech")])

        result = await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert result.entities_merged == 0
        assert uid(4) in store.entities

    async def test_unparseable_answer_raises(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([AIParseError("not json")])

        with pytest.raises(ExtractionError, match="Unparseable dedupe output"):
            await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

    async def test_same_name_different_type_is_kept(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([confirm("Acme Corp", "Acme Corp", "ACME corp.")])

        await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert store.entities[uid(5)].type == "PRODUCT"

    async def test_relationships_between_merged_entities_collapse(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([confirm("Acme Corp", "Acme Corp", "ACME corp.")])

        result = await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert result.relationships_merged == 1
        assert uid(11) not in store.relationships
        assert store.relationships[uid(10)].rank == 8.0
        assert result.canonical_relationship_ids == {uid(10)}

    async def test_second_run_changes_nothing(self, store, mock_ai) -> None:
        mock_ai.set_structured_responses([confirm("Acme Corp", "Acme Corp", "ACME corp.")])
        service = DedupeService(mock_ai, store, threshold=0.5)
        await service.run(uuid.uuid4())
        snapshot = (repr(sorted(store.entities.items())), repr(sorted(store.relationships.items())))

        result = await service.run(uuid.uuid4())

        assert not result.changed
        assert (repr(sorted(store.entities.items())), repr(sorted(store.relationships.items()))) == snapshot

    async def test_orphans_are_deleted(self, store, mock_ai) -> None:
        store.add_entity("Nobody", "PERSON", entity_id=uid(6))

        result = await DedupeService(mock_ai, store, threshold=0.5).run(uuid.uuid4())

        assert result.orphan_entities_deleted == 1
        assert uid(6) not in store.entities

    async def test_unsplit_group_is_asked_once(self, graph_store, mock_ai) -> None:
        for n, name in enumerate(["Acme Corp", "ACME corp.", "Acme Corp Inc"], start=1):
            graph_store.add_entity(name, "ORGANIZATION", f"u{n}", entity_id=uid(n))
        mock_ai.set_structured_responses([confirm("Acme Corp", "Acme Corp", "ACME corp.")])

        result = await DedupeService(mock_ai, graph_store, threshold=0.5).run(uuid.uuid4())

        assert result.iterations == 1
        assert mock_ai.calls == ["structured"]
        assert sorted(e.name for e in graph_store.entities.values()) == ["Acme Corp", "Acme Corp Inc"]

    async def test_iteration_limit(self, graph_store, mock_ai) -> None:
        """A group split over chunks is revisited until the iteration limit."""

        class StubbornStore(type(graph_store)):
            async def merge_entities(self, project_id, canonical_id, duplicate_ids):
                pass

        stubborn = StubbornStore()
        for n, name in enumerate(["Acme Corp", "ACME corp.", "Acme Corp Inc"], start=1):
            stubborn.add_entity(name, "ORGANIZATION", f"u{n}", entity_id=uid(n))
        answer = confirm("Acme Corp", "Acme Corp", "ACME corp.", "Acme Corp Inc")
        mock_ai.set_structured_responses([answer, answer, answer])

        result = await DedupeService(mock_ai, stubborn, threshold=0.5, max_iterations=3, batch_size=2).run(
            uuid.uuid4()
        )

        assert result.iterations == 3
        assert mock_ai.calls.count("structured") == 3
