"""Unit tests for description condensing and refresh."""

import uuid

import pytest

from src.services.descriptions import DescriptionService
from src.services.graph_store import DescriptionInput

pytestmark = pytest.mark.asyncio


class FakeDescriptionStore:
    """The slice of GraphStore the description service uses."""

    def __init__(self) -> None:
        self.entity_inputs: list[DescriptionInput] = []
        self.relationship_inputs: list[DescriptionInput] = []
        self.pending_sources: list[tuple[str, uuid.UUID, str]] = []
        self.entity_updates: dict[uuid.UUID, tuple[str, list[float] | None]] = {}
        self.relationship_updates: dict[uuid.UUID, tuple[str, list[float] | None]] = {}
        self.source_updates: dict[uuid.UUID, str] = {}

    async def entity_description_inputs(self, entity_ids):
        return [i for i in self.entity_inputs if i.id in entity_ids]

    async def relationship_description_inputs(self, relationship_ids):
        return [i for i in self.relationship_inputs if i.id in relationship_ids]

    async def update_entity_description(self, entity_id, description, embedding):
        self.entity_updates[entity_id] = (description, embedding)

    async def update_relationship_description(self, relationship_id, description, embedding):
        self.relationship_updates[relationship_id] = (description, embedding)

    async def sources_without_embedding(self, entity_ids, relationship_ids):
        return self.pending_sources

    async def update_source_embedding(self, kind, source_id, embedding):
        self.source_updates[source_id] = kind


@pytest.fixture
def store() -> FakeDescriptionStore:
    return FakeDescriptionStore()


class TestCondense:
    """Tests for building one description from many."""

    async def test_single_description_skips_the_model(self, mock_ai, store) -> None:
        item = DescriptionInput(uuid.uuid4(), "Acme Corp", ["  A widget\n maker ", "A widget\n maker"])

        assert await DescriptionService(mock_ai, store).condense(item) == "A widget maker"
        assert mock_ai.calls == []

    async def test_many_descriptions_are_summarised(self, mock_ai, store) -> None:
        mock_ai.set_responses(["A widget maker\nfounded in 1999."])
        item = DescriptionInput(uuid.uuid4(), "Acme Corp", ["A widget maker", "Founded in 1999"])

        assert await DescriptionService(mock_ai, store).condense(item) == "A widget maker founded in 1999."
        assert mock_ai.calls == ["chat"]

    async def test_no_descriptions(self, mock_ai, store) -> None:
        item = DescriptionInput(uuid.uuid4(), "Acme Corp", ["", "   "])
        assert await DescriptionService(mock_ai, store).condense(item) == ""


class TestUpdate:
    """Tests for refreshing touched items."""

    async def test_updates_descriptions_and_embeddings(self, mock_ai, store) -> None:
        acme, jane, rel, empty = uuid.uuid4(), uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        store.entity_inputs = [
            DescriptionInput(acme, "Acme Corp", ["A widget maker"]),
            DescriptionInput(jane, "Jane Doe", ["Founder"]),
            DescriptionInput(empty, "Nobody", []),
        ]
        store.relationship_inputs = [DescriptionInput(rel, "Jane Doe -> Acme Corp", ["Founded it"])]
        source_id = uuid.uuid4()
        store.pending_sources = [("entity", source_id, "A widget maker"), ("entity", uuid.uuid4(), "  ")]

        result = await DescriptionService(mock_ai, store, parallel_requests=2).update(
            [acme, empty], [rel]
        )

        assert (result.entities, result.relationships, result.sources) == (2, 1, 1)
        description, embedding = store.entity_updates[acme]
        assert description == "A widget maker"
        assert len(embedding) == 8
        # Nothing to describe, nothing to embed
        assert store.entity_updates[empty] == ("", None)
        assert jane not in store.entity_updates
        assert store.relationship_updates[rel][0] == "Founded it"
        assert store.source_updates == {source_id: "entity"}
