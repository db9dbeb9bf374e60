"""Pytest configuration and shared fixtures."""

import json
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from uuid6 import uuid7

from src.api.deps import get_orchestrator, get_query_resources
from src.core.config import settings
from src.core.exceptions import NotFoundError
from src.db.base import utcnow
from src.db.enums import BatchStatus, FileType, ProcessStatType, StagedDataType
from src.db.models import Batch, Project, ProjectFile
from src.main import app
from src.services.ai_client import MockAIClient
from src.services.dedupe import DedupeCandidate, DedupeStore, trigram_similarity
from src.services.graph_store import DescriptionInput, WriteResult
from src.services.locks import LeaseLock
from src.services.orchestrator import CorrelationProgress, ProjectProgress, Submission
from src.services.pipeline_store import PipelineStore
from src.services.process_time import predict_duration_ms
from src.services.query_store import (
    EntityHit,
    NeighbourHit,
    QueryStore,
    RelationshipHit,
    SourceHit,
)
from src.services.query_trace import QueryTrace

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


# =============================================================================
# Fakes
# =============================================================================


class FakeQueryStore(QueryStore):
    """
    In-memory QueryStore.

    Contexts and hits are plain attributes; `fail_with` makes every call
    raise the given exception. Calls are recorded by method name.
    """

    def __init__(self) -> None:
        self.exists = True
        self.local_context = ""
        self.global_context = ""
        self.entities: list[EntityHit] = []
        self.neighbours: list[NeighbourHit] = []
        self.sources: list[SourceHit] = []
        self.entity_types: list[tuple[str, int]] = []
        self.fail_with: Exception | None = None
        self.calls: list[str] = []
        self.last_limit: int | None = None

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    async def get_local_query_context(self, query, embedding, graph_id, trace: QueryTrace) -> str:
        self._call("local")
        if self.local_context:
            trace.considered_source(*(s.file_id for s in self.sources))
            trace.used_source(*(s.file_id for s in self.sources))
        return self.local_context

    async def get_global_query_context(self, query, embedding, graph_id, trace: QueryTrace) -> str:
        self._call("global")
        return self.global_context

    async def search_entities(self, graph_id, embedding, limit):
        self._call("search_entities")
        self.last_limit = limit
        return self.entities[:limit]

    async def search_entities_by_type(self, graph_id, entity_type, embedding, limit):
        self._call("search_entities_by_type")
        self.last_limit = limit
        return [e for e in self.entities if e.type == entity_type][:limit]

    async def get_entity_neighbours(self, graph_id, entity_public_id, limit):
        self._call("get_entity_neighbours")
        return self.neighbours[:limit]

    async def get_entity_sources(self, graph_id, entity_public_id, limit):
        self._call("get_entity_sources")
        return self.sources[:limit]

    async def get_relationship_sources(self, graph_id, relationship_public_id, limit):
        self._call("get_relationship_sources")
        return self.sources[:limit]

    async def get_entity_types(self, graph_id):
        self._call("get_entity_types")
        return self.entity_types

    async def graph_exists(self, graph_id) -> bool:
        return self.exists


class FakeOrchestrator:
    """Stands in for BatchOrchestrator behind the pipeline endpoints."""

    def __init__(self) -> None:
        self.error: Exception | None = None
        self.submitted: list[tuple[uuid.UUID, list[uuid.UUID] | None]] = []
        self.correlations: dict[str, CorrelationProgress] = {}
        self.projects: dict[uuid.UUID, ProjectProgress] = {}

    async def submit_files(self, project_id: uuid.UUID, file_ids: list[uuid.UUID] | None = None) -> Submission:
        if self.error is not None:
            raise self.error
        self.submitted.append((project_id, file_ids))
        return Submission("run-1", project_id, 2, len(file_ids) if file_ids else 3)

    async def correlation_progress(self, correlation_id: str) -> CorrelationProgress:
        if correlation_id not in self.correlations:
            raise NotFoundError(f"Correlation {correlation_id} not found")
        return self.correlations[correlation_id]

    async def project_progress(self, project_id: uuid.UUID) -> ProjectProgress:
        if project_id not in self.projects:
            raise NotFoundError(f"Project {project_id} not found")
        return self.projects[project_id]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """Create a synchronous test client for FastAPI."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def mock_ai() -> MockAIClient:
    """Deterministic AI client with small embeddings."""
    return MockAIClient(dimensions=8)


@pytest.fixture
def query_store() -> FakeQueryStore:
    return FakeQueryStore()


@pytest.fixture
def orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest_asyncio.fixture(scope="function")
async def async_client(
    mock_ai: MockAIClient,
    query_store: FakeQueryStore,
    orchestrator: FakeOrchestrator,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the AI client, graph store and orchestrator replaced."""

    @asynccontextmanager
    async def open_resources() -> AsyncIterator[tuple[MockAIClient, FakeQueryStore]]:
        yield mock_ai, query_store

    app.dependency_overrides[get_query_resources] = lambda: open_resources
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_file():
    """Factory for unsaved ProjectFile rows."""

    def _make(
        name: str = "notes.txt",
        token_count: int = 0,
        file_type: FileType = FileType.TEXT,
        storage_key: str | None = None,
        **kwargs: Any,
    ) -> ProjectFile:
        return ProjectFile(
            id=kwargs.pop("id", uuid.uuid4()),
            project_id=kwargs.pop("project_id", uuid.uuid4()),
            name=name,
            storage_key=storage_key or name,
            file_type=file_type,
            token_count=token_count,
            deleted=False,
            **kwargs,
        )

    return _make


@pytest.fixture
def sample_sources() -> list[SourceHit]:
    return [
        SourceHit(
            unit_public_id="unit-1",
            file_id="file-a",
            file_name="acme.txt",
            text="Acme Corp. was founded in 1999 by Jane Doe.",
            description="Founding of Acme",
        ),
        SourceHit(
            unit_public_id="unit-2",
            file_id="file-b",
            file_name="widgets.md",
            text="Acme Corp. builds widgets.",
        ),
    ]


@pytest.fixture
def sample_entities() -> list[EntityHit]:
    return [
        EntityHit(public_id="ent-acme", name="Acme Corp", type="ORGANIZATION", description="A widget maker"),
        EntityHit(public_id="ent-jane", name="Jane Doe", type="PERSON", description="Founder of Acme"),
    ]


@pytest.fixture
def sample_relationship() -> RelationshipHit:
    return RelationshipHit(
        public_id="rel-founded",
        source_name="Jane Doe",
        target_name="Acme Corp",
        description="Jane Doe founded Acme Corp",
        rank=8.0,
    )


@pytest.fixture
def sample_extraction_output() -> dict[str, Any]:
    """Structured extraction output for one unit."""
    return {
        "entities": [
            {"entity_name": "Acme Corp.", "entity_type": "organization", "entity_description": "A widget maker"},
            {"entity_name": "Jane  Doe", "entity_type": "Person", "entity_description": "Founder of Acme"},
        ],
        "relationships": [
            {
                "source_entity": "jane doe",
                "target_entity": "Acme Corp",
                "relationship_description": "Jane Doe founded Acme",
                "relationship_strength": 8,
            },
            {
                "source_entity": "Jane Doe",
                "target_entity": "Globex",
                "relationship_description": "Unknown endpoint",
                "relationship_strength": 3,
            },
        ],
    }


@pytest.fixture
def make_correlation_progress():
    """Factory for a half-finished two-batch run."""

    def _make(project_id: uuid.UUID, correlation_id: str = "run-1") -> CorrelationProgress:
        counts = {status.value: 0 for status in BatchStatus}
        counts[BatchStatus.COMPLETED.value] = 1
        counts[BatchStatus.INDEXING.value] = 1
        return CorrelationProgress(
            correlation_id=correlation_id,
            project_id=project_id,
            total_batches=2,
            counts=counts,
            percentage=50.0,
            current_step=BatchStatus.INDEXING.value,
            estimated_duration_ms=4000,
            remaining_duration_ms=1500,
        )

    return _make


class InMemoryLeaseLock(LeaseLock):
    """LeaseLock whose lease table is a dict; `expire` simulates a dead owner."""

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("ttl_seconds", 30)
        kwargs.setdefault("renew_seconds", 10)
        kwargs.setdefault("poll_interval_ms", 5)
        super().__init__(session_factory=None, **kwargs)
        self.leases: dict[str, tuple[str, datetime]] = {}
        self.renewals = 0

    async def try_acquire(self, key: str, token: str) -> bool:
        now = utcnow()
        current = self.leases.get(key)
        if current is None or current[1] < now or current[0] == token:
            self.leases[key] = (token, now + self.ttl)
            return True
        return False

    async def renew(self, key: str, token: str) -> bool:
        current = self.leases.get(key)
        if current is None or current[0] != token:
            return False
        self.leases[key] = (token, utcnow() + self.ttl)
        self.renewals += 1
        return True

    async def release(self, key: str, token: str) -> None:
        current = self.leases.get(key)
        if current is not None and current[0] == token:
            del self.leases[key]

    def expire(self, key: str) -> None:
        token, _ = self.leases[key]
        self.leases[key] = (token, utcnow() - timedelta(seconds=1))


@pytest.fixture
def locks() -> InMemoryLeaseLock:
    return InMemoryLeaseLock()


# =============================================================================
# In-memory pipeline persistence
# =============================================================================


@dataclass
class StoredSource:
    unit_id: str
    description: str = ""
    strength: float = 0.0
    embedding: list[float] | None = None
    id: uuid.UUID = field(default_factory=uuid7)


def sourced(*unit_ids: str, strength: float = 0.0) -> list[StoredSource]:
    return [StoredSource(unit_id, strength=strength) for unit_id in unit_ids]


@dataclass
class StoredEntity:
    name: str
    type: str
    sources: list[StoredSource] = field(default_factory=list)
    description: str = ""
    embedding: list[float] | None = None

    @property
    def unit_ids(self) -> list[str]:
        return sorted(source.unit_id for source in self.sources)


@dataclass
class StoredRelationship:
    source_id: uuid.UUID
    target_id: uuid.UUID
    sources: list[StoredSource] = field(default_factory=list)
    description: str = ""
    embedding: list[float] | None = None

    @property
    def rank(self) -> float:
        strengths = [source.strength for source in self.sources]
        return sum(strengths) / len(strengths) if strengths else 0.0


class InMemoryGraphStore(DedupeStore):
    """
    Graph held in dicts, with the same similarity rule as pg_trgm.

    Covers the indexing, dedupe, file-removal and description operations of
    GraphStore. `units` maps text unit ids to their file id.
    """

    def __init__(self) -> None:
        self.entities: dict[uuid.UUID, StoredEntity] = {}
        self.relationships: dict[uuid.UUID, StoredRelationship] = {}
        self.units: dict[str, uuid.UUID] = {}

    def add_entity(self, name: str, entity_type: str, *unit_ids: str, entity_id: uuid.UUID | None = None) -> uuid.UUID:
        entity_id = entity_id or uuid7()
        self.entities[entity_id] = StoredEntity(name, entity_type, sourced(*unit_ids))
        return entity_id

    def add_relationship(
        self, source_id: uuid.UUID, target_id: uuid.UUID, *strengths: float, relationship_id: uuid.UUID | None = None
    ) -> uuid.UUID:
        relationship_id = relationship_id or uuid7()
        sources = [StoredSource(f"unit-{relationship_id}-{i}", strength=s) for i, s in enumerate(strengths)]
        self.relationships[relationship_id] = StoredRelationship(source_id, target_id, sources)
        return relationship_id

    # === Indexing writes ===
    async def save_units(self, project_id, project_file_id, units):
        unit_ids = {}
        for unit in units:
            row_id = uuid7()
            self.units[str(row_id)] = project_file_id
            unit_ids[unit.public_id] = row_id
        return unit_ids

    async def upsert_entities(self, project_id, entities, unit_ids) -> WriteResult:
        result = WriteResult(entity_ids={}, touched_entity_ids=set(), touched_relationship_ids=set())
        for data in entities:
            entity_id = next(
                (eid for eid, e in self.entities.items() if e.name == data.name and e.type == data.type), None
            )
            if entity_id is None:
                entity_id = uuid7()
                self.entities[entity_id] = StoredEntity(data.name, data.type)
            result.entity_ids[data.key] = entity_id
            for source in data.sources:
                if source.unit_id in unit_ids:
                    self.entities[entity_id].sources.append(
                        StoredSource(str(unit_ids[source.unit_id]), source.description)
                    )
                    result.touched_entity_ids.add(entity_id)
        return result

    async def upsert_relationships(self, project_id, relationships, entity_ids, unit_ids):
        touched = set()
        for data in relationships:
            a, b = entity_ids.get(data.source), entity_ids.get(data.target)
            if a is None or b is None:
                continue
            rel_id = next(
                (rid for rid, r in sorted(self.relationships.items()) if {r.source_id, r.target_id} == {a, b}),
                None,
            )
            if rel_id is None:
                rel_id = uuid7()
                self.relationships[rel_id] = StoredRelationship(a, b)
            for source in data.sources:
                if source.unit_id in unit_ids:
                    self.relationships[rel_id].sources.append(
                        StoredSource(str(unit_ids[source.unit_id]), source.description, source.strength)
                    )
                    touched.add(rel_id)
        return touched

    async def refresh_ranks(self, relationship_ids) -> None:
        # rank is derived from the sources on read
        return None

    async def has_graph(self, project_id) -> bool:
        return bool(self.entities)

    # === Dedupe primitives ===
    async def find_similar_entity_pairs(self, project_id, threshold):
        ids = sorted(self.entities)
        pairs = []
        for i, a in enumerate(ids):
            for b in ids[i + 1:]:
                ea, eb = self.entities[a], self.entities[b]
                if ea.type == eb.type and trigram_similarity(ea.name, eb.name) > threshold:
                    pairs.append((a, b))
        return pairs

    async def dedupe_candidates(self, project_id, entity_ids):
        return [
            DedupeCandidate(entity_id, self.entities[entity_id].name, self.entities[entity_id].type,
                            len(self.entities[entity_id].sources))
            for entity_id in sorted(entity_ids)
            if entity_id in self.entities
        ]

    async def rename_entity(self, project_id, entity_id, name) -> bool:
        entity = self.entities[entity_id]
        taken = any(
            e.name == name and e.type == entity.type for eid, e in self.entities.items() if eid != entity_id
        )
        if taken:
            return False
        entity.name = name
        return True

    async def merge_entities(self, project_id, canonical_id, duplicate_ids):
        for duplicate_id in duplicate_ids:
            self.entities[canonical_id].sources.extend(self.entities.pop(duplicate_id).sources)
            for rel in self.relationships.values():
                if rel.source_id == duplicate_id:
                    rel.source_id = canonical_id
                if rel.target_id == duplicate_id:
                    rel.target_id = canonical_id

    async def find_duplicate_relationship_groups(self, project_id):
        groups: dict[frozenset, list[uuid.UUID]] = {}
        for rel_id, rel in sorted(self.relationships.items()):
            groups.setdefault(frozenset((rel.source_id, rel.target_id)), []).append(rel_id)
        return [group for group in groups.values() if len(group) > 1]

    async def merge_relationships(self, project_id, canonical_id, duplicate_ids):
        for duplicate_id in duplicate_ids:
            self.relationships[canonical_id].sources.extend(self.relationships.pop(duplicate_id).sources)

    async def delete_orphans(self, project_id):
        orphan_relationships = [
            rid for rid, r in self.relationships.items()
            if not r.sources or r.source_id not in self.entities or r.target_id not in self.entities
        ]
        for rid in orphan_relationships:
            del self.relationships[rid]
        orphan_entities = [eid for eid, e in self.entities.items() if not e.sources]
        for eid in orphan_entities:
            del self.entities[eid]
        return len(orphan_entities), len(orphan_relationships)

    # === File removal ===
    async def purge_file_units(self, project_id, file_ids):
        doomed = {unit_id for unit_id, file_id in self.units.items() if file_id in set(file_ids)}
        entity_ids, relationship_ids = set(), set()
        for items, affected in ((self.entities, entity_ids), (self.relationships, relationship_ids)):
            for item_id, item in items.items():
                kept = [source for source in item.sources if source.unit_id not in doomed]
                if len(kept) != len(item.sources):
                    item.sources = kept
                    affected.add(item_id)
        for unit_id in doomed:
            del self.units[unit_id]
        return entity_ids, relationship_ids

    # === Descriptions ===
    async def entity_description_inputs(self, entity_ids):
        inputs = []
        for entity_id in sorted(set(entity_ids)):
            entity = self.entities.get(entity_id)
            if entity is not None and entity.sources:
                inputs.append(DescriptionInput(entity_id, entity.name, [s.description for s in entity.sources]))
        return inputs

    async def relationship_description_inputs(self, relationship_ids):
        inputs = []
        for rel_id in sorted(set(relationship_ids)):
            rel = self.relationships.get(rel_id)
            if rel is not None and rel.sources:
                label = f"{self.entities[rel.source_id].name} -> {self.entities[rel.target_id].name}"
                inputs.append(DescriptionInput(rel_id, label, [s.description for s in rel.sources]))
        return inputs

    async def update_entity_description(self, entity_id, description, embedding) -> None:
        self.entities[entity_id].description = description
        self.entities[entity_id].embedding = embedding

    async def update_relationship_description(self, relationship_id, description, embedding) -> None:
        self.relationships[relationship_id].description = description
        self.relationships[relationship_id].embedding = embedding

    def _all_sources(self) -> dict[uuid.UUID, StoredSource]:
        items = [*self.entities.values(), *self.relationships.values()]
        return {source.id: source for item in items for source in item.sources}

    async def sources_without_embedding(self, entity_ids, relationship_ids):
        pending = []
        for kind, items, ids in (
            ("entity", self.entities, entity_ids),
            ("relationship", self.relationships, relationship_ids),
        ):
            for item_id in sorted(set(ids)):
                if item_id in items:
                    pending.extend(
                        (kind, s.id, s.description) for s in items[item_id].sources if s.embedding is None
                    )
        return pending

    async def update_source_embedding(self, kind, source_id, embedding) -> None:
        self._all_sources()[source_id].embedding = embedding


class InMemoryStaging:
    """StagingStore on a list; payloads go through JSON like the JSONB column."""

    def __init__(self) -> None:
        self.records: list[tuple[str, int, uuid.UUID, StagedDataType, dict]] = []

    async def insert_many(self, correlation_id, batch_id, project_id, data_type, payloads) -> int:
        for payload in payloads:
            self.records.append((correlation_id, batch_id, project_id, data_type, json.loads(json.dumps(payload))))
        return len(payloads)

    async def list(self, correlation_id, batch_id, data_type) -> list[dict]:
        return [r[4] for r in self.records if r[:2] == (correlation_id, batch_id) and r[3] == data_type]

    async def delete(self, correlation_id, batch_id) -> int:
        kept = [r for r in self.records if r[:2] != (correlation_id, batch_id)]
        deleted, self.records = len(self.records) - len(kept), kept
        return deleted

    async def delete_by_project(self, project_id) -> int:
        kept = [r for r in self.records if r[2] != project_id]
        deleted, self.records = len(self.records) - len(kept), kept
        return deleted

    async def cleanup(self, max_age) -> int:
        return 0

    def count(self, correlation_id: str, batch_id: int) -> int:
        return sum(1 for r in self.records if r[:2] == (correlation_id, batch_id))


class InMemoryProcessTime:
    """ProcessTimeService on a list of (type, amount, duration) samples."""

    def __init__(self) -> None:
        self.samples: list[tuple[ProcessStatType, int, int]] = []

    async def add(self, stat_type, amount, duration_ms, project_id=None) -> None:
        self.samples.append((stat_type, amount, duration_ms))

    async def predict(self, stat_type, amount) -> int:
        samples = [(a, d) for t, a, d in self.samples if t == stat_type]
        return predict_duration_ms(samples, amount, settings.default_ms_per_token)

    async def add_file_processing_time(self, amount, duration_ms, project_id=None) -> None:
        await self.add(ProcessStatType.FILE_PROCESSING, amount, duration_ms, project_id)

    async def predict_file_processing_time(self, amount) -> int:
        return await self.predict(ProcessStatType.FILE_PROCESSING, amount)


class InMemoryPipelineStore(PipelineStore):
    """
    PipelineStore whose rows are plain ORM instances that never reach a session.

    Every unit of work shares the same state; `open` is the store factory.
    Batch insertion order stands in for created_at.
    """

    def __init__(self) -> None:
        self.projects: dict[uuid.UUID, Project] = {}
        self.files: dict[uuid.UUID, ProjectFile] = {}
        self.batches: list[Batch] = []
        self.staging = InMemoryStaging()
        self.graph = InMemoryGraphStore()
        self.process_time = InMemoryProcessTime()
        self.commits = 0

    @asynccontextmanager
    async def open(self) -> AsyncIterator["InMemoryPipelineStore"]:
        yield self

    def add_project(self, project: Project) -> None:
        self.projects[project.id] = project
        for file in project.files:
            self.files[file.id] = file

    async def get_project(self, project_id):
        return self.projects.get(project_id)

    async def get_files(self, file_ids):
        return [self.files[file_id] for file_id in file_ids if file_id in self.files]

    async def set_token_count(self, file_id, tokens) -> None:
        self.files[file_id].token_count = tokens

    async def deleted_files(self, project_id):
        return [f for f in self.files.values() if f.project_id == project_id and f.deleted]

    async def remove_files(self, file_ids) -> None:
        for file_id in file_ids:
            file = self.files.pop(file_id, None)
            if file is not None and file.project_id in self.projects:
                self.projects[file.project_id].files.remove(file)

    async def delete_project(self, project_id) -> bool:
        if self.projects.pop(project_id, None) is None:
            return False
        self.files = {fid: f for fid, f in self.files.items() if f.project_id != project_id}
        self.batches = [b for b in self.batches if b.project_id != project_id]
        return True

    def add_batch(self, batch: Batch) -> None:
        self.batches.append(batch)

    async def claim_batch(self, correlation_id, batch_id, expected, target):
        batch = await self.get_batch(correlation_id, batch_id)
        if batch is None or batch.status != expected:
            return None
        batch.status = target
        batch.started_at = utcnow()
        batch.error_message = None
        return batch

    async def get_batch(self, correlation_id, batch_id):
        return next(
            (b for b in self.batches if b.correlation_id == correlation_id and b.batch_id == batch_id), None
        )

    async def list_batches(self, correlation_id):
        return sorted((b for b in self.batches if b.correlation_id == correlation_id), key=lambda b: b.batch_id)

    async def latest_correlation_id(self, project_id):
        runs = [b.correlation_id for b in self.batches if b.project_id == project_id]
        return runs[-1] if runs else None

    async def processing_batches(self):
        return [b for b in self.batches if b.status.is_processing]

    async def unfinished_batches(self, project_id):
        return [b for b in self.batches if b.project_id == project_id and not b.is_terminal]

    async def flush(self) -> None:
        return None

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        return None


@pytest.fixture
def pipeline_store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture
def graph_store() -> InMemoryGraphStore:
    return InMemoryGraphStore()
