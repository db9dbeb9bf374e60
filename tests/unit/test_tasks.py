"""Unit tests for the Celery task bridge."""

import asyncio
import uuid
from contextlib import asynccontextmanager

import pytest

from src.services.orchestrator import FileRemoval
from src.workers import tasks


class FakeEngine:
    def __init__(self) -> None:
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True


class RecordingOrchestrator:
    """Stands in for BatchOrchestrator; remembers what it was asked to do."""

    instances: list["RecordingOrchestrator"] = []

    def __init__(self, ai_client, session_factory=None, dispatcher=None) -> None:
        self.dispatcher = dispatcher
        self.closed = False
        self.deleted: list[tuple[uuid.UUID, list[uuid.UUID] | None]] = []
        RecordingOrchestrator.instances.append(self)

    async def aclose(self) -> None:
        self.closed = True

    async def delete_files(self, project_id, file_ids=None) -> FileRemoval:
        self.deleted.append((project_id, file_ids))
        return FileRemoval(project_id, len(file_ids or []), 2, 1, 3)

    async def delete_project(self, project_id) -> None:
        self.deleted.append((project_id, None))


@pytest.fixture
def engine(monkeypatch, mock_ai) -> FakeEngine:
    engine = FakeEngine()

    @asynccontextmanager
    async def fake_ai_client():
        yield mock_ai

    RecordingOrchestrator.instances = []
    monkeypatch.setattr(tasks, "create_async_engine", lambda url, **kwargs: engine)
    monkeypatch.setattr(tasks, "get_ai_client", fake_ai_client)
    monkeypatch.setattr(tasks, "BatchOrchestrator", RecordingOrchestrator)
    return engine


class TestWithOrchestrator:
    """Tests for the per-task orchestrator lifecycle."""

    def test_closes_orchestrator_and_engine(self, engine) -> None:
        async def work(orchestrator):
            return "done"

        assert asyncio.run(tasks._with_orchestrator(work, "postgresql+asyncpg://kg@localhost/kg")) == "done"

        [orchestrator] = RecordingOrchestrator.instances
        assert orchestrator.closed
        assert isinstance(orchestrator.dispatcher, tasks.CeleryDispatcher)
        assert engine.disposed

    def test_closes_orchestrator_when_work_fails(self, engine) -> None:
        async def work(orchestrator):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            asyncio.run(tasks._with_orchestrator(work, "postgresql+asyncpg://kg@localhost/kg"))

        [orchestrator] = RecordingOrchestrator.instances
        assert orchestrator.closed
        assert engine.disposed


class TestDeleteTasks:
    """Tests for the delete task wrappers."""

    def test_delete_files_task(self, engine) -> None:
        project_id, file_id = uuid.uuid4(), uuid.uuid4()

        result = tasks.delete_files_task(str(project_id), [str(file_id)])

        assert result == {
            "project_id": str(project_id),
            "files": 1,
            "entities_deleted": 2,
            "relationships_deleted": 1,
        }
        [orchestrator] = RecordingOrchestrator.instances
        assert orchestrator.deleted == [(project_id, [file_id])]
        assert orchestrator.closed

    def test_delete_files_task_without_ids_purges_soft_deleted(self, engine) -> None:
        project_id = uuid.uuid4()

        tasks.delete_files_task(str(project_id))

        assert RecordingOrchestrator.instances[0].deleted == [(project_id, None)]

    def test_delete_project_task(self, engine) -> None:
        project_id = uuid.uuid4()

        assert tasks.delete_project_task(str(project_id)) == {"project_id": str(project_id), "deleted": True}
        assert RecordingOrchestrator.instances[0].deleted == [(project_id, None)]
