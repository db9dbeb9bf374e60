"""
Batch orchestrator: drives ingestion runs through the batch state machine.

Pipeline per batch:
1. preprocess (PENDING -> PREPROCESSING -> PREPROCESSED)
   text extraction, unit splitting, AI extraction, merge, staging
2. index (PREPROCESSED -> INDEXING -> COMPLETED)
   under the project lock: units, entities and relationships written to the
   graph, cross-batch dedupe, descriptions and embeddings

Every stage starts with a conditional claim (UPDATE ... WHERE status =
expected RETURNING); a lost claim means another worker owns the batch and
the call is a no-op. Any exception escaping a stage marks the batch FAILED
with the error preserved, and is re-raised.

The staging checkpoint means AI extraction is never repeated once a batch
reached PREPROCESSED; a crashed index stage is reset by the stale sweep and
replays the staged records.

Deleted files leave the graph through `delete_files`, which waits for the
project's unfinished batches and then purges under the project lock.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from uuid6 import uuid7

from src.core.config import settings
from src.core.exceptions import BatchStateError, LockBusyError, NotFoundError, TransientError
from src.core.logging import get_logger, log_duration
from src.db.base import AsyncSessionLocal, utcnow
from src.db.enums import BatchStatus, ProcessStatType, ProjectState, StagedDataType
from src.db.models import Batch, ProjectFile
from src.services.ai_client import BaseAIClient
from src.services.dedupe import DedupeService
from src.services.descriptions import DescriptionService
from src.services.extraction import ExtractionService
from src.services.loaders import CachedTextExtractor, RoutingTextExtractor, TextExtractor
from src.services.locks import STALE_SWEEP_KEY, LeaseLock, project_lock_key
from src.services.merge import EntityData, GraphAccumulator, RelationshipData
from src.services.pipeline_store import PipelineStore, StoreFactory, sql_store_factory
from src.services.units import UnitData, UnitSplitter, decode_text

logger = get_logger(__name__)

STALE_PREPROCESSING_MESSAGE = "Reset: stale preprocessing state"
STALE_INDEXING_MESSAGE = "Reset: stale indexing state"


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def error_message(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def graph_stat_type(state: ProjectState) -> ProcessStatType:
    """Indexing statistic of a run: first build of the graph or an update."""
    return ProcessStatType.GRAPH_CREATION if state == ProjectState.CREATE else ProcessStatType.GRAPH_UPDATE


# =============================================================================
# Task dispatch
# =============================================================================


class TaskDispatcher(ABC):
    """Schedules the next stage of a batch (Celery in production)."""

    @abstractmethod
    def dispatch_preprocess(self, correlation_id: str, batch_id: int) -> None:
        pass

    @abstractmethod
    def dispatch_index(self, correlation_id: str, batch_id: int) -> None:
        pass


# =============================================================================
# Partitioning
# =============================================================================


def partition_files(
    files: list[ProjectFile],
    max_files: int,
    max_tokens: int,
) -> list[list[ProjectFile]]:
    """
    Split files, in order, into batches bounded by file count and tokens.

    Files are sized by `ProjectFile.estimated_tokens` (measured tokens, else
    a guess from the stored size). A file larger than max_tokens gets a
    batch of its own; files of unknown size only count against max_files.
    """
    batches: list[list[ProjectFile]] = []
    current: list[ProjectFile] = []
    current_tokens = 0
    for file in files:
        tokens = file.estimated_tokens
        if current and (len(current) >= max_files or current_tokens + tokens > max_tokens):
            batches.append(current)
            current, current_tokens = [], 0
        current.append(file)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


# =============================================================================
# Progress views
# =============================================================================


@dataclass
class CorrelationProgress:
    """Batch counts and durations of one ingestion run."""

    correlation_id: str
    project_id: uuid.UUID
    total_batches: int
    counts: dict[str, int]
    percentage: float
    current_step: str
    estimated_duration_ms: int
    remaining_duration_ms: int
    errors: list[str] = field(default_factory=list)


@dataclass
class ProjectProgress:
    """Processing status of a project, from its latest ingestion run."""

    project_id: uuid.UUID
    state: str
    correlation_id: str | None
    percentage: float
    current_step: str
    estimated_duration_ms: int
    remaining_duration_ms: int


def current_step(statuses: Iterable[BatchStatus]) -> str:
    """Name of the stage a run is in, seen from its batches."""
    statuses = set(statuses)
    if not statuses:
        return BatchStatus.PENDING.value
    if BatchStatus.FAILED in statuses:
        return BatchStatus.FAILED.value
    if BatchStatus.INDEXING in statuses:
        return BatchStatus.INDEXING.value
    if statuses & {BatchStatus.PREPROCESSING, BatchStatus.PREPROCESSED}:
        return BatchStatus.PREPROCESSING.value
    if statuses == {BatchStatus.COMPLETED}:
        return BatchStatus.COMPLETED.value
    if BatchStatus.COMPLETED in statuses:
        # Some done, rest waiting for a worker
        return BatchStatus.PREPROCESSING.value
    return BatchStatus.PENDING.value


def summarize_batches(correlation_id: str, batches: list[Batch], now: datetime) -> CorrelationProgress:
    """
    Build the progress view of a run.

    Remaining duration is the estimate of every unfinished batch, minus the
    time already spent on batches in a processing state (never below zero).
    """
    counts = {status.value: 0 for status in BatchStatus}
    estimated = remaining = 0
    errors = []
    for batch in batches:
        counts[batch.status.value] += 1
        estimated += batch.estimated_duration_ms
        if batch.status.is_terminal:
            if batch.status == BatchStatus.FAILED and batch.error_message:
                errors.append(batch.error_message)
            continue
        left = batch.estimated_duration_ms
        if batch.status.is_processing and batch.started_at is not None:
            left -= int((now - batch.started_at).total_seconds() * 1000)
        remaining += max(left, 0)

    total = len(batches)
    completed = counts[BatchStatus.COMPLETED.value]
    return CorrelationProgress(
        correlation_id=correlation_id,
        project_id=batches[0].project_id,
        total_batches=total,
        counts=counts,
        percentage=round(100.0 * completed / total, 1) if total else 0.0,
        current_step=current_step(batch.status for batch in batches),
        estimated_duration_ms=estimated,
        remaining_duration_ms=remaining,
        errors=errors,
    )


# =============================================================================
# Orchestrator
# =============================================================================


@dataclass
class Submission:
    correlation_id: str
    project_id: uuid.UUID
    batch_count: int
    file_count: int


@dataclass
class StaleReset:
    correlation_id: str
    batch_id: int
    status: BatchStatus


@dataclass
class FileRemoval:
    project_id: uuid.UUID
    files: int
    entities_deleted: int
    relationships_deleted: int
    descriptions_updated: int


class BatchOrchestrator:
    """
    Runs ingestion stages for batches.

    Persistence goes through a PipelineStore opened per unit of work
    (`store_factory`); by default a SqlPipelineStore on `session_factory`.

    Usage:
        async with get_ai_client() as ai:
            orchestrator = BatchOrchestrator(ai, dispatcher=CeleryDispatcher())
            await orchestrator.preprocess_batch(correlation_id, 0)
    """

    def __init__(
        self,
        ai_client: BaseAIClient,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dispatcher: TaskDispatcher | None = None,
        locks: LeaseLock | None = None,
        text_extractor: TextExtractor | None = None,
        splitter: UnitSplitter | None = None,
        store_factory: StoreFactory | None = None,
    ):
        self.ai = ai_client
        self.session_factory = session_factory or AsyncSessionLocal
        self.store_factory = store_factory or sql_store_factory(self.session_factory)
        self.dispatcher = dispatcher
        self.locks = locks or LeaseLock(self.session_factory)
        self.text_extractor = text_extractor or CachedTextExtractor(RoutingTextExtractor(ai_client))
        self.splitter = splitter or UnitSplitter()
        self.delete_poll_seconds = settings.delete_poll_seconds
        self.delete_wait_seconds = settings.delete_wait_seconds

    async def aclose(self) -> None:
        """Release the text extractor's cache connection."""
        await self.text_extractor.aclose()

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit_files(self, project_id: uuid.UUID, file_ids: list[uuid.UUID] | None = None) -> Submission:
        """
        Start an ingestion run over the given files (all active files if None).

        Creates the batches of a new correlation id and dispatches their
        preprocessing. The project state changes under a non-blocking project
        lock; LockBusyError means a batch of the project is being indexed.
        """
        async with self.locks.hold(project_lock_key(project_id), wait=False), self.store_factory() as store:
            project = await store.get_project(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")

            files = sorted(project.active_files, key=lambda f: f.id)
            if file_ids is not None:
                by_id = {f.id: f for f in files}
                missing = [str(fid) for fid in file_ids if fid not in by_id]
                if missing:
                    raise NotFoundError(f"Files not found in project: {', '.join(missing)}")
                files = [by_id[fid] for fid in dict.fromkeys(file_ids)]
            if not files:
                raise ValueError("No files to process")

            has_graph = await store.graph.has_graph(project_id)
            project.state = ProjectState.UPDATE if has_graph else ProjectState.CREATE
            graph_stat = graph_stat_type(project.state)

            partitions = partition_files(files, settings.batch_max_files, settings.batch_max_tokens)
            correlation_id = str(uuid7())
            for index, batch_files in enumerate(partitions):
                # Refined from measured tokens once the batch is preprocessed
                tokens = sum(f.estimated_tokens or settings.default_file_tokens for f in batch_files)
                estimate = await store.process_time.predict_file_processing_time(tokens)
                estimate += await store.process_time.predict(graph_stat, tokens)
                store.add_batch(
                    Batch(
                        correlation_id=correlation_id,
                        batch_id=index,
                        total_batches=len(partitions),
                        project_id=project_id,
                        status=BatchStatus.PENDING,
                        file_ids=[str(f.id) for f in batch_files],
                        estimated_duration_ms=estimate,
                    )
                )
            await store.commit()

        logger.info(
            "Ingestion run submitted",
            correlation_id=correlation_id,
            project_id=str(project_id),
            batches=len(partitions),
            files=len(files),
        )
        if self.dispatcher is not None:
            for index in range(len(partitions)):
                self.dispatcher.dispatch_preprocess(correlation_id, index)

        return Submission(correlation_id, project_id, len(partitions), len(files))

    # =========================================================================
    # Claims and failure
    # =========================================================================

    @staticmethod
    async def claim(
        store: PipelineStore,
        correlation_id: str,
        batch_id: int,
        expected: BatchStatus,
        target: BatchStatus,
    ) -> Batch | None:
        """Atomically move a batch from expected to target; None if it was not in expected."""
        if not expected.can_transition_to(target):
            raise BatchStateError(expected.value, target.value)
        return await store.claim_batch(correlation_id, batch_id, expected, target)

    async def _load_batch(self, store: PipelineStore, correlation_id: str, batch_id: int) -> Batch:
        batch = await store.get_batch(correlation_id, batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {correlation_id}/{batch_id} not found")
        return batch

    async def fail_batch(self, correlation_id: str, batch_id: int, error: BaseException) -> None:
        """Mark a batch FAILED and drop its staged rows; terminal batches are left alone."""
        async with self.store_factory() as store:
            batch = await self._load_batch(store, correlation_id, batch_id)
            if batch.is_terminal:
                return
            batch.fail(error_message(error))
            await store.staging.delete(correlation_id, batch_id)
            await store.commit()
        logger.error(
            "Batch failed",
            correlation_id=correlation_id,
            batch_id=batch_id,
            error_type=type(error).__name__,
            error=str(error),
        )

    # =========================================================================
    # Preprocessing
    # =========================================================================

    async def preprocess_batch(self, correlation_id: str, batch_id: int) -> bool:
        """
        Extract the graph fragments of a batch's files and stage them.

        Returns False when the batch could not be claimed.
        """
        async with self.store_factory() as store:
            batch = await self.claim(store, correlation_id, batch_id, BatchStatus.PENDING, BatchStatus.PREPROCESSING)
            if batch is None:
                await store.rollback()
                logger.info("Batch not pending, skipping preprocess", correlation_id=correlation_id, batch_id=batch_id)
                return False
            # Remnants of a crashed earlier attempt
            await store.staging.delete(correlation_id, batch_id)
            await store.commit()

        try:
            await self._preprocess(batch)
        except Exception as e:
            await self.fail_batch(correlation_id, batch_id, e)
            raise

        if self.dispatcher is not None:
            self.dispatcher.dispatch_index(correlation_id, batch_id)
        return True

    async def _preprocess(self, batch: Batch) -> None:
        started = time.monotonic()
        async with self.store_factory() as store:
            project = await store.get_project(batch.project_id)
            if project is None:
                raise NotFoundError(f"Project {batch.project_id} not found")
            file_ids = [uuid.UUID(fid) for fid in batch.file_ids]
            files_by_id = {f.id: f for f in await store.get_files(file_ids)}
            entity_types = project.entity_types or None
            graph_stat = graph_stat_type(project.state)

        extraction = ExtractionService(self.ai)
        accumulator = GraphAccumulator()
        staged_units: list[dict] = []
        file_stats: list[tuple[ProjectFile, int, int]] = []

        with log_duration(
            logger, "Batch preprocessed", correlation_id=batch.correlation_id, batch_id=batch.batch_id
        ) as extra:
            for file_id in file_ids:
                file = files_by_id.get(file_id)
                if file is None or file.deleted:
                    logger.warning("Skipping missing or deleted file", file_id=str(file_id))
                    continue
                file_started = time.monotonic()
                text = decode_text(await self.text_extractor.get_file_text(file))
                units = self.splitter.build(text, file.file_type)
                file_accumulator = await extraction.extract_file(
                    units, file.name, entity_types, file.file_metadata
                )
                accumulator.absorb(file_accumulator)
                staged_units.extend({"file_id": str(file.id), **unit.to_dict()} for unit in units)
                file_stats.append((file, sum(u.token_count for u in units), elapsed_ms(file_started)))

            extra.update(
                files=len(file_stats),
                units=len(staged_units),
                entities=len(accumulator.entities),
                relationships=len(accumulator.relationships),
            )

        async with self.store_factory() as store:
            key = (batch.correlation_id, batch.batch_id, batch.project_id)
            await store.staging.insert_many(*key, StagedDataType.UNIT, staged_units)
            await store.staging.insert_many(*key, StagedDataType.ENTITY, [e.to_dict() for e in accumulator.entities])
            await store.staging.insert_many(
                *key, StagedDataType.RELATIONSHIP, [r.to_dict() for r in accumulator.relationships]
            )

            for file, tokens, duration in file_stats:
                await store.set_token_count(file.id, tokens)
                await store.process_time.add_file_processing_time(tokens, duration, batch.project_id)

            stored = await self._load_batch(store, batch.correlation_id, batch.batch_id)
            stored.transition(BatchStatus.PREPROCESSED)
            # Time spent so far plus the indexing prediction for the measured tokens
            tokens = sum(tokens for _, tokens, _ in file_stats)
            stored.estimated_duration_ms = elapsed_ms(started) + await store.process_time.predict(graph_stat, tokens)
            await store.commit()

    # =========================================================================
    # Indexing
    # =========================================================================

    async def index_batch(self, correlation_id: str, batch_id: int) -> bool:
        """
        Write a batch's staged records to the graph under the project lock.

        Returns False when the batch could not be claimed.
        """
        async with self.store_factory() as store:
            batch = await self.claim(store, correlation_id, batch_id, BatchStatus.PREPROCESSED, BatchStatus.INDEXING)
            if batch is None:
                await store.rollback()
                logger.info("Batch not preprocessed, skipping index", correlation_id=correlation_id, batch_id=batch_id)
                return False
            await store.commit()

        try:
            async with self.locks.hold(project_lock_key(batch.project_id)):
                await self._index(batch)
        except Exception as e:
            await self.fail_batch(correlation_id, batch_id, e)
            raise
        return True

    async def _index(self, batch: Batch) -> None:
        started = time.monotonic()
        project_id = batch.project_id

        async with self.store_factory() as store:
            staging = store.staging
            graph = store.graph
            project = await store.get_project(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")

            staged_units = await staging.list(batch.correlation_id, batch.batch_id, StagedDataType.UNIT)
            entities = [
                EntityData.from_dict(d)
                for d in await staging.list(batch.correlation_id, batch.batch_id, StagedDataType.ENTITY)
            ]
            relationships = [
                RelationshipData.from_dict(d)
                for d in await staging.list(batch.correlation_id, batch.batch_id, StagedDataType.RELATIONSHIP)
            ]

            with log_duration(
                logger, "Batch indexed", correlation_id=batch.correlation_id, batch_id=batch.batch_id
            ) as extra:
                units_by_file: dict[str, list[UnitData]] = defaultdict(list)
                for payload in staged_units:
                    units_by_file[payload["file_id"]].append(UnitData.from_dict(payload))
                unit_ids: dict[str, uuid.UUID] = {}
                for file_id, units in units_by_file.items():
                    unit_ids.update(await graph.save_units(project_id, uuid.UUID(file_id), units))

                written = await graph.upsert_entities(project_id, entities, unit_ids)
                touched_relationships = await graph.upsert_relationships(
                    project_id, relationships, written.entity_ids, unit_ids
                )

                dedupe = await DedupeService(self.ai, graph).run(project_id)
                descriptions = await DescriptionService(self.ai, graph).update(
                    written.touched_entity_ids | dedupe.canonical_entity_ids,
                    touched_relationships | dedupe.canonical_relationship_ids,
                )
                extra.update(
                    units=len(unit_ids),
                    entities=len(entities),
                    relationships=len(relationships),
                    entities_merged=dedupe.entities_merged,
                    relationships_merged=dedupe.relationships_merged,
                    descriptions=descriptions.entities + descriptions.relationships,
                )

            tokens = sum(payload["token_count"] for payload in staged_units)
            await store.process_time.add(graph_stat_type(project.state), tokens, elapsed_ms(started), project_id)

            stored = await self._load_batch(store, batch.correlation_id, batch.batch_id)
            stored.transition(BatchStatus.COMPLETED)
            stored.actual_duration_ms = elapsed_ms(started)
            await staging.delete(batch.correlation_id, batch.batch_id)
            await store.flush()

            if await self._run_finished(store, project_id, batch.correlation_id):
                project.state = ProjectState.READY
                logger.info("Project ready", project_id=str(project_id), correlation_id=batch.correlation_id)
            await store.commit()

    async def _run_finished(self, store: PipelineStore, project_id: uuid.UUID, correlation_id: str) -> bool:
        """All batches of the run completed and the run is the project's latest."""
        if await store.latest_correlation_id(project_id) != correlation_id:
            return False
        return all(batch.status == BatchStatus.COMPLETED for batch in await store.list_batches(correlation_id))

    # =========================================================================
    # Deletion
    # =========================================================================

    async def delete_files(self, project_id: uuid.UUID, file_ids: list[uuid.UUID] | None = None) -> FileRemoval:
        """
        Remove deleted files and everything extracted from them.

        `file_ids` are soft-deleted first. Once no batch of the project is
        unfinished, the text units of every soft-deleted file are deleted
        under the blocking project lock (their sources go with them), then
        entities and relationships left without sources, and finally the
        descriptions of the affected survivors are regenerated. The project
        is READY afterwards.
        """
        async with self.store_factory() as store:
            project = await store.get_project(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            if file_ids:
                by_id = {f.id: f for f in await store.get_files(file_ids) if f.project_id == project_id}
                missing = [str(fid) for fid in file_ids if fid not in by_id]
                if missing:
                    raise NotFoundError(f"Files not found in project: {', '.join(missing)}")
                for file in by_id.values():
                    if not file.deleted:
                        file.soft_delete()
            project.state = ProjectState.UPDATE
            await store.commit()

        await self._wait_for_batches(project_id)

        started = time.monotonic()
        async with self.locks.hold(project_lock_key(project_id)), self.store_factory() as store:
            project = await store.get_project(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            graph = store.graph
            removed = [f.id for f in await store.deleted_files(project_id)]

            entity_ids, relationship_ids = await graph.purge_file_units(project_id, removed)
            await store.remove_files(removed)
            entities_deleted, relationships_deleted = await graph.delete_orphans(project_id)
            await graph.refresh_ranks(relationship_ids)
            descriptions = await DescriptionService(self.ai, graph).update(entity_ids, relationship_ids)

            project.state = ProjectState.READY
            await store.commit()

        removal = FileRemoval(
            project_id=project_id,
            files=len(removed),
            entities_deleted=entities_deleted,
            relationships_deleted=relationships_deleted,
            descriptions_updated=descriptions.entities + descriptions.relationships,
        )
        logger.info(
            "Deleted files removed from graph",
            project_id=str(project_id),
            files=removal.files,
            entities_deleted=entities_deleted,
            relationships_deleted=relationships_deleted,
            descriptions=removal.descriptions_updated,
            duration_ms=elapsed_ms(started),
        )
        return removal

    async def _wait_for_batches(self, project_id: uuid.UUID) -> None:
        """Poll until the project has no unfinished batch; TransientError after the wait limit."""
        deadline = time.monotonic() + self.delete_wait_seconds
        while True:
            async with self.store_factory() as store:
                unfinished = await store.unfinished_batches(project_id)
            if not unfinished:
                return
            if time.monotonic() >= deadline:
                raise TransientError(f"Project {project_id} still has {len(unfinished)} unfinished batches")
            logger.debug("Waiting for unfinished batches", project_id=str(project_id), batches=len(unfinished))
            await asyncio.sleep(self.delete_poll_seconds)

    async def delete_project(self, project_id: uuid.UUID) -> None:
        """Delete a project with its files, graph, batches and staged rows."""
        async with self.locks.hold(project_lock_key(project_id)), self.store_factory() as store:
            staged = await store.staging.delete_by_project(project_id)
            if not await store.delete_project(project_id):
                raise NotFoundError(f"Project {project_id} not found")
            await store.commit()
        logger.info("Project deleted", project_id=str(project_id), staged_records=staged)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def reset_stale_batches(self, threshold_seconds: float | None = None) -> list[StaleReset]:
        """
        Move batches stuck in a processing state back one checkpoint and re-dispatch them.

        Runs under a non-blocking global lease; when another worker is
        sweeping this returns an empty list.
        """
        threshold = settings.stale_batch_seconds if threshold_seconds is None else threshold_seconds
        resets: list[StaleReset] = []
        try:
            async with self.locks.hold(STALE_SWEEP_KEY, wait=False):
                async with self.store_factory() as store:
                    now = utcnow()
                    for batch in await store.processing_batches():
                        if not batch.is_stale(now, threshold):
                            continue
                        reason = (
                            STALE_PREPROCESSING_MESSAGE
                            if batch.status == BatchStatus.PREPROCESSING
                            else STALE_INDEXING_MESSAGE
                        )
                        target = batch.reset_stale(reason)
                        resets.append(StaleReset(batch.correlation_id, batch.batch_id, target))
                        logger.warning(
                            "Stale batch reset",
                            correlation_id=batch.correlation_id,
                            batch_id=batch.batch_id,
                            status=target.value,
                        )
                    await store.commit()
        except LockBusyError:
            logger.debug("Stale sweep already running elsewhere")
            return []

        if self.dispatcher is not None:
            for reset in resets:
                if reset.status == BatchStatus.PENDING:
                    self.dispatcher.dispatch_preprocess(reset.correlation_id, reset.batch_id)
                else:
                    self.dispatcher.dispatch_index(reset.correlation_id, reset.batch_id)
        return resets

    async def cleanup_staging(self, max_age: timedelta | None = None) -> int:
        """Delete staged rows past the retention window."""
        max_age = max_age or timedelta(hours=settings.staging_retention_hours)
        async with self.store_factory() as store:
            deleted = await store.staging.cleanup(max_age)
            await store.commit()
        return deleted

    # =========================================================================
    # Progress
    # =========================================================================

    async def correlation_progress(self, correlation_id: str) -> CorrelationProgress:
        async with self.store_factory() as store:
            batches = await store.list_batches(correlation_id)
        if not batches:
            raise NotFoundError(f"Correlation {correlation_id} not found")
        return summarize_batches(correlation_id, batches, utcnow())

    async def project_progress(self, project_id: uuid.UUID) -> ProjectProgress:
        async with self.store_factory() as store:
            project = await store.get_project(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")
            correlation_id = await store.latest_correlation_id(project_id)
            batches = await store.list_batches(correlation_id) if correlation_id is not None else []

        if not batches:
            return ProjectProgress(
                project_id=project_id,
                state=project.state.value,
                correlation_id=None,
                percentage=100.0 if project.state == ProjectState.READY else 0.0,
                current_step=(
                    BatchStatus.COMPLETED.value if project.state == ProjectState.READY else BatchStatus.PENDING.value
                ),
                estimated_duration_ms=0,
                remaining_duration_ms=0,
            )

        summary = summarize_batches(correlation_id, batches, utcnow())
        return ProjectProgress(
            project_id=project_id,
            state=project.state.value,
            correlation_id=correlation_id,
            percentage=summary.percentage,
            current_step=summary.current_step,
            estimated_duration_ms=summary.estimated_duration_ms,
            remaining_duration_ms=summary.remaining_duration_ms,
        )
