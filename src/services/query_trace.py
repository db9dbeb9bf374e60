"""
QueryTrace: what a single query looked at.

Retrieval steps and agent tools record the ids they touch; the API reports
the snapshot so a client can show how many files were considered and used.
Recording is safe from concurrent tasks and threads.
"""

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

NIL_UUID = uuid.UUID(int=0)


class TraceKind(str, Enum):
    """The five things a query trace accumulates."""

    CONSIDERED_SOURCE = "considered_source_ids"
    USED_SOURCE = "used_source_ids"
    QUERIED_ENTITY = "queried_entity_ids"
    QUERIED_RELATIONSHIP = "queried_relationship_ids"
    QUERIED_ENTITY_TYPE = "queried_entity_types"


@dataclass(frozen=True)
class TraceSnapshot:
    """Sorted, de-duplicated copy of a trace."""

    considered_source_ids: list[str] = field(default_factory=list)
    used_source_ids: list[str] = field(default_factory=list)
    queried_entity_ids: list[str] = field(default_factory=list)
    queried_relationship_ids: list[str] = field(default_factory=list)
    queried_entity_types: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {kind.value: list(getattr(self, kind.value)) for kind in TraceKind}


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == 0 or value == NIL_UUID


class QueryTrace:
    """
    Write-many, read-once accumulator for one query call.

    Usage:
        trace = QueryTrace()
        trace.record(TraceKind.QUERIED_ENTITY, entity.public_id)
        snapshot = trace.snapshot()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sets: dict[TraceKind, set[str]] = {kind: set() for kind in TraceKind}

    def record(self, kind: TraceKind, *values: Any) -> None:
        """Record ids; None, empty strings, zero and the nil UUID are ignored."""
        cleaned = {str(v) for v in values if not _is_empty(v)}
        if not cleaned:
            return
        with self._lock:
            self._sets[kind].update(cleaned)

    def record_many(self, kind: TraceKind, values) -> None:
        self.record(kind, *values)

    # Shorthands used by the retrieval code
    def considered_source(self, *ids: Any) -> None:
        self.record(TraceKind.CONSIDERED_SOURCE, *ids)

    def used_source(self, *ids: Any) -> None:
        self.record(TraceKind.USED_SOURCE, *ids)

    def queried_entity(self, *ids: Any) -> None:
        self.record(TraceKind.QUERIED_ENTITY, *ids)

    def queried_relationship(self, *ids: Any) -> None:
        self.record(TraceKind.QUERIED_RELATIONSHIP, *ids)

    def queried_entity_type(self, *types: Any) -> None:
        self.record(TraceKind.QUERIED_ENTITY_TYPE, *types)

    def snapshot(self) -> TraceSnapshot:
        with self._lock:
            return TraceSnapshot(**{kind.value: sorted(values) for kind, values in self._sets.items()})
