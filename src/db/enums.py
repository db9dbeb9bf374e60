"""
Controlled vocabulary enums for the graph pipeline.

This module defines the allowed values for:
- Batch statuses (ingestion state machine)
- Project states (graph lifecycle)
- Staged record data types
- Process-time statistic types
- File types (selects the unit builder)
"""

from enum import Enum


class BatchStatus(str, Enum):
    """
    Status values for ingestion batches.

    Batch lifecycle::

        PENDING -> PREPROCESSING -> PREPROCESSED -> INDEXING -> COMPLETED
                        |                              |
                        |-> FAILED                     |-> FAILED

    Any non-terminal status may move to FAILED.
    Stale resets move one step back to the last durable checkpoint:
        PREPROCESSING -> PENDING
        INDEXING      -> PREPROCESSED

    Usage:
        if not batch.status.can_transition_to(BatchStatus.INDEXING):
            raise BatchStateError(batch.status, BatchStatus.INDEXING)
    """

    PENDING = "pending"
    PREPROCESSING = "preprocessing"
    PREPROCESSED = "preprocessed"
    INDEXING = "indexing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Completed and failed batches never transition again."""
        return self in {BatchStatus.COMPLETED, BatchStatus.FAILED}

    @property
    def is_processing(self) -> bool:
        """States in which a worker owns the batch and staleness applies."""
        return self in {BatchStatus.PREPROCESSING, BatchStatus.INDEXING}

    @property
    def stale_reset_target(self) -> "BatchStatus | None":
        """
        Checkpoint a stale batch falls back to.

        Only the immediately preceding durable state is allowed, so an
        indexing batch keeps its staged data and never redoes extraction.
        """
        return _STALE_RESETS.get(self)

    def can_transition_to(self, target: "BatchStatus") -> bool:
        """Check whether a forward transition to target is allowed."""
        return target in _FORWARD_TRANSITIONS[self]

    @classmethod
    def values(cls) -> list[str]:
        """Return list of all valid batch status values."""
        return [member.value for member in cls]


_FORWARD_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PREPROCESSING, BatchStatus.FAILED}),
    BatchStatus.PREPROCESSING: frozenset({BatchStatus.PREPROCESSED, BatchStatus.FAILED}),
    BatchStatus.PREPROCESSED: frozenset({BatchStatus.INDEXING, BatchStatus.FAILED}),
    BatchStatus.INDEXING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
}

_STALE_RESETS: dict[BatchStatus, BatchStatus] = {
    BatchStatus.PREPROCESSING: BatchStatus.PENDING,
    BatchStatus.INDEXING: BatchStatus.PREPROCESSED,
}


class ProjectState(str, Enum):
    """
    Lifecycle of a project's graph.

    CREATE: first ingestion run into an empty graph
    UPDATE: later ingestion runs into an existing graph
    READY:  all batches of the latest correlation completed
    """

    CREATE = "create"
    UPDATE = "update"
    READY = "ready"


class StagedDataType(str, Enum):
    """Kinds of payload held in the staging store."""

    UNIT = "unit"
    ENTITY = "entity"
    RELATIONSHIP = "relationship"


class ProcessStatType(str, Enum):
    """Operation types whose durations feed the process-time predictor."""

    FILE_PROCESSING = "file_processing"
    GRAPH_CREATION = "graph_creation"
    GRAPH_UPDATE = "graph_update"


class FileType(str, Enum):
    """
    How a project file is turned into units.

    TEXT:  semantic token-bounded splitting
    CSV:   row packing with the header repeated per unit
    IMAGE: one unit holding the AI image description
    FILE:  one unit holding the whole extracted text
    """

    TEXT = "text"
    CSV = "csv"
    IMAGE = "image"
    FILE = "file"

    @classmethod
    def from_string(cls, value: str | None) -> "FileType":
        """Map a stored value to a FileType, defaulting to TEXT."""
        if not value:
            return cls.TEXT
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.TEXT
