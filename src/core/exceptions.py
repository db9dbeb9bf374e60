"""
Exception hierarchy for the graph pipeline and the query engine.

Retry decisions are made on type: anything deriving from TransientError may
be retried by the caller, everything else surfaces immediately.
"""


class PipelineError(Exception):
    """Base exception for ingestion pipeline errors."""

    pass


class TransientError(PipelineError):
    """Raised for failures that may succeed on a later attempt."""

    pass


class ExtractionError(PipelineError):
    """Raised when a file cannot be split or its extraction output is invalid."""

    pass


class BatchStateError(PipelineError):
    """Raised when a batch is asked to make a transition its status forbids."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal batch transition {current} -> {target}")
        self.current = current
        self.target = target


class LockBusyError(PipelineError):
    """Raised by a non-blocking lock acquisition when another owner holds the lease."""

    def __init__(self, key: str):
        super().__init__(f"Lock {key!r} is held by another worker")
        self.key = key


class RetrievalError(Exception):
    """Raised when query context cannot be fetched from the graph store."""

    pass


class NotFoundError(PipelineError):
    """Raised when a project, file or correlation does not exist."""

    pass
