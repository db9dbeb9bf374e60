"""
Database package - SQLAlchemy models, session management, and utilities.

Exports:
- Base classes and mixins for model definition
- Session management for FastAPI and standalone usage
- Database lifecycle utilities
- Pipeline enums
- All database models

Usage:
    from src.db import Base, get_db_context
    from src.db import Batch, Entity, Relationship, TextUnit
    from src.db import BatchStatus, ProjectState
"""

from src.db.base import (
    # Engine and session factory
    AsyncSessionLocal,
    # Base classes
    Base,
    # Mixins
    CreatedAtMixin,
    PublicIdMixin,
    TimestampMixin,
    UUIDMixin,
    # Lifecycle utilities
    dispose_engine,
    engine,
    metadata,
    # Helpers
    new_public_id,
    utcnow,
)
from src.db.enums import (
    BatchStatus,
    FileType,
    ProcessStatType,
    ProjectState,
    StagedDataType,
)
from src.db.models import (
    AppLock,
    Batch,
    Entity,
    EntitySource,
    ProcessStat,
    Project,
    ProjectFile,
    Relationship,
    RelationshipSource,
    StagedRecord,
    TextUnit,
)
from src.db.session import get_db_context

__all__ = [
    # Base classes
    "Base",
    # Mixins
    "UUIDMixin",
    "PublicIdMixin",
    "TimestampMixin",
    "CreatedAtMixin",
    # Helpers
    "new_public_id",
    "utcnow",
    # Enums
    "BatchStatus",
    "ProjectState",
    "StagedDataType",
    "ProcessStatType",
    "FileType",
    # Models
    "Project",
    "ProjectFile",
    "Batch",
    "StagedRecord",
    "ProcessStat",
    "AppLock",
    "TextUnit",
    "Entity",
    "EntitySource",
    "Relationship",
    "RelationshipSource",
    # Engine and factory
    "engine",
    "AsyncSessionLocal",
    "metadata",
    # Session utilities
    "get_db_context",
    # Lifecycle
    "dispose_engine",
]
