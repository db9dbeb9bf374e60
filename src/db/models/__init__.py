"""
Database models for the project knowledge graph.

This package contains SQLAlchemy models for:
- Project / ProjectFile: Knowledge containers and their source files
- Batch: One slice of an ingestion run, with its status machine
- TextUnit: Citable chunks of file text
- Entity / EntitySource: KG nodes and their per-unit provenance
- Relationship / RelationshipSource: KG edges and their per-unit provenance
- StagedRecord: Preprocessing output waiting to be indexed
- ProcessStat: Duration samples for time prediction
- AppLock: Cross-process lease locks

Usage:
    from src.db.models import Batch, Entity, Relationship
"""

from src.db.models.app_lock import AppLock
from src.db.models.batch import Batch
from src.db.models.entity import Entity, EntitySource
from src.db.models.process_stat import ProcessStat
from src.db.models.project import Project, ProjectFile
from src.db.models.relationship import Relationship, RelationshipSource
from src.db.models.staging import StagedRecord
from src.db.models.text_unit import TextUnit

__all__ = [
    # Projects
    "Project",
    "ProjectFile",
    # Pipeline models
    "Batch",
    "StagedRecord",
    "ProcessStat",
    "AppLock",
    # Core KG models
    "TextUnit",
    "Entity",
    "EntitySource",
    "Relationship",
    "RelationshipSource",
]
