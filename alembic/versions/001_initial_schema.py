"""Initial schema - create all graph pipeline tables.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

This migration creates the complete schema:
- projects / project_files: graphs and their source files
- batches: ingestion runs split into batches with a status machine
- extraction_staging: checkpointed extraction output between stages
- process_stats: timing samples for duration estimates
- app_locks: lease locks shared across API and workers
- text_units, entities, relationships and their *_sources provenance tables

It also creates:
- the vector and pg_trgm extensions
- ENUM types for batch status, project state, staged data, stats and file types
- All indexes for query performance
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

from src.core.config import settings

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

EMBEDDING_DIMENSIONS = settings.embedding_dimensions


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    """Create extensions, enums, tables and indexes."""

    # ==========================================================================
    # Extensions
    # ==========================================================================
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    # ==========================================================================
    # Create ENUM types
    # ==========================================================================
    batch_status_enum = postgresql.ENUM(
        "pending",
        "preprocessing",
        "preprocessed",
        "indexing",
        "completed",
        "failed",
        name="batchstatus",
        create_type=False,
    )
    batch_status_enum.create(op.get_bind(), checkfirst=True)

    project_state_enum = postgresql.ENUM("create", "update", "ready", name="projectstate", create_type=False)
    project_state_enum.create(op.get_bind(), checkfirst=True)

    staged_data_type_enum = postgresql.ENUM(
        "unit", "entity", "relationship", name="stageddatatype", create_type=False
    )
    staged_data_type_enum.create(op.get_bind(), checkfirst=True)

    process_stat_type_enum = postgresql.ENUM(
        "file_processing", "graph_creation", "graph_update", name="processstattype", create_type=False
    )
    process_stat_type_enum.create(op.get_bind(), checkfirst=True)

    file_type_enum = postgresql.ENUM("text", "csv", "image", "file", name="filetype", create_type=False)
    file_type_enum.create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Create tables
    # ==========================================================================

    # --------------------------------------------------------------------------
    # projects table
    # --------------------------------------------------------------------------
    op.create_table(
        "projects",
        sa.Column("id", sa.UUID(), nullable=False, comment="UUID7 primary key"),
        sa.Column("name", sa.String(length=255), nullable=False, comment="Display name"),
        sa.Column("state", project_state_enum, nullable=False, comment="Graph lifecycle state"),
        sa.Column(
            "entity_types",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=True,
            comment="Custom entity types used as extraction hints",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_projects"),
    )

    # --------------------------------------------------------------------------
    # project_files table
    # --------------------------------------------------------------------------
    op.create_table(
        "project_files",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False, comment="Key in object storage"),
        sa.Column("file_type", file_type_enum, nullable=False),
        sa.Column("mime_type", sa.String(length=255), nullable=True),
        sa.Column(
            "size_bytes", sa.BigInteger(), nullable=False, server_default="0", comment="Size of the stored file in bytes"
        ),
        sa.Column("token_count", sa.Integer(), nullable=False, comment="Token count of the extracted text"),
        sa.Column("metadata", sa.Text(), nullable=True, comment="Document metadata (type, date, summary)"),
        sa.Column("deleted", sa.Boolean(), nullable=False, comment="Soft-delete flag"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.id"], name="fk_project_files_project_id_projects", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_project_files"),
    )
    op.create_index("ix_project_files_project_id", "project_files", ["project_id"])
    op.create_index("ix_project_files_project_active", "project_files", ["project_id", "deleted"])

    # --------------------------------------------------------------------------
    # batches table
    # --------------------------------------------------------------------------
    op.create_table(
        "batches",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("correlation_id", sa.String(length=64), nullable=False, comment="Ingestion run identifier"),
        sa.Column("batch_id", sa.Integer(), nullable=False, comment="Position within the run"),
        sa.Column("total_batches", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=False),
        sa.Column("status", batch_status_enum, nullable=False),
        sa.Column(
            "file_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            comment="ProjectFile ids (as strings) processed by this batch",
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("estimated_duration_ms", sa.Integer(), nullable=False),
        sa.Column("actual_duration_ms", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.id"], name="fk_batches_project_id_projects", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_batches"),
        sa.UniqueConstraint("correlation_id", "batch_id", name="uq_batches_correlation_batch"),
    )
    op.create_index("ix_batches_correlation_id", "batches", ["correlation_id"])
    op.create_index("ix_batches_project_id", "batches", ["project_id"])
    op.create_index("ix_batches_status", "batches", ["status"])
    op.create_index("ix_batches_status_started", "batches", ["status", "started_at"])
    op.create_index("ix_batches_project_created", "batches", ["project_id", sa.text("created_at DESC")])

    # --------------------------------------------------------------------------
    # extraction_staging table
    # --------------------------------------------------------------------------
    op.create_table(
        "extraction_staging",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=True), nullable=False),
        sa.Column("correlation_id", sa.String(length=64), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=False),
        sa.Column("data_type", staged_data_type_enum, nullable=False),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_extraction_staging"),
    )
    op.create_index("ix_extraction_staging_project_id", "extraction_staging", ["project_id"])
    op.create_index(
        "ix_extraction_staging_lookup",
        "extraction_staging",
        ["correlation_id", "batch_id", "data_type", "id"],
    )
    op.create_index("ix_extraction_staging_created_at", "extraction_staging", ["created_at"])

    # --------------------------------------------------------------------------
    # process_stats table
    # --------------------------------------------------------------------------
    op.create_table(
        "process_stats",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("stat_type", process_stat_type_enum, nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_process_stats"),
    )
    op.create_index("ix_process_stats_type_created", "process_stats", ["stat_type", sa.text("created_at DESC")])

    # --------------------------------------------------------------------------
    # app_locks table
    # --------------------------------------------------------------------------
    op.create_table(
        "app_locks",
        sa.Column("lock_key", sa.String(length=255), nullable=False),
        sa.Column("locked_by", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lock_key", name="pk_app_locks"),
    )

    # --------------------------------------------------------------------------
    # text_units table
    # --------------------------------------------------------------------------
    op.create_table(
        "text_units",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("public_id", sa.String(length=32), nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=False),
        sa.Column("project_file_id", sa.UUID(), nullable=False),
        sa.Column("unit_index", sa.Integer(), nullable=False),
        sa.Column("start_offset", sa.Integer(), nullable=False),
        sa.Column("end_offset", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.id"], name="fk_text_units_project_id_projects", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["project_file_id"],
            ["project_files.id"],
            name="fk_text_units_project_file_id_project_files",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_text_units"),
        sa.UniqueConstraint("public_id", name="uq_text_units_public_id"),
    )
    op.create_index("ix_text_units_project_id", "text_units", ["project_id"])
    op.create_index("ix_text_units_project_file_id", "text_units", ["project_file_id"])
    op.create_index("ix_text_units_file_order", "text_units", ["project_file_id", "unit_index"])

    # --------------------------------------------------------------------------
    # entities table
    # --------------------------------------------------------------------------
    op.create_table(
        "entities",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("public_id", sa.String(length=32), nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.id"], name="fk_entities_project_id_projects", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_entities"),
        sa.UniqueConstraint("public_id", name="uq_entities_public_id"),
    )
    op.create_index("ix_entities_project_id", "entities", ["project_id"])
    op.create_index("ix_entities_type", "entities", ["type"])
    op.create_index("uq_entities_project_name_type", "entities", ["project_id", "name", "type"], unique=True)
    op.create_index(
        "ix_entities_name_trgm",
        "entities",
        ["name"],
        postgresql_using="gin",
        postgresql_ops={"name": "gin_trgm_ops"},
    )

    # --------------------------------------------------------------------------
    # entity_sources table
    # --------------------------------------------------------------------------
    op.create_table(
        "entity_sources",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("text_unit_id", sa.UUID(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["entity_id"], ["entities.id"], name="fk_entity_sources_entity_id_entities", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["text_unit_id"],
            ["text_units.id"],
            name="fk_entity_sources_text_unit_id_text_units",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_entity_sources"),
    )
    op.create_index("ix_entity_sources_entity_id", "entity_sources", ["entity_id"])
    op.create_index("ix_entity_sources_text_unit_id", "entity_sources", ["text_unit_id"])

    # --------------------------------------------------------------------------
    # relationships table
    # --------------------------------------------------------------------------
    op.create_table(
        "relationships",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("public_id", sa.String(length=32), nullable=False),
        sa.Column("project_id", sa.UUID(), nullable=False),
        sa.Column("source_id", sa.UUID(), nullable=False),
        sa.Column("target_id", sa.UUID(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("rank", sa.Float(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["project_id"], ["projects.id"], name="fk_relationships_project_id_projects", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["source_id"], ["entities.id"], name="fk_relationships_source_id_entities", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["target_id"], ["entities.id"], name="fk_relationships_target_id_entities", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_relationships"),
        sa.UniqueConstraint("public_id", name="uq_relationships_public_id"),
    )
    op.create_index("ix_relationships_project_id", "relationships", ["project_id"])
    op.create_index("ix_relationships_source_id", "relationships", ["source_id"])
    op.create_index("ix_relationships_target_id", "relationships", ["target_id"])
    op.create_index("ix_relationships_endpoints", "relationships", ["project_id", "source_id", "target_id"])

    # --------------------------------------------------------------------------
    # relationship_sources table
    # --------------------------------------------------------------------------
    op.create_table(
        "relationship_sources",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("relationship_id", sa.UUID(), nullable=False),
        sa.Column("text_unit_id", sa.UUID(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("rank", sa.Float(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["relationship_id"],
            ["relationships.id"],
            name="fk_relationship_sources_relationship_id_relationships",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["text_unit_id"],
            ["text_units.id"],
            name="fk_relationship_sources_text_unit_id_text_units",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_relationship_sources"),
    )
    op.create_index("ix_relationship_sources_relationship_id", "relationship_sources", ["relationship_id"])
    op.create_index("ix_relationship_sources_text_unit_id", "relationship_sources", ["text_unit_id"])


def downgrade() -> None:
    """Drop all tables and enums in reverse order."""

    # Drop tables in reverse dependency order
    op.drop_table("relationship_sources")
    op.drop_table("relationships")
    op.drop_table("entity_sources")
    op.drop_table("entities")
    op.drop_table("text_units")
    op.drop_table("app_locks")
    op.drop_table("process_stats")
    op.drop_table("extraction_staging")
    op.drop_table("batches")
    op.drop_table("project_files")
    op.drop_table("projects")

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS filetype")
    op.execute("DROP TYPE IF EXISTS processstattype")
    op.execute("DROP TYPE IF EXISTS stageddatatype")
    op.execute("DROP TYPE IF EXISTS projectstate")
    op.execute("DROP TYPE IF EXISTS batchstatus")
