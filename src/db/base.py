"""
SQLAlchemy Base Configuration and Mixins.

This module provides:
- Async engine and session factory configuration
- Base declarative class for all models
- Reusable mixins (UUID7 primary key, public citation id, timestamps)

All models in this project inherit from `Base` and use the provided
mixins for consistency.
"""

import secrets
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, MetaData, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from uuid6 import uuid7

from src.core.config import settings

# =============================================================================
# DATABASE ENGINE CONFIGURATION
# =============================================================================

# Naming convention for database constraints
# Keeps index and constraint names stable across Alembic environments
NAMING_CONVENTION: dict[str, str] = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

# Workers run several async sessions at once (lock renewal, staging, graph
# writes), so the pool is sized a bit above the API default.
engine = create_async_engine(
    settings.db_url,
    echo=settings.is_development,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=10,
)

# - expire_on_commit=False: objects stay readable after commit
# - autoflush=False: writes happen only on explicit flush/commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
)


# Length of generated public ids; the alphabet is [A-Za-z0-9_-] which is
# exactly the character set allowed inside citation markers.
PUBLIC_ID_BYTES = 12


def utcnow() -> datetime:
    """Timezone-aware current UTC time, comparable with timestamptz columns."""
    return datetime.now(timezone.utc)


def new_public_id() -> str:
    """Generate a URL-safe public identifier usable inside [[citation]] markers."""
    return secrets.token_urlsafe(PUBLIC_ID_BYTES)


# =============================================================================
# BASE CLASS
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Features:
    - AsyncAttrs: Enables `await` on lazy-loaded relationships
    - Custom metadata with naming conventions
    - Automatic __tablename__ generation from class name
    """

    metadata = metadata

    __name__: str

    @declared_attr.directive
    def __tablename__(cls) -> str:
        """
        Generate table name from class name.

        Converts CamelCase to snake_case and pluralizes:
        - Entity -> entities
        - TextUnit -> text_units
        - ProjectFile -> project_files
        """
        name = cls.__name__
        snake_case = "".join(
            f"_{char.lower()}" if char.isupper() and i > 0 else char.lower()
            for i, char in enumerate(name)
        )
        if snake_case.endswith("y"):
            return snake_case[:-1] + "ies"
        elif snake_case.endswith(("s", "ch", "sh", "x")):
            return snake_case + "es"
        else:
            return snake_case + "s"

    def to_dict(self) -> dict[str, Any]:
        """
        Convert model instance to dictionary.

        Handles special types:
        - UUID -> string
        - datetime -> ISO format string
        - Enum -> value
        - pgvector arrays are skipped
        """
        result = {}
        for column in self.__table__.columns:
            if column.name == "embedding":
                continue
            value = getattr(self, column.name)
            if isinstance(value, uuid.UUID):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            elif hasattr(value, "value"):   # Enum
                value = value.value
            result[column.name] = value
        return result


# =============================================================================
# MIXINS
# =============================================================================

class UUIDMixin:
    """
    Mixin that provides a UUID7 primary key.

    UUID7 values are time ordered, so "smallest id" also means "oldest row",
    which the dedupe pass relies on for picking canonical rows.
    """

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid7,
        sort_order=-100,
    )


class PublicIdMixin:
    """Mixin that provides a stable external identifier."""

    public_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        default=new_public_id,
        sort_order=-99,
    )


class TimestampMixin:
    """
    Mixin that provides created_at and updated_at timestamps.

    - created_at: Set once when row is inserted (server-side default)
    - updated_at: Updated automatically on every modification
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        sort_order=100,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        sort_order=101,
    )


class CreatedAtMixin:
    """
    Mixin that provides only created_at timestamp.

    Use this for immutable records:
    - Text units (never mutated)
    - Staged records (append-only)
    - Process-time samples
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        sort_order=100,
    )


# =============================================================================
# DATABASE LIFECYCLE UTILITIES
# =============================================================================

async def dispose_engine() -> None:
    """Dispose of the engine and close all connections."""
    await engine.dispose()
