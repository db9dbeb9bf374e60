"""Process-time samples used to predict batch durations."""

import uuid

from sqlalchemy import Enum, Index, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base, CreatedAtMixin, UUIDMixin
from src.db.enums import ProcessStatType


class ProcessStat(UUIDMixin, CreatedAtMixin, Base):
    """
    One measured run of a pipeline operation.

    amount is the work size (tokens) and duration_ms the wall time it took;
    the predictor averages duration per token over recent samples.
    """

    stat_type: Mapped[ProcessStatType] = mapped_column(
        Enum(
            ProcessStatType,
            name="processstattype",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )

    project_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False)


Index("ix_process_stats_type_created", ProcessStat.stat_type, ProcessStat.created_at.desc())
