"""Learned process-time prediction from recent duration samples."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.db.enums import ProcessStatType
from src.db.models import ProcessStat


def predict_duration_ms(
    samples: list[tuple[int, int]],
    amount: int,
    default_ms_per_token: float,
) -> int:
    """
    Predict the duration of `amount` tokens of work.

    `samples` are (amount, duration_ms) pairs; the rate is the mean of their
    per-token durations. Samples with a zero amount carry no rate and are
    ignored.
    """
    rates = [duration / sample_amount for sample_amount, duration in samples if sample_amount > 0]
    rate = sum(rates) / len(rates) if rates else default_ms_per_token
    return int(round(rate * max(amount, 0)))


class ProcessTimeService:
    """Records and predicts pipeline durations per operation type."""

    def __init__(self, db: AsyncSession, window: int | None = None):
        self.db = db
        self.window = window or settings.process_time_samples

    async def add(
        self,
        stat_type: ProcessStatType,
        amount: int,
        duration_ms: int,
        project_id: uuid.UUID | None = None,
    ) -> None:
        self.db.add(
            ProcessStat(
                stat_type=stat_type,
                amount=max(amount, 0),
                duration_ms=max(duration_ms, 0),
                project_id=project_id,
            )
        )

    async def predict(self, stat_type: ProcessStatType, amount: int) -> int:
        result = await self.db.execute(
            select(ProcessStat.amount, ProcessStat.duration_ms)
            .where(ProcessStat.stat_type == stat_type)
            .order_by(ProcessStat.created_at.desc())
            .limit(self.window)
        )
        samples = [(row.amount, row.duration_ms) for row in result.all()]
        return predict_duration_ms(samples, amount, settings.default_ms_per_token)

    # Named entry points for file processing
    async def add_file_processing_time(self, amount: int, duration_ms: int, project_id: uuid.UUID | None = None) -> None:
        await self.add(ProcessStatType.FILE_PROCESSING, amount, duration_ms, project_id)

    async def predict_file_processing_time(self, amount: int) -> int:
        return await self.predict(ProcessStatType.FILE_PROCESSING, amount)
