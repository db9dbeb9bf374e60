"""
Lease table backing the cross-process advisory locks.

A row means "locked_by owns lock_key until expires_at". Owners renew the
lease while they work; an expired row can be taken over by anyone.
"""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base


class AppLock(Base):
    """A held lease on a named lock."""

    __tablename__ = "app_locks"

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    locked_by: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<AppLock(key={self.lock_key!r}, owner={self.locked_by}, expires={self.expires_at})>"
