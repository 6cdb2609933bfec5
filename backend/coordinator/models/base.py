from datetime import datetime

from sqlalchemy import DateTime, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from coordinator.core.clock import utcnow


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """Adds created_at / updated_at columns (naive UTC)."""

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class VersionedMixin:
    """Version counter used for compare-and-set updates."""

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
