"""
Workspace model.

A workspace is an isolated namespace: every agent, bead, message,
progress entry and merge request belongs to exactly one workspace.
"""

from sqlalchemy import String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional
import enum

from coordinator.core.clock import utcnow
from coordinator.models.base import Base, TimestampMixin


class WorkspaceStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class Workspace(Base, TimestampMixin):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    working_directory: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    status: Mapped[WorkspaceStatus] = mapped_column(
        SQLEnum(WorkspaceStatus), nullable=False, default=WorkspaceStatus.ACTIVE, index=True
    )
    mayor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Workspace {self.name} {self.status.value}>"
