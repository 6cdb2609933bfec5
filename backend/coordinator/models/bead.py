"""
Bead model - a discrete, independently assignable unit of declared work.
"""

from sqlalchemy import String, Integer, Text, JSON, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional, List, Dict, Any
import enum

from coordinator.models.base import Base, TimestampMixin, VersionedMixin


class BeadStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


class TestStatus(str, enum.Enum):
    __test__ = False  # not a pytest test class

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


CLOSED_BEAD_STATUSES = frozenset({BeadStatus.DONE, BeadStatus.FAILED})
CLAIMABLE_BEAD_STATUSES = frozenset({BeadStatus.PENDING, BeadStatus.FAILED})
HELD_BEAD_STATUSES = frozenset({BeadStatus.IN_PROGRESS, BeadStatus.BLOCKED})
PASSING_TEST_STATUSES = frozenset({TestStatus.PASSED, TestStatus.SKIPPED})


class Bead(Base, TimestampMixin, VersionedMixin):
    __tablename__ = "beads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    status: Mapped[BeadStatus] = mapped_column(
        SQLEnum(BeadStatus), nullable=False, default=BeadStatus.PENDING, index=True
    )
    assignee_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    blocked_by: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Test gate
    test_status: Mapped[TestStatus] = mapped_column(
        SQLEnum(TestStatus), nullable=False, default=TestStatus.PENDING
    )
    test_command: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    test_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    test_run_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    test_runs: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # [{"status": ..., "at": iso}, ...]
    status_history: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    # [{"time": iso, "action": ..., "by": ..., "details": {...}}, ...]
    audit: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    closed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_bead_workspace_status", "workspace_id", "status"),
    )

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_BEAD_STATUSES

    # JSON columns are reassigned, never mutated in place, so changes are flushed

    @staticmethod
    def status_entry(status: BeadStatus, at: datetime) -> Dict[str, Any]:
        return {"status": status.value, "at": at.isoformat()}

    @staticmethod
    def audit_entry(
        action: str,
        by: Optional[str],
        at: datetime,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {"time": at.isoformat(), "action": action, "by": by, "details": details or {}}

    def record_status(self, status: BeadStatus, at: datetime) -> None:
        self.status_history = [*self.status_history, self.status_entry(status, at)]

    def record_audit(
        self,
        action: str,
        by: Optional[str],
        at: datetime,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit = [*self.audit, self.audit_entry(action, by, at, details)]

    def __repr__(self) -> str:
        return f"<Bead {self.id} {self.status.value} assignee={self.assignee_id}>"
