"""
Merge queue models.

A merge request lands only when review and build gates hold at the same time.
"""

from sqlalchemy import String, Integer, Text, JSON, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional, List
import enum

from coordinator.core.clock import utcnow
from coordinator.models.base import Base, TimestampMixin, VersionedMixin


class ReviewStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class BuildStatus(str, enum.Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class MergeStatus(str, enum.Enum):
    QUEUED = "queued"
    MERGED = "merged"
    REJECTED = "rejected"
    STALLED = "stalled"


class MergeCondition(str, enum.Enum):
    """Unmet gate reported by an unsuccessful merge attempt."""
    AWAITING_REVIEW = "AwaitingReview"
    AWAITING_BUILD = "AwaitingBuild"


OPEN_MERGE_STATUSES = frozenset({MergeStatus.QUEUED, MergeStatus.STALLED})


class MergeRequest(Base, TimestampMixin, VersionedMixin):
    __tablename__ = "merge_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    branch_ref: Mapped[str] = mapped_column(String(500), nullable=False)
    target_branch: Mapped[str] = mapped_column(String(200), nullable=False, default="main")
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    files_changed: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    bead_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conflicts_with: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Review gate
    review_status: Mapped[ReviewStatus] = mapped_column(
        SQLEnum(ReviewStatus), nullable=False, default=ReviewStatus.PENDING
    )
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    review_comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Build gate (set by the external build pipeline)
    build_status: Mapped[BuildStatus] = mapped_column(
        SQLEnum(BuildStatus), nullable=False, default=BuildStatus.PENDING
    )
    build_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    build_checked_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    merge_status: Mapped[MergeStatus] = mapped_column(
        SQLEnum(MergeStatus), nullable=False, default=MergeStatus.QUEUED, index=True
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    merged_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    # Last change of any gate or status; the patrol's staleness reference
    last_activity_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_merge_request_workspace_status", "workspace_id", "merge_status"),
    )

    @property
    def is_open(self) -> bool:
        return self.merge_status in OPEN_MERGE_STATUSES

    def unmet_conditions(self) -> list[MergeCondition]:
        unmet = []
        if self.review_status != ReviewStatus.APPROVED:
            unmet.append(MergeCondition.AWAITING_REVIEW)
        if self.build_status != BuildStatus.PASSED:
            unmet.append(MergeCondition.AWAITING_BUILD)
        return unmet

    def __repr__(self) -> str:
        return f"<MergeRequest {self.id} {self.merge_status.value}>"
