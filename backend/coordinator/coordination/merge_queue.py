"""
Merge queue with a review and build gate.

Enforces:
- merged only while review is approved and build has passed, checked in
  the same conditional update that sets the status
- The referenced bead is closed as done in the same transaction
- Merged and rejected requests are terminal

The queue performs no time-based actions of its own; stale requests are
surfaced by the patrol.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
import uuid
import logging

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.coordination.agent_registry import AgentRegistry
from coordinator.coordination.bead_store import BeadStore
from coordinator.coordination.errors import (
    CoordinationError,
    ConflictError,
    InvalidTransitionError,
    NotAReviewerError,
    NotFoundError,
    UnauthorizedError,
)
from coordinator.coordination.message_bus import MessageBus
from coordinator.coordination.paths import path_overlaps
from coordinator.coordination.query import LazyQuery
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.clock import utcnow
from coordinator.models.agent import Agent, AgentRole, AgentState
from coordinator.models.bead import BeadStatus
from coordinator.models.coordination import MessageType
from coordinator.models.merge_queue import (
    MergeRequest,
    MergeCondition,
    MergeStatus,
    ReviewStatus,
    BuildStatus,
    OPEN_MERGE_STATUSES,
)
from coordinator.observability.metrics import record_merge_attempt

logger = logging.getLogger(__name__)

MERGE_QUEUE_SENDER = "merge-queue"

SUBMITTER_ROLES = frozenset({AgentRole.SPECIALIST, AgentRole.REFINERY})
REVIEWER_ROLES = frozenset({AgentRole.REVIEWER, AgentRole.MAYOR})
REJECTOR_ROLES = frozenset({AgentRole.REVIEWER, AgentRole.REFINERY, AgentRole.MAYOR})
STALL_ROLES = frozenset({AgentRole.REFINERY, AgentRole.MAYOR})


@dataclass
class MergeAttempt:
    """Outcome of try_merge. ``unmet`` lists the gates still open."""
    merge_request: MergeRequest
    merged: bool
    unmet: List[MergeCondition] = field(default_factory=list)


class MergeQueue:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.workspaces = WorkspaceManager(db)
        self.agents = AgentRegistry(db)
        self.beads = BeadStore(db)
        self.bus = MessageBus(db)

    async def _load(self, workspace_id: str, mr_id: str) -> Optional[MergeRequest]:
        stmt = (
            select(MergeRequest)
            .where(MergeRequest.id == mr_id, MergeRequest.workspace_id == workspace_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, workspace_id: str, mr_id: str) -> MergeRequest:
        await self.workspaces.get(workspace_id)
        merge_request = await self._load(workspace_id, mr_id)
        if merge_request is None:
            raise NotFoundError(f"Merge request {mr_id} not found in workspace {workspace_id}")
        return merge_request

    async def _actor(self, workspace_id: str, actor_id: str, roles, action: str,
                     error=UnauthorizedError) -> Agent:
        actor = await self.agents.get(workspace_id, actor_id)
        if actor.is_terminated or actor.role not in roles:
            raise error(f"Agent {actor.name} ({actor.role.value}) may not {action}")
        return actor

    async def _compare_and_set(self, merge_request: MergeRequest, *criteria, **values) -> bool:
        now = utcnow()
        stmt = (
            update(MergeRequest)
            .where(
                MergeRequest.id == merge_request.id,
                MergeRequest.version == merge_request.version,
                *criteria,
            )
            .values(
                version=merge_request.version + 1,
                updated_at=now,
                last_activity_at=now,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            return False
        await self.db.refresh(merge_request)
        return True

    async def _open_requests(self, workspace_id: str) -> List[MergeRequest]:
        stmt = (
            select(MergeRequest)
            .where(
                MergeRequest.workspace_id == workspace_id,
                MergeRequest.merge_status.in_(OPEN_MERGE_STATUSES),
            )
            .order_by(MergeRequest.position.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _drop_conflict_references(self, merge_request: MergeRequest) -> None:
        for other in await self._open_requests(merge_request.workspace_id):
            if merge_request.id in other.conflicts_with:
                other.conflicts_with = [
                    mr_id for mr_id in other.conflicts_with if mr_id != merge_request.id
                ]

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        workspace_id: str,
        agent_id: str,
        branch_ref: str,
        title: str,
        files_changed: List[str],
        description: str = "",
        target_branch: str = "main",
        bead_id: Optional[str] = None,
    ) -> MergeRequest:
        """
        Queue completed work for review and build.

        Overlapping files with another open request are recorded on both
        sides and reported to the submitter as a blocker.
        """
        workspace = await self.workspaces.require_active(workspace_id)
        agent = await self._actor(workspace_id, agent_id, SUBMITTER_ROLES, "submit merge requests")
        if bead_id is not None:
            await self.beads.get(workspace_id, bead_id)

        open_requests = await self._open_requests(workspace_id)
        conflicts = [
            other for other in open_requests
            if path_overlaps(files_changed, other.files_changed)
        ]

        result = await self.db.execute(
            select(func.max(MergeRequest.position)).where(MergeRequest.workspace_id == workspace_id)
        )
        position = (result.scalar_one_or_none() or 0) + 1

        now = utcnow()
        merge_request = MergeRequest(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            agent_id=agent.id,
            branch_ref=branch_ref,
            target_branch=target_branch,
            title=title,
            description=description,
            files_changed=list(files_changed),
            bead_id=bead_id,
            position=position,
            conflicts_with=[other.id for other in conflicts],
            review_status=ReviewStatus.PENDING,
            build_status=BuildStatus.PENDING,
            merge_status=MergeStatus.QUEUED,
            last_activity_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(merge_request)

        for other in conflicts:
            other.conflicts_with = [*other.conflicts_with, merge_request.id]

        if conflicts:
            titles = ", ".join(f"'{other.title}'" for other in conflicts)
            await self.bus.send(
                workspace_id,
                MERGE_QUEUE_SENDER,
                agent.id,
                MessageType.BLOCKER,
                f"Merge request '{title}' overlaps files with open request(s) {titles}",
                metadata={
                    "merge_request_id": merge_request.id,
                    "conflicts_with": merge_request.conflicts_with,
                },
                commit=False,
            )
            logger.warning(f"Merge request '{title}' conflicts with {len(conflicts)} open request(s)")

        self.workspaces.touch(workspace)
        await self.db.commit()
        await self.db.refresh(merge_request)

        logger.info(f"Merge request submitted: {merge_request.id} '{title}' by {agent.name} (#{position})")
        return merge_request

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    async def set_review(
        self,
        workspace_id: str,
        mr_id: str,
        reviewer_id: str,
        decision: ReviewStatus,
        comments: Optional[str] = None,
    ) -> MergeRequest:
        """Record a review decision. Reviewers and the mayor only."""
        workspace = await self.workspaces.require_active(workspace_id)
        reviewer = await self._actor(
            workspace_id, reviewer_id, REVIEWER_ROLES, "review merge requests",
            error=NotAReviewerError,
        )
        merge_request = await self.get(workspace_id, mr_id)

        if decision == ReviewStatus.PENDING:
            raise InvalidTransitionError("A review decision must approve or request changes")
        if not merge_request.is_open:
            raise InvalidTransitionError(
                f"Merge request {mr_id} is {merge_request.merge_status.value}"
            )

        applied = await self._compare_and_set(
            merge_request,
            MergeRequest.merge_status.in_(OPEN_MERGE_STATUSES),
            review_status=decision,
            reviewed_by=reviewer.id,
            review_comments=comments,
            reviewed_at=utcnow(),
            merge_status=MergeStatus.QUEUED,
        )
        if not applied:
            await self.db.rollback()
            raise ConflictError(f"Merge request {mr_id} was modified concurrently")

        self.workspaces.touch(workspace)
        await self.db.commit()

        logger.info(f"Merge request {mr_id} review: {decision.value} by {reviewer.name}")
        return merge_request

    async def set_build(
        self,
        workspace_id: str,
        mr_id: str,
        status: BuildStatus,
        output: Optional[str] = None,
    ) -> MergeRequest:
        """Record the external build pipeline's result."""
        workspace = await self.workspaces.require_active(workspace_id)
        merge_request = await self.get(workspace_id, mr_id)

        if not merge_request.is_open:
            raise InvalidTransitionError(
                f"Merge request {mr_id} is {merge_request.merge_status.value}"
            )

        applied = await self._compare_and_set(
            merge_request,
            MergeRequest.merge_status.in_(OPEN_MERGE_STATUSES),
            build_status=status,
            build_output=output,
            build_checked_at=utcnow(),
            merge_status=MergeStatus.QUEUED,
        )
        if not applied:
            await self.db.rollback()
            raise ConflictError(f"Merge request {mr_id} was modified concurrently")

        self.workspaces.touch(workspace)
        await self.db.commit()

        logger.info(f"Merge request {mr_id} build: {status.value}")
        return merge_request

    # ------------------------------------------------------------------
    # Merge / reject / stall
    # ------------------------------------------------------------------

    async def try_merge(self, workspace_id: str, mr_id: str) -> MergeAttempt:
        """
        Merge if review is approved and build has passed.

        An unmet gate leaves the request untouched and is reported in the
        result. A referenced bead is closed as done in the same transaction.

        Raises:
            InvalidTransitionError: request already merged or rejected
            TestGateNotMetError: the referenced bead's tests have not passed
            ConflictError: a gate changed while merging
        """
        workspace = await self.workspaces.require_active(workspace_id)
        merge_request = await self.get(workspace_id, mr_id)

        if not merge_request.is_open:
            raise InvalidTransitionError(
                f"Merge request {mr_id} is {merge_request.merge_status.value}"
            )

        unmet = merge_request.unmet_conditions()
        if unmet:
            record_merge_attempt("awaiting")
            logger.info(
                f"Merge request {mr_id} not merged: {', '.join(c.value for c in unmet)}"
            )
            return MergeAttempt(merge_request=merge_request, merged=False, unmet=unmet)

        try:
            if merge_request.bead_id is not None:
                await self.beads.close(
                    workspace_id,
                    merge_request.bead_id,
                    merge_request.agent_id,
                    BeadStatus.DONE,
                    authorized=True,
                    commit=False,
                )

            applied = await self._compare_and_set(
                merge_request,
                MergeRequest.merge_status.in_(OPEN_MERGE_STATUSES),
                MergeRequest.review_status == ReviewStatus.APPROVED,
                MergeRequest.build_status == BuildStatus.PASSED,
                merge_status=MergeStatus.MERGED,
                merged_at=utcnow(),
            )
            if not applied:
                raise ConflictError(f"Merge request {mr_id} was modified concurrently")
        except CoordinationError:
            await self.db.rollback()
            record_merge_attempt("gate_failed")
            raise

        await self._drop_conflict_references(merge_request)
        await self._notify_rebase(workspace_id, merge_request)

        self.workspaces.touch(workspace)
        await self.db.commit()

        record_merge_attempt("merged")
        logger.info(f"Merge request {mr_id} merged into {merge_request.target_branch}")
        return MergeAttempt(merge_request=merge_request, merged=True)

    async def _notify_rebase(self, workspace_id: str, merge_request: MergeRequest) -> None:
        """Ask other working agents with a working copy to rebase."""
        agents = await self.agents.list_by_workspace(workspace_id, state=AgentState.WORKING)
        for agent in await agents.all():
            if agent.id == merge_request.agent_id or not agent.branch_ref:
                continue
            await self.bus.send(
                workspace_id,
                MERGE_QUEUE_SENDER,
                agent.id,
                MessageType.STATUS,
                f"'{merge_request.title}' merged into {merge_request.target_branch}; "
                f"rebase {agent.branch_ref}",
                metadata={"merge_request_id": merge_request.id, "action": "rebase"},
                commit=False,
            )

    async def reject(
        self,
        workspace_id: str,
        mr_id: str,
        actor_id: str,
        reason: str,
    ) -> MergeRequest:
        workspace = await self.workspaces.require_active(workspace_id)
        actor = await self._actor(workspace_id, actor_id, REJECTOR_ROLES, "reject merge requests")
        merge_request = await self.get(workspace_id, mr_id)

        if not merge_request.is_open:
            raise InvalidTransitionError(
                f"Merge request {mr_id} is {merge_request.merge_status.value}"
            )

        applied = await self._compare_and_set(
            merge_request,
            MergeRequest.merge_status.in_(OPEN_MERGE_STATUSES),
            merge_status=MergeStatus.REJECTED,
            rejection_reason=reason,
        )
        if not applied:
            await self.db.rollback()
            raise ConflictError(f"Merge request {mr_id} was modified concurrently")

        await self._drop_conflict_references(merge_request)
        self.workspaces.touch(workspace)
        await self.db.commit()

        logger.info(f"Merge request {mr_id} rejected by {actor.name}: {reason}")
        return merge_request

    async def mark_stalled(self, workspace_id: str, mr_id: str, actor_id: str) -> MergeRequest:
        workspace = await self.workspaces.require_active(workspace_id)
        actor = await self._actor(workspace_id, actor_id, STALL_ROLES, "mark merge requests stalled")
        merge_request = await self.get(workspace_id, mr_id)

        if merge_request.merge_status == MergeStatus.STALLED:
            return merge_request
        if merge_request.merge_status != MergeStatus.QUEUED:
            raise InvalidTransitionError(
                f"Merge request {mr_id} is {merge_request.merge_status.value}"
            )

        applied = await self._compare_and_set(
            merge_request,
            MergeRequest.merge_status == MergeStatus.QUEUED,
            merge_status=MergeStatus.STALLED,
        )
        if not applied:
            await self.db.rollback()
            raise ConflictError(f"Merge request {mr_id} was modified concurrently")

        self.workspaces.touch(workspace)
        await self.db.commit()

        logger.info(f"Merge request {mr_id} marked stalled by {actor.name}")
        return merge_request

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list(
        self,
        workspace_id: str,
        merge_status: Optional[MergeStatus] = None,
    ) -> LazyQuery[MergeRequest]:
        await self.workspaces.get(workspace_id)

        stmt = select(MergeRequest).where(MergeRequest.workspace_id == workspace_id)
        if merge_status is not None:
            stmt = stmt.where(MergeRequest.merge_status == merge_status)
        stmt = stmt.order_by(MergeRequest.position.asc())

        return LazyQuery(self.db, stmt)

    async def stale(
        self,
        workspace_id: str,
        now: datetime,
        threshold_seconds: float,
    ) -> List[MergeRequest]:
        """Queued requests with no activity for longer than the threshold."""
        cutoff = now - timedelta(seconds=threshold_seconds)
        stmt = (
            select(MergeRequest)
            .where(
                MergeRequest.workspace_id == workspace_id,
                MergeRequest.merge_status == MergeStatus.QUEUED,
                MergeRequest.last_activity_at < cutoff,
            )
            .order_by(MergeRequest.position.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
