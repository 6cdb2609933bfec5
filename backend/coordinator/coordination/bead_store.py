"""
Bead store: units of work with exclusive claims and a test gate.

Enforces:
- At most one agent holds an in_progress claim on a bead
- A bead reaches done only while its latest test status is passed or skipped
- Mutations come from the assignee or the mayor
- Beads are never deleted, only closed as done or failed
"""

from typing import List, Optional
import uuid
import logging

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.coordination.agent_registry import AgentRegistry
from coordinator.coordination.errors import (
    AlreadyClaimedError,
    ConflictError,
    InvalidTransitionError,
    NotAssigneeError,
    NotFoundError,
    TestGateNotMetError,
    UnauthorizedError,
)
from coordinator.coordination.query import LazyQuery
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.clock import utcnow
from coordinator.models.agent import Agent, AgentRole
from coordinator.models.bead import (
    Bead,
    BeadStatus,
    TestStatus,
    CLAIMABLE_BEAD_STATUSES,
    CLOSED_BEAD_STATUSES,
    HELD_BEAD_STATUSES,
    PASSING_TEST_STATUSES,
)
from coordinator.observability.metrics import record_bead_closed, record_claim

logger = logging.getLogger(__name__)

BEAD_CREATOR_ROLES = frozenset({AgentRole.EXPLORER, AgentRole.MAYOR})

# setStatus edges outside of close()
STATUS_EDGES = {
    BeadStatus.IN_PROGRESS: frozenset({BeadStatus.BLOCKED, BeadStatus.PENDING}),
    BeadStatus.BLOCKED: frozenset({BeadStatus.IN_PROGRESS, BeadStatus.PENDING}),
}


class BeadStore:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.workspaces = WorkspaceManager(db)
        self.agents = AgentRegistry(db)

    async def _load(self, workspace_id: str, bead_id: str) -> Optional[Bead]:
        stmt = (
            select(Bead)
            .where(Bead.id == bead_id, Bead.workspace_id == workspace_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, workspace_id: str, bead_id: str) -> Bead:
        await self.workspaces.get(workspace_id)
        bead = await self._load(workspace_id, bead_id)
        if bead is None:
            raise NotFoundError(f"Bead {bead_id} not found in workspace {workspace_id}")
        return bead

    async def _compare_and_set(self, bead: Bead, *criteria, **values) -> bool:
        """Versioned conditional update; refreshes ``bead`` when applied."""
        stmt = (
            update(Bead)
            .where(Bead.id == bead.id, Bead.version == bead.version, *criteria)
            .values(version=bead.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            return False
        await self.db.refresh(bead)
        return True

    @staticmethod
    def _check_authority(bead: Bead, agent: Agent) -> None:
        if agent.is_terminated or not (agent.id == bead.assignee_id or agent.has_authority):
            raise NotAssigneeError(
                f"Agent {agent.name} is not the assignee of bead {bead.id}"
            )

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    async def create(
        self,
        workspace_id: str,
        title: str,
        created_by: str,
        description: str = "",
        priority: int = 5,
        blocked_by: Optional[List[str]] = None,
        test_command: Optional[str] = None,
    ) -> Bead:
        """Declare a new pending bead. Creators are explorers or the mayor."""
        workspace = await self.workspaces.require_active(workspace_id)
        creator = await self.agents.get(workspace_id, created_by)
        if creator.is_terminated or creator.role not in BEAD_CREATOR_ROLES:
            raise UnauthorizedError(
                f"Agent {creator.name} ({creator.role.value}) may not create beads"
            )

        blocked_by = list(blocked_by or [])
        for dependency_id in blocked_by:
            await self.get(workspace_id, dependency_id)

        now = utcnow()
        bead = Bead(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            title=title,
            description=description,
            priority=priority,
            created_by=creator.id,
            status=BeadStatus.PENDING,
            blocked_by=blocked_by,
            test_status=TestStatus.PENDING,
            test_command=test_command,
            test_runs=[],
            status_history=[],
            audit=[],
            created_at=now,
            updated_at=now,
        )
        bead.record_status(BeadStatus.PENDING, now)
        bead.record_audit("created", creator.id, now, {"title": title})
        self.db.add(bead)
        self.workspaces.touch(workspace)

        await self.db.commit()
        await self.db.refresh(bead)

        logger.info(f"Bead created: {bead.id} '{title}' by {creator.name}")
        return bead

    async def list(
        self,
        workspace_id: str,
        status: Optional[BeadStatus] = None,
        assignee_id: Optional[str] = None,
    ) -> LazyQuery[Bead]:
        await self.workspaces.get(workspace_id)

        stmt = select(Bead).where(Bead.workspace_id == workspace_id)
        if status is not None:
            stmt = stmt.where(Bead.status == status)
        if assignee_id is not None:
            stmt = stmt.where(Bead.assignee_id == assignee_id)
        stmt = stmt.order_by(Bead.priority.asc(), Bead.created_at.asc())

        return LazyQuery(self.db, stmt)

    async def next_available(self, workspace_id: str) -> Optional[Bead]:
        """Highest-priority unassigned pending bead whose dependencies are done."""
        candidates = await self.list(workspace_id, status=BeadStatus.PENDING)
        async for bead in candidates:
            if bead.assignee_id is not None:
                continue
            if await self._dependencies_done(bead):
                return bead
        return None

    async def _dependencies_done(self, bead: Bead) -> bool:
        if not bead.blocked_by:
            return True
        stmt = select(Bead.status).where(
            Bead.workspace_id == bead.workspace_id,
            Bead.id.in_(bead.blocked_by),
        )
        result = await self.db.execute(stmt)
        statuses = list(result.scalars().all())
        return len(statuses) == len(bead.blocked_by) and all(
            status == BeadStatus.DONE for status in statuses
        )

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim(self, workspace_id: str, bead_id: str, agent_id: str) -> Bead:
        """
        Take exclusive ownership of a bead.

        Claimable while pending or failed, or whenever no one holds it.
        Re-claiming a bead the agent already holds returns it unchanged.
        Exactly one of several concurrent claimers wins.

        Raises:
            AlreadyClaimedError: another agent holds the bead
            ConflictError: bead changed concurrently in some other way
            InvalidTransitionError: bead is done or the agent is terminated
        """
        workspace = await self.workspaces.require_active(workspace_id)
        agent = await self.agents.get(workspace_id, agent_id)
        if agent.is_terminated:
            raise InvalidTransitionError(f"Terminated agent {agent.name} cannot claim beads")

        bead = await self.get(workspace_id, bead_id)

        if bead.assignee_id == agent.id and bead.status in HELD_BEAD_STATUSES:
            record_claim("noop")
            return bead
        if bead.status == BeadStatus.DONE:
            raise InvalidTransitionError(f"Bead {bead.id} is already done")
        if bead.status not in CLAIMABLE_BEAD_STATUSES and bead.assignee_id is not None:
            record_claim("conflict")
            raise AlreadyClaimedError(f"Bead {bead.id} is already claimed by {bead.assignee_id}")

        previous_status = bead.status
        applied = await self._compare_and_set(
            bead,
            Bead.status != BeadStatus.DONE,
            or_(Bead.status.in_(CLAIMABLE_BEAD_STATUSES), Bead.assignee_id.is_(None)),
            status=BeadStatus.IN_PROGRESS,
            assignee_id=agent.id,
            test_status=TestStatus.PENDING,
            closed_at=None,
        )
        if not applied:
            await self.db.rollback()
            record_claim("conflict")
            current = await self._load(workspace_id, bead_id)
            if current is not None and current.assignee_id not in (None, agent_id) \
                    and current.status == BeadStatus.IN_PROGRESS:
                raise AlreadyClaimedError(
                    f"Bead {bead_id} is already claimed by {current.assignee_id}"
                )
            raise ConflictError(f"Bead {bead_id} was modified concurrently")

        now = utcnow()
        bead.record_status(BeadStatus.IN_PROGRESS, now)
        bead.record_audit("claimed", agent.id, now, {"from": previous_status.value})
        self.workspaces.touch(workspace)
        await self.db.commit()

        record_claim("won")
        logger.info(f"Bead {bead.id} claimed by {agent.name}")
        return bead

    # ------------------------------------------------------------------
    # Test gate
    # ------------------------------------------------------------------

    async def record_test(
        self,
        workspace_id: str,
        bead_id: str,
        agent_id: str,
        test_status: TestStatus,
        command: Optional[str] = None,
        output: Optional[str] = None,
    ) -> Bead:
        """
        Record a test run against a bead. Re-runs are appended; repeating the
        latest run unchanged is a no-op. Bead status is not affected.
        """
        workspace = await self.workspaces.require_active(workspace_id)
        agent = await self.agents.get(workspace_id, agent_id)
        bead = await self.get(workspace_id, bead_id)
        self._check_authority(bead, agent)

        if bead.test_runs:
            last = bead.test_runs[-1]
            if (last["status"] == test_status.value and last.get("command") == command
                    and last.get("output") == output and bead.test_status == test_status):
                return bead

        now = utcnow()
        run = {
            "status": test_status.value,
            "command": command,
            "output": output,
            "at": now.isoformat(),
            "by": agent.id,
        }
        applied = await self._compare_and_set(
            bead,
            test_status=test_status,
            test_command=command if command is not None else bead.test_command,
            test_output=output,
            test_run_at=now,
            test_runs=[*bead.test_runs, run],
        )
        if not applied:
            await self.db.rollback()
            raise ConflictError(f"Bead {bead_id} was modified concurrently")

        bead.record_audit("test_recorded", agent.id, now, {"status": test_status.value})
        self.workspaces.touch(workspace)
        await self.db.commit()

        logger.info(f"Bead {bead.id} test {test_status.value} recorded by {agent.name}")
        return bead

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def close(
        self,
        workspace_id: str,
        bead_id: str,
        agent_id: str,
        final_status: BeadStatus,
        authorized: bool = False,
        commit: bool = True,
    ) -> Bead:
        """
        Terminally close a bead as done or failed.

        ``authorized`` skips the assignee check for system callers such as
        the merge queue. With ``commit=False`` the caller owns the
        transaction and the rollback on failure.

        Raises:
            TestGateNotMetError: done without a passing or skipped test
            NotAssigneeError: caller is neither assignee nor mayor
            InvalidTransitionError: bead already closed with another status
            ConflictError: bead changed concurrently (e.g. a new test run)
        """
        if final_status not in CLOSED_BEAD_STATUSES:
            raise InvalidTransitionError(f"{final_status.value} is not a closing status")

        workspace = await self.workspaces.require_active(workspace_id)
        bead = await self.get(workspace_id, bead_id)
        if not authorized:
            agent = await self.agents.get(workspace_id, agent_id)
            self._check_authority(bead, agent)

        if bead.status == final_status:
            return bead
        if bead.is_closed:
            raise InvalidTransitionError(
                f"Bead {bead.id} is already closed as {bead.status.value}"
            )
        if final_status == BeadStatus.DONE and bead.test_status not in PASSING_TEST_STATUSES:
            raise TestGateNotMetError(
                f"Bead {bead.id} cannot be done with test status {bead.test_status.value}"
            )

        criteria = [Bead.status == bead.status]
        if final_status == BeadStatus.DONE:
            criteria.append(Bead.test_status.in_(PASSING_TEST_STATUSES))

        now = utcnow()
        if not await self._compare_and_set(bead, *criteria, status=final_status, closed_at=now):
            if commit:
                await self.db.rollback()
            raise ConflictError(f"Bead {bead_id} was modified concurrently")

        bead.record_status(final_status, now)
        bead.record_audit("closed", agent_id, now, {"status": final_status.value})
        self.workspaces.touch(workspace)
        if commit:
            await self.db.commit()

        record_bead_closed(final_status.value)
        logger.info(f"Bead {bead.id} closed as {final_status.value} by {agent_id}")
        return bead

    async def set_status(
        self,
        workspace_id: str,
        bead_id: str,
        agent_id: str,
        status: BeadStatus,
    ) -> Bead:
        """
        Move a held bead between in_progress and blocked, or release it back
        to pending. Closing statuses are delegated to close().
        """
        if status in CLOSED_BEAD_STATUSES:
            return await self.close(workspace_id, bead_id, agent_id, status)

        workspace = await self.workspaces.require_active(workspace_id)
        agent = await self.agents.get(workspace_id, agent_id)
        bead = await self.get(workspace_id, bead_id)
        self._check_authority(bead, agent)

        if bead.status == status:
            return bead
        if status not in STATUS_EDGES.get(bead.status, frozenset()):
            raise InvalidTransitionError(
                f"Bead {bead.id}: {bead.status.value} -> {status.value} is not allowed"
            )

        values = {"status": status}
        if status == BeadStatus.PENDING:
            values["assignee_id"] = None

        previous_status = bead.status
        if not await self._compare_and_set(bead, Bead.status == previous_status, **values):
            await self.db.rollback()
            raise ConflictError(f"Bead {bead_id} was modified concurrently")

        now = utcnow()
        bead.record_status(status, now)
        bead.record_audit(
            "released" if status == BeadStatus.PENDING else "status_changed",
            agent.id,
            now,
            {"from": previous_status.value, "to": status.value},
        )
        self.workspaces.touch(workspace)
        await self.db.commit()

        logger.info(f"Bead {bead.id}: {previous_status.value} -> {status.value} by {agent.name}")
        return bead
