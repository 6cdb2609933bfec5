"""
Append-only progress ledger.

Each agent reports timestamped snapshots; the patrol reads the latest
entry per agent as its liveness signal, and the full history is kept.
"""

from typing import Dict, List, Optional
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.coordination.agent_registry import AgentRegistry
from coordinator.coordination.errors import InvalidTransitionError
from coordinator.coordination.query import LazyQuery
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.clock import utcnow
from coordinator.models.agent import AgentState
from coordinator.models.coordination import ProgressEntry

logger = logging.getLogger(__name__)


class ProgressLedger:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.workspaces = WorkspaceManager(db)
        self.agents = AgentRegistry(db)

    async def append(
        self,
        workspace_id: str,
        agent_id: str,
        status: str,
        completed: Optional[List[str]] = None,
        next_steps: Optional[List[str]] = None,
        artifacts: Optional[List[str]] = None,
        blockers: Optional[List[str]] = None,
    ) -> ProgressEntry:
        """
        Record a progress snapshot for an agent.

        The first entry from a spawned agent moves it to working.
        """
        workspace = await self.workspaces.require_active(workspace_id)
        agent = await self.agents.get(workspace_id, agent_id)
        if agent.is_terminated:
            raise InvalidTransitionError(f"Terminated agent {agent.name} cannot report progress")

        entry = ProgressEntry(
            workspace_id=workspace_id,
            agent_id=agent.id,
            agent_name=agent.name,
            status=status,
            completed=list(completed or []),
            next_steps=list(next_steps or []),
            artifacts=list(artifacts or []),
            blockers=list(blockers or []),
            recorded_at=utcnow(),
        )
        self.db.add(entry)

        await self.agents.advance(workspace, agent, AgentState.SPAWNED, AgentState.WORKING)
        self.workspaces.touch(workspace)

        await self.db.commit()
        await self.db.refresh(entry)

        logger.debug(f"Progress from {agent.name}: {status[:80]}")
        return entry

    async def latest(self, workspace_id: str, agent_id: str) -> Optional[ProgressEntry]:
        await self.agents.get(workspace_id, agent_id)
        stmt = (
            select(ProgressEntry)
            .where(ProgressEntry.workspace_id == workspace_id, ProgressEntry.agent_id == agent_id)
            .order_by(ProgressEntry.recorded_at.desc(), ProgressEntry.id.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def history(
        self,
        workspace_id: str,
        agent_id: str,
        limit: Optional[int] = None,
    ) -> List[ProgressEntry]:
        """Most recent ``limit`` entries for one agent, oldest first."""
        await self.agents.get(workspace_id, agent_id)
        entries = await self.list(workspace_id, agent_id=agent_id, limit=limit)
        return await entries.all()

    async def list(
        self,
        workspace_id: str,
        agent_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> LazyQuery[ProgressEntry]:
        """Entries in a workspace, newest last; ``limit`` keeps the newest."""
        await self.workspaces.get(workspace_id)

        newest = (
            select(ProgressEntry.id)
            .where(ProgressEntry.workspace_id == workspace_id)
        )
        if agent_id is not None:
            newest = newest.where(ProgressEntry.agent_id == agent_id)
        newest = newest.order_by(ProgressEntry.id.desc())
        if limit is not None:
            newest = newest.limit(limit)

        stmt = (
            select(ProgressEntry)
            .where(ProgressEntry.id.in_(newest))
            .order_by(ProgressEntry.id.asc())
        )
        return LazyQuery(self.db, stmt)

    async def latest_by_agent(self, workspace_id: str) -> Dict[str, ProgressEntry]:
        """Latest entry per agent id, used as the patrol's liveness snapshot."""
        await self.workspaces.get(workspace_id)

        latest_ids = (
            select(func.max(ProgressEntry.id))
            .where(ProgressEntry.workspace_id == workspace_id)
            .group_by(ProgressEntry.agent_id)
        )
        stmt = select(ProgressEntry).where(ProgressEntry.id.in_(latest_ids))
        result = await self.db.execute(stmt)
        return {entry.agent_id: entry for entry in result.scalars().all()}
