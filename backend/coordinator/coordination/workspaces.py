"""
Workspace lifecycle and per-workspace statistics.

Every coordination service resolves its ``workspace_id`` through
``WorkspaceManager`` before touching any other entity.
"""

from typing import Dict, Any, Optional
import uuid
import logging

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.coordination.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from coordinator.coordination.query import LazyQuery
from coordinator.core.clock import utcnow
from coordinator.models.agent import Agent
from coordinator.models.bead import Bead
from coordinator.models.coordination import AgentMessage, ProgressEntry
from coordinator.models.merge_queue import MergeRequest
from coordinator.models.workspace import Workspace, WorkspaceStatus

logger = logging.getLogger(__name__)


class WorkspaceManager:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, name: str, working_directory: Optional[str] = None) -> Workspace:
        """Create a new active workspace. Names are unique."""
        now = utcnow()
        workspace = Workspace(
            id=str(uuid.uuid4()),
            name=name,
            working_directory=working_directory,
            status=WorkspaceStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
        )
        self.db.add(workspace)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Workspace '{name}' already exists")
        await self.db.refresh(workspace)

        logger.info(f"Workspace created: {workspace.name} ({workspace.id})")
        return workspace

    async def get(self, workspace_id: str) -> Workspace:
        stmt = select(Workspace).where(Workspace.id == workspace_id)
        result = await self.db.execute(stmt)
        workspace = result.scalar_one_or_none()
        if workspace is None:
            raise NotFoundError(f"Workspace {workspace_id} not found")
        return workspace

    async def require_active(self, workspace_id: str) -> Workspace:
        """Resolve a workspace for a mutating operation."""
        workspace = await self.get(workspace_id)
        if workspace.status != WorkspaceStatus.ACTIVE:
            raise InvalidTransitionError(f"Workspace {workspace.name} is closed")
        return workspace

    def list(self, status: Optional[WorkspaceStatus] = None) -> LazyQuery[Workspace]:
        stmt = select(Workspace)
        if status is not None:
            stmt = stmt.where(Workspace.status == status)
        stmt = stmt.order_by(Workspace.created_at.asc())
        return LazyQuery(self.db, stmt)

    async def close(self, workspace_id: str) -> Workspace:
        """Archive a workspace; it stays readable but rejects mutations."""
        workspace = await self.get(workspace_id)
        if workspace.status == WorkspaceStatus.CLOSED:
            return workspace

        now = utcnow()
        workspace.status = WorkspaceStatus.CLOSED
        workspace.closed_at = now
        workspace.last_activity_at = now
        await self.db.commit()

        logger.info(f"Workspace closed: {workspace.name} ({workspace.id})")
        return workspace

    @staticmethod
    def touch(workspace: Workspace) -> None:
        workspace.last_activity_at = utcnow()

    async def stats(self, workspace_id: str) -> Dict[str, Any]:
        """Entity counts for a workspace."""
        workspace = await self.get(workspace_id)

        async def grouped(column, model) -> Dict[str, int]:
            stmt = (
                select(column, func.count())
                .where(model.workspace_id == workspace_id)
                .group_by(column)
            )
            result = await self.db.execute(stmt)
            return {key.value: count for key, count in result.all()}

        async def count(model, *criteria) -> int:
            stmt = select(func.count()).select_from(model).where(
                model.workspace_id == workspace_id, *criteria
            )
            result = await self.db.execute(stmt)
            return result.scalar_one()

        return {
            "workspace_id": workspace.id,
            "name": workspace.name,
            "status": workspace.status.value,
            "agents": await grouped(Agent.state, Agent),
            "beads": await grouped(Bead.status, Bead),
            "merge_requests": await grouped(MergeRequest.merge_status, MergeRequest),
            "messages": {
                "total": await count(AgentMessage),
                "unread": await count(AgentMessage, AgentMessage.read.is_(False)),
            },
            "progress_entries": await count(ProgressEntry),
            "last_activity_at": workspace.last_activity_at.isoformat(),
        }
