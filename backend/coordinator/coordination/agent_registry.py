"""
Agent registry: identity, hierarchy and lifecycle of agents.

The hierarchy is a forest keyed by id. ``parent_id`` is a weak reference
resolved through the registry, and a child always points at a parent that
already exists, so cycles cannot form.

Enforces:
- spawn_depth(child) == spawn_depth(parent) + 1, bounded by max_spawn_depth
- Only agents with can_spawn have children
- Lifecycle edges from AGENT_TRANSITIONS, one winner per concurrent transition
- Termination releases the agent's bead claims
"""

from typing import Dict, List, Optional, Any
import uuid
import logging

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.config import settings
from coordinator.coordination.errors import (
    ConflictError,
    DepthExceededError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    UnknownParentError,
)
from coordinator.coordination.paths import path_overlaps
from coordinator.coordination.query import LazyQuery
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.clock import utcnow
from coordinator.models.agent import (
    Agent,
    AgentRole,
    AgentState,
    AGENT_TRANSITIONS,
    SPAWNING_ROLES,
)
from coordinator.models.bead import Bead, BeadStatus, HELD_BEAD_STATUSES
from coordinator.models.workspace import Workspace
from coordinator.observability.metrics import record_spawn, record_transition

logger = logging.getLogger(__name__)


class AgentRegistry:

    def __init__(self, db: AsyncSession, max_spawn_depth: Optional[int] = None):
        self.db = db
        self.workspaces = WorkspaceManager(db)
        self.max_spawn_depth = (
            max_spawn_depth if max_spawn_depth is not None else settings.max_spawn_depth
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _load(self, workspace_id: str, agent_id: str) -> Optional[Agent]:
        stmt = (
            select(Agent)
            .where(Agent.id == agent_id, Agent.workspace_id == workspace_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, workspace_id: str, agent_id: str) -> Agent:
        await self.workspaces.get(workspace_id)
        agent = await self._load(workspace_id, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found in workspace {workspace_id}")
        return agent

    async def resolve(self, workspace_id: str, ref: str) -> Optional[Agent]:
        """Find an agent by id or by name."""
        stmt = (
            select(Agent)
            .where(
                Agent.workspace_id == workspace_id,
                or_(Agent.id == ref, Agent.name == ref),
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def parent(self, agent: Agent) -> Optional[Agent]:
        """Weak parent lookup; None for roots or vanished parents."""
        if agent.parent_id is None:
            return None
        return await self._load(agent.workspace_id, agent.parent_id)

    async def children(self, workspace_id: str, agent_id: str) -> LazyQuery[Agent]:
        await self.get(workspace_id, agent_id)
        stmt = (
            select(Agent)
            .where(Agent.workspace_id == workspace_id, Agent.parent_id == agent_id)
            .order_by(Agent.created_at.asc())
        )
        return LazyQuery(self.db, stmt)

    async def list_by_workspace(
        self,
        workspace_id: str,
        role: Optional[AgentRole] = None,
        state: Optional[AgentState] = None,
        include_terminated: bool = True,
    ) -> LazyQuery[Agent]:
        """Restartable sequence of agents in a workspace, oldest first."""
        await self.workspaces.get(workspace_id)

        stmt = select(Agent).where(Agent.workspace_id == workspace_id)
        if role is not None:
            stmt = stmt.where(Agent.role == role)
        if state is not None:
            stmt = stmt.where(Agent.state == state)
        if not include_terminated:
            stmt = stmt.where(Agent.state != AgentState.TERMINATED)
        stmt = stmt.order_by(Agent.created_at.asc(), Agent.name.asc())

        return LazyQuery(self.db, stmt)

    async def holders_of_role(self, workspace_id: str, role: AgentRole) -> List[Agent]:
        """Current non-terminated holders of a role."""
        agents = await self.list_by_workspace(
            workspace_id, role=role, include_terminated=False
        )
        return await agents.all()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def spawn(
        self,
        workspace_id: str,
        name: str,
        role: AgentRole,
        parent_id: Optional[str] = None,
        model: Optional[str] = None,
        can_spawn: bool = False,
        branch_ref: Optional[str] = None,
        owned_paths: Optional[List[str]] = None,
    ) -> Agent:
        """
        Register a new agent, optionally under a parent.

        Raises:
            UnknownParentError: parent missing or terminated
            UnauthorizedError: parent cannot spawn
            DepthExceededError: hierarchy would exceed max_spawn_depth
            ConflictError: duplicate name or second live mayor
        """
        workspace = await self.workspaces.require_active(workspace_id)

        depth = 0
        if parent_id is not None:
            parent = await self._load(workspace_id, parent_id)
            if parent is None or parent.is_terminated:
                raise UnknownParentError(f"Parent agent {parent_id} does not exist or is terminated")
            if not parent.can_spawn:
                raise UnauthorizedError(f"Agent {parent.name} is not allowed to spawn sub-agents")
            depth = parent.spawn_depth + 1

        if depth > self.max_spawn_depth:
            raise DepthExceededError(
                f"Spawn depth {depth} exceeds the maximum of {self.max_spawn_depth}"
            )

        if await self.resolve(workspace_id, name) is not None:
            raise ConflictError(f"Agent name '{name}' already exists in workspace")

        if role == AgentRole.MAYOR and await self.holders_of_role(workspace_id, AgentRole.MAYOR):
            raise ConflictError("Workspace already has an active mayor")

        now = utcnow()
        agent = Agent(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            name=name,
            role=role,
            model=model,
            parent_id=parent_id,
            can_spawn=can_spawn or role in SPAWNING_ROLES,
            spawn_depth=depth,
            state=AgentState.SPAWNED,
            branch_ref=branch_ref,
            owned_paths=list(owned_paths or []),
            created_at=now,
            updated_at=now,
        )
        self.db.add(agent)

        if role == AgentRole.MAYOR:
            workspace.mayor_id = agent.id
        self.workspaces.touch(workspace)

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Agent name '{name}' already exists in workspace")
        await self.db.refresh(agent)

        record_spawn(role.value)
        logger.info(
            f"Agent spawned: {agent.name} ({agent.role.value}, depth {agent.spawn_depth}) "
            f"in workspace {workspace_id}"
        )
        return agent

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _compare_and_set_state(self, agent: Agent, new_state: AgentState) -> bool:
        """Move agent to new_state if nobody changed it since it was read."""
        stmt = (
            update(Agent)
            .where(
                Agent.id == agent.id,
                Agent.version == agent.version,
                Agent.state == agent.state,
            )
            .values(state=new_state, version=agent.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            return False
        await self.db.refresh(agent)
        return True

    async def _after_state_change(self, workspace: Workspace, agent: Agent) -> None:
        if agent.state == AgentState.TERMINATED:
            await self._release_claims(agent)
            if workspace.mayor_id == agent.id:
                workspace.mayor_id = None
        self.workspaces.touch(workspace)
        record_transition(agent.state.value)

    async def transition(self, workspace_id: str, agent_id: str, new_state: AgentState) -> Agent:
        """
        Apply a lifecycle edge.

        Raises:
            InvalidTransitionError: edge not in AGENT_TRANSITIONS
            ConflictError: lost a concurrent transition on the same agent
        """
        workspace = await self.workspaces.require_active(workspace_id)
        agent = await self.get(workspace_id, agent_id)

        if new_state not in AGENT_TRANSITIONS[agent.state]:
            raise InvalidTransitionError(
                f"Agent {agent.name}: {agent.state.value} -> {new_state.value} is not allowed"
            )

        old_state, agent_name = agent.state, agent.name
        if not await self._compare_and_set_state(agent, new_state):
            await self.db.rollback()
            raise ConflictError(f"Agent {agent_name} was modified concurrently")

        await self._after_state_change(workspace, agent)
        await self.db.commit()

        logger.info(f"Agent {agent.name}: {old_state.value} -> {new_state.value}")
        return agent

    async def advance(
        self,
        workspace: Workspace,
        agent: Agent,
        from_state: AgentState,
        to_state: AgentState,
    ) -> bool:
        """
        Event-driven transition used by the ledger and message bus.

        Applies only when the agent is currently in ``from_state``; repeated
        signals are no-ops. Does not commit.
        """
        if agent.state != from_state:
            return False
        if not await self._compare_and_set_state(agent, to_state):
            logger.debug(f"Agent {agent.name} changed state concurrently; {to_state.value} skipped")
            return False

        await self._after_state_change(workspace, agent)
        logger.info(f"Agent {agent.name}: {from_state.value} -> {to_state.value} (event)")
        return True

    async def terminate(self, workspace_id: str, agent_id: str, by_agent_id: str) -> Agent:
        """
        Terminate an agent from any live state.

        Only the agent's parent or the mayor may terminate it. The agent's
        record and history are kept.
        """
        workspace = await self.workspaces.require_active(workspace_id)
        actor = await self.get(workspace_id, by_agent_id)
        agent = await self.get(workspace_id, agent_id)

        if actor.is_terminated or not (actor.id == agent.parent_id or actor.has_authority):
            raise UnauthorizedError(
                f"Agent {actor.name} may not terminate {agent.name} (parent or mayor only)"
            )

        if agent.is_terminated:
            return agent

        old_state, agent_name = agent.state, agent.name
        if not await self._compare_and_set_state(agent, AgentState.TERMINATED):
            await self.db.rollback()
            raise ConflictError(f"Agent {agent_name} was modified concurrently")

        await self._after_state_change(workspace, agent)
        await self.db.commit()

        logger.info(f"Agent {agent.name} terminated by {actor.name} (was {old_state.value})")
        return agent

    async def _held_beads(self, agent: Agent, bead_id: Optional[str] = None) -> List[Bead]:
        stmt = select(Bead).where(
            Bead.workspace_id == agent.workspace_id,
            Bead.assignee_id == agent.id,
            Bead.status.in_(HELD_BEAD_STATUSES),
        )
        if bead_id is not None:
            stmt = stmt.where(Bead.id == bead_id)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def _release(self, bead: Bead, agent: Agent, now) -> bool:
        """Versioned release of one held bead; False if it changed since read."""
        stmt = (
            update(Bead)
            .where(
                Bead.id == bead.id,
                Bead.version == bead.version,
                Bead.assignee_id == agent.id,
                Bead.status.in_(HELD_BEAD_STATUSES),
            )
            .values(
                status=BeadStatus.PENDING,
                assignee_id=None,
                version=bead.version + 1,
                updated_at=now,
                status_history=[
                    *bead.status_history,
                    Bead.status_entry(BeadStatus.PENDING, now),
                ],
                audit=[
                    *bead.audit,
                    Bead.audit_entry("released", agent.id, now, {"reason": "assignee terminated"}),
                ],
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _release_claims(self, agent: Agent) -> List[str]:
        """
        Return the agent's held beads to pending. Does not commit.

        A bead that changed since it was read is re-read; it is released only
        while the agent still holds it, so a concurrent close is never undone.
        """
        now = utcnow()
        released = []
        for bead in await self._held_beads(agent):
            current: Optional[Bead] = bead
            while current is not None:
                if await self._release(current, agent, now):
                    released.append(current.id)
                    break
                held = await self._held_beads(agent, bead_id=current.id)
                current = held[0] if held else None

        if released:
            logger.info(f"Released {len(released)} bead(s) held by terminated agent {agent.name}")
        return released

    # ------------------------------------------------------------------
    # File ownership
    # ------------------------------------------------------------------

    async def ownership(self, workspace_id: str) -> Dict[str, str]:
        """Map of owned path pattern -> agent name for live agents."""
        agents = await self.list_by_workspace(workspace_id, include_terminated=False)
        owners = {}
        async for agent in agents:
            for pattern in agent.owned_paths:
                owners[pattern] = agent.name
        return owners

    async def check_ownership(
        self,
        workspace_id: str,
        paths: List[str],
        exclude_agent_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Live agents whose owned paths overlap ``paths``."""
        agents = await self.list_by_workspace(workspace_id, include_terminated=False)
        conflicts = []
        async for agent in agents:
            if agent.id == exclude_agent_id or not agent.owned_paths:
                continue
            overlaps = path_overlaps(paths, agent.owned_paths)
            if overlaps:
                conflicts.append({
                    "agent_id": agent.id,
                    "agent_name": agent.name,
                    "overlaps": overlaps,
                })
        return conflicts
