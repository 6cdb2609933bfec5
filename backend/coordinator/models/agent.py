"""
Agent model.

Agents form a forest keyed by id: ``parent_id`` is a plain identifier
resolved through the registry, never an ORM relationship, so a child's
history outlives whatever happens to its parent.
"""

from sqlalchemy import String, Integer, Boolean, JSON, Enum as SQLEnum, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional, List
import enum

from coordinator.models.base import Base, TimestampMixin, VersionedMixin


class AgentRole(str, enum.Enum):
    MAYOR = "mayor"
    DEACON = "deacon"
    REFINERY = "refinery"
    REVIEWER = "reviewer"
    WITNESS = "witness"
    SPECIALIST = "specialist"
    EXPLORER = "explorer"
    OTHER = "other"


class AgentState(str, enum.Enum):
    SPAWNED = "spawned"
    WORKING = "working"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


# Legal lifecycle edges for transition()
AGENT_TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.SPAWNED: frozenset({AgentState.WORKING}),
    AgentState.WORKING: frozenset({AgentState.BLOCKED, AgentState.COMPLETED, AgentState.FAILED}),
    AgentState.BLOCKED: frozenset({AgentState.WORKING}),
    AgentState.COMPLETED: frozenset({AgentState.TERMINATED}),
    AgentState.FAILED: frozenset({AgentState.TERMINATED}),
    AgentState.TERMINATED: frozenset(),
}

# Roles that may always spawn sub-agents
SPAWNING_ROLES = frozenset({AgentRole.MAYOR, AgentRole.WITNESS, AgentRole.DEACON})

# Roles holding escalation authority over beads and agents
AUTHORITY_ROLES = frozenset({AgentRole.MAYOR})


class Agent(Base, TimestampMixin, VersionedMixin):
    """A worker process registered in a workspace."""
    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[AgentRole] = mapped_column(SQLEnum(AgentRole), nullable=False, index=True)
    model: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Hierarchy (weak reference by id)
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    can_spawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    spawn_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle
    state: Mapped[AgentState] = mapped_column(
        SQLEnum(AgentState), nullable=False, default=AgentState.SPAWNED, index=True
    )

    # Opaque handle to the agent's isolated working copy
    branch_ref: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    owned_paths: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_agent_workspace_name"),
        Index("ix_agent_workspace_state", "workspace_id", "state"),
    )

    @property
    def is_terminated(self) -> bool:
        return self.state == AgentState.TERMINATED

    @property
    def has_authority(self) -> bool:
        return self.role in AUTHORITY_ROLES

    def __repr__(self) -> str:
        return f"<Agent {self.name} {self.role.value} {self.state.value}>"
