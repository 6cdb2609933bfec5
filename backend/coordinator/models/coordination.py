"""
Coordination models for the agent coordination system.
Supports message passing between agents and the append-only progress ledger.
"""

from sqlalchemy import String, Boolean, JSON, Text, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional, Dict, Any, List
import enum

from coordinator.core.clock import utcnow
from coordinator.models.base import Base


class MessageType(str, enum.Enum):
    """Types of inter-agent messages."""
    STATUS = "status"
    COMPLETION = "completion"
    BLOCKER = "blocker"
    NUDGE = "nudge"
    ESCALATION = "escalation"


# Terminal work signals; redelivery must be harmless
TERMINAL_SIGNAL_TYPES = frozenset({MessageType.BLOCKER, MessageType.COMPLETION})

BROADCAST_RECIPIENT = "all"
SYSTEM_SENDERS = frozenset({"system", "merge-queue"})


class AgentMessage(Base):
    """Addressed message between agents. Only ``read`` changes after creation."""
    __tablename__ = "agent_messages"

    # Autoincrement id doubles as the send order
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Routing: agent name/id, role alias or "all"
    from_agent: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    to_agent: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    message_type: Mapped[MessageType] = mapped_column(SQLEnum(MessageType), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    sent_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_agent_message_workspace_to_read", "workspace_id", "to_agent", "read"),
    )

    def __repr__(self) -> str:
        return f"<AgentMessage {self.id} {self.from_agent}->{self.to_agent} {self.message_type.value}>"


class ProgressEntry(Base):
    """Append-only progress snapshot reported by an agent."""
    __tablename__ = "progress_entries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[str] = mapped_column(Text, nullable=False)
    completed: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    next_steps: Mapped[List[str]] = mapped_column("next", JSON, nullable=False, default=list)
    artifacts: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    blockers: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    recorded_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_progress_agent_recorded", "agent_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return f"<ProgressEntry {self.id} {self.agent_name}: {self.status[:40]}>"
