"""
Inter-agent message bus for coordination.

Enforces:
- Addressing by agent name or id, role alias or broadcast ("all")
- Send order per sender/recipient pair (autoincrement id)
- Idempotent blocker / completion signals
- Reading never consumes; messages are marked read explicitly
"""

from typing import List, Optional, Dict, Any
import logging

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.coordination.agent_registry import AgentRegistry
from coordinator.coordination.errors import NotFoundError
from coordinator.coordination.query import LazyQuery
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.clock import utcnow
from coordinator.models.agent import Agent, AgentRole, AgentState
from coordinator.models.coordination import (
    AgentMessage,
    MessageType,
    BROADCAST_RECIPIENT,
    SYSTEM_SENDERS,
    TERMINAL_SIGNAL_TYPES,
)
from coordinator.observability.metrics import record_message

logger = logging.getLogger(__name__)

ROLE_ALIASES = frozenset(role.value for role in AgentRole)

# Sender state changes driven by terminal signals
SIGNAL_TRANSITIONS = {
    MessageType.BLOCKER: (AgentState.WORKING, AgentState.BLOCKED),
    MessageType.COMPLETION: (AgentState.WORKING, AgentState.COMPLETED),
}


class MessageBus:
    """
    Inter-agent message bus for coordination.

    Role aliases are resolved when messages are fetched, so a message to
    "mayor" reaches whoever holds the role at delivery time.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.workspaces = WorkspaceManager(db)
        self.agents = AgentRegistry(db)

    async def _resolve_sender(self, workspace_id: str, sender: str) -> Optional[Agent]:
        if sender in SYSTEM_SENDERS:
            return None
        agent = await self.agents.resolve(workspace_id, sender)
        if agent is None:
            raise NotFoundError(f"Unknown sender '{sender}' in workspace {workspace_id}")
        return agent

    async def _resolve_recipient(self, workspace_id: str, recipient: str) -> str:
        """Canonical address: agent name, role alias or broadcast."""
        agent = await self.agents.resolve(workspace_id, recipient)
        if agent is not None:
            return agent.name
        if recipient == BROADCAST_RECIPIENT or recipient in ROLE_ALIASES:
            return recipient
        raise NotFoundError(f"Unknown recipient '{recipient}' in workspace {workspace_id}")

    async def send(
        self,
        workspace_id: str,
        from_agent: str,
        to_agent: str,
        message_type: MessageType,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> AgentMessage:
        """
        Send a message from one agent to another.

        Args:
            workspace_id: Workspace the message belongs to
            from_agent: Sender agent name or id, or a system sender
            to_agent: Recipient agent name or id, role alias or "all"
            message_type: Type of message
            content: Message text
            metadata: Optional structured payload
            commit: Commit the transaction (False when composed into
                another operation)

        Returns:
            Created message, or the existing one for a redelivered
            blocker/completion signal
        """
        workspace = await self.workspaces.require_active(workspace_id)
        sender = await self._resolve_sender(workspace_id, from_agent)
        sender_ref = sender.name if sender is not None else from_agent
        recipient = await self._resolve_recipient(workspace_id, to_agent)

        if message_type in TERMINAL_SIGNAL_TYPES:
            existing = await self._find_unread_duplicate(
                workspace_id, sender_ref, recipient, message_type, content
            )
            if existing is not None:
                logger.debug(f"Duplicate {message_type.value} from {sender_ref} ignored (#{existing.id})")
                return existing

        message = AgentMessage(
            workspace_id=workspace_id,
            from_agent=sender_ref,
            to_agent=recipient,
            message_type=message_type,
            content=content,
            payload=dict(metadata or {}),
            read=False,
            sent_at=utcnow(),
        )
        self.db.add(message)

        if sender is not None and message_type in SIGNAL_TRANSITIONS:
            from_state, to_state = SIGNAL_TRANSITIONS[message_type]
            await self.agents.advance(workspace, sender, from_state, to_state)

        self.workspaces.touch(workspace)
        if commit:
            await self.db.commit()
            await self.db.refresh(message)
        else:
            await self.db.flush()

        record_message(message_type.value)
        logger.debug(f"Message sent: {sender_ref} -> {recipient} ({message_type.value})")

        return message

    async def _find_unread_duplicate(
        self,
        workspace_id: str,
        sender: str,
        recipient: str,
        message_type: MessageType,
        content: str,
    ) -> Optional[AgentMessage]:
        stmt = (
            select(AgentMessage)
            .where(
                AgentMessage.workspace_id == workspace_id,
                AgentMessage.from_agent == sender,
                AgentMessage.to_agent == recipient,
                AgentMessage.message_type == message_type,
                AgentMessage.content == content,
                AgentMessage.read.is_(False),
            )
            .order_by(AgentMessage.id.asc())
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get(self, workspace_id: str, message_id: int) -> AgentMessage:
        await self.workspaces.get(workspace_id)
        stmt = (
            select(AgentMessage)
            .where(AgentMessage.id == message_id, AgentMessage.workspace_id == workspace_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        message = result.scalar_one_or_none()
        if message is None:
            raise NotFoundError(f"Message {message_id} not found in workspace {workspace_id}")
        return message

    async def fetch_unread(self, workspace_id: str, agent_id: str) -> LazyQuery[AgentMessage]:
        """
        Unread messages addressed to an agent by name, id, role or broadcast.

        Does not consume; every iteration re-reads current state.
        """
        agent = await self.agents.get(workspace_id, agent_id)

        addresses = {agent.name, agent.id, BROADCAST_RECIPIENT}
        if not agent.is_terminated:
            addresses.add(agent.role.value)

        stmt = (
            select(AgentMessage)
            .where(
                AgentMessage.workspace_id == workspace_id,
                AgentMessage.to_agent.in_(addresses),
                AgentMessage.read.is_(False),
                # Own broadcasts are not echoed back
                or_(
                    AgentMessage.to_agent != BROADCAST_RECIPIENT,
                    AgentMessage.from_agent != agent.name,
                ),
            )
            .order_by(AgentMessage.id.asc())
        )
        return LazyQuery(self.db, stmt)

    async def mark_read(self, workspace_id: str, message_id: int) -> AgentMessage:
        """Mark a message as read. Idempotent."""
        await self.workspaces.require_active(workspace_id)
        message = await self.get(workspace_id, message_id)
        if message.read:
            return message

        stmt = (
            update(AgentMessage)
            .where(AgentMessage.id == message_id, AgentMessage.read.is_(False))
            .values(read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)
        await self.db.commit()
        await self.db.refresh(message)

        return message

    async def list(
        self,
        workspace_id: str,
        to_agent: Optional[str] = None,
        from_agent: Optional[str] = None,
        message_type: Optional[MessageType] = None,
        unread: Optional[bool] = None,
    ) -> LazyQuery[AgentMessage]:
        """Messages in a workspace in send order, optionally filtered."""
        await self.workspaces.get(workspace_id)

        stmt = select(AgentMessage).where(AgentMessage.workspace_id == workspace_id)
        if to_agent is not None:
            stmt = stmt.where(AgentMessage.to_agent == to_agent)
        if from_agent is not None:
            stmt = stmt.where(AgentMessage.from_agent == from_agent)
        if message_type is not None:
            stmt = stmt.where(AgentMessage.message_type == message_type)
        if unread is not None:
            stmt = stmt.where(AgentMessage.read.is_(not unread))
        stmt = stmt.order_by(AgentMessage.id.asc())

        return LazyQuery(self.db, stmt)

    async def unread_blockers(self, workspace_id: str) -> List[AgentMessage]:
        blockers = await self.list(
            workspace_id, message_type=MessageType.BLOCKER, unread=True
        )
        return await blockers.all()
