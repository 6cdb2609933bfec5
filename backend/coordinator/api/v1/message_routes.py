"""
Message bus API routes.

Provides endpoints for:
- Sending messages
- Listing messages by recipient, sender, type and read flag
- Fetching an agent's unread messages
- Marking messages read
"""

from fastapi import APIRouter, Depends, Request, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from coordinator.database import get_db
from coordinator.coordination.message_bus import MessageBus
from coordinator.core.rate_limiter import limiter
from coordinator.models.coordination import MessageType
from coordinator.schemas.coordination import MessageResponse

router = APIRouter(prefix="/workspaces/{workspace_id}/messages", tags=["messages"])


class SendMessageRequest(BaseModel):
    from_agent: str = Field(..., description="Sender agent name or id, or 'system'")
    to_agent: str = Field(..., description="Agent name or id, role alias or 'all'")
    message_type: MessageType
    content: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = {}


@router.get("", response_model=List[MessageResponse])
async def list_messages(
    workspace_id: str,
    to: Optional[str] = None,
    from_agent: Optional[str] = Query(None, alias="from"),
    type: Optional[MessageType] = None,
    unread: Optional[bool] = None,
    db: AsyncSession = Depends(get_db)
):
    messages = await MessageBus(db).list(
        workspace_id,
        to_agent=to,
        from_agent=from_agent,
        message_type=type,
        unread=unread,
    )
    return await messages.all()


@router.get("/unread/{agent_id}", response_model=List[MessageResponse])
async def fetch_unread(workspace_id: str, agent_id: str, db: AsyncSession = Depends(get_db)):
    """Unread messages for an agent, including role and broadcast addresses."""
    messages = await MessageBus(db).fetch_unread(workspace_id, agent_id)
    return await messages.all()


@router.post("", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("300/minute")
async def send_message(
    request: Request,
    workspace_id: str,
    body: SendMessageRequest,
    db: AsyncSession = Depends(get_db)
):
    return await MessageBus(db).send(
        workspace_id,
        body.from_agent,
        body.to_agent,
        body.message_type,
        body.content,
        metadata=body.metadata,
    )


@router.post("/{message_id}/read", response_model=MessageResponse)
@limiter.limit("300/minute")
async def mark_read(request: Request, workspace_id: str, message_id: int, db: AsyncSession = Depends(get_db)):
    return await MessageBus(db).mark_read(workspace_id, message_id)
