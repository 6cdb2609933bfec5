"""
Progress ledger API routes.
"""

from fastapi import APIRouter, Depends, Request, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional, List

from coordinator.database import get_db
from coordinator.coordination.progress_ledger import ProgressLedger
from coordinator.core.rate_limiter import limiter
from coordinator.schemas.coordination import ProgressEntryResponse

router = APIRouter(prefix="/workspaces/{workspace_id}/progress", tags=["progress"])


class ProgressRequest(BaseModel):
    agent_id: str
    status: str = Field(..., min_length=1)
    completed: List[str] = []
    next: List[str] = []
    artifacts: List[str] = []
    blockers: List[str] = []


@router.get("", response_model=List[ProgressEntryResponse])
async def list_progress(
    workspace_id: str,
    agent_id: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: AsyncSession = Depends(get_db)
):
    entries = await ProgressLedger(db).list(workspace_id, agent_id=agent_id, limit=limit)
    return await entries.all()


@router.post("", response_model=ProgressEntryResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("300/minute")
async def append_progress(
    request: Request,
    workspace_id: str,
    body: ProgressRequest,
    db: AsyncSession = Depends(get_db)
):
    return await ProgressLedger(db).append(
        workspace_id,
        body.agent_id,
        body.status,
        completed=body.completed,
        next_steps=body.next,
        artifacts=body.artifacts,
        blockers=body.blockers,
    )
