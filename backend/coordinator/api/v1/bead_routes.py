"""
Bead store API routes.

Provides endpoints for:
- Creating, listing and inspecting beads
- Claiming beads
- Recording test results
- Status changes and closing
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional, List

from coordinator.database import get_db
from coordinator.coordination.bead_store import BeadStore
from coordinator.core.rate_limiter import limiter
from coordinator.models.bead import BeadStatus, TestStatus
from coordinator.schemas.coordination import BeadResponse

router = APIRouter(prefix="/workspaces/{workspace_id}/beads", tags=["beads"])


class BeadCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    created_by: str
    description: str = ""
    priority: int = Field(5, ge=0, le=100, description="Lower runs first")
    blocked_by: List[str] = []
    test_command: Optional[str] = None


class ClaimRequest(BaseModel):
    agent_id: str


class TestResultRequest(BaseModel):
    agent_id: str
    test_status: TestStatus
    command: Optional[str] = None
    output: Optional[str] = None


class StatusRequest(BaseModel):
    agent_id: str
    status: BeadStatus


class CloseRequest(BaseModel):
    agent_id: str
    status: BeadStatus = BeadStatus.DONE


@router.get("", response_model=List[BeadResponse])
async def list_beads(
    workspace_id: str,
    status: Optional[BeadStatus] = None,
    assignee: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    beads = await BeadStore(db).list(workspace_id, status=status, assignee_id=assignee)
    return await beads.all()


@router.get("/next", response_model=Optional[BeadResponse])
async def next_available_bead(workspace_id: str, db: AsyncSession = Depends(get_db)):
    """Highest-priority unassigned pending bead whose dependencies are done."""
    return await BeadStore(db).next_available(workspace_id)


@router.post("", response_model=BeadResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("120/minute")
async def create_bead(
    request: Request,
    workspace_id: str,
    body: BeadCreateRequest,
    db: AsyncSession = Depends(get_db)
):
    return await BeadStore(db).create(
        workspace_id,
        body.title,
        body.created_by,
        description=body.description,
        priority=body.priority,
        blocked_by=body.blocked_by,
        test_command=body.test_command,
    )


@router.get("/{bead_id}", response_model=BeadResponse)
async def get_bead(workspace_id: str, bead_id: str, db: AsyncSession = Depends(get_db)):
    return await BeadStore(db).get(workspace_id, bead_id)


@router.post("/{bead_id}/claim", response_model=BeadResponse)
@limiter.limit("120/minute")
async def claim_bead(
    request: Request,
    workspace_id: str,
    bead_id: str,
    body: ClaimRequest,
    db: AsyncSession = Depends(get_db)
):
    """Claim a bead. The loser of a concurrent claim gets 409."""
    return await BeadStore(db).claim(workspace_id, bead_id, body.agent_id)


@router.post("/{bead_id}/test", response_model=BeadResponse)
@limiter.limit("120/minute")
async def record_test_result(
    request: Request,
    workspace_id: str,
    bead_id: str,
    body: TestResultRequest,
    db: AsyncSession = Depends(get_db)
):
    return await BeadStore(db).record_test(
        workspace_id,
        bead_id,
        body.agent_id,
        body.test_status,
        command=body.command,
        output=body.output,
    )


@router.post("/{bead_id}/status", response_model=BeadResponse)
@limiter.limit("120/minute")
async def set_bead_status(
    request: Request,
    workspace_id: str,
    bead_id: str,
    body: StatusRequest,
    db: AsyncSession = Depends(get_db)
):
    return await BeadStore(db).set_status(workspace_id, bead_id, body.agent_id, body.status)


@router.post("/{bead_id}/close", response_model=BeadResponse)
@limiter.limit("120/minute")
async def close_bead(
    request: Request,
    workspace_id: str,
    bead_id: str,
    body: CloseRequest,
    db: AsyncSession = Depends(get_db)
):
    """Close as done (requires passed or skipped tests) or failed."""
    return await BeadStore(db).close(workspace_id, bead_id, body.agent_id, body.status)
