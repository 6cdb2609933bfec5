"""
Merge queue API routes.

Provides endpoints for:
- Submitting merge requests
- Review decisions and build results
- Merge attempts, rejection and stalling
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional, List

from coordinator.database import get_db
from coordinator.coordination.merge_queue import MergeQueue
from coordinator.core.rate_limiter import limiter
from coordinator.models.merge_queue import BuildStatus, MergeStatus, ReviewStatus
from coordinator.schemas.coordination import MergeAttemptResponse, MergeRequestResponse

router = APIRouter(prefix="/workspaces/{workspace_id}/merge-requests", tags=["merge-queue"])


class SubmitRequest(BaseModel):
    agent_id: str
    branch_ref: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=300)
    files_changed: List[str] = []
    description: str = ""
    target_branch: str = "main"
    bead_id: Optional[str] = None


class ReviewRequest(BaseModel):
    reviewer_id: str
    decision: ReviewStatus
    comments: Optional[str] = None


class BuildRequest(BaseModel):
    status: BuildStatus
    output: Optional[str] = None


class RejectRequest(BaseModel):
    actor_id: str
    reason: str = Field(..., min_length=1)


class StallRequest(BaseModel):
    actor_id: str


@router.get("", response_model=List[MergeRequestResponse])
async def list_merge_requests(
    workspace_id: str,
    status: Optional[MergeStatus] = None,
    db: AsyncSession = Depends(get_db)
):
    requests = await MergeQueue(db).list(workspace_id, merge_status=status)
    return await requests.all()


@router.get("/{mr_id}", response_model=MergeRequestResponse)
async def get_merge_request(workspace_id: str, mr_id: str, db: AsyncSession = Depends(get_db)):
    return await MergeQueue(db).get(workspace_id, mr_id)


@router.post("", response_model=MergeRequestResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
async def submit_merge_request(
    request: Request,
    workspace_id: str,
    body: SubmitRequest,
    db: AsyncSession = Depends(get_db)
):
    return await MergeQueue(db).submit(
        workspace_id,
        body.agent_id,
        body.branch_ref,
        body.title,
        body.files_changed,
        description=body.description,
        target_branch=body.target_branch,
        bead_id=body.bead_id,
    )


@router.post("/{mr_id}/review", response_model=MergeRequestResponse)
@limiter.limit("60/minute")
async def set_review(
    request: Request,
    workspace_id: str,
    mr_id: str,
    body: ReviewRequest,
    db: AsyncSession = Depends(get_db)
):
    return await MergeQueue(db).set_review(
        workspace_id, mr_id, body.reviewer_id, body.decision, body.comments
    )


@router.post("/{mr_id}/build", response_model=MergeRequestResponse)
@limiter.limit("60/minute")
async def set_build(
    request: Request,
    workspace_id: str,
    mr_id: str,
    body: BuildRequest,
    db: AsyncSession = Depends(get_db)
):
    """Called by the external build pipeline."""
    return await MergeQueue(db).set_build(workspace_id, mr_id, body.status, body.output)


@router.post("/{mr_id}/merge", response_model=MergeAttemptResponse)
@limiter.limit("60/minute")
async def try_merge(request: Request, workspace_id: str, mr_id: str, db: AsyncSession = Depends(get_db)):
    """
    Attempt the merge.

    Returns ``merged: false`` with the unmet gates when review or build
    are not yet satisfied.
    """
    attempt = await MergeQueue(db).try_merge(workspace_id, mr_id)
    return MergeAttemptResponse(
        merged=attempt.merged,
        unmet=attempt.unmet,
        merge_request=MergeRequestResponse.model_validate(attempt.merge_request),
    )


@router.post("/{mr_id}/reject", response_model=MergeRequestResponse)
@limiter.limit("60/minute")
async def reject_merge_request(
    request: Request,
    workspace_id: str,
    mr_id: str,
    body: RejectRequest,
    db: AsyncSession = Depends(get_db)
):
    return await MergeQueue(db).reject(workspace_id, mr_id, body.actor_id, body.reason)


@router.post("/{mr_id}/stall", response_model=MergeRequestResponse)
@limiter.limit("60/minute")
async def mark_stalled(
    request: Request,
    workspace_id: str,
    mr_id: str,
    body: StallRequest,
    db: AsyncSession = Depends(get_db)
):
    return await MergeQueue(db).mark_stalled(workspace_id, mr_id, body.actor_id)
