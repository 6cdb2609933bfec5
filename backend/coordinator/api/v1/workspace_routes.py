"""
Workspace API routes.

Provides endpoints for:
- Creating and listing workspaces
- Closing (archiving) a workspace
- Per-workspace statistics
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from coordinator.database import get_db
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.rate_limiter import limiter
from coordinator.models.workspace import WorkspaceStatus
from coordinator.schemas.coordination import WorkspaceResponse

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


class WorkspaceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    working_directory: Optional[str] = Field(None, max_length=1000)


@router.post("", response_model=WorkspaceResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_workspace(
    request: Request,
    body: WorkspaceCreateRequest,
    db: AsyncSession = Depends(get_db)
):
    return await WorkspaceManager(db).create(body.name, body.working_directory)


@router.get("", response_model=List[WorkspaceResponse])
async def list_workspaces(
    status: Optional[WorkspaceStatus] = None,
    db: AsyncSession = Depends(get_db)
):
    return await WorkspaceManager(db).list(status=status).all()


@router.get("/{workspace_id}", response_model=WorkspaceResponse)
async def get_workspace(workspace_id: str, db: AsyncSession = Depends(get_db)):
    return await WorkspaceManager(db).get(workspace_id)


@router.post("/{workspace_id}/close", response_model=WorkspaceResponse)
@limiter.limit("30/minute")
async def close_workspace(request: Request, workspace_id: str, db: AsyncSession = Depends(get_db)):
    """Archive a workspace. It stays readable; mutations are rejected."""
    return await WorkspaceManager(db).close(workspace_id)


@router.get("/{workspace_id}/stats")
async def get_workspace_stats(
    workspace_id: str,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await WorkspaceManager(db).stats(workspace_id)
