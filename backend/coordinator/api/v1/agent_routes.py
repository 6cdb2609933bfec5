"""
Agent registry API routes.

Provides endpoints for:
- Listing and inspecting agents
- Spawning agents and sub-agents
- Lifecycle transitions and termination
- File ownership queries
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from coordinator.database import get_db
from coordinator.coordination.agent_registry import AgentRegistry
from coordinator.core.rate_limiter import limiter
from coordinator.models.agent import AgentRole, AgentState
from coordinator.schemas.coordination import AgentResponse

router = APIRouter(prefix="/workspaces/{workspace_id}/agents", tags=["agents"])


class SpawnRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    role: AgentRole
    parent_id: Optional[str] = None
    model: Optional[str] = Field(None, max_length=50)
    can_spawn: bool = False
    branch_ref: Optional[str] = None
    owned_paths: List[str] = []


class TransitionRequest(BaseModel):
    state: AgentState


class TerminateRequest(BaseModel):
    by_agent_id: str


class OwnershipCheckRequest(BaseModel):
    paths: List[str]
    exclude_agent_id: Optional[str] = None


@router.get("", response_model=List[AgentResponse])
async def list_agents(
    workspace_id: str,
    role: Optional[AgentRole] = None,
    state: Optional[AgentState] = None,
    db: AsyncSession = Depends(get_db)
):
    agents = await AgentRegistry(db).list_by_workspace(workspace_id, role=role, state=state)
    return await agents.all()


@router.get("/ownership")
async def get_ownership(workspace_id: str, db: AsyncSession = Depends(get_db)) -> Dict[str, str]:
    """Owned path pattern -> agent name for live agents."""
    return await AgentRegistry(db).ownership(workspace_id)


@router.post("/ownership/check")
@limiter.limit("60/minute")
async def check_ownership(
    request: Request,
    workspace_id: str,
    body: OwnershipCheckRequest,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    conflicts = await AgentRegistry(db).check_ownership(
        workspace_id, body.paths, body.exclude_agent_id
    )
    return {"conflicts": conflicts, "has_conflicts": bool(conflicts)}


@router.post("/spawn", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
async def spawn_agent(
    request: Request,
    workspace_id: str,
    body: SpawnRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Spawn an agent, optionally under a parent.

    Fails with 404 for an unknown or terminated parent, 403 when the parent
    cannot spawn, and 422 when the hierarchy depth limit would be exceeded.
    """
    return await AgentRegistry(db).spawn(
        workspace_id,
        body.name,
        body.role,
        parent_id=body.parent_id,
        model=body.model,
        can_spawn=body.can_spawn,
        branch_ref=body.branch_ref,
        owned_paths=body.owned_paths,
    )


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(workspace_id: str, agent_id: str, db: AsyncSession = Depends(get_db)):
    return await AgentRegistry(db).get(workspace_id, agent_id)


@router.get("/{agent_id}/children", response_model=List[AgentResponse])
async def get_children(workspace_id: str, agent_id: str, db: AsyncSession = Depends(get_db)):
    children = await AgentRegistry(db).children(workspace_id, agent_id)
    return await children.all()


@router.post("/{agent_id}/transition", response_model=AgentResponse)
@limiter.limit("60/minute")
async def transition_agent(
    request: Request,
    workspace_id: str,
    agent_id: str,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db)
):
    return await AgentRegistry(db).transition(workspace_id, agent_id, body.state)


@router.post("/{agent_id}/terminate", response_model=AgentResponse)
@limiter.limit("60/minute")
async def terminate_agent(
    request: Request,
    workspace_id: str,
    agent_id: str,
    body: TerminateRequest,
    db: AsyncSession = Depends(get_db)
):
    """Terminate an agent (parent or mayor only) and release its beads."""
    return await AgentRegistry(db).terminate(workspace_id, agent_id, body.by_agent_id)
