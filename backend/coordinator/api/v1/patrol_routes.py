"""
Patrol API routes.

Provides endpoints for:
- Running an on-demand patrol pass
- Reading the most recent patrol report
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.database import get_db
from coordinator.coordination.health_monitor import PatrolMonitor
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.rate_limiter import limiter
from coordinator.schemas.coordination import PatrolReportResponse

router = APIRouter(prefix="/workspaces/{workspace_id}/patrol", tags=["patrol"])


@router.post("/run", response_model=PatrolReportResponse)
@limiter.limit("30/minute")
async def run_patrol_pass(
    request: Request,
    workspace_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Run one classification pass now, outside the background cadence."""
    return await PatrolMonitor(db).run_pass(workspace_id)


@router.get("", response_model=PatrolReportResponse)
async def get_last_report(workspace_id: str, db: AsyncSession = Depends(get_db)):
    await WorkspaceManager(db).get(workspace_id)
    report = PatrolMonitor(db).last_report(workspace_id)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No patrol pass has run for workspace {workspace_id}")
    return report
