from fastapi import APIRouter
from coordinator.api.v1 import (
    workspace_routes,
    agent_routes,
    bead_routes,
    message_routes,
    progress_routes,
    merge_queue_routes,
    patrol_routes,
)

api_router = APIRouter()
api_router.include_router(workspace_routes.router)
api_router.include_router(agent_routes.router)
api_router.include_router(bead_routes.router)
api_router.include_router(message_routes.router)
api_router.include_router(progress_routes.router)
api_router.include_router(merge_queue_routes.router)
api_router.include_router(patrol_routes.router)
