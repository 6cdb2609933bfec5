from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from coordinator.models.agent import AgentRole, AgentState
from coordinator.models.bead import BeadStatus, TestStatus
from coordinator.models.coordination import MessageType
from coordinator.models.merge_queue import (
    BuildStatus,
    MergeCondition,
    MergeStatus,
    ReviewStatus,
)
from coordinator.models.workspace import WorkspaceStatus


class ErrorResponse(BaseModel):
    detail: str
    code: str


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    working_directory: Optional[str] = None
    status: WorkspaceStatus
    mayor_id: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    closed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AgentResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    role: AgentRole
    model: Optional[str] = None
    parent_id: Optional[str] = None
    can_spawn: bool
    spawn_depth: int
    state: AgentState
    branch_ref: Optional[str] = None
    owned_paths: List[str] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BeadResponse(BaseModel):
    id: str
    workspace_id: str
    title: str
    description: str
    priority: int
    created_by: Optional[str] = None
    status: BeadStatus
    assignee_id: Optional[str] = None
    blocked_by: List[str] = []
    test_status: TestStatus
    test_command: Optional[str] = None
    test_output: Optional[str] = None
    test_run_at: Optional[datetime] = None
    test_runs: List[Dict[str, Any]] = []
    status_history: List[Dict[str, Any]] = []
    audit: List[Dict[str, Any]] = []
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: int
    workspace_id: str
    from_agent: str
    to_agent: str
    message_type: MessageType
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="payload")
    read: bool
    read_at: Optional[datetime] = None
    sent_at: datetime

    class Config:
        from_attributes = True


class ProgressEntryResponse(BaseModel):
    id: int
    workspace_id: str
    agent_id: str
    agent_name: str
    status: str
    completed: List[str] = []
    next: List[str] = Field(default_factory=list, validation_alias="next_steps")
    artifacts: List[str] = []
    blockers: List[str] = []
    recorded_at: datetime

    class Config:
        from_attributes = True


class MergeRequestResponse(BaseModel):
    id: str
    workspace_id: str
    agent_id: str
    branch_ref: str
    target_branch: str
    title: str
    description: str
    files_changed: List[str] = []
    bead_id: Optional[str] = None
    position: int
    conflicts_with: List[str] = []
    review_status: ReviewStatus
    reviewed_by: Optional[str] = None
    review_comments: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    build_status: BuildStatus
    build_output: Optional[str] = None
    build_checked_at: Optional[datetime] = None
    merge_status: MergeStatus
    rejection_reason: Optional[str] = None
    merged_at: Optional[datetime] = None
    last_activity_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True


class MergeAttemptResponse(BaseModel):
    merged: bool
    unmet: List[MergeCondition] = []
    merge_request: MergeRequestResponse


class PatrolReportResponse(BaseModel):
    workspace_id: str
    timestamp: datetime
    healthy: List[str] = []
    stuck: List[str] = []
    blocked: List[str] = []
    stalled_merges: List[str] = []
    nudges_sent: int = 0
    escalations_sent: int = 0

    class Config:
        from_attributes = True
