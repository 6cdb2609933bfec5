from coordinator.schemas.coordination import (
    ErrorResponse,
    WorkspaceResponse,
    AgentResponse,
    BeadResponse,
    MessageResponse,
    ProgressEntryResponse,
    MergeRequestResponse,
    MergeAttemptResponse,
    PatrolReportResponse,
)

__all__ = [
    "ErrorResponse",
    "WorkspaceResponse",
    "AgentResponse",
    "BeadResponse",
    "MessageResponse",
    "ProgressEntryResponse",
    "MergeRequestResponse",
    "MergeAttemptResponse",
    "PatrolReportResponse",
]
