from coordinator.models.base import Base, TimestampMixin, VersionedMixin
from coordinator.models.workspace import Workspace, WorkspaceStatus
from coordinator.models.agent import (
    Agent,
    AgentRole,
    AgentState,
    AGENT_TRANSITIONS,
)
from coordinator.models.bead import Bead, BeadStatus, TestStatus
from coordinator.models.coordination import (
    AgentMessage,
    MessageType,
    ProgressEntry,
)
from coordinator.models.merge_queue import (
    MergeRequest,
    ReviewStatus,
    BuildStatus,
    MergeStatus,
    MergeCondition,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "VersionedMixin",
    "Workspace",
    "WorkspaceStatus",
    "Agent",
    "AgentRole",
    "AgentState",
    "AGENT_TRANSITIONS",
    "Bead",
    "BeadStatus",
    "TestStatus",
    "AgentMessage",
    "MessageType",
    "ProgressEntry",
    "MergeRequest",
    "ReviewStatus",
    "BuildStatus",
    "MergeStatus",
    "MergeCondition",
]
