"""
Coordination package for the agent coordinator.

Provides:
- WorkspaceManager: Workspace lifecycle and statistics
- AgentRegistry: Agent identity, hierarchy and lifecycle
- BeadStore: Work units with exclusive claims and a test gate
- MessageBus: Inter-agent message passing
- MergeQueue: Review/build gated merges
- ProgressLedger: Append-only progress snapshots
- PatrolMonitor / PatrolLoop: Stuck/blocked detection and escalation
"""

from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.coordination.agent_registry import AgentRegistry
from coordinator.coordination.bead_store import BeadStore
from coordinator.coordination.message_bus import MessageBus
from coordinator.coordination.merge_queue import MergeQueue, MergeAttempt
from coordinator.coordination.progress_ledger import ProgressLedger
from coordinator.coordination.health_monitor import (
    PatrolMonitor,
    PatrolLoop,
    PatrolReport,
    PatrolState,
    patrol_state,
)

__all__ = [
    "WorkspaceManager",
    "AgentRegistry",
    "BeadStore",
    "MessageBus",
    "MergeQueue",
    "MergeAttempt",
    "ProgressLedger",
    "PatrolMonitor",
    "PatrolLoop",
    "PatrolReport",
    "PatrolState",
    "patrol_state",
]
