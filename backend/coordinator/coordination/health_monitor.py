"""
Patrol: periodic health classification of agents and merge requests.

Detects:
- Stuck agents (no progress within the liveness window)
- Blocked agents (unread blocker message to or from the agent)
- Stalled merge requests (queued with no activity past the staleness threshold)

Stuck agents get a nudge every pass. Agents stuck or blocked for
``escalation_threshold`` consecutive passes, and stalled merges, are
escalated to the mayor at most once per cool-down window.

The patrol only reads state and writes messages plus its own heartbeat
progress entry. It never claims, closes or transitions anything.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.config import Settings, settings as default_settings
from coordinator.coordination.agent_registry import AgentRegistry
from coordinator.coordination.merge_queue import MergeQueue
from coordinator.coordination.message_bus import MessageBus
from coordinator.coordination.progress_ledger import ProgressLedger
from coordinator.coordination.workspaces import WorkspaceManager
from coordinator.core.clock import utcnow
from coordinator.models.agent import Agent, AgentRole, AgentState
from coordinator.models.coordination import MessageType, ProgressEntry
from coordinator.models.workspace import WorkspaceStatus
from coordinator.observability.metrics import (
    patrol_escalations_total,
    patrol_nudges_total,
    record_patrol_pass,
    record_patrol_report,
)

logger = logging.getLogger(__name__)

# Agents in these states are expected to be making progress
CLASSIFIED_STATES = frozenset({AgentState.SPAWNED, AgentState.WORKING, AgentState.BLOCKED})

ESCALATION_RECIPIENT = AgentRole.MAYOR.value


@dataclass
class PatrolReport:
    workspace_id: str
    timestamp: datetime
    healthy: List[str] = field(default_factory=list)
    stuck: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    stalled_merges: List[str] = field(default_factory=list)
    nudges_sent: int = 0
    escalations_sent: int = 0

    @property
    def summary(self) -> str:
        return (
            f"Patrol: {len(self.healthy)} healthy, {len(self.stuck)} stuck, "
            f"{len(self.blocked)} blocked, {len(self.stalled_merges)} stalled merge(s)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "timestamp": self.timestamp.isoformat(),
            "healthy": self.healthy,
            "stuck": self.stuck,
            "blocked": self.blocked,
            "stalled_merges": self.stalled_merges,
            "nudges_sent": self.nudges_sent,
            "escalations_sent": self.escalations_sent,
        }


@dataclass
class PatrolState:
    """
    Memory carried between passes, keyed by (workspace_id, subject_id).

    Subjects are agent ids, or merge request ids for stalled merges.
    """
    streaks: Dict[Tuple[str, str], int] = field(default_factory=dict)
    last_escalation: Dict[Tuple[str, str], datetime] = field(default_factory=dict)
    reports: Dict[str, PatrolReport] = field(default_factory=dict)

    def forget_missing(self, workspace_id: str, live_subjects: set) -> None:
        for key in [k for k in self.streaks if k[0] == workspace_id and k[1] not in live_subjects]:
            del self.streaks[key]


# Shared by the background loop and on-demand passes from the API
patrol_state = PatrolState()


class PatrolMonitor:
    """
    One classification pass over a workspace.

    ``now`` is explicit so passes are deterministic; the background loop
    passes the wall clock.
    """

    def __init__(
        self,
        db: AsyncSession,
        state: Optional[PatrolState] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.state = state if state is not None else patrol_state
        self.config = config or default_settings

        self.workspaces = WorkspaceManager(db)
        self.agents = AgentRegistry(db)
        self.bus = MessageBus(db)
        self.ledger = ProgressLedger(db)
        self.merge_queue = MergeQueue(db)

    def last_report(self, workspace_id: str) -> Optional[PatrolReport]:
        return self.state.reports.get(workspace_id)

    def _is_patrol_name(self, name: str) -> bool:
        base = self.config.patrol_agent_name
        if name == base:
            return True
        prefix, _, suffix = name.rpartition("-")
        return prefix == base and suffix.isdigit()

    async def _patrol_agent(self, workspace_id: str) -> Agent:
        """
        The patrol's own live deacon identity.

        A terminated patrol keeps its name, so a replacement is spawned
        under the next free ``<name>-<n>``. Agents of other roles that
        happen to use the name are never adopted.
        """
        deacons = await self.agents.holders_of_role(workspace_id, AgentRole.DEACON)
        for agent in deacons:
            if self._is_patrol_name(agent.name):
                return agent

        name = self.config.patrol_agent_name
        suffix = 1
        while await self.agents.resolve(workspace_id, name) is not None:
            suffix += 1
            name = f"{self.config.patrol_agent_name}-{suffix}"

        agent = await self.agents.spawn(workspace_id, name, AgentRole.DEACON, model="patrol")
        logger.info(f"Patrol agent {name} created in workspace {workspace_id}")
        return agent

    def _may_escalate(self, key: Tuple[str, str], now: datetime) -> bool:
        last = self.state.last_escalation.get(key)
        if last is None:
            return True
        cooldown = self.config.effective_escalation_cooldown_seconds
        return (now - last).total_seconds() >= cooldown

    async def run_pass(self, workspace_id: str, now: Optional[datetime] = None) -> PatrolReport:
        """Classify every live agent, nudge, escalate and log a heartbeat."""
        now = now or utcnow()
        await self.workspaces.require_active(workspace_id)
        patrol = await self._patrol_agent(workspace_id)

        agents = await self.agents.list_by_workspace(workspace_id, include_terminated=False)
        live_agents = [agent for agent in await agents.all() if agent.id != patrol.id]
        latest = await self.ledger.latest_by_agent(workspace_id)

        blocker_refs = set()
        for message in await self.bus.unread_blockers(workspace_id):
            blocker_refs.add(message.from_agent)
            blocker_refs.add(message.to_agent)

        window = timedelta(seconds=self.config.liveness_window_seconds)
        report = PatrolReport(workspace_id=workspace_id, timestamp=now)

        for agent in live_agents:
            key = (workspace_id, agent.id)

            if agent.state not in CLASSIFIED_STATES:
                report.healthy.append(agent.id)
                self.state.streaks.pop(key, None)
                continue

            entry = latest.get(agent.id)
            last_seen = entry.recorded_at if entry is not None else agent.created_at
            is_blocked = agent.name in blocker_refs or agent.id in blocker_refs
            is_stuck = (
                not is_blocked
                and agent.state != AgentState.BLOCKED
                and last_seen < now - window
            )

            if not (is_blocked or is_stuck):
                report.healthy.append(agent.id)
                self.state.streaks.pop(key, None)
                continue

            streak = self.state.streaks.get(key, 0) + 1
            self.state.streaks[key] = streak

            if is_blocked:
                report.blocked.append(agent.id)
            else:
                report.stuck.append(agent.id)
                await self._nudge(workspace_id, patrol, agent, now - last_seen)
                report.nudges_sent += 1

            if streak >= self.config.escalation_threshold and self._may_escalate(key, now):
                await self._escalate_agent(
                    workspace_id, patrol, agent, entry,
                    "blocked" if is_blocked else "stuck",
                    now - last_seen, streak,
                )
                self.state.last_escalation[key] = now
                report.escalations_sent += 1

        self.state.forget_missing(workspace_id, {agent.id for agent in live_agents})

        stalled = await self.merge_queue.stale(
            workspace_id, now, self.config.merge_staleness_seconds
        )
        for merge_request in stalled:
            report.stalled_merges.append(merge_request.id)
            key = (workspace_id, merge_request.id)
            if self._may_escalate(key, now):
                await self._escalate_merge(workspace_id, patrol, merge_request, now)
                self.state.last_escalation[key] = now
                report.escalations_sent += 1

        # Heartbeat; commits the pass's messages with it
        await self.ledger.append(
            workspace_id,
            patrol.id,
            report.summary,
            completed=[f"classified {len(live_agents)} agent(s)"],
            artifacts=[],
        )

        self.state.reports[workspace_id] = report
        record_patrol_pass("ok")
        record_patrol_report(
            workspace_id, len(report.healthy), len(report.stuck), len(report.blocked)
        )
        logger.info(f"{report.summary} in workspace {workspace_id}")
        return report

    async def _nudge(self, workspace_id: str, patrol: Agent, agent: Agent,
                     silence: timedelta) -> None:
        await self.bus.send(
            workspace_id,
            patrol.name,
            agent.id,
            MessageType.NUDGE,
            f"No progress from {agent.name} for {int(silence.total_seconds())}s; "
            f"please report status",
            metadata={"agent_id": agent.id, "elapsed_seconds": silence.total_seconds()},
            commit=False,
        )
        patrol_nudges_total.inc()
        logger.info(f"Nudged stuck agent {agent.name}")

    async def _escalate_agent(
        self,
        workspace_id: str,
        patrol: Agent,
        agent: Agent,
        entry: Optional[ProgressEntry],
        classification: str,
        elapsed: timedelta,
        streak: int,
    ) -> None:
        last_status = entry.status if entry is not None else None
        await self.bus.send(
            workspace_id,
            patrol.name,
            ESCALATION_RECIPIENT,
            MessageType.ESCALATION,
            f"Agent {agent.name} has been {classification} for {streak} consecutive "
            f"patrol passes ({int(elapsed.total_seconds())}s since last progress). "
            f"Last status: {last_status or 'none'}",
            metadata={
                "agent_id": agent.id,
                "agent_name": agent.name,
                "classification": classification,
                "elapsed_seconds": elapsed.total_seconds(),
                "last_status": last_status,
                "consecutive_passes": streak,
            },
            commit=False,
        )
        patrol_escalations_total.labels(kind=classification).inc()
        logger.warning(f"Escalated {classification} agent {agent.name} to mayor")

    async def _escalate_merge(self, workspace_id: str, patrol: Agent, merge_request,
                              now: datetime) -> None:
        idle = now - merge_request.last_activity_at
        await self.bus.send(
            workspace_id,
            patrol.name,
            ESCALATION_RECIPIENT,
            MessageType.ESCALATION,
            f"Merge request '{merge_request.title}' has been queued without activity "
            f"for {int(idle.total_seconds())}s (review: {merge_request.review_status.value}, "
            f"build: {merge_request.build_status.value})",
            metadata={
                "merge_request_id": merge_request.id,
                "agent_id": merge_request.agent_id,
                "elapsed_seconds": idle.total_seconds(),
                "unmet": [c.value for c in merge_request.unmet_conditions()],
            },
            commit=False,
        )
        patrol_escalations_total.labels(kind="stalled_merge").inc()
        logger.warning(f"Escalated stalled merge request {merge_request.id} to mayor")


class PatrolLoop:
    """
    Background task running a patrol pass over every active workspace
    each interval. A failing workspace is logged and retried next cycle.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        interval_seconds: Optional[float] = None,
        state: Optional[PatrolState] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.config = config or default_settings
        self.interval_seconds = interval_seconds or self.config.patrol_interval_seconds
        self.state = state if state is not None else patrol_state
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> List[PatrolReport]:
        async with self.session_factory() as db:
            workspaces = await WorkspaceManager(db).list(status=WorkspaceStatus.ACTIVE).all()
            workspace_ids = [workspace.id for workspace in workspaces]

        reports = []
        for workspace_id in workspace_ids:
            async with self.session_factory() as db:
                try:
                    monitor = PatrolMonitor(db, state=self.state, config=self.config)
                    reports.append(await monitor.run_pass(workspace_id))
                except Exception:
                    await db.rollback()
                    record_patrol_pass("error")
                    logger.exception(f"Patrol pass failed for workspace {workspace_id}")
        return reports

    async def _run(self) -> None:
        logger.info(f"Patrol loop started (interval {self.interval_seconds}s)")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                record_patrol_pass("error")
                logger.exception("Patrol cycle failed; retrying next interval")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Patrol loop stopped")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
