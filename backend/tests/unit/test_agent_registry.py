"""
Tests for AgentRegistry.

Tests:
- Spawning, hierarchy depth and spawn permission
- Lifecycle transitions and concurrent transitions
- Termination rules and claim release
- File ownership
"""

import pytest

from coordinator.coordination import AgentRegistry, BeadStore
from coordinator.coordination.errors import (
    ConflictError,
    DepthExceededError,
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    UnknownParentError,
)
from coordinator.core.clock import utcnow
from coordinator.models.agent import Agent, AgentRole, AgentState
from coordinator.models.bead import Bead, BeadStatus, TestStatus


@pytest.mark.asyncio
class TestSpawn:

    async def test_spawn_root_mayor(self, test_db, workspace):
        registry = AgentRegistry(test_db)
        mayor = await registry.spawn(workspace.id, "mayor-1", AgentRole.MAYOR)

        assert mayor.state == AgentState.SPAWNED
        assert mayor.spawn_depth == 0
        assert mayor.can_spawn is True
        assert workspace.mayor_id == mayor.id

    async def test_child_depth_is_parent_plus_one(self, test_db, workspace, crew):
        assert crew["alice"].spawn_depth == crew["mayor"].spawn_depth + 1
        assert crew["alice"].parent_id == crew["mayor"].id

    async def test_specialist_cannot_spawn_by_default(self, test_db, workspace, crew):
        with pytest.raises(UnauthorizedError):
            await AgentRegistry(test_db).spawn(
                workspace.id, "helper", AgentRole.SPECIALIST, parent_id=crew["alice"].id
            )

    async def test_unknown_parent(self, test_db, workspace):
        with pytest.raises(UnknownParentError):
            await AgentRegistry(test_db).spawn(
                workspace.id, "orphan", AgentRole.SPECIALIST, parent_id="nope"
            )

    async def test_depth_limit(self, test_db, workspace):
        registry = AgentRegistry(test_db, max_spawn_depth=1)
        root = await registry.spawn(workspace.id, "root", AgentRole.WITNESS)
        child = await registry.spawn(
            workspace.id, "child", AgentRole.WITNESS, parent_id=root.id
        )

        with pytest.raises(DepthExceededError):
            await registry.spawn(
                workspace.id, "grandchild", AgentRole.SPECIALIST, parent_id=child.id
            )

    async def test_duplicate_name_conflicts(self, test_db, workspace, crew):
        with pytest.raises(ConflictError):
            await AgentRegistry(test_db).spawn(workspace.id, "alice", AgentRole.SPECIALIST)

    async def test_single_live_mayor(self, test_db, workspace, crew):
        with pytest.raises(ConflictError):
            await AgentRegistry(test_db).spawn(workspace.id, "mayor-2", AgentRole.MAYOR)

    async def test_children_and_listing(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)

        children = await registry.children(workspace.id, crew["mayor"].id)
        names = [agent.name for agent in await children.all()]
        assert set(names) == {"explorer-1", "alice", "carol", "reviewer-1"}

        specialists = await registry.list_by_workspace(workspace.id, role=AgentRole.SPECIALIST)
        assert await specialists.count() == 2

    async def test_resolve_by_name_or_id(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)
        assert (await registry.resolve(workspace.id, "alice")).id == crew["alice"].id
        assert (await registry.resolve(workspace.id, crew["alice"].id)).name == "alice"
        assert await registry.resolve(workspace.id, "nobody") is None


@pytest.mark.asyncio
class TestLifecycle:

    async def test_legal_transitions(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)
        alice_id = crew["alice"].id

        agent = await registry.transition(workspace.id, alice_id, AgentState.WORKING)
        assert agent.state == AgentState.WORKING
        agent = await registry.transition(workspace.id, alice_id, AgentState.BLOCKED)
        agent = await registry.transition(workspace.id, alice_id, AgentState.WORKING)
        agent = await registry.transition(workspace.id, alice_id, AgentState.COMPLETED)
        assert agent.state == AgentState.COMPLETED
        assert agent.version == 5

    async def test_illegal_transition(self, test_db, workspace, crew):
        with pytest.raises(InvalidTransitionError):
            await AgentRegistry(test_db).transition(
                workspace.id, crew["alice"].id, AgentState.COMPLETED
            )

    async def test_stale_transition_loses(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)
        alice_id = crew["alice"].id

        # A reader that saw version 1 before someone else moved the agent on
        stale = Agent(id=alice_id, version=1, state=AgentState.SPAWNED)
        await registry.transition(workspace.id, alice_id, AgentState.WORKING)

        assert await registry._compare_and_set_state(stale, AgentState.FAILED) is False
        assert (await registry.get(workspace.id, alice_id)).state == AgentState.WORKING

    async def test_get_unknown_agent(self, test_db, workspace):
        with pytest.raises(NotFoundError):
            await AgentRegistry(test_db).get(workspace.id, "missing")


@pytest.mark.asyncio
class TestTerminate:

    async def test_parent_terminates_child_and_releases_claims(self, test_db, workspace, crew):
        workspace_id = workspace.id
        alice_id = crew["alice"].id
        beads = BeadStore(test_db)
        bead = await beads.create(workspace_id, "Login form", crew["explorer"].id)
        await beads.claim(workspace_id, bead.id, alice_id)

        agent = await AgentRegistry(test_db).terminate(workspace_id, alice_id, crew["mayor"].id)

        assert agent.state == AgentState.TERMINATED
        released = await beads.get(workspace_id, bead.id)
        assert released.status == BeadStatus.PENDING
        assert released.assignee_id is None
        assert released.audit[-1]["action"] == "released"

    async def test_release_bumps_version(self, test_db, workspace, crew):
        workspace_id = workspace.id
        beads = BeadStore(test_db)
        bead = await beads.create(workspace_id, "Login form", crew["explorer"].id)
        claimed = await beads.claim(workspace_id, bead.id, crew["alice"].id)
        claimed_version = claimed.version

        await AgentRegistry(test_db).terminate(workspace_id, crew["alice"].id, crew["mayor"].id)

        released = await beads.get(workspace_id, bead.id)
        assert released.version == claimed_version + 1
        assert released.status_history[-1]["status"] == "pending"

    async def test_release_never_reopens_a_closed_bead(self, test_db, workspace, crew):
        workspace_id = workspace.id
        alice_id = crew["alice"].id
        beads = BeadStore(test_db)
        bead = await beads.create(workspace_id, "Login form", crew["explorer"].id)
        bead_id = bead.id
        await beads.claim(workspace_id, bead_id, alice_id)
        held = await beads.record_test(workspace_id, bead_id, alice_id, TestStatus.PASSED)

        # Snapshot read before the assignee's close lands
        stale = Bead(
            id=bead_id,
            version=held.version,
            status=BeadStatus.IN_PROGRESS,
            assignee_id=alice_id,
            status_history=list(held.status_history),
            audit=list(held.audit),
        )
        await beads.close(workspace_id, bead_id, alice_id, BeadStatus.DONE)

        registry = AgentRegistry(test_db)
        alice = await registry.get(workspace_id, alice_id)
        assert await registry._release(stale, alice, utcnow()) is False

        await registry.terminate(workspace_id, alice_id, crew["mayor"].id)

        closed = await beads.get(workspace_id, bead_id)
        assert closed.status == BeadStatus.DONE
        assert closed.assignee_id == alice_id
        assert closed.audit[-1]["action"] == "closed"

    async def test_sibling_cannot_terminate(self, test_db, workspace, crew):
        with pytest.raises(UnauthorizedError):
            await AgentRegistry(test_db).terminate(
                workspace.id, crew["alice"].id, crew["carol"].id
            )

    async def test_terminate_is_idempotent(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)
        await registry.terminate(workspace.id, crew["carol"].id, crew["mayor"].id)
        again = await registry.terminate(workspace.id, crew["carol"].id, crew["mayor"].id)
        assert again.state == AgentState.TERMINATED

    async def test_terminated_mayor_frees_the_role(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)
        witness = await registry.spawn(workspace.id, "witness-1", AgentRole.WITNESS)

        # The mayor holds authority over itself
        await registry.terminate(workspace.id, crew["mayor"].id, crew["mayor"].id)
        assert workspace.mayor_id is None

        mayor = await registry.spawn(
            workspace.id, "mayor-2", AgentRole.MAYOR, parent_id=witness.id
        )
        assert workspace.mayor_id == mayor.id

    async def test_terminated_parent_cannot_spawn(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)
        witness = await registry.spawn(
            workspace.id, "witness-1", AgentRole.WITNESS, parent_id=crew["mayor"].id
        )
        await registry.terminate(workspace.id, witness.id, crew["mayor"].id)

        with pytest.raises(UnknownParentError):
            await registry.spawn(
                workspace.id, "late-child", AgentRole.SPECIALIST, parent_id=witness.id
            )


@pytest.mark.asyncio
class TestOwnership:

    async def test_ownership_map(self, test_db, workspace, crew):
        owners = await AgentRegistry(test_db).ownership(workspace.id)
        assert owners == {"src/auth/**": "alice", "src/billing/**": "carol"}

    async def test_check_ownership_reports_overlaps(self, test_db, workspace, crew):
        conflicts = await AgentRegistry(test_db).check_ownership(
            workspace.id, ["src/auth/session.py"], exclude_agent_id=crew["carol"].id
        )

        assert len(conflicts) == 1
        assert conflicts[0]["agent_name"] == "alice"
        assert conflicts[0]["overlaps"] == ["src/auth/session.py"]

    async def test_terminated_agents_own_nothing(self, test_db, workspace, crew):
        registry = AgentRegistry(test_db)
        await registry.terminate(workspace.id, crew["alice"].id, crew["mayor"].id)

        assert await registry.check_ownership(workspace.id, ["src/auth/session.py"]) == []
