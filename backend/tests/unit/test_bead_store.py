"""
Tests for BeadStore.

Tests:
- Creation permissions and dependency ordering
- Exclusive claims
- Test gate on done
- Status edges and audit trail
"""

import pytest

from coordinator.coordination import BeadStore
from coordinator.coordination.errors import (
    AlreadyClaimedError,
    ConflictError,
    InvalidTransitionError,
    NotAssigneeError,
    TestGateNotMetError,
    UnauthorizedError,
)
from coordinator.models.bead import Bead, BeadStatus, TestStatus


@pytest.fixture
def store(test_db):
    return BeadStore(test_db)


@pytest.mark.asyncio
class TestCreate:

    async def test_explorer_creates_pending_bead(self, store, workspace, crew):
        bead = await store.create(
            workspace.id, "Login form", crew["explorer"].id,
            description="Email + password", priority=2, test_command="pytest tests/auth",
        )

        assert bead.status == BeadStatus.PENDING
        assert bead.assignee_id is None
        assert bead.test_status == TestStatus.PENDING
        assert bead.status_history[0]["status"] == "pending"
        assert bead.audit[0]["action"] == "created"

    async def test_specialist_cannot_create(self, store, workspace, crew):
        with pytest.raises(UnauthorizedError):
            await store.create(workspace.id, "Sneaky", crew["alice"].id)

    async def test_next_available_respects_priority_and_dependencies(self, store, workspace, crew):
        explorer_id = crew["explorer"].id
        schema = await store.create(workspace.id, "Schema", explorer_id, priority=5)
        await store.create(workspace.id, "API", explorer_id, priority=1, blocked_by=[schema.id])

        # API has higher priority but waits on Schema
        assert (await store.next_available(workspace.id)).id == schema.id

    async def test_list_filters(self, store, workspace, crew):
        first = await store.create(workspace.id, "One", crew["explorer"].id)
        await store.create(workspace.id, "Two", crew["explorer"].id)
        await store.claim(workspace.id, first.id, crew["alice"].id)

        held = await store.list(workspace.id, assignee_id=crew["alice"].id)
        pending = await store.list(workspace.id, status=BeadStatus.PENDING)

        assert [b.title for b in await held.all()] == ["One"]
        assert [b.title for b in await pending.all()] == ["Two"]


@pytest.mark.asyncio
class TestClaimAndClose:

    async def test_claim_test_close_flow(self, store, workspace, crew):
        """A claims, C is refused, A records a passing test and closes as done."""
        workspace_id = workspace.id
        alice_id, carol_id = crew["alice"].id, crew["carol"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        bead_id = bead.id

        claimed = await store.claim(workspace_id, bead_id, alice_id)
        assert claimed.status == BeadStatus.IN_PROGRESS
        assert claimed.assignee_id == alice_id

        with pytest.raises(AlreadyClaimedError):
            await store.claim(workspace_id, bead_id, carol_id)

        await store.record_test(workspace_id, bead_id, alice_id, TestStatus.PASSED, "pytest", "3 passed")
        done = await store.close(workspace_id, bead_id, alice_id, BeadStatus.DONE)

        assert done.status == BeadStatus.DONE
        assert done.assignee_id == alice_id
        assert done.closed_at is not None
        assert [h["status"] for h in done.status_history] == ["pending", "in_progress", "done"]

    async def test_reclaim_by_holder_is_noop(self, store, workspace, crew):
        bead = await store.create(workspace.id, "Login form", crew["explorer"].id)
        first = await store.claim(workspace.id, bead.id, crew["alice"].id)
        version = first.version

        again = await store.claim(workspace.id, bead.id, crew["alice"].id)
        assert again.version == version

    async def test_reclaim_of_own_blocked_bead_is_noop(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        bead_id = bead.id
        await store.claim(workspace_id, bead_id, alice_id)
        blocked = await store.set_status(workspace_id, bead_id, alice_id, BeadStatus.BLOCKED)
        version = blocked.version

        again = await store.claim(workspace_id, bead_id, alice_id)

        assert again.status == BeadStatus.BLOCKED
        assert again.assignee_id == alice_id
        assert again.version == version

        with pytest.raises(AlreadyClaimedError):
            await store.claim(workspace_id, bead_id, crew["carol"].id)

    async def test_done_requires_passing_test(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, alice_id)
        await store.record_test(workspace_id, bead.id, alice_id, TestStatus.FAILED, output="1 failed")

        with pytest.raises(TestGateNotMetError):
            await store.close(workspace_id, bead.id, alice_id, BeadStatus.DONE)

        assert (await store.get(workspace_id, bead.id)).status == BeadStatus.IN_PROGRESS

    async def test_skipped_test_satisfies_gate(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Docs", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, alice_id)
        await store.record_test(workspace_id, bead.id, alice_id, TestStatus.SKIPPED)

        done = await store.close(workspace_id, bead.id, alice_id, BeadStatus.DONE)
        assert done.status == BeadStatus.DONE

    async def test_failed_bead_can_be_reclaimed(self, store, workspace, crew):
        workspace_id = workspace.id
        bead = await store.create(workspace_id, "Flaky", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, crew["alice"].id)
        await store.close(workspace_id, bead.id, crew["alice"].id, BeadStatus.FAILED)

        reclaimed = await store.claim(workspace_id, bead.id, crew["carol"].id)

        assert reclaimed.status == BeadStatus.IN_PROGRESS
        assert reclaimed.assignee_id == crew["carol"].id
        assert reclaimed.test_status == TestStatus.PENDING

    async def test_done_bead_cannot_be_claimed(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, alice_id)
        await store.record_test(workspace_id, bead.id, alice_id, TestStatus.PASSED)
        await store.close(workspace_id, bead.id, alice_id, BeadStatus.DONE)

        with pytest.raises(InvalidTransitionError):
            await store.claim(workspace_id, bead.id, crew["carol"].id)

    async def test_close_same_status_is_noop(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, alice_id)
        failed = await store.close(workspace_id, bead.id, alice_id, BeadStatus.FAILED)
        version = failed.version

        again = await store.close(workspace_id, bead.id, alice_id, BeadStatus.FAILED)
        assert again.version == version

    async def test_non_assignee_cannot_close(self, store, workspace, crew):
        bead = await store.create(workspace.id, "Login form", crew["explorer"].id)
        await store.claim(workspace.id, bead.id, crew["alice"].id)

        with pytest.raises(NotAssigneeError):
            await store.close(workspace.id, bead.id, crew["carol"].id, BeadStatus.FAILED)

    async def test_mayor_may_close_any_bead(self, store, workspace, crew):
        bead = await store.create(workspace.id, "Login form", crew["explorer"].id)
        await store.claim(workspace.id, bead.id, crew["alice"].id)

        closed = await store.close(workspace.id, bead.id, crew["mayor"].id, BeadStatus.FAILED)
        assert closed.status == BeadStatus.FAILED

    async def test_stale_compare_and_set_loses(self, store, workspace, crew):
        bead = await store.create(workspace.id, "Login form", crew["explorer"].id)
        await store.claim(workspace.id, bead.id, crew["alice"].id)

        # A reader that saw version 1, before the claim
        stale = Bead(id=bead.id, version=1)
        assert await store._compare_and_set(stale, assignee_id=crew["carol"].id) is False
        assert (await store.get(workspace.id, bead.id)).assignee_id == crew["alice"].id

    async def test_repeated_test_result_is_noop(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, alice_id)

        await store.record_test(workspace_id, bead.id, alice_id, TestStatus.FAILED, "pytest", "1 failed")
        await store.record_test(workspace_id, bead.id, alice_id, TestStatus.FAILED, "pytest", "1 failed")
        latest = await store.record_test(workspace_id, bead.id, alice_id, TestStatus.PASSED, "pytest", "ok")

        assert [run["status"] for run in latest.test_runs] == ["failed", "passed"]
        assert latest.status == BeadStatus.IN_PROGRESS


@pytest.mark.asyncio
class TestSetStatus:

    async def test_block_and_resume(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, alice_id)

        blocked = await store.set_status(workspace_id, bead.id, alice_id, BeadStatus.BLOCKED)
        assert blocked.status == BeadStatus.BLOCKED
        resumed = await store.set_status(workspace_id, bead.id, alice_id, BeadStatus.IN_PROGRESS)
        assert resumed.status == BeadStatus.IN_PROGRESS

    async def test_release_to_pending_clears_assignee(self, store, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        bead = await store.create(workspace_id, "Login form", crew["explorer"].id)
        await store.claim(workspace_id, bead.id, alice_id)

        released = await store.set_status(workspace_id, bead.id, alice_id, BeadStatus.PENDING)

        assert released.assignee_id is None
        assert released.audit[-1]["action"] == "released"

    async def test_pending_to_blocked_is_invalid(self, store, workspace, crew):
        bead = await store.create(workspace.id, "Login form", crew["explorer"].id)

        with pytest.raises(InvalidTransitionError):
            await store.set_status(workspace.id, bead.id, crew["mayor"].id, BeadStatus.BLOCKED)

    async def test_set_status_done_uses_test_gate(self, store, workspace, crew):
        bead = await store.create(workspace.id, "Login form", crew["explorer"].id)
        await store.claim(workspace.id, bead.id, crew["alice"].id)

        with pytest.raises(TestGateNotMetError):
            await store.set_status(workspace.id, bead.id, crew["alice"].id, BeadStatus.DONE)


@pytest.mark.asyncio
class TestConcurrentClaims:

    async def test_second_session_loses_claim(self, session_factory, workspace, crew):
        """Two sessions read the same pending bead; only one claim lands."""
        workspace_id = workspace.id
        alice_id, carol_id = crew["alice"].id, crew["carol"].id

        async with session_factory() as setup:
            bead = await BeadStore(setup).create(workspace_id, "Race", crew["explorer"].id)
            bead_id = bead.id

        async with session_factory() as first, session_factory() as second:
            first_store, second_store = BeadStore(first), BeadStore(second)
            seen_by_second = await second_store.get(workspace_id, bead_id)
            assert seen_by_second.status == BeadStatus.PENDING

            await first_store.claim(workspace_id, bead_id, alice_id)

            # second still holds version 1 of the bead in memory
            applied = await second_store._compare_and_set(
                seen_by_second, status=BeadStatus.IN_PROGRESS, assignee_id=carol_id,
            )
            assert applied is False

            with pytest.raises((AlreadyClaimedError, ConflictError)):
                await second_store.claim(workspace_id, bead_id, carol_id)
