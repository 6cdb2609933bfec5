"""
Tests for MergeQueue.

Tests:
- Submission, ordering and overlap detection
- Review / build gates and the merge decision
- Atomic bead closing on merge
- Reject and stall
"""

import pytest

from coordinator.coordination import AgentRegistry, BeadStore, MergeQueue, MessageBus
from coordinator.coordination.errors import (
    ConflictError,
    InvalidTransitionError,
    NotAReviewerError,
    TestGateNotMetError,
    UnauthorizedError,
)
from coordinator.coordination.merge_queue import MERGE_QUEUE_SENDER
from coordinator.models.agent import AgentState
from coordinator.models.bead import BeadStatus, TestStatus
from coordinator.models.coordination import MessageType
from coordinator.models.merge_queue import (
    BuildStatus,
    MergeCondition,
    MergeStatus,
    ReviewStatus,
)


@pytest.fixture
def queue(test_db):
    return MergeQueue(test_db)


async def approve_and_pass(queue, workspace_id, mr_id, reviewer_id):
    await queue.set_review(workspace_id, mr_id, reviewer_id, ReviewStatus.APPROVED, "LGTM")
    await queue.set_build(workspace_id, mr_id, BuildStatus.PASSED, "all green")


@pytest.mark.asyncio
class TestSubmit:

    async def test_submit_queues_in_order(self, queue, workspace, crew):
        first = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        second = await queue.submit(
            workspace.id, crew["carol"].id, "feature/carol", "Invoices", ["src/billing/invoice.py"]
        )

        assert first.merge_status == MergeStatus.QUEUED
        assert first.review_status == ReviewStatus.PENDING
        assert first.build_status == BuildStatus.PENDING
        assert second.position == first.position + 1
        assert first.conflicts_with == [] and second.conflicts_with == []

    async def test_reviewer_cannot_submit(self, queue, workspace, crew):
        with pytest.raises(UnauthorizedError):
            await queue.submit(workspace.id, crew["reviewer"].id, "x", "Nope", [])

    async def test_overlap_recorded_and_blocker_sent(self, test_db, queue, workspace, crew):
        first = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/shared/util.py"]
        )
        second = await queue.submit(
            workspace.id, crew["carol"].id, "feature/carol", "Invoices", ["src/shared/util.py"]
        )

        assert second.conflicts_with == [first.id]
        assert (await queue.get(workspace.id, first.id)).conflicts_with == [second.id]

        blockers = await MessageBus(test_db).unread_blockers(workspace.id)
        assert len(blockers) == 1
        assert blockers[0].from_agent == MERGE_QUEUE_SENDER
        assert blockers[0].to_agent == "carol"


@pytest.mark.asyncio
class TestMerge:

    async def test_awaiting_review(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        await queue.set_build(workspace.id, mr.id, BuildStatus.PASSED)

        attempt = await queue.try_merge(workspace.id, mr.id)

        assert attempt.merged is False
        assert attempt.unmet == [MergeCondition.AWAITING_REVIEW]
        assert attempt.merge_request.merge_status == MergeStatus.QUEUED

    async def test_awaiting_both_gates(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        attempt = await queue.try_merge(workspace.id, mr.id)
        assert attempt.unmet == [MergeCondition.AWAITING_REVIEW, MergeCondition.AWAITING_BUILD]

    async def test_changes_requested_blocks_merge(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        await queue.set_review(
            workspace.id, mr.id, crew["reviewer"].id, ReviewStatus.CHANGES_REQUESTED, "needs tests"
        )
        await queue.set_build(workspace.id, mr.id, BuildStatus.PASSED)

        attempt = await queue.try_merge(workspace.id, mr.id)
        assert attempt.merged is False
        assert attempt.unmet == [MergeCondition.AWAITING_REVIEW]

    async def test_specialist_cannot_review(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        with pytest.raises(NotAReviewerError):
            await queue.set_review(workspace.id, mr.id, crew["carol"].id, ReviewStatus.APPROVED)

    async def test_merge_closes_bead_atomically(self, test_db, queue, workspace, crew):
        workspace_id, alice_id = workspace.id, crew["alice"].id
        beads = BeadStore(test_db)
        bead = await beads.create(workspace_id, "Login", crew["explorer"].id)
        await beads.claim(workspace_id, bead.id, alice_id)
        await beads.record_test(workspace_id, bead.id, alice_id, TestStatus.PASSED)

        mr = await queue.submit(
            workspace_id, alice_id, "feature/alice", "Login", ["src/auth/login.py"],
            bead_id=bead.id,
        )
        await approve_and_pass(queue, workspace_id, mr.id, crew["reviewer"].id)

        attempt = await queue.try_merge(workspace_id, mr.id)

        assert attempt.merged is True
        assert attempt.merge_request.merge_status == MergeStatus.MERGED
        assert attempt.merge_request.merged_at is not None
        assert (await beads.get(workspace_id, bead.id)).status == BeadStatus.DONE

    async def test_bead_test_gate_rolls_back_merge(self, test_db, queue, workspace, crew):
        workspace_id, alice_id, reviewer_id = workspace.id, crew["alice"].id, crew["reviewer"].id
        beads = BeadStore(test_db)
        bead = await beads.create(workspace_id, "Login", crew["explorer"].id)
        bead_id = bead.id
        await beads.claim(workspace_id, bead_id, alice_id)

        mr = await queue.submit(
            workspace_id, alice_id, "feature/alice", "Login", ["src/auth/login.py"],
            bead_id=bead_id,
        )
        mr_id = mr.id
        await approve_and_pass(queue, workspace_id, mr_id, reviewer_id)

        with pytest.raises(TestGateNotMetError):
            await queue.try_merge(workspace_id, mr_id)

        assert (await queue.get(workspace_id, mr_id)).merge_status == MergeStatus.QUEUED
        assert (await beads.get(workspace_id, bead_id)).status == BeadStatus.IN_PROGRESS

    async def test_merged_request_is_terminal(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        await approve_and_pass(queue, workspace.id, mr.id, crew["reviewer"].id)
        await queue.try_merge(workspace.id, mr.id)

        with pytest.raises(InvalidTransitionError):
            await queue.try_merge(workspace.id, mr.id)
        with pytest.raises(InvalidTransitionError):
            await queue.set_build(workspace.id, mr.id, BuildStatus.FAILED)

    async def test_merge_drops_conflicts_and_notifies_working_agents(
        self, test_db, queue, workspace, crew
    ):
        workspace_id = workspace.id
        await AgentRegistry(test_db).transition(workspace_id, crew["carol"].id, AgentState.WORKING)

        first = await queue.submit(
            workspace_id, crew["alice"].id, "feature/alice", "Login", ["src/shared/util.py"]
        )
        second = await queue.submit(
            workspace_id, crew["carol"].id, "feature/carol", "Invoices", ["src/shared/util.py"]
        )
        await approve_and_pass(queue, workspace_id, first.id, crew["reviewer"].id)

        await queue.try_merge(workspace_id, first.id)

        assert (await queue.get(workspace_id, second.id)).conflicts_with == []
        notices = await MessageBus(test_db).list(
            workspace_id, to_agent="carol", message_type=MessageType.STATUS
        )
        contents = [m.content for m in await notices.all()]
        assert len(contents) == 1
        assert "rebase feature/carol" in contents[0]


@pytest.mark.asyncio
class TestRejectAndStall:

    async def test_reject(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        rejected = await queue.reject(workspace.id, mr.id, crew["reviewer"].id, "out of scope")

        assert rejected.merge_status == MergeStatus.REJECTED
        assert rejected.rejection_reason == "out of scope"
        with pytest.raises(InvalidTransitionError):
            await queue.set_review(workspace.id, mr.id, crew["reviewer"].id, ReviewStatus.APPROVED)

    async def test_specialist_cannot_reject(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        with pytest.raises(UnauthorizedError):
            await queue.reject(workspace.id, mr.id, crew["carol"].id, "mine is better")

    async def test_stall_and_resume_on_gate_update(self, queue, workspace, crew):
        mr = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        stalled = await queue.mark_stalled(workspace.id, mr.id, crew["mayor"].id)
        assert stalled.merge_status == MergeStatus.STALLED

        again = await queue.mark_stalled(workspace.id, mr.id, crew["mayor"].id)
        assert again.merge_status == MergeStatus.STALLED

        resumed = await queue.set_build(workspace.id, mr.id, BuildStatus.PASSED)
        assert resumed.merge_status == MergeStatus.QUEUED

    async def test_list_by_status(self, queue, workspace, crew):
        first = await queue.submit(
            workspace.id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
        )
        await queue.submit(
            workspace.id, crew["carol"].id, "feature/carol", "Invoices", ["src/billing/a.py"]
        )
        await queue.reject(workspace.id, first.id, crew["mayor"].id, "dup")

        queued = await queue.list(workspace.id, merge_status=MergeStatus.QUEUED)
        assert [mr.title for mr in await queued.all()] == ["Invoices"]


@pytest.mark.asyncio
class TestConcurrentGates:

    async def test_stale_build_update_loses_to_review(
        self, session_factory, workspace, crew, monkeypatch
    ):
        """Two sessions read the same request; the later gate write must not overwrite."""
        workspace_id = workspace.id
        reviewer_id = crew["reviewer"].id

        async with session_factory() as setup:
            merge_request = await MergeQueue(setup).submit(
                workspace_id, crew["alice"].id, "feature/alice", "Login", ["src/auth/login.py"]
            )
            mr_id = merge_request.id

        async with session_factory() as first, session_factory() as second:
            first_queue, second_queue = MergeQueue(first), MergeQueue(second)
            seen_by_second = await second_queue.get(workspace_id, mr_id)
            seen_version = seen_by_second.version

            await first_queue.set_review(workspace_id, mr_id, reviewer_id, ReviewStatus.APPROVED)

            # second still holds the version it read before the review landed
            applied = await second_queue._compare_and_set(
                seen_by_second, build_status=BuildStatus.PASSED,
            )
            assert applied is False

            async def stale_get(ws_id, request_id):
                return seen_by_second

            monkeypatch.setattr(second_queue, "get", stale_get)
            with pytest.raises(ConflictError):
                await second_queue.set_build(workspace_id, mr_id, BuildStatus.PASSED)

        async with session_factory() as check:
            current = await MergeQueue(check).get(workspace_id, mr_id)
            assert current.review_status == ReviewStatus.APPROVED
            assert current.build_status == BuildStatus.PENDING
            assert current.version == seen_version + 1
