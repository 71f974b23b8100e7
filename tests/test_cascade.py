# tests/test_cascade.py
"""
Tests for the cascade recompute job and its queue.

Run:
    pytest tests/test_cascade.py -v
"""
from datetime import timedelta

import pytest

from config import Config
from flow_system.actor import Actor
from flow_system.config.states import TaskStatus
from flow_system.services.cascade_service import CascadeQueue, CascadeRecomputeService
from flow_system.utils.time_machine import timeMachine
from flow_system.utils.tree_walker import ParticipantTree
from models import CascadeTask
from conftest import T0


def timings(tree):
    return {
        p.participantID: (p.mustBeRegisteredFrom, p.acceptStageStartsAt, p.mustAcceptChildrenFrom)
        for p in tree.all()
    }


@pytest.fixture
def chain_at_level_one(session, service, start_flow, referral_data, admin):
    """
    One-child tree (root + 3) on level 1: root registered at T0 and
    accepted by admin at T0, admin cascade already processed.
    """
    flow, _, _ = start_flow(candidates=5, how_much_users_in_one_group=4)
    root = ParticipantTree(session, flow).root()
    service.registerParticipant(flow.flowID, root.participantID, referral_data, Actor.participant(root.userID))
    service.acceptRegistration(flow.flowID, root.participantID, admin)
    CascadeQueue(session).processBatch()

    tree = ParticipantTree(session, flow)
    return flow, tree


# =============================================================================
# TEST CLASS: Recompute
# =============================================================================

class TestCascadeRecompute:
    """Downstream timing recompute for one-child trees."""

    def test_accept_time_extension_shifts_descendants(self, session, service, chain_at_level_one,
                                                      referral_data, admin):
        """
        TEST: head's accept time extended by 1h, cascade runs.

        Verify: every descendant's registration start shifts by exactly 1h
        and its notification flags are cleared.
        """
        flow, tree = chain_at_level_one
        head = tree.firstOfLevel(1)
        timeMachine.setTime(head.mustBeRegisteredFrom)
        service.registerParticipant(flow.flowID, head.participantID, referral_data,
                                    Actor.participant(head.userID))

        descendants = [tree.firstOfLevel(2), tree.firstOfLevel(3)]
        before = [p.mustBeRegisteredFrom for p in descendants]
        for participant in descendants:
            participant.notificationSent = timeMachine.now
            participant.notifyAboutAcceptSent = timeMachine.now
        session.commit()

        service.updateAcceptTime(flow.flowID, head.timeForAccept + 60, admin)
        assert session.query(CascadeTask).filter_by(status=TaskStatus.PENDING.value).count() == 1

        processed = CascadeQueue(session).processBatch()

        assert processed == 1
        for participant, previous in zip(descendants, before):
            session.refresh(participant)
            assert participant.mustBeRegisteredFrom - previous == timedelta(hours=1)
            assert participant.notificationSent is None
            assert participant.notifyAboutAcceptSent is None
        session.refresh(head)
        assert head.mustAcceptChildrenFrom == descendants[0].acceptStageStartsAt

    def test_recompute_is_idempotent(self, session, service, chain_at_level_one, referral_data):
        flow, tree = chain_at_level_one
        head = tree.firstOfLevel(1)
        timeMachine.setTime(head.mustBeRegisteredFrom)
        service.registerParticipant(flow.flowID, head.participantID, referral_data,
                                    Actor.participant(head.userID))

        job = CascadeRecomputeService(session)
        job.run(flow.flowID)
        first = timings(tree)

        timeMachine.advanceTime(minutes=20)
        job.run(flow.flowID)

        assert timings(tree) == first

    def test_admin_override_seeds_grace_window(self, session, service, start_flow, referral_data, admin):
        """
        TEST: admin accepts the root; the next head never registered.

        Verify: head registration starts now + 30 minutes, not from the
        sponsor's own timing.
        """
        flow, _, _ = start_flow(candidates=5, how_much_users_in_one_group=3)
        tree = ParticipantTree(session, flow)
        root, head, last = tree.root(), tree.firstOfLevel(1), tree.firstOfLevel(2)
        service.registerParticipant(flow.flowID, root.participantID, referral_data, admin)

        accepted_at = T0 + timedelta(hours=1)
        timeMachine.setTime(accepted_at)
        service.acceptRegistration(flow.flowID, root.participantID, admin)
        CascadeQueue(session).processBatch()

        grace = timedelta(minutes=Config.get(Config.ADMIN_OVERRIDE_GRACE_MINUTES))
        assert grace == timedelta(minutes=30)
        assert head.mustBeRegisteredFrom == accepted_at + grace
        assert head.acceptStageStartsAt == accepted_at + grace + timedelta(hours=2)
        assert root.mustAcceptChildrenFrom == head.acceptStageStartsAt
        assert last.mustBeRegisteredFrom == accepted_at + grace + timedelta(hours=3)

    def test_multi_children_tree_is_untouched(self, session, service, start_flow, referral_data, admin):
        flow, _, _ = start_flow(candidates=3, registration_type='two_children_tree', auto_continue=True)
        root = ParticipantTree(session, flow).root()
        service.registerParticipant(flow.flowID, root.participantID, referral_data, admin)
        service.acceptRegistration(flow.flowID, root.participantID, admin)

        tree = ParticipantTree(session, flow)
        before = timings(tree)

        assert CascadeRecomputeService(session).run(flow.flowID) == 0
        assert timings(tree) == before

    def test_missing_flow(self, session):
        assert CascadeRecomputeService(session).run(999) == 0


# =============================================================================
# TEST CLASS: Queue
# =============================================================================

class TestCascadeQueue:
    """Dedup, retry and failure handling of cascade tasks."""

    def test_pending_task_deduplicated(self, session, start_flow):
        flow, _, _ = start_flow()
        queue = CascadeQueue(session)

        first = queue.enqueue(flow, "accept_time_updated")
        session.commit()
        second = queue.enqueue(flow, "admin_accept")
        session.commit()

        assert first.id == second.id
        assert queue.pendingCount() == 1

    def test_cycle_marks_task_failed_without_retry(self, session, start_flow):
        """
        TEST: parent chain loops back to the head.

        Verify: task FAILED after one attempt and is not picked up again.
        """
        flow, _, _ = start_flow(candidates=5, how_much_users_in_one_group=3)
        tree = ParticipantTree(session, flow)
        root, last = tree.root(), tree.firstOfLevel(2)
        root.parentID = last.participantID
        queue = CascadeQueue(session)
        task = queue.enqueue(flow, "accept_time_updated")
        session.commit()

        assert queue.processBatch() == 0
        session.refresh(task)
        assert task.status == TaskStatus.FAILED.value
        assert task.attempts == 1
        assert "Cycle" in task.lastError

        assert queue.processBatch() == 0
        session.refresh(task)
        assert task.attempts == 1

    def test_unexpected_error_retried_then_failed(self, session, start_flow, monkeypatch):
        flow, _, _ = start_flow()
        queue = CascadeQueue(session)
        task = queue.enqueue(flow, "admin_accept")
        session.commit()

        def broken_run(self, flowID):
            raise RuntimeError("database went away")

        monkeypatch.setattr(CascadeRecomputeService, "run", broken_run)
        max_attempts = Config.get(Config.CASCADE_MAX_ATTEMPTS)

        for attempt in range(1, max_attempts):
            queue.processBatch()
            session.refresh(task)
            assert task.status == TaskStatus.PENDING.value
            assert task.attempts == attempt

        queue.processBatch()
        session.refresh(task)
        assert task.status == TaskStatus.FAILED.value
        assert task.lastError == "database went away"
