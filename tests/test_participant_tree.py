# tests/test_participant_tree.py
"""
Tests for the participant tree: capacity, level invariant, walks.

Run:
    pytest tests/test_participant_tree.py -v
"""
from datetime import timedelta

import pytest

from flow_system.exceptions import CapacityExceeded, CycleDetected, InvariantViolation
from flow_system.utils.tree_walker import ParticipantTree, participants_by_parent
from models import FlowParticipant
from conftest import T0


def insert_child(tree, user, parent):
    return tree.insert(
        user,
        parent,
        mustBeRegisteredFrom=T0,
        acceptStageStartsAt=T0 + timedelta(hours=2),
        timeForRegistration=120,
        timeForAccept=60,
    )


# =============================================================================
# TEST CLASS: Capacity
# =============================================================================

class TestCapacity:
    """Branching factor per registration type."""

    @pytest.mark.parametrize("registration_type, capacity", [
        ("one_child_tree", 1),
        ("two_children_tree", 2),
        ("three_children_tree", 3),
    ])
    def test_sponsor_capacity(self, session, start_flow, make_user, registration_type, capacity):
        """
        TEST: sponsor accepts up to branchingFactor children.

        Verify: next insert raises CapacityExceeded, tree unchanged.
        """
        flow, leader, _ = start_flow(
            candidates=0,
            registration_type=registration_type,
            how_much_users_in_one_group=1
        )
        tree = ParticipantTree(session, flow)
        root = tree.root()

        for _ in range(capacity):
            insert_child(tree, make_user(), root)
        session.commit()

        before = session.query(FlowParticipant).filter_by(flowID=flow.flowID).count()

        with pytest.raises(CapacityExceeded) as exc:
            insert_child(tree, make_user(), root)

        assert exc.value.capacity == capacity
        assert session.query(FlowParticipant).filter_by(flowID=flow.flowID).count() == before
        assert len(tree.childrenOf(root.participantID)) == capacity

    def test_removed_child_frees_slot(self, session, start_flow, make_user):
        flow, leader, _ = start_flow(candidates=0, how_much_users_in_one_group=1)
        tree = ParticipantTree(session, flow)
        root = tree.root()

        child = insert_child(tree, make_user(), root)
        child.deleted = True

        replacement = insert_child(tree, make_user(), root)

        assert tree.firstChild(root) is replacement
        assert len(tree.childrenOf(root.participantID, includeDeleted=True)) == 2

    def test_second_root_rejected(self, session, start_flow, make_user):
        flow, _, _ = start_flow(candidates=0, how_much_users_in_one_group=1)
        tree = ParticipantTree(session, flow)

        with pytest.raises(InvariantViolation):
            insert_child(tree, make_user(), None)


# =============================================================================
# TEST CLASS: Level invariant
# =============================================================================

class TestLevelInvariant:
    """level == parent.level + 1, enforced on every insert."""

    def test_chain_levels(self, session, start_flow):
        flow, _, _ = start_flow(candidates=5)
        tree = ParticipantTree(session, flow)

        assert tree.validateStructure()
        for participant in tree.all():
            parent = tree.parentOf(participant)
            if parent is None:
                assert participant.level == 0
            else:
                assert participant.level == parent.level + 1
                assert len(tree.childrenOf(parent.participantID)) <= 1

    def test_wrong_level_rejected_by_listener(self, session, start_flow, make_user):
        """
        TEST: row written around the tree with a wrong level.

        Verify: mapper listener rejects the insert.
        """
        flow, _, _ = start_flow(candidates=0, how_much_users_in_one_group=1)
        root = ParticipantTree(session, flow).root()

        session.add(FlowParticipant(
            flowID=flow.flowID,
            userID=make_user().userID,
            parentID=root.participantID,
            level=2,
            timeForRegistration=120,
            timeForAccept=60,
            mustBeRegisteredFrom=T0,
            acceptStageStartsAt=T0,
        ))

        with pytest.raises(InvariantViolation):
            session.flush()
        session.rollback()

    def test_root_must_be_level_zero(self, session, start_flow, make_user):
        flow, _, _ = start_flow(candidates=0, how_much_users_in_one_group=1)

        session.add(FlowParticipant(
            flowID=flow.flowID,
            userID=make_user().userID,
            parentID=None,
            level=1,
            timeForRegistration=120,
            timeForAccept=60,
        ))

        with pytest.raises(InvariantViolation):
            session.flush()
        session.rollback()


# =============================================================================
# TEST CLASS: Walks
# =============================================================================

class TestWalks:
    """walkDown / pathToRoot with cycle detection."""

    def test_walk_down_visits_chain_in_order(self, session, start_flow):
        flow, _, _ = start_flow(candidates=5, how_much_users_in_one_group=4)
        tree = ParticipantTree(session, flow)
        pairs = []

        processed = tree.walkDown(tree.root(), lambda sponsor, child: pairs.append((sponsor.level, child.level)))

        assert processed == 3
        assert pairs == [(0, 1), (1, 2), (2, 3)]

    def test_path_to_root(self, session, start_flow):
        flow, _, _ = start_flow(candidates=5, how_much_users_in_one_group=4)
        tree = ParticipantTree(session, flow)
        deepest = tree.firstOfLevel(3)

        assert [p.level for p in tree.pathToRoot(deepest)] == [2, 1, 0]

    def test_cycle_detected(self, session, start_flow):
        """
        TEST: corrupted parent chain (root points at its own descendant).

        Verify: walk stops with CycleDetected instead of looping.
        """
        flow, _, _ = start_flow(candidates=5, how_much_users_in_one_group=3)
        tree = ParticipantTree(session, flow)
        root = tree.root()
        last = tree.firstOfLevel(2)

        root.parentID = last.participantID
        session.flush()
        tree.reload()

        with pytest.raises(CycleDetected) as exc:
            tree.walkDown(root, lambda sponsor, child: None)
        assert exc.value.participantID == root.participantID

        with pytest.raises(CycleDetected):
            tree.pathToRoot(last)

    def test_participants_by_parent(self, session, start_flow):
        flow, leader, _ = start_flow(candidates=5, how_much_users_in_one_group=2)

        roots = participants_by_parent(session, flow.flowID, None)
        assert [p.userID for p in roots] == [leader.userID]

        children = participants_by_parent(session, flow.flowID, roots[0].participantID)
        assert len(children) == 1
        assert children[0].level == 1
