# flow_system/utils/tree_walker.py
"""
Participant tree of one flow.

Participants are loaded once into an arena indexed by id, with a
parent id -> ordered child ids index, so walks cost O(depth) instead
of one query per step. Walks track visited ids and raise CycleDetected
on a corrupted parent chain.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from flow_system.exceptions import CapacityExceeded, CycleDetected, InvariantViolation
from models.flow import ProjectFlow
from models.flow_participant import FlowParticipant
from models.user import User

logger = logging.getLogger(__name__)


def participants_by_parent(session: Session, flowID: int, parentID: Optional[int],
                           includeDeleted: bool = True) -> List[FlowParticipant]:
    """
    Immediate children of a participant, ordered by creation.

    parentID=None returns the root line of the flow.
    """
    query = session.query(FlowParticipant).filter(FlowParticipant.flowID == flowID)
    if parentID is None:
        query = query.filter(FlowParticipant.parentID.is_(None))
    else:
        query = query.filter(FlowParticipant.parentID == parentID)
    if not includeDeleted:
        query = query.filter(FlowParticipant.deleted.is_(False))
    return query.order_by(FlowParticipant.createdAt, FlowParticipant.participantID).all()


class ParticipantTree:
    """
    In-memory index over the participants of one flow.

    Usage:
        tree = ParticipantTree(session, flow)
        head = tree.firstOfLevel(flow.currentLevel)
        child = tree.firstChild(head)
    """

    def __init__(self, session: Session, flow: ProjectFlow):
        self.session = session
        self.flow = flow
        self._participants: Dict[int, FlowParticipant] = {}
        self._children: Dict[Optional[int], List[int]] = defaultdict(list)
        self.reload()

    def reload(self) -> None:
        """Rebuild the arena from the database."""
        self._participants.clear()
        self._children.clear()

        rows = self.session.query(FlowParticipant).filter(
            FlowParticipant.flowID == self.flow.flowID
        ).order_by(
            FlowParticipant.createdAt,
            FlowParticipant.participantID
        ).all()

        for participant in rows:
            self._index(participant)

    def _index(self, participant: FlowParticipant) -> None:
        self._participants[participant.participantID] = participant
        self._children[participant.parentID].append(participant.participantID)

    # ═══════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════

    def __len__(self) -> int:
        return len(self._participants)

    def get(self, participantID: int) -> Optional[FlowParticipant]:
        return self._participants.get(participantID)

    def all(self, includeDeleted: bool = False) -> List[FlowParticipant]:
        return [
            p for p in self._participants.values()
            if includeDeleted or not p.deleted
        ]

    def childrenOf(self, participantID: Optional[int],
                   includeDeleted: bool = False) -> List[FlowParticipant]:
        """
        Immediate children ordered by creation.

        Args:
            participantID: Sponsor id, or None for the root line
            includeDeleted: Also return removed participants
        """
        children = [self._participants[cid] for cid in self._children.get(participantID, [])]
        if includeDeleted:
            return children
        return [c for c in children if not c.deleted]

    def firstChild(self, participant: FlowParticipant) -> Optional[FlowParticipant]:
        """Earliest-created active child, or None."""
        children = self.childrenOf(participant.participantID)
        return children[0] if children else None

    def parentOf(self, participant: FlowParticipant) -> Optional[FlowParticipant]:
        if participant.parentID is None:
            return None
        return self._participants.get(participant.parentID)

    def root(self) -> Optional[FlowParticipant]:
        roots = self.childrenOf(None)
        return roots[0] if roots else None

    def levelOf(self, level: int, includeDeleted: bool = False) -> List[FlowParticipant]:
        """Participants on a level, in creation order."""
        return [
            p for p in self._participants.values()
            if p.level == level and (includeDeleted or not p.deleted)
        ]

    def firstOfLevel(self, level: int) -> Optional[FlowParticipant]:
        participants = self.levelOf(level)
        return participants[0] if participants else None

    def deepestActiveLevel(self, maxLevel: int) -> Optional[int]:
        """Deepest level <= maxLevel that still has active participants."""
        for level in range(maxLevel, -1, -1):
            if self.levelOf(level):
                return level
        return None

    def userIDs(self) -> List[int]:
        """Users holding or having held a slot."""
        return [p.userID for p in self._participants.values()]

    def findByUser(self, userID: int) -> Optional[FlowParticipant]:
        for participant in self._participants.values():
            if participant.userID == userID and not participant.deleted:
                return participant
        return None

    # ═══════════════════════════════════════════════════════════════════
    # MUTATIONS
    # ═══════════════════════════════════════════════════════════════════

    def insert(self,
               user: User,
               parent: Optional[FlowParticipant],
               mustBeRegisteredFrom: datetime,
               acceptStageStartsAt: datetime,
               timeForRegistration: int,
               timeForAccept: int) -> FlowParticipant:
        """
        Assign a user to a new tree slot.

        Raises:
            CapacityExceeded: Sponsor already has branchingFactor active children
            InvariantViolation: Second root, or parent removed / from another flow
        """
        if parent is None:
            if self.childrenOf(None):
                raise InvariantViolation(f"Flow {self.flow.flowID} already has a root participant")
            level = 0
            parentID = None
        else:
            if parent.deleted:
                raise InvariantViolation(f"Participant {parent.participantID} was removed")
            if parent.flowID != self.flow.flowID:
                raise InvariantViolation(
                    f"Participant {parent.participantID} belongs to flow {parent.flowID}"
                )
            capacity = self.flow.branchingFactor
            if len(self.childrenOf(parent.participantID)) >= capacity:
                raise CapacityExceeded(parent.participantID, capacity)
            level = parent.level + 1
            parentID = parent.participantID

        participant = FlowParticipant(
            flowID=self.flow.flowID,
            userID=user.userID,
            parentID=parentID,
            level=level,
            timeForRegistration=timeForRegistration,
            timeForAccept=timeForAccept,
            mustBeRegisteredFrom=mustBeRegisteredFrom,
            acceptStageStartsAt=acceptStageStartsAt,
        )
        self.session.add(participant)
        self.session.flush()  # Get participantID, run level check
        self._index(participant)

        logger.debug(
            f"Inserted participant {participant.participantID} (user {user.userID}) "
            f"under {parentID} on level {level} in flow {self.flow.flowID}"
        )
        return participant

    def reparent(self, child: FlowParticipant, newParent: FlowParticipant) -> None:
        """Move a child under the participant that took its sponsor's slot."""
        if newParent.level != child.level - 1:
            raise InvariantViolation(
                f"Cannot move participant {child.participantID} (level {child.level}) "
                f"under participant {newParent.participantID} (level {newParent.level})"
            )
        self._children[child.parentID].remove(child.participantID)
        child.parentID = newParent.participantID
        self._children[newParent.participantID].append(child.participantID)

    # ═══════════════════════════════════════════════════════════════════
    # WALKS
    # ═══════════════════════════════════════════════════════════════════

    def walkDown(self,
                 start: FlowParticipant,
                 callback: Callable[[FlowParticipant, FlowParticipant], None]) -> int:
        """
        Follow first children below `start`, calling callback(sponsor, child)
        for each pair.

        Returns:
            Number of pairs processed

        Raises:
            CycleDetected: A participant was reached twice
        """
        visited = {start.participantID}
        sponsor = start
        processed = 0

        while True:
            child = self.firstChild(sponsor)
            if child is None:
                break

            if child.participantID in visited:
                logger.error(
                    f"Cycle detected in flow {self.flow.flowID} at participant {child.participantID}"
                )
                raise CycleDetected(child.participantID, self.flow.flowID)
            visited.add(child.participantID)

            callback(sponsor, child)
            processed += 1
            sponsor = child

        return processed

    def pathToRoot(self, participant: FlowParticipant) -> List[FlowParticipant]:
        """
        Sponsors of a participant, immediate sponsor first.

        Raises:
            CycleDetected: Parent chain loops
        """
        chain = []
        visited = {participant.participantID}
        current = self.parentOf(participant)

        while current is not None:
            if current.participantID in visited:
                logger.error(
                    f"Cycle detected in flow {self.flow.flowID} at participant {current.participantID}"
                )
                raise CycleDetected(current.participantID, self.flow.flowID)
            visited.add(current.participantID)
            chain.append(current)
            current = self.parentOf(current)

        return chain

    def validateStructure(self) -> bool:
        """
        Check level and capacity invariants of the whole tree.

        Returns:
            True if valid, False otherwise (problems are logged)
        """
        valid = True
        capacity = self.flow.branchingFactor

        for participant in self._participants.values():
            parent = self.parentOf(participant)
            if parent is None:
                if participant.parentID is not None or participant.level != 0:
                    logger.error(f"Broken root: participant {participant.participantID}")
                    valid = False
            elif participant.level != parent.level + 1:
                logger.error(
                    f"Level mismatch: participant {participant.participantID} level {participant.level}, "
                    f"parent {parent.participantID} level {parent.level}"
                )
                valid = False

            active_children = self.childrenOf(participant.participantID)
            if len(active_children) > capacity:
                logger.error(
                    f"Participant {participant.participantID} has {len(active_children)} children, "
                    f"capacity {capacity}"
                )
                valid = False

        if valid:
            logger.debug(f"Flow {self.flow.flowID} tree structure is valid")
        return valid
