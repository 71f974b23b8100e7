# models/listeners/tree_listeners.py
"""
Tree Event Listeners - structural checks on the participant tree.

Every INSERT into flow_participants re-checks:
    root (parentID IS NULL)  -> level == 0
    child                    -> level == parent.level + 1, same flow
"""
import logging

from sqlalchemy import event, select

logger = logging.getLogger(__name__)


def register_tree_listeners():
    """
    Register level invariant check for FlowParticipant inserts.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.flow_participant import FlowParticipant
    from flow_system.exceptions import InvariantViolation

    table = FlowParticipant.__table__

    def check_level_invariant(mapper, connection, target):
        if target.parentID is None:
            if target.level != 0:
                raise InvariantViolation(
                    f"Root participant of flow {target.flowID} must have level 0, got {target.level}"
                )
            return

        row = connection.execute(
            select(table.c.level, table.c.flowID).where(table.c.participantID == target.parentID)
        ).first()

        if row is None:
            raise InvariantViolation(f"Parent participant {target.parentID} not found")

        if row.flowID != target.flowID:
            raise InvariantViolation(
                f"Parent {target.parentID} belongs to flow {row.flowID}, not {target.flowID}"
            )

        if target.level != row.level + 1:
            raise InvariantViolation(
                f"Level mismatch: parent {target.parentID} is on level {row.level}, "
                f"child declared level {target.level}"
            )

    event.listen(FlowParticipant, 'before_insert', check_level_invariant)


def register_tree_protection():
    """
    Log warnings when an existing participant's level is changed.

    Slots keep their level for life; inheritors get a new row instead.
    """
    from models.flow_participant import FlowParticipant

    @event.listens_for(FlowParticipant.level, 'set')
    def warn_direct_level_set(target, value, oldvalue, initiator):
        if target.participantID is not None and oldvalue is not None and value != oldvalue:
            logger.warning(
                f"DIRECT level modification detected! "
                f"participant={target.participantID}, {oldvalue} → {value}"
            )
