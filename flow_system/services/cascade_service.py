# flow_system/services/cascade_service.py
"""
Cascade recompute job.

After the accept time of a flow line was updated (the sponsor did not
accept on time) or an admin accepted participants on their own, timings
of the rest of the group must be recomputed and notifications re-sent.

Only one-child trees are handled; for other tree types the job returns
immediately.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from config import Config
from flow_system.config.states import TaskStatus
from flow_system.exceptions import CycleDetected
from flow_system.utils.time_machine import timeMachine
from flow_system.utils.timing import acceptance_ends_at, add_register_time
from flow_system.utils.tree_walker import ParticipantTree
from models.cascade_task import CascadeTask
from models.flow import ProjectFlow
from models.flow_participant import FlowParticipant

logger = logging.getLogger(__name__)


class CascadeRecomputeService:
    """Walks the current line of a flow and recomputes downstream timings."""

    def __init__(self, session: Session):
        self.session = session

    def run(self, flowID: int) -> int:
        """
        Recompute timings below the head of the flow's current line.

        Each (sponsor, participant) pair is committed on its own, so a
        failure mid-walk leaves already updated ancestors intact.

        Args:
            flowID: Flow to process

        Returns:
            Number of participants updated

        Raises:
            CycleDetected: Parent chain of the flow is corrupted
        """
        flow = self.session.get(ProjectFlow, flowID)
        if flow is None:
            logger.warning(f"Cascade skipped: flow {flowID} not found")
            return 0

        if not flow.isOneChildTree:
            logger.debug(f"Cascade skipped: flow {flowID} is {flow.registrationType}")
            return 0

        tree = ParticipantTree(self.session, flow)
        head = tree.firstOfLevel(flow.currentLevel)
        if head is None:
            logger.info(f"Cascade skipped: flow {flowID} has no participants on level {flow.currentLevel}")
            return 0

        updated = 0

        if not head.isRegistered:
            # Admin accepted on the sponsor's behalf: the head may register shortly
            grace = timedelta(minutes=Config.get(Config.ADMIN_OVERRIDE_GRACE_MINUTES))
            registration_starts = timeMachine.now + grace
            self._updateParticipants(head, tree.parentOf(head), registration_starts)
            self.session.commit()
            updated += 1

        def update_pair(sponsor: FlowParticipant, participant: FlowParticipant) -> None:
            self._updateParticipants(participant, sponsor, acceptance_ends_at(sponsor))
            self.session.commit()

        updated += tree.walkDown(head, update_pair)

        logger.info(
            f"Cascade for flow {flowID} done: {updated} participants updated "
            f"from participant {head.participantID} (level {head.level})"
        )
        return updated

    def _updateParticipants(self,
                            participant: FlowParticipant,
                            sponsor: Optional[FlowParticipant],
                            registrationStarts: datetime) -> None:
        """Update participant timing and notifications, then its sponsor."""
        participant.mustBeRegisteredFrom = registrationStarts
        participant.acceptStageStartsAt = add_register_time(participant, registrationStarts)
        participant.notificationSent = None
        participant.notifyAboutAcceptSent = None

        if sponsor is not None:
            sponsor.mustAcceptChildrenFrom = participant.acceptStageStartsAt


class CascadeQueue:
    """
    Work queue for cascade jobs.

    enqueue() only adds a row to the caller's session: the task becomes
    visible to workers when the triggering transaction commits.
    """

    def __init__(self, session: Session):
        self.session = session

    def enqueue(self, flow: ProjectFlow, reason: str) -> CascadeTask:
        """
        Request a cascade for a flow. A task already pending for the
        same flow is reused.
        """
        existing = self.session.query(CascadeTask).filter(
            CascadeTask.flowID == flow.flowID,
            CascadeTask.status == TaskStatus.PENDING.value
        ).first()

        if existing:
            logger.debug(f"Cascade for flow {flow.flowID} already pending (task {existing.id})")
            return existing

        task = CascadeTask(flowID=flow.flowID, reason=reason, status=TaskStatus.PENDING.value)
        self.session.add(task)
        logger.info(f"Cascade queued for flow {flow.flowID} ({reason})")
        return task

    def pendingCount(self) -> int:
        return self.session.query(CascadeTask).filter(
            CascadeTask.status == TaskStatus.PENDING.value
        ).count()

    def processBatch(self, batchSize: Optional[int] = None) -> int:
        """
        Process batch of cascade tasks from queue.
        Called by background scheduler.

        Args:
            batchSize: Number of tasks to process

        Returns:
            Number of tasks completed
        """
        batchSize = batchSize or Config.get(Config.CASCADE_BATCH_SIZE)
        max_attempts = Config.get(Config.CASCADE_MAX_ATTEMPTS)

        tasks = self.session.query(CascadeTask).filter(
            CascadeTask.status == TaskStatus.PENDING.value
        ).order_by(
            CascadeTask.createdAt.asc(),
            CascadeTask.id.asc()
        ).limit(batchSize).all()

        if not tasks:
            return 0

        processed_count = 0
        service = CascadeRecomputeService(self.session)

        for task in tasks:
            # Mark as processing
            task.status = TaskStatus.PROCESSING.value
            task.startedAt = timeMachine.now
            task.attempts = (task.attempts or 0) + 1
            self.session.commit()

            try:
                service.run(task.flowID)
                task.status = TaskStatus.COMPLETED.value
                task.completedAt = timeMachine.now
                processed_count += 1
                self.session.commit()

            except CycleDetected as e:
                self.session.rollback()
                logger.error(f"Cascade task {task.id} for flow {task.flowID} aborted: {e}")
                task.status = TaskStatus.FAILED.value
                task.lastError = str(e)[:500]
                self.session.commit()

            except Exception as e:
                self.session.rollback()
                logger.error(f"Error processing cascade task {task.id}: {e}", exc_info=True)
                if task.attempts >= max_attempts:
                    task.status = TaskStatus.FAILED.value
                else:
                    task.status = TaskStatus.PENDING.value
                task.lastError = str(e)[:500]
                self.session.commit()

        logger.info(f"Processed {processed_count}/{len(tasks)} cascade tasks")
        return processed_count
