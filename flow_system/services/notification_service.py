# flow_system/services/notification_service.py
"""
Notification gateway of the flow engine.

The engine only decides when and to whom; it writes FlowNotification
rows in the caller's session and background/notification_processor.py
delivers them.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from flow_system.config.states import FlowStatus, NotificationKind
from flow_system.utils.time_machine import timeMachine
from flow_system.utils.timing import acceptance_ends_at
from models.flow import ProjectFlow
from models.flow_participant import FlowParticipant
from models.notification import FlowNotification

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d %H:%M"

TEMPLATES = {
    NotificationKind.REGISTRATION_OPEN: (
        "Registration in project «{project}» is open.\n"
        "{sponsor_line}"
        "Please register until {deadline} UTC."
    ),
    NotificationKind.ACCEPT_TIME_UPDATED: (
        "Acceptance time in project «{project}» was updated.\n"
        "Acceptance now runs from {accept_from} until {accept_until} UTC."
    ),
    NotificationKind.ACCEPT_STAGE_OPEN: (
        "{child} registered in project «{project}».\n"
        "Please check and accept the registration until {accept_until} UTC."
    ),
}


class NotificationService:
    """Writes flow notifications to the outbox."""

    def __init__(self, session: Session):
        self.session = session

    def notify(self,
               participant: FlowParticipant,
               kind: NotificationKind,
               subject: Optional[FlowParticipant] = None) -> FlowNotification:
        """
        Queue a message for the participant's user.

        Args:
            participant: Recipient slot
            kind: What happened
            subject: Participant the message is about (defaults to recipient)
        """
        subject = subject or participant
        notification = FlowNotification(
            flowID=participant.flowID,
            participantID=participant.participantID,
            userID=participant.userID,
            kind=kind.value,
            text=self._render(kind, participant, subject),
        )
        self.session.add(notification)

        logger.debug(
            f"Queued {kind.value} notification for participant {participant.participantID} "
            f"(user {participant.userID})"
        )
        return notification

    def _render(self, kind: NotificationKind, recipient: FlowParticipant,
                subject: FlowParticipant) -> str:
        flow = recipient.flow
        project = flow.project.name if flow is not None and flow.project is not None else ""

        if kind is NotificationKind.REGISTRATION_OPEN:
            sponsor = subject.parent
            sponsor_line = ""
            if sponsor is not None and sponsor.referralUrl:
                sponsor_line = f"Use the referral link of {sponsor.user.displayName}: {sponsor.referralUrl}\n"
            return TEMPLATES[kind].format(
                project=project,
                sponsor_line=sponsor_line,
                deadline=subject.acceptStageStartsAt.strftime(DATE_FORMAT),
            )

        if kind is NotificationKind.ACCEPT_TIME_UPDATED:
            return TEMPLATES[kind].format(
                project=project,
                accept_from=subject.acceptStageStartsAt.strftime(DATE_FORMAT),
                accept_until=acceptance_ends_at(subject).strftime(DATE_FORMAT),
            )

        return TEMPLATES[kind].format(
            project=project,
            child=subject.user.displayName,
            accept_until=acceptance_ends_at(subject).strftime(DATE_FORMAT),
        )

    def notifyParticipantsThatAcceptTimeWasUpdated(self, flow: ProjectFlow,
                                                   cohort: List[FlowParticipant]) -> int:
        """
        Tell the current non-accepted cohort and their sponsors that the
        acceptance window moved.

        Returns:
            Number of notifications queued
        """
        queued = 0
        notified = set()

        for participant in cohort:
            if participant.deleted or participant.isAccepted:
                continue

            recipients = [participant]
            if participant.parent is not None and not participant.parent.deleted:
                recipients.append(participant.parent)

            for recipient in recipients:
                key = (recipient.participantID, participant.participantID)
                if key in notified:
                    continue
                notified.add(key)
                self.notify(recipient, NotificationKind.ACCEPT_TIME_UPDATED, subject=participant)
                queued += 1

        logger.info(f"Flow {flow.flowID}: {queued} accept-time-updated notifications queued")
        return queued

    def sendDueNotifications(self) -> Dict[str, int]:
        """
        Scan active flows for windows that opened since the last scan.

        - registration window open, notificationSent empty -> tell participant
        - accept stage open, notifyAboutAcceptSent empty -> tell sponsor

        Flags are set in the same transaction, so each message goes out once
        until the cascade clears the flags.

        Returns:
            Counts per kind
        """
        now = timeMachine.now
        result = {"registrationOpen": 0, "acceptStageOpen": 0}

        active_flow = (
            (ProjectFlow.onPause.is_(False))
            & (ProjectFlow.status != FlowStatus.COMPLETED.value)
            & (FlowParticipant.level == ProjectFlow.currentLevel)
        )

        due_registration = self.session.query(FlowParticipant).join(
            ProjectFlow, FlowParticipant.flowID == ProjectFlow.flowID
        ).filter(
            active_flow,
            FlowParticipant.deleted.is_(False),
            FlowParticipant.registeredAt.is_(None),
            FlowParticipant.notificationSent.is_(None),
            FlowParticipant.mustBeRegisteredFrom <= now,
        ).all()

        for participant in due_registration:
            self.notify(participant, NotificationKind.REGISTRATION_OPEN)
            participant.notificationSent = now
            result["registrationOpen"] += 1

        due_accept = self.session.query(FlowParticipant).join(
            ProjectFlow, FlowParticipant.flowID == ProjectFlow.flowID
        ).filter(
            active_flow,
            FlowParticipant.deleted.is_(False),
            FlowParticipant.parentID.isnot(None),
            FlowParticipant.registeredAt.isnot(None),
            FlowParticipant.acceptedAt.is_(None),
            FlowParticipant.notifyAboutAcceptSent.is_(None),
            FlowParticipant.acceptStageStartsAt <= now,
        ).all()

        for participant in due_accept:
            sponsor = participant.parent
            if sponsor is not None and not sponsor.deleted:
                self.notify(sponsor, NotificationKind.ACCEPT_STAGE_OPEN, subject=participant)
                result["acceptStageOpen"] += 1
            participant.notifyAboutAcceptSent = now

        self.session.commit()

        if result["registrationOpen"] or result["acceptStageOpen"]:
            logger.info(
                f"Due notifications queued: registration={result['registrationOpen']}, "
                f"accept={result['acceptStageOpen']}"
            )
        return result
