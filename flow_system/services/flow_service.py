# flow_system/services/flow_service.py
"""
Flow state machine - registration, acceptance, level advance,
continuation and participant substitution.

Every public operation:
1. Checks actor permissions and validates input (no state change)
2. Locks the flow row (single writer per flow)
3. Mutates tree and flow inside one transaction
4. Commits, or rolls back and raises

Flow states:
    AWAITING_REGISTRATION -> REGISTRATION_OPEN -> ACCEPT_PENDING
        -> (level advance | PAUSED) -> ... -> COMPLETED
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from flow_system.actor import Actor
from flow_system.config.registration_types import RegistrationType
from flow_system.config.states import FlowStatus
from flow_system.exceptions import (
    AlreadyRegistered,
    FlowError,
    NotEligible,
    PermissionDenied,
    TransactionFailure,
    ValidationError,
)
from flow_system.services.cascade_service import CascadeQueue
from flow_system.services.notification_service import NotificationService
from flow_system.utils.time_machine import timeMachine
from flow_system.utils.timing import (
    acceptance_ends_at,
    add_register_time,
    level_start,
    parse_duration,
    to_minutes,
)
from flow_system.utils.tree_walker import ParticipantTree, participants_by_parent
from models.flow import ProjectFlow
from models.flow_participant import FlowParticipant
from models.project import Project, ProjectCandidate
from models.user import User

logger = logging.getLogger(__name__)

MAX_FIELD_LENGTH = 255
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class FlowService:
    """
    Referral flow operations.

    Usage:
        service = FlowService(session)
        flow = service.createAndStart(project, config, Actor.admin(admin.userID))
        service.registerParticipant(flow.flowID, participantID, data, actor)
    """

    def __init__(self,
                 session: Session,
                 notifications: Optional[NotificationService] = None,
                 queue: Optional[CascadeQueue] = None):
        self.session = session
        self.notifications = notifications or NotificationService(session)
        self.queue = queue or CascadeQueue(session)

    # ═══════════════════════════════════════════════════════════════════
    # TRANSACTION & LOOKUP HELPERS
    # ═══════════════════════════════════════════════════════════════════

    @contextmanager
    def _atomic(self, action: str, flowID: Optional[int] = None,
                participantID: Optional[int] = None, wrapDomainErrors: bool = False):
        """
        All-or-nothing unit. Domain errors are re-raised as is unless
        wrapDomainErrors is set; anything else becomes TransactionFailure.
        """
        try:
            yield
            self.session.commit()
        except FlowError as e:
            self.session.rollback()
            if not wrapDomainErrors:
                raise
            logger.error(
                f"Action {action} rolled back (flow={flowID}, participant={participantID}): {e}"
            )
            raise TransactionFailure(action, flowID, participantID) from e
        except Exception as e:
            self.session.rollback()
            logger.error(
                f"Action {action} rolled back (flow={flowID}, participant={participantID}): {e}",
                exc_info=True
            )
            raise TransactionFailure(action, flowID, participantID) from e

    @contextmanager
    def _checks(self):
        """
        Lock and eligibility section of an action. A rejection rolls the
        session back so the flow row lock is released before raising.
        """
        try:
            yield
        except FlowError:
            self.session.rollback()
            raise

    def _lockFlow(self, flowID: int) -> ProjectFlow:
        flow = self.session.query(ProjectFlow).filter_by(
            flowID=flowID
        ).with_for_update().first()

        if not flow:
            raise NotEligible(f"Flow {flowID} not found")
        return flow

    def _getParticipant(self, flow: ProjectFlow, participantID: int) -> FlowParticipant:
        participant = self.session.get(FlowParticipant, participantID)
        if participant is None or participant.flowID != flow.flowID:
            raise NotEligible(f"Participant {participantID} is not part of flow {flow.flowID}")
        return participant

    @staticmethod
    def _requireAdmin(actor: Actor, action: str) -> None:
        if not actor.isAdmin:
            raise PermissionDenied(f"Only admin can {action}")

    @staticmethod
    def _isActive(flow: ProjectFlow) -> bool:
        return not flow.onPause and not flow.isCompleted

    def _requireActive(self, flow: ProjectFlow) -> None:
        if flow.isCompleted:
            raise NotEligible(f"Flow {flow.flowID} is completed")
        if flow.onPause:
            raise NotEligible(f"Flow {flow.flowID} is on pause")

    # ═══════════════════════════════════════════════════════════════════
    # VALIDATION
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def _parseDatetime(value: Any) -> Optional[datetime]:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str) and value.strip():
            try:
                parsed = datetime.fromisoformat(value.strip())
            except ValueError:
                return None
        else:
            return None

        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    @staticmethod
    def _parseBool(value: Any) -> Optional[bool]:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUE_VALUES:
                return True
            if lowered in FALSE_VALUES:
                return False
        return None

    def _validateFlowConfig(self, config: Dict[str, Any],
                            registrationType: Optional[RegistrationType] = None) -> Dict[str, Any]:
        """
        Validate flow settings from the admin form.

        Args:
            config: Raw form values
            registrationType: Known type when continuing an existing flow

        Returns:
            Cleaned values

        Raises:
            ValidationError: With all problems at once
        """
        errors: Dict[str, str] = {}
        cleaned: Dict[str, Any] = {}

        if registrationType is None:
            raw_type = config.get("registration_type")
            try:
                registrationType = RegistrationType(raw_type)
            except ValueError:
                errors["registration_type"] = (
                    "required, one of: " + ", ".join(t.value for t in RegistrationType)
                )

            leader_id = config.get("leader_id")
            if leader_id in (None, ""):
                errors["leader_id"] = "required"
            else:
                try:
                    cleaned["leader_id"] = int(leader_id)
                except (TypeError, ValueError):
                    errors["leader_id"] = "must be a user id"

        cleaned["registration_type"] = registrationType

        if registrationType is RegistrationType.ONE_CHILD_TREE:
            group_size = config.get("how_much_users_in_one_group")
            try:
                group_size = int(group_size)
                if group_size < 1:
                    raise ValueError
                cleaned["how_much_users_in_one_group"] = group_size
            except (TypeError, ValueError):
                errors["how_much_users_in_one_group"] = "required, positive number"
        else:
            cleaned["how_much_users_in_one_group"] = None

        registered_from = self._parseDatetime(config.get("must_be_registered_from"))
        if registered_from is None:
            errors["must_be_registered_from"] = "required, date and time"
        cleaned["must_be_registered_from"] = registered_from

        for field in ("time_for_registration", "time_for_accept"):
            try:
                duration = parse_duration(config.get(field), field)
                if to_minutes(duration) <= 0:
                    errors[field] = "must be longer than 0:00"
                cleaned[field] = to_minutes(duration)
            except ValidationError as e:
                errors.update(e.errors)

        comments = config.get("comments")
        if not comments or not str(comments).strip():
            errors["comments"] = "required"
        elif len(str(comments)) > MAX_FIELD_LENGTH:
            errors["comments"] = f"max {MAX_FIELD_LENGTH} characters"
        cleaned["comments"] = comments

        auto_continue = self._parseBool(config.get("auto_continue"))
        if auto_continue is None:
            errors["auto_continue"] = "required, boolean"
        cleaned["auto_continue"] = auto_continue

        if errors:
            raise ValidationError(errors)
        return cleaned

    @staticmethod
    def _validateRegistrationData(data: Dict[str, Any]) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        cleaned: Dict[str, str] = {}

        for field in ("referral_url", "referral_name", "referral_login"):
            value = data.get(field)
            value = value.strip() if isinstance(value, str) else value
            if not value:
                errors[field] = "required"
            elif len(value) > MAX_FIELD_LENGTH:
                errors[field] = f"max {MAX_FIELD_LENGTH} characters"
            else:
                cleaned[field] = value

        url = cleaned.get("referral_url")
        if url:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors["referral_url"] = "must be a valid URL"

        if errors:
            raise ValidationError(errors)
        return cleaned

    # ═══════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════

    def getFlow(self, flowID: int) -> Optional[ProjectFlow]:
        return self.session.get(ProjectFlow, flowID)

    def participantsByParent(self, flowID: int, parentID: Optional[int]) -> List[FlowParticipant]:
        """Children of a participant (None -> root line), ordered by creation."""
        return participants_by_parent(self.session, flowID, parentID)

    def isUserParticipant(self, flowID: int, userID: int) -> Optional[FlowParticipant]:
        """Active slot held by the user, if any."""
        return self.session.query(FlowParticipant).filter(
            FlowParticipant.flowID == flowID,
            FlowParticipant.userID == userID,
            FlowParticipant.deleted.is_(False)
        ).first()

    def firstLine(self, flowID: int) -> bool:
        """Root line is being processed; admin accepts directly."""
        flow = self.getFlow(flowID)
        return flow is not None and flow.currentLevel == 0

    def hasNonAcceptedParticipants(self, flowID: int) -> bool:
        """Any participant of the current level registered but not accepted yet."""
        flow = self.getFlow(flowID)
        if flow is None:
            return False
        return self.session.query(FlowParticipant).filter(
            FlowParticipant.flowID == flowID,
            FlowParticipant.level == flow.currentLevel,
            FlowParticipant.deleted.is_(False),
            FlowParticipant.registeredAt.isnot(None),
            FlowParticipant.acceptedAt.is_(None)
        ).count() > 0

    def needToAcceptChildrenInFuture(self, participantID: int) -> bool:
        """Participant has children waiting for its acceptance later on."""
        return self.session.query(FlowParticipant).filter(
            FlowParticipant.parentID == participantID,
            FlowParticipant.deleted.is_(False),
            FlowParticipant.acceptedAt.is_(None)
        ).count() > 0

    def getNotRegisteredCandidates(self, flowID: int) -> List[ProjectCandidate]:
        """Project candidates who never held a slot in the flow."""
        flow = self.getFlow(flowID)
        if flow is None:
            return []
        return self._availableCandidates(flow, ParticipantTree(self.session, flow))

    def _availableCandidates(self, flow: ProjectFlow, tree: ParticipantTree) -> List[ProjectCandidate]:
        taken = set(tree.userIDs())
        taken.add(flow.leaderID)
        candidates = self.session.query(ProjectCandidate).filter(
            ProjectCandidate.projectID == flow.projectID
        ).order_by(
            ProjectCandidate.createdAt,
            ProjectCandidate.candidateID
        ).all()
        return [c for c in candidates if c.userID not in taken]

    # ═══════════════════════════════════════════════════════════════════
    # STATUS
    # ═══════════════════════════════════════════════════════════════════

    def _refreshStatus(self, flow: ProjectFlow, tree: ParticipantTree) -> None:
        if flow.isCompleted:
            return
        if flow.onPause:
            flow.status = FlowStatus.PAUSED.value
            return

        cohort = tree.levelOf(flow.currentLevel)
        if cohort and all(p.isRegistered for p in cohort):
            flow.status = FlowStatus.ACCEPT_PENDING.value
        elif cohort and min(p.mustBeRegisteredFrom for p in cohort) > timeMachine.now:
            flow.status = FlowStatus.AWAITING_REGISTRATION.value
        else:
            flow.status = FlowStatus.REGISTRATION_OPEN.value

    def refreshActiveFlows(self) -> int:
        """
        Re-derive status of running flows (windows open with time).
        Called by background scheduler.

        Returns:
            Number of flows whose status changed
        """
        changed = 0
        flows = self.session.query(ProjectFlow).filter(
            ProjectFlow.status != FlowStatus.COMPLETED.value,
            ProjectFlow.onPause.is_(False)
        ).all()

        for flow in flows:
            before = flow.status
            self._refreshStatus(flow, ParticipantTree(self.session, flow))
            if flow.status != before:
                changed += 1
                logger.info(f"Flow {flow.flowID}: {before} → {flow.status}")

        self.session.commit()
        return changed

    def _complete(self, flow: ProjectFlow) -> None:
        flow.status = FlowStatus.COMPLETED.value
        flow.onPause = False
        flow.completedAt = timeMachine.now
        if flow.project is not None:
            flow.project.status = Project.STATUS_REGISTRATION_COMPLETED
        logger.info(f"Flow {flow.flowID} completed on level {flow.currentLevel}")

    def _pause(self, flow: ProjectFlow) -> None:
        flow.onPause = True
        flow.status = FlowStatus.PAUSED.value
        logger.info(f"Flow {flow.flowID} paused on level {flow.currentLevel}")

    # ═══════════════════════════════════════════════════════════════════
    # TREE BUILDING
    # ═══════════════════════════════════════════════════════════════════

    def _insertSlot(self, flow: ProjectFlow, tree: ParticipantTree, user: User,
                    sponsor: Optional[FlowParticipant], start: datetime) -> FlowParticipant:
        participant = tree.insert(
            user,
            sponsor,
            mustBeRegisteredFrom=start,
            acceptStageStartsAt=add_register_time(flow, start),
            timeForRegistration=flow.timeForRegistration,
            timeForAccept=flow.timeForAccept,
        )
        if sponsor is not None:
            self._updateSponsorAcceptFrom(tree, sponsor)
        return participant

    @staticmethod
    def _updateSponsorAcceptFrom(tree: ParticipantTree, sponsor: FlowParticipant) -> None:
        waiting = [c.acceptStageStartsAt for c in tree.childrenOf(sponsor.participantID)
                   if not c.isAccepted]
        if waiting:
            sponsor.mustAcceptChildrenFrom = min(waiting)

    def _buildChain(self, flow: ProjectFlow, tree: ParticipantTree, sponsor: FlowParticipant,
                    start: datetime, size: int, candidates: List[ProjectCandidate]) -> List[FlowParticipant]:
        """Chain `size` candidates below sponsor, one per level, starting at `start`."""
        created = []
        current = sponsor

        for offset in range(size):
            if not candidates:
                break
            candidate = candidates.pop(0)
            child_start = level_start(flow, start, offset)
            current = self._insertSlot(flow, tree, candidate.user, current, child_start)
            created.append(current)

        return created

    def _startGroup(self, flow: ProjectFlow, tree: ParticipantTree,
                    sponsors: List[FlowParticipant], start: datetime) -> List[FlowParticipant]:
        """
        Fill the next group below `sponsors` from the candidate pool.

        one-child tree: chain of howMuchUsersInOneGroup under the last sponsor
        multi-children tree: one level, up to branchingFactor per sponsor
        """
        candidates = self._availableCandidates(flow, tree)
        created: List[FlowParticipant] = []

        if flow.isOneChildTree:
            sponsor = sponsors[-1]
            created = self._buildChain(
                flow, tree, sponsor, start, flow.howMuchUsersInOneGroup, candidates
            )
            if created:
                # A slot emptied by removeRestOfTheGroup is taken by the new chain
                for removed in tree.childrenOf(sponsor.participantID, includeDeleted=True):
                    if removed.deleted and removed.inheritorID is None:
                        removed.inheritorID = created[0].participantID
        else:
            for sponsor in sponsors:
                free = flow.branchingFactor - len(tree.childrenOf(sponsor.participantID))
                for _ in range(free):
                    if not candidates:
                        break
                    candidate = candidates.pop(0)
                    created.append(self._insertSlot(flow, tree, candidate.user, sponsor, start))

        if not created:
            logger.info(f"Flow {flow.flowID}: no candidates left for a new group")
            return created

        first_level = sponsors[0].level + 1
        # Current level keeps running if it still has participants to accept
        if not any(not p.isAccepted for p in tree.levelOf(flow.currentLevel)):
            flow.currentLevel = first_level
        flow.groupStartLevel = first_level
        logger.info(
            f"Flow {flow.flowID}: new group of {len(created)} participants "
            f"from level {first_level}, registration from {start}"
        )
        return created

    # ═══════════════════════════════════════════════════════════════════
    # CREATE
    # ═══════════════════════════════════════════════════════════════════

    def createAndStart(self, project: Project, config: Dict[str, Any], actor: Actor) -> ProjectFlow:
        """
        Create a flow with its root participant and open registration.

        Args:
            project: Accepted project
            config: registration_type, leader_id, how_much_users_in_one_group,
                    must_be_registered_from, time_for_registration,
                    time_for_accept, comments, auto_continue
            actor: Admin

        Raises:
            PermissionDenied, ValidationError, NotEligible
        """
        with self._checks():
            self._requireAdmin(actor, "start a flow")
            cleaned = self._validateFlowConfig(config)

            leader = self.session.get(User, cleaned["leader_id"])
            if leader is None:
                raise ValidationError({"leader_id": f"user {cleaned['leader_id']} not found"})

            existing = self.session.query(ProjectFlow).filter_by(projectID=project.projectID).first()
            if existing:
                raise NotEligible(f"Project {project.projectID} already has flow {existing.flowID}")

        with self._atomic("createAndStart"):
            flow = ProjectFlow(
                projectID=project.projectID,
                leaderID=leader.userID,
                registrationType=cleaned["registration_type"].value,
                howMuchUsersInOneGroup=cleaned["how_much_users_in_one_group"],
                mustBeRegisteredFrom=cleaned["must_be_registered_from"],
                timeForRegistration=cleaned["time_for_registration"],
                timeForAccept=cleaned["time_for_accept"],
                autoContinue=cleaned["auto_continue"],
                comments=cleaned["comments"],
                currentLevel=0,
                groupStartLevel=0,
                onPause=False,
            )
            self.session.add(flow)
            self.session.flush()

            tree = ParticipantTree(self.session, flow)
            root = self._insertSlot(flow, tree, leader, None, flow.mustBeRegisteredFrom)

            if flow.isOneChildTree and flow.howMuchUsersInOneGroup > 1:
                self._buildChain(
                    flow, tree, root, acceptance_ends_at(root),
                    flow.howMuchUsersInOneGroup - 1,
                    self._availableCandidates(flow, tree)
                )

            project.status = Project.STATUS_FLOW_REGISTRATION
            self._refreshStatus(flow, tree)

        logger.info(
            f"Flow {flow.flowID} started for project {project.projectID}: "
            f"type={flow.registrationType}, leader={leader.userID}, participants={len(tree)}"
        )
        return flow

    # ═══════════════════════════════════════════════════════════════════
    # REGISTRATION & ACCEPTANCE
    # ═══════════════════════════════════════════════════════════════════

    def registerParticipant(self, flowID: int, participantID: int,
                            data: Dict[str, Any], actor: Actor) -> FlowParticipant:
        """
        Store referral data of a participant whose registration window is open.

        Raises:
            ValidationError, PermissionDenied, AlreadyRegistered, NotEligible
        """
        cleaned = self._validateRegistrationData(data)
        with self._checks():
            flow = self._lockFlow(flowID)
            participant = self._getParticipant(flow, participantID)

            if not actor.isAdmin and actor.userID != participant.userID:
                raise PermissionDenied(f"User {actor.userID} cannot register participant {participantID}")
            if participant.isRegistered:
                raise AlreadyRegistered(f"Participant {participantID} is already registered")
            if participant.deleted:
                raise NotEligible(f"Participant {participantID} was removed")
            self._requireActive(flow)
            if participant.level != flow.currentLevel:
                raise NotEligible(
                    f"Registration of level {participant.level} is not open "
                    f"(flow is on level {flow.currentLevel})"
                )
            if timeMachine.now < participant.mustBeRegisteredFrom:
                raise NotEligible(f"Registration opens at {participant.mustBeRegisteredFrom}")

        with self._atomic("registerParticipant", flowID, participantID):
            participant.referralUrl = cleaned["referral_url"]
            participant.referralName = cleaned["referral_name"]
            participant.referralLogin = cleaned["referral_login"]
            participant.registeredAt = timeMachine.now
            self._refreshStatus(flow, ParticipantTree(self.session, flow))

        logger.info(f"Participant {participantID} registered in flow {flowID}")
        return participant

    def _acceptableCheck(self, flow: ProjectFlow, participant: FlowParticipant) -> None:
        if participant.deleted:
            raise NotEligible(f"Participant {participant.participantID} was removed")
        self._requireActive(flow)
        if participant.level != flow.currentLevel:
            raise NotEligible(
                f"Participant {participant.participantID} is on level {participant.level}, "
                f"flow is on level {flow.currentLevel}"
            )
        if not participant.isRegistered:
            raise NotEligible(f"Participant {participant.participantID} has not registered yet")
        if participant.isAccepted:
            raise NotEligible(f"Participant {participant.participantID} is already accepted")

    def acceptRegistration(self, flowID: int, participantID: int, actor: Actor) -> bool:
        """
        Sponsor (or admin) accepts a registered participant, then tries to
        advance the flow.

        Returns:
            True if the acceptance moved the flow forward

        Raises:
            PermissionDenied, NotEligible
        """
        with self._checks():
            flow = self._lockFlow(flowID)
            participant = self._getParticipant(flow, participantID)
            tree = ParticipantTree(self.session, flow)
            sponsor = tree.parentOf(participant)

            is_sponsor = sponsor is not None and not sponsor.deleted and actor.userID == sponsor.userID
            if not is_sponsor and not actor.isAdmin:
                raise PermissionDenied(f"User {actor.userID} cannot accept participant {participantID}")
            self._acceptableCheck(flow, participant)

        with self._atomic("acceptRegistration", flowID, participantID):
            participant.acceptedAt = timeMachine.now
            participant.acceptedBy = actor.userID
            advanced = self._moveToNextLevel(flow, tree)

            if advanced and not is_sponsor:
                self.queue.enqueue(flow, "admin_accept")
            self._refreshStatus(flow, tree)

        logger.info(
            f"Participant {participantID} accepted by {'sponsor' if is_sponsor else 'admin'} "
            f"{actor.userID} in flow {flowID} (advanced={advanced})"
        )
        return advanced

    def acceptParticipantsAsAdmin(self, flowID: int, actor: Actor) -> int:
        """
        Admin accepts every registered, not yet accepted participant of the
        current level, then recomputes the rest of the group.

        Returns:
            Number of participants accepted
        """
        with self._checks():
            self._requireAdmin(actor, "accept participants")
            flow = self._lockFlow(flowID)
            self._requireActive(flow)
        tree = ParticipantTree(self.session, flow)

        pending = [
            p for p in tree.levelOf(flow.currentLevel)
            if p.isRegistered and not p.isAccepted
        ]

        with self._atomic("acceptParticipantsAsAdmin", flowID):
            now = timeMachine.now
            for participant in pending:
                participant.acceptedAt = now
                participant.acceptedBy = actor.userID

            self._moveToNextLevel(flow, tree)
            self.queue.enqueue(flow, "admin_accept")
            self._refreshStatus(flow, tree)

        logger.info(f"Admin {actor.userID} accepted {len(pending)} participants in flow {flowID}")
        return len(pending)

    def moveToNextLevelIfPossible(self, flowID: int) -> bool:
        """Advance the flow when the whole current cohort is accepted."""
        with self._checks():
            flow = self._lockFlow(flowID)
        tree = ParticipantTree(self.session, flow)

        with self._atomic("moveToNextLevelIfPossible", flowID):
            advanced = self._moveToNextLevel(flow, tree)
            self._refreshStatus(flow, tree)
        return advanced

    def _moveToNextLevel(self, flow: ProjectFlow, tree: ParticipantTree) -> bool:
        """
        Advance when every slot of the current level is registered and
        accepted. A removed participant without inheritor blocks.
        """
        if not self._isActive(flow):
            return False

        level = tree.levelOf(flow.currentLevel, includeDeleted=True)
        cohort = [p for p in level if not p.deleted]
        if not cohort:
            return False

        for removed in level:
            if removed.deleted and removed.inheritorID is None:
                sponsor = tree.parentOf(removed)
                if sponsor is None or not sponsor.deleted:
                    return False
        if any(not p.isRegistered or not p.isAccepted for p in cohort):
            return False

        if tree.levelOf(flow.currentLevel + 1):
            flow.currentLevel += 1
            logger.info(f"Flow {flow.flowID} advanced to level {flow.currentLevel}")
            return True

        # Group finished
        if not self._availableCandidates(flow, tree):
            self._complete(flow)
            return True

        if not flow.autoContinue:
            self._pause(flow)
            return False

        start = max(max(acceptance_ends_at(p) for p in cohort), timeMachine.now)
        if not self._startGroup(flow, tree, cohort, start):
            self._complete(flow)
        return True

    # ═══════════════════════════════════════════════════════════════════
    # CONTINUATION & ACCEPT TIME
    # ═══════════════════════════════════════════════════════════════════

    def continueRegistration(self, flowID: int, config: Dict[str, Any], actor: Actor) -> ProjectFlow:
        """
        Resume a paused flow with new settings and open the next group.

        Raises:
            PermissionDenied, ValidationError, NotEligible
        """
        with self._checks():
            self._requireAdmin(actor, "continue registration")
            flow = self._lockFlow(flowID)
            cleaned = self._validateFlowConfig(config, registrationType=flow.type)

            if flow.isCompleted:
                raise NotEligible(f"Flow {flowID} is completed")
            if not flow.onPause:
                raise NotEligible(f"Flow {flowID} is not on pause")

            tree = ParticipantTree(self.session, flow)
            max_level = max(p.level for p in tree.all(includeDeleted=True))
            sponsor_level = tree.deepestActiveLevel(max_level)
            if sponsor_level is None:
                raise NotEligible(f"Flow {flowID} has no active participants to continue from")
            sponsors = tree.levelOf(sponsor_level)

        with self._atomic("continueRegistration", flowID):
            flow.howMuchUsersInOneGroup = cleaned["how_much_users_in_one_group"]
            flow.mustBeRegisteredFrom = cleaned["must_be_registered_from"]
            flow.timeForRegistration = cleaned["time_for_registration"]
            flow.timeForAccept = cleaned["time_for_accept"]
            flow.comments = cleaned["comments"]
            flow.autoContinue = cleaned["auto_continue"]
            flow.onPause = False

            if not self._startGroup(flow, tree, sponsors, flow.mustBeRegisteredFrom):
                # Nobody left to add: the running cohort finishes the flow
                # through the regular advance check.
                self._moveToNextLevel(flow, tree)
            self._refreshStatus(flow, tree)

        logger.info(f"Flow {flowID} continued from level {sponsor_level} (status={flow.status})")
        return flow

    def updateAcceptTime(self, flowID: int, newTime, actor: Actor) -> int:
        """
        Change the acceptance duration of the current non-accepted cohort,
        notify them and queue the cascade for the rest of the group.

        Returns:
            Number of participants whose accept time changed

        Raises:
            PermissionDenied, ValidationError, NotEligible
        """
        self._requireAdmin(actor, "update accept time")
        duration = parse_duration(newTime, "time_for_accept")
        minutes = to_minutes(duration)
        if minutes <= 0:
            raise ValidationError({"time_for_accept": "must be longer than 0:00"})

        with self._checks():
            flow = self._lockFlow(flowID)
            self._requireActive(flow)
            tree = ParticipantTree(self.session, flow)
            cohort = [p for p in tree.levelOf(flow.currentLevel) if not p.isAccepted]
            if not cohort:
                raise NotEligible(f"Flow {flowID} has nobody waiting for acceptance")

        with self._atomic("updateAcceptTime", flowID):
            for participant in cohort:
                participant.timeForAccept = minutes

            self.notifications.notifyParticipantsThatAcceptTimeWasUpdated(flow, cohort)
            self.queue.enqueue(flow, "accept_time_updated")

        logger.info(f"Flow {flowID}: accept time of {len(cohort)} participants set to {minutes} min")
        return len(cohort)

    # ═══════════════════════════════════════════════════════════════════
    # REMOVAL & SUBSTITUTION
    # ═══════════════════════════════════════════════════════════════════

    def markRemoved(self, flow: ProjectFlow, participant: FlowParticipant, reason: str) -> None:
        """Soft-delete a participant and pause the flow pending substitution."""
        participant.softDelete(reason)
        flow.onPause = True

    @staticmethod
    def updateTimings(participant: FlowParticipant, timeForRegistration: int, timeForAccept: int) -> None:
        """Set durations of the slot; the inheritor carries them forward."""
        participant.timeForRegistration = timeForRegistration
        participant.timeForAccept = timeForAccept

    def createInheritor(self, flow: ProjectFlow, tree: ParticipantTree,
                        participant: FlowParticipant, user: User,
                        registeredFrom: datetime) -> FlowParticipant:
        """
        New participant in the removed participant's slot: same parent,
        same level, timings recomputed from `registeredFrom`. Children of
        the removed participant move under the inheritor.
        """
        sponsor = tree.parentOf(participant)
        inheritor = tree.insert(
            user,
            sponsor,
            mustBeRegisteredFrom=registeredFrom,
            acceptStageStartsAt=add_register_time(participant, registeredFrom),
            timeForRegistration=participant.timeForRegistration,
            timeForAccept=participant.timeForAccept,
        )

        for child in tree.childrenOf(participant.participantID):
            tree.reparent(child, inheritor)
        inheritor.mustAcceptChildrenFrom = participant.mustAcceptChildrenFrom
        participant.inheritorID = inheritor.participantID

        if sponsor is not None:
            self._updateSponsorAcceptFrom(tree, sponsor)

        logger.info(
            f"Participant {inheritor.participantID} (user {user.userID}) inherits slot of "
            f"participant {participant.participantID} in flow {flow.flowID}"
        )
        return inheritor

    def removeParticipant(self, flowID: int, participantID: int, reason: str,
                          replacementUserID: int, newRegisteredFrom,
                          timeForRegistration, timeForAccept, actor: Actor) -> FlowParticipant:
        """
        Replace a participant by another user as one atomic unit:
        remove + pause, update slot timings, create inheritor, un-pause.

        Returns:
            The inheritor

        Raises:
            PermissionDenied, ValidationError, NotEligible before any change;
            TransactionFailure if any step fails (everything rolled back)
        """
        self._requireAdmin(actor, "remove participants")

        errors: Dict[str, str] = {}
        if not reason or not str(reason).strip():
            errors["deleted_reason"] = "required"
        elif len(str(reason)) > MAX_FIELD_LENGTH:
            errors["deleted_reason"] = f"max {MAX_FIELD_LENGTH} characters"

        registered_from = self._parseDatetime(newRegisteredFrom)
        if registered_from is None:
            errors["must_be_registered_from"] = "required, date and time"

        durations = {}
        for field, value in (("time_for_registration", timeForRegistration),
                             ("time_for_accept", timeForAccept)):
            try:
                durations[field] = to_minutes(parse_duration(value, field))
                if durations[field] <= 0:
                    errors[field] = "must be longer than 0:00"
            except ValidationError as e:
                errors.update(e.errors)

        with self._checks():
            replacement = self.session.get(User, replacementUserID) if replacementUserID else None
            if replacement is None:
                errors["user_id"] = "required, existing user"

            if errors:
                raise ValidationError(errors)

            flow = self._lockFlow(flowID)
            participant = self._getParticipant(flow, participantID)
            if flow.isCompleted:
                raise NotEligible(f"Flow {flowID} is completed")
            if participant.deleted:
                raise NotEligible(f"Participant {participantID} was already removed")
            if participant.isAccepted:
                raise NotEligible(f"Participant {participantID} is already accepted")

            tree = ParticipantTree(self.session, flow)
            if tree.findByUser(replacement.userID):
                raise NotEligible(f"User {replacement.userID} already takes part in flow {flowID}")

        with self._atomic("removeParticipant", flowID, participantID, wrapDomainErrors=True):
            self.markRemoved(flow, participant, reason)
            self.updateTimings(
                participant,
                durations["time_for_registration"],
                durations["time_for_accept"]
            )
            inheritor = self.createInheritor(flow, tree, participant, replacement, registered_from)
            flow.onPause = False
            self._refreshStatus(flow, tree)

        logger.info(
            f"Participant {participantID} removed from flow {flowID} ({reason}), "
            f"replaced by participant {inheritor.participantID}"
        )
        return inheritor

    def removeRestOfTheGroup(self, flowID: int, participantID: int, reason: str, actor: Actor) -> int:
        """
        One-child tree only: remove a participant together with every
        participant below it in the current group and pause the flow.
        Used when no candidate is left to take the slot; the next group
        is opened by continueRegistration.

        Returns:
            Number of participants removed
        """
        self._requireAdmin(actor, "remove participants")
        if not reason or not str(reason).strip():
            raise ValidationError({"deleted_reason": "required"})
        if len(str(reason)) > MAX_FIELD_LENGTH:
            raise ValidationError({"deleted_reason": f"max {MAX_FIELD_LENGTH} characters"})

        with self._checks():
            flow = self._lockFlow(flowID)
            participant = self._getParticipant(flow, participantID)

            if not flow.isOneChildTree:
                raise NotEligible(f"Flow {flowID} is not a one-child tree")
            if flow.isCompleted:
                raise NotEligible(f"Flow {flowID} is completed")
            if participant.isRoot:
                raise NotEligible("Root participant can only be replaced")
            if participant.deleted or participant.isAccepted:
                raise NotEligible(f"Participant {participantID} cannot be removed")

            tree = ParticipantTree(self.session, flow)
            removed = [participant]
            tree.walkDown(participant, lambda sponsor, child: removed.append(child))

        with self._atomic("removeRestOfTheGroup", flowID, participantID):
            for member in removed:
                self.markRemoved(flow, member, reason)
            self._pause(flow)

        logger.info(
            f"Removed {len(removed)} participants of flow {flowID} starting at "
            f"participant {participantID} ({reason}); flow paused"
        )
        return len(removed)
