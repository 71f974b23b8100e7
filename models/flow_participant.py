"""
FlowParticipant model - one slot of the registration tree.

Participants are never physically removed: a removed participant keeps
its row (deleted=True) and points at the inheritor that took its slot.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin, SoftDeleteMixin


class FlowParticipant(Base, AuditMixin, SoftDeleteMixin):
    __tablename__ = 'flow_participants'

    participantID = Column(Integer, primary_key=True, autoincrement=True)
    flowID = Column(Integer, ForeignKey('project_flows.flowID'), nullable=False)
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False)

    # Tree topology (children are derived, never stored)
    parentID = Column(Integer, ForeignKey('flow_participants.participantID'), nullable=True)
    level = Column(Integer, nullable=False, default=0)

    # Per-slot durations, minutes
    timeForRegistration = Column(Integer, nullable=False)
    timeForAccept = Column(Integer, nullable=False)

    # Timings
    mustBeRegisteredFrom = Column(DateTime, nullable=True)
    acceptStageStartsAt = Column(DateTime, nullable=True)
    mustAcceptChildrenFrom = Column(DateTime, nullable=True)

    # "Already notified" flags
    notificationSent = Column(DateTime, nullable=True)
    notifyAboutAcceptSent = Column(DateTime, nullable=True)

    # Registration data
    referralUrl = Column(String(255), nullable=True)
    referralName = Column(String(255), nullable=True)
    referralLogin = Column(String(255), nullable=True)
    registeredAt = Column(DateTime, nullable=True)

    # Acceptance
    acceptedAt = Column(DateTime, nullable=True)
    acceptedBy = Column(Integer, nullable=True)  # userID of sponsor or admin

    # Soft removal (deleted / deletedReason / deletedAt from SoftDeleteMixin)
    inheritorID = Column(Integer, ForeignKey('flow_participants.participantID'), nullable=True)

    flow = relationship('ProjectFlow', back_populates='participants')
    user = relationship('User')
    parent = relationship(
        'FlowParticipant',
        remote_side=[participantID],
        foreign_keys=[parentID]
    )
    inheritor = relationship(
        'FlowParticipant',
        remote_side=[participantID],
        foreign_keys=[inheritorID],
        post_update=True
    )

    __table_args__ = (
        Index('ix_participant_flow_level', 'flowID', 'level', 'deleted'),
        Index('ix_participant_flow_parent', 'flowID', 'parentID'),
        Index('ix_participant_flow_user', 'flowID', 'userID'),
    )

    @property
    def isRegistered(self) -> bool:
        return self.registeredAt is not None

    @property
    def isAccepted(self) -> bool:
        return self.acceptedAt is not None

    @property
    def isRoot(self) -> bool:
        return self.parentID is None

    def toDict(self) -> dict:
        """Plain view used by external callers (pages, bots)."""
        return {
            "participantID": self.participantID,
            "flowID": self.flowID,
            "userID": self.userID,
            "parentID": self.parentID,
            "level": self.level,
            "registered": self.isRegistered,
            "accepted": self.isAccepted,
            "mustBeRegisteredFrom": self.mustBeRegisteredFrom,
            "acceptStageStartsAt": self.acceptStageStartsAt,
            "mustAcceptChildrenFrom": self.mustAcceptChildrenFrom,
            "referralUrl": self.referralUrl,
            "referralName": self.referralName,
            "referralLogin": self.referralLogin,
            "deleted": self.deleted,
            "deletedReason": self.deletedReason,
            "inheritorID": self.inheritorID,
        }

    def __repr__(self):
        return (
            f"<FlowParticipant(id={self.participantID}, flow={self.flowID}, user={self.userID}, "
            f"parent={self.parentID}, level={self.level}, deleted={self.deleted})>"
        )
