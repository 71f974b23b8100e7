"""
ProjectFlow model - one referral-registration process per project.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin
from flow_system.config.registration_types import RegistrationType, get_branching_factor
from flow_system.config.states import FlowStatus


class ProjectFlow(Base, AuditMixin):
    __tablename__ = 'project_flows'

    flowID = Column(Integer, primary_key=True, autoincrement=True)
    projectID = Column(Integer, ForeignKey('projects.projectID'), nullable=False, index=True)
    leaderID = Column(Integer, ForeignKey('users.userID'), nullable=False)

    # Configuration
    registrationType = Column(String(32), nullable=False)
    howMuchUsersInOneGroup = Column(Integer, nullable=True)  # one_child_tree only
    mustBeRegisteredFrom = Column(DateTime, nullable=False)
    timeForRegistration = Column(Integer, nullable=False)  # minutes
    timeForAccept = Column(Integer, nullable=False)  # minutes
    autoContinue = Column(Boolean, default=False, nullable=False)
    comments = Column(String(255))

    # State
    status = Column(String(32), default=FlowStatus.AWAITING_REGISTRATION.value, nullable=False)
    onPause = Column(Boolean, default=False, nullable=False)
    currentLevel = Column(Integer, default=0, nullable=False)
    groupStartLevel = Column(Integer, default=0, nullable=False)
    completedAt = Column(DateTime, nullable=True)

    project = relationship('Project')
    leader = relationship('User')
    participants = relationship(
        'FlowParticipant',
        back_populates='flow',
        order_by='[FlowParticipant.createdAt, FlowParticipant.participantID]'
    )

    __table_args__ = (
        Index('ix_flow_status_pause', 'status', 'onPause'),
    )

    @property
    def type(self) -> RegistrationType:
        return RegistrationType(self.registrationType)

    @property
    def branchingFactor(self) -> int:
        return get_branching_factor(self.registrationType)

    @property
    def isOneChildTree(self) -> bool:
        return self.type is RegistrationType.ONE_CHILD_TREE

    @property
    def flowStatus(self) -> FlowStatus:
        return FlowStatus(self.status)

    @property
    def isCompleted(self) -> bool:
        return self.status == FlowStatus.COMPLETED.value

    def __repr__(self):
        return (
            f"<ProjectFlow(flowID={self.flowID}, type={self.registrationType}, "
            f"status={self.status}, level={self.currentLevel}, pause={self.onPause})>"
        )
