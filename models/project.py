from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin, _get_current_time


class Project(Base, AuditMixin):
    __tablename__ = 'projects'

    STATUS_ACCEPTED = "accepted"
    STATUS_SECOND_VOTING_COMPLETED = "second_voting_completed"
    STATUS_FLOW_REGISTRATION = "flow_registration"
    STATUS_REGISTRATION_COMPLETED = "registration_completed"

    projectID = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    link = Column(String(100), nullable=True)
    comment = Column(Text)
    status = Column(String, index=True)

    candidates = relationship(
        'ProjectCandidate',
        back_populates='project',
        order_by='[ProjectCandidate.createdAt, ProjectCandidate.candidateID]'
    )

    def __repr__(self):
        return f"<Project(projectID={self.projectID}, name={self.name}, status={self.status})>"


class ProjectCandidate(Base):
    """User who agreed to take part in a project's referral flow."""
    __tablename__ = 'project_candidates'

    candidateID = Column(Integer, primary_key=True, autoincrement=True)
    projectID = Column(Integer, ForeignKey('projects.projectID'), nullable=False)
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False)
    createdAt = Column(DateTime, default=_get_current_time)

    project = relationship('Project', back_populates='candidates')
    user = relationship('User')

    __table_args__ = (
        UniqueConstraint('projectID', 'userID', name='_project_candidate_uc'),
        # Candidate pool is read in creation order
        Index('ix_candidate_project_created', 'projectID', 'createdAt'),
    )

    def __repr__(self):
        return f"<ProjectCandidate(project={self.projectID}, user={self.userID})>"
