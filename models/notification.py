"""
Flow notification outbox.
Rows are written by the flow engine and delivered by NotificationProcessor.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, _get_current_time


class FlowNotification(Base):
    __tablename__ = 'flow_notifications'

    notificationID = Column(Integer, primary_key=True, autoincrement=True)
    flowID = Column(Integer, ForeignKey('project_flows.flowID'), nullable=False, index=True)
    participantID = Column(Integer, ForeignKey('flow_participants.participantID'), nullable=True)
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False)

    kind = Column(String(32), nullable=False)
    text = Column(Text, nullable=False)

    status = Column(String(20), default='pending', nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    createdAt = Column(DateTime, default=_get_current_time)
    sentAt = Column(DateTime, nullable=True)
    errorMessage = Column(String, nullable=True)

    user = relationship('User')
    participant = relationship('FlowParticipant')

    __table_args__ = (
        Index('ix_flow_notification_status', 'status', 'attempts'),
    )

    def __repr__(self):
        return f"<FlowNotification(id={self.notificationID}, kind={self.kind}, status={self.status})>"
