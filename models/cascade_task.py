"""
Queue for cascade recompute tasks.
Rows are added in the same transaction as the change that requested them,
so a worker only ever sees tasks whose trigger has committed.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from models.base import Base, _get_current_time


class CascadeTask(Base):
    """Cascade recompute task queue."""
    __tablename__ = 'cascade_task_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)
    flowID = Column(Integer, ForeignKey('project_flows.flowID'), nullable=False, index=True)
    reason = Column(String(64), nullable=True)
    status = Column(String(20), default='pending', index=True)
    createdAt = Column(DateTime, default=_get_current_time, index=True)
    startedAt = Column(DateTime, nullable=True)
    completedAt = Column(DateTime, nullable=True)
    attempts = Column(Integer, default=0)
    lastError = Column(String, nullable=True)

    def __repr__(self):
        return f"<CascadeTask(flowID={self.flowID}, status={self.status}, reason={self.reason})>"
