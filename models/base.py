# flowreg/models/base.py
"""
Base model and mixins for all database tables.

Every timestamp written by the models comes from the time machine, so a
pinned clock in tests or admin tooling is seen by the whole schema.
"""
from sqlalchemy.orm import declarative_base
from sqlalchemy import Boolean, Column, DateTime, String

Base = declarative_base()


def _get_current_time():
    """Lazy import to avoid circular dependency."""
    from flow_system.utils.time_machine import timeMachine
    return timeMachine.now


class AuditMixin:
    createdAt = Column(DateTime, default=_get_current_time, index=True)
    updatedAt = Column(DateTime, default=_get_current_time, onupdate=_get_current_time)


class SoftDeleteMixin:
    """Rows that are flagged as removed instead of being deleted."""

    deleted = Column(Boolean, default=False, nullable=False)
    deletedReason = Column(String(255), nullable=True)
    deletedAt = Column(DateTime, nullable=True)

    def softDelete(self, reason: str) -> None:
        self.deleted = True
        self.deletedReason = reason
        self.deletedAt = _get_current_time()
