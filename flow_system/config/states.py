"""
Flow, queue and notification states.
"""
from enum import Enum


class FlowStatus(Enum):
    """Flow lifecycle. Level advance is a transition, not a resting state."""
    AWAITING_REGISTRATION = "awaiting_registration"
    REGISTRATION_OPEN = "registration_open"
    ACCEPT_PENDING = "accept_pending"
    PAUSED = "paused"
    COMPLETED = "completed"


class TaskStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationKind(Enum):
    REGISTRATION_OPEN = "registration_open"
    ACCEPT_TIME_UPDATED = "accept_time_updated"
    ACCEPT_STAGE_OPEN = "accept_stage_open"


class DeliveryStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"
