from flow_system.config.registration_types import RegistrationType, BRANCHING_FACTOR, get_branching_factor
from flow_system.config.states import FlowStatus, TaskStatus, NotificationKind, DeliveryStatus

__all__ = [
    'RegistrationType',
    'BRANCHING_FACTOR',
    'get_branching_factor',
    'FlowStatus',
    'TaskStatus',
    'NotificationKind',
    'DeliveryStatus',
]
