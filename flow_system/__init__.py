# flow_system/__init__.py
"""
Flow System - referral flow timing and state engine.

Services live in flow_system.services and are imported from there;
models import this package, so only leaf modules are re-exported here.
"""

# Models and configuration
from flow_system.config.registration_types import RegistrationType, BRANCHING_FACTOR
from flow_system.config.states import FlowStatus, TaskStatus, NotificationKind

# Errors
from flow_system.exceptions import (
    FlowError,
    ValidationError,
    CapacityExceeded,
    NotEligible,
    AlreadyRegistered,
    PermissionDenied,
    InvariantViolation,
    CycleDetected,
    TransactionFailure,
)

# Actors
from flow_system.actor import Actor, Role

# Utilities
from flow_system.utils.time_machine import timeMachine

__all__ = [
    # Config
    'RegistrationType',
    'BRANCHING_FACTOR',
    'FlowStatus',
    'TaskStatus',
    'NotificationKind',

    # Errors
    'FlowError',
    'ValidationError',
    'CapacityExceeded',
    'NotEligible',
    'AlreadyRegistered',
    'PermissionDenied',
    'InvariantViolation',
    'CycleDetected',
    'TransactionFailure',

    # Actors
    'Actor',
    'Role',

    # Utils
    'timeMachine',
]
