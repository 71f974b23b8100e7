"""
Database models for the referral flow engine.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin, SoftDeleteMixin

# Project records
from models.user import User
from models.project import Project, ProjectCandidate

# Flow models
from models.flow import ProjectFlow
from models.flow_participant import FlowParticipant
from models.cascade_task import CascadeTask
from models.notification import FlowNotification

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',
    'SoftDeleteMixin',

    # Project records
    'User',
    'Project',
    'ProjectCandidate',

    # Flow
    'ProjectFlow',
    'FlowParticipant',
    'CascadeTask',
    'FlowNotification',

    # Listeners
    'register_all_listeners',
]
