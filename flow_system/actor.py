# flow_system/actor.py
"""
Who performs an action. Passed explicitly into every flow operation;
the engine never reads session or request state.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from config import Config


class Role(Enum):
    ADMIN = "admin"
    PARTICIPANT = "participant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    userID: Optional[int]
    role: Role

    @property
    def isAdmin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SYSTEM)

    @classmethod
    def admin(cls, userID: int) -> "Actor":
        return cls(userID=userID, role=Role.ADMIN)

    @classmethod
    def participant(cls, userID: int) -> "Actor":
        return cls(userID=userID, role=Role.PARTICIPANT)

    @classmethod
    def system(cls) -> "Actor":
        """Background jobs."""
        return cls(userID=None, role=Role.SYSTEM)

    @classmethod
    def forUser(cls, user) -> "Actor":
        """Admin if flagged in the database or listed in ADMIN_USER_IDS."""
        if user.isAdmin or (user.telegramID is not None and Config.is_admin(user.telegramID)):
            return cls.admin(user.userID)
        return cls.participant(user.userID)
