# flow_system/utils/time_machine.py
"""
Time machine - single clock for the flow engine.

All deadlines are stored as naive UTC datetimes. In test mode the clock
is pinned to a virtual time so timing scenarios are reproducible.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class TimeMachine:
    """Real or virtual "now" for the whole engine."""

    def __init__(self):
        self._virtualTime: Optional[datetime] = None
        self._isTestMode = False

    @property
    def now(self) -> datetime:
        """Current time, naive UTC."""
        if self._isTestMode and self._virtualTime is not None:
            return self._virtualTime
        return datetime.now(timezone.utc).replace(tzinfo=None)

    @property
    def isTestMode(self) -> bool:
        return self._isTestMode

    def setTime(self, virtualTime: datetime) -> None:
        """Pin the clock to a virtual time."""
        if virtualTime.tzinfo is not None:
            virtualTime = virtualTime.astimezone(timezone.utc).replace(tzinfo=None)
        self._virtualTime = virtualTime
        self._isTestMode = True
        logger.info(f"Time machine set to {virtualTime}")

    def advanceTime(self, **kwargs) -> datetime:
        """
        Move the virtual clock forward.

        Args:
            **kwargs: timedelta arguments (hours=1, minutes=30, ...)

        Returns:
            New virtual time
        """
        self.setTime(self.now + timedelta(**kwargs))
        return self._virtualTime

    def resetToRealTime(self) -> None:
        """Leave test mode."""
        self._virtualTime = None
        self._isTestMode = False
        logger.info("Time machine reset to real time")


timeMachine = TimeMachine()
