# flow_system/utils/timing.py
"""
Timing calculator for referral flows.

Pure functions only: no session, no clock. Given identical inputs they
return identical deadlines, which keeps the cascade job safe to re-run.

Stage layout of one participant:

    mustBeRegisteredFrom ── time_for_registration ──> acceptStageStartsAt
    acceptStageStartsAt  ── time_for_accept       ──> acceptance end
                                                       = next level's start
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from flow_system.exceptions import ValidationError

DurationLike = Union[timedelta, int, str]

_HOURS_MINUTES = re.compile(r"^\s*(\d+):([0-5]\d)\s*$")


@dataclass(frozen=True)
class StageTimings:
    """Deadlines of one registration + acceptance stage."""
    registration_starts: datetime
    registration_window_end: datetime
    accept_stage_starts_at: datetime
    accept_stage_ends_at: datetime


def parse_duration(value: DurationLike, field: str = "duration") -> timedelta:
    """
    Normalize a duration.

    Accepts a timedelta, a number of minutes, or "H:MM" as typed in
    the admin form.

    Raises:
        ValidationError: If value is empty, malformed or negative
    """
    if value is None or value == "":
        raise ValidationError({field: "required"})

    if isinstance(value, timedelta):
        duration = value
    elif isinstance(value, bool):
        raise ValidationError({field: "must be a duration"})
    elif isinstance(value, int):
        duration = timedelta(minutes=value)
    elif isinstance(value, str):
        match = _HOURS_MINUTES.match(value)
        if match:
            duration = timedelta(hours=int(match.group(1)), minutes=int(match.group(2)))
        elif value.strip().isdigit():
            duration = timedelta(minutes=int(value.strip()))
        else:
            raise ValidationError({field: f"expected H:MM, got {value!r}"})
    else:
        raise ValidationError({field: "must be a duration"})

    if duration < timedelta(0):
        raise ValidationError({field: "must not be negative"})
    return duration


def to_minutes(duration: timedelta) -> int:
    return int(duration.total_seconds() // 60)


def compute_stage_timings(start: datetime,
                          time_for_registration: timedelta,
                          time_for_accept: timedelta) -> StageTimings:
    """Deadlines of a stage that opens at `start`."""
    registration_window_end = start + time_for_registration
    return StageTimings(
        registration_starts=start,
        registration_window_end=registration_window_end,
        accept_stage_starts_at=registration_window_end,
        accept_stage_ends_at=registration_window_end + time_for_accept,
    )


def _durations(source):
    """(registration, accept) of a flow or participant, as timedeltas."""
    return (
        timedelta(minutes=source.timeForRegistration),
        timedelta(minutes=source.timeForAccept),
    )


def add_register_time(source, start: datetime) -> datetime:
    """
    When the acceptance stage starts for a slot whose registration opens
    at `start`. Level offsets are applied by level_start.

    Args:
        source: ProjectFlow or FlowParticipant carrying the durations
        start: Registration window opening
    """
    registration, _ = _durations(source)
    return start + registration


def acceptance_ends_at(participant) -> datetime:
    """End of the participant's acceptance stage."""
    _, accept = _durations(participant)
    return participant.acceptStageStartsAt + accept


def level_start(source, base: datetime, levels: int) -> datetime:
    """
    Registration opening `levels` levels below a participant whose own
    registration opens at `base`. Each level's start is the previous
    level's acceptance end.
    """
    if levels < 0:
        raise ValueError(f"Levels must be >= 0, got {levels}")
    registration, accept = _durations(source)
    return base + (registration + accept) * levels
