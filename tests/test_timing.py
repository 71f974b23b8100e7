# tests/test_timing.py
"""
Tests for the timing calculator.

Run:
    pytest tests/test_timing.py -v
"""
from datetime import timedelta
from types import SimpleNamespace

import pytest

from flow_system.exceptions import ValidationError
from flow_system.utils.timing import (
    acceptance_ends_at,
    add_register_time,
    compute_stage_timings,
    level_start,
    parse_duration,
    to_minutes,
)
from conftest import T0


def slot(registration=120, accept=60, accept_starts=None):
    return SimpleNamespace(
        timeForRegistration=registration,
        timeForAccept=accept,
        acceptStageStartsAt=accept_starts,
    )


# =============================================================================
# TEST CLASS: Duration parsing
# =============================================================================

class TestParseDuration:
    """Admin form durations: H:MM, minutes, timedelta."""

    @pytest.mark.parametrize("value, minutes", [
        ("2:00", 120),
        ("0:45", 45),
        ("26:30", 1590),
        (" 1:05 ", 65),
        ("90", 90),
        (15, 15),
        (timedelta(hours=1), 60),
    ])
    def test_accepted_formats(self, value, minutes):
        assert to_minutes(parse_duration(value)) == minutes

    @pytest.mark.parametrize("value", ["", None, "1:60", "abc", "1h", True])
    def test_malformed_rejected(self, value):
        with pytest.raises(ValidationError):
            parse_duration(value, "time_for_accept")

    def test_negative_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_duration(-5, "time_for_registration")

        assert "time_for_registration" in exc.value.errors

    def test_zero_is_parsed(self):
        """Zero is a valid duration here; callers reject it where needed."""
        assert parse_duration("0:00") == timedelta(0)


# =============================================================================
# TEST CLASS: Stage timings
# =============================================================================

class TestStageTimings:
    """Registration + acceptance stage deadlines."""

    def test_root_stage_two_hours_registration_one_hour_accept(self):
        """
        TEST: registration 2h, accept 1h, registration opens at T0.

        Verify: accept stage T0+2h .. T0+3h.
        """
        timings = compute_stage_timings(T0, timedelta(hours=2), timedelta(hours=1))

        assert timings.registration_starts == T0
        assert timings.registration_window_end == T0 + timedelta(hours=2)
        assert timings.accept_stage_starts_at == T0 + timedelta(hours=2)
        assert timings.accept_stage_ends_at == T0 + timedelta(hours=3)

    def test_add_register_time(self):
        assert add_register_time(slot(), T0) == T0 + timedelta(hours=2)
        assert add_register_time(slot(registration=30), T0) == T0 + timedelta(minutes=30)

    def test_level_start_rejects_negative_offset(self):
        with pytest.raises(ValueError):
            level_start(slot(), T0, -1)

    def test_acceptance_ends_at(self):
        participant = slot(accept_starts=T0 + timedelta(hours=2))
        assert acceptance_ends_at(participant) == T0 + timedelta(hours=3)

    def test_level_start_accumulates_full_stages(self):
        assert level_start(slot(), T0, 0) == T0
        assert level_start(slot(), T0, 1) == T0 + timedelta(hours=3)
        assert level_start(slot(), T0, 3) == T0 + timedelta(hours=9)

    def test_identical_inputs_identical_outputs(self):
        first = compute_stage_timings(T0, timedelta(minutes=95), timedelta(minutes=40))
        second = compute_stage_timings(T0, timedelta(minutes=95), timedelta(minutes=40))

        assert first == second
