# flow_system/exceptions.py
"""
Flow engine error taxonomy.

Validation, permission and eligibility errors are raised before any
mutation. TransactionFailure is raised after a rollback.
"""
from typing import Dict, Optional


class FlowError(Exception):
    """Base class for all flow engine errors."""
    pass


class ValidationError(FlowError):
    """Bad or missing input. Carries field -> message pairs."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        details = "; ".join(f"{field}: {message}" for field, message in self.errors.items())
        super().__init__(f"Validation failed: {details}")


class CapacityExceeded(FlowError):
    """Sponsor already has the maximum number of children."""

    def __init__(self, sponsorID: int, capacity: int):
        self.sponsorID = sponsorID
        self.capacity = capacity
        super().__init__(f"Participant {sponsorID} already has {capacity} children")


class NotEligible(FlowError):
    """Action attempted on a participant or flow in the wrong state."""
    pass


class AlreadyRegistered(NotEligible):
    """Participant already submitted registration data."""
    pass


class PermissionDenied(FlowError):
    """Actor is not allowed to perform the action."""
    pass


class InvariantViolation(FlowError):
    """Tree structure would become inconsistent."""
    pass


class CycleDetected(FlowError):
    """Corrupted parent chain. Fatal for the job run, never retried."""

    def __init__(self, participantID: int, flowID: Optional[int] = None):
        self.participantID = participantID
        self.flowID = flowID
        super().__init__(f"Cycle detected at participant {participantID} (flow {flowID})")


class TransactionFailure(FlowError):
    """An atomic multi-entity unit failed and was rolled back."""

    def __init__(self, action: str, flowID: Optional[int] = None, participantID: Optional[int] = None):
        self.action = action
        self.flowID = flowID
        self.participantID = participantID
        super().__init__(f"Action '{action}' failed")
