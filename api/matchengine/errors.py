"""
Matching error hierarchy.

Every error except ``ProvisioningFailed`` aborts the operation that raised it and
is rendered verbatim to the admin client together with the offending ids.
"""

from typing import Any, Dict, Optional


class MatchingError(Exception):
    """Base class for all matching engine errors"""

    status_code = 400
    code = "matching_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class EventNotFound(MatchingError):
    status_code = 404
    code = "event_not_found"


class GroupNotFound(MatchingError):
    status_code = 404
    code = "group_not_found"


class NoCommittedRun(MatchingError):
    status_code = 404
    code = "no_committed_run"


class ParticipantNotEligible(MatchingError):
    status_code = 404
    code = "participant_not_eligible"


class ParticipantNotInGroup(MatchingError):
    status_code = 404
    code = "participant_not_in_group"


class NoEligibleParticipants(MatchingError):
    status_code = 422
    code = "no_eligible_participants"


class MatchingAlreadyInProgress(MatchingError):
    status_code = 409
    code = "matching_already_in_progress"


class ParticipantAlreadyAssigned(MatchingError):
    status_code = 409
    code = "participant_already_assigned"


class GroupCapacityExceeded(MatchingError):
    status_code = 409
    code = "group_capacity_exceeded"


class ConcurrentModification(MatchingError):
    status_code = 409
    code = "concurrent_modification"


class InvalidGroupSize(MatchingError):
    status_code = 422
    code = "invalid_group_size"


class InvalidTraitVector(MatchingError):
    status_code = 422
    code = "invalid_trait_vector"


class Timeout(MatchingError):
    status_code = 504
    code = "timeout"


class ProvisioningFailed(MatchingError):
    """Chat provisioning gave up. Logged by the dispatcher, never raised to callers."""

    status_code = 502
    code = "provisioning_failed"
