"""
Error taxonomy for the phased voting coordinator.

Business outcomes (InvalidCredentials, AlreadyVoted, VotingClosed,
InvalidCandidateForRound, PhaseTransitionError, VoteInProgress) are shown to
the caller as-is and never retried. StoreUnavailable is a transient
infrastructure failure; the caller may retry manually.
"""

from typing import Any, Optional


class VotingError(Exception):
    """Base class for all coordinator errors."""

    code = "voting_error"
    default_message = "Voting error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidCredentials(VotingError):
    code = "invalid_credentials"
    default_message = "Invalid Credentials"


class AlreadyVoted(VotingError):
    code = "already_voted"
    default_message = "You have already voted in this round"


class VotingClosed(VotingError):
    code = "voting_closed"
    default_message = "Voting is currently closed"


class InvalidCandidateForRound(VotingError):
    code = "invalid_candidate"
    default_message = "Invalid candidate for this round"


class PhaseTransitionError(VotingError):
    code = "invalid_phase_transition"
    default_message = "Phase cannot be advanced"


class VoteInProgress(VotingError):
    code = "vote_in_progress"
    default_message = "A vote from this session is already being processed"


class StoreUnavailable(VotingError):
    code = "store_unavailable"
    default_message = "Record store unavailable, please try again"


class WriteConflict(VotingError):
    """A batch precondition failed; nothing in the batch was applied."""

    code = "write_conflict"
    default_message = "Batch precondition failed"

    def __init__(self, operation: Any, message: Optional[str] = None):
        super().__init__(message or f"Precondition failed: {operation!r}")
        self.operation = operation
