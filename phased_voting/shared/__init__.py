"""
Shared models and errors for the phased voting coordinator.

This package contains common code used by the API service and scripts:
- Data models (Participant, ElectionConfig, Ballot, Phase)
- Store collection names and document id helpers
- The error taxonomy
"""

from .models import (
    Phase,
    Participant,
    ElectionConfig,
    Ballot,
    ElectionView,
    FinalStandings,
    ballot_id,
    new_participant,
    get_current_timestamp,
    ROUND_FIELDS,
    COLLECTIONS,
    CONFIG_DOC_ID,
    PARTICIPANTS,
    META,
    BALLOTS,
)
from .errors import (
    VotingError,
    InvalidCredentials,
    AlreadyVoted,
    VotingClosed,
    InvalidCandidateForRound,
    PhaseTransitionError,
    VoteInProgress,
    StoreUnavailable,
    WriteConflict,
)

__all__ = [
    'Phase',
    'Participant',
    'ElectionConfig',
    'Ballot',
    'ElectionView',
    'FinalStandings',
    'ballot_id',
    'new_participant',
    'get_current_timestamp',
    'ROUND_FIELDS',
    'COLLECTIONS',
    'CONFIG_DOC_ID',
    'PARTICIPANTS',
    'META',
    'BALLOTS',
    'VotingError',
    'InvalidCredentials',
    'AlreadyVoted',
    'VotingClosed',
    'InvalidCandidateForRound',
    'PhaseTransitionError',
    'VoteInProgress',
    'StoreUnavailable',
    'WriteConflict',
]

__version__ = '1.0.0'
