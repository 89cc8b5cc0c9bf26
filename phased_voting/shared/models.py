"""
Shared data models and utilities for the phased voting coordinator.

This module contains:
- Phase: the election phase enum and its round-specific field names
- Participant: a voter who is also a candidate
- ElectionConfig, Ballot, ElectionView, FinalStandings
- Collection names and document id helpers used by every store backend
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List


class Phase(str, Enum):
    """Phase of the election cycle."""
    VOTING = "VOTING"
    SHORTLIST_REVEAL = "SHORTLIST_REVEAL"
    FINAL_DECLARED = "FINAL_DECLARED"

    @property
    def is_open(self) -> bool:
        """True while ballots are accepted in this phase."""
        return self in ROUND_FIELDS

    @property
    def counter_field(self) -> str:
        """Candidate counter incremented by a ballot in this phase."""
        return ROUND_FIELDS[self][0]

    @property
    def flag_field(self) -> str:
        """Voter flag set by a ballot in this phase."""
        return ROUND_FIELDS[self][1]

    @property
    def round_number(self) -> int:
        return 1 if self is Phase.VOTING else 2


# (candidate counter, voter flag) per open phase
ROUND_FIELDS = {
    Phase.VOTING: ("roundOneVotes", "hasVotedRoundOne"),
    Phase.SHORTLIST_REVEAL: ("roundTwoVotes", "hasVotedRoundTwo"),
}


# Store collections and the singleton config document
COLLECTIONS = {
    'participants': 'participants',
    'meta': 'meta',
    'ballots': 'ballots',
}
CONFIG_DOC_ID = 'config'

PARTICIPANTS = COLLECTIONS['participants']
META = COLLECTIONS['meta']
BALLOTS = COLLECTIONS['ballots']


@dataclass
class Participant:
    """
    A participant of the election. Every authenticated voter is also a candidate.

    Attributes:
        id: Stable document identifier
        externalId: Login identifier (admission number)
        secret: Shared-secret credential (roll number), also the tie-break key
        displayName: Human readable name
        roundOneVotes: Votes received in round one
        roundTwoVotes: Votes received in round two
        hasVotedRoundOne: Whether this participant cast a round one ballot
        hasVotedRoundTwo: Whether this participant cast a round two ballot
    """
    id: str
    externalId: str
    secret: str
    displayName: str
    roundOneVotes: int = 0
    roundTwoVotes: int = 0
    hasVotedRoundOne: bool = False
    hasVotedRoundTwo: bool = False

    def has_voted(self, phase: Phase) -> bool:
        """Whether the idempotency flag for the given phase is set."""
        return bool(getattr(self, phase.flag_field))

    def votes(self, phase: Phase) -> int:
        return int(getattr(self, phase.counter_field))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return asdict(self)

    def to_public_dict(self) -> Dict[str, Any]:
        """Dictionary safe to push to clients (no credential)."""
        data = self.to_dict()
        data.pop('secret')
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Participant':
        """Create a Participant from a stored document, defaulting missing counters."""
        return cls(
            id=str(data['id']),
            externalId=str(data['externalId']),
            secret=str(data['secret']),
            displayName=str(data.get('displayName', '')),
            roundOneVotes=int(data.get('roundOneVotes') or 0),
            roundTwoVotes=int(data.get('roundTwoVotes') or 0),
            hasVotedRoundOne=bool(data.get('hasVotedRoundOne', False)),
            hasVotedRoundTwo=bool(data.get('hasVotedRoundTwo', False)),
        )


@dataclass
class ElectionConfig:
    """The singleton election configuration document."""
    phase: Phase = Phase.VOTING

    def to_dict(self) -> Dict[str, Any]:
        return {'phase': self.phase.value}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ElectionConfig':
        """A missing document or phase reads as VOTING."""
        if not data or not data.get('phase'):
            return cls()
        return cls(phase=Phase(data['phase']))


@dataclass
class Ballot:
    """An accepted ballot, stored once per (voter, phase)."""
    voterId: str
    candidateId: str
    phase: Phase
    castAt: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['phase'] = self.phase.value
        return data


@dataclass
class FinalStandings:
    """Round two result: a winner and the remaining finalists."""
    winner: Optional[Participant]
    runners_up: List[Participant] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'winner': self.winner.to_public_dict() if self.winner else None,
            'runnersUp': [p.to_public_dict() for p in self.runners_up],
        }


@dataclass
class ElectionView:
    """Consolidated view pushed to every session."""
    phase: Phase
    roster: List[Participant]
    shortlist: List[Participant]

    def shortlist_ids(self) -> List[str]:
        return [p.id for p in self.shortlist]

    def find(self, participant_id: str) -> Optional[Participant]:
        for participant in self.roster:
            if participant.id == participant_id:
                return participant
        return None


def ballot_id(voter_id: str, phase: Phase) -> str:
    """
    Document id of the ballot record for a voter in a phase.

    The store rejects a second create of the same id, which makes this the
    uniqueness constraint behind the idempotency guard.
    """
    return f"{voter_id}:{phase.value}"


def get_current_timestamp() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        str: ISO format timestamp with Z suffix
    """
    return datetime.utcnow().isoformat() + 'Z'


def new_participant(external_id: str, secret: str, display_name: str) -> Participant:
    """Participant with zeroed counters; the document id is the external id."""
    external_id = str(external_id).strip()
    return Participant(
        id=external_id,
        externalId=external_id,
        secret=str(secret).strip(),
        displayName=str(display_name).strip(),
    )
