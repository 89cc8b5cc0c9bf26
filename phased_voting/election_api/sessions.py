"""Voter login and per-session state."""
import logging
import secrets
import time
from typing import Dict, Iterable, Optional

from phased_voting.shared.errors import InvalidCredentials, VoteInProgress
from phased_voting.shared.models import PARTICIPANTS, Ballot, Participant, Phase
from phased_voting.election_api.ledger import BallotLedger
from phased_voting.election_api.store import RecordStore

logger = logging.getLogger(__name__)


async def authenticate(store: RecordStore, external_id: str, secret: str) -> Participant:
    """
    Find the participant matching both login identifiers.

    Raises:
        InvalidCredentials: no participant matches
    """
    external_id = (external_id or '').strip()
    secret = (secret or '').strip()
    if not external_id or not secret:
        raise InvalidCredentials()

    matches = await store.query(
        PARTICIPANTS,
        lambda doc: doc.get('externalId') == external_id and doc.get('secret') == secret
    )
    if not matches:
        logger.info(f"Login rejected for external id {external_id}")
        raise InvalidCredentials()

    return Participant.from_dict(matches[0])


class VoterSession:
    """
    One logged-in voter.

    The busy flag blocks a second ballot from this session while the first
    is still in flight; the ledger still guards against other sessions.
    """

    def __init__(self, token: str, participant: Participant, ledger: BallotLedger):
        self.token = token
        self.participant = participant
        self.ledger = ledger
        self.busy = False
        self.last_seen = time.monotonic()

    @property
    def voter_id(self) -> str:
        return self.participant.id

    async def cast_vote(self, candidate_id: str, phase: Optional[Phase] = None) -> Ballot:
        if self.busy:
            raise VoteInProgress()

        self.busy = True
        try:
            return await self.ledger.cast_vote(self.voter_id, candidate_id, phase)
        finally:
            self.busy = False


class SessionRegistry:
    """
    In-process map of session tokens to voter sessions.

    A session idle for longer than ttl_seconds expires; None disables expiry.
    """

    def __init__(self, store: RecordStore, ledger: BallotLedger, ttl_seconds: Optional[float] = None):
        self.store = store
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, VoterSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    async def login(self, external_id: str, secret: str) -> VoterSession:
        self.prune()
        participant = await authenticate(self.store, external_id, secret)
        token = secrets.token_urlsafe(32)
        session = VoterSession(token, participant, self.ledger)
        self._sessions[token] = session
        logger.info(f"Session opened for {participant.id}")
        return session

    def get(self, token: Optional[str]) -> VoterSession:
        session = self._sessions.get(token or '')
        if session is None or self._expired(session):
            self._sessions.pop(token or '', None)
            raise InvalidCredentials("Session expired, please log in again")
        session.last_seen = time.monotonic()
        return session

    def _expired(self, session: VoterSession) -> bool:
        if self.ttl_seconds is None:
            return False
        return time.monotonic() - session.last_seen > self.ttl_seconds

    def prune(self) -> int:
        """Drop expired sessions and return how many were dropped."""
        expired = [token for token, session in self._sessions.items() if self._expired(session)]
        for token in expired:
            del self._sessions[token]
        return len(expired)

    def retain(self, participant_ids: Iterable[str]) -> int:
        """
        Keep only sessions whose voter is still on the roster.

        Returns:
            int: number of sessions dropped
        """
        keep = set(participant_ids)
        dropped = [token for token, session in self._sessions.items() if session.voter_id not in keep]
        for token in dropped:
            del self._sessions[token]
        if dropped:
            logger.info(f"Dropped {len(dropped)} session(s) of participants no longer on the roster")
        return len(dropped)

    def close(self, token: str) -> None:
        session = self._sessions.pop(token, None)
        if session is not None:
            logger.info(f"Session closed for {session.voter_id}")

    def clear(self) -> None:
        self._sessions.clear()
