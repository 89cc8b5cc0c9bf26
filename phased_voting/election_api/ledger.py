"""
Ballot ledger: accepts a ballot at most once per voter per phase.

The flag check on the voter document is a fast path only. The authoritative
fence is the batch applied on acceptance, which the store commits atomically:

    Expect   meta/config.phase == phase      (round closed meanwhile -> VotingClosed)
    Create   ballots/{voter}:{phase}         (second ballot -> AlreadyVoted)
    Increment candidate counter
    SetFields voter flag = true

Two racing requests from the same voter can both pass the fast path, but only
one Create can succeed, so exactly one increment is ever applied.
"""
import logging
from typing import List, Optional

from phased_voting.shared.errors import (
    AlreadyVoted,
    InvalidCandidateForRound,
    InvalidCredentials,
    VotingClosed,
    WriteConflict,
)
from phased_voting.shared.models import (
    BALLOTS,
    CONFIG_DOC_ID,
    META,
    PARTICIPANTS,
    Ballot,
    ElectionConfig,
    Participant,
    Phase,
    ballot_id,
    get_current_timestamp,
)
from phased_voting.election_api.shortlist import SHORTLIST_SIZE, derive_shortlist
from phased_voting.election_api.store import Create, Expect, Increment, RecordStore, SetFields

logger = logging.getLogger(__name__)


class BallotLedger:
    """Validates and records ballots against the record store."""

    def __init__(self, store: RecordStore, shortlist_size: int = SHORTLIST_SIZE):
        self.store = store
        self.shortlist_size = shortlist_size

    async def current_phase(self) -> Phase:
        return ElectionConfig.from_dict(await self.store.get(META, CONFIG_DOC_ID)).phase

    async def roster(self) -> List[Participant]:
        return [Participant.from_dict(doc) for doc in await self.store.query(PARTICIPANTS)]

    async def cast_vote(
        self,
        voter_id: str,
        candidate_id: str,
        phase: Optional[Phase] = None,
    ) -> Ballot:
        """
        Cast a ballot for candidate_id on behalf of voter_id.

        Args:
            voter_id: Participant casting the ballot
            candidate_id: Participant receiving the vote
            phase: Phase the caller believes is open; read from the store when None

        Returns:
            Ballot: the accepted ballot

        Raises:
            VotingClosed: phase does not accept ballots, or closed before commit
            InvalidCredentials: voter does not exist
            AlreadyVoted: voter already has a ballot in this phase
            InvalidCandidateForRound: unknown candidate, or not shortlisted in round two
            StoreUnavailable: the store could not be reached; nothing was applied
        """
        if phase is None:
            phase = await self.current_phase()
        phase = Phase(phase)

        if not phase.is_open:
            raise VotingClosed()

        voter_doc = await self.store.get(PARTICIPANTS, voter_id)
        if voter_doc is None:
            raise InvalidCredentials("Unknown voter")
        voter = Participant.from_dict(voter_doc)

        if voter.has_voted(phase):
            raise AlreadyVoted(f"You have already voted in Round {phase.round_number}")

        candidate_doc = await self.store.get(PARTICIPANTS, candidate_id)
        if candidate_doc is None:
            raise InvalidCandidateForRound(f"Unknown candidate {candidate_id}")

        if phase is Phase.SHORTLIST_REVEAL:
            shortlist = derive_shortlist(await self.roster(), self.shortlist_size)
            if candidate_id not in {p.id for p in shortlist}:
                raise InvalidCandidateForRound()

        ballot = Ballot(
            voterId=voter_id,
            candidateId=candidate_id,
            phase=phase,
            castAt=get_current_timestamp(),
        )

        try:
            await self.store.batch_write([
                Expect(META, CONFIG_DOC_ID, 'phase', phase.value, default=Phase.VOTING.value),
                Create(BALLOTS, ballot_id(voter_id, phase), ballot.to_dict()),
                Increment(PARTICIPANTS, candidate_id, phase.counter_field, 1),
                SetFields(PARTICIPANTS, voter_id, {phase.flag_field: True}, create_if_missing=False),
            ])
        except WriteConflict as e:
            raise self._rejection(e, phase) from e

        logger.info(
            f"Ballot accepted: voter={voter_id}, candidate={candidate_id}, phase={phase.value}"
        )
        return ballot

    @staticmethod
    def _rejection(conflict: WriteConflict, phase: Phase):
        op = conflict.operation
        if isinstance(op, Expect):
            logger.info(f"Ballot rejected, phase {phase.value} closed before commit")
            return VotingClosed()
        if isinstance(op, Create):
            logger.warning(f"Duplicate ballot rejected: {op.doc_id}")
            return AlreadyVoted(f"You have already voted in Round {phase.round_number}")
        # Voter or candidate removed by a concurrent reset
        logger.warning(f"Ballot rejected, participant vanished: {conflict.message}")
        if isinstance(op, Increment):
            return InvalidCandidateForRound(f"Unknown candidate {op.doc_id}")
        return InvalidCredentials("Unknown voter")
