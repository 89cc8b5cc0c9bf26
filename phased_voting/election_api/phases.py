"""Phase state machine: linear advance and full reset."""
import logging
from typing import Dict, List

from phased_voting.shared.errors import PhaseTransitionError, WriteConflict
from phased_voting.shared.models import (
    BALLOTS,
    CONFIG_DOC_ID,
    META,
    PARTICIPANTS,
    ROUND_FIELDS,
    ElectionConfig,
    Participant,
    Phase,
    ballot_id,
)
from phased_voting.election_api.store import Delete, Expect, Operation, RecordStore, SetFields

logger = logging.getLogger(__name__)

NEXT_PHASE: Dict[Phase, Phase] = {
    Phase.VOTING: Phase.SHORTLIST_REVEAL,
    Phase.SHORTLIST_REVEAL: Phase.FINAL_DECLARED,
}


def next_phase(phase: Phase) -> Phase:
    """
    Successor of phase in VOTING -> SHORTLIST_REVEAL -> FINAL_DECLARED.

    FINAL_DECLARED is terminal; only a reset starts a new cycle.
    """
    try:
        return NEXT_PHASE[Phase(phase)]
    except KeyError:
        raise PhaseTransitionError(
            f"{Phase(phase).value} is final; reset the election to start a new cycle"
        ) from None


class PhaseController:
    """Admin-side operations on the election phase."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def current_phase(self) -> Phase:
        return ElectionConfig.from_dict(await self.store.get(META, CONFIG_DOC_ID)).phase

    async def advance_phase(self) -> Phase:
        """
        Move one step forward.

        The write is conditioned on the phase read here, so two concurrent
        advances cannot skip a phase: the second one fails.
        """
        current = await self.current_phase()
        target = next_phase(current)

        try:
            await self.store.batch_write([
                Expect(META, CONFIG_DOC_ID, 'phase', current.value, default=Phase.VOTING.value),
                SetFields(META, CONFIG_DOC_ID, ElectionConfig(phase=target).to_dict()),
            ])
        except WriteConflict as e:
            raise PhaseTransitionError("Phase changed concurrently, refresh and retry") from e

        logger.info(f"Phase changed: {current.value} -> {target.value}")
        return target

    async def reset_election(self, seed: List[Participant]) -> int:
        """
        Wipe and reseed the roster and return to VOTING in one atomic batch.

        Every counter and flag is zeroed and every ballot record of the old
        and new roster is deleted. Participants missing from the seed are
        removed.

        Returns:
            int: number of participants seeded
        """
        if len({p.id for p in seed}) != len(seed):
            raise ValueError("Roster seed contains duplicate participant ids")
        if len({p.externalId for p in seed}) != len(seed):
            raise ValueError("Roster seed contains duplicate external ids")

        existing_ids = {doc['id'] for doc in await self.store.query(PARTICIPANTS)}
        seed_ids = {p.id for p in seed}

        operations: List[Operation] = []
        for participant_id in sorted(existing_ids | seed_ids):
            for phase in ROUND_FIELDS:
                operations.append(Delete(BALLOTS, ballot_id(participant_id, phase)))
        for participant_id in sorted(existing_ids - seed_ids):
            operations.append(Delete(PARTICIPANTS, participant_id))
        for participant in seed:
            fresh = Participant(
                id=participant.id,
                externalId=participant.externalId,
                secret=participant.secret,
                displayName=participant.displayName,
            )
            operations.append(SetFields(PARTICIPANTS, fresh.id, fresh.to_dict(), replace=True))
        operations.append(
            SetFields(META, CONFIG_DOC_ID, ElectionConfig(phase=Phase.VOTING).to_dict(), replace=True)
        )

        await self.store.batch_write(operations)

        logger.info(f"Election reset: {len(seed)} participants seeded, phase {Phase.VOTING.value}")
        return len(seed)
