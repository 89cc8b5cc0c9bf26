"""Shortlist derivation and final standings."""
from typing import Iterable, List

from phased_voting.shared.models import FinalStandings, Participant, Phase

SHORTLIST_SIZE = 5


def derive_shortlist(roster: Iterable[Participant], size: int = SHORTLIST_SIZE) -> List[Participant]:
    """
    Top candidates by round one votes.

    Sorted by roundOneVotes descending, ties broken by secret ascending,
    truncated to size. With fewer candidates than size the whole roster is
    returned. The result depends only on the roster snapshot.

    Args:
        roster: Current participant snapshot
        size: Maximum shortlist length

    Returns:
        List of participants in shortlist order
    """
    ranked = sorted(roster, key=lambda p: (-p.roundOneVotes, p.secret))
    return ranked[:size]


def ballot_order(roster: Iterable[Participant]) -> List[Participant]:
    """Display order of candidates on a ballot (by secret)."""
    return sorted(roster, key=lambda p: p.secret)


def eligible_candidates(
    phase: Phase,
    roster: List[Participant],
    shortlist: List[Participant],
) -> List[Participant]:
    """Candidates a ballot may name in the given phase, in ballot order."""
    if phase is Phase.VOTING:
        return ballot_order(roster)
    if phase is Phase.SHORTLIST_REVEAL:
        return ballot_order(shortlist)
    return []


def final_standings(shortlist: Iterable[Participant]) -> FinalStandings:
    """
    Rank the finalists by round two votes (ties by secret).

    A single finalist is a winner with no runners-up; an empty shortlist has
    no winner.
    """
    ranked = sorted(shortlist, key=lambda p: (-p.roundTwoVotes, p.secret))
    if not ranked:
        return FinalStandings(winner=None)
    return FinalStandings(winner=ranked[0], runners_up=ranked[1:])
