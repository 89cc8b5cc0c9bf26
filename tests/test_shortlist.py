"""Tests for shortlist derivation and final standings."""

import random

from phased_voting.shared.models import Participant, Phase
from phased_voting.election_api.shortlist import (
    ballot_order,
    derive_shortlist,
    eligible_candidates,
    final_standings,
)


def make(participant_id, secret, round_one=0, round_two=0):
    return Participant(
        id=participant_id,
        externalId=participant_id,
        secret=secret,
        displayName=f"Candidate {participant_id}",
        roundOneVotes=round_one,
        roundTwoVotes=round_two,
    )


def six_candidates():
    return [
        make("p10", "C3", 10),
        make("p8b", "B2", 8),
        make("p8a", "A1", 8),
        make("p5", "D4", 5),
        make("p3", "E5", 3),
        make("p1", "F6", 1),
    ]


class TestDeriveShortlist:
    """Top five by round one votes."""

    def test_ties_broken_by_secret_and_last_place_excluded(self):
        shortlist = derive_shortlist(six_candidates())

        assert [p.id for p in shortlist] == ["p10", "p8a", "p8b", "p5", "p3"]
        assert "p1" not in {p.id for p in shortlist}

    def test_derivation_is_stable_for_identical_snapshots(self):
        roster = six_candidates()
        expected = [p.id for p in derive_shortlist(roster)]

        for seed in range(20):
            shuffled = roster[:]
            random.Random(seed).shuffle(shuffled)
            assert [p.id for p in derive_shortlist(shuffled)] == expected

    def test_fewer_candidates_than_size_returns_whole_roster(self):
        roster = [make("a", "S2", 1), make("b", "S1", 1), make("c", "S3", 4)]

        shortlist = derive_shortlist(roster)

        assert [p.id for p in shortlist] == ["c", "b", "a"]

    def test_all_zero_votes_ordered_by_secret(self):
        roster = [make(str(i), f"R{9 - i}") for i in range(8)]

        shortlist = derive_shortlist(roster)

        assert [p.secret for p in shortlist] == ["R2", "R3", "R4", "R5", "R6"]

    def test_custom_size(self):
        assert len(derive_shortlist(six_candidates(), size=2)) == 2

    def test_empty_roster(self):
        assert derive_shortlist([]) == []

    def test_input_is_not_mutated(self):
        roster = six_candidates()
        before = [p.id for p in roster]

        derive_shortlist(roster)

        assert [p.id for p in roster] == before


class TestBallotOrder:
    """Which candidates a ballot shows, and in what order."""

    def test_ballot_order_by_secret(self):
        assert [p.secret for p in ballot_order(six_candidates())] == ["A1", "B2", "C3", "D4", "E5", "F6"]

    def test_voting_phase_offers_everyone(self):
        roster = six_candidates()
        candidates = eligible_candidates(Phase.VOTING, roster, derive_shortlist(roster))

        assert len(candidates) == 6

    def test_shortlist_phase_offers_shortlist_only(self):
        roster = six_candidates()
        candidates = eligible_candidates(Phase.SHORTLIST_REVEAL, roster, derive_shortlist(roster))

        assert [p.secret for p in candidates] == ["A1", "B2", "C3", "D4", "E5"]

    def test_final_phase_offers_nobody(self):
        roster = six_candidates()

        assert eligible_candidates(Phase.FINAL_DECLARED, roster, derive_shortlist(roster)) == []


class TestFinalStandings:
    """Round two ranking among the finalists."""

    def test_winner_and_runners_up(self):
        finalists = [make("a", "S1", round_two=2), make("b", "S2", round_two=7), make("c", "S3", round_two=4)]

        standings = final_standings(finalists)

        assert standings.winner.id == "b"
        assert [p.id for p in standings.runners_up] == ["c", "a"]

    def test_round_two_tie_broken_by_secret(self):
        finalists = [make("a", "Z9", round_two=3), make("b", "A0", round_two=3)]

        assert final_standings(finalists).winner.id == "b"

    def test_single_finalist_has_no_runners_up(self):
        standings = final_standings([make("solo", "S1", round_two=1)])

        assert standings.winner.id == "solo"
        assert standings.runners_up == []

    def test_no_finalists(self):
        standings = final_standings([])

        assert standings.winner is None
        assert standings.to_dict() == {"winner": None, "runnersUp": []}

    def test_public_dict_hides_secret(self):
        data = final_standings([make("a", "S1")]).to_dict()

        assert "secret" not in data["winner"]
