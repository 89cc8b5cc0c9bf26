"""Pytest fixtures for the coordinator tests.

Unit tests run against the in-process record store. The Redis-backed
variants live in tests/integration and need a running Redis server.
"""

import asyncio
import os
from typing import Dict, List

# Must be set before the settings module is imported
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest

from phased_voting.shared.models import PARTICIPANTS, Participant, new_participant
from phased_voting.election_api.ledger import BallotLedger
from phased_voting.election_api.memory_store import InMemoryRecordStore
from phased_voting.election_api.phases import PhaseController
from phased_voting.election_api.store import SetFields

ROSTER = [
    ("240401", "B24CSA01", "Aarav Menon"),
    ("240402", "B24CSA02", "Diya Thomas"),
    ("240403", "B24CSA03", "Rahul Nair"),
    ("240404", "B24CSA04", "Sneha Pillai"),
    ("240405", "B24CSA05", "Arjun Varma"),
    ("240406", "B24CSA06", "Meera Joseph"),
    ("240407", "B24CSA07", "Nikhil Raj"),
]


class YieldingRecordStore(InMemoryRecordStore):
    """In-memory store whose reads suspend, so concurrent callers interleave."""

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        return await super().get(collection, doc_id)

    async def query(self, collection, predicate=None):
        await asyncio.sleep(0)
        return await super().query(collection, predicate)


@pytest.fixture
def roster_seed() -> List[Participant]:
    """Seven zeroed participants, document id = admission number."""
    return [new_participant(*entry) for entry in ROSTER]


@pytest.fixture
def store() -> InMemoryRecordStore:
    return YieldingRecordStore()


@pytest.fixture
def phases(store) -> PhaseController:
    return PhaseController(store)


@pytest.fixture
def ledger(store) -> BallotLedger:
    return BallotLedger(store)


@pytest.fixture
async def seeded(store, phases, roster_seed):
    """Store after a full election reset with the sample roster."""
    await phases.reset_election(roster_seed)
    return store


@pytest.fixture
def read_roster(store):
    """Returns a coroutine function reading {id: Participant} from the store."""
    async def _read() -> Dict[str, Participant]:
        return {doc['id']: Participant.from_dict(doc) for doc in await store.query(PARTICIPANTS)}

    return _read


@pytest.fixture
def set_round_one_votes(store):
    """Write round one tallies directly, bypassing the ledger."""
    async def _set(votes: Dict[str, int]) -> None:
        await store.batch_write([
            SetFields(PARTICIPANTS, participant_id, {'roundOneVotes': count}, create_if_missing=False)
            for participant_id, count in votes.items()
        ])

    return _set
