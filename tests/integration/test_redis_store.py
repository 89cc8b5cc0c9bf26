"""Integration tests for the Redis record store.

Requires a running Redis server (see conftest.py).
"""

import asyncio
import os
import uuid

import pytest
import redis.asyncio as redis
from redis.exceptions import RedisError

from phased_voting.shared.errors import AlreadyVoted, PhaseTransitionError, WriteConflict
from phased_voting.shared.models import BALLOTS, PARTICIPANTS, Ballot, Participant, Phase, ballot_id
from phased_voting.election_api.ledger import BallotLedger
from phased_voting.election_api.phases import PhaseController
from phased_voting.election_api.redis_store import RedisRecordStore
from phased_voting.election_api.store import Create, Delete, Expect, Increment, SetFields
from phased_voting.election_api.sync import SyncCoordinator

pytestmark = pytest.mark.docker


async def wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
class TestRedisBatches:
    """Atomic batches on Redis."""

    async def test_values_round_trip_with_types(self, redis_store):
        await redis_store.set_fields("things", "a", {"n": 3, "flag": True, "name": "x", "none": None})

        assert await redis_store.get("things", "a") == {"n": 3, "flag": True, "name": "x", "none": None}

    async def test_increment_is_server_side(self, redis_store):
        await redis_store.set_fields("things", "a", {"n": 0})

        await asyncio.gather(*[redis_store.atomic_increment("things", "a", "n") for _ in range(20)])

        assert (await redis_store.get("things", "a"))["n"] == 20

    async def test_create_conflict_applies_nothing(self, redis_store):
        await redis_store.batch_write([Create("things", "a", {"n": 1})])

        with pytest.raises(WriteConflict):
            await redis_store.batch_write([
                SetFields("things", "b", {"n": 1}),
                Create("things", "a", {"n": 2}),
            ])

        assert await redis_store.get("things", "b") is None
        assert (await redis_store.get("things", "a"))["n"] == 1

    async def test_expect_against_missing_document_uses_default(self, redis_store):
        await redis_store.batch_write([
            Expect("meta", "config", "phase", "VOTING", default="VOTING"),
            SetFields("things", "a", {"n": 1}),
        ])

        with pytest.raises(WriteConflict):
            await redis_store.batch_write([Expect("meta", "config", "phase", "FINAL_DECLARED")])

    async def test_replace_and_delete(self, redis_store):
        await redis_store.set_fields("things", "a", {"n": 1, "m": 2})
        await redis_store.batch_write([SetFields("things", "a", {"x": 0}, replace=True)])
        assert await redis_store.get("things", "a") == {"x": 0}

        await redis_store.batch_write([Delete("things", "a")])
        assert await redis_store.query("things") == []

    async def test_increment_after_delete_in_same_batch_conflicts(self, redis_store):
        await redis_store.set_fields("things", "a", {"n": 1})

        with pytest.raises(WriteConflict):
            await redis_store.batch_write([Delete("things", "a"), Increment("things", "a", "n")])

        assert (await redis_store.get("things", "a"))["n"] == 1

    async def test_create_without_fields_rejected(self, redis_store):
        with pytest.raises(ValueError):
            await redis_store.batch_write([Create("things", "a")])

        await redis_store.batch_write([Create("things", "a", {"n": 1})])
        with pytest.raises(WriteConflict):
            await redis_store.batch_write([Create("things", "a", {"n": 2})])


@pytest.mark.asyncio
class TestRedisLedger:
    """Ballot guarantees with Redis as the store."""

    async def test_concurrent_duplicates_count_once(self, redis_seeded, redis_ledger):
        results = await asyncio.gather(
            *[redis_ledger.cast_vote("240401", "240402") for _ in range(10)],
            return_exceptions=True
        )

        assert sum(isinstance(r, Ballot) for r in results) == 1
        assert sum(isinstance(r, AlreadyVoted) for r in results) == 9
        candidate = Participant.from_dict(await redis_seeded.get(PARTICIPANTS, "240402"))
        assert candidate.roundOneVotes == 1

    async def test_concurrent_voters_all_counted(self, redis_seeded, redis_ledger):
        voters = ["240401", "240402", "240403", "240404", "240405", "240406", "240407"]

        await asyncio.gather(*[redis_ledger.cast_vote(voter, "240403") for voter in voters])

        candidate = Participant.from_dict(await redis_seeded.get(PARTICIPANTS, "240403"))
        assert candidate.roundOneVotes == len(voters)

    async def test_reset_clears_ballots(self, redis_seeded, redis_ledger, roster_seed):
        await redis_ledger.cast_vote("240401", "240402")

        await PhaseController(redis_seeded).reset_election(roster_seed)

        assert await redis_seeded.get(BALLOTS, ballot_id("240401", Phase.VOTING)) is None
        await redis_ledger.cast_vote("240401", "240402")

    async def test_concurrent_advances_do_not_skip(self, redis_seeded):
        phases = PhaseController(redis_seeded)

        results = await asyncio.gather(phases.advance_phase(), phases.advance_phase(), return_exceptions=True)

        assert await phases.current_phase() in (Phase.SHORTLIST_REVEAL, Phase.FINAL_DECLARED)
        if await phases.current_phase() == Phase.SHORTLIST_REVEAL:
            assert any(isinstance(r, PhaseTransitionError) for r in results)


@pytest.mark.asyncio
class TestRedisSubscriptions:
    """Pub/sub change notifications."""

    async def test_document_subscription(self, redis_store):
        received = []
        unsubscribe = await redis_store.subscribe("meta", received.append, doc_id="config")
        assert received == [None]

        await redis_store.set_fields("meta", "other", {"x": 1})
        await redis_store.set_fields("meta", "config", {"phase": "VOTING"})
        await wait_for(lambda: len(received) == 2)

        assert received[1] == {"phase": "VOTING"}
        unsubscribe()

    async def test_collection_subscription_after_unsubscribe(self, redis_store):
        received = []
        unsubscribe = await redis_store.subscribe("things", received.append)
        await redis_store.set_fields("things", "a", {"n": 1})
        await wait_for(lambda: len(received) == 2)

        unsubscribe()
        await asyncio.sleep(0.05)
        await redis_store.set_fields("things", "b", {"n": 1})
        await asyncio.sleep(0.2)

        assert len(received) == 2

    async def test_sync_coordinator_over_redis(self, redis_seeded, redis_ledger):
        views = []

        async with SyncCoordinator(redis_seeded, views.append):
            await wait_for(lambda: len(views) >= 1)
            await redis_ledger.cast_vote("240401", "240407")
            await wait_for(lambda: views[-1].find("240407").roundOneVotes == 1)

        assert views[-1].shortlist_ids()[0] == "240407"

    async def test_subscribers_share_one_connection(self, roster_seed):
        pool = redis.ConnectionPool(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", 6379)),
            db=int(os.getenv("REDIS_DB", 15)),
            password=os.getenv("REDIS_PASSWORD"),
            decode_responses=True,
            max_connections=6
        )
        client = redis.Redis(connection_pool=pool)
        prefix = f"test-election-{uuid.uuid4().hex[:12]}"
        store = RedisRecordStore(client, prefix=prefix)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            pytest.skip(f"Redis not available: {e}")

        coordinators = [SyncCoordinator(store, lambda view: None) for _ in range(10)]
        try:
            await PhaseController(store).reset_election(roster_seed)

            for coordinator in coordinators:
                await coordinator.start()

            assert store.subscriber_count == 20
            ballot = await BallotLedger(store).cast_vote("240401", "240402")
            assert ballot.candidateId == "240402"
        finally:
            for coordinator in coordinators:
                await coordinator.close()
            keys = [key async for key in client.scan_iter(match=f"{prefix}:*")]
            if keys:
                await client.delete(*keys)
            await store.close()
            await pool.disconnect()


@pytest.mark.asyncio
class TestRedisSnapshots:
    """Collection reads under concurrent ballots."""

    async def test_query_never_shows_half_a_ballot(self, redis_seeded, redis_ledger):
        voters = ["240401", "240402", "240403", "240404", "240405", "240406", "240407"]
        done = asyncio.Event()
        snapshots = []

        async def read_until_done():
            while not done.is_set():
                snapshots.append(await redis_seeded.query(PARTICIPANTS))
                await asyncio.sleep(0)

        async def cast_all():
            try:
                await asyncio.gather(*[redis_ledger.cast_vote(voter, "240404") for voter in voters])
            finally:
                done.set()

        await asyncio.gather(read_until_done(), cast_all())
        snapshots.append(await redis_seeded.query(PARTICIPANTS))

        for snapshot in snapshots:
            votes = sum(doc.get("roundOneVotes", 0) for doc in snapshot)
            flags = sum(1 for doc in snapshot if doc.get("hasVotedRoundOne"))
            assert votes == flags
        assert sum(doc["roundOneVotes"] for doc in snapshots[-1]) == len(voters)
