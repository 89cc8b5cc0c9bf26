"""Pytest fixtures for integration tests.

Each test gets its own key prefix on the Redis server named by REDIS_HOST,
REDIS_PORT and REDIS_DB; every key under that prefix is removed afterwards.
"""

import os
import uuid
from typing import AsyncGenerator

import pytest
import redis.asyncio as redis
from redis.exceptions import RedisError

from phased_voting.election_api.ledger import BallotLedger
from phased_voting.election_api.phases import PhaseController
from phased_voting.election_api.redis_store import RedisRecordStore


@pytest.fixture
async def redis_client() -> AsyncGenerator[redis.Redis, None]:
    """Redis client, or skip when no server is reachable."""
    client = redis.Redis(
        host=os.getenv("REDIS_HOST", "localhost"),
        port=int(os.getenv("REDIS_PORT", 6379)),
        db=int(os.getenv("REDIS_DB", 15)),
        password=os.getenv("REDIS_PASSWORD"),
        decode_responses=True,
        socket_connect_timeout=2
    )
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        await client.aclose()
        pytest.skip(f"Redis not available: {e}")

    yield client

    await client.aclose()


@pytest.fixture
async def redis_store(redis_client) -> AsyncGenerator[RedisRecordStore, None]:
    """Store under a throwaway key prefix."""
    prefix = f"test-election-{uuid.uuid4().hex[:12]}"
    store = RedisRecordStore(redis_client, prefix=prefix)

    yield store

    keys = [key async for key in redis_client.scan_iter(match=f"{prefix}:*")]
    if keys:
        await redis_client.delete(*keys)
    await store.close()


@pytest.fixture
async def redis_seeded(redis_store, roster_seed):
    await PhaseController(redis_store).reset_election(roster_seed)
    return redis_store


@pytest.fixture
def redis_ledger(redis_store) -> BallotLedger:
    return BallotLedger(redis_store)
