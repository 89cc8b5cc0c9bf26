"""Integration tests for the phased voting coordinator.

These tests run the Redis record store against a real Redis server:

- Atomic batches, preconditions and increments
- Concurrent duplicate ballots
- Change notifications over pub/sub

They are skipped when no Redis server is reachable (REDIS_HOST/REDIS_PORT).
"""

__version__ = "1.0.0"
