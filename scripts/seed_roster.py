#!/usr/bin/env python3
"""
Reset the election and seed the participant roster into Redis.

Reads a roster JSON file (a list of {externalId, secret, displayName}
entries) and runs a full election reset: every counter and flag is zeroed,
all ballots are deleted and the phase returns to VOTING.

Usage:
    python seed_roster.py [--roster FILE] [--redis-host HOST] [--redis-port PORT] [--yes]

Environment Variables:
    REDIS_HOST: Redis server host (default: localhost)
    REDIS_PORT: Redis server port (default: 6379)
    REDIS_PASSWORD: Redis password (optional)
    REDIS_KEY_PREFIX: Key prefix (default: election)
"""

import os
import sys
import asyncio
import argparse
from pathlib import Path

import redis.asyncio as redis

from phased_voting.election_api.phases import PhaseController
from phased_voting.election_api.redis_store import RedisRecordStore
from phased_voting.election_api.seed import load_roster_seed
from phased_voting.shared.errors import StoreUnavailable


async def seed(args: argparse.Namespace) -> int:
    """
    Load the roster file and reset the election.

    Returns:
        int: process exit code
    """
    try:
        participants = load_roster_seed(args.roster)
    except (OSError, ValueError) as e:
        print(f"✗ Could not read roster {args.roster}: {e}", file=sys.stderr)
        return 1

    print(f"Read {len(participants)} participant(s) from {args.roster}")
    if args.dry_run:
        for participant in participants:
            print(f"  {participant.externalId:<12} {participant.displayName}")
        return 0

    client = redis.Redis(
        host=args.redis_host,
        port=args.redis_port,
        password=args.redis_password,
        db=args.redis_db,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5
    )
    store = RedisRecordStore(client, prefix=args.prefix)

    try:
        if not await store.ping():
            print(f"✗ Failed to connect to Redis at {args.redis_host}:{args.redis_port}", file=sys.stderr)
            return 1
        print(f"✓ Connected to Redis at {args.redis_host}:{args.redis_port}")

        count = await PhaseController(store).reset_election(participants)
        print(f"✓ Election reset: {count} participants seeded, phase VOTING")
        return 0

    except StoreUnavailable as e:
        print(f"✗ Redis error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"✗ Invalid roster: {e}", file=sys.stderr)
        return 1
    finally:
        await store.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Reset the election and seed the participant roster'
    )
    parser.add_argument(
        '--roster',
        type=Path,
        default=Path(__file__).parent.parent / 'data' / 'roster.example.json',
        help='Roster JSON file (default: ../data/roster.example.json)'
    )
    parser.add_argument(
        '--redis-host',
        default=os.getenv('REDIS_HOST', 'localhost'),
        help='Redis server host (default: localhost)'
    )
    parser.add_argument(
        '--redis-port',
        type=int,
        default=int(os.getenv('REDIS_PORT', 6379)),
        help='Redis server port (default: 6379)'
    )
    parser.add_argument(
        '--redis-password',
        default=os.getenv('REDIS_PASSWORD'),
        help='Redis password (optional)'
    )
    parser.add_argument(
        '--redis-db',
        type=int,
        default=int(os.getenv('REDIS_DB', 0)),
        help='Redis database number (default: 0)'
    )
    parser.add_argument(
        '--prefix',
        default=os.getenv('REDIS_KEY_PREFIX', 'election'),
        help='Redis key prefix (default: election)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Only validate and list the roster'
    )
    parser.add_argument(
        '--yes',
        action='store_true',
        help='Skip the confirmation prompt'
    )

    args = parser.parse_args()

    if not args.dry_run and not args.yes:
        answer = input("Are you sure? This resets everything! [y/N] ")
        if answer.strip().lower() not in ('y', 'yes'):
            print("Aborted.")
            sys.exit(1)

    try:
        sys.exit(asyncio.run(seed(args)))
    except KeyboardInterrupt:
        print("\n\n✗ Seeding interrupted by user", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
