"""Redis-backed record store."""
import asyncio
import copy
import itertools
import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from phased_voting.shared.errors import StoreUnavailable, WriteConflict
from phased_voting.election_api.store import (
    Callback,
    Create,
    Delete,
    Document,
    Expect,
    Increment,
    Operation,
    Predicate,
    RecordStore,
    SetFields,
    Unsubscribe,
    check_expect,
    check_operations,
    deliver,
    touched,
)

logger = logging.getLogger(__name__)


def encode_fields(fields: Dict[str, Any]) -> Dict[str, str]:
    """JSON-encode each hash field; integers stay HINCRBY compatible."""
    return {name: json.dumps(value) for name, value in fields.items()}


def decode_fields(raw: Dict[str, str]) -> Document:
    return {name: json.loads(value) for name, value in raw.items()}


class RedisRecordStore(RecordStore):
    """
    Record store on Redis.

    Layout, under a key prefix:
        {prefix}:doc:{collection}:{id}   HASH, one JSON-encoded value per field
        {prefix}:idx:{collection}        SET of document ids
        {prefix}:chan:{collection}       pub/sub channel, payload = JSON list of changed ids

    Batches run as optimistic transactions: every key an Expect/Create (or an
    update that requires an existing document) depends on is WATCHed, the
    preconditions are checked, and the writes plus change notifications are
    queued in MULTI/EXEC. A WatchError re-runs the whole batch so the
    preconditions are evaluated again.

    Change notifications use a single pattern subscription per store, so the
    number of pooled connections does not grow with the number of
    subscribers. One listener task re-reads changed documents and fans them
    out to the in-process subscriber map.
    """

    def __init__(self, client: redis.Redis, prefix: str = "election", max_retries: int = 25):
        self.client = client
        self.prefix = prefix
        self.max_retries = max_retries
        self._subscribers: Dict[int, Tuple[str, Optional[str], Callback]] = {}
        self._ids = itertools.count(1)
        self._listener: Optional[asyncio.Task] = None
        # Serialises initial deliveries with listener deliveries
        self._dispatch_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> 'RedisRecordStore':
        client = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30
        )
        return cls(client, prefix=settings.REDIS_KEY_PREFIX, max_retries=settings.REDIS_TRANSACTION_RETRIES)

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:doc:{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self.prefix}:idx:{collection}"

    def _channel(self, collection: str) -> str:
        return f"{self.prefix}:chan:{collection}"

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            raw = await self.client.hgetall(self._doc_key(collection, doc_id))
        except RedisError as e:
            logger.error(f"Redis error reading {collection}/{doc_id}: {e}")
            raise StoreUnavailable() from e
        return decode_fields(raw) if raw else None

    async def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        """
        Consistent snapshot of a collection.

        All documents are read inside one MULTI block, so no batch can commit
        half-way through the read. The block also re-reads the id set; when it
        no longer matches the ids that were fetched the read is repeated.
        """
        index = self._index_key(collection)
        try:
            for attempt in range(1, self.max_retries + 1):
                doc_ids = sorted(await self.client.smembers(index))
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.smembers(index)
                    for doc_id in doc_ids:
                        pipe.hgetall(self._doc_key(collection, doc_id))
                    members, *rows = await pipe.execute()
                if set(members) == set(doc_ids):
                    break
                logger.debug(f"Collection {collection} changed during read, retrying (attempt {attempt})")
            else:
                logger.error(f"Query of {collection} abandoned after {self.max_retries} attempts")
                raise StoreUnavailable("Record store is busy, please try again")
        except RedisError as e:
            logger.error(f"Redis error querying {collection}: {e}")
            raise StoreUnavailable() from e

        documents = [decode_fields(raw) for raw in rows if raw]
        if predicate is not None:
            documents = [document for document in documents if predicate(document)]
        return documents

    async def batch_write(self, operations: List[Operation]) -> None:
        check_operations(operations)
        watch_keys = sorted({
            self._doc_key(op.collection, op.doc_id)
            for op in operations
            if self._needs_watch(op)
        })

        try:
            for attempt in range(1, self.max_retries + 1):
                async with self.client.pipeline(transaction=True) as pipe:
                    try:
                        if watch_keys:
                            await pipe.watch(*watch_keys)
                        await self._check_preconditions(pipe, operations)
                        pipe.multi()
                        self._queue_writes(pipe, operations)
                        await pipe.execute()
                        return
                    except WatchError:
                        logger.debug(f"Batch contention, retrying (attempt {attempt})")
                        continue
        except RedisError as e:
            logger.error(f"Redis error applying batch: {e}")
            raise StoreUnavailable() from e

        logger.error(f"Batch abandoned after {self.max_retries} contended attempts")
        raise StoreUnavailable("Record store is busy, please try again")

    @staticmethod
    def _needs_watch(op: Operation) -> bool:
        if isinstance(op, (Expect, Create, Increment)):
            return True
        return isinstance(op, SetFields) and not op.create_if_missing

    async def _check_preconditions(self, pipe, operations: List[Operation]) -> None:
        # Documents created or deleted earlier in the same batch
        created: Set[str] = set()
        deleted: Set[str] = set()

        for op in operations:
            key = self._doc_key(op.collection, op.doc_id)

            if isinstance(op, Expect):
                raw = await pipe.hget(key, op.field)
                document = {op.field: json.loads(raw)} if raw is not None else None
                check_expect(op, document)
                continue

            if isinstance(op, Delete):
                deleted.add(key)
                created.discard(key)
                continue

            if isinstance(op, SetFields) and op.create_if_missing:
                created.add(key)
                deleted.discard(key)
                continue

            exists = key in created or (key not in deleted and await pipe.exists(key))
            if isinstance(op, Create):
                if exists:
                    raise WriteConflict(op, f"{op.collection}/{op.doc_id} already exists")
                created.add(key)
                deleted.discard(key)
            elif not exists:
                raise WriteConflict(op, f"{op.collection}/{op.doc_id} does not exist")

    def _queue_writes(self, pipe, operations: List[Operation]) -> None:
        for op in operations:
            key = self._doc_key(op.collection, op.doc_id)
            index = self._index_key(op.collection)

            if isinstance(op, Expect):
                continue
            if isinstance(op, Increment):
                pipe.hincrby(key, op.field, op.delta)
            elif isinstance(op, (Create, SetFields)):
                if isinstance(op, SetFields) and op.replace:
                    pipe.delete(key)
                pipe.hset(key, mapping=encode_fields(op.fields))
                pipe.sadd(index, op.doc_id)
            elif isinstance(op, Delete):
                pipe.delete(key)
                pipe.srem(index, op.doc_id)

        for collection, doc_ids in touched(operations).items():
            pipe.publish(self._channel(collection), json.dumps(sorted(doc_ids)))

    async def subscribe(
        self,
        collection: str,
        callback: Callback,
        doc_id: Optional[str] = None,
    ) -> Unsubscribe:
        async with self._dispatch_lock:
            try:
                await self._ensure_listener()
            except RedisError as e:
                logger.error(f"Redis error subscribing to {collection}: {e}")
                raise StoreUnavailable() from e

            # The listener is live, so no change falls between this read and the next delivery
            current = await self._current(collection, doc_id)
            key = next(self._ids)
            self._subscribers[key] = (collection, doc_id, callback)
            deliver(callback, current)

        def unsubscribe():
            self._subscribers.pop(key, None)

        return unsubscribe

    async def _ensure_listener(self) -> None:
        if self._listener is not None and not self._listener.done():
            return

        pubsub = self.client.pubsub()
        try:
            await pubsub.psubscribe(self._channel('*'))
        except RedisError:
            await pubsub.aclose()
            raise

        self._listener = asyncio.create_task(self._listen(pubsub))
        logger.info(f"Change listener started on {self._channel('*')}")

    async def _current(self, collection: str, doc_id: Optional[str]) -> Any:
        if doc_id is None:
            return await self.query(collection)
        return await self.get(collection, doc_id)

    async def _listen(self, pubsub) -> None:
        channel_prefix = self._channel('')
        try:
            async for message in pubsub.listen():
                if message.get('type') != 'pmessage':
                    continue
                collection = message['channel'][len(channel_prefix):]
                changed = set(json.loads(message['data']))
                async with self._dispatch_lock:
                    try:
                        await self._fan_out(collection, changed)
                    except StoreUnavailable as e:
                        logger.error(f"Could not refresh {collection} for subscribers: {e}")
        except RedisError as e:
            logger.error(f"Change listener lost: {e}")
        finally:
            await pubsub.aclose()

    async def _fan_out(self, collection: str, changed: Set[str]) -> None:
        targets = [
            (doc_id, callback)
            for sub_collection, doc_id, callback in list(self._subscribers.values())
            if sub_collection == collection and (doc_id is None or doc_id in changed)
        ]

        # One read per distinct target, shared by every subscriber on it
        snapshots: Dict[Optional[str], Any] = {}
        for doc_id, callback in targets:
            if doc_id not in snapshots:
                snapshots[doc_id] = await self._current(collection, doc_id)
            deliver(callback, copy.deepcopy(snapshots[doc_id]))

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        self._subscribers.clear()
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        try:
            await self.client.aclose()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
