"""
Record store contract consumed by the coordinator.

A store holds JSON-like documents addressed by (collection, id). Besides
plain reads and writes it must provide:

- server-side atomic increments (never fetch-then-write)
- all-or-nothing batches with preconditions (Expect, Create)
- change subscriptions that deliver the current state immediately and then
  again after every committed change
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from phased_voting.shared.errors import WriteConflict

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Predicate = Callable[[Document], bool]
# A document subscription receives Optional[Document]; a collection
# subscription receives List[Document].
Callback = Callable[[Any], None]
Unsubscribe = Callable[[], Any]


@dataclass(frozen=True)
class Expect:
    """Precondition: document field must currently equal value (missing reads as default)."""
    collection: str
    doc_id: str
    field: str
    value: Any
    default: Any = None


@dataclass(frozen=True)
class Create:
    """Create-only write: the whole batch fails if the document exists."""
    collection: str
    doc_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Increment:
    """Atomic server-side increment of an integer field."""
    collection: str
    doc_id: str
    field: str
    delta: int = 1


@dataclass(frozen=True)
class SetFields:
    """Merge fields into a document; replace=True overwrites the whole document."""
    collection: str
    doc_id: str
    fields: Dict[str, Any]
    create_if_missing: bool = True
    replace: bool = False


@dataclass(frozen=True)
class Delete:
    """Delete a document; deleting a missing document is a no-op."""
    collection: str
    doc_id: str


Operation = Union[Expect, Create, Increment, SetFields, Delete]


def check_expect(op: Expect, document: Optional[Document]) -> None:
    """Raise WriteConflict unless the document satisfies the expectation."""
    current = (document or {}).get(op.field, op.default)
    if current != op.value:
        raise WriteConflict(op, f"{op.collection}/{op.doc_id}.{op.field} is {current!r}, expected {op.value!r}")


def check_operations(ops: Iterable[Operation]) -> None:
    """
    Reject writes that carry no fields.

    A Redis hash cannot be empty, so an empty Create would leave no trace and
    a second Create of the same id would pass.
    """
    for op in ops:
        if isinstance(op, (Create, SetFields)) and not op.fields:
            raise ValueError(f"{type(op).__name__} on {op.collection}/{op.doc_id} needs at least one field")


def touched(ops: Iterable[Operation]) -> Dict[str, set]:
    """Collections and document ids written by a batch (preconditions excluded)."""
    result: Dict[str, set] = {}
    for op in ops:
        if isinstance(op, Expect):
            continue
        result.setdefault(op.collection, set()).add(op.doc_id)
    return result


def deliver(callback: Callback, value: Any) -> None:
    """Invoke a subscriber; a failing subscriber never breaks the store."""
    try:
        callback(value)
    except Exception as e:
        logger.error(f"Subscriber callback failed: {e}", exc_info=True)


class RecordStore(ABC):
    """Abstract record store."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or None when it does not exist."""

    @abstractmethod
    async def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        """Return every document of the collection matching the predicate."""

    @abstractmethod
    async def batch_write(self, operations: List[Operation]) -> None:
        """
        Apply all operations atomically or none of them.

        Raises:
            WriteConflict: an Expect did not hold or a Create target exists
            StoreUnavailable: the store could not be reached
            ValueError: a Create or SetFields carries no fields
        """

    @abstractmethod
    async def subscribe(
        self,
        collection: str,
        callback: Callback,
        doc_id: Optional[str] = None,
    ) -> Unsubscribe:
        """
        Subscribe to a document (doc_id given) or a whole collection.

        The callback fires once with the current state before this coroutine
        returns, then after every committed change. The returned callable
        releases the subscription.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Check store health."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections and every open subscription."""

    async def atomic_increment(self, collection: str, doc_id: str, field: str, delta: int = 1) -> None:
        await self.batch_write([Increment(collection, doc_id, field, delta)])

    async def set_fields(
        self,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        create_if_missing: bool = True,
    ) -> None:
        await self.batch_write([SetFields(collection, doc_id, fields, create_if_missing)])


def create_store(settings) -> RecordStore:
    """Build the store backend selected by settings.STORE_BACKEND."""
    backend = settings.STORE_BACKEND.lower()
    if backend == "memory":
        from phased_voting.election_api.memory_store import InMemoryRecordStore
        return InMemoryRecordStore()
    if backend == "redis":
        from phased_voting.election_api.redis_store import RedisRecordStore
        return RedisRecordStore.from_settings(settings)
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")
