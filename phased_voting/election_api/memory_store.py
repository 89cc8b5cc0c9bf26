"""In-process record store for development and tests."""
import asyncio
import copy
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

from phased_voting.shared.errors import WriteConflict
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


class InMemoryRecordStore(RecordStore):
    """
    Record store kept in a dict of collections.

    A single asyncio.Lock serialises batches. Each batch is applied to a copy
    of the affected collections and swapped in only when every operation
    succeeded, so a failed precondition leaves no trace.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = asyncio.Lock()
        self._subscribers: Dict[int, Tuple[str, Optional[str], Callback]] = {}
        self._ids = itertools.count(1)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document)

    async def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        return self._snapshot(collection, predicate)

    async def batch_write(self, operations: List[Operation]) -> None:
        check_operations(operations)
        async with self._lock:
            names = {op.collection for op in operations}
            working = {name: copy.deepcopy(self._collections.get(name, {})) for name in names}

            for op in operations:
                self._apply(working[op.collection], op)

            self._collections.update(working)
            self._notify(touched(operations))

    async def subscribe(
        self,
        collection: str,
        callback: Callback,
        doc_id: Optional[str] = None,
    ) -> Unsubscribe:
        key = next(self._ids)
        self._subscribers[key] = (collection, doc_id, callback)
        deliver(callback, self._current(collection, doc_id))

        def unsubscribe():
            self._subscribers.pop(key, None)

        return unsubscribe

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _apply(self, documents: Dict[str, Document], op: Operation) -> None:
        existing = documents.get(op.doc_id)

        if isinstance(op, Expect):
            check_expect(op, existing)
        elif isinstance(op, Create):
            if existing is not None:
                raise WriteConflict(op, f"{op.collection}/{op.doc_id} already exists")
            documents[op.doc_id] = copy.deepcopy(op.fields)
        elif isinstance(op, Increment):
            if existing is None:
                raise WriteConflict(op, f"{op.collection}/{op.doc_id} does not exist")
            existing[op.field] = int(existing.get(op.field) or 0) + op.delta
        elif isinstance(op, SetFields):
            if existing is None and not op.create_if_missing:
                raise WriteConflict(op, f"{op.collection}/{op.doc_id} does not exist")
            if existing is None or op.replace:
                documents[op.doc_id] = copy.deepcopy(op.fields)
            else:
                existing.update(copy.deepcopy(op.fields))
        elif isinstance(op, Delete):
            documents.pop(op.doc_id, None)
        else:
            raise TypeError(f"Unsupported operation: {op!r}")

    def _snapshot(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        documents = self._collections.get(collection, {})
        result = [copy.deepcopy(documents[doc_id]) for doc_id in sorted(documents)]
        if predicate is not None:
            result = [document for document in result if predicate(document)]
        return result

    def _current(self, collection: str, doc_id: Optional[str]) -> Any:
        if doc_id is None:
            return self._snapshot(collection)
        return copy.deepcopy(self._collections.get(collection, {}).get(doc_id))

    def _notify(self, changes: Dict[str, set]) -> None:
        for collection, doc_id, callback in list(self._subscribers.values()):
            changed = changes.get(collection)
            if not changed:
                continue
            if doc_id is not None and doc_id not in changed:
                continue
            deliver(callback, self._current(collection, doc_id))
