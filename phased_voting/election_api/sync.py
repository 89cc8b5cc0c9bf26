"""
Sync coordinator: one per connected session.

Subscribes to the election config document and to the participant roster,
keeps the latest value of each independently and republishes a consolidated
ElectionView whenever either changes. Store callbacks only enqueue; a single
task per session drains the queue and publishes, so a view is never built
from a half-applied update and neither stream waits on the other.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from phased_voting.shared.models import (
    CONFIG_DOC_ID,
    META,
    PARTICIPANTS,
    ElectionConfig,
    ElectionView,
    Participant,
    Phase,
)
from phased_voting.election_api.shortlist import SHORTLIST_SIZE, derive_shortlist
from phased_voting.election_api.store import RecordStore, Unsubscribe

logger = logging.getLogger(__name__)

Publisher = Callable[[ElectionView], Union[None, Awaitable[None]]]

CONFIG_STREAM = "config"
ROSTER_STREAM = "roster"


async def snapshot_view(store: RecordStore, shortlist_size: int = SHORTLIST_SIZE) -> ElectionView:
    """One-off view read directly from the store, for request/response clients."""
    config = ElectionConfig.from_dict(await store.get(META, CONFIG_DOC_ID))
    roster = [Participant.from_dict(doc) for doc in await store.query(PARTICIPANTS)]
    return ElectionView(
        phase=config.phase,
        roster=roster,
        shortlist=derive_shortlist(roster, shortlist_size),
    )


class SyncCoordinator:
    """Live, consistent election view for one session."""

    def __init__(
        self,
        store: RecordStore,
        publish: Publisher,
        shortlist_size: int = SHORTLIST_SIZE,
    ):
        self.store = store
        self.publish = publish
        self.shortlist_size = shortlist_size

        self.phase: Phase = Phase.VOTING
        self.roster: List[Participant] = []
        self.latest: Optional[ElectionView] = None

        self._events: asyncio.Queue = asyncio.Queue()
        self._unsubscribers: List[Unsubscribe] = []
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    async def start(self) -> None:
        """Open both subscriptions and start the dispatch task."""
        try:
            self._unsubscribers.append(await self.store.subscribe(
                META, self._enqueue(CONFIG_STREAM), doc_id=CONFIG_DOC_ID
            ))
            self._unsubscribers.append(await self.store.subscribe(
                PARTICIPANTS, self._enqueue(ROSTER_STREAM)
            ))
        except Exception:
            await self.close()
            raise

        self._task = asyncio.create_task(self._run())

    def _enqueue(self, stream: str) -> Callable[[Any], None]:
        def callback(value: Any) -> None:
            if not self._closed:
                self._events.put_nowait((stream, value))
        return callback

    def _apply(self, stream: str, value: Any) -> None:
        """Take in one stream update; a malformed document is logged and skipped."""
        try:
            if stream == CONFIG_STREAM:
                self.phase = ElectionConfig.from_dict(value).phase
            else:
                self.roster = [Participant.from_dict(doc) for doc in value or []]
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Ignoring malformed {stream} update: {e!r}")

    def build_view(self) -> ElectionView:
        return ElectionView(
            phase=self.phase,
            roster=list(self.roster),
            shortlist=derive_shortlist(self.roster, self.shortlist_size),
        )

    async def _run(self) -> None:
        while True:
            stream, value = await self._events.get()
            self._apply(stream, value)
            # Coalesce whatever else is already pending into the same view
            while not self._events.empty():
                self._apply(*self._events.get_nowait())

            view = self.build_view()
            self.latest = view
            try:
                result = self.publish(view)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to publish election view: {e}")

    async def close(self) -> None:
        """Release both subscriptions and stop dispatching. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        for unsubscribe in self._unsubscribers:
            try:
                result = unsubscribe()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error releasing subscription: {e}")
        self._unsubscribers.clear()

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def __aenter__(self) -> 'SyncCoordinator':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
