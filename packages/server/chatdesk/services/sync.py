"""Realtime message synchronizer.

A viewer of a ticket holds a MessageTimeline: the merge of its own
optimistic (not yet persisted) sends with the persisted messages it has
seen. The timeline is always sorted by (created_at, id) and merging is
order independent, so feed events may arrive late, twice or shuffled.

MessageSynchronizer keeps a timeline fed:

    subscribe to the feed -> backfill from storage -> consume events
            ^                                              |
            +---- backoff <---- FeedDisconnected ----------+

Subscribing before the backfill means nothing written between the two
steps is lost; the overlap is absorbed by the idempotent merge. After a
drop the backfill starts BACKFILL_OVERLAP_MS before the timeline's
updated_at watermark, which also catches rows that committed late with an
older timestamp.
"""

import asyncio
import uuid
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from chatdesk.config import EngineSettings
from chatdesk.errors import FeedDisconnected, NotFound
from chatdesk.logging_config import get_logger
from chatdesk.models import (
    DIRECTION_OUTBOUND,
    MESSAGE_DELIVERED,
    MESSAGE_FAILED,
    MESSAGE_READ,
    MESSAGE_SENT,
    now_ms,
)
from chatdesk.services.feed import EVENT_DELETE, ChangeEvent, ChangeFeed, as_row
from chatdesk.services.tickets import TicketRouter

logger = get_logger(__name__)

# Local-only status of an optimistic entry before the server echoes it
STATUS_SENDING = "sending"

STATUS_RANK = {
    STATUS_SENDING: 0,
    MESSAGE_SENT: 1,
    MESSAGE_FAILED: 2,
    MESSAGE_DELIVERED: 3,
    MESSAGE_READ: 4,
}

SYNC_INSERT = "insert"
SYNC_UPDATE = "update"
SYNC_DELETE = "delete"
SYNC_WARNING = "warning"

BACKOFF_INITIAL_SECONDS = 0.5
BACKOFF_MAX_SECONDS = 30.0


@dataclass
class TimelineEntry:
    id: str
    ticket_id: str
    direction: str
    body: str
    status: str
    created_at: int
    updated_at: int
    is_ai_generated: bool = False
    agent_id: Optional[str] = None
    correlation_id: Optional[str] = None
    error: Optional[str] = None
    pending: bool = False

    @classmethod
    def from_row(cls, row: dict) -> "TimelineEntry":
        return cls(
            id=row["id"],
            ticket_id=row["ticket_id"],
            direction=row["direction"],
            body=row["body"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            is_ai_generated=bool(row.get("is_ai_generated")),
            agent_id=row.get("agent_id"),
            correlation_id=row.get("correlation_id"),
            error=row.get("error"),
        )

    @property
    def sort_key(self):
        return (self.created_at, self.id)

    def progress(self):
        return (STATUS_RANK.get(self.status, 0), self.updated_at)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SyncEvent:
    """What a viewer is told. ``replaces`` is the temp id an echo superseded."""

    type: str
    message: Optional[dict] = None
    replaces: Optional[str] = None
    detail: Optional[str] = None


class MessageTimeline:
    """Ordered, de-duplicated view of one ticket's messages for one viewer."""

    def __init__(self, ticket_id: str, match_window_ms: int = 10_000):
        self.ticket_id = ticket_id
        self.match_window_ms = match_window_ms
        self.watermark = 0
        self._confirmed: Dict[str, TimelineEntry] = {}
        self._pending: Dict[str, TimelineEntry] = {}
        self._deleted: Set[str] = set()

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._pending)

    def entries(self) -> List[TimelineEntry]:
        merged = list(self._confirmed.values()) + list(self._pending.values())
        return sorted(merged, key=lambda e: e.sort_key)

    def ids(self) -> List[str]:
        return [e.id for e in self.entries()]

    def get(self, entry_id: str) -> Optional[TimelineEntry]:
        return self._confirmed.get(entry_id) or self._pending.get(entry_id)

    @property
    def pending(self) -> List[TimelineEntry]:
        return sorted(self._pending.values(), key=lambda e: e.sort_key)

    def add_optimistic(
        self,
        body: str,
        *,
        correlation_id: Optional[str] = None,
        created_at: Optional[int] = None,
        agent_id: Optional[str] = None,
    ) -> TimelineEntry:
        """Show a local send immediately under a temporary id."""
        correlation_id = correlation_id or uuid.uuid4().hex
        ts = created_at if created_at is not None else now_ms()
        entry = TimelineEntry(
            id=f"tmp_{correlation_id}",
            ticket_id=self.ticket_id,
            direction=DIRECTION_OUTBOUND,
            body=body,
            status=STATUS_SENDING,
            created_at=ts,
            updated_at=ts,
            agent_id=agent_id,
            correlation_id=correlation_id,
            pending=True,
        )
        self._pending[entry.id] = entry
        return entry

    def fail_optimistic(self, temp_id: str, error: str) -> Optional[TimelineEntry]:
        """The local send request itself failed; keep the entry visible as failed."""
        entry = self._pending.get(temp_id)
        if entry is not None:
            entry.status = MESSAGE_FAILED
            entry.error = error
        return entry

    def apply_event(self, event: ChangeEvent) -> Optional[SyncEvent]:
        if event.kind == EVENT_DELETE:
            return self.remove(event.row["id"])
        return self.apply_row(event.row)

    def apply_row(self, row: dict) -> Optional[SyncEvent]:
        """Merge one persisted message row. Returns what changed, or None."""
        if row.get("ticket_id") != self.ticket_id:
            return None
        self.watermark = max(self.watermark, row.get("updated_at") or 0)
        if row["id"] in self._deleted:
            return None

        incoming = TimelineEntry.from_row(row)
        current = self._confirmed.get(incoming.id)
        if current is not None:
            if incoming.progress() <= current.progress():
                return None
            current.status = incoming.status
            current.updated_at = incoming.updated_at
            current.error = incoming.error
            return SyncEvent(SYNC_UPDATE, message=current.to_dict())

        replaced = self._match_pending(incoming)
        if replaced is not None:
            del self._pending[replaced.id]
        self._confirmed[incoming.id] = incoming
        return SyncEvent(
            SYNC_INSERT,
            message=incoming.to_dict(),
            replaces=replaced.id if replaced else None,
        )

    def remove(self, message_id: str) -> Optional[SyncEvent]:
        self._deleted.add(message_id)
        entry = self._confirmed.pop(message_id, None)
        if entry is None:
            return None
        return SyncEvent(SYNC_DELETE, message=entry.to_dict())

    def _match_pending(self, incoming: TimelineEntry) -> Optional[TimelineEntry]:
        if not self._pending or incoming.direction != DIRECTION_OUTBOUND:
            return None
        if incoming.correlation_id:
            for entry in self._pending.values():
                if entry.correlation_id == incoming.correlation_id:
                    return entry
            return None

        # No correlation id: same body, closest timestamp within the window
        best = None
        for entry in self._pending.values():
            if entry.body != incoming.body:
                continue
            distance = abs(entry.created_at - incoming.created_at)
            if distance > self.match_window_ms:
                continue
            if best is None or distance < abs(best.created_at - incoming.created_at):
                best = entry
        return best


EventCallback = Callable[[SyncEvent], Awaitable[None]]


class SyncSession:
    """A running subscription of one viewer to one ticket."""

    def __init__(self, tenant_id: str, ticket_id: str, timeline: MessageTimeline, on_event):
        self.tenant_id = tenant_id
        self.ticket_id = ticket_id
        self.timeline = timeline
        self.on_event: EventCallback = on_event
        self.ready = asyncio.Event()
        self.reconnects = 0
        self.task: Optional[asyncio.Task] = None

    async def emit(self, event: Optional[SyncEvent]) -> None:
        if event is not None:
            await self.on_event(event)

    async def close(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)


class MessageSynchronizer:
    def __init__(
        self,
        router: TicketRouter,
        feed: ChangeFeed,
        settings: EngineSettings,
        *,
        backoff_initial: float = BACKOFF_INITIAL_SECONDS,
        backoff_max: float = BACKOFF_MAX_SECONDS,
    ):
        self._router = router
        self._feed = feed
        self._settings = settings
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._sessions: Set[SyncSession] = set()

    def new_timeline(self, ticket_id: str) -> MessageTimeline:
        return MessageTimeline(ticket_id, self._settings.optimistic_match_window_ms)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    async def subscribe(
        self,
        tenant_id: str,
        ticket_id: str,
        on_event: EventCallback,
        *,
        since: Optional[int] = None,
        timeline: Optional[MessageTimeline] = None,
    ) -> SyncSession:
        """Start pushing ticket message changes to ``on_event``.

        Raises NotFound up front for unknown tickets. ``since`` skips the
        history the viewer already has.
        """
        await self._router.get_ticket(tenant_id, ticket_id)
        timeline = timeline or self.new_timeline(ticket_id)
        if since is not None:
            timeline.watermark = max(timeline.watermark, since)
        session = SyncSession(tenant_id, ticket_id, timeline, on_event)
        session.task = asyncio.create_task(
            self._run(session), name=f"sync:{ticket_id}"
        )
        self._sessions.add(session)
        session.task.add_done_callback(lambda task: self._session_done(session, task))
        return session

    def _session_done(self, session: SyncSession, task: asyncio.Task) -> None:
        self._sessions.discard(session)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Sync session for {session.ticket_id} crashed: {task.exception()}")

    async def shutdown(self) -> None:
        """Stop every live session. Runs before the feed is closed."""
        sessions = list(self._sessions)
        for session in sessions:
            await session.close()
        if sessions:
            logger.info(f"Closed {len(sessions)} sync sessions")

    async def _run(self, session: SyncSession) -> None:
        delay = self._backoff_initial
        while True:
            try:
                subscription = await self._feed.subscribe(
                    "messages", {"ticket_id": session.ticket_id}
                )
            except FeedDisconnected as e:
                logger.warning(f"Feed subscribe failed for {session.ticket_id}: {e}")
                delay = await self._backoff(delay)
                continue

            try:
                try:
                    await self._backfill(session)
                except NotFound as e:
                    await session.emit(SyncEvent(SYNC_WARNING, detail=str(e)))
                    return
                except SQLAlchemyError as e:
                    logger.warning(f"Backfill failed for {session.ticket_id}: {e}")
                    await session.emit(
                        SyncEvent(SYNC_WARNING, detail="Sync may be incomplete; retrying")
                    )
                    delay = await self._backoff(delay)
                    continue

                session.ready.set()
                delay = self._backoff_initial
                try:
                    async for event in subscription:
                        await session.emit(session.timeline.apply_event(event))
                except FeedDisconnected as e:
                    logger.warning(f"Feed dropped for ticket {session.ticket_id}: {e}")
            finally:
                await subscription.close()

            session.reconnects += 1
            delay = await self._backoff(delay)

    async def _backfill(self, session: SyncSession) -> None:
        watermark = session.timeline.watermark
        start = max(0, watermark - self._settings.backfill_overlap_ms) if watermark else 0
        messages = await self._router.fetch_since(
            session.tenant_id, session.ticket_id, start
        )
        if session.reconnects:
            logger.info(
                f"Backfilled {len(messages)} messages for {session.ticket_id} since {start}"
            )
        for message in messages:
            await session.emit(session.timeline.apply_row(as_row(message)))

    async def _backoff(self, delay: float) -> float:
        await asyncio.sleep(delay)
        return min(delay * 2, self._backoff_max)
