"""SSE streaming endpoint for realtime ticket message sync.

Connect via EventSource:
    const es = new EventSource('/v1/events/tickets/tkt_123?since=1700000000000');
    es.addEventListener('insert', (e) => merge(JSON.parse(e.data)));

Event names: insert, update, delete, warning, heartbeat. An insert may
carry ``replaces`` (the temporary id of the optimistic entry it confirms).
"""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sse_starlette.sse import EventSourceResponse

from chatdesk.dependencies import get_sync, get_tenant_id
from chatdesk.logging_config import get_logger
from chatdesk.schemas import SyncEventResponse
from chatdesk.services.sync import MessageSynchronizer, SyncEvent

logger = get_logger(__name__)

router = APIRouter()

HEARTBEAT_SECONDS = 15.0


@router.get("/tickets/{ticket_id}")
async def stream_ticket_messages(
    ticket_id: str,
    since: Optional[int] = Query(None, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    sync: MessageSynchronizer = Depends(get_sync),
):
    """SSE endpoint: streams message changes for one ticket."""
    queue: asyncio.Queue[SyncEvent] = asyncio.Queue()

    async def on_event(event: SyncEvent) -> None:
        queue.put_nowait(event)

    # Raises NotFound (404) before the stream starts
    session = await sync.subscribe(tenant_id, ticket_id, on_event, since=since)

    async def event_generator():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield {
                        "event": "heartbeat",
                        "data": json.dumps({"ticketId": ticket_id, "status": "connected"}),
                    }
                    continue
                yield {
                    "event": event.type,
                    "data": SyncEventResponse.from_event(event).model_dump_json(),
                }
        finally:
            await session.close()
            logger.debug(f"SSE viewer left ticket {ticket_id}")

    return EventSourceResponse(event_generator())
