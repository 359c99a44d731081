"""Tests for the message timeline merge and the live synchronizer."""
import asyncio
import itertools
import json
import logging

import pytest

from chatdesk.database import session_scope
from chatdesk.errors import NotFound
from chatdesk.models import DIRECTION_INBOUND, MESSAGE_DELIVERED, Message
from chatdesk.schemas import SyncEventResponse
from chatdesk.services.sync import SYNC_WARNING, MessageSynchronizer, MessageTimeline, SyncEvent
from tests.conftest import TENANT, wait_for

TICKET = "tkt_timeline"


def row(
    message_id,
    created_at,
    *,
    status="sent",
    updated_at=None,
    direction="outbound",
    body="Olá",
    correlation_id=None,
):
    return {
        "id": message_id,
        "ticket_id": TICKET,
        "direction": direction,
        "body": body,
        "status": status,
        "is_ai_generated": False,
        "agent_id": None,
        "correlation_id": correlation_id,
        "external_id": None,
        "error": None,
        "created_at": created_at,
        "updated_at": updated_at if updated_at is not None else created_at,
    }


def snapshot(timeline):
    return [(e.id, e.status, e.updated_at) for e in timeline.entries()]


# ── Timeline merge ──────────────────────────────────────────────────


def test_merge_is_order_independent():
    rows = [
        row("msg_a", 1000, direction="inbound", status="delivered"),
        row("msg_b", 2000),
        row("msg_b", 2000, status="delivered", updated_at=2500),
        row("msg_b", 2000, status="read", updated_at=3000),
        row("msg_c", 1500, direction="inbound", status="delivered"),
    ]

    expected = None
    for ordering in itertools.permutations(rows):
        timeline = MessageTimeline(TICKET)
        for r in ordering:
            timeline.apply_row(r)
        # Redelivery must not change anything
        for r in ordering:
            timeline.apply_row(r)
        if expected is None:
            expected = snapshot(timeline)
        assert snapshot(timeline) == expected

    assert expected == [
        ("msg_a", "delivered", 1000),
        ("msg_c", "delivered", 1500),
        ("msg_b", "read", 3000),
    ]


def test_same_timestamp_ordered_by_id():
    timeline = MessageTimeline(TICKET)
    timeline.apply_row(row("msg_z", 1000))
    timeline.apply_row(row("msg_a", 1000))
    timeline.apply_row(row("msg_m", 999))

    assert timeline.ids() == ["msg_m", "msg_a", "msg_z"]


def test_status_never_regresses():
    timeline = MessageTimeline(TICKET)
    timeline.apply_row(row("msg_a", 1000, status="read", updated_at=1200))

    assert timeline.apply_row(row("msg_a", 1000, status="delivered", updated_at=1100)) is None
    assert timeline.get("msg_a").status == "read"


def test_rows_for_other_tickets_ignored():
    timeline = MessageTimeline(TICKET)
    other = row("msg_x", 1000)
    other["ticket_id"] = "tkt_other"

    assert timeline.apply_row(other) is None
    assert len(timeline) == 0


def test_deleted_message_stays_deleted():
    timeline = MessageTimeline(TICKET)
    timeline.apply_row(row("msg_a", 1000))

    event = timeline.remove("msg_a")
    assert event.type == "delete"
    assert timeline.apply_row(row("msg_a", 1000, status="delivered", updated_at=1500)) is None
    assert timeline.ids() == []


def test_watermark_tracks_latest_update():
    timeline = MessageTimeline(TICKET)
    timeline.apply_row(row("msg_a", 1000, updated_at=4000))
    timeline.apply_row(row("msg_b", 2000))

    assert timeline.watermark == 4000


# ── Optimistic sends ────────────────────────────────────────────────


def test_echo_replaces_optimistic_entry_by_correlation():
    timeline = MessageTimeline(TICKET)
    temp = timeline.add_optimistic("Vou verificar", correlation_id="corr-1", created_at=1000)
    assert temp.id == "tmp_corr-1"
    assert temp.status == "sending"

    event = timeline.apply_row(row("msg_real", 1300, body="Vou verificar", correlation_id="corr-1"))

    assert event.type == "insert"
    assert event.replaces == "tmp_corr-1"
    assert timeline.ids() == ["msg_real"]
    assert timeline.pending == []


def test_correlation_mismatch_does_not_fall_back_to_body():
    timeline = MessageTimeline(TICKET)
    timeline.add_optimistic("Ok", correlation_id="corr-1", created_at=1000)

    event = timeline.apply_row(row("msg_other", 1001, body="Ok", correlation_id="corr-2"))

    assert event.replaces is None
    assert len(timeline) == 2


def test_echo_matched_by_body_within_window():
    timeline = MessageTimeline(TICKET, match_window_ms=10_000)
    timeline.add_optimistic("Bom dia", correlation_id="c-early", created_at=1000)
    timeline.add_optimistic("Bom dia", correlation_id="c-late", created_at=8000)

    event = timeline.apply_row(row("msg_real", 7500, body="Bom dia"))

    assert event.replaces == "tmp_c-late"
    assert [e.id for e in timeline.pending] == ["tmp_c-early"]


def test_echo_outside_window_kept_separate():
    timeline = MessageTimeline(TICKET, match_window_ms=10_000)
    timeline.add_optimistic("Bom dia", correlation_id="c1", created_at=1000)

    event = timeline.apply_row(row("msg_real", 30_000, body="Bom dia"))

    assert event.replaces is None
    assert len(timeline) == 2


def test_inbound_never_matches_optimistic():
    timeline = MessageTimeline(TICKET)
    timeline.add_optimistic("Oi", correlation_id="c1", created_at=1000)

    event = timeline.apply_row(row("msg_in", 1000, body="Oi", direction="inbound", status="delivered"))

    assert event.replaces is None
    assert len(timeline.pending) == 1


def test_failed_local_send_stays_visible():
    timeline = MessageTimeline(TICKET)
    temp = timeline.add_optimistic("Oi", correlation_id="c1", created_at=1000)

    failed = timeline.fail_optimistic(temp.id, "network error")

    assert failed.status == "failed"
    assert timeline.ids() == [temp.id]


# ── Live synchronizer ───────────────────────────────────────────────


@pytest.fixture
def synchronizer(services, feed, settings):
    return MessageSynchronizer(
        services.tickets, feed, settings, backoff_initial=0.01, backoff_max=0.05
    )


def collector():
    events = []

    async def on_event(event):
        events.append(event)

    return events, on_event


def has_message(timeline, message_id, status=None):
    async def check():
        entry = timeline.get(message_id)
        return entry is not None and (status is None or entry.status == status)

    return check


@pytest.mark.asyncio
async def test_backfill_then_live_updates(services, synchronizer, open_ticket):
    events, on_event = collector()
    session = await synchronizer.subscribe(TENANT, open_ticket.id, on_event)
    await asyncio.wait_for(session.ready.wait(), timeout=2.0)

    assert len(session.timeline) == 1
    assert session.timeline.entries()[0].body == "Oi"

    message = await services.tickets.send_outbound(TENANT, open_ticket.id, "Posso ajudar?")
    await wait_for(has_message(session.timeline, message.id))

    await services.tickets.record_receipt(TENANT, "read", message_id=message.id)
    await wait_for(has_message(session.timeline, message.id, "read"))

    assert [e.type for e in events][-1] == "update"
    await session.close()


@pytest.mark.asyncio
async def test_optimistic_send_reconciled_with_echo(services, synchronizer, open_ticket):
    events, on_event = collector()
    timeline = synchronizer.new_timeline(open_ticket.id)
    temp = timeline.add_optimistic("Já resolvo", correlation_id="corr-42")
    session = await synchronizer.subscribe(TENANT, open_ticket.id, on_event, timeline=timeline)
    await asyncio.wait_for(session.ready.wait(), timeout=2.0)
    await asyncio.sleep(0.005)

    message = await services.tickets.send_outbound(
        TENANT, open_ticket.id, "Já resolvo", correlation_id="corr-42"
    )
    await wait_for(has_message(timeline, message.id))

    assert timeline.get(temp.id) is None
    assert any(e.replaces == temp.id for e in events)
    assert [e.body for e in timeline.entries()] == ["Oi", "Já resolvo"]
    await session.close()


@pytest.mark.asyncio
async def test_missed_events_recovered_after_drop(services, synchronizer, feed, instance, open_ticket):
    events, on_event = collector()
    session = await synchronizer.subscribe(TENANT, open_ticket.id, on_event)
    await asyncio.wait_for(session.ready.wait(), timeout=2.0)

    await asyncio.sleep(0.005)
    feed.drop_subscriptions()
    routed = await services.tickets.route_inbound(instance.id, "5511999999999", "Ainda aí?")

    await wait_for(has_message(session.timeline, routed.message.id))
    assert session.reconnects >= 1
    assert [e.body for e in session.timeline.entries()] == ["Oi", "Ainda aí?"]
    await session.close()


@pytest.mark.asyncio
async def test_since_skips_known_history(services, synchronizer, settings, instance, pending_ticket):
    # Older than the backfill overlap, so outside what a resume re-reads
    await asyncio.sleep(settings.backfill_overlap_ms / 1000 + 0.05)
    routed = await services.tickets.route_inbound(instance.id, "5511999999999", "Segunda")

    events, on_event = collector()
    session = await synchronizer.subscribe(
        TENANT, pending_ticket.id, on_event, since=routed.message.updated_at
    )
    await asyncio.wait_for(session.ready.wait(), timeout=2.0)

    assert session.timeline.ids() == [routed.message.id]
    await session.close()


@pytest.mark.asyncio
async def test_subscribe_unknown_ticket(synchronizer, tenant):
    _, on_event = collector()
    with pytest.raises(NotFound):
        await synchronizer.subscribe(TENANT, "tkt_missing", on_event)


@pytest.mark.asyncio
async def test_backfill_overlap_recovers_late_commit(services, synchronizer, feed, session_factory, open_ticket):
    _, on_event = collector()
    session = await synchronizer.subscribe(TENANT, open_ticket.id, on_event)
    await asyncio.wait_for(session.ready.wait(), timeout=2.0)
    await asyncio.sleep(0.02)

    sent = await services.tickets.send_outbound(TENANT, open_ticket.id, "Segunda")
    await wait_for(has_message(session.timeline, sent.id))

    # Stamped before "Segunda" but committed after it, and never published
    late = Message(
        id=Message.generate_id(),
        ticket_id=open_ticket.id,
        direction=DIRECTION_INBOUND,
        body="Atrasada",
        status=MESSAGE_DELIVERED,
        created_at=sent.created_at - 5,
        updated_at=sent.created_at - 5,
    )
    async with session_scope(session_factory) as db:
        db.add(late)
    assert session.timeline.watermark > late.updated_at

    feed.drop_subscriptions()

    await wait_for(has_message(session.timeline, late.id))
    assert session.reconnects >= 1
    assert [e.body for e in session.timeline.entries()] == ["Oi", "Atrasada", "Segunda"]
    await session.close()


@pytest.mark.asyncio
async def test_shutdown_closes_live_sessions(synchronizer, feed, open_ticket):
    _, on_event = collector()
    first = await synchronizer.subscribe(TENANT, open_ticket.id, on_event)
    second = await synchronizer.subscribe(TENANT, open_ticket.id, on_event)
    await asyncio.wait_for(first.ready.wait(), timeout=2.0)
    await asyncio.wait_for(second.ready.wait(), timeout=2.0)
    assert synchronizer.session_count == 2

    await synchronizer.shutdown()
    await asyncio.sleep(0)

    assert first.task.done() and second.task.done()
    assert synchronizer.session_count == 0
    assert feed.subscriber_count == 0


@pytest.mark.asyncio
async def test_crashing_viewer_callback_is_logged(synchronizer, open_ticket, caplog):
    async def on_event(event):
        raise RuntimeError("viewer went away")

    with caplog.at_level(logging.ERROR):
        session = await synchronizer.subscribe(TENANT, open_ticket.id, on_event)
        await asyncio.wait_for(
            asyncio.gather(session.task, return_exceptions=True), timeout=2.0
        )
        await asyncio.sleep(0)

    assert synchronizer.session_count == 0
    assert "viewer went away" in caplog.text


def test_sync_events_serialize_camel_case():
    timeline = MessageTimeline(TICKET)
    timeline.add_optimistic("Vou verificar", correlation_id="corr-1", created_at=1000)
    event = timeline.apply_row(
        row("msg_real", 1300, body="Vou verificar", correlation_id="corr-1")
    )

    payload = json.loads(SyncEventResponse.from_event(event).model_dump_json())

    assert payload["type"] == "insert"
    assert payload["replaces"] == "tmp_corr-1"
    assert payload["message"]["ticketId"] == TICKET
    assert payload["message"]["createdAt"] == 1300
    assert payload["message"]["isAiGenerated"] is False
    assert payload["message"]["correlationId"] == "corr-1"
    assert "ticket_id" not in payload["message"]


def test_warning_event_has_no_message():
    payload = SyncEventResponse.from_event(SyncEvent(SYNC_WARNING, detail="Sync may be incomplete"))

    assert payload.message is None
    assert payload.detail == "Sync may be incomplete"
