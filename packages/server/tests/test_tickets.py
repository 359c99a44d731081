"""Tests for the ticket router: routing, ownership transitions and sends."""
import asyncio

import pytest

from chatdesk.errors import (
    AlreadyClaimed,
    GatewayUnreachable,
    InvalidArgument,
    InvalidTransition,
    NoQueueAssigned,
    NotFound,
)
from chatdesk.models import Ticket
from chatdesk.services.feed import EVENT_UPDATE
from tests.conftest import OTHER_TENANT, TENANT, make_connected_instance


def assert_ownership_rules(ticket: Ticket):
    assert (ticket.owner_agent_id is not None) == (ticket.status == "open")
    if ticket.status == "pending":
        assert ticket.owner_agent_id is None
    assert ticket.unread_count >= 0


# ── Inbound routing ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_first_message_opens_pending_ticket_in_instance_queue(services, instance, support_queue):
    routed = await services.tickets.route_inbound(instance.id, "5511999999999", "Oi")

    ticket = routed.ticket
    assert routed.created_ticket is True
    assert ticket.id.startswith("tkt_")
    assert ticket.status == "pending"
    assert ticket.queue_id == support_queue.id
    assert ticket.owner_agent_id is None
    assert ticket.unread_count == 1
    assert ticket.last_message_body == "Oi"
    assert routed.message.direction == "inbound"
    assert routed.message.is_ai_generated is False
    assert_ownership_rules(ticket)


@pytest.mark.asyncio
async def test_followup_message_reuses_active_ticket(services, instance):
    first = await services.tickets.route_inbound(instance.id, "5511999999999", "Oi")
    second = await services.tickets.route_inbound(instance.id, "5511999999999", "Tem alguém aí?")

    assert second.created_ticket is False
    assert second.ticket.id == first.ticket.id
    assert second.ticket.unread_count == 2
    assert second.ticket.message_count == 2
    assert second.ticket.last_message_body == "Tem alguém aí?"


@pytest.mark.asyncio
async def test_followup_on_claimed_ticket_keeps_owner(services, open_ticket, instance, agent_a):
    routed = await services.tickets.route_inbound(instance.id, "5511999999999", "Obrigado")

    assert routed.ticket.id == open_ticket.id
    assert routed.ticket.status == "open"
    assert routed.ticket.owner_agent_id == agent_a.id


@pytest.mark.asyncio
async def test_message_after_resolve_opens_new_ticket(services, open_ticket, instance):
    await services.tickets.resolve(TENANT, open_ticket.id)

    routed = await services.tickets.route_inbound(instance.id, "5511999999999", "Oi de novo")

    assert routed.created_ticket is True
    assert routed.ticket.id != open_ticket.id
    assert routed.ticket.status == "pending"
    closed = await services.tickets.get_ticket(TENANT, open_ticket.id)
    assert closed.status == "closed"


@pytest.mark.asyncio
async def test_tenant_default_queue_used_when_instance_has_none(services, session_factory, finance_queue):
    await services.directory.update_tenant(TENANT, default_queue_id=finance_queue.id)
    bare = await make_connected_instance(session_factory, TENANT)

    routed = await services.tickets.route_inbound(bare.id, "5511911112222", "Boa tarde")

    assert routed.ticket.queue_id == finance_queue.id


@pytest.mark.asyncio
async def test_redelivered_inbound_is_ignored(services, instance):
    first = await services.tickets.route_inbound(
        instance.id, "5511999999999", "Oi", external_id="wamid.1"
    )
    again = await services.tickets.route_inbound(
        instance.id, "5511999999999", "Oi", external_id="wamid.1"
    )

    assert again.duplicate is True
    assert again.message.id == first.message.id
    ticket = await services.tickets.get_ticket(TENANT, first.ticket.id)
    assert ticket.unread_count == 1


@pytest.mark.asyncio
async def test_concurrent_first_messages_share_one_ticket(services, instance):
    results = await asyncio.gather(
        *[
            services.tickets.route_inbound(instance.id, "5511977776666", f"msg {i}")
            for i in range(4)
        ]
    )

    ticket_ids = {r.ticket.id for r in results}
    assert len(ticket_ids) == 1
    ticket = await services.tickets.get_ticket(TENANT, ticket_ids.pop())
    assert ticket.unread_count == 4
    assert sum(1 for r in results if r.created_ticket) == 1


@pytest.mark.asyncio
async def test_inbound_for_unknown_instance(services, tenant):
    with pytest.raises(NotFound):
        await services.tickets.route_inbound("inst_missing", "5511999999999", "Oi")


# ── Claim ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_claim_pending_ticket(services, pending_ticket, agent_a):
    ticket = await services.tickets.claim(TENANT, pending_ticket.id, agent_a.id)

    assert ticket.status == "open"
    assert ticket.owner_agent_id == agent_a.id
    assert_ownership_rules(ticket)


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(services, instance, agent_a, agent_b):
    for n in range(3):
        routed = await services.tickets.route_inbound(instance.id, f"55119000000{n}", "Oi")
        ticket_id = routed.ticket.id

        results = await asyncio.gather(
            services.tickets.claim(TENANT, ticket_id, agent_a.id),
            services.tickets.claim(TENANT, ticket_id, agent_b.id),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Ticket)]
        losers = [r for r in results if isinstance(r, AlreadyClaimed)]
        assert len(winners) == 1
        assert len(losers) == 1

        final = await services.tickets.get_ticket(TENANT, ticket_id)
        assert final.status == "open"
        assert final.owner_agent_id in {agent_a.id, agent_b.id}
        assert final.owner_agent_id == winners[0].owner_agent_id


@pytest.mark.asyncio
async def test_claim_owned_ticket_rejected(services, open_ticket, agent_b):
    with pytest.raises(AlreadyClaimed):
        await services.tickets.claim(TENANT, open_ticket.id, agent_b.id)


@pytest.mark.asyncio
async def test_reclaim_by_owner_is_noop(services, open_ticket, agent_a):
    ticket = await services.tickets.claim(TENANT, open_ticket.id, agent_a.id)
    assert ticket.owner_agent_id == agent_a.id
    assert ticket.updated_at == open_ticket.updated_at


@pytest.mark.asyncio
async def test_claim_closed_ticket_rejected(services, open_ticket, agent_b):
    await services.tickets.resolve(TENANT, open_ticket.id)
    with pytest.raises(InvalidTransition):
        await services.tickets.claim(TENANT, open_ticket.id, agent_b.id)


@pytest.mark.asyncio
async def test_claim_is_tenant_scoped(services, pending_ticket, agent_a):
    with pytest.raises(NotFound):
        await services.tickets.claim(OTHER_TENANT, pending_ticket.id, agent_a.id)
    with pytest.raises(NotFound):
        await services.tickets.claim(TENANT, "tkt_missing", agent_a.id)


# ── Transfers, resolve, return ──────────────────────────────────────


@pytest.mark.asyncio
async def test_transfer_to_queue(services, open_ticket, finance_queue):
    ticket = await services.tickets.transfer_to_queue(TENANT, open_ticket.id, finance_queue.id)

    assert ticket.status == "pending"
    assert ticket.owner_agent_id is None
    assert ticket.queue_id == finance_queue.id
    assert_ownership_rules(ticket)


@pytest.mark.asyncio
async def test_transfer_closed_ticket_rejected(services, open_ticket, finance_queue):
    await services.tickets.resolve(TENANT, open_ticket.id)
    with pytest.raises(InvalidTransition):
        await services.tickets.transfer_to_queue(TENANT, open_ticket.id, finance_queue.id)


@pytest.mark.asyncio
async def test_transfer_pending_ticket_rejected(services, pending_ticket, finance_queue):
    with pytest.raises(InvalidTransition):
        await services.tickets.transfer_to_queue(TENANT, pending_ticket.id, finance_queue.id)


@pytest.mark.asyncio
async def test_transfer_to_agent_keeps_status(services, open_ticket, agent_b):
    ticket = await services.tickets.transfer_to_agent(TENANT, open_ticket.id, agent_b.id)

    assert ticket.status == "open"
    assert ticket.owner_agent_id == agent_b.id
    assert_ownership_rules(ticket)


@pytest.mark.asyncio
async def test_resolve_records_closer_and_clears_owner(services, open_ticket, agent_a):
    ticket = await services.tickets.resolve(TENANT, open_ticket.id)

    assert ticket.status == "closed"
    assert ticket.owner_agent_id is None
    assert ticket.closed_by_agent_id == agent_a.id
    assert ticket.closed_at is not None
    assert_ownership_rules(ticket)


@pytest.mark.asyncio
async def test_resolve_is_idempotent(services, open_ticket):
    first = await services.tickets.resolve(TENANT, open_ticket.id)
    second = await services.tickets.resolve(TENANT, open_ticket.id)

    assert second.status == "closed"
    assert second.closed_at == first.closed_at
    assert second.updated_at == first.updated_at
    assert second.closed_by_agent_id == first.closed_by_agent_id


@pytest.mark.asyncio
async def test_resolve_pending_ticket_rejected(services, pending_ticket):
    with pytest.raises(InvalidTransition):
        await services.tickets.resolve(TENANT, pending_ticket.id)


@pytest.mark.asyncio
async def test_return_to_queue_uses_current_queue(services, open_ticket, support_queue):
    ticket = await services.tickets.return_to_queue(TENANT, open_ticket.id)

    assert ticket.status == "pending"
    assert ticket.owner_agent_id is None
    assert ticket.queue_id == support_queue.id


@pytest.mark.asyncio
async def test_return_to_queue_without_queue(services, session_factory, tenant, agent_a):
    bare = await make_connected_instance(session_factory, TENANT)
    routed = await services.tickets.route_inbound(bare.id, "5511933334444", "Oi")
    await services.tickets.claim(TENANT, routed.ticket.id, agent_a.id)

    with pytest.raises(NoQueueAssigned):
        await services.tickets.return_to_queue(TENANT, routed.ticket.id)


@pytest.mark.asyncio
async def test_ownership_rules_hold_through_lifecycle(services, pending_ticket, agent_a, agent_b, finance_queue):
    tickets = services.tickets
    steps = [
        lambda: tickets.claim(TENANT, pending_ticket.id, agent_a.id),
        lambda: tickets.transfer_to_agent(TENANT, pending_ticket.id, agent_b.id),
        lambda: tickets.transfer_to_queue(TENANT, pending_ticket.id, finance_queue.id),
        lambda: tickets.claim(TENANT, pending_ticket.id, agent_b.id),
        lambda: tickets.return_to_queue(TENANT, pending_ticket.id),
        lambda: tickets.claim(TENANT, pending_ticket.id, agent_a.id),
        lambda: tickets.resolve(TENANT, pending_ticket.id),
    ]
    for step in steps:
        ticket = await step()
        assert_ownership_rules(ticket)


# ── Read acknowledgement, tags, listing ─────────────────────────────


@pytest.mark.asyncio
async def test_acknowledge_resets_unread(services, instance, pending_ticket):
    await services.tickets.route_inbound(instance.id, "5511999999999", "Alô")

    ticket = await services.tickets.acknowledge(TENANT, pending_ticket.id)

    assert ticket.unread_count == 0


@pytest.mark.asyncio
async def test_acknowledge_count_never_goes_negative(services, pending_ticket):
    ticket = await services.tickets.acknowledge(TENANT, pending_ticket.id, count=5)
    assert ticket.unread_count == 0

    with pytest.raises(InvalidArgument):
        await services.tickets.acknowledge(TENANT, pending_ticket.id, count=-1)


@pytest.mark.asyncio
async def test_acknowledge_partial(services, instance, pending_ticket):
    for body in ("a", "b", "c"):
        await services.tickets.route_inbound(instance.id, "5511999999999", body)

    ticket = await services.tickets.acknowledge(TENANT, pending_ticket.id, count=2)

    assert ticket.unread_count == 2


@pytest.mark.asyncio
async def test_set_tags_normalizes(services, pending_ticket):
    ticket = await services.tickets.set_tags(TENANT, pending_ticket.id, [" vip ", "", "vip", "boleto"])
    assert ticket.tags == ["vip", "boleto"]


@pytest.mark.asyncio
async def test_list_views(services, instance, agent_a):
    first = await services.tickets.route_inbound(instance.id, "5511900000001", "1")
    second = await services.tickets.route_inbound(instance.id, "5511900000002", "2")
    third = await services.tickets.route_inbound(instance.id, "5511900000003", "3")
    await services.tickets.claim(TENANT, second.ticket.id, agent_a.id)
    await services.tickets.claim(TENANT, third.ticket.id, agent_a.id)
    await services.tickets.resolve(TENANT, third.ticket.id)

    queued = await services.tickets.list_tickets(TENANT, "queued")
    mine = await services.tickets.list_tickets(TENANT, "mine", agent_id=agent_a.id)
    closed = await services.tickets.list_tickets(TENANT, "closed")

    assert [t.id for t in queued] == [first.ticket.id]
    assert [t.id for t in mine] == [second.ticket.id]
    assert [t.id for t in closed] == [third.ticket.id]

    with pytest.raises(InvalidArgument):
        await services.tickets.list_tickets(TENANT, "mine")
    with pytest.raises(InvalidArgument):
        await services.tickets.list_tickets(TENANT, "everything")


@pytest.mark.asyncio
async def test_queue_view_ordered_by_recent_activity(services, instance):
    older = await services.tickets.route_inbound(instance.id, "5511900000001", "1")
    await asyncio.sleep(0.005)
    newer = await services.tickets.route_inbound(instance.id, "5511900000002", "2")
    await asyncio.sleep(0.005)
    await services.tickets.route_inbound(instance.id, "5511900000001", "again")

    queued = await services.tickets.list_tickets(TENANT, "queued")

    assert [t.id for t in queued] == [older.ticket.id, newer.ticket.id]


# ── Outbound and receipts ───────────────────────────────────────────


@pytest.mark.asyncio
async def test_send_outbound_goes_through_gateway(services, gateway, open_ticket, agent_a):
    gateway.next_external_id = "wamid.out.1"

    message = await services.tickets.send_outbound(
        TENANT, open_ticket.id, "Olá, em que posso ajudar?", agent_id=agent_a.id
    )

    assert gateway.sent == [("5511999999999@s.whatsapp.net", "Olá, em que posso ajudar?")]
    assert message.direction == "outbound"
    assert message.status == "sent"
    assert message.agent_id == agent_a.id
    assert message.external_id == "wamid.out.1"
    ticket = await services.tickets.get_ticket(TENANT, open_ticket.id)
    assert ticket.last_message_direction == "outbound"
    assert ticket.message_count == 2
    assert ticket.unread_count == open_ticket.unread_count


@pytest.mark.asyncio
async def test_send_outbound_gateway_failure_marks_message_failed(services, gateway, open_ticket):
    gateway.send_error = GatewayUnreachable("connection refused")

    message = await services.tickets.send_outbound(TENANT, open_ticket.id, "Oi")

    assert message.status == "failed"
    assert message.error == "connection refused"
    ticket = await services.tickets.get_ticket(TENANT, open_ticket.id)
    assert ticket.status == "open"


@pytest.mark.asyncio
async def test_send_outbound_on_closed_ticket_rejected(services, open_ticket):
    await services.tickets.resolve(TENANT, open_ticket.id)
    with pytest.raises(InvalidTransition):
        await services.tickets.send_outbound(TENANT, open_ticket.id, "Oi")


@pytest.mark.asyncio
async def test_send_outbound_rejects_empty_body(services, open_ticket):
    with pytest.raises(InvalidArgument):
        await services.tickets.send_outbound(TENANT, open_ticket.id, "   ")


@pytest.mark.asyncio
async def test_receipts_only_move_forward(services, gateway, open_ticket):
    gateway.next_external_id = "wamid.out.2"
    message = await services.tickets.send_outbound(TENANT, open_ticket.id, "Pedido enviado")

    delivered = await services.tickets.record_receipt(TENANT, "delivered", external_id="wamid.out.2")
    read = await services.tickets.record_receipt(TENANT, "read", message_id=message.id)
    late = await services.tickets.record_receipt(TENANT, "delivered", message_id=message.id)
    failed = await services.tickets.record_receipt(TENANT, "failed", message_id=message.id)

    assert delivered.status == "delivered"
    assert read.status == "read"
    assert late.status == "read"
    assert failed.status == "read"


@pytest.mark.asyncio
async def test_receipt_validation(services, open_ticket):
    with pytest.raises(InvalidArgument):
        await services.tickets.record_receipt(TENANT, "sent", message_id="msg_x")
    with pytest.raises(InvalidArgument):
        await services.tickets.record_receipt(TENANT, "read")
    with pytest.raises(NotFound):
        await services.tickets.record_receipt(TENANT, "read", message_id="msg_missing")


@pytest.mark.asyncio
async def test_transitions_publish_ticket_updates(services, feed, pending_ticket, agent_a):
    subscription = await feed.subscribe("tickets", {"id": pending_ticket.id}, [EVENT_UPDATE])

    await services.tickets.claim(TENANT, pending_ticket.id, agent_a.id)

    event = await asyncio.wait_for(subscription.__anext__(), timeout=1.0)
    assert event.row["status"] == "open"
    assert event.row["owner_agent_id"] == agent_a.id
    await subscription.close()
