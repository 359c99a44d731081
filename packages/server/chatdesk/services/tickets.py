"""Ticket router: inbound routing, ownership and the outbound send path.

Ownership rules (checked after every transition):

    owner_agent_id is not None  <=>  status == "open"
    status == "pending"          =>  owner_agent_id is None

claim / transfer / resolve / return_to_queue are each ONE conditional
UPDATE whose WHERE clause carries the precondition (owner IS NULL,
status = 'open', ...). The database serializes concurrent writers, so two
agents claiming the same ticket resolve to exactly one winner. When the
update matches no row the current row is re-read only to pick the error.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatdesk.config import EngineSettings
from chatdesk.database import session_scope
from chatdesk.errors import (
    AlreadyClaimed,
    GatewayUnreachable,
    InvalidArgument,
    InvalidTransition,
    NoQueueAssigned,
    NotFound,
)
from chatdesk.logging_config import get_logger
from chatdesk.models import (
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    INSTANCE_CONNECTED,
    MESSAGE_DELIVERED,
    MESSAGE_FAILED,
    MESSAGE_READ,
    MESSAGE_SENT,
    TICKET_CLOSED,
    TICKET_OPEN,
    TICKET_PENDING,
    Agent,
    Contact,
    Instance,
    Message,
    Queue,
    Tenant,
    Ticket,
    now_ms,
)
from chatdesk.services.directory import ensure_tenant, get_owned
from chatdesk.services.feed import ChangeEvent, ChangeFeed
from chatdesk.services.gateway import GatewayFactory, to_jid

logger = get_logger(__name__)

VIEW_MINE = "mine"
VIEW_QUEUED = "queued"
VIEW_CLOSED = "closed"
TICKET_VIEWS = (VIEW_MINE, VIEW_QUEUED, VIEW_CLOSED)

# Receipt status -> statuses it may replace (sent -> delivered -> read, sent -> failed)
RECEIPT_PREDECESSORS = {
    MESSAGE_DELIVERED: (MESSAGE_SENT,),
    MESSAGE_READ: (MESSAGE_SENT, MESSAGE_DELIVERED),
    MESSAGE_FAILED: (MESSAGE_SENT,),
}

INBOUND_RETRIES = 3
MAX_TAGS = 20


@dataclass
class RoutedMessage:
    """Outcome of routing one inbound message."""

    ticket: Ticket
    message: Message
    created_ticket: bool
    duplicate: bool = False


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Strip, drop empties and de-duplicate, keeping first-seen order."""
    seen: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    if len(seen) > MAX_TAGS:
        raise InvalidArgument(f"A ticket can carry at most {MAX_TAGS} tags")
    return seen


class TicketRouter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        feed: ChangeFeed,
        gateway_factory: GatewayFactory,
    ):
        self._sessions = session_factory
        self._settings = settings
        self._feed = feed
        self._gateway_factory = gateway_factory

    # ── Inbound ─────────────────────────────────────────────────────────

    async def route_inbound(
        self,
        instance_id: str,
        address: str,
        body: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> RoutedMessage:
        """Attach an inbound message to the contact's active ticket, or open a new one."""
        address = address.strip()
        if not address:
            raise InvalidArgument("Inbound message has no sender address")

        attempt = 1
        while True:
            try:
                return await self._route_once(
                    instance_id, address, body, display_name, avatar_url, external_id
                )
            except IntegrityError:
                # Lost a race creating the contact or its active ticket
                if attempt >= INBOUND_RETRIES:
                    raise
                logger.info(
                    f"Concurrent inbound for {address} on {instance_id}, retrying ({attempt})"
                )
                attempt += 1

    async def _route_once(
        self,
        instance_id: str,
        address: str,
        body: str,
        display_name: Optional[str],
        avatar_url: Optional[str],
        external_id: Optional[str],
    ) -> RoutedMessage:
        events: list[ChangeEvent] = []
        async with session_scope(self._sessions) as session:
            instance = await session.get(Instance, instance_id)
            if instance is None:
                raise NotFound(f"Instance {instance_id} not found")
            if instance.status != INSTANCE_CONNECTED:
                logger.warning(
                    f"Inbound message on instance {instance_id} in state {instance.status}"
                )
            tenant = await ensure_tenant(session, instance.tenant_id, self._settings)
            contact = await self._upsert_contact(
                session, tenant.id, address, display_name, avatar_url
            )

            if external_id:
                existing = await self._find_delivered(session, contact.id, external_id)
                if existing is not None:
                    ticket = await session.get(Ticket, existing.ticket_id)
                    logger.info(f"Ignoring redelivered inbound {external_id} for {ticket.id}")
                    return RoutedMessage(ticket, existing, created_ticket=False, duplicate=True)

            now = now_ms()
            result = await session.execute(
                select(Ticket.id).where(
                    Ticket.contact_id == contact.id, Ticket.status != TICKET_CLOSED
                )
            )
            active_id = result.scalar_one_or_none()
            created = active_id is None

            if created:
                ticket = Ticket(
                    id=Ticket.generate_id(),
                    tenant_id=tenant.id,
                    contact_id=contact.id,
                    instance_id=instance.id,
                    queue_id=instance.default_queue_id or tenant.default_queue_id,
                    status=TICKET_PENDING,
                    last_message_body=body,
                    last_message_direction=DIRECTION_INBOUND,
                    last_message_at=now,
                    unread_count=1,
                    message_count=1,
                    tags=[],
                    created_at=now,
                    updated_at=now,
                )
                session.add(ticket)
                await session.flush()
            else:
                await session.execute(
                    update(Ticket)
                    .where(Ticket.id == active_id)
                    .values(
                        unread_count=Ticket.unread_count + 1,
                        message_count=Ticket.message_count + 1,
                        last_message_body=body,
                        last_message_direction=DIRECTION_INBOUND,
                        last_message_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                ticket = await session.get(Ticket, active_id, populate_existing=True)

            message = Message(
                id=Message.generate_id(),
                ticket_id=ticket.id,
                direction=DIRECTION_INBOUND,
                body=body,
                status=MESSAGE_DELIVERED,
                is_ai_generated=False,
                external_id=external_id,
                created_at=now,
                updated_at=now,
            )
            session.add(message)
            await session.flush()

            events.append(
                ChangeEvent.insert("tickets", ticket)
                if created
                else ChangeEvent.update("tickets", ticket)
            )
            events.append(ChangeEvent.insert("messages", message))

        await self._feed.publish_all(events)
        if created:
            logger.info(
                f"New ticket {ticket.id} for contact {contact.id} in queue {ticket.queue_id}"
            )
        return RoutedMessage(ticket, message, created_ticket=created)

    async def _upsert_contact(
        self,
        session: AsyncSession,
        tenant_id: str,
        address: str,
        display_name: Optional[str],
        avatar_url: Optional[str],
    ) -> Contact:
        result = await session.execute(
            select(Contact).where(
                Contact.tenant_id == tenant_id, Contact.external_address == address
            )
        )
        contact = result.scalar_one_or_none()
        now = now_ms()
        if contact is None:
            contact = Contact(
                id=Contact.generate_id(),
                tenant_id=tenant_id,
                external_address=address,
                display_name=display_name or address,
                avatar_url=avatar_url,
                created_at=now,
                updated_at=now,
            )
            session.add(contact)
            await session.flush()
        elif avatar_url and contact.avatar_url != avatar_url:
            contact.avatar_url = avatar_url
            contact.updated_at = now
        return contact

    async def _find_delivered(
        self, session: AsyncSession, contact_id: str, external_id: str
    ) -> Optional[Message]:
        result = await session.execute(
            select(Message)
            .join(Ticket, Ticket.id == Message.ticket_id)
            .where(
                Ticket.contact_id == contact_id,
                Message.external_id == external_id,
                Message.direction == DIRECTION_INBOUND,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ── Queries ─────────────────────────────────────────────────────────

    async def list_tickets(
        self,
        tenant_id: str,
        view: str,
        *,
        agent_id: Optional[str] = None,
        queue_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Ticket]:
        if view not in TICKET_VIEWS:
            raise InvalidArgument(f"Unknown ticket view '{view}'")
        stmt = select(Ticket).where(Ticket.tenant_id == tenant_id)
        if view == VIEW_MINE:
            if not agent_id:
                raise InvalidArgument("The 'mine' view needs an agent id")
            stmt = stmt.where(Ticket.status == TICKET_OPEN, Ticket.owner_agent_id == agent_id)
        elif view == VIEW_QUEUED:
            stmt = stmt.where(Ticket.status == TICKET_PENDING)
        else:
            stmt = stmt.where(Ticket.status == TICKET_CLOSED)
        if queue_id:
            stmt = stmt.where(Ticket.queue_id == queue_id)

        stmt = stmt.order_by(Ticket.updated_at.desc(), Ticket.id.desc()).limit(
            max(1, min(limit, 200))
        )
        async with session_scope(self._sessions) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_ticket(self, tenant_id: str, ticket_id: str) -> Ticket:
        async with session_scope(self._sessions) as session:
            return await get_owned(session, Ticket, ticket_id, tenant_id)

    async def list_messages(
        self, tenant_id: str, ticket_id: str, *, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages in display order (created_at, id). ``limit`` keeps the newest."""
        async with session_scope(self._sessions) as session:
            await get_owned(session, Ticket, ticket_id, tenant_id)
            if limit is None:
                result = await session.execute(
                    select(Message)
                    .where(Message.ticket_id == ticket_id)
                    .order_by(Message.created_at, Message.id)
                )
                return list(result.scalars().all())
            result = await session.execute(
                select(Message)
                .where(Message.ticket_id == ticket_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            )
            return list(reversed(result.scalars().all()))

    async def fetch_since(
        self, tenant_id: str, ticket_id: str, watermark: int
    ) -> List[Message]:
        """Messages inserted or updated at or after ``watermark`` (ms).

        Inclusive so rows written in the same millisecond as the last seen
        one are not skipped; consumers merge idempotently.
        """
        async with session_scope(self._sessions) as session:
            await get_owned(session, Ticket, ticket_id, tenant_id)
            result = await session.execute(
                select(Message)
                .where(Message.ticket_id == ticket_id, Message.updated_at >= watermark)
                .order_by(Message.created_at, Message.id)
            )
            return list(result.scalars().all())

    # ── Ownership transitions ───────────────────────────────────────────

    async def claim(self, tenant_id: str, ticket_id: str, agent_id: str) -> Ticket:
        """Take ownership of a pending ticket. Exactly one concurrent claimer wins."""
        async with session_scope(self._sessions) as session:
            await get_owned(session, Agent, agent_id, tenant_id)
            ticket = await self._conditional_update(
                session,
                ticket_id,
                tenant_id,
                [Ticket.status == TICKET_PENDING, Ticket.owner_agent_id.is_(None)],
                status=TICKET_OPEN,
                owner_agent_id=agent_id,
            )
            if ticket is None:
                current = await self._current(session, ticket_id, tenant_id)
                if current.status == TICKET_CLOSED:
                    raise InvalidTransition(f"Ticket {ticket_id} is closed")
                if current.owner_agent_id == agent_id:
                    return current
                raise AlreadyClaimed(f"Ticket {ticket_id} was already claimed by another agent")

        await self._feed.publish(ChangeEvent.update("tickets", ticket))
        logger.info(f"Ticket {ticket_id} claimed by {agent_id}")
        return ticket

    async def transfer_to_queue(self, tenant_id: str, ticket_id: str, queue_id: str) -> Ticket:
        """Put an open ticket back in line on ``queue_id``, without an owner."""
        async with session_scope(self._sessions) as session:
            await get_owned(session, Queue, queue_id, tenant_id)
            ticket = await self._conditional_update(
                session,
                ticket_id,
                tenant_id,
                [Ticket.status == TICKET_OPEN],
                status=TICKET_PENDING,
                owner_agent_id=None,
                queue_id=queue_id,
            )
            if ticket is None:
                await self._reject_not_open(session, ticket_id, tenant_id, "transferred")

        await self._feed.publish(ChangeEvent.update("tickets", ticket))
        logger.info(f"Ticket {ticket_id} transferred to queue {queue_id}")
        return ticket

    async def transfer_to_agent(self, tenant_id: str, ticket_id: str, agent_id: str) -> Ticket:
        async with session_scope(self._sessions) as session:
            await get_owned(session, Agent, agent_id, tenant_id)
            ticket = await self._conditional_update(
                session,
                ticket_id,
                tenant_id,
                [Ticket.status == TICKET_OPEN],
                owner_agent_id=agent_id,
            )
            if ticket is None:
                await self._reject_not_open(session, ticket_id, tenant_id, "transferred")

        await self._feed.publish(ChangeEvent.update("tickets", ticket))
        logger.info(f"Ticket {ticket_id} transferred to agent {agent_id}")
        return ticket

    async def resolve(
        self, tenant_id: str, ticket_id: str, agent_id: Optional[str] = None
    ) -> Ticket:
        """Close an open ticket. Resolving a closed ticket returns it unchanged."""
        now = now_ms()
        async with session_scope(self._sessions) as session:
            ticket = await self._conditional_update(
                session,
                ticket_id,
                tenant_id,
                [Ticket.status == TICKET_OPEN],
                status=TICKET_CLOSED,
                owner_agent_id=None,
                closed_at=now,
                # SET expressions see the pre-update row
                closed_by_agent_id=agent_id or Ticket.owner_agent_id,
                unread_count=0,
            )
            if ticket is None:
                current = await self._current(session, ticket_id, tenant_id)
                if current.status == TICKET_CLOSED:
                    return current
                raise InvalidTransition(
                    f"Ticket {ticket_id} is {current.status}; claim it before resolving"
                )

        await self._feed.publish(ChangeEvent.update("tickets", ticket))
        logger.info(f"Ticket {ticket_id} resolved by {ticket.closed_by_agent_id}")
        return ticket

    async def return_to_queue(self, tenant_id: str, ticket_id: str) -> Ticket:
        """transfer_to_queue onto the ticket's current queue."""
        async with session_scope(self._sessions) as session:
            ticket = await self._conditional_update(
                session,
                ticket_id,
                tenant_id,
                [Ticket.status == TICKET_OPEN, Ticket.queue_id.is_not(None)],
                status=TICKET_PENDING,
                owner_agent_id=None,
            )
            if ticket is None:
                current = await self._current(session, ticket_id, tenant_id)
                if current.status == TICKET_OPEN and current.queue_id is None:
                    raise NoQueueAssigned(f"Ticket {ticket_id} has no queue to return to")
                await self._reject_not_open(session, ticket_id, tenant_id, "returned to queue")

        await self._feed.publish(ChangeEvent.update("tickets", ticket))
        logger.info(f"Ticket {ticket_id} returned to queue {ticket.queue_id}")
        return ticket

    async def acknowledge(
        self, tenant_id: str, ticket_id: str, count: Optional[int] = None
    ) -> Ticket:
        """Mark messages read: reset unread to 0, or subtract ``count`` (floored at 0)."""
        if count is not None and count < 0:
            raise InvalidArgument("Acknowledged count cannot be negative")
        if count is None:
            unread = 0
        else:
            unread = case(
                (Ticket.unread_count > count, Ticket.unread_count - count), else_=0
            )
        async with session_scope(self._sessions) as session:
            ticket = await self._conditional_update(
                session, ticket_id, tenant_id, [], touch=False, unread_count=unread
            )
            if ticket is None:
                raise NotFound(f"Ticket {ticket_id} not found")

        await self._feed.publish(ChangeEvent.update("tickets", ticket))
        return ticket

    async def set_tags(self, tenant_id: str, ticket_id: str, tags: Iterable[str]) -> Ticket:
        tags = normalize_tags(tags)
        async with session_scope(self._sessions) as session:
            ticket = await self._conditional_update(
                session, ticket_id, tenant_id, [], touch=False, tags=tags
            )
            if ticket is None:
                raise NotFound(f"Ticket {ticket_id} not found")

        await self._feed.publish(ChangeEvent.update("tickets", ticket))
        return ticket

    async def _conditional_update(
        self,
        session: AsyncSession,
        ticket_id: str,
        tenant_id: str,
        conditions: list,
        *,
        touch: bool = True,
        **values,
    ) -> Optional[Ticket]:
        if touch:
            values["updated_at"] = now_ms()
        result = await session.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.tenant_id == tenant_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return await session.get(Ticket, ticket_id, populate_existing=True)

    async def _current(self, session: AsyncSession, ticket_id: str, tenant_id: str) -> Ticket:
        return await get_owned(session, Ticket, ticket_id, tenant_id)

    async def _reject_not_open(
        self, session: AsyncSession, ticket_id: str, tenant_id: str, action: str
    ) -> None:
        current = await self._current(session, ticket_id, tenant_id)
        if current.status == TICKET_CLOSED:
            raise InvalidTransition(f"Ticket {ticket_id} is closed and cannot be {action}")
        raise InvalidTransition(
            f"Ticket {ticket_id} is {current.status}; only open tickets can be {action}"
        )

    # ── Outbound ────────────────────────────────────────────────────────

    async def send_outbound(
        self,
        tenant_id: str,
        ticket_id: str,
        body: str,
        *,
        agent_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        is_ai_generated: bool = False,
    ) -> Message:
        """Persist an outbound message and hand it to the gateway.

        Gateway failures mark the message failed (with the reason) and are
        not raised: the message stays visible and the ticket usable.
        """
        if not body or not body.strip():
            raise InvalidArgument("Message body cannot be empty")

        events: list[ChangeEvent] = []
        async with session_scope(self._sessions) as session:
            ticket = await get_owned(session, Ticket, ticket_id, tenant_id)
            if ticket.status == TICKET_CLOSED:
                raise InvalidTransition(f"Ticket {ticket_id} is closed")
            if agent_id:
                await get_owned(session, Agent, agent_id, tenant_id)

            now = now_ms()
            message = Message(
                id=Message.generate_id(),
                ticket_id=ticket_id,
                direction=DIRECTION_OUTBOUND,
                body=body,
                status=MESSAGE_SENT,
                is_ai_generated=is_ai_generated,
                agent_id=agent_id,
                correlation_id=correlation_id,
                created_at=now,
                updated_at=now,
            )
            session.add(message)
            await session.flush()
            ticket = await self._conditional_update(
                session,
                ticket_id,
                tenant_id,
                [],
                message_count=Ticket.message_count + 1,
                last_message_body=body,
                last_message_direction=DIRECTION_OUTBOUND,
                last_message_at=now,
            )
            events.append(ChangeEvent.insert("messages", message))
            events.append(ChangeEvent.update("tickets", ticket))

            contact = await session.get(Contact, ticket.contact_id)
            instance = await session.get(Instance, ticket.instance_id)
            tenant = await session.get(Tenant, tenant_id)

        await self._feed.publish_all(events)
        return await self._deliver(tenant, instance, contact, message)

    async def _deliver(
        self, tenant: Tenant, instance: Instance, contact: Contact, message: Message
    ) -> Message:
        if instance.status != INSTANCE_CONNECTED:
            return await self._mark_send_failed(
                message.id, f"Instance {instance.id} is not connected ({instance.status})"
            )
        try:
            gateway = self._gateway_factory(tenant, instance)
        except GatewayUnreachable as e:
            return await self._mark_send_failed(message.id, str(e))

        try:
            receipt = await gateway.send(to_jid(contact.external_address), message.body)
        except GatewayUnreachable as e:
            return await self._mark_send_failed(message.id, str(e))
        finally:
            await gateway.aclose()

        if not receipt.external_id:
            return message
        async with session_scope(self._sessions) as session:
            await session.execute(
                update(Message)
                .where(Message.id == message.id)
                .values(external_id=receipt.external_id, updated_at=now_ms())
                .execution_options(synchronize_session=False)
            )
            message = await session.get(Message, message.id, populate_existing=True)
        await self._feed.publish(ChangeEvent.update("messages", message))
        return message

    async def _mark_send_failed(self, message_id: str, reason: str) -> Message:
        logger.warning(f"Outbound message {message_id} failed: {reason}")
        async with session_scope(self._sessions) as session:
            await session.execute(
                update(Message)
                .where(Message.id == message_id, Message.status == MESSAGE_SENT)
                .values(status=MESSAGE_FAILED, error=reason, updated_at=now_ms())
                .execution_options(synchronize_session=False)
            )
            message = await session.get(Message, message_id, populate_existing=True)
        await self._feed.publish(ChangeEvent.update("messages", message))
        return message

    # ── Receipts ────────────────────────────────────────────────────────

    async def record_receipt(
        self,
        tenant_id: str,
        status: str,
        *,
        message_id: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Message:
        """Advance a message's delivery status. Regressions are ignored."""
        if status not in RECEIPT_PREDECESSORS:
            raise InvalidArgument(f"Unsupported receipt status '{status}'")
        if not message_id and not external_id:
            raise InvalidArgument("A receipt needs a message id or an external id")

        async with session_scope(self._sessions) as session:
            stmt = (
                select(Message)
                .join(Ticket, Ticket.id == Message.ticket_id)
                .where(Ticket.tenant_id == tenant_id)
            )
            if message_id:
                stmt = stmt.where(Message.id == message_id)
            else:
                stmt = stmt.where(
                    or_(Message.external_id == external_id, Message.id == external_id)
                )
            message = (await session.execute(stmt.limit(1))).scalar_one_or_none()
            if message is None:
                raise NotFound(f"Message {message_id or external_id} not found")

            result = await session.execute(
                update(Message)
                .where(
                    Message.id == message.id,
                    Message.status.in_(RECEIPT_PREDECESSORS[status]),
                )
                .values(status=status, updated_at=now_ms())
                .execution_options(synchronize_session=False)
            )
            advanced = result.rowcount > 0
            message = await session.get(Message, message.id, populate_existing=True)

        if advanced:
            await self._feed.publish(ChangeEvent.update("messages", message))
        return message
