"""Ticket and message models."""

from typing import Optional, List
from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.models.base import Base, PrefixedIdMixin, TimestampMixin


TICKET_PENDING = "pending"
TICKET_OPEN = "open"
TICKET_CLOSED = "closed"
TICKET_STATUSES = (TICKET_PENDING, TICKET_OPEN, TICKET_CLOSED)

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"

MESSAGE_SENT = "sent"
MESSAGE_DELIVERED = "delivered"
MESSAGE_READ = "read"
MESSAGE_FAILED = "failed"
MESSAGE_STATUSES = (MESSAGE_SENT, MESSAGE_DELIVERED, MESSAGE_READ, MESSAGE_FAILED)


class Ticket(Base, PrefixedIdMixin, TimestampMixin):
    """
    A conversation with a contact, owned by at most one agent.

    owner_agent_id is set exactly while status == "open". Closed tickets are
    terminal; a new inbound message after closing opens a new ticket.
    """

    _id_prefix = "tkt_"

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_tenant_status_updated", "tenant_id", "status", "updated_at"),
        Index("idx_tickets_owner", "owner_agent_id"),
        Index("idx_tickets_queue", "queue_id"),
        # At most one active ticket per contact
        Index(
            "uq_tickets_contact_active",
            "contact_id",
            unique=True,
            sqlite_where=text("status != 'closed'"),
            postgresql_where=text("status != 'closed'"),
        ),
    )

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    contact_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False
    )
    instance_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("instances.id"), nullable=False
    )
    queue_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("queues.id", ondelete="SET NULL"), nullable=True
    )
    owner_agent_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("agents.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TICKET_PENDING)

    # Snapshot of the latest message for list views
    last_message_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_message_direction: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    last_message_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    closed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    closed_by_agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class Message(Base, PrefixedIdMixin, TimestampMixin):
    """
    Message within a ticket. Immutable except for status, which only moves
    forward: sent -> delivered -> read (or sent -> failed).

    updated_at changes on every status transition and is the watermark for
    reconnect backfills.
    """

    _id_prefix = "msg_"

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_ticket_created", "ticket_id", "created_at", "id"),
        Index("idx_messages_ticket_updated", "ticket_id", "updated_at"),
    )

    ticket_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MESSAGE_SENT)
    is_ai_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Sending agent for human outbound messages
    agent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Client-supplied id used to reconcile optimistic sends
    correlation_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Id assigned by the channel network, used to match delivery receipts
    external_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
