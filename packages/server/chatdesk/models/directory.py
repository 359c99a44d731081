"""Queues, agents and contacts: the routing directory of a tenant."""

from typing import Optional
from sqlalchemy import String, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatdesk.models.base import Base, PrefixedIdMixin, TimestampMixin


AGENT_ONLINE = "online"
AGENT_OFFLINE = "offline"
AGENT_PRESENCES = (AGENT_ONLINE, AGENT_OFFLINE)


class Queue(Base, PrefixedIdMixin, TimestampMixin):
    """Department bucket of pending tickets (e.g. "Suporte", "Financeiro")."""

    _id_prefix = "q_"

    __tablename__ = "queues"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_queues_tenant_name"),
    )

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    # UI label / color token, e.g. "bg-blue-500"
    color: Mapped[str] = mapped_column(String(32), nullable=False, default="bg-gray-500")


class Agent(Base, PrefixedIdMixin, TimestampMixin):
    """Human attendant that can claim tickets."""

    _id_prefix = "agt_"

    __tablename__ = "agents"
    __table_args__ = (
        UniqueConstraint("tenant_id", "identity_ref", name="uq_agents_tenant_identity"),
    )

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    # Reference into the external identity provider (user id or email)
    identity_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    presence: Mapped[str] = mapped_column(String(16), nullable=False, default=AGENT_OFFLINE)


class Contact(Base, PrefixedIdMixin, TimestampMixin):
    """External party identified by its address on the channel (phone number)."""

    _id_prefix = "ct_"

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_address", name="uq_contacts_tenant_address"),
        Index("idx_contacts_tenant", "tenant_id"),
    )

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    external_address: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
