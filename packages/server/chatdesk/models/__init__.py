"""SQLAlchemy ORM models for chatdesk."""

from chatdesk.models.base import (
    Base,
    TimestampMixin,
    PrefixedIdMixin,
    generate_prefixed_id,
    now_ms,
)
from chatdesk.models.tenant import Tenant
from chatdesk.models.directory import (
    Queue,
    Agent,
    Contact,
    AGENT_ONLINE,
    AGENT_OFFLINE,
    AGENT_PRESENCES,
)
from chatdesk.models.instance import (
    Instance,
    INSTANCE_UNINITIALIZED,
    INSTANCE_GENERATING_CODE,
    INSTANCE_AWAITING_SCAN,
    INSTANCE_CONNECTED,
    INSTANCE_FAILED,
    INSTANCE_STATUSES,
    QUOTA_HOLDING_STATUSES,
    PAIRING_STATUSES,
)
from chatdesk.models.conversation import (
    Ticket,
    Message,
    TICKET_PENDING,
    TICKET_OPEN,
    TICKET_CLOSED,
    TICKET_STATUSES,
    DIRECTION_INBOUND,
    DIRECTION_OUTBOUND,
    MESSAGE_SENT,
    MESSAGE_DELIVERED,
    MESSAGE_READ,
    MESSAGE_FAILED,
    MESSAGE_STATUSES,
)
from chatdesk.models.auto_reply import AutoReplySettings

__all__ = [
    "Base",
    "TimestampMixin",
    "PrefixedIdMixin",
    "generate_prefixed_id",
    "now_ms",
    "Tenant",
    "Queue",
    "Agent",
    "Contact",
    "Instance",
    "Ticket",
    "Message",
    "AutoReplySettings",
]
