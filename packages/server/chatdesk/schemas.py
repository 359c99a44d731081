"""Response models shared by several routers (camelCase, as the UI expects)."""
from typing import Optional

from pydantic import BaseModel

from chatdesk.models import INSTANCE_AWAITING_SCAN, Agent, Instance, Message, Queue, Tenant, Ticket
from chatdesk.services.sync import SyncEvent, TimelineEntry


class ErrorResponse(BaseModel):
    detail: str
    type: str


class TenantResponse(BaseModel):
    id: str
    name: Optional[str] = None
    maxInstances: int
    maxAgents: int
    gatewayBaseUrl: Optional[str] = None
    hasGatewayToken: bool
    defaultQueueId: Optional[str] = None

    @classmethod
    def from_model(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            name=tenant.name,
            maxInstances=tenant.max_instances,
            maxAgents=tenant.max_agents,
            gatewayBaseUrl=tenant.gateway_base_url,
            hasGatewayToken=bool(tenant.gateway_token),
            defaultQueueId=tenant.default_queue_id,
        )


class InstanceResponse(BaseModel):
    id: str
    displayName: str
    status: str
    providerKind: str
    phoneIdentifier: Optional[str] = None
    # Only populated while awaiting_scan
    pairingCode: Optional[str] = None
    lastError: Optional[str] = None
    defaultQueueId: Optional[str] = None
    createdAt: int
    updatedAt: int

    @classmethod
    def from_model(cls, instance: Instance) -> "InstanceResponse":
        return cls(
            id=instance.id,
            displayName=instance.display_name,
            status=instance.status,
            providerKind=instance.provider_kind,
            phoneIdentifier=instance.phone_identifier,
            pairingCode=instance.pairing_code if instance.status == INSTANCE_AWAITING_SCAN else None,
            lastError=instance.last_error,
            defaultQueueId=instance.default_queue_id,
            createdAt=instance.created_at,
            updatedAt=instance.updated_at,
        )


class QueueResponse(BaseModel):
    id: str
    name: str
    color: str
    createdAt: int

    @classmethod
    def from_model(cls, queue: Queue) -> "QueueResponse":
        return cls(id=queue.id, name=queue.name, color=queue.color, createdAt=queue.created_at)


class AgentResponse(BaseModel):
    id: str
    identityRef: str
    displayName: str
    presence: str

    @classmethod
    def from_model(cls, agent: Agent) -> "AgentResponse":
        return cls(
            id=agent.id,
            identityRef=agent.identity_ref,
            displayName=agent.display_name,
            presence=agent.presence,
        )


class TicketResponse(BaseModel):
    id: str
    contactId: str
    instanceId: str
    queueId: Optional[str] = None
    ownerAgentId: Optional[str] = None
    status: str
    lastMessageBody: Optional[str] = None
    lastMessageDirection: Optional[str] = None
    lastMessageAt: Optional[int] = None
    unreadCount: int
    messageCount: int
    tags: list[str] = []
    closedAt: Optional[int] = None
    closedByAgentId: Optional[str] = None
    createdAt: int
    updatedAt: int

    @classmethod
    def from_model(cls, ticket: Ticket) -> "TicketResponse":
        return cls(
            id=ticket.id,
            contactId=ticket.contact_id,
            instanceId=ticket.instance_id,
            queueId=ticket.queue_id,
            ownerAgentId=ticket.owner_agent_id,
            status=ticket.status,
            lastMessageBody=ticket.last_message_body,
            lastMessageDirection=ticket.last_message_direction,
            lastMessageAt=ticket.last_message_at,
            unreadCount=ticket.unread_count,
            messageCount=ticket.message_count,
            tags=list(ticket.tags or []),
            closedAt=ticket.closed_at,
            closedByAgentId=ticket.closed_by_agent_id,
            createdAt=ticket.created_at,
            updatedAt=ticket.updated_at,
        )


class MessageResponse(BaseModel):
    id: str
    ticketId: str
    direction: str
    body: str
    status: str
    isAiGenerated: bool
    agentId: Optional[str] = None
    correlationId: Optional[str] = None
    externalId: Optional[str] = None
    error: Optional[str] = None
    createdAt: int
    updatedAt: int

    @classmethod
    def from_model(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            ticketId=message.ticket_id,
            direction=message.direction,
            body=message.body,
            status=message.status,
            isAiGenerated=message.is_ai_generated,
            agentId=message.agent_id,
            correlationId=message.correlation_id,
            externalId=message.external_id,
            error=message.error,
            createdAt=message.created_at,
            updatedAt=message.updated_at,
        )


class TimelineEntryResponse(BaseModel):
    """A message as a viewer's timeline holds it (``pending`` = optimistic)."""

    id: str
    ticketId: str
    direction: str
    body: str
    status: str
    isAiGenerated: bool
    agentId: Optional[str] = None
    correlationId: Optional[str] = None
    error: Optional[str] = None
    createdAt: int
    updatedAt: int
    pending: bool = False

    @classmethod
    def from_entry(cls, entry: TimelineEntry) -> "TimelineEntryResponse":
        return cls(
            id=entry.id,
            ticketId=entry.ticket_id,
            direction=entry.direction,
            body=entry.body,
            status=entry.status,
            isAiGenerated=entry.is_ai_generated,
            agentId=entry.agent_id,
            correlationId=entry.correlation_id,
            error=entry.error,
            createdAt=entry.created_at,
            updatedAt=entry.updated_at,
            pending=entry.pending,
        )


class SyncEventResponse(BaseModel):
    type: str
    message: Optional[TimelineEntryResponse] = None
    replaces: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def from_event(cls, event: SyncEvent) -> "SyncEventResponse":
        return cls(
            type=event.type,
            message=(
                TimelineEntryResponse.from_entry(TimelineEntry(**event.message))
                if event.message
                else None
            ),
            replaces=event.replaces,
            detail=event.detail,
        )
