"""Ticket endpoints: list views, ownership commands and messages.

Endpoints (all under /v1/tickets):
  GET  /v1/tickets?view=mine|queued|closed&agentId=&queueId=
  GET  /v1/tickets/{id}
  POST /v1/tickets/{id}/claim            — {agentId}; 409 AlreadyClaimed for the loser
  POST /v1/tickets/{id}/transfer-queue   — {queueId}
  POST /v1/tickets/{id}/transfer-agent   — {agentId}
  POST /v1/tickets/{id}/resolve          — idempotent
  POST /v1/tickets/{id}/return-to-queue
  POST /v1/tickets/{id}/read             — {count?}
  PUT  /v1/tickets/{id}/tags             — {tags}
  GET  /v1/tickets/{id}/messages?since=&limit=
  POST /v1/tickets/{id}/messages         — {body, agentId?, correlationId?}
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from chatdesk.dependencies import get_tenant_id, get_tickets
from chatdesk.schemas import MessageResponse, TicketResponse
from chatdesk.services.tickets import TicketRouter

router = APIRouter()


# ─── Schemas ──────────────────────────────────────────────────────────────────


class ClaimRequest(BaseModel):
    agentId: str


class TransferQueueRequest(BaseModel):
    queueId: str


class TransferAgentRequest(BaseModel):
    agentId: str


class ResolveRequest(BaseModel):
    agentId: Optional[str] = None


class ReadRequest(BaseModel):
    count: Optional[int] = Field(default=None, ge=0)


class TagsRequest(BaseModel):
    tags: List[str]


class SendMessageRequest(BaseModel):
    body: str
    agentId: Optional[str] = None
    correlationId: Optional[str] = Field(default=None, max_length=128)


# ─── Queries ──────────────────────────────────────────────────────────────────


@router.get("", response_model=List[TicketResponse])
async def list_tickets(
    view: str = Query("queued"),
    agentId: Optional[str] = Query(None),
    queueId: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> List[TicketResponse]:
    """Tickets for one view, most recently updated first."""
    rows = await tickets.list_tickets(
        tenant_id, view, agent_id=agentId, queue_id=queueId, limit=limit
    )
    return [TicketResponse.from_model(t) for t in rows]


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(
    ticket_id: str,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    ticket = await tickets.get_ticket(tenant_id, ticket_id)
    return TicketResponse.from_model(ticket)


# ─── Commands ─────────────────────────────────────────────────────────────────


@router.post("/{ticket_id}/claim", response_model=TicketResponse)
async def claim_ticket(
    ticket_id: str,
    body: ClaimRequest,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    ticket = await tickets.claim(tenant_id, ticket_id, body.agentId)
    return TicketResponse.from_model(ticket)


@router.post("/{ticket_id}/transfer-queue", response_model=TicketResponse)
async def transfer_to_queue(
    ticket_id: str,
    body: TransferQueueRequest,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    ticket = await tickets.transfer_to_queue(tenant_id, ticket_id, body.queueId)
    return TicketResponse.from_model(ticket)


@router.post("/{ticket_id}/transfer-agent", response_model=TicketResponse)
async def transfer_to_agent(
    ticket_id: str,
    body: TransferAgentRequest,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    ticket = await tickets.transfer_to_agent(tenant_id, ticket_id, body.agentId)
    return TicketResponse.from_model(ticket)


@router.post("/{ticket_id}/resolve", response_model=TicketResponse)
async def resolve_ticket(
    ticket_id: str,
    body: Optional[ResolveRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    agent_id = body.agentId if body else None
    ticket = await tickets.resolve(tenant_id, ticket_id, agent_id)
    return TicketResponse.from_model(ticket)


@router.post("/{ticket_id}/return-to-queue", response_model=TicketResponse)
async def return_to_queue(
    ticket_id: str,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    ticket = await tickets.return_to_queue(tenant_id, ticket_id)
    return TicketResponse.from_model(ticket)


@router.post("/{ticket_id}/read", response_model=TicketResponse)
async def acknowledge(
    ticket_id: str,
    body: Optional[ReadRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    count = body.count if body else None
    ticket = await tickets.acknowledge(tenant_id, ticket_id, count)
    return TicketResponse.from_model(ticket)


@router.put("/{ticket_id}/tags", response_model=TicketResponse)
async def set_tags(
    ticket_id: str,
    body: TagsRequest,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> TicketResponse:
    ticket = await tickets.set_tags(tenant_id, ticket_id, body.tags)
    return TicketResponse.from_model(ticket)


# ─── Messages ─────────────────────────────────────────────────────────────────


@router.get("/{ticket_id}/messages", response_model=List[MessageResponse])
async def list_messages(
    ticket_id: str,
    since: Optional[int] = Query(None, ge=0, description="Backfill watermark (ms)"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> List[MessageResponse]:
    """Messages ordered by (createdAt, id). With ``since``: changed since then."""
    if since is not None:
        rows = await tickets.fetch_since(tenant_id, ticket_id, since)
    else:
        rows = await tickets.list_messages(tenant_id, ticket_id, limit=limit)
    return [MessageResponse.from_model(m) for m in rows]


@router.post(
    "/{ticket_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    ticket_id: str,
    body: SendMessageRequest,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> MessageResponse:
    """Send a reply. A gateway failure still returns 201 with status=failed."""
    message = await tickets.send_outbound(
        tenant_id,
        ticket_id,
        body.body,
        agent_id=body.agentId,
        correlation_id=body.correlationId,
    )
    return MessageResponse.from_model(message)
