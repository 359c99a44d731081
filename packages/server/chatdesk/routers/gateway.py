"""Gateway → engine webhooks.

Endpoints (all under /v1/gateway):
  POST /v1/gateway/{instance_id}/inbound  — Inbound message from a contact
  POST /v1/gateway/receipts               — Delivery/read receipt for an outbound message

The inbound call returns once the message is stored; auto-replies run in
the background.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from chatdesk.dependencies import get_inbound, get_instances, get_tenant_id, get_tickets
from chatdesk.schemas import MessageResponse
from chatdesk.services.auto_reply import InboundPipeline
from chatdesk.services.instances import InstanceConnectionManager
from chatdesk.services.tickets import TicketRouter

router = APIRouter()


class InboundMessageRequest(BaseModel):
    address: str
    body: str
    displayName: Optional[str] = None
    avatarUrl: Optional[str] = None
    externalId: Optional[str] = None


class InboundMessageResponse(BaseModel):
    ticketId: str
    messageId: str
    createdTicket: bool
    duplicate: bool


class ReceiptRequest(BaseModel):
    status: Literal["delivered", "read", "failed"]
    messageId: Optional[str] = None
    externalId: Optional[str] = None


@router.post("/{instance_id}/inbound", response_model=InboundMessageResponse)
async def receive_inbound(
    instance_id: str,
    body: InboundMessageRequest,
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
    pipeline: InboundPipeline = Depends(get_inbound),
) -> InboundMessageResponse:
    # Ownership check: a tenant's gateway may only post to its own instances
    await manager.get_instance(tenant_id, instance_id)
    routed = await pipeline.handle(
        instance_id,
        body.address,
        body.body,
        display_name=body.displayName,
        avatar_url=body.avatarUrl,
        external_id=body.externalId,
    )
    return InboundMessageResponse(
        ticketId=routed.ticket.id,
        messageId=routed.message.id,
        createdTicket=routed.created_ticket,
        duplicate=routed.duplicate,
    )


@router.post("/receipts", response_model=MessageResponse)
async def receive_receipt(
    body: ReceiptRequest,
    tenant_id: str = Depends(get_tenant_id),
    tickets: TicketRouter = Depends(get_tickets),
) -> MessageResponse:
    message = await tickets.record_receipt(
        tenant_id, body.status, message_id=body.messageId, external_id=body.externalId
    )
    return MessageResponse.from_model(message)
