"""Tenant configuration endpoints.

Endpoints (all under /v1/tenant):
  GET  /v1/tenant   — Read quotas, gateway settings and default queue
  PUT  /v1/tenant   — Update them (fields left out are unchanged)
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chatdesk.dependencies import get_directory, get_tenant_id
from chatdesk.schemas import TenantResponse
from chatdesk.services.directory import UNSET, Directory

router = APIRouter()


class UpdateTenantRequest(BaseModel):
    name: Optional[str] = None
    maxInstances: Optional[int] = Field(default=None, ge=0)
    maxAgents: Optional[int] = Field(default=None, ge=0)
    gatewayBaseUrl: Optional[str] = None
    gatewayToken: Optional[str] = None
    defaultQueueId: Optional[str] = None


@router.get("", response_model=TenantResponse)
async def get_tenant(
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> TenantResponse:
    tenant = await directory.get_tenant(tenant_id)
    return TenantResponse.from_model(tenant)


@router.put("", response_model=TenantResponse)
async def update_tenant(
    body: UpdateTenantRequest,
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> TenantResponse:
    """Update tenant configuration. Explicit nulls clear nullable fields."""
    sent = body.model_fields_set
    tenant = await directory.update_tenant(
        tenant_id,
        name=body.name if "name" in sent else UNSET,
        max_instances=body.maxInstances,
        max_agents=body.maxAgents,
        gateway_base_url=body.gatewayBaseUrl if "gatewayBaseUrl" in sent else UNSET,
        gateway_token=body.gatewayToken if "gatewayToken" in sent else UNSET,
        default_queue_id=body.defaultQueueId if "defaultQueueId" in sent else UNSET,
    )
    return TenantResponse.from_model(tenant)
