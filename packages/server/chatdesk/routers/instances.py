"""Channel instance pairing endpoints.

Endpoints (all under /v1/instances):
  POST   /v1/instances                   — Create an instance and start pairing
  GET    /v1/instances                   — List instances
  GET    /v1/instances/{id}              — Status (and QR code while awaiting scan)
  POST   /v1/instances/{id}/pair         — Pair again after a failure/disconnect
  POST   /v1/instances/{id}/confirm      — Gateway confirms the scan
  POST   /v1/instances/{id}/fail         — Gateway reports a fatal error
  POST   /v1/instances/{id}/disconnect   — Tear down the session (idempotent)

The UI polls GET /v1/instances/{id} (or listens to the instances feed)
while the QR code is displayed; codes rotate roughly every 20 seconds.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from chatdesk.dependencies import get_instances, get_tenant_id
from chatdesk.schemas import InstanceResponse
from chatdesk.services.instances import InstanceConnectionManager

router = APIRouter()


# ─── Schemas ──────────────────────────────────────────────────────────────────


class CreateInstanceRequest(BaseModel):
    name: str
    providerKind: str = "baileys"
    defaultQueueId: Optional[str] = None


class ConfirmScanRequest(BaseModel):
    phone: Optional[str] = None


class GatewayFailureRequest(BaseModel):
    reason: str


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=InstanceResponse, status_code=status.HTTP_201_CREATED)
async def initiate_pairing(
    body: CreateInstanceRequest,
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
) -> InstanceResponse:
    """Create an instance in generating_code. The QR arrives asynchronously."""
    instance_id = await manager.initiate_pairing(
        tenant_id,
        body.name,
        provider_kind=body.providerKind,
        default_queue_id=body.defaultQueueId,
    )
    instance = await manager.get_instance(tenant_id, instance_id)
    return InstanceResponse.from_model(instance)


@router.get("", response_model=List[InstanceResponse])
async def list_instances(
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
) -> List[InstanceResponse]:
    instances = await manager.list_instances(tenant_id)
    return [InstanceResponse.from_model(i) for i in instances]


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: str,
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
) -> InstanceResponse:
    instance = await manager.get_instance(tenant_id, instance_id)
    return InstanceResponse.from_model(instance)


@router.post("/{instance_id}/pair", response_model=InstanceResponse)
async def start_pairing(
    instance_id: str,
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
) -> InstanceResponse:
    instance = await manager.start_pairing(tenant_id, instance_id)
    return InstanceResponse.from_model(instance)


@router.post("/{instance_id}/confirm", response_model=InstanceResponse)
async def confirm_scan(
    instance_id: str,
    body: ConfirmScanRequest,
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
) -> InstanceResponse:
    instance = await manager.confirm_scan(tenant_id, instance_id, body.phone)
    return InstanceResponse.from_model(instance)


@router.post("/{instance_id}/fail", response_model=InstanceResponse)
async def mark_gateway_failure(
    instance_id: str,
    body: GatewayFailureRequest,
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
) -> InstanceResponse:
    instance = await manager.mark_gateway_failure(tenant_id, instance_id, body.reason)
    return InstanceResponse.from_model(instance)


@router.post("/{instance_id}/disconnect", response_model=InstanceResponse)
async def disconnect(
    instance_id: str,
    tenant_id: str = Depends(get_tenant_id),
    manager: InstanceConnectionManager = Depends(get_instances),
) -> InstanceResponse:
    instance = await manager.disconnect(tenant_id, instance_id)
    return InstanceResponse.from_model(instance)
