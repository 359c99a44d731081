"""Queue administration.

Endpoints (all under /v1/queues):
  GET    /v1/queues
  POST   /v1/queues
  PUT    /v1/queues/{id}
  DELETE /v1/queues/{id}?reassignTo=q_xxx   — moves tickets; without it they are orphaned
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from chatdesk.dependencies import get_directory, get_tenant_id
from chatdesk.schemas import QueueResponse
from chatdesk.services.directory import Directory

router = APIRouter()


class CreateQueueRequest(BaseModel):
    name: str
    color: Optional[str] = None


class UpdateQueueRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


class DeleteQueueResponse(BaseModel):
    deleted: str
    movedTickets: int
    reassignedTo: Optional[str] = None


@router.get("", response_model=List[QueueResponse])
async def list_queues(
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> List[QueueResponse]:
    return [QueueResponse.from_model(q) for q in await directory.list_queues(tenant_id)]


@router.post("", response_model=QueueResponse, status_code=status.HTTP_201_CREATED)
async def create_queue(
    body: CreateQueueRequest,
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> QueueResponse:
    queue = await directory.create_queue(tenant_id, body.name, body.color)
    return QueueResponse.from_model(queue)


@router.put("/{queue_id}", response_model=QueueResponse)
async def update_queue(
    queue_id: str,
    body: UpdateQueueRequest,
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> QueueResponse:
    queue = await directory.update_queue(tenant_id, queue_id, name=body.name, color=body.color)
    return QueueResponse.from_model(queue)


@router.delete("/{queue_id}", response_model=DeleteQueueResponse)
async def delete_queue(
    queue_id: str,
    reassignTo: Optional[str] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> DeleteQueueResponse:
    moved = await directory.delete_queue(tenant_id, queue_id, reassign_to=reassignTo)
    return DeleteQueueResponse(deleted=queue_id, movedTickets=moved, reassignedTo=reassignTo)
