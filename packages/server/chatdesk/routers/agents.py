"""Agent administration.

Endpoints (all under /v1/agents):
  GET    /v1/agents
  POST   /v1/agents                 — 403 when the plan's agent quota is used up
  PUT    /v1/agents/{id}/presence   — {presence: online|offline}
  DELETE /v1/agents/{id}            — their open tickets go back to pending
"""

from typing import List, Literal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from chatdesk.dependencies import get_directory, get_tenant_id
from chatdesk.schemas import AgentResponse
from chatdesk.services.directory import Directory

router = APIRouter()


class CreateAgentRequest(BaseModel):
    identityRef: str
    displayName: str


class PresenceRequest(BaseModel):
    presence: Literal["online", "offline"]


class RemoveAgentResponse(BaseModel):
    deleted: str
    releasedTickets: int


@router.get("", response_model=List[AgentResponse])
async def list_agents(
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> List[AgentResponse]:
    return [AgentResponse.from_model(a) for a in await directory.list_agents(tenant_id)]


@router.post("", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def add_agent(
    body: CreateAgentRequest,
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> AgentResponse:
    agent = await directory.add_agent(tenant_id, body.identityRef, body.displayName)
    return AgentResponse.from_model(agent)


@router.put("/{agent_id}/presence", response_model=AgentResponse)
async def set_presence(
    agent_id: str,
    body: PresenceRequest,
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> AgentResponse:
    agent = await directory.set_presence(tenant_id, agent_id, body.presence)
    return AgentResponse.from_model(agent)


@router.delete("/{agent_id}", response_model=RemoveAgentResponse)
async def remove_agent(
    agent_id: str,
    tenant_id: str = Depends(get_tenant_id),
    directory: Directory = Depends(get_directory),
) -> RemoveAgentResponse:
    released = await directory.remove_agent(tenant_id, agent_id)
    return RemoveAgentResponse(deleted=agent_id, releasedTickets=released)
