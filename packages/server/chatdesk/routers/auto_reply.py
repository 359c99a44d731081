"""Auto-reply settings.

Endpoints (all under /v1/auto-reply):
  GET /v1/auto-reply   — Current settings (defaults until first write)
  PUT /v1/auto-reply   — Upsert
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chatdesk.dependencies import get_auto_reply, get_tenant_id
from chatdesk.models import AutoReplySettings
from chatdesk.services.auto_reply import AutoReplyEngine

router = APIRouter()


class AutoReplySettingsResponse(BaseModel):
    enabled: bool
    temperature: float
    systemPrompt: str
    updatedAt: int


class UpdateAutoReplyRequest(BaseModel):
    enabled: Optional[bool] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    systemPrompt: Optional[str] = None


def _to_response(row: AutoReplySettings) -> AutoReplySettingsResponse:
    return AutoReplySettingsResponse(
        enabled=row.enabled,
        temperature=row.temperature,
        systemPrompt=row.system_prompt,
        updatedAt=row.updated_at,
    )


@router.get("", response_model=AutoReplySettingsResponse)
async def get_settings(
    tenant_id: str = Depends(get_tenant_id),
    engine: AutoReplyEngine = Depends(get_auto_reply),
) -> AutoReplySettingsResponse:
    return _to_response(await engine.get_settings(tenant_id))


@router.put("", response_model=AutoReplySettingsResponse)
async def update_settings(
    body: UpdateAutoReplyRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: AutoReplyEngine = Depends(get_auto_reply),
) -> AutoReplySettingsResponse:
    row = await engine.update_settings(
        tenant_id,
        enabled=body.enabled,
        temperature=body.temperature,
        system_prompt=body.systemPrompt,
    )
    return _to_response(row)
