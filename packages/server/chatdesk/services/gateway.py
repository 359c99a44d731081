"""Channel gateway client.

The gateway is the per-instance bridge to the messaging network (a Baileys
sidecar, Evolution API, ...). The engine depends only on this contract:

  GET  /qr                          -> {"qr": str | null, "connected": bool, "phone"?: str}
  POST /send {"jid": str, "message": str} -> 2xx {"id"?: str} | error {"message": str}
  POST /logout                      -> 2xx (404 tolerated: nothing to tear down)

Responses are parsed into QrStatus / SendReceipt; anything else raises
GatewayUnreachable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx

from chatdesk.errors import GatewayUnreachable
from chatdesk.logging_config import get_logger
from chatdesk.models import Instance, Tenant

logger = get_logger(__name__)

WHATSAPP_USER_SUFFIX = "@s.whatsapp.net"


@dataclass(frozen=True)
class QrStatus:
    qr: Optional[str]
    connected: bool
    phone: Optional[str] = None


@dataclass(frozen=True)
class SendReceipt:
    external_id: Optional[str] = None


class ChannelGateway(Protocol):
    async def fetch_qr(self) -> QrStatus: ...

    async def send(self, jid: str, message: str) -> SendReceipt: ...

    async def logout(self) -> None: ...

    async def aclose(self) -> None: ...


GatewayFactory = Callable[[Tenant, Instance], ChannelGateway]


def to_jid(address: str) -> str:
    """Normalize a phone number / address into a WhatsApp JID."""
    if "@" in address:
        return address
    digits = re.sub(r"\D", "", address)
    return f"{digits}{WHATSAPP_USER_SUFFIX}"


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        detail = data.get("message") or data.get("error")
        if isinstance(detail, str) and detail:
            return detail
    return f"HTTP {response.status_code}"


class HttpChannelGateway:
    """httpx client for one gateway base URL."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def fetch_qr(self) -> QrStatus:
        try:
            response = await self._client.get("/qr")
        except httpx.HTTPError as e:
            raise GatewayUnreachable(f"Gateway {self.base_url} unreachable: {e}") from e
        if response.status_code >= 400:
            raise GatewayUnreachable(f"Gateway QR request failed: {_error_message(response)}")

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayUnreachable("Gateway returned a non-JSON QR response") from e

        if not isinstance(data, dict):
            raise GatewayUnreachable("Gateway QR response is not an object")
        qr = data.get("qr")
        connected = data.get("connected")
        phone = data.get("phone")
        if qr is not None and not isinstance(qr, str):
            raise GatewayUnreachable("Gateway QR response has a non-string 'qr'")
        if not isinstance(connected, bool):
            raise GatewayUnreachable("Gateway QR response is missing boolean 'connected'")
        if phone is not None and not isinstance(phone, str):
            phone = str(phone)
        return QrStatus(qr=qr or None, connected=connected, phone=phone)

    async def send(self, jid: str, message: str) -> SendReceipt:
        try:
            response = await self._client.post("/send", json={"jid": jid, "message": message})
        except httpx.HTTPError as e:
            raise GatewayUnreachable(f"Gateway {self.base_url} unreachable: {e}") from e
        if not response.is_success:
            raise GatewayUnreachable(_error_message(response))

        external_id = None
        try:
            data = response.json()
            if isinstance(data, dict) and data.get("id") is not None:
                external_id = str(data["id"])
        except ValueError:
            pass
        return SendReceipt(external_id=external_id)

    async def logout(self) -> None:
        try:
            response = await self._client.post("/logout")
        except httpx.HTTPError as e:
            raise GatewayUnreachable(f"Gateway {self.base_url} unreachable: {e}") from e
        if response.status_code == 404:
            return
        if not response.is_success:
            raise GatewayUnreachable(_error_message(response))

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpGatewayFactory:
    """Builds an HttpChannelGateway from the tenant's gateway settings.

    ``gateway_base_url`` may contain an ``{instance}`` placeholder when one
    gateway host serves several sessions (http://wa:3001/sessions/{instance}).
    """

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout

    def __call__(self, tenant: Tenant, instance: Instance) -> ChannelGateway:
        if not tenant.gateway_base_url:
            raise GatewayUnreachable(
                f"Tenant {tenant.id} has no gateway_base_url configured"
            )
        base_url = tenant.gateway_base_url
        if "{instance}" in base_url:
            base_url = base_url.replace("{instance}", instance.id)
        return HttpChannelGateway(base_url, token=tenant.gateway_token, timeout=self.timeout)
