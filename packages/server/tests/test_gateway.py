"""Tests for the HTTP clients: channel gateway and AI endpoint."""
import json

import httpx
import pytest
import respx

from chatdesk.errors import AiUnavailable, GatewayUnreachable
from chatdesk.models import Instance, Tenant
from chatdesk.services.auto_reply import OpenAICompatibleGenerator
from chatdesk.services.gateway import HttpChannelGateway, HttpGatewayFactory, to_jid

GATEWAY = "http://gateway.test"


def test_to_jid():
    assert to_jid("+55 (11) 99999-9999") == "5511999999999@s.whatsapp.net"
    assert to_jid("120363025@g.us") == "120363025@g.us"


# ── Channel gateway ─────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_fetch_qr_parses_status():
    route = respx.get(f"{GATEWAY}/qr").mock(
        return_value=httpx.Response(200, json={"qr": "2@abc", "connected": False})
    )
    gateway = HttpChannelGateway(GATEWAY, token="tok")

    status = await gateway.fetch_qr()

    assert status.qr == "2@abc"
    assert status.connected is False
    assert route.calls.last.request.headers["Authorization"] == "Bearer tok"
    await gateway.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_fetch_qr_connected_with_phone():
    respx.get(f"{GATEWAY}/qr").mock(
        return_value=httpx.Response(200, json={"qr": None, "connected": True, "phone": 5511988887777})
    )
    gateway = HttpChannelGateway(GATEWAY)

    status = await gateway.fetch_qr()

    assert status.connected is True
    assert status.qr is None
    assert status.phone == "5511988887777"
    await gateway.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_fetch_qr_rejects_malformed_response():
    respx.get(f"{GATEWAY}/qr").mock(return_value=httpx.Response(200, json={"qr": "x"}))
    gateway = HttpChannelGateway(GATEWAY)

    with pytest.raises(GatewayUnreachable):
        await gateway.fetch_qr()
    await gateway.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_fetch_qr_connection_error():
    respx.get(f"{GATEWAY}/qr").mock(side_effect=httpx.ConnectError("refused"))
    gateway = HttpChannelGateway(GATEWAY)

    with pytest.raises(GatewayUnreachable, match="unreachable"):
        await gateway.fetch_qr()
    await gateway.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_send_posts_jid_and_message():
    route = respx.post(f"{GATEWAY}/send").mock(
        return_value=httpx.Response(200, json={"id": "3EB0ABC"})
    )
    gateway = HttpChannelGateway(GATEWAY)

    receipt = await gateway.send("5511999999999@s.whatsapp.net", "Olá")

    assert receipt.external_id == "3EB0ABC"
    assert json.loads(route.calls.last.request.content) == {
        "jid": "5511999999999@s.whatsapp.net",
        "message": "Olá",
    }
    await gateway.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_send_error_carries_gateway_message():
    respx.post(f"{GATEWAY}/send").mock(
        return_value=httpx.Response(400, json={"message": "number not on WhatsApp"})
    )
    gateway = HttpChannelGateway(GATEWAY)

    with pytest.raises(GatewayUnreachable, match="number not on WhatsApp"):
        await gateway.send("5511999999999@s.whatsapp.net", "Olá")
    await gateway.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_logout_tolerates_missing_session():
    respx.post(f"{GATEWAY}/logout").mock(return_value=httpx.Response(404))
    gateway = HttpChannelGateway(GATEWAY)

    await gateway.logout()
    await gateway.aclose()


@pytest.mark.asyncio
async def test_factory_fills_instance_placeholder():
    tenant = Tenant(id="t1", gateway_base_url="http://wa:3001/sessions/{instance}/", gateway_token=None)
    instance = Instance(id="inst_abc", tenant_id="t1")

    gateway = HttpGatewayFactory(timeout=1.0)(tenant, instance)

    assert gateway.base_url == "http://wa:3001/sessions/inst_abc"
    await gateway.aclose()


def test_factory_requires_base_url():
    tenant = Tenant(id="t1", gateway_base_url=None)

    with pytest.raises(GatewayUnreachable):
        HttpGatewayFactory()(tenant, Instance(id="inst_abc", tenant_id="t1"))


# ── AI endpoint ─────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_generator_sends_prompt_and_history():
    route = respx.post("http://ai.test/v1/chat/completions").mock(
        return_value=httpx.Response(
            200, json={"choices": [{"message": {"role": "assistant", "content": "  Claro!  "}}]}
        )
    )
    generator = OpenAICompatibleGenerator("http://ai.test/v1", "gpt-4o-mini", api_key="sk-test")

    text = await generator.generate("Seja educado.", 0.4, [{"role": "user", "content": "Oi"}])

    assert text == "Claro!"
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {
        "model": "gpt-4o-mini",
        "temperature": 0.4,
        "messages": [
            {"role": "system", "content": "Seja educado."},
            {"role": "user", "content": "Oi"},
        ],
    }
    await generator.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_generator_http_error():
    respx.post("http://ai.test/v1/chat/completions").mock(return_value=httpx.Response(500, text="boom"))
    generator = OpenAICompatibleGenerator("http://ai.test/v1", "gpt-4o-mini")

    with pytest.raises(AiUnavailable, match="500"):
        await generator.generate("", 0.7, [{"role": "user", "content": "Oi"}])
    await generator.aclose()


@pytest.mark.asyncio
@respx.mock
async def test_generator_response_without_choices():
    respx.post("http://ai.test/v1/chat/completions").mock(
        return_value=httpx.Response(200, json={"choices": []})
    )
    generator = OpenAICompatibleGenerator("http://ai.test/v1", "gpt-4o-mini")

    with pytest.raises(AiUnavailable):
        await generator.generate("", 0.7, [{"role": "user", "content": "Oi"}])
    await generator.aclose()
