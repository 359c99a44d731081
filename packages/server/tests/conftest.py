"""Pytest configuration and fixtures for engine and API tests."""
import asyncio
import os
import sys
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from chatdesk.config import EngineSettings
from chatdesk.database import build_engine, build_session_factory, create_schema, init_db_engine, session_scope
from chatdesk.dependencies import build_services, get_services
from chatdesk.main import app
from chatdesk.models import INSTANCE_CONNECTED, Instance, now_ms
from chatdesk.services.feed import InMemoryChangeFeed
from chatdesk.services.gateway import QrStatus, SendReceipt

TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"


class FakeGateway:
    """Scriptable stand-in for a channel gateway session.

    ``qr_script`` is consumed one entry per poll; the last entry repeats.
    Entries are QrStatus values or exceptions to raise.
    """

    def __init__(self):
        self.qr_script: list = [QrStatus(qr=None, connected=False)]
        self.qr_calls = 0
        self.sent: List[tuple] = []
        self.send_error: Optional[Exception] = None
        self.next_external_id: Optional[str] = None
        self.logouts = 0

    async def fetch_qr(self) -> QrStatus:
        index = min(self.qr_calls, len(self.qr_script) - 1)
        self.qr_calls += 1
        step = self.qr_script[index]
        if isinstance(step, Exception):
            raise step
        return step

    async def send(self, jid: str, message: str) -> SendReceipt:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, message))
        return SendReceipt(external_id=self.next_external_id)

    async def logout(self) -> None:
        self.logouts += 1

    async def aclose(self) -> None:
        pass


class FakeGenerator:
    """Text generator with a canned reply, an optional delay or error."""

    def __init__(self, reply: str = "Olá! Como posso ajudar?"):
        self.reply = reply
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.calls: List[dict] = []

    async def generate(self, system_prompt, temperature, history) -> str:
        self.calls.append(
            {"system_prompt": system_prompt, "temperature": temperature, "history": list(history)}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    """Settings with short timeouts so pairing/auto-reply paths run fast."""
    return EngineSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/chatdesk-test.db",
        change_feed_backend="memory",
        pairing_timeout_seconds=0.5,
        pairing_poll_interval_seconds=0.02,
        auto_reply_timeout_seconds=0.2,
        auto_reply_history_limit=20,
        backfill_overlap_ms=200,
        default_max_instances=1,
        default_max_agents=1,
    )


@pytest_asyncio.fixture
async def test_engine(settings):
    """File-backed SQLite so concurrent sessions use separate connections."""
    engine = build_engine(settings.database_url)
    await init_db_engine(engine)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
def feed() -> InMemoryChangeFeed:
    return InMemoryChangeFeed()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest_asyncio.fixture
async def services(settings, test_engine, session_factory, feed, gateway, generator):
    services = build_services(
        settings,
        test_engine,
        session_factory,
        feed,
        lambda tenant, instance: gateway,
        generator,
    )
    yield services
    await services.shutdown()


@pytest_asyncio.fixture
async def tenant(services):
    """Tenant with room for two instances and three agents."""
    return await services.directory.update_tenant(
        TENANT,
        name="Loja Exemplo",
        max_instances=2,
        max_agents=3,
        gateway_base_url="http://gateway.test",
    )


@pytest_asyncio.fixture
async def support_queue(services, tenant):
    return await services.directory.create_queue(TENANT, "Suporte", "bg-blue-500")


@pytest_asyncio.fixture
async def finance_queue(services, tenant):
    return await services.directory.create_queue(TENANT, "Financeiro", "bg-green-500")


@pytest_asyncio.fixture
async def agent_a(services, tenant):
    return await services.directory.add_agent(TENANT, "ana@example.com", "Ana")


@pytest_asyncio.fixture
async def agent_b(services, tenant):
    return await services.directory.add_agent(TENANT, "bruno@example.com", "Bruno")


async def make_connected_instance(session_factory, tenant_id: str, default_queue_id=None) -> Instance:
    """Insert an already-paired instance (skips the pairing flow)."""
    now = now_ms()
    instance = Instance(
        id=Instance.generate_id(),
        tenant_id=tenant_id,
        display_name="Linha Principal",
        status=INSTANCE_CONNECTED,
        provider_kind="baileys",
        phone_identifier="5511988887777",
        default_queue_id=default_queue_id,
        created_at=now,
        updated_at=now,
    )
    async with session_scope(session_factory) as session:
        session.add(instance)
    return instance


@pytest_asyncio.fixture
async def instance(session_factory, tenant, support_queue):
    return await make_connected_instance(session_factory, TENANT, support_queue.id)


@pytest_asyncio.fixture
async def pending_ticket(services, instance):
    routed = await services.tickets.route_inbound(instance.id, "5511999999999", "Oi")
    return routed.ticket


@pytest_asyncio.fixture
async def open_ticket(services, pending_ticket, agent_a):
    return await services.tickets.claim(TENANT, pending_ticket.id, agent_a.id)


@pytest_asyncio.fixture
async def client(services):
    """API client with the engine services injected."""
    app.dependency_overrides[get_services] = lambda: services

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Tenant-Id": TENANT},
    ) as client:
        yield client

    app.dependency_overrides.clear()


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll an async predicate until it returns truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
