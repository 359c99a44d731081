"""FastAPI dependencies for the chatdesk API.

Services are built once in the lifespan (see build_services) and stored on
``app.state.services``; routers receive them through Depends.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatdesk.config import EngineSettings
from chatdesk.services.auto_reply import AutoReplyEngine, InboundPipeline, TextGenerator
from chatdesk.services.directory import Directory
from chatdesk.services.feed import ChangeFeed
from chatdesk.services.gateway import GatewayFactory
from chatdesk.services.instances import InstanceConnectionManager
from chatdesk.services.sync import MessageSynchronizer
from chatdesk.services.tickets import TicketRouter

# Global Redis client (initialized in main.py lifespan when the feed uses Redis)
redis_client: Optional[redis.Redis] = None


@dataclass
class Services:
    settings: EngineSettings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    feed: ChangeFeed
    directory: Directory
    instances: InstanceConnectionManager
    tickets: TicketRouter
    sync: MessageSynchronizer
    auto_reply: AutoReplyEngine
    inbound: InboundPipeline

    async def shutdown(self) -> None:
        await self.sync.shutdown()
        await self.instances.shutdown()
        await self.inbound.shutdown()
        await self.feed.close()


def build_services(
    settings: EngineSettings,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    feed: ChangeFeed,
    gateway_factory: GatewayFactory,
    generator: TextGenerator,
) -> Services:
    """Wire the engine components together."""
    tickets = TicketRouter(session_factory, settings, feed, gateway_factory)
    auto_reply = AutoReplyEngine(session_factory, settings, tickets, generator)
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        feed=feed,
        directory=Directory(session_factory, settings, feed),
        instances=InstanceConnectionManager(session_factory, settings, feed, gateway_factory),
        tickets=tickets,
        sync=MessageSynchronizer(tickets, feed, settings),
        auto_reply=auto_reply,
        inbound=InboundPipeline(tickets, auto_reply),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return services


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-Id")) -> str:
    """Tenant of the request. Authentication happens in front of this API."""
    tenant_id = x_tenant_id.strip()
    if not tenant_id or len(tenant_id) > 64:
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-Id header")
    return tenant_id


def get_directory(services: Services = Depends(get_services)) -> Directory:
    return services.directory


def get_instances(services: Services = Depends(get_services)) -> InstanceConnectionManager:
    return services.instances


def get_tickets(services: Services = Depends(get_services)) -> TicketRouter:
    return services.tickets


def get_sync(services: Services = Depends(get_services)) -> MessageSynchronizer:
    return services.sync


def get_auto_reply(services: Services = Depends(get_services)) -> AutoReplyEngine:
    return services.auto_reply


def get_inbound(services: Services = Depends(get_services)) -> InboundPipeline:
    return services.inbound
