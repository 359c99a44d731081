"""Tenant configuration, queues and agents.

Tenants are created with the default plan quotas on their first
configuration write. Queue deletion never deletes tickets: they are moved
to another queue or explicitly orphaned (queue_id = NULL).
"""

from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatdesk.config import EngineSettings
from chatdesk.database import session_scope
from chatdesk.errors import InvalidArgument, InvalidTransition, NotFound, QuotaExceeded
from chatdesk.logging_config import get_logger
from chatdesk.models import (
    AGENT_PRESENCES,
    Agent,
    Instance,
    Queue,
    Tenant,
    Ticket,
    TICKET_OPEN,
    TICKET_PENDING,
    now_ms,
)
from chatdesk.services.feed import ChangeEvent, ChangeFeed

logger = get_logger(__name__)

# Sentinel for "leave unchanged" on nullable fields
UNSET = object()


async def ensure_tenant(
    session: AsyncSession,
    tenant_id: str,
    settings: EngineSettings,
    *,
    lock: bool = False,
) -> Tenant:
    """Load the tenant row, creating it with default quotas if missing."""
    stmt = select(Tenant).where(Tenant.id == tenant_id)
    if lock:
        stmt = stmt.with_for_update()
    tenant = (await session.execute(stmt)).scalar_one_or_none()
    if tenant is None:
        now = now_ms()
        tenant = Tenant(
            id=tenant_id,
            max_instances=settings.default_max_instances,
            max_agents=settings.default_max_agents,
            created_at=now,
            updated_at=now,
        )
        session.add(tenant)
        await session.flush()
        logger.info(f"Created tenant {tenant_id} with default quotas")
    return tenant


async def get_owned(session: AsyncSession, model, row_id: str, tenant_id: str):
    """Fetch a tenant-scoped row or raise NotFound (also on tenant mismatch)."""
    row = await session.get(model, row_id, populate_existing=True)
    if row is None or row.tenant_id != tenant_id:
        raise NotFound(f"{model.__name__} {row_id} not found")
    return row


async def update_tickets_where(session: AsyncSession, conditions: list, **values) -> List[Ticket]:
    """One conditional UPDATE over tickets; returns the rows it changed.

    Tickets changed concurrently so they no longer match ``conditions`` are
    left alone.
    """
    result = await session.execute(
        update(Ticket)
        .where(*conditions)
        .values(**values)
        .returning(Ticket.id)
        .execution_options(synchronize_session=False)
    )
    ids = list(result.scalars().all())
    if not ids:
        return []
    result = await session.execute(
        select(Ticket)
        .where(Ticket.id.in_(ids))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class Directory:
    """Tenant config plus queue and agent administration."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        feed: ChangeFeed,
    ):
        self._sessions = session_factory
        self._settings = settings
        self._feed = feed

    # ── Tenants ─────────────────────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Tenant:
        async with session_scope(self._sessions) as session:
            return await ensure_tenant(session, tenant_id, self._settings)

    async def update_tenant(
        self,
        tenant_id: str,
        *,
        name=UNSET,
        max_instances: Optional[int] = None,
        max_agents: Optional[int] = None,
        gateway_base_url=UNSET,
        gateway_token=UNSET,
        default_queue_id=UNSET,
    ) -> Tenant:
        async with session_scope(self._sessions) as session:
            tenant = await ensure_tenant(session, tenant_id, self._settings)
            if name is not UNSET:
                tenant.name = name
            if max_instances is not None:
                tenant.max_instances = max(0, max_instances)
            if max_agents is not None:
                tenant.max_agents = max(0, max_agents)
            if gateway_base_url is not UNSET:
                tenant.gateway_base_url = gateway_base_url or None
            if gateway_token is not UNSET:
                tenant.gateway_token = gateway_token or None
            if default_queue_id is not UNSET:
                if default_queue_id:
                    await get_owned(session, Queue, default_queue_id, tenant_id)
                tenant.default_queue_id = default_queue_id or None
            tenant.updated_at = now_ms()
            return tenant

    # ── Queues ──────────────────────────────────────────────────────────

    async def create_queue(self, tenant_id: str, name: str, color: Optional[str] = None) -> Queue:
        name = name.strip()
        if not name:
            raise InvalidArgument("Queue name cannot be empty")
        async with session_scope(self._sessions) as session:
            await ensure_tenant(session, tenant_id, self._settings)
            existing = await session.execute(
                select(Queue).where(Queue.tenant_id == tenant_id, Queue.name == name)
            )
            if existing.scalar_one_or_none() is not None:
                raise InvalidTransition(f"Queue '{name}' already exists")
            now = now_ms()
            queue = Queue(
                id=Queue.generate_id(),
                tenant_id=tenant_id,
                name=name,
                color=color or "bg-gray-500",
                created_at=now,
                updated_at=now,
            )
            session.add(queue)
        logger.info(f"Queue {queue.id} ('{name}') created for tenant {tenant_id}")
        return queue

    async def list_queues(self, tenant_id: str) -> List[Queue]:
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                select(Queue).where(Queue.tenant_id == tenant_id).order_by(Queue.name)
            )
            return list(result.scalars().all())

    async def update_queue(
        self,
        tenant_id: str,
        queue_id: str,
        *,
        name: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Queue:
        async with session_scope(self._sessions) as session:
            queue = await get_owned(session, Queue, queue_id, tenant_id)
            if name is not None and name.strip():
                queue.name = name.strip()
            if color is not None:
                queue.color = color
            queue.updated_at = now_ms()
            return queue

    async def delete_queue(
        self,
        tenant_id: str,
        queue_id: str,
        *,
        reassign_to: Optional[str] = None,
    ) -> int:
        """Delete a queue, moving its tickets to ``reassign_to`` or orphaning them.

        Returns the number of tickets that were moved.
        """
        if reassign_to == queue_id:
            raise InvalidTransition("Cannot reassign tickets to the queue being deleted")

        async with session_scope(self._sessions) as session:
            queue = await get_owned(session, Queue, queue_id, tenant_id)
            if reassign_to:
                await get_owned(session, Queue, reassign_to, tenant_id)
            target = reassign_to or None
            now = now_ms()

            tickets = await update_tickets_where(
                session,
                [Ticket.tenant_id == tenant_id, Ticket.queue_id == queue_id],
                queue_id=target,
                updated_at=now,
            )
            events = [ChangeEvent.update("tickets", ticket) for ticket in tickets]

            await session.execute(
                update(Instance)
                .where(Instance.default_queue_id == queue_id)
                .values(default_queue_id=target, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(Tenant)
                .where(Tenant.default_queue_id == queue_id)
                .values(default_queue_id=target, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.flush()
            await session.delete(queue)

        await self._feed.publish_all(events)
        logger.info(
            f"Queue {queue_id} deleted; {len(tickets)} tickets "
            f"{'moved to ' + target if target else 'orphaned'}"
        )
        return len(tickets)

    # ── Agents ──────────────────────────────────────────────────────────

    async def add_agent(self, tenant_id: str, identity_ref: str, display_name: str) -> Agent:
        async with session_scope(self._sessions) as session:
            tenant = await ensure_tenant(session, tenant_id, self._settings, lock=True)
            count = await session.scalar(
                select(func.count()).select_from(Agent).where(Agent.tenant_id == tenant_id)
            )
            if count >= tenant.max_agents:
                raise QuotaExceeded(
                    f"Agent limit reached ({count}/{tenant.max_agents}). Upgrade the plan to add more."
                )
            existing = await session.execute(
                select(Agent).where(
                    Agent.tenant_id == tenant_id, Agent.identity_ref == identity_ref
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise InvalidTransition(f"Agent {identity_ref} is already registered")
            now = now_ms()
            agent = Agent(
                id=Agent.generate_id(),
                tenant_id=tenant_id,
                identity_ref=identity_ref,
                display_name=display_name,
                created_at=now,
                updated_at=now,
            )
            session.add(agent)
            await session.flush()
            # A concurrent add may have passed the first check
            count = await session.scalar(
                select(func.count()).select_from(Agent).where(Agent.tenant_id == tenant_id)
            )
            if count > tenant.max_agents:
                raise QuotaExceeded(
                    f"Agent limit reached ({tenant.max_agents}/{tenant.max_agents}). Upgrade the plan to add more."
                )
        logger.info(f"Agent {agent.id} added to tenant {tenant_id}")
        return agent

    async def list_agents(self, tenant_id: str) -> List[Agent]:
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                select(Agent).where(Agent.tenant_id == tenant_id).order_by(Agent.display_name)
            )
            return list(result.scalars().all())

    async def set_presence(self, tenant_id: str, agent_id: str, presence: str) -> Agent:
        if presence not in AGENT_PRESENCES:
            raise InvalidArgument(f"Unknown presence '{presence}'")
        async with session_scope(self._sessions) as session:
            agent = await get_owned(session, Agent, agent_id, tenant_id)
            agent.presence = presence
            agent.updated_at = now_ms()
            return agent

    async def remove_agent(self, tenant_id: str, agent_id: str) -> int:
        """Delete an agent; their open tickets go back to pending. Returns that count."""
        async with session_scope(self._sessions) as session:
            agent = await get_owned(session, Agent, agent_id, tenant_id)
            released = await update_tickets_where(
                session,
                [
                    Ticket.tenant_id == tenant_id,
                    Ticket.owner_agent_id == agent_id,
                    Ticket.status == TICKET_OPEN,
                ],
                status=TICKET_PENDING,
                owner_agent_id=None,
                updated_at=now_ms(),
            )
            await session.delete(agent)

        await self._feed.publish_all(
            ChangeEvent.update("tickets", ticket) for ticket in released
        )
        logger.info(f"Agent {agent_id} removed; {len(released)} tickets returned to queue")
        return len(released)
