"""Instance connection manager: pairing life cycle of channel instances.

State machine (strict forward progression):

    uninitialized -> generating_code -> awaiting_scan -> connected
    any state     -> failed            (gateway error, timeout, cancel)
    failed/connected -> uninitialized  (disconnect)

Every status change is a single conditional UPDATE (``WHERE status IN
(...)``), so concurrent pairing attempts on one instance resolve to one
winner; the others get PairingInProgress.

After a pairing starts, a background watcher polls the gateway's ``/qr``
endpoint: the first QR moves the instance to awaiting_scan, rotated QR
strings replace the stored code, ``connected = true`` (or an explicit
confirm_scan call) completes the pairing, and the deadline moves it to
failed, which releases the quota slot.
"""

import asyncio
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatdesk.config import EngineSettings
from chatdesk.database import session_scope
from chatdesk.errors import (
    GatewayUnreachable,
    InvalidTransition,
    PairingInProgress,
    QuotaExceeded,
)
from chatdesk.logging_config import get_logger
from chatdesk.models import (
    INSTANCE_AWAITING_SCAN,
    INSTANCE_CONNECTED,
    INSTANCE_FAILED,
    INSTANCE_GENERATING_CODE,
    INSTANCE_UNINITIALIZED,
    PAIRING_STATUSES,
    QUOTA_HOLDING_STATUSES,
    Instance,
    Queue,
    Tenant,
    now_ms,
)
from chatdesk.services.directory import ensure_tenant, get_owned
from chatdesk.services.feed import ChangeEvent, ChangeFeed
from chatdesk.services.gateway import ChannelGateway, GatewayFactory

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    INSTANCE_UNINITIALIZED: frozenset({INSTANCE_GENERATING_CODE, INSTANCE_FAILED}),
    INSTANCE_GENERATING_CODE: frozenset({INSTANCE_AWAITING_SCAN, INSTANCE_FAILED}),
    INSTANCE_AWAITING_SCAN: frozenset({INSTANCE_CONNECTED, INSTANCE_FAILED}),
    INSTANCE_CONNECTED: frozenset({INSTANCE_UNINITIALIZED, INSTANCE_FAILED}),
    INSTANCE_FAILED: frozenset({INSTANCE_UNINITIALIZED}),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class InstanceConnectionManager:
    """Owns instance pairing. One per process; watchers outlive requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        feed: ChangeFeed,
        gateway_factory: GatewayFactory,
    ):
        self._sessions = session_factory
        self._settings = settings
        self._feed = feed
        self._gateway_factory = gateway_factory
        self._watchers: Dict[str, asyncio.Task] = {}

    # ── Queries ─────────────────────────────────────────────────────────

    async def list_instances(self, tenant_id: str) -> List[Instance]:
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                select(Instance)
                .where(Instance.tenant_id == tenant_id)
                .order_by(Instance.created_at, Instance.id)
            )
            return list(result.scalars().all())

    async def get_instance(self, tenant_id: str, instance_id: str) -> Instance:
        async with session_scope(self._sessions) as session:
            return await get_owned(session, Instance, instance_id, tenant_id)

    def pairing_task(self, instance_id: str) -> Optional[asyncio.Task]:
        """The running pairing watcher for an instance, if any."""
        return self._watchers.get(instance_id)

    # ── Commands ────────────────────────────────────────────────────────

    async def initiate_pairing(
        self,
        tenant_id: str,
        name: str,
        *,
        provider_kind: str = "baileys",
        default_queue_id: Optional[str] = None,
    ) -> str:
        """Create an instance and start pairing it. Returns the instance id."""
        events: list[ChangeEvent] = []
        async with session_scope(self._sessions) as session:
            tenant = await ensure_tenant(session, tenant_id, self._settings, lock=True)
            await self._check_quota(session, tenant)
            if default_queue_id:
                await get_owned(session, Queue, default_queue_id, tenant_id)

            now = now_ms()
            instance = Instance(
                id=Instance.generate_id(),
                tenant_id=tenant_id,
                display_name=name.strip() or "WhatsApp",
                status=INSTANCE_UNINITIALIZED,
                provider_kind=provider_kind,
                default_queue_id=default_queue_id,
                created_at=now,
                updated_at=now,
            )
            session.add(instance)
            await session.flush()
            events.append(ChangeEvent.insert("instances", instance))

            started = await self._transition(
                session,
                instance.id,
                [INSTANCE_UNINITIALIZED],
                INSTANCE_GENERATING_CODE,
                pairing_started_at=now,
                last_error=None,
            )
            events.append(ChangeEvent.update("instances", started))
            # Concurrent initiations may both have passed the first check
            await self._check_quota(session, tenant, already_counted=True)

        await self._feed.publish_all(events)
        logger.info(f"Pairing initiated for instance {instance.id} ('{instance.display_name}')")
        self._spawn_watcher(instance.id)
        return instance.id

    async def start_pairing(self, tenant_id: str, instance_id: str) -> Instance:
        """Re-pair an existing instance that is uninitialized or failed."""
        if instance_id in self._watchers:
            raise PairingInProgress(f"Instance {instance_id} is already pairing")

        events: list[ChangeEvent] = []
        async with session_scope(self._sessions) as session:
            tenant = await ensure_tenant(session, tenant_id, self._settings, lock=True)
            instance = await get_owned(session, Instance, instance_id, tenant_id)
            if instance.status in PAIRING_STATUSES:
                raise PairingInProgress(f"Instance {instance_id} is already pairing")
            if instance.status == INSTANCE_CONNECTED:
                raise InvalidTransition(
                    f"Instance {instance_id} is connected; disconnect before pairing again"
                )
            await self._check_quota(session, tenant)

            if instance.status == INSTANCE_FAILED:
                reset = await self._transition(
                    session, instance_id, [INSTANCE_FAILED], INSTANCE_UNINITIALIZED
                )
                if reset is None:
                    raise PairingInProgress(f"Instance {instance_id} changed state concurrently")
                events.append(ChangeEvent.update("instances", reset))

            started = await self._transition(
                session,
                instance_id,
                [INSTANCE_UNINITIALIZED],
                INSTANCE_GENERATING_CODE,
                pairing_started_at=now_ms(),
                last_error=None,
            )
            if started is None:
                raise PairingInProgress(f"Instance {instance_id} is already pairing")
            events.append(ChangeEvent.update("instances", started))
            await self._check_quota(session, tenant, already_counted=True)

        await self._feed.publish_all(events)
        logger.info(f"Pairing restarted for instance {instance_id}")
        self._spawn_watcher(instance_id)
        return started

    async def confirm_scan(
        self, tenant_id: str, instance_id: str, phone: Optional[str]
    ) -> Instance:
        """Gateway confirmation that the code was scanned."""
        async with session_scope(self._sessions) as session:
            instance = await get_owned(session, Instance, instance_id, tenant_id)
            if instance.status == INSTANCE_CONNECTED:
                return instance

        connected = await self._complete_pairing(instance_id, phone)
        if connected is None:
            raise InvalidTransition(
                f"Instance {instance_id} is {instance.status}, not awaiting a scan"
            )
        self._stop_watcher(instance_id)
        return connected

    async def mark_gateway_failure(
        self, tenant_id: str, instance_id: str, reason: str
    ) -> Instance:
        """Gateway reported a fatal error (logged out, crashed session...)."""
        async with session_scope(self._sessions) as session:
            await get_owned(session, Instance, instance_id, tenant_id)
        self._stop_watcher(instance_id)
        failed = await self._fail(instance_id, reason)
        if failed is not None:
            return failed
        return await self.get_instance(tenant_id, instance_id)

    async def disconnect(self, tenant_id: str, instance_id: str) -> Instance:
        """Tear down the instance's session. Idempotent."""
        async with session_scope(self._sessions) as session:
            instance = await get_owned(session, Instance, instance_id, tenant_id)
            previous = instance.status
        if previous == INSTANCE_UNINITIALIZED:
            return instance

        await self._stop_watcher_and_wait(instance_id)
        if previous in PAIRING_STATUSES:
            await self._fail(instance_id, "Pairing cancelled by disconnect")

        events: list[ChangeEvent] = []
        async with session_scope(self._sessions) as session:
            reset = await self._transition(
                session,
                instance_id,
                [INSTANCE_CONNECTED, INSTANCE_FAILED],
                INSTANCE_UNINITIALIZED,
                phone_identifier=None,
                pairing_code=None,
                pairing_started_at=None,
            )
            if reset is None:
                current = await session.get(Instance, instance_id, populate_existing=True)
                if current.status == INSTANCE_UNINITIALIZED:
                    return current
                raise InvalidTransition(
                    f"Instance {instance_id} is {current.status}; retry disconnect"
                )
            events.append(ChangeEvent.update("instances", reset))
            tenant = await session.get(Tenant, tenant_id)

        await self._feed.publish_all(events)
        await self._logout(tenant, reset)
        logger.info(f"Instance {instance_id} disconnected (was {previous})")
        return reset

    async def shutdown(self) -> None:
        """Cancel every running pairing watcher."""
        tasks = list(self._watchers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchers.clear()

    # ── Internals ───────────────────────────────────────────────────────

    async def _check_quota(
        self, session: AsyncSession, tenant: Tenant, *, already_counted: bool = False
    ) -> None:
        count = await session.scalar(
            select(func.count())
            .select_from(Instance)
            .where(
                Instance.tenant_id == tenant.id,
                Instance.status.in_(QUOTA_HOLDING_STATUSES),
            )
        )
        over = count > tenant.max_instances if already_counted else count >= tenant.max_instances
        if over:
            used = count - 1 if already_counted else count
            raise QuotaExceeded(
                f"Instance limit reached ({used}/{tenant.max_instances}). "
                "Upgrade the plan to connect more numbers."
            )

    async def _transition(
        self,
        session: AsyncSession,
        instance_id: str,
        from_states: Iterable[str],
        to_state: str,
        **values,
    ) -> Optional[Instance]:
        """Conditional status update. Returns the fresh row, or None if no row matched."""
        from_states = list(from_states)
        for state in from_states:
            if not can_transition(state, to_state):
                raise InvalidTransition(f"Instance cannot move from {state} to {to_state}")

        result = await session.execute(
            update(Instance)
            .where(Instance.id == instance_id, Instance.status.in_(from_states))
            .values(status=to_state, updated_at=now_ms(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        instance = await session.get(Instance, instance_id, populate_existing=True)
        logger.info(f"Instance {instance_id} -> {to_state}")
        return instance

    async def _fail(self, instance_id: str, reason: str) -> Optional[Instance]:
        async with session_scope(self._sessions) as session:
            failed = await self._transition(
                session,
                instance_id,
                [
                    INSTANCE_UNINITIALIZED,
                    INSTANCE_GENERATING_CODE,
                    INSTANCE_AWAITING_SCAN,
                    INSTANCE_CONNECTED,
                ],
                INSTANCE_FAILED,
                last_error=reason,
                pairing_code=None,
            )
        if failed is not None:
            logger.warning(f"Instance {instance_id} failed: {reason}")
            await self._feed.publish(ChangeEvent.update("instances", failed))
        return failed

    async def _store_code(self, instance_id: str, code: str) -> bool:
        """Expose a (possibly rotated) QR code. False once the instance stopped pairing."""
        async with session_scope(self._sessions) as session:
            instance = await session.get(Instance, instance_id, populate_existing=True)
            if instance is None or instance.status not in PAIRING_STATUSES:
                return False
            if instance.status == INSTANCE_GENERATING_CODE:
                updated = await self._transition(
                    session,
                    instance_id,
                    [INSTANCE_GENERATING_CODE],
                    INSTANCE_AWAITING_SCAN,
                    pairing_code=code,
                )
            elif instance.pairing_code != code:
                result = await session.execute(
                    update(Instance)
                    .where(
                        Instance.id == instance_id,
                        Instance.status == INSTANCE_AWAITING_SCAN,
                    )
                    .values(pairing_code=code, updated_at=now_ms())
                    .execution_options(synchronize_session=False)
                )
                updated = None
                if result.rowcount:
                    updated = await session.get(Instance, instance_id, populate_existing=True)
            else:
                return True
        if updated is None:
            return False
        await self._feed.publish(ChangeEvent.update("instances", updated))
        return True

    async def _complete_pairing(
        self, instance_id: str, phone: Optional[str]
    ) -> Optional[Instance]:
        """Walk generating_code/awaiting_scan forward to connected (no skipping)."""
        events: list[ChangeEvent] = []
        async with session_scope(self._sessions) as session:
            waiting = await self._transition(
                session, instance_id, [INSTANCE_GENERATING_CODE], INSTANCE_AWAITING_SCAN
            )
            if waiting is not None:
                events.append(ChangeEvent.update("instances", waiting))
            connected = await self._transition(
                session,
                instance_id,
                [INSTANCE_AWAITING_SCAN],
                INSTANCE_CONNECTED,
                phone_identifier=phone,
                pairing_code=None,
                last_error=None,
            )
            if connected is None:
                return None
            events.append(ChangeEvent.update("instances", connected))

        if not phone:
            logger.warning(f"Instance {instance_id} connected without a phone identifier")
        await self._feed.publish_all(events)
        return connected

    def _spawn_watcher(self, instance_id: str) -> None:
        task = asyncio.create_task(
            self._watch_pairing(instance_id), name=f"pairing:{instance_id}"
        )
        self._watchers[instance_id] = task

    def _stop_watcher(self, instance_id: str) -> None:
        task = self._watchers.pop(instance_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _stop_watcher_and_wait(self, instance_id: str) -> None:
        task = self._watchers.pop(instance_id, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _gateway_for(self, instance_id: str) -> ChannelGateway:
        async with session_scope(self._sessions) as session:
            instance = await session.get(Instance, instance_id)
            tenant = await session.get(Tenant, instance.tenant_id)
        return self._gateway_factory(tenant, instance)

    async def _watch_pairing(self, instance_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.pairing_timeout_seconds
        interval = self._settings.pairing_poll_interval_seconds
        gateway: Optional[ChannelGateway] = None
        try:
            gateway = await self._gateway_for(instance_id)
            while True:
                status = await gateway.fetch_qr()
                if status.connected:
                    await self._complete_pairing(instance_id, status.phone)
                    return
                if status.qr:
                    if not await self._store_code(instance_id, status.qr):
                        return
                elif not await self._still_pairing(instance_id):
                    return

                remaining = deadline - loop.time()
                if remaining <= 0:
                    await self._fail(instance_id, "Pairing timed out waiting for the code to be scanned")
                    return
                await asyncio.sleep(min(interval, remaining))
        except GatewayUnreachable as e:
            await self._fail(instance_id, str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Pairing watcher for {instance_id} crashed: {e}", exc_info=True)
            await self._fail(instance_id, f"Internal pairing error: {e}")
        finally:
            if gateway is not None:
                await gateway.aclose()
            if self._watchers.get(instance_id) is asyncio.current_task():
                del self._watchers[instance_id]

    async def _still_pairing(self, instance_id: str) -> bool:
        async with session_scope(self._sessions) as session:
            instance = await session.get(Instance, instance_id, populate_existing=True)
            return instance is not None and instance.status in PAIRING_STATUSES

    async def _logout(self, tenant: Optional[Tenant], instance: Instance) -> None:
        if tenant is None:
            return
        try:
            gateway = self._gateway_factory(tenant, instance)
        except GatewayUnreachable as e:
            logger.warning(f"Skipping gateway logout for {instance.id}: {e}")
            return
        try:
            await gateway.logout()
        except GatewayUnreachable as e:
            logger.warning(f"Gateway logout failed for {instance.id}: {e}")
        finally:
            await gateway.aclose()
