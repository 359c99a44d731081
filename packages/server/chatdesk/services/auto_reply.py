"""Auto-reply policy engine.

After an inbound message is committed the tenant's AutoReplySettings
decide whether an AI-generated answer is sent. The text generator is an
injected capability; failures and timeouts are logged and produce no
outbound message, leaving the ticket for a human.
"""

import asyncio
from typing import List, Optional, Protocol, Set

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatdesk.config import EngineSettings
from chatdesk.database import session_scope
from chatdesk.errors import AiUnavailable, InvalidArgument, InvalidTransition
from chatdesk.logging_config import get_logger
from chatdesk.models import (
    DIRECTION_INBOUND,
    MESSAGE_FAILED,
    AutoReplySettings,
    Message,
    now_ms,
)
from chatdesk.services.directory import ensure_tenant
from chatdesk.services.tickets import RoutedMessage, TicketRouter

logger = get_logger(__name__)

DEFAULT_TEMPERATURE = 0.7


class TextGenerator(Protocol):
    async def generate(
        self, system_prompt: str, temperature: float, history: List[dict]
    ) -> str: ...


def history_for(messages: List[Message]) -> List[dict]:
    """Chat-completion style history: inbound -> user, outbound -> assistant."""
    history = []
    for message in messages:
        if message.status == MESSAGE_FAILED:
            continue
        role = "user" if message.direction == DIRECTION_INBOUND else "assistant"
        history.append({"role": role, "content": message.body})
    return history


class DisabledGenerator:
    """Used when no AI endpoint is configured."""

    async def generate(self, system_prompt, temperature, history) -> str:
        raise AiUnavailable("No AI endpoint configured (set AI_BASE_URL)")


class OpenAICompatibleGenerator:
    """POST {base_url}/chat/completions against any OpenAI-compatible API."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, headers=headers, transport=transport
        )

    async def generate(self, system_prompt: str, temperature: float, history: List[dict]) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(history)
        payload = {"model": self.model, "temperature": temperature, "messages": messages}

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise AiUnavailable(
                f"AI endpoint returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise AiUnavailable(f"AI endpoint unreachable: {e}") from e
        except ValueError as e:
            raise AiUnavailable("AI endpoint returned invalid JSON") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AiUnavailable("AI response has no choices[0].message.content") from e
        if not isinstance(content, str):
            raise AiUnavailable("AI response content is not text")
        return content.strip()

    async def aclose(self) -> None:
        await self._client.aclose()


class AutoReplyEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: EngineSettings,
        router: TicketRouter,
        generator: TextGenerator,
    ):
        self._sessions = session_factory
        self._settings = settings
        self._router = router
        self._generator = generator

    async def get_settings(self, tenant_id: str) -> AutoReplySettings:
        """Stored settings, or the (unsaved) defaults when none were written yet."""
        async with session_scope(self._sessions) as session:
            row = await session.get(AutoReplySettings, tenant_id)
            if row is not None:
                return row
        now = now_ms()
        return AutoReplySettings(
            tenant_id=tenant_id,
            enabled=False,
            temperature=DEFAULT_TEMPERATURE,
            system_prompt="",
            created_at=now,
            updated_at=now,
        )

    async def update_settings(
        self,
        tenant_id: str,
        *,
        enabled: Optional[bool] = None,
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> AutoReplySettings:
        """Create the row on first write, update it afterwards."""
        if temperature is not None and not 0.0 <= temperature <= 1.0:
            raise InvalidArgument("Temperature must be between 0 and 1")

        async with session_scope(self._sessions) as session:
            await ensure_tenant(session, tenant_id, self._settings)
            row = await session.get(AutoReplySettings, tenant_id)
            now = now_ms()
            if row is None:
                row = AutoReplySettings(
                    tenant_id=tenant_id,
                    enabled=False,
                    temperature=DEFAULT_TEMPERATURE,
                    system_prompt="",
                    created_at=now,
                )
                session.add(row)
            if enabled is not None:
                row.enabled = enabled
            if temperature is not None:
                row.temperature = temperature
            if system_prompt is not None:
                row.system_prompt = system_prompt
            row.updated_at = now

        logger.info(
            f"Auto-reply for tenant {tenant_id}: enabled={row.enabled}, temperature={row.temperature}"
        )
        return row

    async def handle_inbound(self, tenant_id: str, ticket_id: str) -> Optional[Message]:
        """Maybe answer the latest inbound message. Never raises for AI problems."""
        config = await self.get_settings(tenant_id)
        if not config.enabled:
            return None

        history = history_for(
            await self._router.list_messages(
                tenant_id, ticket_id, limit=self._settings.auto_reply_history_limit
            )
        )
        if not history:
            return None

        timeout = self._settings.auto_reply_timeout_seconds
        try:
            text = await asyncio.wait_for(
                self._generator.generate(config.system_prompt, config.temperature, history),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Auto-reply for ticket {ticket_id} timed out after {timeout}s")
            return None
        except AiUnavailable as e:
            logger.warning(f"Auto-reply for ticket {ticket_id} skipped: {e.message}")
            return None
        except Exception as e:
            logger.error(f"Auto-reply generator failed for ticket {ticket_id}: {e}", exc_info=True)
            return None

        if not text:
            logger.warning(f"Auto-reply for ticket {ticket_id} produced no text")
            return None

        try:
            message = await self._router.send_outbound(
                tenant_id, ticket_id, text, is_ai_generated=True
            )
        except InvalidTransition as e:
            # Ticket closed while the answer was generated
            logger.info(f"Dropping auto-reply for ticket {ticket_id}: {e.message}")
            return None

        logger.info(f"Auto-reply {message.id} sent on ticket {ticket_id}")
        return message


class InboundPipeline:
    """route_inbound, then auto-reply in the background.

    The webhook caller gets its answer as soon as the inbound message is
    committed; the AI call runs on a tracked task.
    """

    def __init__(self, router: TicketRouter, auto_reply: AutoReplyEngine):
        self._router = router
        self._auto_reply = auto_reply
        self._tasks: Set[asyncio.Task] = set()

    async def handle(
        self,
        instance_id: str,
        address: str,
        body: str,
        *,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> RoutedMessage:
        routed = await self._router.route_inbound(
            instance_id,
            address,
            body,
            display_name=display_name,
            avatar_url=avatar_url,
            external_id=external_id,
        )
        if routed.duplicate:
            return routed

        task = asyncio.create_task(
            self._auto_reply.handle_inbound(routed.ticket.tenant_id, routed.ticket.id),
            name=f"auto-reply:{routed.ticket.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return routed

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Auto-reply task crashed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for in-flight auto-replies (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
