"""
Connection supervisor: owns one runtime SessionHandle per running bot.

All handles live in a single id-keyed table. Every public operation is idempotent
and a failure in one handle (callback error, send error, dropped session) never
reaches another handle or the caller's control loop.

Handles do not self-heal. An unsolicited close puts the bot in status=error and
it stays there until an explicit restart, or until the next boot resumes it.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

import structlog

from fleet.services.registry import store
from fleet.services.runtime.scheduler import GRACE, TaskScheduler
from fleet.services.runtime.session import SessionCallbacks, SessionClientFactory, SessionHandle
from fleet.services.shared import broadcast
from fleet.services.shared.broadcast import BroadcastChannel
from fleet.services.shared.database import session_scope
from fleet.services.shared.errors import TransientConnectionError
from fleet.services.shared.models import BotInstance, BotStatus

logger = structlog.get_logger()


@dataclass
class _Entry:
    handle:  SessionHandle
    tenant:  str
    closing: bool = False
    # serializes connect so overlapping starts share one upstream session
    lock:    asyncio.Lock = field(default_factory=asyncio.Lock)


class ConnectionSupervisor:
    def __init__(
        self,
        factory: SessionClientFactory,
        channel: BroadcastChannel,
        scheduler: TaskScheduler,
        session_factory=None,
    ):
        self._factory = factory
        self._channel = channel
        self._scheduler = scheduler
        self._session_factory = session_factory
        self._handles: dict[str, _Entry] = {}

    # ── Table access ──────────────────────────────────────────────────────────

    def has_handle(self, bot_id: str) -> bool:
        return bot_id in self._handles

    def is_connected(self, bot_id: str) -> bool:
        entry = self._handles.get(bot_id)
        return bool(entry and entry.handle.connected)

    def handle_ids(self) -> list[str]:
        return list(self._handles)

    def create(self, bot_id: str, record: BotInstance) -> SessionHandle:
        """Bind a new handle to the record's credentials. Returns the existing one if present."""
        entry = self._handles.get(bot_id)
        if entry is not None:
            return entry.handle
        if not record.credentials:
            raise TransientConnectionError(bot_id, "no credentials bound")
        handle = self._factory.create(dict(record.credentials))
        handle.bind(SessionCallbacks(
            on_opened=partial(self._on_opened, bot_id),
            on_closed=partial(self._on_closed, bot_id),
            on_credentials_rotated=partial(self._on_credentials_rotated, bot_id),
        ))
        self._handles[bot_id] = _Entry(handle=handle, tenant=record.tenant_name)
        logger.info("session_handle_created", bot_id=bot_id, tenant=record.tenant_name)
        return handle

    # ── Control ───────────────────────────────────────────────────────────────

    async def start(self, bot_id: str, record: Optional[BotInstance] = None) -> None:
        """Connect the bot's handle, creating it from `record` if needed. Raises TransientConnectionError."""
        entry = self._handles.get(bot_id)
        if entry is None:
            if record is None:
                raise TransientConnectionError(bot_id, "no session handle")
            self.create(bot_id, record)
            entry = self._handles[bot_id]
        async with entry.lock:
            if entry.handle.connected:
                return
            entry.closing = False
            try:
                await entry.handle.connect()
            except TransientConnectionError as exc:
                logger.warning("session_start_failed", bot_id=bot_id, error=str(exc))
                raise TransientConnectionError(bot_id, exc.reason) from exc
            except Exception as exc:
                logger.warning("session_start_failed", bot_id=bot_id, error=str(exc))
                raise TransientConnectionError(bot_id, str(exc)) from exc
        logger.info("session_started", bot_id=bot_id)

    async def stop(self, bot_id: str) -> bool:
        """Disconnect but keep the handle. Cancels scheduled work for the bot."""
        self._scheduler.cancel_for(bot_id)
        entry = self._handles.get(bot_id)
        if entry is None:
            return False
        await self._disconnect(bot_id, entry)
        logger.info("session_stopped", bot_id=bot_id)
        return True

    async def restart(self, bot_id: str, record: Optional[BotInstance] = None) -> None:
        await self.stop(bot_id)
        await self.start(bot_id, record)

    async def destroy(self, bot_id: str) -> bool:
        """Tear down and forget the handle. Safe on absent or already-destroyed ids."""
        self._scheduler.cancel_for(bot_id)
        entry = self._handles.pop(bot_id, None)
        if entry is None:
            return False
        await self._disconnect(bot_id, entry)
        logger.info("session_destroyed", bot_id=bot_id)
        return True

    async def send_through(self, bot_id: str, target: str, payload: str) -> bool:
        """Best-effort send. False means temporarily undeliverable, never an error."""
        entry = self._handles.get(bot_id)
        if entry is None or not entry.handle.connected:
            return False
        try:
            await entry.handle.send(target, payload)
        except Exception as exc:
            logger.warning("session_send_failed", bot_id=bot_id, target=target, error=str(exc))
            return False
        return True

    async def shutdown(self) -> None:
        for bot_id in list(self._handles):
            await self.destroy(bot_id)

    async def _disconnect(self, bot_id: str, entry: _Entry) -> None:
        entry.closing = True
        try:
            await entry.handle.disconnect()
        except Exception as exc:
            logger.warning("session_disconnect_failed", bot_id=bot_id, error=str(exc))

    # ── Handle callbacks ──────────────────────────────────────────────────────

    def _write_status(self, bot_id: str, status: BotStatus) -> Optional[str]:
        with session_scope(self._session_factory) as db:
            bot = store.get(db, bot_id)
            if bot is None:
                return None
            store.update(db, bot, status=status, last_activity=datetime.now(timezone.utc))
            return bot.tenant_name

    async def _on_opened(self, bot_id: str) -> None:
        try:
            self._scheduler.cancel(GRACE, bot_id)
            tenant = self._write_status(bot_id, BotStatus.online)
            if tenant is not None:
                self._channel.publish(broadcast.BOT_STATUS_CHANGED, {
                    "botId": bot_id, "tenant": tenant, "status": BotStatus.online.value,
                })
            logger.info("session_opened", bot_id=bot_id)
        except Exception as exc:
            logger.error("supervisor_callback_error", callback="on_opened", bot_id=bot_id, error=str(exc))

    async def _on_closed(self, bot_id: str, reason: Optional[str]) -> None:
        entry = self._handles.get(bot_id)
        if entry is None or entry.closing:
            return
        try:
            tenant = self._write_status(bot_id, BotStatus.error)
            if tenant is not None:
                self._channel.publish(broadcast.BOT_ERROR, {
                    "botId": bot_id, "tenant": tenant, "status": BotStatus.error.value, "reason": reason,
                })
            logger.warning("session_closed_unexpectedly", bot_id=bot_id, reason=reason)
        except Exception as exc:
            logger.error("supervisor_callback_error", callback="on_closed", bot_id=bot_id, error=str(exc))

    async def _on_credentials_rotated(self, bot_id: str, credentials: dict[str, Any]) -> None:
        try:
            with session_scope(self._session_factory) as db:
                bot = store.get(db, bot_id)
                if bot is None:
                    return
                store.update(db, bot, credentials=credentials)
            logger.info("session_credentials_rotated", bot_id=bot_id)
        except Exception as exc:
            logger.error("supervisor_callback_error", callback="on_credentials_rotated", bot_id=bot_id, error=str(exc))
