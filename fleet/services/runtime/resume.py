"""
Boot-time resume of approved bots.

Every approved bot with credentials on the current tenant is marked loading at
once, then started one at a time, `stagger_seconds` apart, so a restart never
bursts reconnects at the upstream session endpoint. Each bot also gets a grace
deadline; a bot still loading or in error when it fires is unrecoverable and is
deleted, which frees its tenant slot and its global identity.
"""

import os
from functools import partial

import structlog

from fleet.services.lifecycle.state_machine import BotLifecycle
from fleet.services.registry import store
from fleet.services.runtime.scheduler import GRACE, RESUME, TaskScheduler
from fleet.services.runtime.supervisor import ConnectionSupervisor
from fleet.services.shared import broadcast
from fleet.services.shared.broadcast import BroadcastChannel
from fleet.services.shared.context import TenantContext
from fleet.services.shared.database import session_scope
from fleet.services.shared.errors import TransientConnectionError, UnrecoverableResumeError
from fleet.services.shared.models import BotStatus

logger = structlog.get_logger()

RESUME_STAGGER_SECONDS = float(os.getenv("RESUME_STAGGER_SECONDS", "2"))
RESUME_GRACE_SECONDS   = float(os.getenv("RESUME_GRACE_SECONDS", "300"))  # 5 minutes

_STUCK = {BotStatus.loading, BotStatus.error}


class ResumeCoordinator:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        lifecycle: BotLifecycle,
        scheduler: TaskScheduler,
        channel: BroadcastChannel,
        session_factory=None,
        stagger_seconds: float = RESUME_STAGGER_SECONDS,
        grace_seconds: float = RESUME_GRACE_SECONDS,
    ):
        self._supervisor = supervisor
        self._lifecycle = lifecycle
        self._scheduler = scheduler
        self._channel = channel
        self._session_factory = session_factory
        self.stagger_seconds = stagger_seconds
        self.grace_seconds = grace_seconds

    async def resume(self, context: TenantContext) -> list[str]:
        """Mark resumable bots loading and schedule their staggered starts. Returns their ids."""
        with session_scope(self._session_factory) as db:
            bots = store.list_resumable(db, context.name)
            bot_ids = []
            for bot in bots:
                store.update(db, bot, status=BotStatus.loading)
                store.record_activity(
                    db, bot.tenant_name, "startup",
                    f"Bot {bot.display_name} resuming after restart",
                    bot_id=bot.id,
                )
                bot_ids.append(bot.id)

        logger.info("resume_scheduled", tenant=context.name, count=len(bot_ids), stagger=self.stagger_seconds)
        for i, bot_id in enumerate(bot_ids):
            offset = i * self.stagger_seconds
            self._scheduler.schedule(RESUME, bot_id, partial(self._start_one, bot_id), delay=offset)
            self._scheduler.schedule(GRACE, bot_id, partial(self._grace_check, bot_id), delay=offset + self.grace_seconds)
        return bot_ids

    async def _start_one(self, bot_id: str) -> None:
        with session_scope(self._session_factory) as db:
            bot = store.get(db, bot_id)
            if bot is None or not bot.credentials:
                return
            tenant = bot.tenant_name
            if not self._supervisor.has_handle(bot_id):
                self._supervisor.create(bot_id, bot)
        try:
            await self._supervisor.start(bot_id)
        except TransientConnectionError as exc:
            with session_scope(self._session_factory) as db:
                bot = store.get(db, bot_id)
                if bot is not None:
                    store.update(db, bot, status=BotStatus.error)
            self._channel.publish(broadcast.BOT_ERROR, {"botId": bot_id, "tenant": tenant, "error": str(exc)})
            logger.warning("bot_resume_failed", bot_id=bot_id, tenant=tenant, error=str(exc))
            return
        self._channel.publish(broadcast.BOT_RESUMED, {"botId": bot_id, "tenant": tenant})
        logger.info("bot_resumed", bot_id=bot_id, tenant=tenant)

    async def _grace_check(self, bot_id: str) -> None:
        with session_scope(self._session_factory) as db:
            bot = store.get(db, bot_id)
            if bot is None or bot.status not in _STUCK:
                return
            status = bot.status.value

        exc = UnrecoverableResumeError(bot_id, status)
        logger.warning("bot_resume_unrecoverable", bot_id=bot_id, status=status, error=str(exc))
        await self._lifecycle.delete(bot_id, reason="auto_cleanup", actor="resume")
