"""
Bot instance lifecycle.

Transitions (trigger → precondition → effect):
  validate   credentials embed the declared identity   → pending_validation → dormant
  approve    approval pending, status dormant|offline|error → approved, loading, supervisor start
  reject     not already rejected                       → instance deleted, identity released
  revoke     approved                                   → pending, offline, handle destroyed
  expire     approved and past approval_date + months   → pending, offline (instance kept)
  start/stop/restart  approved and not expired          → loading / offline
  delete     any                                        → handle destroyed, identity released, row removed

A supervisor failure during approve/start/restart leaves status=error; it is
never swallowed and never retried here.
"""

import calendar
import os
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

import structlog

from fleet.services.lifecycle import credentials as creds
from fleet.services.registry import identity as identity_registry
from fleet.services.registry import store
from fleet.services.runtime.supervisor import ConnectionSupervisor
from fleet.services.shared import broadcast
from fleet.services.shared.broadcast import BroadcastChannel
from fleet.services.shared.database import session_scope
from fleet.services.shared.errors import InvalidTransitionError, TransientConnectionError
from fleet.services.shared.models import ApprovalStatus, BotInstance, BotStatus
from fleet.services.shared.schemas import BotOut

logger = structlog.get_logger()

DEFAULT_EXPIRATION_MONTHS = int(os.getenv("DEFAULT_EXPIRATION_MONTHS", "3"))

INITIAL_STATUS = BotStatus.dormant

_APPROVABLE = {BotStatus.dormant, BotStatus.offline, BotStatus.error}


# ── Expiry arithmetic ─────────────────────────────────────────────────────────

def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month addition, clamping the day to the target month's length."""
    index = dt.month - 1 + months
    year = dt.year + index // 12
    month = index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def expires_at(bot: BotInstance) -> Optional[datetime]:
    if bot.approval_date is None or bot.expiration_months is None:
        return None
    return add_months(_as_utc(bot.approval_date), bot.expiration_months)


def is_expired(bot: BotInstance, now: Optional[datetime] = None) -> bool:
    deadline = expires_at(bot)
    if deadline is None:
        return False
    return (now or datetime.now(timezone.utc)) > deadline


def days_remaining(bot: BotInstance, now: Optional[datetime] = None) -> Optional[int]:
    deadline = expires_at(bot)
    if deadline is None:
        return None
    delta = deadline - (now or datetime.now(timezone.utc))
    return max(delta.days, 0)


# ── State machine ─────────────────────────────────────────────────────────────

class BotLifecycle:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        channel: BroadcastChannel,
        session_factory=None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._supervisor = supervisor
        self._channel = channel
        self._session_factory = session_factory
        self._clock = clock

    def _scope(self):
        return session_scope(self._session_factory)

    @staticmethod
    def validate(blob: Union[str, dict[str, Any], None], declared_identity: Optional[str]) -> tuple[dict[str, Any], str]:
        """pending_validation → dormant gate. Raises ValidationError; persists nothing."""
        return creds.validate(blob, declared_identity)

    def _require_runnable(self, bot: BotInstance, action: str) -> None:
        if bot.approval_status != ApprovalStatus.approved:
            raise InvalidTransitionError(f"cannot {action} bot {bot.id}: not approved")
        if is_expired(bot, self._clock()):
            raise InvalidTransitionError(f"cannot {action} bot {bot.id}: approval expired")

    def _mark_error(self, bot_id: str, reason: str) -> None:
        with self._scope() as db:
            bot = store.get(db, bot_id)
            if bot is None:
                return
            store.update(db, bot, status=BotStatus.error)
            tenant = bot.tenant_name
        self._channel.publish(broadcast.BOT_ERROR, {"botId": bot_id, "tenant": tenant, "reason": reason})

    async def _launch(self, bot_id: str, restart: bool = False) -> bool:
        with self._scope() as db:
            record = store.require(db, bot_id)
            if not self._supervisor.has_handle(bot_id):
                self._supervisor.create(bot_id, record)
        try:
            if restart:
                await self._supervisor.restart(bot_id)
            else:
                await self._supervisor.start(bot_id)
        except TransientConnectionError as exc:
            self._mark_error(bot_id, str(exc))
            return False
        return True

    # ── Approval ──────────────────────────────────────────────────────────────

    async def approve(self, bot_id: str, months: Optional[int] = None, actor: str = "admin") -> BotOut:
        months = months or DEFAULT_EXPIRATION_MONTHS
        now = self._clock()
        with self._scope() as db:
            bot = store.require(db, bot_id)
            if bot.approval_status != ApprovalStatus.pending or bot.status not in _APPROVABLE:
                raise InvalidTransitionError(
                    f"bot {bot_id} cannot be approved from {bot.approval_status.value}/{bot.status.value}"
                )
            store.update(
                db, bot,
                approval_status=ApprovalStatus.approved,
                approval_date=now,
                expiration_months=months,
                status=BotStatus.loading,
            )
            store.record_activity(
                db, bot.tenant_name, "approval",
                f"Bot {bot.display_name} approved for {months} months",
                bot_id=bot_id, detail={"actor": actor, "expiration_months": months},
            )
            tenant = bot.tenant_name
        self._channel.publish(broadcast.BOT_APPROVED, {"botId": bot_id, "tenant": tenant, "expirationMonths": months})
        logger.info("bot_approved", bot_id=bot_id, tenant=tenant, months=months)

        await self._launch(bot_id)
        return self.snapshot(bot_id)

    async def revoke(self, bot_id: str, actor: str = "admin") -> BotOut:
        with self._scope() as db:
            bot = store.require(db, bot_id)
            if bot.approval_status != ApprovalStatus.approved:
                raise InvalidTransitionError(f"bot {bot_id} is not approved")
        await self._supervisor.destroy(bot_id)
        with self._scope() as db:
            bot = store.require(db, bot_id)
            store.update(
                db, bot,
                approval_status=ApprovalStatus.pending,
                status=BotStatus.offline,
                approval_date=None,
                expiration_months=None,
            )
            store.record_activity(
                db, bot.tenant_name, "revoke_approval",
                f"Approval revoked for bot {bot.display_name}",
                bot_id=bot_id, detail={"actor": actor},
            )
            out = BotOut.model_validate(bot)
        self._channel.publish(broadcast.BOT_APPROVAL_REVOKED, {"botId": bot_id, "tenant": out.tenant_name})
        logger.info("bot_approval_revoked", bot_id=bot_id, tenant=out.tenant_name)
        return out

    async def reject(self, bot_id: str, actor: str = "admin") -> dict[str, Any]:
        with self._scope() as db:
            bot = store.require(db, bot_id)
            if bot.status == BotStatus.rejected or bot.approval_status == ApprovalStatus.rejected:
                raise InvalidTransitionError(f"bot {bot_id} is already rejected")
        return await self.delete(bot_id, reason="rejection", actor=actor)

    # ── Expiry sweep ──────────────────────────────────────────────────────────

    async def expire_sweep(self, now: Optional[datetime] = None) -> list[str]:
        """
        Revert every approved instance whose approval has lapsed.
        Candidates are re-read and re-checked one by one at write time, so an
        approve() that lands between the scan and the write is left alone.
        """
        now = now or self._clock()
        with self._scope() as db:
            candidates = [b.id for b in store.list_approved(db) if is_expired(b, now)]

        expired = []
        for bot_id in candidates:
            try:
                if await self._expire_one(bot_id, now):
                    expired.append(bot_id)
            except Exception as exc:
                logger.error("bot_expire_error", bot_id=bot_id, error=str(exc))
        if expired:
            logger.info("expiry_sweep_complete", expired=len(expired))
        return expired

    async def _expire_one(self, bot_id: str, now: datetime) -> bool:
        with self._scope() as db:
            bot = store.get(db, bot_id)
            if bot is None or bot.approval_status != ApprovalStatus.approved or not is_expired(bot, now):
                return False
            months = bot.expiration_months
            store.update(
                db, bot,
                approval_status=ApprovalStatus.pending,
                status=BotStatus.offline,
                approval_date=None,
                expiration_months=None,
            )
            store.record_activity(
                db, bot.tenant_name, "expiration",
                f"Approval for bot {bot.display_name} expired after {months} months",
                bot_id=bot_id, detail={"expiration_months": months},
            )
            tenant = bot.tenant_name
        await self._supervisor.destroy(bot_id)
        self._channel.publish(broadcast.BOT_EXPIRED, {"botId": bot_id, "tenant": tenant})
        logger.info("bot_expired", bot_id=bot_id, tenant=tenant)
        return True

    # ── Runtime control ───────────────────────────────────────────────────────

    async def start(self, bot_id: str) -> BotOut:
        with self._scope() as db:
            bot = store.require(db, bot_id)
            self._require_runnable(bot, "start")
            if self._supervisor.is_connected(bot_id):
                # already live: no open callback will follow, so report it as is
                if bot.status != BotStatus.online:
                    store.update(db, bot, status=BotStatus.online)
                return BotOut.model_validate(bot)
            store.update(db, bot, status=BotStatus.loading)
        if not await self._launch(bot_id):
            raise TransientConnectionError(bot_id, "session failed to start")
        return self.snapshot(bot_id)

    async def stop(self, bot_id: str) -> BotOut:
        with self._scope() as db:
            self._require_runnable(store.require(db, bot_id), "stop")
        await self._supervisor.stop(bot_id)
        with self._scope() as db:
            bot = store.require(db, bot_id)
            store.update(db, bot, status=BotStatus.offline)
            store.record_activity(
                db, bot.tenant_name, "status_change",
                f"Bot {bot.display_name} stopped",
                bot_id=bot_id, detail={"status": BotStatus.offline.value},
            )
            out = BotOut.model_validate(bot)
        self._channel.publish(broadcast.BOT_STATUS_CHANGED, {
            "botId": bot_id, "tenant": out.tenant_name, "status": BotStatus.offline.value,
        })
        return out

    async def restart(self, bot_id: str) -> BotOut:
        with self._scope() as db:
            bot = store.require(db, bot_id)
            self._require_runnable(bot, "restart")
            store.update(db, bot, status=BotStatus.loading)
        if not await self._launch(bot_id, restart=True):
            raise TransientConnectionError(bot_id, "session failed to restart")
        return self.snapshot(bot_id)

    # ── Deletion ──────────────────────────────────────────────────────────────

    async def delete(self, bot_id: str, reason: str = "deletion", actor: str = "admin") -> dict[str, Any]:
        """
        Terminal from any state: destroy the handle, release the identity, remove
        the row and its scoped activities, recount the tenant. The audit row is
        written at tenant scope so it outlives the instance.
        """
        with self._scope() as db:
            store.require(db, bot_id)
        await self._supervisor.destroy(bot_id)

        with self._scope() as db:
            bot = store.require(db, bot_id)
            tenant, identity, name = bot.tenant_name, bot.identity, bot.display_name
            identity_registry.release(db, identity)
            store.delete(db, bot)
            store.record_activity(
                db, tenant, reason,
                f"Bot {name} removed ({reason})",
                detail={"bot_id": bot_id, "identity": identity, "actor": actor},
            )
        self._channel.publish(broadcast.BOT_DELETED, {
            "botId": bot_id, "tenant": tenant, "identity": identity, "reason": reason,
        })
        logger.info("bot_deleted", bot_id=bot_id, tenant=tenant, identity=identity, reason=reason)
        return {"id": bot_id, "tenant": tenant, "identity": identity, "reason": reason}

    def snapshot(self, bot_id: str) -> BotOut:
        with self._scope() as db:
            return BotOut.model_validate(store.require(db, bot_id))
