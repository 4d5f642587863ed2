"""
FleetService: the operations the HTTP layer calls.

Wires the registries, lifecycle, supervisor and resume coordinator together
around one explicit TenantContext. Registration is serialized in-process by a
placement lock and across processes by the unique constraint on identity: the
first committed writer owns the identity, every later writer gets ConflictError
naming that owner.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog

from fleet.services.lifecycle import credentials as creds
from fleet.services.lifecycle.state_machine import (
    INITIAL_STATUS, BotLifecycle, days_remaining, is_expired,
)
from fleet.services.registry import capacity, store, tenants
from fleet.services.registry import identity as identity_registry
from fleet.services.runtime.resume import ResumeCoordinator
from fleet.services.runtime.scheduler import TaskScheduler
from fleet.services.runtime.supervisor import ConnectionSupervisor
from fleet.services.shared import broadcast
from fleet.services.shared.broadcast import BroadcastChannel
from fleet.services.shared.context import TenantContext
from fleet.services.shared.database import session_scope
from fleet.services.shared.errors import ConflictError, InvalidTransitionError, NotFoundError
from fleet.services.shared.models import ApprovalStatus, BotStatus, TenantStatus
from fleet.services.shared.schemas import (
    BotOut, CapacityOut, IdentityCheckOut, IdentityEntryOut, RegistrationOut, TenantOut,
)

logger = structlog.get_logger()

EXISTING = "existing_bot_found"


@dataclass
class FleetComponents:
    channel:    BroadcastChannel
    scheduler:  TaskScheduler
    supervisor: ConnectionSupervisor
    lifecycle:  BotLifecycle
    resume:     ResumeCoordinator


def build_components(factory, session_factory=None, channel: Optional[BroadcastChannel] = None, **resume_kwargs) -> FleetComponents:
    channel = channel or BroadcastChannel()
    scheduler = TaskScheduler()
    supervisor = ConnectionSupervisor(factory, channel, scheduler, session_factory=session_factory)
    lifecycle = BotLifecycle(supervisor, channel, session_factory=session_factory)
    resume = ResumeCoordinator(
        supervisor, lifecycle, scheduler, channel, session_factory=session_factory, **resume_kwargs,
    )
    return FleetComponents(channel, scheduler, supervisor, lifecycle, resume)


class FleetService:
    def __init__(self, context: TenantContext, components: FleetComponents, session_factory=None):
        self._context = context
        self._c = components
        self._session_factory = session_factory
        self._placement_lock = asyncio.Lock()

    @property
    def context(self) -> TenantContext:
        return self._context

    @property
    def channel(self) -> BroadcastChannel:
        return self._c.channel

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._c.supervisor

    @property
    def lifecycle(self) -> BotLifecycle:
        return self._c.lifecycle

    def _scope(self):
        return session_scope(self._session_factory)

    # ── Boot / shutdown ───────────────────────────────────────────────────────

    async def boot(self) -> list[str]:
        """Expire lapsed approvals, claim this process's tenant, resume its bots."""
        expired = await self._c.lifecycle.expire_sweep()
        self._prepare_tenant(self._context)
        resumed = await self._c.resume.resume(self._context)
        logger.info("fleet_booted", tenant=self._context.name, expired=len(expired), resumed=len(resumed))
        return resumed

    def _prepare_tenant(self, context: TenantContext) -> None:
        with self._scope() as db:
            tenants.assert_capacity(db, context.name, context.default_capacity)
            tenants.recompute_count(db, context.name)

    async def shutdown(self) -> None:
        await self._c.scheduler.shutdown()
        await self._c.supervisor.shutdown()

    async def run_expiry_sweep(self) -> list[str]:
        return await self._c.lifecycle.expire_sweep()

    # ── Registration ──────────────────────────────────────────────────────────

    async def register_bot(
        self,
        tenant: Optional[str],
        identity: Optional[str],
        credentials: Union[str, dict[str, Any]],
        settings: Optional[dict[str, Any]] = None,
        display_name: Optional[str] = None,
        is_guest: bool = False,
    ) -> RegistrationOut:
        """
        Accepted / Redistributed / existing_bot_found, or raises
        ValidationError, ConflictError(owner) or CapacityError.
        """
        blob, ident = self._c.lifecycle.validate(credentials, identity)
        requested = tenant or self._context.name

        async with self._placement_lock:
            with self._scope() as db:
                tenants.ensure(db, requested, self._context.default_capacity)

                owner = identity_registry.lookup(db, ident)
                if owner is not None and owner != requested:
                    raise ConflictError(ident, owner)

                existing = store.get_by_identity(db, ident)
                if existing is not None:
                    if existing.tenant_name != requested:
                        raise ConflictError(ident, existing.tenant_name)
                    return RegistrationOut(
                        outcome=EXISTING,
                        tenant=requested,
                        requested_tenant=requested,
                        is_expired=is_expired(existing),
                        days_remaining=days_remaining(existing),
                        message=f"a bot for {ident} already exists on {requested}",
                        bot=BotOut.model_validate(existing),
                    )

                placement = capacity.place_new_registration(db, requested, ident, {
                    "display_name": display_name or f"bot-{ident}",
                    "credentials":  blob,
                    "settings":     settings or {},
                    "status":       INITIAL_STATUS,
                    "is_guest":     is_guest,
                })
                bot = placement.bot
                store.record_activity(
                    db, placement.tenant, "registration",
                    f"Bot {bot.display_name} registered for {ident}",
                    bot_id=bot.id,
                    detail={"requested_tenant": requested, "outcome": placement.outcome, "guest": is_guest},
                )
                db.flush()
                out = RegistrationOut(
                    outcome=placement.outcome,
                    tenant=placement.tenant,
                    requested_tenant=requested,
                    redistributed=placement.redistributed,
                    available_slots=placement.available_slots,
                    message=(
                        f"{requested} is full; bot registered on {placement.tenant}"
                        if placement.redistributed else f"bot registered on {placement.tenant}"
                    ),
                    bot=BotOut.model_validate(bot),
                )

        event = {"botId": out.bot.id, "tenant": out.tenant, "identity": ident}
        self._c.channel.publish(broadcast.BOT_CREATED, event)
        if is_guest:
            self._c.channel.publish(broadcast.GUEST_BOT_REGISTERED, event)
        if out.redistributed:
            self._c.channel.publish(broadcast.BOT_REDISTRIBUTED, {**event, "requestedTenant": requested})
        return out

    def check_identity(self, identity: str) -> IdentityCheckOut:
        ident = creds.normalize_identity(identity)
        with self._scope() as db:
            owner = identity_registry.lookup(db, ident)
            bot = store.get_by_identity(db, ident)
            return IdentityCheckOut(
                identity=ident,
                owned=owner is not None,
                tenant=owner,
                current_tenant=self._context.name,
                registered_here=owner == self._context.name,
                has_instance=bot is not None,
                is_expired=is_expired(bot) if bot else None,
                days_remaining=days_remaining(bot) if bot else None,
                instance=BotOut.model_validate(bot) if bot else None,
            )

    # ── Lifecycle delegation ──────────────────────────────────────────────────

    async def approve(self, bot_id: str, months: Optional[int] = None) -> BotOut:
        return await self._c.lifecycle.approve(bot_id, months)

    async def reject(self, bot_id: str) -> dict[str, Any]:
        return await self._c.lifecycle.reject(bot_id)

    async def revoke(self, bot_id: str) -> BotOut:
        return await self._c.lifecycle.revoke(bot_id)

    async def start(self, bot_id: str) -> BotOut:
        return await self._c.lifecycle.start(bot_id)

    async def stop(self, bot_id: str) -> BotOut:
        return await self._c.lifecycle.stop(bot_id)

    async def restart(self, bot_id: str) -> BotOut:
        return await self._c.lifecycle.restart(bot_id)

    async def delete(self, bot_id: str) -> dict[str, Any]:
        return await self._c.lifecycle.delete(bot_id)

    def get_bot(self, bot_id: str) -> BotOut:
        return self._c.lifecycle.snapshot(bot_id)

    def list_bots(self, tenant: Optional[str] = None, approval_status: Optional[ApprovalStatus] = None) -> list[BotOut]:
        with self._scope() as db:
            rows = store.list_for_tenant(db, tenant=tenant, approval_status=approval_status)
            return [BotOut.model_validate(b) for b in rows]

    async def send_message(self, bot_id: str, target: str, message: str) -> bool:
        with self._scope() as db:
            store.require(db, bot_id)
        delivered = await self._c.supervisor.send_through(bot_id, target, message)
        if delivered:
            with self._scope() as db:
                bot = store.require(db, bot_id)
                store.update(db, bot, messages_count=(bot.messages_count or 0) + 1)
                store.record_activity(
                    db, bot.tenant_name, "message_sent",
                    f"Message sent through {bot.display_name} to {target}",
                    bot_id=bot_id, detail={"target": target},
                )
        return delivered

    async def update_credentials(self, bot_id: str, blob: Union[str, dict[str, Any]]) -> BotOut:
        """Re-validate against the bot's identity, persist, and reconnect if it is runnable."""
        with self._scope() as db:
            bot = store.require(db, bot_id)
            parsed, _ = self._c.lifecycle.validate(blob, bot.identity)
            store.update(db, bot, credentials=parsed)
            store.record_activity(db, bot.tenant_name, "credentials_update", "Credentials updated", bot_id=bot_id)
            runnable = bot.approval_status == ApprovalStatus.approved and not is_expired(bot)

        await self._c.supervisor.destroy(bot_id)
        if runnable:
            return await self._c.lifecycle.start(bot_id)
        return self.get_bot(bot_id)

    def update_settings(
        self,
        bot_id: str,
        display_name: Optional[str] = None,
        settings: Optional[dict[str, Any]] = None,
        actor: str = "admin",
        **flags: Any,
    ) -> BotOut:
        """Change feature flags, free-form settings or the display name after registration."""
        with self._scope() as db:
            bot = store.require(db, bot_id)
            changed = store.apply_settings(db, bot, settings=settings, **flags)
            if display_name and display_name != bot.display_name:
                store.update(db, bot, display_name=display_name)
                changed["display_name"] = display_name
            if changed:
                store.record_activity(
                    db, bot.tenant_name, "settings_change",
                    f"Settings changed for bot {bot.display_name}: {', '.join(sorted(changed))}",
                    bot_id=bot_id, detail={"changes": changed, "actor": actor},
                )
            out = BotOut.model_validate(bot)
        if changed:
            self._c.channel.publish(broadcast.BOT_UPDATED, {
                "botId": bot_id, "tenant": out.tenant_name, "changes": sorted(changed),
            })
            logger.info("bot_settings_changed", bot_id=bot_id, changes=sorted(changed))
        return out

    def toggle_feature(self, bot_id: str, feature: str, enabled: bool, actor: str = "admin") -> BotOut:
        """Known features map to their column; anything else lands under settings["features"]."""
        if feature in store.FEATURE_FLAGS:
            return self.update_settings(bot_id, actor=actor, **{feature: enabled})
        with self._scope() as db:
            current = dict((store.require(db, bot_id).settings or {}).get("features") or {})
        current[feature] = enabled
        return self.update_settings(bot_id, settings={"features": current}, actor=actor)

    # ── Tenants ───────────────────────────────────────────────────────────────

    def list_tenants(self) -> list[TenantOut]:
        with self._scope() as db:
            rows = tenants.list_all(db)
            for t in rows:
                tenants.recompute_count(db, t.name)
            return [TenantOut.model_validate(t) for t in rows]

    def list_available_tenants(self) -> list[TenantOut]:
        with self._scope() as db:
            return [TenantOut.model_validate(t) for t in tenants.list_available(db)]

    def check_capacity(self, tenant: str) -> CapacityOut:
        with self._scope() as db:
            check = capacity.check_capacity(db, tenant)
        return CapacityOut(
            tenant=tenant, can_add=check.can_add, current=check.current,
            max=check.max, available_slots=check.available_slots,
        )

    def update_tenant(
        self,
        name: str,
        description: Optional[str] = None,
        server_url: Optional[str] = None,
        new_name: Optional[str] = None,
        max_capacity: Optional[int] = None,
        status: Optional[TenantStatus] = None,
    ) -> TenantOut:
        if new_name and name == self._context.name:
            raise InvalidTransitionError("rename the current tenant with a context switch instead")
        with self._scope() as db:
            tenants.describe(db, name, description=description, server_url=server_url)
            if max_capacity is not None:
                tenants.set_capacity(db, name, max_capacity)
            if status is not None:
                tenants.set_status(db, name, status)
            if new_name:
                name = tenants.rename(db, name, new_name).name
            return TenantOut.model_validate(tenants.require(db, name))

    async def switch_context(self, name: str) -> dict[str, Any]:
        """Stop every bot of the current tenant, adopt `name`, and resume its bots."""
        previous = self._context.name
        for bot_id in self._c.supervisor.handle_ids():
            await self._c.supervisor.destroy(bot_id)
        with self._scope() as db:
            for bot in store.list_for_tenant(db, previous):
                if bot.status in (BotStatus.online, BotStatus.loading):
                    store.update(db, bot, status=BotStatus.offline)
        self._context = self._context.switched_to(name)
        self._prepare_tenant(self._context)
        resumed = await self._c.resume.resume(self._context)
        logger.info("tenant_context_switched", previous=previous, current=name, resumed=len(resumed))
        return {"previous": previous, "current": name, "resumed": resumed}

    # ── Identity registry admin ───────────────────────────────────────────────

    def list_identities(self, tenant: Optional[str] = None) -> list[IdentityEntryOut]:
        with self._scope() as db:
            return [IdentityEntryOut.model_validate(e) for e in identity_registry.list_entries(db, tenant)]

    def get_identity(self, identity: str) -> IdentityEntryOut:
        ident = creds.normalize_identity(identity)
        with self._scope() as db:
            entry = identity_registry.get_entry(db, ident)
            if entry is None:
                raise NotFoundError(f"identity {ident} is not registered")
            return IdentityEntryOut.model_validate(entry)

    def admin_move_identity(self, identity: str, new_tenant: str, actor: str = "admin") -> IdentityEntryOut:
        """Override ownership, bypassing capacity. The bot instance (if any) moves with it."""
        ident = creds.normalize_identity(identity)
        with self._scope() as db:
            tenants.ensure(db, new_tenant, self._context.default_capacity)
            previous = identity_registry.lookup(db, ident)
            entry = identity_registry.move(db, ident, new_tenant)
            bot = store.get_by_identity(db, ident)
            if bot is not None and bot.tenant_name != new_tenant:
                old = bot.tenant_name
                store.update(db, bot, tenant_name=new_tenant)
                tenants.recompute_count(db, old)
                tenants.recompute_count(db, new_tenant)
            store.record_activity(
                db, new_tenant, "god_registry_update",
                f"Identity {ident} moved from {previous or 'nowhere'} to {new_tenant}",
                bot_id=bot.id if bot else None,
                detail={"identity": ident, "from": previous, "to": new_tenant, "actor": actor},
            )
            out = IdentityEntryOut.model_validate(entry)
        logger.info("identity_admin_move", identity=ident, from_tenant=previous, to_tenant=new_tenant)
        return out

    def admin_release_identity(self, identity: str) -> bool:
        """Drop a registry entry that no bot instance backs any more."""
        ident = creds.normalize_identity(identity)
        with self._scope() as db:
            if store.get_by_identity(db, ident) is not None:
                raise InvalidTransitionError(f"identity {ident} still has a bot instance; delete the bot instead")
            released = identity_registry.release(db, ident)
        if not released:
            raise NotFoundError(f"identity {ident} is not registered")
        return True

    # ── Activity / stats ──────────────────────────────────────────────────────

    def stats(self, tenant: Optional[str] = None) -> dict[str, Any]:
        """Counts for one tenant, or fleet-wide when `tenant` is None."""
        with self._scope() as db:
            result = store.stats(db, tenant)
        result.update({
            "scope":          tenant or "all",
            "current_tenant": self._context.name,
            "live_handles":   len(self._c.supervisor.handle_ids()),
            "subscribers":    self._c.channel.subscriber_count,
        })
        return result
