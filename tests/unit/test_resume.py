"""
Unit tests for boot-time resume: stagger spacing, grace-period cleanup,
and cancellation of the grace timer once a bot comes online.
Stagger is 0.05s and grace 0.3s (see conftest.components).
"""

import asyncio
from datetime import datetime, timezone

import pytest

from fleet.services.registry import identity as identity_registry
from fleet.services.registry import store, tenants
from fleet.services.runtime.scheduler import GRACE
from fleet.services.shared import broadcast
from fleet.services.shared.context import TenantContext
from fleet.services.shared.models import Activity, ApprovalStatus, BotInstance, BotStatus

from conftest import make_creds

ALPHA = TenantContext(name="alpha", default_capacity=10)


def _approved(session_factory, identity, tenant="alpha"):
    """Seed a bot as a previous process would have left it: approved, online."""
    db = session_factory()
    tenants.ensure(db, tenant, 10)
    identity_registry.register(db, identity, tenant)
    bot = store.create(db, tenant=tenant, display_name=f"bot-{identity}", identity=identity, credentials=make_creds(identity))
    store.update(
        db, bot,
        approval_status=ApprovalStatus.approved,
        approval_date=datetime.now(timezone.utc),
        expiration_months=3,
        status=BotStatus.online,
    )
    db.commit()
    bot_id = bot.id
    db.close()
    return bot_id


def _statuses(session_factory):
    db = session_factory()
    try:
        return {b.id: b.status for b in db.query(BotInstance).all()}
    finally:
        db.close()


@pytest.mark.asyncio
async def test_marks_loading_immediately_and_writes_startup(components, session_factory, fake_factory):
    fake_factory.modes.update({"15550000001": "hang", "15550000002": "hang"})
    ids = [_approved(session_factory, "15550000001"), _approved(session_factory, "15550000002")]

    resumed = await components.resume.resume(ALPHA)

    assert sorted(resumed) == sorted(ids)
    assert set(_statuses(session_factory).values()) == {BotStatus.loading}
    db = session_factory()
    assert db.query(Activity).filter_by(type="startup").count() == 2
    db.close()
    await components.scheduler.shutdown()
    await components.supervisor.shutdown()


@pytest.mark.asyncio
async def test_starts_are_staggered(components, session_factory, fake_factory):
    for n in range(3):
        _approved(session_factory, f"1555000010{n}")

    await components.resume.resume(ALPHA)
    await asyncio.sleep(0.2)

    times = [t for _, t in fake_factory.connect_times]
    assert len(times) == 3
    gaps = [b - a for a, b in zip(times, times[1:])]
    assert all(gap >= 0.04 for gap in gaps)
    assert set(_statuses(session_factory).values()) == {BotStatus.online}

    await components.scheduler.shutdown()
    await components.supervisor.shutdown()


@pytest.mark.asyncio
async def test_online_bot_cancels_its_grace_timer(components, session_factory, events):
    bot_id = _approved(session_factory, "15550000200")

    await components.resume.resume(ALPHA)
    await asyncio.sleep(0.05)

    assert (GRACE, bot_id) not in components.scheduler.pending()
    await asyncio.sleep(0.4)
    assert bot_id in _statuses(session_factory)
    assert broadcast.BOT_RESUMED in [t for t, _ in events]
    await components.supervisor.shutdown()


@pytest.mark.asyncio
async def test_failed_start_is_cleaned_up_after_grace(components, session_factory, fake_factory, events):
    fake_factory.modes["15550000300"] = "fail"
    bot_id = _approved(session_factory, "15550000300")
    healthy = _approved(session_factory, "15550000301")

    await components.resume.resume(ALPHA)
    await asyncio.sleep(0.1)
    assert _statuses(session_factory)[bot_id] == BotStatus.error
    assert broadcast.BOT_ERROR in [t for t, _ in events]

    await asyncio.sleep(0.4)

    statuses = _statuses(session_factory)
    assert bot_id not in statuses
    assert statuses[healthy] == BotStatus.online
    db = session_factory()
    assert identity_registry.lookup(db, "15550000300") is None
    assert identity_registry.lookup(db, "15550000301") == "alpha"
    assert tenants.get(db, "alpha").observed_count == 1
    assert db.query(Activity).filter_by(type="auto_cleanup").count() == 1
    db.close()
    deleted = [d for t, d in events if t == broadcast.BOT_DELETED]
    assert deleted == [{"botId": bot_id, "tenant": "alpha", "identity": "15550000300", "reason": "auto_cleanup"}]
    await components.supervisor.shutdown()


@pytest.mark.asyncio
async def test_stuck_loading_is_cleaned_up(components, session_factory, fake_factory):
    fake_factory.modes["15550000400"] = "hang"
    bot_id = _approved(session_factory, "15550000400")

    await components.resume.resume(ALPHA)
    await asyncio.sleep(0.45)

    assert bot_id not in _statuses(session_factory)
    assert components.supervisor.has_handle(bot_id) is False
    assert components.scheduler.pending(bot_id) == []


@pytest.mark.asyncio
async def test_only_current_tenant_resumed(components, session_factory):
    _approved(session_factory, "15550000500", tenant="beta")
    assert await components.resume.resume(ALPHA) == []


@pytest.mark.asyncio
async def test_unapproved_bots_not_resumed(components, session_factory):
    db = session_factory()
    tenants.ensure(db, "alpha", 10)
    store.create(db, tenant="alpha", display_name="pending", identity="15550000600", credentials=make_creds("15550000600"))
    db.commit()
    db.close()
    assert await components.resume.resume(ALPHA) == []
