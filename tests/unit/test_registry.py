"""
Unit tests for the identity registry, tenant registry and capacity placement.
Runs against a private in-memory SQLite database per test.
"""

import pytest

from fleet.services.registry import capacity, store, tenants
from fleet.services.registry import identity as identity_registry
from fleet.services.shared.errors import CapacityError, ConflictError, ValidationError
from fleet.services.shared.models import (
    Activity, BotInstance, IdentityRegistration, TenantStatus,
)

from conftest import make_creds


def _payload(identity: str) -> dict:
    return {"display_name": f"bot-{identity}", "credentials": make_creds(identity)}


def _fill(db, tenant: str, n: int):
    for i in range(n):
        store.create(db, tenant=tenant, display_name=f"filler-{tenant}-{i}", identity=None, credentials=None)
    db.commit()


# ── Identity registry ──────────────────────────────────────────────────────────

class TestIdentityRegistry:
    def test_register_then_lookup(self, db):
        identity_registry.register(db, "111", "alpha")
        db.commit()
        assert identity_registry.lookup(db, "111") == "alpha"

    def test_register_same_tenant_is_idempotent(self, db):
        first = identity_registry.register(db, "111", "alpha")
        db.commit()
        second = identity_registry.register(db, "111", "alpha")
        assert first.id == second.id
        assert db.query(IdentityRegistration).count() == 1

    def test_register_other_tenant_conflicts_with_owner(self, db):
        identity_registry.register(db, "111", "alpha")
        db.commit()
        with pytest.raises(ConflictError) as exc_info:
            identity_registry.register(db, "111", "beta")
        assert exc_info.value.owner == "alpha"
        assert identity_registry.lookup(db, "111") == "alpha"

    def test_lost_race_surfaces_winner(self, session_factory, monkeypatch):
        """Both writers saw "absent"; the unique constraint decides and the loser learns the owner."""
        winner = session_factory()
        identity_registry.register(winner, "222", "alpha")
        winner.commit()
        winner.close()

        real_get_entry = identity_registry.get_entry
        calls = {"n": 0}

        def stale_first_read(db, identity):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_get_entry(db, identity)

        monkeypatch.setattr(identity_registry, "get_entry", stale_first_read)

        loser = session_factory()
        with pytest.raises(ConflictError) as exc_info:
            identity_registry.register(loser, "222", "beta")
        loser.close()
        assert exc_info.value.owner == "alpha"

        check = session_factory()
        assert check.query(IdentityRegistration).filter_by(identity="222").count() == 1
        check.close()

    def test_move_rewrites_owner_without_conflict(self, db):
        identity_registry.register(db, "333", "alpha")
        db.commit()
        identity_registry.move(db, "333", "beta")
        db.commit()
        assert identity_registry.lookup(db, "333") == "beta"

    def test_move_creates_missing_entry(self, db):
        identity_registry.move(db, "444", "gamma")
        db.commit()
        assert identity_registry.lookup(db, "444") == "gamma"

    def test_release_absent_is_noop(self, db):
        assert identity_registry.release(db, "999") is False
        assert identity_registry.release(db, None) is False


# ── Tenant registry ────────────────────────────────────────────────────────────

class TestTenants:
    def test_ensure_uses_default_capacity_once(self, db):
        t = tenants.ensure(db, "alpha", 5)
        assert t.max_capacity == 5
        again = tenants.ensure(db, "alpha", 50)
        assert again.max_capacity == 5

    def test_assert_capacity_overrides(self, db):
        tenants.ensure(db, "alpha", 5)
        assert tenants.assert_capacity(db, "alpha", 8).max_capacity == 8

    def test_recompute_count_corrects_drift(self, db):
        tenants.ensure(db, "alpha", 5)
        _fill(db, "alpha", 2)
        tenants.get(db, "alpha").observed_count = 40
        db.commit()
        assert tenants.recompute_count(db, "alpha") == 2
        db.commit()
        assert tenants.get(db, "alpha").observed_count == 2

    def test_list_available_orders_by_load_then_name(self, db):
        for name in ("delta", "charlie", "bravo", "alpha"):
            tenants.ensure(db, name, 3)
        _fill(db, "alpha", 3)    # full
        _fill(db, "bravo", 1)
        _fill(db, "charlie", 1)
        _fill(db, "delta", 0)
        names = [t.name for t in tenants.list_available(db)]
        assert names == ["delta", "bravo", "charlie"]

    def test_list_available_skips_disabled(self, db):
        tenants.ensure(db, "alpha", 3)
        tenants.ensure(db, "bravo", 3)
        tenants.set_status(db, "bravo", TenantStatus.disabled)
        db.commit()
        assert [t.name for t in tenants.list_available(db)] == ["alpha"]

    def test_rename_carries_bots_identities_and_activity(self, db):
        tenants.ensure(db, "alpha", 3)
        identity_registry.register(db, "555", "alpha")
        bot = store.create(db, tenant="alpha", display_name="b", identity="555", credentials=make_creds("555"))
        store.record_activity(db, "alpha", "registration", "x", bot_id=bot.id)
        db.commit()

        tenants.rename(db, "alpha", "omega")
        db.commit()
        db.expire_all()

        assert tenants.get(db, "alpha") is None
        assert db.get(BotInstance, bot.id).tenant_name == "omega"
        assert identity_registry.lookup(db, "555") == "omega"
        assert db.query(Activity).filter_by(tenant_name="omega").count() == 1

    def test_rename_onto_existing_rejected(self, db):
        tenants.ensure(db, "alpha", 3)
        tenants.ensure(db, "beta", 3)
        with pytest.raises(ValidationError):
            tenants.rename(db, "alpha", "beta")

    def test_set_capacity_must_be_positive(self, db):
        tenants.ensure(db, "alpha", 3)
        with pytest.raises(ValidationError):
            tenants.set_capacity(db, "alpha", 0)


# ── Capacity placement ─────────────────────────────────────────────────────────

class TestCapacity:
    def test_check_capacity_uses_fresh_count(self, db):
        tenants.ensure(db, "alpha", 2)
        _fill(db, "alpha", 2)
        tenants.get(db, "alpha").observed_count = 0   # stale cache must not matter
        db.commit()
        check = capacity.check_capacity(db, "alpha")
        assert check.can_add is False
        assert (check.current, check.max) == (2, 2)

    def test_unknown_tenant_cannot_accept(self, db):
        assert capacity.check_capacity(db, "nowhere").can_add is False

    def test_accepts_when_room(self, db):
        tenants.ensure(db, "alpha", 2)
        placement = capacity.place_new_registration(db, "alpha", "111", _payload("111"))
        db.commit()
        assert placement.outcome == capacity.ACCEPTED
        assert placement.tenant == "alpha"
        assert identity_registry.lookup(db, "111") == "alpha"
        assert tenants.get(db, "alpha").observed_count == 1

    def test_redistributes_to_least_loaded_alphabetical(self, db):
        tenants.ensure(db, "alpha", 1)
        tenants.ensure(db, "delta", 3)
        tenants.ensure(db, "charlie", 3)
        tenants.ensure(db, "bravo", 3)
        _fill(db, "alpha", 1)
        _fill(db, "bravo", 1)

        placement = capacity.place_new_registration(db, "alpha", "777", _payload("777"))
        db.commit()

        assert placement.outcome == capacity.REDISTRIBUTED
        assert placement.redistributed is True
        assert placement.requested_tenant == "alpha"
        assert placement.tenant == "charlie"       # charlie and delta tie at 0; charlie first
        assert placement.bot.tenant_name == "charlie"
        assert identity_registry.lookup(db, "777") == "charlie"
        assert tenants.get(db, "charlie").observed_count == 1

    def test_total_rejection_creates_nothing(self, db):
        tenants.ensure(db, "alpha", 1)
        tenants.ensure(db, "beta", 1)
        _fill(db, "alpha", 1)
        _fill(db, "beta", 1)
        before = db.query(BotInstance).count()

        with pytest.raises(CapacityError) as exc_info:
            capacity.place_new_registration(db, "alpha", "888", _payload("888"))
        db.rollback()

        assert exc_info.value.to_detail()["allServersFull"] is True
        assert db.query(BotInstance).count() == before
        assert identity_registry.lookup(db, "888") is None

    def test_redistribution_refuses_identity_owned_elsewhere(self, db):
        tenants.ensure(db, "alpha", 1)
        tenants.ensure(db, "beta", 3)
        tenants.ensure(db, "gamma", 3)
        _fill(db, "alpha", 1)
        identity_registry.register(db, "999", "gamma")
        db.commit()
        with pytest.raises(ConflictError):
            capacity.place_new_registration(db, "alpha", "999", _payload("999"))
