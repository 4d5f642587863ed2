"""
Capacity orchestration: accept, redistribute or reject a new registration.

Placement policy
  1. requested tenant has a free slot (fresh count)  → Accepted(requested)
  2. otherwise the least-loaded available tenant      → Redistributed(target)
     (ties broken alphabetically; the caller is always told the target)
  3. nothing available                                → CapacityError, nothing written

The requested tenant is advisory. Redistribution is one-shot: nothing tries to
move the instance back when the requested tenant frees up later.
"""

from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from fleet.services.registry import identity as identity_registry
from fleet.services.registry import store, tenants
from fleet.services.shared.errors import CapacityError, ConflictError
from fleet.services.shared.models import BotInstance, TenantStatus

logger = structlog.get_logger()

ACCEPTED      = "accepted"
REDISTRIBUTED = "redistributed"


@dataclass
class CapacityCheck:
    can_add: bool
    current: int
    max:     int

    @property
    def available_slots(self) -> int:
        return max(self.max - self.current, 0)


@dataclass
class Placement:
    outcome:          str
    tenant:           str
    requested_tenant: str
    bot:              BotInstance
    available_slots:  int

    @property
    def redistributed(self) -> bool:
        return self.outcome == REDISTRIBUTED


def check_capacity(db: Session, tenant: str) -> CapacityCheck:
    """Fresh count against the tenant's declared maximum. Unknown tenants cannot accept."""
    record = tenants.get(db, tenant)
    current = tenants.live_count(db, tenant)
    if record is None:
        return CapacityCheck(can_add=False, current=current, max=0)
    can_add = record.status == TenantStatus.active and current < record.max_capacity
    return CapacityCheck(can_add=can_add, current=current, max=record.max_capacity)


def _claim(db: Session, identity: Optional[str], requested: str, target: str) -> None:
    if not identity:
        return
    entry = identity_registry.get_entry(db, identity)
    if entry is None:
        identity_registry.register(db, identity, target)
        return
    if entry.tenant_name not in (requested, target):
        raise ConflictError(identity, entry.tenant_name)
    identity_registry.move(db, identity, target)


def place_new_registration(
    db: Session,
    requested_tenant: str,
    identity: Optional[str],
    payload: dict[str, Any],
) -> Placement:
    """
    Decide where a new instance lives and create it there.

    `payload` carries the BotInstance fields (display_name, credentials, settings,
    status, is_guest). The identity is claimed before the instance row is written,
    so a lost uniqueness race leaves nothing behind. Flushes; caller commits.
    """
    check = check_capacity(db, requested_tenant)
    if check.can_add:
        if identity:
            identity_registry.register(db, identity, requested_tenant)
        bot = store.create(db, tenant=requested_tenant, identity=identity, **payload)
        logger.info("registration_accepted", tenant=requested_tenant, bot_id=bot.id, identity=identity)
        return Placement(
            outcome=ACCEPTED,
            tenant=requested_tenant,
            requested_tenant=requested_tenant,
            bot=bot,
            available_slots=max(check.available_slots - 1, 0),
        )

    available = [t for t in tenants.list_available(db) if t.name != requested_tenant]
    if not available:
        logger.warning(
            "registration_rejected_all_full",
            tenant=requested_tenant, current=check.current, max=check.max,
        )
        raise CapacityError(requested_tenant, check.current, check.max)

    target = available[0]
    slots = target.max_capacity - target.observed_count
    _claim(db, identity, requested_tenant, target.name)
    bot = store.create(db, tenant=target.name, identity=identity, **payload)
    tenants.recompute_count(db, target.name)
    logger.info(
        "registration_redistributed",
        requested_tenant=requested_tenant, tenant=target.name, bot_id=bot.id, identity=identity,
    )
    return Placement(
        outcome=REDISTRIBUTED,
        tenant=target.name,
        requested_tenant=requested_tenant,
        bot=bot,
        available_slots=max(slots - 1, 0),
    )
