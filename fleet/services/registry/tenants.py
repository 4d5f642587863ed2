"""
Tenant registry: declared capacity and observed load per tenant.

observed_count is never trusted as a running counter. Every create, delete or
redistribution ends with recompute_count(), and every placement decision reads
live_count() straight from bot_instances.
"""

from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fleet.services.shared.errors import NotFoundError, ValidationError
from fleet.services.shared.models import (
    Activity, BotInstance, IdentityRegistration, Tenant, TenantStatus,
)

logger = structlog.get_logger()


def get(db: Session, name: str) -> Optional[Tenant]:
    return db.query(Tenant).filter_by(name=name).first()


def require(db: Session, name: str) -> Tenant:
    tenant = get(db, name)
    if tenant is None:
        raise NotFoundError(f"tenant {name} not found")
    return tenant


def list_all(db: Session) -> list[Tenant]:
    return db.query(Tenant).order_by(Tenant.name).all()


def ensure(db: Session, name: str, default_capacity: int) -> Tenant:
    """Create the tenant if missing. Commits on creation so later units start clean."""
    tenant = get(db, name)
    if tenant is not None:
        return tenant
    tenant = Tenant(name=name, max_capacity=default_capacity, observed_count=0, status=TenantStatus.active)
    db.add(tenant)
    try:
        db.commit()
    except IntegrityError:
        # another writer created it first
        db.rollback()
        return require(db, name)
    db.refresh(tenant)
    logger.info("tenant_created", tenant=name, max_capacity=default_capacity)
    return tenant


def assert_capacity(db: Session, name: str, capacity: int) -> Tenant:
    """Re-assert this process's configured maximum for its own tenant."""
    tenant = ensure(db, name, capacity)
    if tenant.max_capacity != capacity:
        logger.info("tenant_capacity_reasserted", tenant=name, previous=tenant.max_capacity, capacity=capacity)
        tenant.max_capacity = capacity
        db.commit()
    return tenant


def live_count(db: Session, name: str) -> int:
    return db.query(func.count(BotInstance.id)).filter(BotInstance.tenant_name == name).scalar() or 0


def live_counts(db: Session) -> dict[str, int]:
    rows = (
        db.query(BotInstance.tenant_name, func.count(BotInstance.id))
        .group_by(BotInstance.tenant_name)
        .all()
    )
    return {name: count for name, count in rows}


def recompute_count(db: Session, name: str) -> int:
    """Recount live instances for `name` and persist it. Flushes; caller commits."""
    count = live_count(db, name)
    tenant = get(db, name)
    if tenant is not None and tenant.observed_count != count:
        tenant.observed_count = count
        db.flush()
    return count


def list_available(db: Session) -> list[Tenant]:
    """Active tenants with a free slot, least loaded first, name as tie-break."""
    counts = live_counts(db)
    available = []
    for tenant in db.query(Tenant).filter(Tenant.status == TenantStatus.active).all():
        count = counts.get(tenant.name, 0)
        tenant.observed_count = count
        if count < tenant.max_capacity:
            available.append(tenant)
    return sorted(available, key=lambda t: (t.observed_count, t.name))


def describe(
    db: Session,
    name: str,
    description: Optional[str] = None,
    server_url: Optional[str] = None,
) -> Tenant:
    tenant = require(db, name)
    if description is not None:
        tenant.description = description
    if server_url is not None:
        tenant.server_url = server_url
    db.flush()
    return tenant


def rename(db: Session, old: str, new: str) -> Tenant:
    """Rename a tenant and carry every row that references it along."""
    tenant = require(db, old)
    if old == new:
        return tenant
    if get(db, new) is not None:
        raise ValidationError(f"tenant {new} already exists")

    tenant.name = new
    db.flush()
    db.query(BotInstance).filter(BotInstance.tenant_name == old).update(
        {BotInstance.tenant_name: new}, synchronize_session=False,
    )
    db.query(IdentityRegistration).filter(IdentityRegistration.tenant_name == old).update(
        {IdentityRegistration.tenant_name: new}, synchronize_session=False,
    )
    db.query(Activity).filter(Activity.tenant_name == old).update(
        {Activity.tenant_name: new}, synchronize_session=False,
    )
    db.flush()
    logger.info("tenant_renamed", from_tenant=old, to_tenant=new)
    return tenant


def set_capacity(db: Session, name: str, capacity: int) -> Tenant:
    if capacity <= 0:
        raise ValidationError("max capacity must be positive")
    tenant = require(db, name)
    tenant.max_capacity = capacity
    db.flush()
    return tenant


def set_status(db: Session, name: str, status: TenantStatus) -> Tenant:
    tenant = require(db, name)
    tenant.status = status
    db.flush()
    return tenant
