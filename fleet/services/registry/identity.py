"""
Global identity registry.

One IdentityRegistration row per phone identity across every tenant. The
unique constraint on `identity` closes the check-then-write race in register():
two concurrent writers may both see "absent", but only the first commit lands and
the loser is told who won.

register() must be the first write in its unit of work: on an integrity error the
whole session is rolled back before the owner is re-read.
"""

from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fleet.services.shared.errors import ConflictError
from fleet.services.shared.models import IdentityRegistration

logger = structlog.get_logger()


def get_entry(db: Session, identity: str) -> Optional[IdentityRegistration]:
    return db.query(IdentityRegistration).filter_by(identity=identity).first()


def lookup(db: Session, identity: str) -> Optional[str]:
    """Return the owning tenant name, or None if the identity is unregistered."""
    entry = get_entry(db, identity)
    return entry.tenant_name if entry else None


def list_entries(db: Session, tenant: Optional[str] = None) -> list[IdentityRegistration]:
    q = db.query(IdentityRegistration)
    if tenant:
        q = q.filter(IdentityRegistration.tenant_name == tenant)
    return q.order_by(IdentityRegistration.registered_at.desc()).all()


def register(db: Session, identity: str, tenant: str) -> IdentityRegistration:
    """
    Claim `identity` for `tenant`.
    Idempotent for the same tenant; ConflictError(owner) for any other.
    The row is flushed, not committed: the caller commits with the rest of its unit.
    """
    entry = get_entry(db, identity)
    if entry is not None:
        if entry.tenant_name != tenant:
            raise ConflictError(identity, entry.tenant_name)
        return entry

    entry = IdentityRegistration(identity=identity, tenant_name=tenant)
    db.add(entry)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        owner = lookup(db, identity)
        logger.warning("identity_register_race_lost", identity=identity, tenant=tenant, owner=owner)
        if owner is None or owner == tenant:
            # winner already released it, or raced with ourselves: re-read decides
            return register(db, identity, tenant)
        raise ConflictError(identity, owner)
    logger.info("identity_registered", identity=identity, tenant=tenant)
    return entry


def move(db: Session, identity: str, new_tenant: str) -> IdentityRegistration:
    """Unconditionally point `identity` at `new_tenant`, creating the entry if needed."""
    entry = get_entry(db, identity)
    if entry is None:
        entry = IdentityRegistration(identity=identity, tenant_name=new_tenant)
        db.add(entry)
        db.flush()
        logger.info("identity_registered", identity=identity, tenant=new_tenant, via="move")
        return entry

    previous = entry.tenant_name
    entry.tenant_name = new_tenant
    db.flush()
    logger.info("identity_moved", identity=identity, from_tenant=previous, to_tenant=new_tenant)
    return entry


def release(db: Session, identity: Optional[str]) -> bool:
    """Drop the entry for `identity`. Absent identities are a no-op."""
    if not identity:
        return False
    deleted = db.query(IdentityRegistration).filter_by(identity=identity).delete()
    if deleted:
        logger.info("identity_released", identity=identity)
    return bool(deleted)
