"""
Fleet SQLAlchemy ORM models - all persisted state in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column.

  Tenant                a capacity pool ("server") that owns bot instances
  IdentityRegistration  global identity registry: one row per phone identity
  BotInstance           one automation agent bound to a single session
  Activity              append-only audit trail of lifecycle events

Ownership invariant:
  BotInstance.identity set  →  IdentityRegistration(identity).tenant_name == BotInstance.tenant_name
  Tenant.observed_count is a cached recount, refreshed after every create/delete/move.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, ForeignKey,
    Index, Integer, JSON, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from fleet.services.shared.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────────────────────

class TenantStatus(str, enum.Enum):
    active   = "active"
    disabled = "disabled"


class BotStatus(str, enum.Enum):
    pending_validation = "pending_validation"
    dormant            = "dormant"
    loading            = "loading"
    online             = "online"
    offline            = "offline"
    error              = "error"
    rejected           = "rejected"


class ApprovalStatus(str, enum.Enum):
    pending  = "pending"
    approved = "approved"
    rejected = "rejected"


# ── Tenants ───────────────────────────────────────────────────────────────────

class Tenant(Base):
    """
    A logical ownership partition with a finite number of bot slots.
    Created lazily the first time its name is referenced; never hard-deleted.
    """
    __tablename__ = "tenants"

    id:             Mapped[int]           = mapped_column(Integer, primary_key=True, index=True)
    name:           Mapped[str]           = mapped_column(String(255), nullable=False, unique=True, index=True)
    max_capacity:   Mapped[int]           = mapped_column(Integer, nullable=False, default=20)
    observed_count: Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    status:         Mapped[TenantStatus]  = mapped_column(SAEnum(TenantStatus), nullable=False, default=TenantStatus.active)
    description:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    server_url:     Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at:     Mapped[datetime]      = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at:     Mapped[datetime]      = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


# ── Global identity registry ──────────────────────────────────────────────────

class IdentityRegistration(Base):
    """
    System-wide map from phone identity to owning tenant.
    The unique constraint on identity is what serializes concurrent registrations.
    """
    __tablename__ = "identity_registrations"

    id:            Mapped[int]      = mapped_column(Integer, primary_key=True, index=True)
    identity:      Mapped[str]      = mapped_column(String(64), nullable=False, unique=True, index=True)
    tenant_name:   Mapped[str]      = mapped_column(String(255), nullable=False, index=True)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)


# ── Bot instances ─────────────────────────────────────────────────────────────

class BotInstance(Base):
    """
    One automation agent. Status is driven by the lifecycle state machine and by
    connection supervisor callbacks; approval fields by approve/revoke/expire.
    """
    __tablename__ = "bot_instances"

    id:                Mapped[str]                      = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    display_name:      Mapped[str]                      = mapped_column(String(255), nullable=False)
    identity:          Mapped[Optional[str]]            = mapped_column(String(64), nullable=True, index=True)
    tenant_name:       Mapped[str]                      = mapped_column(String(255), ForeignKey("tenants.name", onupdate="CASCADE"), nullable=False, index=True)
    status:            Mapped[BotStatus]                = mapped_column(SAEnum(BotStatus), nullable=False, default=BotStatus.pending_validation)
    approval_status:   Mapped[ApprovalStatus]           = mapped_column(SAEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.pending)
    approval_date:     Mapped[Optional[datetime]]       = mapped_column(DateTime(timezone=True), nullable=True)
    expiration_months: Mapped[Optional[int]]            = mapped_column(Integer, nullable=True)
    credentials:       Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    settings:          Mapped[dict[str, Any]]           = mapped_column(JSON, default=dict)
    auto_like:         Mapped[bool]                     = mapped_column(Boolean, default=True)
    auto_view_status:  Mapped[bool]                     = mapped_column(Boolean, default=False)
    auto_react:        Mapped[bool]                     = mapped_column(Boolean, default=False)
    typing_mode:       Mapped[str]                      = mapped_column(String(32), default="none")
    chatgpt_enabled:   Mapped[bool]                     = mapped_column(Boolean, default=False)
    messages_count:    Mapped[int]                      = mapped_column(Integer, nullable=False, default=0)
    commands_count:    Mapped[int]                      = mapped_column(Integer, nullable=False, default=0)
    last_activity:     Mapped[Optional[datetime]]       = mapped_column(DateTime(timezone=True), nullable=True)
    is_guest:          Mapped[bool]                     = mapped_column(Boolean, nullable=False, default=False)
    created_at:        Mapped[datetime]                 = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at:        Mapped[datetime]                 = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)

    __table_args__ = (
        Index("ix_bot_instances_tenant_approval", "tenant_name", "approval_status"),
    )


# ── Activity log ──────────────────────────────────────────────────────────────

class Activity(Base):
    """
    Immutable record of a lifecycle event (approval, startup, auto_cleanup, ...).
    Rows scoped to a bot instance are purged together with the instance.
    """
    __tablename__ = "activities"

    id:              Mapped[int]                      = mapped_column(Integer, primary_key=True, index=True)
    tenant_name:     Mapped[str]                      = mapped_column(String(255), nullable=False, index=True)
    bot_instance_id: Mapped[Optional[str]]            = mapped_column(String(36), nullable=True, index=True)
    type:            Mapped[str]                      = mapped_column(String(64), nullable=False)
    description:     Mapped[str]                      = mapped_column(Text, nullable=False)
    detail:          Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at:      Mapped[datetime]                 = mapped_column(DateTime(timezone=True), default=_now, index=True)

    __table_args__ = (
        Index("ix_activities_tenant_ts", "tenant_name", "created_at"),
    )
