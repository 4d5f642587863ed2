"""
BotInstance store and activity log.

Thin CRUD over the ORM. Functions flush but never commit: the caller owns the
unit of work, the same way the HTTP routes own theirs.
"""

from typing import Any, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from fleet.services.registry import tenants
from fleet.services.shared.errors import NotFoundError, ValidationError
from fleet.services.shared.models import Activity, ApprovalStatus, BotInstance, BotStatus

logger = structlog.get_logger()

FEATURE_FLAGS  = ("auto_like", "auto_view_status", "auto_react", "typing_mode", "chatgpt_enabled")
TYPING_MODES   = ("none", "typing", "recording", "both")


def create(
    db: Session,
    tenant: str,
    display_name: str,
    identity: Optional[str],
    credentials: Optional[dict[str, Any]],
    settings: Optional[dict[str, Any]] = None,
    status: BotStatus = BotStatus.dormant,
    is_guest: bool = False,
) -> BotInstance:
    settings = dict(settings or {})
    bot = BotInstance(
        display_name=display_name,
        identity=identity,
        tenant_name=tenant,
        credentials=credentials,
        settings=settings,
        status=status,
        approval_status=ApprovalStatus.pending,
        is_guest=is_guest,
    )
    for name in FEATURE_FLAGS:
        if name in settings:
            setattr(bot, name, settings[name])
    db.add(bot)
    db.flush()
    tenants.recompute_count(db, tenant)
    return bot


def get(db: Session, bot_id: str) -> Optional[BotInstance]:
    return db.get(BotInstance, bot_id)


def require(db: Session, bot_id: str) -> BotInstance:
    bot = get(db, bot_id)
    if bot is None:
        raise NotFoundError(f"bot instance {bot_id} not found")
    return bot


def get_by_identity(db: Session, identity: str, tenant: Optional[str] = None) -> Optional[BotInstance]:
    q = db.query(BotInstance).filter(BotInstance.identity == identity)
    if tenant:
        q = q.filter(BotInstance.tenant_name == tenant)
    return q.order_by(BotInstance.created_at.desc()).first()


def list_for_tenant(
    db: Session,
    tenant: Optional[str] = None,
    status: Optional[BotStatus] = None,
    approval_status: Optional[ApprovalStatus] = None,
) -> list[BotInstance]:
    q = db.query(BotInstance)
    if tenant:
        q = q.filter(BotInstance.tenant_name == tenant)
    if status:
        q = q.filter(BotInstance.status == status)
    if approval_status:
        q = q.filter(BotInstance.approval_status == approval_status)
    return q.order_by(BotInstance.created_at, BotInstance.id).all()


def list_resumable(db: Session, tenant: str) -> list[BotInstance]:
    """Approved instances with credentials, oldest first."""
    rows = list_for_tenant(db, tenant=tenant, approval_status=ApprovalStatus.approved)
    return [b for b in rows if b.credentials]


def list_approved(db: Session) -> list[BotInstance]:
    return db.query(BotInstance).filter(BotInstance.approval_status == ApprovalStatus.approved).all()


def update(db: Session, bot: BotInstance, **fields: Any) -> BotInstance:
    for name, value in fields.items():
        setattr(bot, name, value)
    db.flush()
    return bot


def apply_settings(
    db: Session,
    bot: BotInstance,
    settings: Optional[dict[str, Any]] = None,
    **flags: Any,
) -> dict[str, Any]:
    """
    Merge `settings` into the stored blob and set feature columns.
    Feature names may also arrive inside `settings`; an explicit flag wins.
    Returns {field: new_value} for everything that actually changed.
    """
    unknown = set(flags) - set(FEATURE_FLAGS)
    if unknown:
        raise ValidationError(f"unknown feature(s): {', '.join(sorted(unknown))}")
    settings = settings or {}
    for name in FEATURE_FLAGS:
        if name in settings and name not in flags:
            flags[name] = settings[name]
    if "typing_mode" in flags and flags["typing_mode"] not in TYPING_MODES:
        raise ValidationError(f"typing_mode must be one of {', '.join(TYPING_MODES)}")

    changed: dict[str, Any] = {}
    merged = {**(bot.settings or {}), **settings}
    if merged != (bot.settings or {}):
        # reassign so the JSON column is marked dirty
        bot.settings = merged
        changed["settings"] = settings
    for name, value in flags.items():
        if getattr(bot, name) != value:
            setattr(bot, name, value)
            changed[name] = value
    db.flush()
    return changed


def delete(db: Session, bot: BotInstance) -> None:
    """Remove the instance and every activity scoped to it, then recount its tenant."""
    tenant = bot.tenant_name
    db.query(Activity).filter(Activity.bot_instance_id == bot.id).delete(synchronize_session=False)
    db.delete(bot)
    db.flush()
    tenants.recompute_count(db, tenant)


def record_activity(
    db: Session,
    tenant: str,
    activity_type: str,
    description: str,
    bot_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
) -> Activity:
    activity = Activity(
        tenant_name=tenant,
        bot_instance_id=bot_id,
        type=activity_type,
        description=description,
        detail=detail,
    )
    db.add(activity)
    return activity


def list_activities(
    db: Session,
    tenant: Optional[str] = None,
    bot_id: Optional[str] = None,
    limit: int = 100,
) -> list[Activity]:
    q = db.query(Activity)
    if tenant:
        q = q.filter(Activity.tenant_name == tenant)
    if bot_id:
        q = q.filter(Activity.bot_instance_id == bot_id)
    return q.order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit).all()


def stats(db: Session, tenant: Optional[str] = None) -> dict[str, Any]:
    q = db.query(BotInstance.status, func.count(BotInstance.id))
    if tenant:
        q = q.filter(BotInstance.tenant_name == tenant)
    by_status = {status.value: count for status, count in q.group_by(BotInstance.status).all()}

    approvals = db.query(BotInstance.approval_status, func.count(BotInstance.id))
    if tenant:
        approvals = approvals.filter(BotInstance.tenant_name == tenant)
    by_approval = {status.value: count for status, count in approvals.group_by(BotInstance.approval_status).all()}

    totals = db.query(
        func.coalesce(func.sum(BotInstance.messages_count), 0),
        func.coalesce(func.sum(BotInstance.commands_count), 0),
    )
    if tenant:
        totals = totals.filter(BotInstance.tenant_name == tenant)
    messages, commands = totals.one()

    return {
        "total_bots":      sum(by_status.values()),
        "active_bots":     by_status.get(BotStatus.online.value, 0),
        "pending_bots":    by_approval.get(ApprovalStatus.pending.value, 0),
        "approved_bots":   by_approval.get(ApprovalStatus.approved.value, 0),
        "by_status":       by_status,
        "messages_count":  int(messages),
        "commands_count":  int(commands),
    }
