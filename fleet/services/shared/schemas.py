"""
Pydantic request/response schemas for the fleet orchestrator API.
Lifecycle and orchestrator calls return these snapshots so nothing outside a
session ever touches a detached ORM row.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from fleet.services.shared.models import ApprovalStatus, BotStatus, TenantStatus


# ── Bot instances ─────────────────────────────────────────────────────────────

class BotRegisterRequest(BaseModel):
    credentials: Union[dict[str, Any], str]
    identity: Optional[str] = None
    tenant: Optional[str] = None
    display_name: Optional[str] = None
    settings: dict[str, Any] = {}
    is_guest: bool = False


class BotOut(BaseModel):
    id: str
    display_name: str
    identity: Optional[str]
    tenant_name: str
    status: BotStatus
    approval_status: ApprovalStatus
    approval_date: Optional[datetime] = None
    expiration_months: Optional[int] = None
    settings: dict[str, Any] = {}
    auto_like: bool = True
    auto_view_status: bool = False
    auto_react: bool = False
    typing_mode: str = "none"
    chatgpt_enabled: bool = False
    messages_count: int = 0
    commands_count: int = 0
    last_activity: Optional[datetime] = None
    is_guest: bool = False
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RegistrationOut(BaseModel):
    outcome: str
    tenant: str
    requested_tenant: str
    redistributed: bool = False
    available_slots: int = 0
    is_expired: Optional[bool] = None
    days_remaining: Optional[int] = None
    message: str
    bot: BotOut


class ApproveRequest(BaseModel):
    expiration_months: Optional[int] = Field(default=None, ge=1, le=24)


class SendMessageRequest(BaseModel):
    target: str
    message: str


class SendMessageOut(BaseModel):
    bot_id: str
    delivered: bool


class CredentialsUpdateRequest(BaseModel):
    credentials: Union[dict[str, Any], str]


class BotSettingsUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    auto_like: Optional[bool] = None
    auto_view_status: Optional[bool] = None
    auto_react: Optional[bool] = None
    typing_mode: Optional[str] = None
    chatgpt_enabled: Optional[bool] = None
    settings: Optional[dict[str, Any]] = None


class FeatureToggleRequest(BaseModel):
    feature: str = Field(min_length=1, max_length=64)
    enabled: bool


class IdentityCheckOut(BaseModel):
    identity: str
    owned: bool
    tenant: Optional[str] = None
    current_tenant: str
    registered_here: bool = False
    has_instance: bool = False
    is_expired: Optional[bool] = None
    days_remaining: Optional[int] = None
    instance: Optional[BotOut] = None


# ── Tenants ───────────────────────────────────────────────────────────────────

class TenantOut(BaseModel):
    name: str
    max_capacity: int
    observed_count: int
    status: TenantStatus
    description: Optional[str] = None
    server_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CapacityOut(BaseModel):
    tenant: str
    can_add: bool
    current: int
    max: int
    available_slots: int


class TenantUpdateRequest(BaseModel):
    description: Optional[str] = None
    server_url: Optional[str] = None
    new_name: Optional[str] = None
    max_capacity: Optional[int] = Field(default=None, ge=1)
    status: Optional[TenantStatus] = None


class TenantSwitchRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class TenantSwitchOut(BaseModel):
    previous: str
    current: str
    resumed: list[str]


# ── Identity registry ─────────────────────────────────────────────────────────

class IdentityEntryOut(BaseModel):
    identity: str
    tenant_name: str
    registered_at: datetime

    class Config:
        from_attributes = True


class IdentityMoveRequest(BaseModel):
    tenant: str = Field(min_length=1, max_length=255)


# ── Activity ──────────────────────────────────────────────────────────────────

class ActivityOut(BaseModel):
    id: int
    tenant_name: str
    bot_instance_id: Optional[str]
    type: str
    description: str
    detail: Optional[dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
