"""
Bot instance routes.

Registration outcomes:
  POST /api/bots/register  → 201 accepted | redistributed | existing_bot_found
                             400 invalid credentials, 409 identity owned elsewhere / all servers full
Lifecycle (admin):
  POST /api/bots/{id}/approve | reject | revoke | start | stop | restart | send
  PUT /api/bots/{id}/credentials, DELETE /api/bots/{id}
Settings (admin):
  PATCH /api/bots/{id}, POST /api/bots/{id}/toggle-feature
"""

from typing import Optional

from fastapi import APIRouter, Depends

from fleet.services.orchestrator.errors import as_http
from fleet.services.shared.auth import get_fleet, get_tenant_name, require_admin
from fleet.services.shared.errors import FleetError
from fleet.services.shared.models import ApprovalStatus
from fleet.services.shared.schemas import (
    ApproveRequest, BotOut, BotRegisterRequest, BotSettingsUpdateRequest, CredentialsUpdateRequest,
    FeatureToggleRequest, IdentityCheckOut, RegistrationOut, SendMessageOut, SendMessageRequest,
)

router = APIRouter()


@router.post("/bots/register", response_model=RegistrationOut, status_code=201)
async def register_bot(
    req: BotRegisterRequest,
    tenant: str = Depends(get_tenant_name),
    fleet=Depends(get_fleet),
):
    try:
        return await fleet.register_bot(
            req.tenant or tenant,
            req.identity,
            req.credentials,
            settings=req.settings,
            display_name=req.display_name,
            is_guest=req.is_guest,
        )
    except FleetError as exc:
        raise as_http(exc) from exc


@router.get("/bots/check/{identity}", response_model=IdentityCheckOut)
def check_identity(identity: str, fleet=Depends(get_fleet)):
    try:
        return fleet.check_identity(identity)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.get("/bots", response_model=list[BotOut])
def list_bots(
    approval_status: Optional[ApprovalStatus] = None,
    all_tenants: bool = False,
    tenant: str = Depends(get_tenant_name),
    fleet=Depends(get_fleet),
):
    return fleet.list_bots(tenant=None if all_tenants else tenant, approval_status=approval_status)


@router.get("/bots/{bot_id}", response_model=BotOut)
def get_bot(bot_id: str, fleet=Depends(get_fleet)):
    try:
        return fleet.get_bot(bot_id)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/approve", response_model=BotOut, dependencies=[Depends(require_admin)])
async def approve_bot(bot_id: str, req: Optional[ApproveRequest] = None, fleet=Depends(get_fleet)):
    months = req.expiration_months if req else None
    try:
        return await fleet.approve(bot_id, months)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/reject", dependencies=[Depends(require_admin)])
async def reject_bot(bot_id: str, fleet=Depends(get_fleet)):
    try:
        return await fleet.reject(bot_id)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/revoke", response_model=BotOut, dependencies=[Depends(require_admin)])
async def revoke_bot(bot_id: str, fleet=Depends(get_fleet)):
    try:
        return await fleet.revoke(bot_id)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/start", response_model=BotOut, dependencies=[Depends(require_admin)])
async def start_bot(bot_id: str, fleet=Depends(get_fleet)):
    try:
        return await fleet.start(bot_id)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/stop", response_model=BotOut, dependencies=[Depends(require_admin)])
async def stop_bot(bot_id: str, fleet=Depends(get_fleet)):
    try:
        return await fleet.stop(bot_id)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/restart", response_model=BotOut, dependencies=[Depends(require_admin)])
async def restart_bot(bot_id: str, fleet=Depends(get_fleet)):
    try:
        return await fleet.restart(bot_id)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/send", response_model=SendMessageOut, dependencies=[Depends(require_admin)])
async def send_message(bot_id: str, req: SendMessageRequest, fleet=Depends(get_fleet)):
    """Deliver through the bot's live session. delivered=false means the bot is not online."""
    try:
        delivered = await fleet.send_message(bot_id, req.target, req.message)
    except FleetError as exc:
        raise as_http(exc) from exc
    return SendMessageOut(bot_id=bot_id, delivered=delivered)


@router.put("/bots/{bot_id}/credentials", response_model=BotOut, dependencies=[Depends(require_admin)])
async def update_credentials(bot_id: str, req: CredentialsUpdateRequest, fleet=Depends(get_fleet)):
    try:
        return await fleet.update_credentials(bot_id, req.credentials)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.delete("/bots/{bot_id}", dependencies=[Depends(require_admin)])
async def delete_bot(bot_id: str, fleet=Depends(get_fleet)):
    try:
        return await fleet.delete(bot_id)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.patch("/bots/{bot_id}", response_model=BotOut, dependencies=[Depends(require_admin)])
def update_bot_settings(bot_id: str, req: BotSettingsUpdateRequest, fleet=Depends(get_fleet)):
    """Partial update of feature flags, free-form settings and display name."""
    try:
        return fleet.update_settings(bot_id, **req.model_dump(exclude_none=True))
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/bots/{bot_id}/toggle-feature", response_model=BotOut, dependencies=[Depends(require_admin)])
def toggle_feature(bot_id: str, req: FeatureToggleRequest, fleet=Depends(get_fleet)):
    try:
        return fleet.toggle_feature(bot_id, req.feature, req.enabled)
    except FleetError as exc:
        raise as_http(exc) from exc
