"""
Tenant routes: capacity views, admin edits and the runtime context switch.
"""

from fastapi import APIRouter, Depends

from fleet.services.orchestrator.errors import as_http
from fleet.services.shared.auth import get_fleet, require_admin
from fleet.services.shared.errors import FleetError
from fleet.services.shared.schemas import (
    CapacityOut, TenantOut, TenantSwitchOut, TenantSwitchRequest, TenantUpdateRequest,
)

router = APIRouter()


@router.get("/tenants", response_model=list[TenantOut])
def list_tenants(fleet=Depends(get_fleet)):
    return fleet.list_tenants()


@router.get("/tenants/available", response_model=list[TenantOut])
def list_available_tenants(fleet=Depends(get_fleet)):
    """Active tenants with a free slot, least loaded first."""
    return fleet.list_available_tenants()


@router.get("/tenants/current")
def current_tenant(fleet=Depends(get_fleet)):
    ctx = fleet.context
    return {"name": ctx.name, "default_capacity": ctx.default_capacity}


@router.get("/tenants/{name}/capacity", response_model=CapacityOut)
def tenant_capacity(name: str, fleet=Depends(get_fleet)):
    return fleet.check_capacity(name)


@router.put("/tenants/{name}", response_model=TenantOut, dependencies=[Depends(require_admin)])
def update_tenant(name: str, req: TenantUpdateRequest, fleet=Depends(get_fleet)):
    try:
        return fleet.update_tenant(
            name,
            description=req.description,
            server_url=req.server_url,
            new_name=req.new_name,
            max_capacity=req.max_capacity,
            status=req.status,
        )
    except FleetError as exc:
        raise as_http(exc) from exc


@router.post("/tenants/switch", response_model=TenantSwitchOut, dependencies=[Depends(require_admin)])
async def switch_tenant(req: TenantSwitchRequest, fleet=Depends(get_fleet)):
    """Stop this process's bots, adopt another tenant name and resume its bots."""
    try:
        return await fleet.switch_context(req.name)
    except FleetError as exc:
        raise as_http(exc) from exc
