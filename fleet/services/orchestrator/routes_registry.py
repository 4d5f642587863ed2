"""
Global identity registry admin routes.

  GET    /api/registry               list entries (optionally ?tenant=)
  GET    /api/registry/{identity}    one entry
  PUT    /api/registry/{identity}    override owner, bypasses capacity
  DELETE /api/registry/{identity}    drop an entry no bot instance backs
"""

from typing import Optional

from fastapi import APIRouter, Depends

from fleet.services.orchestrator.errors import as_http
from fleet.services.shared.auth import get_fleet, require_admin
from fleet.services.shared.errors import FleetError
from fleet.services.shared.schemas import IdentityEntryOut, IdentityMoveRequest

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/registry", response_model=list[IdentityEntryOut])
def list_registry(tenant: Optional[str] = None, fleet=Depends(get_fleet)):
    return fleet.list_identities(tenant)


@router.get("/registry/{identity}", response_model=IdentityEntryOut)
def get_registry_entry(identity: str, fleet=Depends(get_fleet)):
    try:
        return fleet.get_identity(identity)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.put("/registry/{identity}", response_model=IdentityEntryOut)
def move_identity(identity: str, req: IdentityMoveRequest, fleet=Depends(get_fleet)):
    try:
        return fleet.admin_move_identity(identity, req.tenant)
    except FleetError as exc:
        raise as_http(exc) from exc


@router.delete("/registry/{identity}", status_code=204)
def release_identity(identity: str, fleet=Depends(get_fleet)):
    try:
        fleet.admin_release_identity(identity)
    except FleetError as exc:
        raise as_http(exc) from exc
