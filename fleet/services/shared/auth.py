"""
Request-scoped dependencies: tenant resolution and admin gating.

Tenant resolution:
  - X-Tenant-Id header when present
  - otherwise the process's current TenantContext name

Admin routes (identity registry overrides, tenant edits, context switch):
  - ADMIN_API_KEY unset  → open (local dev / single-operator deployments)
  - ADMIN_API_KEY set    → X-Admin-Key must match, else HTTP 403

Usage in a FastAPI route:
    @router.put("/registry/{identity}", dependencies=[Depends(require_admin)])
    def move_identity(...): ...
"""

import hmac
import os

from fastapi import Header, HTTPException, Request

ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")


def get_fleet(request: Request):
    """The FleetService built in the app lifespan."""
    fleet = getattr(request.app.state, "fleet", None)
    if fleet is None:
        raise HTTPException(status_code=503, detail="Fleet orchestrator is not ready")
    return fleet


def get_tenant_name(
    request: Request,
    x_tenant_id: str | None = Header(None, alias="X-Tenant-Id"),
) -> str:
    if x_tenant_id:
        return x_tenant_id
    return get_fleet(request).context.name


def require_admin(x_admin_key: str | None = Header(None, alias="X-Admin-Key")) -> str:
    if not ADMIN_API_KEY:
        return "admin"
    if not x_admin_key or not hmac.compare_digest(x_admin_key, ADMIN_API_KEY):
        raise HTTPException(status_code=403, detail="X-Admin-Key header is missing or invalid")
    return "admin"
