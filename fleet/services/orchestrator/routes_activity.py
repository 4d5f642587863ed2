"""
Activity log and fleet statistics.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from fleet.services.registry import store
from fleet.services.shared.auth import get_fleet
from fleet.services.shared.database import get_db
from fleet.services.shared.schemas import ActivityOut

router = APIRouter()


@router.get("/activities", response_model=list[ActivityOut])
def list_activities(
    tenant:  Optional[str] = None,
    bot_id:  Optional[str] = None,
    limit:   int           = Query(default=100, le=500),
    db=Depends(get_db),
):
    """Most recent first."""
    rows = store.list_activities(db, tenant=tenant, bot_id=bot_id, limit=limit)
    return [ActivityOut.model_validate(r) for r in rows]


@router.get("/stats")
def fleet_stats(tenant: Optional[str] = None, fleet=Depends(get_fleet)):
    return fleet.stats(tenant)
