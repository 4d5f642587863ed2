"""Translate FleetError into HTTPException for the routers."""

from fastapi import HTTPException

from fleet.services.shared.errors import FleetError, http_status_for


def as_http(exc: FleetError) -> HTTPException:
    return HTTPException(status_code=http_status_for(exc), detail=exc.to_detail())
