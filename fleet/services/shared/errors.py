"""
Fleet error hierarchy.

Registry, lifecycle and runtime modules raise these; the HTTP routes translate
them into status codes with `http_status_for()`. None of them carry partial
state: a raised FleetError means the operation left the store unchanged.
"""

from typing import Optional


class FleetError(Exception):
    """Base class for every domain error the orchestrator raises."""

    code = "fleet_error"

    def to_detail(self) -> dict:
        return {"error": self.code, "message": str(self)}


class ValidationError(FleetError):
    """Malformed credentials, or the credential identity does not match the declared one."""

    code = "validation_error"


class ConflictError(FleetError):
    """The identity is already owned by another tenant."""

    code = "identity_conflict"

    def __init__(self, identity: str, owner: str):
        super().__init__(f"identity {identity} is already registered to {owner}")
        self.identity = identity
        self.owner = owner

    def to_detail(self) -> dict:
        return {
            "error": self.code,
            "message": str(self),
            "identity": self.identity,
            "registeredTo": self.owner,
        }


class CapacityError(FleetError):
    """Requested tenant and every alternate are full (AllServersFull)."""

    code = "all_servers_full"

    def __init__(self, tenant: str, current: int, maximum: int):
        super().__init__(f"tenant {tenant} is full ({current}/{maximum}) and no alternate has capacity")
        self.tenant = tenant
        self.current = current
        self.maximum = maximum

    def to_detail(self) -> dict:
        return {
            "error": self.code,
            "message": str(self),
            "allServersFull": True,
            "capacity": {"current": self.current, "max": self.maximum},
        }


class TransientConnectionError(FleetError):
    """A session failed to open or start. The instance is left in status=error."""

    code = "connection_failed"

    def __init__(self, bot_id: str, reason: Optional[str] = None):
        super().__init__(f"session for bot {bot_id} failed to start: {reason or 'unknown'}")
        self.bot_id = bot_id
        self.reason = reason


class UnrecoverableResumeError(FleetError):
    """A resumed instance never left loading/error before its grace deadline."""

    code = "unrecoverable_resume"

    def __init__(self, bot_id: str, status: str):
        super().__init__(f"bot {bot_id} stuck in {status} past its resume grace period")
        self.bot_id = bot_id
        self.status = status


class InvalidTransitionError(FleetError):
    code = "invalid_transition"


class NotFoundError(FleetError):
    code = "not_found"


_HTTP_STATUS = {
    ValidationError:          400,
    NotFoundError:            404,
    ConflictError:            409,
    CapacityError:            409,
    InvalidTransitionError:   409,
    TransientConnectionError: 502,
    UnrecoverableResumeError: 500,
}


def http_status_for(exc: FleetError) -> int:
    for cls, status in _HTTP_STATUS.items():
        if isinstance(exc, cls):
            return status
    return 500
