"""
Process-level tenant context.

The orchestrator threads a TenantContext through every call instead of reading a
mutable global, so the current tenant can be switched at runtime and tests can
run several contexts side by side.
"""

import os
from dataclasses import dataclass, replace

DEFAULT_CAPACITY = 20
DEFAULT_SERVER_NAME = "default-server"


def _capacity_from_env() -> int:
    raw = os.getenv("BOTCOUNT", str(DEFAULT_CAPACITY))
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_CAPACITY
    return value if value > 0 else DEFAULT_CAPACITY


@dataclass(frozen=True)
class TenantContext:
    name: str
    default_capacity: int = DEFAULT_CAPACITY

    @classmethod
    def from_env(cls) -> "TenantContext":
        return cls(
            name=os.getenv("SERVER_NAME", DEFAULT_SERVER_NAME),
            default_capacity=_capacity_from_env(),
        )

    def switched_to(self, name: str) -> "TenantContext":
        return replace(self, name=name)
