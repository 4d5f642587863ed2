"""
Shared fixtures for fleet unit tests.

Every test gets a private in-memory SQLite database (StaticPool, so all sessions
share one connection) and a fake session factory whose handles open, fail, open slowly
or hang on demand. No gateway, no postgres.
"""

import asyncio
from typing import Any, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleet.services.lifecycle.credentials import extract_identity
from fleet.services.orchestrator.service import FleetService, build_components
from fleet.services.runtime.session import SessionHandle, SessionState
from fleet.services.shared.context import TenantContext
from fleet.services.shared.database import Base
from fleet.services.shared.errors import TransientConnectionError
from fleet.services.shared import models  # noqa: F401 - registers tables on Base


def make_creds(identity: str, nested: bool = True) -> dict[str, Any]:
    me = {"id": f"{identity}:17@s.whatsapp.net", "name": "Test"}
    if nested:
        return {"creds": {"me": me, "noiseKey": "abc"}}
    return {"me": me, "noiseKey": "abc"}


class FakeSessionHandle(SessionHandle):
    def __init__(self, credentials: dict[str, Any], factory: "FakeSessionFactory"):
        super().__init__(credentials)
        self._factory = factory
        self.identity = extract_identity(credentials)
        self.sent: list[tuple[str, str]] = []
        self.disconnects = 0
        self.fail_send = False
        self._never = asyncio.Event()

    async def connect(self) -> None:
        self._factory.connect_times.append((self.identity, asyncio.get_running_loop().time()))
        mode = self._factory.modes.get(self.identity, "ok")
        self.state = SessionState.connecting
        if mode == "fail":
            self.state = SessionState.closed
            raise TransientConnectionError(self.identity or "?", "upstream refused")
        if mode == "hang":
            await self._never.wait()
        if mode == "slow":
            await asyncio.sleep(0.05)
        await self._opened()

    async def send(self, target: str, payload: str) -> None:
        if self.fail_send:
            raise RuntimeError("socket closed")
        self.sent.append((target, payload))

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.state = SessionState.closed

    async def drop(self, reason: Optional[str] = "connection lost") -> None:
        await self._closed(reason)

    async def rotate(self, credentials: dict[str, Any]) -> None:
        await self._rotated(credentials)


class FakeSessionFactory:
    def __init__(self):
        self.modes: dict[str, str] = {}
        self.handles: list[FakeSessionHandle] = []
        self.connect_times: list[tuple[Optional[str], float]] = []

    def create(self, credentials: dict[str, Any]) -> FakeSessionHandle:
        handle = FakeSessionHandle(credentials, self)
        self.handles.append(handle)
        return handle

    def handle_for(self, identity: str) -> FakeSessionHandle:
        return [h for h in self.handles if h.identity == identity][-1]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_factory():
    return FakeSessionFactory()


@pytest.fixture
def components(fake_factory, session_factory):
    return build_components(fake_factory, session_factory, stagger_seconds=0.05, grace_seconds=0.3)


@pytest.fixture
def fleet(components, session_factory):
    return FleetService(TenantContext(name="alpha", default_capacity=2), components, session_factory=session_factory)


@pytest.fixture
def events(components):
    """Every event published on the fleet's channel, in order."""
    published = []
    original = components.channel.publish

    def _record(event_type, data):
        published.append((event_type, data))
        return original(event_type, data)

    components.channel.publish = _record
    return published
