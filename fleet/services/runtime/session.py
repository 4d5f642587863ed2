"""
Runtime session handles.

A SessionHandle is one live connection to the upstream messaging session for a
single bot. It reports exactly three things back through SessionCallbacks:

  on_opened()                         the session is connected and usable
  on_closed(reason)                   the session dropped without being asked to
  on_credentials_rotated(credentials) upstream issued new credentials to persist

A deliberate disconnect() does not fire on_closed.

GatewaySessionHandle talks to a session gateway over HTTP:
  POST   /sessions                     {"credentials": {...}}  → {"session_id": "..."}
  GET    /sessions/{id}                → {"state": "connecting|open|closed|failed",
                                          "reason": "...", "credentials": {...}, "credentials_revision": n}
  POST   /sessions/{id}/messages       {"to": "...", "message": "..."}
  DELETE /sessions/{id}
"""

import abc
import asyncio
import enum
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
import structlog

from fleet.services.shared.errors import TransientConnectionError

logger = structlog.get_logger()

SESSION_GATEWAY_URL     = os.getenv("SESSION_GATEWAY_URL", "http://localhost:8700")
SESSION_POLL_INTERVAL   = float(os.getenv("SESSION_POLL_INTERVAL_SECONDS", "2"))
SESSION_CONNECT_TIMEOUT = float(os.getenv("SESSION_CONNECT_TIMEOUT_SECONDS", "60"))


class SessionState(str, enum.Enum):
    idle       = "idle"
    connecting = "connecting"
    open       = "open"
    closed     = "closed"


@dataclass
class SessionCallbacks:
    on_opened:              Callable[[], Awaitable[None]]
    on_closed:              Callable[[Optional[str]], Awaitable[None]]
    on_credentials_rotated: Callable[[dict[str, Any]], Awaitable[None]]


class SessionHandle(abc.ABC):
    def __init__(self, credentials: dict[str, Any]):
        self.credentials = credentials
        self.state = SessionState.idle
        self._callbacks: Optional[SessionCallbacks] = None

    def bind(self, callbacks: SessionCallbacks) -> None:
        self._callbacks = callbacks

    @property
    def connected(self) -> bool:
        return self.state == SessionState.open

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the session. Returns once on_opened has fired; raises on failure."""

    @abc.abstractmethod
    async def send(self, target: str, payload: str) -> None:
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...

    async def _opened(self) -> None:
        self.state = SessionState.open
        if self._callbacks:
            await self._callbacks.on_opened()

    async def _closed(self, reason: Optional[str]) -> None:
        self.state = SessionState.closed
        if self._callbacks:
            await self._callbacks.on_closed(reason)

    async def _rotated(self, credentials: dict[str, Any]) -> None:
        self.credentials = credentials
        if self._callbacks:
            await self._callbacks.on_credentials_rotated(credentials)


class SessionClientFactory(Protocol):
    def create(self, credentials: dict[str, Any]) -> SessionHandle:
        ...


# ── HTTP gateway implementation ───────────────────────────────────────────────

class GatewaySessionHandle(SessionHandle):
    def __init__(
        self,
        credentials: dict[str, Any],
        client: httpx.AsyncClient,
        poll_interval: float = SESSION_POLL_INTERVAL,
        connect_timeout: float = SESSION_CONNECT_TIMEOUT,
    ):
        super().__init__(credentials)
        self._client = client
        self._poll_interval = poll_interval
        self._connect_timeout = connect_timeout
        self._session_id: Optional[str] = None
        self._revision: Optional[int] = None
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    async def connect(self) -> None:
        self.state = SessionState.connecting
        try:
            r = await self._client.post("/sessions", json={"credentials": self.credentials})
            r.raise_for_status()
            self._session_id = r.json()["session_id"]
            await asyncio.wait_for(self._wait_open(), timeout=self._connect_timeout)
        except TransientConnectionError:
            self.state = SessionState.closed
            raise
        except asyncio.TimeoutError as exc:
            self.state = SessionState.closed
            raise TransientConnectionError(self._session_id or "?", "timed out waiting for session to open") from exc
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            self.state = SessionState.closed
            raise TransientConnectionError(self._session_id or "?", str(exc)) from exc

        await self._opened()
        self._watch_task = asyncio.create_task(self._watch())

    async def _poll(self) -> dict[str, Any]:
        r = await self._client.get(f"/sessions/{self._session_id}")
        r.raise_for_status()
        return r.json()

    async def _wait_open(self) -> None:
        while True:
            body = await self._poll()
            state = body.get("state")
            if state == "open":
                self._revision = body.get("credentials_revision")
                return
            if state in ("closed", "failed"):
                raise TransientConnectionError(self._session_id or "?", body.get("reason") or state)
            await asyncio.sleep(self._poll_interval)

    async def _watch(self) -> None:
        """Poll the gateway while open; report drops and credential rotations."""
        while self.state == SessionState.open:
            await asyncio.sleep(self._poll_interval)
            try:
                body = await self._poll()
            except httpx.HTTPError as exc:
                logger.warning("session_poll_failed", session_id=self._session_id, error=str(exc))
                continue
            revision = body.get("credentials_revision")
            if revision is not None and revision != self._revision and body.get("credentials"):
                self._revision = revision
                await self._rotated(body["credentials"])
            if body.get("state") in ("closed", "failed"):
                await self._closed(body.get("reason") or body.get("state"))
                return

    async def send(self, target: str, payload: str) -> None:
        r = await self._client.post(
            f"/sessions/{self._session_id}/messages",
            json={"to": target, "message": payload},
        )
        r.raise_for_status()

    async def disconnect(self) -> None:
        self.state = SessionState.closed
        if self._watch_task and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()
        self._watch_task = None
        if self._session_id is None:
            return
        try:
            r = await self._client.delete(f"/sessions/{self._session_id}")
            if r.status_code != 404:
                r.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("session_delete_failed", session_id=self._session_id, error=str(exc))


class GatewaySessionFactory:
    """Creates gateway handles that share one pooled httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str = SESSION_GATEWAY_URL,
        client: Optional[httpx.AsyncClient] = None,
        poll_interval: float = SESSION_POLL_INTERVAL,
        connect_timeout: float = SESSION_CONNECT_TIMEOUT,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=10.0)
        self._poll_interval = poll_interval
        self._connect_timeout = connect_timeout

    def create(self, credentials: dict[str, Any]) -> GatewaySessionHandle:
        return GatewaySessionHandle(
            credentials,
            self._client,
            poll_interval=self._poll_interval,
            connect_timeout=self._connect_timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
