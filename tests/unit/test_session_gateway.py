"""
Unit tests for the HTTP session gateway client.
Uses httpx.MockTransport - no gateway process required.
"""

import asyncio
import json

import httpx
import pytest

from fleet.services.runtime.session import GatewaySessionFactory, SessionCallbacks, SessionState
from fleet.services.shared.errors import TransientConnectionError

from conftest import make_creds


def make_gateway(states: list[dict]):
    """Serve `states` to successive GET /sessions/s1 polls; the last one repeats."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, request.url.path, body))
        if request.method == "POST" and request.url.path == "/sessions":
            return httpx.Response(201, json={"session_id": "s1"})
        if request.method == "GET" and request.url.path == "/sessions/s1":
            state = states.pop(0) if len(states) > 1 else states[0]
            return httpx.Response(200, json=state)
        if request.method == "POST" and request.url.path == "/sessions/s1/messages":
            return httpx.Response(202, json={"queued": True})
        if request.method == "DELETE" and request.url.path == "/sessions/s1":
            return httpx.Response(204)
        return httpx.Response(404)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway")
    factory = GatewaySessionFactory(client=client, poll_interval=0.01, connect_timeout=0.2)
    return factory, calls


def recording_callbacks():
    seen = {"opened": 0, "closed": [], "rotated": []}

    async def opened():
        seen["opened"] += 1

    async def closed(reason):
        seen["closed"].append(reason)

    async def rotated(credentials):
        seen["rotated"].append(credentials)

    return SessionCallbacks(on_opened=opened, on_closed=closed, on_credentials_rotated=rotated), seen


@pytest.mark.asyncio
async def test_connect_polls_until_open():
    factory, calls = make_gateway([{"state": "connecting"}, {"state": "open", "credentials_revision": 1}])
    handle = factory.create(make_creds("15550700000"))
    callbacks, seen = recording_callbacks()
    handle.bind(callbacks)

    await handle.connect()

    assert handle.connected is True
    assert handle.session_id == "s1"
    assert seen["opened"] == 1
    assert calls[0] == ("POST", "/sessions", {"credentials": make_creds("15550700000")})
    await handle.disconnect()
    await factory.aclose()


@pytest.mark.asyncio
async def test_failed_session_raises_transient_error():
    factory, _ = make_gateway([{"state": "failed", "reason": "logged out"}])
    handle = factory.create(make_creds("15550700001"))

    with pytest.raises(TransientConnectionError, match="logged out"):
        await handle.connect()
    assert handle.state == SessionState.closed
    await factory.aclose()


@pytest.mark.asyncio
async def test_connect_timeout():
    factory, _ = make_gateway([{"state": "connecting"}])
    handle = factory.create(make_creds("15550700002"))

    with pytest.raises(TransientConnectionError, match="timed out"):
        await handle.connect()
    await factory.aclose()


@pytest.mark.asyncio
async def test_send_and_disconnect():
    factory, calls = make_gateway([{"state": "open", "credentials_revision": 1}])
    handle = factory.create(make_creds("15550700003"))
    callbacks, seen = recording_callbacks()
    handle.bind(callbacks)
    await handle.connect()

    await handle.send("15559990000", "hello")
    await handle.disconnect()

    assert ("POST", "/sessions/s1/messages", {"to": "15559990000", "message": "hello"}) in calls
    assert calls[-1][:2] == ("DELETE", "/sessions/s1")
    assert seen["closed"] == []
    assert handle.connected is False
    await factory.aclose()


@pytest.mark.asyncio
async def test_watch_reports_unsolicited_close():
    factory, _ = make_gateway([
        {"state": "open", "credentials_revision": 1},
        {"state": "open", "credentials_revision": 1},
        {"state": "closed", "reason": "connection replaced"},
    ])
    handle = factory.create(make_creds("15550700004"))
    callbacks, seen = recording_callbacks()
    handle.bind(callbacks)
    await handle.connect()

    await asyncio.sleep(0.1)

    assert seen["closed"] == ["connection replaced"]
    assert handle.state == SessionState.closed
    await factory.aclose()


@pytest.mark.asyncio
async def test_watch_reports_credential_rotation():
    rotated = make_creds("15550700005")
    rotated["creds"]["noiseKey"] = "new"
    factory, _ = make_gateway([
        {"state": "open", "credentials_revision": 1},
        {"state": "open", "credentials_revision": 2, "credentials": rotated},
    ])
    handle = factory.create(make_creds("15550700005"))
    callbacks, seen = recording_callbacks()
    handle.bind(callbacks)
    await handle.connect()

    await asyncio.sleep(0.05)

    assert seen["rotated"] == [rotated]
    assert handle.credentials == rotated
    await handle.disconnect()
    await factory.aclose()
