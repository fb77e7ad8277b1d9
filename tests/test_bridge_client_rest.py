"""
Tests for the BridgeClient REST surface against a local aiohttp server.
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from voicecall.bridge_client import BridgeClient, events_url_for
from voicecall.errors import TransportError


def _bridge_app(seen):
    """Minimal stand-in for the bridge REST API; records every request."""

    async def record(request):
        body = await request.json() if request.can_read_body else None
        seen.append({
            "method": request.method,
            "path": request.path,
            "body": body,
            "auth": request.headers.get("Authorization"),
        })

    async def health(request):
        await record(request)
        return web.json_response({"status": "ok", "ari": "connected"})

    async def originate(request):
        await record(request)
        return web.json_response({"callId": "c-1", "channel": "PJSIP/101-01", "status": "initiated"})

    async def list_calls(request):
        await record(request)
        return web.json_response({"calls": [{"callId": "c-1", "status": "answered"}, {"callId": "c-2"}]})

    async def get_call(request):
        await record(request)
        if request.match_info["call_id"] != "c-1":
            return web.json_response({"error": "Call not found"}, status=404)
        return web.json_response({"callId": "c-1", "status": "answered", "duration": 3})

    async def hangup(request):
        await record(request)
        return web.Response(status=204)

    async def post_action(request):
        await record(request)
        return web.json_response({"status": "ok", "durationSeconds": 1.5})

    async def broken(request):
        await record(request)
        return web.Response(text="<html>oops</html>", content_type="text/html")

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_post("/calls", originate)
    app.router.add_get("/calls", list_calls)
    app.router.add_get("/calls/{call_id}", get_call)
    app.router.add_delete("/calls/{call_id}", hangup)
    app.router.add_post("/calls/{call_id}/{action:.+}", post_action)
    app.router.add_get("/broken", broken)
    return app


@pytest.fixture
def seen():
    return []


def _base_url(server):
    return str(server.make_url("")).rstrip("/")


def test_events_url_for():
    assert events_url_for("http://localhost:3456") == "ws://localhost:3456/events"
    assert events_url_for("https://bridge.example.com/") == "wss://bridge.example.com/events"


@pytest.mark.asyncio
async def test_health_and_bearer_header(seen):
    async with TestServer(_bridge_app(seen)) as server:
        async with BridgeClient(_base_url(server), api_key="secret") as client:
            result = await client.health()

    assert result == {"status": "ok", "ari": "connected"}
    assert seen[0]["auth"] == "Bearer secret"


@pytest.mark.asyncio
async def test_no_auth_header_without_key(seen):
    async with TestServer(_bridge_app(seen)) as server:
        async with BridgeClient(_base_url(server)) as client:
            await client.health()

    assert seen[0]["auth"] is None


@pytest.mark.asyncio
async def test_call_control_requests(seen):
    async with TestServer(_bridge_app(seen)) as server:
        async with BridgeClient(_base_url(server)) as client:
            originated = await client.originate("PJSIP/101", "+15550001111", timeout=30)
            await client.play_media("c-1", "sound:hello-world")
            await client.start_recording("c-1", format="wav", max_duration=60, beep=True)
            await client.start_audio_capture("c-1")
            await client.stop_audio_capture("c-1")
            await client.send_dtmf("c-1", "123#")
            spoken = await client.speak("c-1", "Hello there", voice="en-US-Test")
            hung_up = await client.hangup("c-1")

    assert originated["callId"] == "c-1"
    assert spoken["durationSeconds"] == 1.5
    assert hung_up == {}
    assert [(r["method"], r["path"], r["body"]) for r in seen] == [
        ("POST", "/calls", {"endpoint": "PJSIP/101", "callerId": "+15550001111", "timeout": 30}),
        ("POST", "/calls/c-1/play", {"media": "sound:hello-world"}),
        ("POST", "/calls/c-1/record", {"format": "wav", "maxDuration": 60, "beep": True}),
        ("POST", "/calls/c-1/audio/start", {}),
        ("POST", "/calls/c-1/audio/stop", {}),
        ("POST", "/calls/c-1/dtmf", {"dtmf": "123#"}),
        ("POST", "/calls/c-1/speak", {"text": "Hello there", "voice": "en-US-Test"}),
        ("DELETE", "/calls/c-1", None),
    ]


@pytest.mark.asyncio
async def test_get_and_list_calls(seen):
    async with TestServer(_bridge_app(seen)) as server:
        async with BridgeClient(_base_url(server)) as client:
            call = await client.get_call("c-1")
            calls = await client.list_calls()

    assert call.call_id == "c-1"
    assert call.duration == 3
    assert [(c.call_id, c.status) for c in calls] == [("c-1", "answered"), ("c-2", "active")]


@pytest.mark.asyncio
async def test_non_2xx_raises_transport_error(seen):
    async with TestServer(_bridge_app(seen)) as server:
        async with BridgeClient(_base_url(server)) as client:
            with pytest.raises(TransportError) as exc_info:
                await client.get_call("missing")

    error = exc_info.value
    assert error.status == 404
    assert error.is_not_found
    assert error.method == "GET"
    assert error.path == "/calls/missing"
    assert "Call not found" in error.body


@pytest.mark.asyncio
async def test_non_json_body_raises_transport_error(seen):
    async with TestServer(_bridge_app(seen)) as server:
        async with BridgeClient(_base_url(server)) as client:
            with pytest.raises(TransportError, match="not JSON"):
                await client.request("GET", "/broken")


@pytest.mark.asyncio
async def test_network_failure_raises_transport_error():
    async with BridgeClient("http://127.0.0.1:1", request_timeout=2.0) as client:
        with pytest.raises(TransportError) as exc_info:
            await client.health()

    assert exc_info.value.status is None
