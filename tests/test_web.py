"""Tests for the control page and the /call WebSocket."""

from __future__ import annotations

import asyncio

import pytest
from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from ringgate.call import CallResult
from ringgate.status import StatusEvent, StatusRelay
from ringgate.web import create_app

TOKEN = "open-sesame"


class FakeRunner:
    """Call runner that replays fixed events instead of dialing."""

    def __init__(self, events: list[StatusEvent] | None = None) -> None:
        self.events = events if events is not None else [
            StatusEvent.SENDING_INVITE,
            StatusEvent.TRYING,
            StatusEvent.HANGING_UP_TIMER,
        ]
        self.calls = 0

    async def __call__(self, status: StatusRelay) -> CallResult:
        self.calls += 1
        for event in self.events:
            status.post(event)
            await asyncio.sleep(0)
        return CallResult.COMPLETED


async def _statuses(ws) -> list[str]:
    received: list[str] = []
    async for msg in ws:
        assert msg.type == WSMsgType.TEXT
        received.append(msg.json()["status"])
    return received


@pytest.mark.asyncio
async def test_ui_renders_labels():
    app = create_app(FakeRunner(), call_token=TOKEN, call_duration=12.0)
    async with TestClient(TestServer(app)) as client:
        resp = await client.get("/ui")
        assert resp.status == 200
        assert resp.content_type == "text/html"
        text = await resp.text()
        assert "/call" in text
        assert "Hanging up (12s timer)" in text
        assert "sending_invite" in text
        # The token is never rendered into the page
        assert TOKEN not in text


@pytest.mark.asyncio
async def test_wrong_token_closes_with_4001():
    runner = FakeRunner()
    app = create_app(runner, call_token=TOKEN)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/call?token=nope")
        msg = await ws.receive()
        assert msg.type == WSMsgType.CLOSE
        assert msg.data == 4001
        assert msg.extra == "Wrong credentials"
        await ws.close()
        assert ws.close_code == 4001
    assert runner.calls == 0


@pytest.mark.asyncio
async def test_missing_token_rejected():
    runner = FakeRunner()
    app = create_app(runner, call_token=TOKEN)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/call")
        msg = await ws.receive()
        assert msg.type == WSMsgType.CLOSE
        assert msg.data == 4001
    assert runner.calls == 0


@pytest.mark.asyncio
async def test_query_token_streams_statuses():
    runner = FakeRunner()
    app = create_app(runner, call_token=TOKEN)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect(f"/call?token={TOKEN}")
        assert await _statuses(ws) == ["sending_invite", "trying", "hanging_up_timer"]
        assert ws.close_code == 1000
    assert runner.calls == 1


@pytest.mark.asyncio
async def test_header_token_accepted():
    runner = FakeRunner([StatusEvent.SENDING_INVITE, StatusEvent.ERROR])
    app = create_app(runner, call_token=TOKEN)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect(
            "/call", headers={"Authorization": f"Token {TOKEN}"}
        )
        assert await _statuses(ws) == ["sending_invite", "error"]
    assert runner.calls == 1


@pytest.mark.asyncio
async def test_empty_token_allows_any_caller():
    runner = FakeRunner([StatusEvent.ERROR])
    app = create_app(runner)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect("/call")
        assert await _statuses(ws) == ["error"]
    assert runner.calls == 1


@pytest.mark.asyncio
async def test_failing_runner_still_ends_stream():
    async def broken(status: StatusRelay) -> CallResult:
        status.post(StatusEvent.SENDING_INVITE)
        raise RuntimeError("boom")

    app = create_app(broken, call_token=TOKEN)
    async with TestClient(TestServer(app)) as client:
        ws = await client.ws_connect(f"/call?token={TOKEN}")
        statuses = await asyncio.wait_for(_statuses(ws), timeout=2.0)
        assert statuses == ["sending_invite"]
