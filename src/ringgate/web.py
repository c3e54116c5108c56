"""Control page and call-trigger WebSocket (aiohttp)."""

from __future__ import annotations

import asyncio
import functools
import logging
import secrets
from collections.abc import Awaitable, Callable

import aiohttp_jinja2
import jinja2
from aiohttp import web

from ringgate.call import CallResult
from ringgate.status import StatusEvent, StatusRelay

logger = logging.getLogger(__name__)

CallRunner = Callable[[StatusRelay], Awaitable[CallResult]]

WRONG_CREDENTIALS = 4001

STATUS_LABELS = {
    StatusEvent.SENDING_INVITE: "Sending INVITE...",
    StatusEvent.AUTHENTICATING: "Authenticating...",
    StatusEvent.TRYING: "Trying (100)...",
    StatusEvent.HANGING_UP_TIMER: "Hanging up ({seconds:.0f}s timer)",
    StatusEvent.ERROR: "Error, check logs",
}

_token_key = web.AppKey("call_token", str)
_runner_key = web.AppKey("call_runner", CallRunner)
_call_duration_key = web.AppKey("call_duration", float)
_calls_key = web.AppKey("calls", set)


def token_from_request(request: web.Request) -> str:
    """Token from ``Authorization: Token <value>``, else ``?token=``."""
    header = request.headers.get("Authorization", "")
    if header.startswith("Token "):
        return header[len("Token ") :].strip()
    return request.query.get("token", "")


async def _ui_handler(request: web.Request) -> web.Response:
    seconds = request.app[_call_duration_key]
    labels = {
        str(event): label.format(seconds=seconds)
        for event, label in STATUS_LABELS.items()
    }
    context = {"status_labels": labels}
    return aiohttp_jinja2.render_template("ui.html", request, context)


async def _call_handler(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    expected = request.app[_token_key]
    if not secrets.compare_digest(
        token_from_request(request).encode(), expected.encode()
    ):
        logger.warning("Rejected /call from %s: wrong token", request.remote)
        await ws.close(code=WRONG_CREDENTIALS, message=b"Wrong credentials")
        return ws

    # The client only reads; stream statuses until the run closes the relay
    relay = StatusRelay()
    task = asyncio.create_task(request.app[_runner_key](relay))
    calls = request.app[_calls_key]
    calls.add(task)
    task.add_done_callback(calls.discard)
    task.add_done_callback(functools.partial(_call_finished, relay))
    logger.info("Call started from %s", request.remote)

    async for event in relay:
        if ws.closed:
            continue
        try:
            await ws.send_json({"status": str(event)})
        except ConnectionResetError as exc:
            logger.debug("Status %s not delivered: %s", event, exc)

    await ws.close()
    return ws


def _call_finished(relay: StatusRelay, task: asyncio.Task[CallResult]) -> None:
    relay.close()
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Call run failed", exc_info=exc)


async def _drain_calls(app: web.Application) -> None:
    """Let running calls finish their cleanup before the loop goes away."""
    calls = list(app[_calls_key])
    if calls:
        logger.info("Waiting for %d call(s) to finish", len(calls))
        await asyncio.gather(*calls, return_exceptions=True)


def create_app(
    runner: CallRunner,
    *,
    call_token: str = "",
    call_duration: float = 12.0,
) -> web.Application:
    app = web.Application()
    aiohttp_jinja2.setup(
        app,
        loader=jinja2.PackageLoader("ringgate"),
        autoescape=jinja2.select_autoescape(),
    )
    app[_token_key] = call_token
    app[_runner_key] = runner
    app[_call_duration_key] = call_duration
    app[_calls_key] = set()
    app.router.add_get("/ui", _ui_handler)
    app.router.add_get("/call", _call_handler)
    app.on_shutdown.append(_drain_calls)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
