"""ringgate entrypoint: serve the call trigger, or place one call and exit."""

import asyncio
import functools
import logging
import signal
import sys

from dotenv import load_dotenv

from ringgate.call import CallResult, CallTimings
from ringgate.config import Settings, load_settings
from ringgate.dialer import place_call
from ringgate.resolver import AddressResolutionError
from ringgate.sip.transport import TransportError
from ringgate.status import StatusRelay
from ringgate.web import create_app, start_webapp, stop_webapp

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _shutdown_on_signals(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)


async def serve(settings: Settings) -> None:
    shutdown = asyncio.Event()
    _shutdown_on_signals(shutdown)
    timings = CallTimings()
    runner = functools.partial(
        _run_call, settings, shutdown=shutdown, timings=timings
    )
    app = create_app(
        runner, call_token=settings.call_token, call_duration=timings.call_duration
    )
    web_runner = await start_webapp(
        app, settings.listen_address, settings.listen_port
    )
    logger.info(
        "HTTP server listening on %s:%d (WebSocket /call to start a call)",
        settings.listen_address,
        settings.listen_port,
    )
    try:
        await shutdown.wait()
        logger.info("Shutting down server...")
    finally:
        await stop_webapp(web_runner)


async def _run_call(
    settings: Settings,
    status: StatusRelay,
    *,
    shutdown: asyncio.Event,
    timings: CallTimings,
) -> CallResult:
    return await place_call(
        settings.call,
        status=status,
        shutdown=shutdown,
        timings=timings,
        sip_port=settings.sip_port,
    )


async def call_once(settings: Settings) -> CallResult:
    shutdown = asyncio.Event()
    _shutdown_on_signals(shutdown)
    return await place_call(
        settings.call, shutdown=shutdown, sip_port=settings.sip_port
    )


def main() -> int:
    load_dotenv()
    settings = load_settings()
    if settings.command == "call":
        try:
            result = asyncio.run(call_once(settings))
        except (AddressResolutionError, TransportError):
            # Already logged by place_call
            return 1
        return 0 if result in (CallResult.COMPLETED, CallResult.INTERRUPTED) else 1
    asyncio.run(serve(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
