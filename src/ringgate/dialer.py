"""One call run end to end: resolve, open transport, drive the engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from ringgate.call import CallEngine, CallResult, CallTimings
from ringgate.config import CallConfig
from ringgate.resolver import (
    DEFAULT_ENDPOINTS,
    AddressResolutionError,
    discover_public_ip,
)
from ringgate.sip.transport import TransportError, UdpSessionTransport, open_transport
from ringgate.status import StatusEvent, StatusRelay

logger = logging.getLogger(__name__)


async def _connect(
    config: CallConfig, endpoints: Sequence[str], sip_port: int
) -> tuple[str, UdpSessionTransport]:
    public_ip = await discover_public_ip(endpoints)
    transport = await open_transport(config.domain, sip_port, sent_by_host=public_ip)
    return public_ip, transport


async def _connect_unless_shutdown(
    config: CallConfig,
    endpoints: Sequence[str],
    sip_port: int,
    shutdown: asyncio.Event,
) -> tuple[str, UdpSessionTransport] | None:
    """Run the setup until it finishes or *shutdown* fires.

    Returns ``None`` on shutdown; a transport opened in the meantime is
    closed again.
    """
    setup = asyncio.ensure_future(_connect(config, endpoints, sip_port))
    stop = asyncio.ensure_future(shutdown.wait())
    try:
        await asyncio.wait({setup, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not shutdown.is_set() and not setup.done():
            setup.cancel()
    if not shutdown.is_set():
        return setup.result()

    setup.cancel()
    try:
        _public_ip, transport = await setup
    except (asyncio.CancelledError, AddressResolutionError, TransportError):
        return None
    transport.close()
    return None


async def place_call(
    config: CallConfig,
    *,
    status: StatusRelay | None = None,
    shutdown: asyncio.Event | None = None,
    timings: CallTimings = CallTimings(),
    endpoints: Sequence[str] = DEFAULT_ENDPOINTS,
    sip_port: int = 5060,
) -> CallResult:
    """Place one call and return how it ended.

    Failures before signalling starts (no public address, SIP domain
    unreachable) are reported as an ``error`` event when there is a status
    relay; without one they propagate, aborting a direct command-line run.
    A shutdown during that setup ends the run as interrupted without any
    SIP message. The relay is closed on every path.
    """
    if shutdown is None:
        shutdown = asyncio.Event()
    try:
        try:
            connected = await _connect_unless_shutdown(
                config, endpoints, sip_port, shutdown
            )
        except (AddressResolutionError, TransportError) as exc:
            logger.error("Cannot start call: %s", exc)
            if status is None:
                raise
            status.post(StatusEvent.ERROR)
            return CallResult.FAILED
        if connected is None:
            logger.warning("Shutdown requested before dialing")
            return CallResult.INTERRUPTED
        public_ip, transport = connected

        engine = CallEngine(
            config,
            transport,
            public_ip,
            status=status,
            shutdown=shutdown,
            timings=timings,
        )
        try:
            return await engine.run()
        finally:
            transport.close()
    finally:
        if status is not None:
            status.close()
