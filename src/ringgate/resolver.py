"""Public address discovery via plain-text "what is my IP" services."""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Sequence

import aiohttp

logger = logging.getLogger(__name__)

# Services that return a bare IP in the body (no API key). Tried in order.
DEFAULT_ENDPOINTS = (
    "https://api.ipify.org",
    "https://icanhazip.com",
    "https://ifconfig.me/ip",
)
LOOKUP_TIMEOUT = 8.0
MAX_BODY = 64


class AddressResolutionError(RuntimeError):
    """No endpoint produced a usable address."""


async def _fetch(session: aiohttp.ClientSession, url: str) -> str:
    timeout = aiohttp.ClientTimeout(total=LOOKUP_TIMEOUT)
    async with session.get(url, timeout=timeout) as resp:
        if resp.status != 200:
            raise ValueError(f"HTTP {resp.status}")
        body = b""
        async for chunk in resp.content.iter_any():
            body += chunk
            if len(body) > MAX_BODY:
                raise ValueError(f"body larger than {MAX_BODY} bytes")
    return body.decode("ascii", errors="replace").strip()


async def discover_public_ip(
    endpoints: Sequence[str] = DEFAULT_ENDPOINTS,
    *,
    session: aiohttp.ClientSession | None = None,
) -> str:
    """Return this host's public IPv4/IPv6 address.

    Each endpoint gets one request with an 8 s timeout; the first non-empty
    body that parses as an IP address wins. There are no retries beyond
    moving on to the next endpoint.
    """
    owned = session is None
    if session is None:
        session = aiohttp.ClientSession()
    try:
        for url in endpoints:
            logger.info("Checking public IP via %s", url)
            try:
                ip = await _fetch(session, url)
            except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
                logger.warning(
                    "Public IP lookup via %s failed: %s",
                    url,
                    exc or type(exc).__name__,
                )
                continue
            if not ip:
                logger.warning("Public IP lookup via %s: empty response", url)
                continue
            try:
                ipaddress.ip_address(ip)
            except ValueError:
                logger.warning("Public IP lookup via %s: not an address: %r", url, ip)
                continue
            logger.info("Public IP discovered: %s", ip)
            return ip
    finally:
        if owned:
            await session.close()

    raise AddressResolutionError(f"all {len(endpoints)} endpoints failed")
