"""Shared test fixtures."""

from __future__ import annotations

import asyncio

import pytest

from ringgate.config import CallConfig
from ringgate.sip.auth import DigestCredentials
from ringgate.sip.message import (
    SipMessage,
    build_response,
    parse_cseq,
    parse_message,
)
from ringgate.sip.transport import TransportError

CALL_CONFIG = CallConfig(
    user="100200",
    password="s3cret",
    domain="sip.example.com",
    destination="972501234567",
)

CHALLENGE = 'Digest realm="sip.example.com", nonce="abc123", qop="auth"'


def make_response(request: SipMessage, code: int, reason: str) -> SipMessage:
    """Response to *request* as a SIP proxy would send it."""
    extra: list[tuple[str, str]] = []
    if code == 401:
        extra.append(("WWW-Authenticate", CHALLENGE))
    elif code == 407:
        extra.append(("Proxy-Authenticate", CHALLENGE))
    to_tag = None if code == 100 else "remote1"
    return parse_message(
        build_response(request, code, reason, to_tag=to_tag, extra_headers=extra)
    )


class FakeStream:
    """In-memory stand-in for an INVITE client transaction."""

    def __init__(self, request: SipMessage) -> None:
        self.request = request
        self.done = asyncio.Event()
        self.terminated = False
        self._queue: asyncio.Queue[SipMessage | None] = asyncio.Queue()

    def push(self, response: SipMessage | None) -> None:
        self._queue.put_nowait(response)

    async def next_response(self) -> SipMessage | None:
        return await self._queue.get()

    def terminate(self) -> None:
        self.terminated = True
        self.done.set()


# (delay after the INVITE is sent, status code or None to close, reason)
Script = list[tuple[float, int | None, str]]


class FakeSessionTransport:
    """Scripted session transport.

    The n-th INVITE sent (initial or authenticated re-send) plays the n-th
    script; every one-off message handed to ``write`` is recorded with the
    loop time it was written at.
    """

    def __init__(self, scripts: list[Script] | None = None) -> None:
        self.scripts = scripts or []
        self.streams: list[FakeStream] = []
        self.sent_at: list[float] = []
        self.written: list[tuple[float, SipMessage]] = []
        self.credentials: list[DigestCredentials] = []
        self.max_live = 0
        self.fail_send = False

    @property
    def written_methods(self) -> list[str]:
        return [msg.method for _t, msg in self.written]

    def written_of(self, method: str) -> list[tuple[float, SipMessage]]:
        return [(t, msg) for t, msg in self.written if msg.method == method]

    def _start(self, request: SipMessage) -> FakeStream:
        if self.fail_send:
            raise TransportError("socket closed")
        loop = asyncio.get_running_loop()
        stamped = request.copy()
        stamped.remove_header("Via")
        stamped.headers.insert(
            0,
            (
                "Via",
                f"SIP/2.0/UDP 203.0.113.7:5070;branch=z9hG4bKfake{len(self.streams)}",
            ),
        )
        stream = FakeStream(stamped)
        self.streams.append(stream)
        self.sent_at.append(loop.time())
        live = sum(1 for s in self.streams if not s.terminated)
        self.max_live = max(self.max_live, live)

        index = len(self.streams) - 1
        script = self.scripts[index] if index < len(self.scripts) else []
        for delay, code, reason in script:
            response = None if code is None else make_response(stamped, code, reason)
            loop.call_later(delay, stream.push, response)
        return stream

    def send(self, request: SipMessage) -> FakeStream:
        return self._start(request)

    def send_with_credentials(
        self,
        request: SipMessage,
        challenge: SipMessage,
        credentials: DigestCredentials,
    ) -> FakeStream:
        self.credentials.append(credentials)
        retry = request.copy()
        seq, method = parse_cseq(retry.header("CSeq") or "1 INVITE")
        retry.set_header("CSeq", f"{seq + 1} {method}")
        retry.set_header("Authorization", "Digest fake")
        return self._start(retry)

    def write(self, message: SipMessage) -> None:
        self.written.append((asyncio.get_running_loop().time(), message))


@pytest.fixture
def call_config() -> CallConfig:
    return CALL_CONFIG


@pytest.fixture
def fake_session():
    """Factory building a FakeSessionTransport from per-INVITE scripts."""
    return FakeSessionTransport


@pytest.fixture
def response_for():
    return make_response
