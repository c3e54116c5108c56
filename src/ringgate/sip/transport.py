"""SIP user-agent client transport over UDP."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ringgate.sip.auth import AuthError, DigestCredentials, authorize
from ringgate.sip.message import (
    SipMessage,
    build_response,
    extract_branch,
    generate_branch,
    generate_tag,
    parse_cseq,
    parse_message,
)
from ringgate.sip.transaction import InviteClientTxn

logger = logging.getLogger(__name__)

_HandlerType = Callable[["SipMessage", tuple[str, int]], None]

ALLOWED_METHODS = "INVITE, ACK, BYE, CANCEL, OPTIONS"


class TransportError(RuntimeError):
    """A request could not be built or handed to the network."""


class SipClientProtocol(asyncio.DatagramProtocol):
    """Routes responses to client transactions and answers stray requests."""

    def __init__(self) -> None:
        self._transport: asyncio.DatagramTransport | None = None
        self._txns: dict[str, InviteClientTxn] = {}
        self._handlers: dict[str, _HandlerType] = {
            "BYE": self._handle_ok,
            "OPTIONS": self._handle_options,
            "ACK": self._handle_ack,
        }

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("Connection lost: %s", exc)
        self._transport = None
        for txn in list(self._txns.values()):
            txn.terminate()
        self._txns.clear()

    def error_received(self, exc: Exception) -> None:
        # ICMP unreachable and friends; the transaction timers cover loss
        logger.warning("SIP socket error: %s", exc)

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        # CRLF keepalive (RFC 5626 §4.4.1), answered with CRLF
        stripped = data.strip(b"\r\n ")
        if not stripped:
            logger.debug("Keepalive CRLF from %s", addr)
            self.send(b"\r\n")
            return

        logger.debug("Raw from %s:\n%s", addr, data.decode("utf-8", errors="replace"))
        try:
            msg = parse_message(data)
        except Exception:
            logger.exception("Failed to parse SIP message from %s", addr)
            return

        if msg.is_response:
            self._route_response(msg)
            return

        logger.info("Received %s from %s", msg.method, addr)
        handler = self._handlers.get(msg.method)
        if handler is not None:
            handler(msg, addr)
        else:
            # RFC 3261 §8.2.1: UAS MUST respond 405 for methods it does
            # not support, with an Allow header listing supported methods
            self.send(
                build_response(
                    msg,
                    405,
                    "Method Not Allowed",
                    extra_headers=[("Allow", ALLOWED_METHODS)],
                )
            )

    def _route_response(self, msg: SipMessage) -> None:
        # RFC 3261 §17.1.3: match on top Via branch and CSeq method
        branch = extract_branch(msg)
        txn = self._txns.get(branch) if branch else None
        _seq, method = parse_cseq(msg.header("CSeq") or "0 ")
        if txn is None or method != "INVITE":
            logger.debug("Stray %d for %s (branch %s)", msg.status_code, method, branch)
            return
        logger.info("Received %d %s", msg.status_code, msg.reason)
        txn.receive_response(msg)

    def _handle_ok(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        # RFC 3261 §15.1.2: UAS MUST generate a 2xx response to a BYE
        self.send(build_response(msg, 200, "OK"))

    def _handle_options(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        self.send(
            build_response(
                msg,
                200,
                "OK",
                to_tag=generate_tag(),
                extra_headers=[("Allow", ALLOWED_METHODS)],
            )
        )

    def _handle_ack(self, msg: SipMessage, addr: tuple[str, int]) -> None:
        # RFC 3261 §17: ACK never gets a response
        pass

    def send(self, data: bytes) -> bool:
        """Send on the connected socket; False once closed."""
        if not self.is_open:
            return False
        assert self._transport is not None
        self._transport.sendto(data)
        return True

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()

    def add_transaction(self, txn: InviteClientTxn) -> None:
        self._txns[txn.branch] = txn

    def remove_transaction(self, branch: str) -> None:
        self._txns.pop(branch, None)


class UdpSessionTransport:
    """Session transport towards one SIP domain over a connected UDP socket.

    ``send`` starts an INVITE client transaction whose responses are read
    with ``next_response()``; ``write`` sends one-off requests (ACK, CANCEL,
    BYE) without tracking responses. Writes after :meth:`close` are logged
    and dropped.
    """

    def __init__(
        self,
        protocol: SipClientProtocol,
        *,
        sent_by: tuple[str, int],
    ) -> None:
        self._protocol = protocol
        self._sent_by = sent_by

    @property
    def sent_by(self) -> tuple[str, int]:
        return self._sent_by

    def _via(self) -> str:
        host, port = self._sent_by
        # RFC 3581 §3: empty rport asks the server to answer to the
        # observed source port (NAT traversal)
        return f"SIP/2.0/UDP {host}:{port};branch={generate_branch()};rport"

    def send(self, request: SipMessage) -> InviteClientTxn:
        """Start an INVITE client transaction for a copy of *request*."""
        if not self._protocol.is_open:
            raise TransportError("Transport is closed")
        stamped = request.copy()
        stamped.remove_header("Via")
        via = self._via()
        stamped.headers.insert(0, ("Via", via))
        branch = extract_branch(stamped)
        assert branch is not None
        txn = InviteClientTxn(
            request=stamped,
            branch=branch,
            send=self._protocol.send,
            loop=asyncio.get_running_loop(),
            on_terminated=self._protocol.remove_transaction,
        )
        self._protocol.add_transaction(txn)
        logger.info("Sending %s %s (branch %s)", stamped.method, stamped.uri, branch)
        txn.start()
        return txn

    def send_with_credentials(
        self,
        request: SipMessage,
        challenge: SipMessage,
        credentials: DigestCredentials,
    ) -> InviteClientTxn:
        """Re-send *request* answering the 401/407 in *challenge*.

        RFC 3261 §22.2: the retried request carries a new CSeq (incremented)
        and a new branch, but the same Call-ID, From and To.
        """
        retry = request.copy()
        seq, method = parse_cseq(retry.header("CSeq") or "1 INVITE")
        retry.set_header("CSeq", f"{seq + 1} {method}")
        try:
            name, value = authorize(retry, challenge, credentials)
        except AuthError as exc:
            raise TransportError(f"Cannot answer challenge: {exc}") from exc
        retry.set_header(name, value)
        return self.send(retry)

    def write(self, message: SipMessage) -> None:
        """Fire-and-forget send; stamps a fresh Via if the message has none."""
        if message.header("Via") is None:
            message = message.copy()
            message.headers.insert(0, ("Via", self._via()))
        if self._protocol.send(message.encode()):
            logger.info("%s sent", message.method)
        else:
            logger.warning("Transport closed, dropped %s", message.method)

    def close(self) -> None:
        self._protocol.close()


async def open_transport(
    host: str,
    port: int = 5060,
    *,
    sent_by_host: str,
) -> UdpSessionTransport:
    """Connect a UDP socket to the SIP domain and wrap it in a transport."""
    loop = asyncio.get_running_loop()
    protocol = SipClientProtocol()
    try:
        transport, _ = await loop.create_datagram_endpoint(
            lambda: protocol, remote_addr=(host, port)
        )
    except OSError as exc:
        raise TransportError(f"Cannot reach {host}:{port}: {exc}") from exc
    _, local_port = transport.get_extra_info("sockname")[:2]
    logger.info("SIP transport %s:%d → %s:%d", sent_by_host, local_port, host, port)
    return UdpSessionTransport(protocol, sent_by=(sent_by_host, local_port))
