"""INVITE client transaction with Timer A/B/D/M.

RFC 3261 §17.1.1 defines the INVITE client transaction state machine
(Calling → Proceeding → Completed → Terminated) for non-2xx responses.

RFC 6026 §7.2 revises §17.1.1 to add the "Accepted" state for 2xx
responses, so retransmitted 2xx responses reach the TU instead of being
treated as strays: Calling/Proceeding → Accepted → Terminated.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum

from ringgate.sip.dialog import build_ack
from ringgate.sip.message import SipMessage

logger = logging.getLogger(__name__)

# RFC 3261 Appendix A, Table 4: default timer values
T1 = 0.5  # §17.1.1.1: RTT estimate (500ms default)
TIMER_B_DURATION = 64 * T1  # §17.1.1.2: INVITE transaction timeout (32s)
TIMER_D_DURATION = 32.0  # §17.1.1.2: wait for response retransmits (>32s)
TIMER_M_DURATION = 64 * T1  # RFC 6026 §8.4: absorb 2xx retransmits


class TxnState(StrEnum):
    """RFC 6026 §7.2 INVITE client transaction states."""

    CALLING = "calling"  # RFC 3261 §17.1.1.2: INVITE sent, nothing back yet
    PROCEEDING = "proceeding"  # RFC 3261 §17.1.1.2: provisional received
    ACCEPTED = "accepted"  # RFC 6026 §7.2: 2xx received
    COMPLETED = "completed"  # RFC 3261 §17.1.1.2: 300-699 received and ACKed
    TERMINATED = "terminated"  # RFC 3261 §17.1.1.2: MUST be destroyed


class InviteClientTxn:
    """RFC 6026 §7.2 INVITE client transaction state machine.

    Responses handed to the TU are queued in arrival order and drained with
    :meth:`next_response`, which returns ``None`` once the transaction has
    terminated. :attr:`done` is set on termination.

    Timers (RFC 3261 §17.1.1.2, RFC 6026 §8.4):
    - Timer A: retransmit INVITE, starts at T1, doubles while Calling
    - Timer B: 64*T1 (32s) with no response at all: transaction timeout
    - Timer D: absorb retransmitted non-2xx finals after the ACK
    - Timer M: absorb retransmitted 2xx after Accepted
    """

    def __init__(
        self,
        request: SipMessage,
        branch: str,
        send: Callable[[bytes], None],
        loop: asyncio.AbstractEventLoop,
        on_terminated: Callable[[str], None],
    ) -> None:
        self.request = request
        self.branch = branch
        self.state = TxnState.CALLING
        self.done = asyncio.Event()
        self._send = send
        self._loop = loop
        self._on_terminated = on_terminated
        self._responses: asyncio.Queue[SipMessage | None] = asyncio.Queue()
        self._ack: bytes | None = None
        self._timer_a: asyncio.TimerHandle | None = None
        self._timer_a_interval = T1
        self._timer_b: asyncio.TimerHandle | None = None
        self._timer_d: asyncio.TimerHandle | None = None
        self._timer_m: asyncio.TimerHandle | None = None

    def start(self) -> None:
        """Send the INVITE and arm Timers A and B.

        RFC 3261 §17.1.1.2: the initial state is Calling; the request MUST
        be passed to the transport, Timer A set to T1 (unreliable transport)
        and Timer B set to 64*T1.
        """
        self._send(self.request.encode())
        self._timer_a_interval = T1
        self._timer_a = self._loop.call_later(self._timer_a_interval, self._fire_a)
        self._timer_b = self._loop.call_later(TIMER_B_DURATION, self._fire_b)
        logger.debug(
            "INVITE txn %s: Calling, Timer A=%.1fs B=%.0fs",
            self.branch,
            T1,
            TIMER_B_DURATION,
        )

    async def next_response(self) -> SipMessage | None:
        """Next response in arrival order; ``None`` once terminated."""
        if self.state == TxnState.TERMINATED and self._responses.empty():
            return None
        return await self._responses.get()

    def receive_response(self, response: SipMessage) -> None:
        code = response.status_code
        if self.state in (TxnState.CALLING, TxnState.PROCEEDING):
            # Any response stops INVITE retransmission and Timer B
            _cancel(self._timer_a)
            self._timer_a = None
            if code < 200:
                # RFC 3261 §17.1.1.2: provisional → Proceeding, pass to TU
                self.state = TxnState.PROCEEDING
                _cancel(self._timer_b)
                self._timer_b = None
                self._responses.put_nowait(response)
            elif code < 300:
                # RFC 6026 §7.2: 2xx → Accepted, pass to TU; the TU ACKs
                self.state = TxnState.ACCEPTED
                _cancel(self._timer_b)
                self._timer_b = None
                self._timer_m = self._loop.call_later(TIMER_M_DURATION, self._fire_m)
                self._responses.put_nowait(response)
            else:
                # RFC 3261 §17.1.1.2: 300-699 → Completed; MUST generate an
                # ACK and pass the response up, then start Timer D
                self.state = TxnState.COMPLETED
                _cancel(self._timer_b)
                self._timer_b = None
                self._send_ack(response)
                self._timer_d = self._loop.call_later(TIMER_D_DURATION, self._fire_d)
                self._responses.put_nowait(response)
            logger.debug("INVITE txn %s: %d → %s", self.branch, code, self.state)
        elif self.state == TxnState.ACCEPTED and 200 <= code < 300:
            # RFC 6026 §7.2: retransmitted 2xx MUST be passed to the TU
            self._responses.put_nowait(response)
        elif self.state == TxnState.COMPLETED and code >= 300:
            # RFC 3261 §17.1.1.2: retransmitted final → re-send ACK only
            if self._ack is not None:
                self._send(self._ack)

    def terminate(self) -> None:
        """Externally terminate (e.g. replaced after an auth challenge)."""
        if self.state == TxnState.TERMINATED:
            return
        self._do_terminate()

    def _send_ack(self, response: SipMessage) -> None:
        # RFC 3261 §17.1.1.3: the ACK MUST contain a single Via equal to the
        # top Via of the original request
        ack = build_ack(self.request, response)
        via = self.request.header("Via")
        if via is not None:
            ack.headers.insert(0, ("Via", via))
        self._ack = ack.encode()
        self._send(self._ack)

    def _fire_a(self) -> None:
        """Timer A fired: retransmit INVITE and reschedule at double interval."""
        if self.state != TxnState.CALLING:
            return
        self._send(self.request.encode())
        self._timer_a_interval *= 2
        self._timer_a = self._loop.call_later(self._timer_a_interval, self._fire_a)
        logger.debug(
            "INVITE txn %s: Timer A retransmit, next=%.1fs",
            self.branch,
            self._timer_a_interval,
        )

    def _fire_b(self) -> None:
        """Timer B fired: no response at all.

        RFC 3261 §17.1.1.2: the client transaction SHOULD inform the TU that
        a timeout has occurred and MUST transition to Terminated.
        """
        if self.state != TxnState.CALLING:
            return
        logger.warning("INVITE txn %s: Timer B fired, no response", self.branch)
        self._do_terminate()

    def _fire_d(self) -> None:
        if self.state != TxnState.COMPLETED:
            return
        logger.debug("INVITE txn %s: Timer D fired, cleaning up", self.branch)
        self._do_terminate()

    def _fire_m(self) -> None:
        if self.state != TxnState.ACCEPTED:
            return
        logger.debug("INVITE txn %s: Timer M fired, cleaning up", self.branch)
        self._do_terminate()

    def _do_terminate(self) -> None:
        self.state = TxnState.TERMINATED
        _cancel(self._timer_a)
        _cancel(self._timer_b)
        _cancel(self._timer_d)
        _cancel(self._timer_m)
        self._timer_a = None
        self._timer_b = None
        self._timer_d = None
        self._timer_m = None
        # End-of-stream marker for next_response()
        self._responses.put_nowait(None)
        self.done.set()
        self._on_terminated(self.branch)


def _cancel(handle: asyncio.TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()
