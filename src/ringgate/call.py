"""Outbound call lifecycle: INVITE, auth, call timer, guaranteed teardown.

One :class:`CallEngine` drives one call attempt::

    Idle ──INVITE──▶ AwaitingProvisional ──1xx──▶ AwaitingFinal
                        │  │  │                     │  │  │
                        │  │  └─2xx──▶ Established ◀┘  │  └─timer──▶ BYE
                        │  └─401/407─▶ (re-INVITE, same phase)
                        └─no 1xx within 2s──▶ CANCEL

Every exit lands in Terminated. The call timer starts at the first
provisional response (or at an immediate 2xx) and, once running, is never
moved; it wins over the provisional wait on every iteration.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from enum import StrEnum
from typing import Any, Protocol

from ringgate.config import CallConfig
from ringgate.sip.auth import DigestCredentials
from ringgate.sip.dialog import build_ack, build_bye, build_cancel, build_invite
from ringgate.sip.message import SipMessage
from ringgate.sip.transport import TransportError
from ringgate.status import StatusEvent, StatusRelay

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CallTimings:
    provisional_timeout: float = 2.0
    call_duration: float = 12.0
    max_auth_challenges: int = 3
    # How long the shutdown hook lingers so CANCEL/BYE leave the socket
    cleanup_grace: float = 0.5


class ResponseKind(StrEnum):
    PROVISIONAL = "provisional"
    SUCCESS = "success"
    CHALLENGE = "challenge"
    FAILURE = "failure"


def classify_response(response: SipMessage) -> ResponseKind:
    """Map a status code onto the outcome the state machine acts on."""
    code = response.status_code
    if code < 200:
        return ResponseKind.PROVISIONAL
    if code < 300:
        return ResponseKind.SUCCESS
    # RFC 3261 §22.2/§22.3: 401 from a UAS/registrar, 407 from a proxy
    if code in (401, 407):
        return ResponseKind.CHALLENGE
    return ResponseKind.FAILURE


class CallState(StrEnum):
    IDLE = "idle"
    AWAITING_PROVISIONAL = "awaiting_provisional"
    AWAITING_FINAL = "awaiting_final"
    ESTABLISHED = "established"
    TERMINATED = "terminated"


class CallResult(StrEnum):
    COMPLETED = "completed"  # established (or timed out ringing), BYE sent
    ABORTED = "aborted"  # no provisional response in time, CANCEL sent
    FAILED = "failed"  # rejected, too many challenges, or transport failure
    INTERRUPTED = "interrupted"  # shutdown requested, cleanup hook fired


class ResponseStream(Protocol):
    """One INVITE transaction as seen by the engine."""

    request: SipMessage
    done: asyncio.Event

    async def next_response(self) -> SipMessage | None: ...

    def terminate(self) -> None: ...


class SessionTransport(Protocol):
    def send(self, request: SipMessage) -> ResponseStream: ...

    def send_with_credentials(
        self,
        request: SipMessage,
        challenge: SipMessage,
        credentials: DigestCredentials,
    ) -> ResponseStream: ...

    def write(self, message: SipMessage) -> None: ...


@dataclasses.dataclass
class CallAttempt:
    """Mutable state of one call; owned by a single engine run."""

    request: SipMessage
    transaction: ResponseStream | None = None
    auth_challenges: int = 0
    provisional_deadline: float | None = None
    call_deadline: float | None = None
    last_response: SipMessage | None = None
    finished: bool = False

    @property
    def state(self) -> CallState:
        if self.finished:
            return CallState.TERMINATED
        if self.success is not None:
            return CallState.ESTABLISHED
        if self.transaction is None and self.last_response is None:
            return CallState.IDLE
        if self.call_deadline is None:
            return CallState.AWAITING_PROVISIONAL
        return CallState.AWAITING_FINAL

    @property
    def success(self) -> SipMessage | None:
        if (
            self.last_response is not None
            and classify_response(self.last_response) is ResponseKind.SUCCESS
        ):
            return self.last_response
        return None

    def retire_transaction(self) -> None:
        if self.transaction is not None:
            self.transaction.terminate()
            self.transaction = None

    def adopt(self, transaction: ResponseStream) -> None:
        """Make *transaction* the live response stream.

        Only one stream is live at a time: the previous one must have been
        retired first.
        """
        if self.transaction is not None:
            raise RuntimeError("previous transaction still live")
        self.transaction = transaction
        self.request = transaction.request

    def start_call_timer(self, now: float, duration: float) -> bool:
        """Arm the call timer once; later calls leave it untouched."""
        if self.call_deadline is not None:
            return False
        self.call_deadline = now + duration
        return True


class _Wakeup(enum.Enum):
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"


class CallEngine:
    """Drives exactly one outbound call from INVITE to teardown.

    *shutdown* is the operator's stop signal (Ctrl+C, server shutdown). When
    it fires, the state machine stops where it is and a separate hook sends
    CANCEL followed by BYE for the current INVITE. A normal finish never
    fires the hook.
    """

    def __init__(
        self,
        config: CallConfig,
        transport: SessionTransport,
        contact_host: str,
        *,
        status: StatusRelay | None = None,
        shutdown: asyncio.Event | None = None,
        timings: CallTimings = CallTimings(),
    ) -> None:
        self._config = config
        self._transport = transport
        self._contact_host = contact_host
        self._status = status
        self._shutdown = shutdown if shutdown is not None else asyncio.Event()
        self._timings = timings
        self._credentials = DigestCredentials(config.user, config.password)
        self._attempt: CallAttempt | None = None

    @property
    def attempt(self) -> CallAttempt | None:
        return self._attempt

    def _emit(self, event: StatusEvent) -> None:
        if self._status is not None:
            self._status.post(event)

    async def run(self) -> CallResult:
        if self._attempt is not None:
            raise RuntimeError("CallEngine.run() may only be called once")
        attempt = self._attempt = CallAttempt(
            request=build_invite(self._config, self._contact_host)
        )
        if self._shutdown.is_set():
            logger.warning("Shutdown requested before dialing, no INVITE sent")
            attempt.finished = True
            if self._status is not None:
                self._status.close()
            return CallResult.INTERRUPTED
        self._emit(StatusEvent.SENDING_INVITE)
        cleanup = asyncio.create_task(self._cleanup_on_shutdown(attempt))
        try:
            result = await self._drive(attempt)
            logger.info("Call %s: %s", attempt.request.header("Call-ID"), result)
            return result
        finally:
            if self._shutdown.is_set():
                await cleanup
            else:
                cleanup.cancel()
            attempt.finished = True
            attempt.retire_transaction()
            if self._status is not None:
                self._status.close()

    async def _drive(self, attempt: CallAttempt) -> CallResult:
        loop = asyncio.get_running_loop()
        timings = self._timings
        logger.info(
            "Dialing %s@%s", self._config.destination, self._config.domain
        )
        try:
            attempt.adopt(self._transport.send(attempt.request))
        except TransportError as exc:
            logger.error("Cannot send INVITE: %s", exc)
            self._emit(StatusEvent.ERROR)
            return CallResult.FAILED
        attempt.provisional_deadline = loop.time() + timings.provisional_timeout

        while True:
            assert attempt.transaction is not None
            # A running call timer takes precedence over the provisional wait
            if attempt.call_deadline is not None:
                wake = await self._wait(attempt.call_deadline, attempt.transaction)
                if wake is _Wakeup.TIMEOUT:
                    return self._hang_up_on_timer(attempt)
            else:
                assert attempt.provisional_deadline is not None
                wake = await self._wait(
                    attempt.provisional_deadline, attempt.transaction
                )
                if wake is _Wakeup.TIMEOUT:
                    logger.warning(
                        "No provisional response within %.1fs, cancelling",
                        timings.provisional_timeout,
                    )
                    self._emit(StatusEvent.ERROR)
                    self._transport.write(build_cancel(attempt.request))
                    return CallResult.ABORTED

            if wake is _Wakeup.SHUTDOWN:
                logger.warning("Shutdown requested while %s", attempt.state)
                return CallResult.INTERRUPTED
            if wake is None:
                logger.error("Response stream closed while %s", attempt.state)
                self._emit(StatusEvent.ERROR)
                return CallResult.FAILED

            result = await self._handle_response(attempt, wake)
            if result is not None:
                return result

    async def _handle_response(
        self, attempt: CallAttempt, response: SipMessage
    ) -> CallResult | None:
        now = asyncio.get_running_loop().time()
        timings = self._timings
        kind = classify_response(response)
        attempt.last_response = response

        if kind is ResponseKind.PROVISIONAL:
            if attempt.start_call_timer(now, timings.call_duration):
                self._emit(StatusEvent.TRYING)
                logger.info(
                    "%d %s: %.0fs call timer started",
                    response.status_code,
                    response.reason,
                    timings.call_duration,
                )
            return None

        if kind is ResponseKind.SUCCESS:
            attempt.start_call_timer(now, timings.call_duration)
            return await self._established(attempt, response)

        if kind is ResponseKind.CHALLENGE:
            return self._authenticate(attempt, response, now)

        logger.error("Call failed: %d %s", response.status_code, response.reason)
        self._emit(StatusEvent.ERROR)
        return CallResult.FAILED

    def _authenticate(
        self, attempt: CallAttempt, challenge: SipMessage, now: float
    ) -> CallResult | None:
        timings = self._timings
        attempt.auth_challenges += 1
        logger.info(
            "Auth challenge %d/%d (%d)",
            attempt.auth_challenges,
            timings.max_auth_challenges,
            challenge.status_code,
        )
        if attempt.auth_challenges > timings.max_auth_challenges:
            # The challenged INVITE is already final (and ACKed by the
            # transaction), so there is nothing left to CANCEL
            logger.error(
                "Too many auth challenges (%d), giving up", attempt.auth_challenges
            )
            self._emit(StatusEvent.ERROR)
            return CallResult.FAILED

        self._emit(StatusEvent.AUTHENTICATING)
        challenged = attempt.request
        attempt.retire_transaction()
        try:
            transaction = self._transport.send_with_credentials(
                challenged, challenge, self._credentials
            )
        except TransportError as exc:
            logger.error("Auth apply error: %s", exc)
            self._emit(StatusEvent.ERROR)
            return CallResult.FAILED
        attempt.adopt(transaction)
        if attempt.call_deadline is None:
            # The re-sent INVITE gets its own provisional window
            attempt.provisional_deadline = now + timings.provisional_timeout
        return None

    async def _established(
        self, attempt: CallAttempt, response: SipMessage
    ) -> CallResult:
        assert attempt.call_deadline is not None
        logger.info(
            "Call established (%d %s), sending ACK",
            response.status_code,
            response.reason,
        )
        self._transport.write(build_ack(attempt.request, response))
        remaining = attempt.call_deadline - asyncio.get_running_loop().time()
        logger.info("Sending BYE in %.1fs", max(remaining, 0.0))
        stream = attempt.transaction
        while True:
            wake = await self._wait(attempt.call_deadline, stream)
            if wake is _Wakeup.SHUTDOWN:
                logger.warning("Shutdown requested while %s", attempt.state)
                return CallResult.INTERRUPTED
            if wake is _Wakeup.TIMEOUT:
                return self._hang_up_on_timer(attempt)
            if wake is None:
                # Timer M ended the transaction; only the deadline is left
                stream = None
            elif classify_response(wake) is ResponseKind.SUCCESS:
                # RFC 3261 §13.2.2.4: every retransmitted 2xx gets an ACK
                logger.debug("2xx retransmitted, re-sending ACK")
                self._transport.write(build_ack(attempt.request, wake))

    def _hang_up_on_timer(self, attempt: CallAttempt) -> CallResult:
        logger.info("%.0fs call timer expired, sending BYE", self._timings.call_duration)
        self._emit(StatusEvent.HANGING_UP_TIMER)
        self._transport.write(build_bye(attempt.request, attempt.success))
        return CallResult.COMPLETED

    async def _wait(
        self, deadline: float, stream: ResponseStream | None
    ) -> SipMessage | None | _Wakeup:
        """Wait for whichever comes first: response, shutdown or deadline.

        Returns the response (``None`` when the stream has closed), or a
        :class:`_Wakeup` for shutdown/deadline. Shutdown wins over a
        response that became ready in the same loop iteration.
        """
        loop = asyncio.get_running_loop()
        stop = asyncio.ensure_future(self._shutdown.wait())
        waiters: set[asyncio.Future[Any]] = {stop}
        recv: asyncio.Future[SipMessage | None] | None = None
        if stream is not None:
            recv = asyncio.ensure_future(stream.next_response())
            waiters.add(recv)
        try:
            done, _pending = await asyncio.wait(
                waiters,
                timeout=max(deadline - loop.time(), 0.0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for fut in waiters:
                if not fut.done():
                    fut.cancel()
        if stop in done:
            return _Wakeup.SHUTDOWN
        if recv is not None and recv in done:
            return recv.result()
        return _Wakeup.TIMEOUT

    async def _cleanup_on_shutdown(self, attempt: CallAttempt) -> None:
        """Send CANCEL then BYE for the current INVITE once shutdown fires."""
        await self._shutdown.wait()
        logger.warning("Interrupted, sending forced CANCEL and BYE")
        self._transport.write(build_cancel(attempt.request))
        self._transport.write(build_bye(attempt.request, attempt.success))
        await asyncio.sleep(self._timings.cleanup_grace)
        logger.info("Cleanup sent")
