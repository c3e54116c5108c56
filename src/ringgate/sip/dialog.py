"""Outbound dialog message construction.

Every message of one call attempt is derived from the INVITE: the
initiator/target addresses and the Call-ID are cloned, and the CSeq is
chosen per method (RFC 3261 §9.1 for CANCEL, §12.2.1.1 for BYE, §13.2.2.4
and §17.1.1.3 for ACK).
"""

from __future__ import annotations

from ringgate.config import CallConfig
from ringgate.sip.message import (
    SipMessage,
    generate_call_id,
    generate_tag,
    new_request,
    parse_cseq,
)

USER_AGENT = "ringgate"


def destination_uri(config: CallConfig) -> str:
    return f"sip:{config.destination}@{config.domain}"


def build_invite(
    config: CallConfig, contact_host: str, *, call_id: str | None = None
) -> SipMessage:
    """Build the initial INVITE (no Via yet; the transport stamps it)."""
    target = destination_uri(config)
    headers = [
        ("From", f"<sip:{config.user}@{config.domain}>;tag={generate_tag()}"),
        ("To", f"<{target}>"),
        ("Call-ID", call_id or generate_call_id(contact_host)),
        ("CSeq", "1 INVITE"),
        # RFC 3261 §8.1.1.8: Contact MUST be present in an INVITE and
        # points at where the peer reaches us; the public address is used
        # so the far end can route in-dialog requests through NAT
        ("Contact", f"<sip:{config.user}@{contact_host}>"),
        # RFC 3261 §8.1.1.6: Max-Forwards SHOULD start at 70
        ("Max-Forwards", "70"),
        ("User-Agent", USER_AGENT),
    ]
    if config.asserted_identity:
        # RFC 3325 §9.1: asserted identity presented to a trusted provider
        headers.append(("P-Asserted-Identity", config.asserted_identity))
    return new_request("INVITE", target, headers=headers)


def _clone_dialog(invite: SipMessage, method: str, *, to: str | None = None) -> SipMessage:
    headers: list[tuple[str, str]] = []
    for name in ("From", "To", "Call-ID"):
        value = invite.header(name)
        if name == "To" and to is not None:
            value = to
        if value is not None:
            headers.append((name, value))
    headers.append(("Max-Forwards", "70"))
    return new_request(method, invite.uri, headers=headers)


def build_cancel(invite: SipMessage) -> SipMessage:
    """CANCEL for a pending INVITE.

    RFC 3261 §9.1: Request-URI, Call-ID, To, the numeric part of CSeq and
    From MUST be identical to the request being cancelled, and the CANCEL
    MUST carry a single Via equal to the top Via of that request.
    """
    cancel = _clone_dialog(invite, "CANCEL")
    seq, _method = parse_cseq(invite.header("CSeq") or "1 INVITE")
    cancel.headers.append(("CSeq", f"{seq} CANCEL"))
    via = invite.header("Via")
    if via is not None:
        cancel.headers.insert(0, ("Via", via))
    return cancel


def build_bye(invite: SipMessage, success: SipMessage | None = None) -> SipMessage:
    """BYE ending the session set up by *invite*.

    RFC 3261 §12.2.1.1: the To carries the remote tag learned from the 2xx
    when there is one; CSeq is the INVITE's plus one.
    """
    to = success.header("To") if success is not None else None
    bye = _clone_dialog(invite, "BYE", to=to)
    seq, _method = parse_cseq(invite.header("CSeq") or "1 INVITE")
    bye.headers.append(("CSeq", f"{seq + 1} BYE"))
    return bye


def build_ack(invite: SipMessage, response: SipMessage) -> SipMessage:
    """ACK for a final response to *invite*.

    RFC 3261 §13.2.2.4 (2xx) and §17.1.1.3 (non-2xx): CSeq number equals
    the INVITE's with method ACK; To is copied from the response.
    """
    ack = _clone_dialog(invite, "ACK", to=response.header("To"))
    seq, _method = parse_cseq(invite.header("CSeq") or "1 INVITE")
    ack.headers.append(("CSeq", f"{seq} ACK"))
    return ack
