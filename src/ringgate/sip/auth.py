"""SIP digest authentication (RFC 3261 §22.4, RFC 2617)."""

from __future__ import annotations

import dataclasses
import hashlib
import os

from ringgate.sip.message import SipMessage


class AuthError(ValueError):
    """The challenge cannot be answered."""


@dataclasses.dataclass(frozen=True)
class DigestCredentials:
    username: str
    password: str


def _md5_hex(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest()


def parse_challenge(header_value: str) -> dict[str, str]:
    """Parse a ``Digest`` challenge into lower-cased parameter names.

    Values may be quoted and may themselves contain commas (``qop="auth,
    auth-int"``), so the split honours quotes.
    """
    value = header_value.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() != "digest":
        raise AuthError(f"Unsupported auth scheme: {scheme!r}")

    params: dict[str, str] = {}
    parts: list[str] = []
    current: list[str] = []
    quoted = False
    for ch in rest:
        if ch == '"':
            quoted = not quoted
        if ch == "," and not quoted:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))

    for part in parts:
        if "=" not in part:
            continue
        key, _, val = part.partition("=")
        params[key.strip().lower()] = val.strip().strip('"')
    return params


def build_authorization(
    method: str,
    uri: str,
    challenge: dict[str, str],
    credentials: DigestCredentials,
    *,
    nonce_count: int = 1,
    cnonce: str | None = None,
) -> str:
    """Compute the ``Digest`` credentials value answering *challenge*."""
    nonce = challenge.get("nonce")
    if not nonce:
        raise AuthError("Challenge has no nonce")
    algorithm = challenge.get("algorithm", "MD5")
    if algorithm.upper() != "MD5":
        raise AuthError(f"Unsupported digest algorithm: {algorithm}")
    realm = challenge.get("realm", "")
    opaque = challenge.get("opaque")
    offered_qop = [q.strip() for q in challenge.get("qop", "").split(",")]
    qop = "auth" if "auth" in offered_qop else None

    ha1 = _md5_hex(f"{credentials.username}:{realm}:{credentials.password}")
    ha2 = _md5_hex(f"{method}:{uri}")

    parts = [
        f'username="{credentials.username}"',
        f'realm="{realm}"',
        f'nonce="{nonce}"',
        f'uri="{uri}"',
    ]
    if qop:
        nc_value = f"{nonce_count:08x}"
        if cnonce is None:
            cnonce = os.urandom(8).hex()
        response = _md5_hex(f"{ha1}:{nonce}:{nc_value}:{cnonce}:{qop}:{ha2}")
        parts.append(f'response="{response}"')
        parts.append("algorithm=MD5")
        parts.extend([f"qop={qop}", f"nc={nc_value}", f'cnonce="{cnonce}"'])
    else:
        response = _md5_hex(f"{ha1}:{nonce}:{ha2}")
        parts.append(f'response="{response}"')
        parts.append("algorithm=MD5")
    if opaque:
        parts.append(f'opaque="{opaque}"')

    return "Digest " + ", ".join(parts)


def authorization_headers(status_code: int) -> tuple[str, str]:
    """Return (challenge header, credentials header) names for a status.

    RFC 3261 §22.2: 401 carries WWW-Authenticate, answered with
    Authorization. §22.3: 407 carries Proxy-Authenticate, answered with
    Proxy-Authorization.
    """
    if status_code == 407:
        return "Proxy-Authenticate", "Proxy-Authorization"
    if status_code == 401:
        return "WWW-Authenticate", "Authorization"
    raise AuthError(f"{status_code} is not an authentication challenge")


def authorize(
    request: SipMessage,
    challenge_response: SipMessage,
    credentials: DigestCredentials,
) -> tuple[str, str]:
    """Return the (header name, value) that answers *challenge_response*."""
    challenge_name, credentials_name = authorization_headers(
        challenge_response.status_code
    )
    challenge_value = challenge_response.header(challenge_name)
    if challenge_value is None:
        raise AuthError(f"{challenge_response.status_code} without {challenge_name}")
    value = build_authorization(
        request.method,
        request.uri,
        parse_challenge(challenge_value),
        credentials,
    )
    return credentials_name, value
