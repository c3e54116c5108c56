import pytest

from ringgate.sip.auth import (
    AuthError,
    DigestCredentials,
    authorization_headers,
    authorize,
    build_authorization,
    parse_challenge,
)
from ringgate.sip.message import build_response, new_request, parse_message

# RFC 2617 §3.5 worked example
RFC_CHALLENGE = (
    'Digest realm="testrealm@host.com", qop="auth,auth-int", '
    'nonce="dcd98b7102dd2f0e8b11d0f600bfb0c093", '
    'opaque="5ccc069c403ebaf9f0171e9517f40e41"'
)
MUFASA = DigestCredentials("Mufasa", "Circle Of Life")


def _params(header: str) -> dict[str, str]:
    return parse_challenge(header)


def test_parse_challenge_handles_quoted_commas():
    params = parse_challenge(RFC_CHALLENGE)
    assert params == {
        "realm": "testrealm@host.com",
        "qop": "auth,auth-int",
        "nonce": "dcd98b7102dd2f0e8b11d0f600bfb0c093",
        "opaque": "5ccc069c403ebaf9f0171e9517f40e41",
    }


def test_parse_challenge_rejects_other_schemes():
    with pytest.raises(AuthError):
        parse_challenge('Basic realm="x"')


def test_rfc2617_response_with_qop():
    value = build_authorization(
        "GET",
        "/dir/index.html",
        parse_challenge(RFC_CHALLENGE),
        MUFASA,
        cnonce="0a4f113b",
    )
    assert value.startswith('Digest username="Mufasa", realm="testrealm@host.com"')
    params = _params(value)
    assert params["response"] == "6629fae49393a05397450978507c4ef1"
    assert params["qop"] == "auth"
    assert params["nc"] == "00000001"
    assert params["cnonce"] == "0a4f113b"
    assert params["opaque"] == "5ccc069c403ebaf9f0171e9517f40e41"
    assert params["uri"] == "/dir/index.html"


def test_response_without_qop():
    challenge = {"realm": "sip.example.com", "nonce": "n1"}
    value = build_authorization(
        "INVITE", "sip:972501234567@sip.example.com", challenge, MUFASA
    )
    params = _params(value)
    assert "qop" not in params
    assert "cnonce" not in params
    assert "opaque" not in params
    assert params["algorithm"] == "MD5"
    assert len(params["response"]) == 32


def test_random_cnonce_when_not_given():
    challenge = parse_challenge(RFC_CHALLENGE)
    first = _params(build_authorization("GET", "/", challenge, MUFASA))
    second = _params(build_authorization("GET", "/", challenge, MUFASA))
    assert first["cnonce"] != second["cnonce"]


@pytest.mark.parametrize(
    "challenge",
    [
        {"realm": "r"},
        {"realm": "r", "nonce": "n", "algorithm": "SHA-256"},
    ],
)
def test_unanswerable_challenges(challenge):
    with pytest.raises(AuthError):
        build_authorization("INVITE", "sip:x@y", challenge, MUFASA)


def test_authorization_header_names():
    assert authorization_headers(401) == ("WWW-Authenticate", "Authorization")
    assert authorization_headers(407) == (
        "Proxy-Authenticate",
        "Proxy-Authorization",
    )
    with pytest.raises(AuthError):
        authorization_headers(403)


def _invite():
    return new_request(
        "INVITE",
        "sip:972501234567@sip.example.com",
        headers=[("To", "<sip:972501234567@sip.example.com>"), ("CSeq", "2 INVITE")],
    )


@pytest.mark.parametrize(
    ("code", "challenge_header", "expected_name"),
    [
        (401, "WWW-Authenticate", "Authorization"),
        (407, "Proxy-Authenticate", "Proxy-Authorization"),
    ],
)
def test_authorize_answers_matching_header(code, challenge_header, expected_name):
    invite = _invite()
    challenge = parse_message(
        build_response(
            invite,
            code,
            "Auth",
            extra_headers=[
                (challenge_header, 'Digest realm="sip.example.com", nonce="abc"')
            ],
        )
    )
    name, value = authorize(invite, challenge, MUFASA)
    assert name == expected_name
    params = _params(value)
    assert params["uri"] == "sip:972501234567@sip.example.com"
    assert params["realm"] == "sip.example.com"


def test_authorize_without_challenge_header():
    invite = _invite()
    bare = parse_message(build_response(invite, 401, "Unauthorized"))
    with pytest.raises(AuthError):
        authorize(invite, bare, MUFASA)
