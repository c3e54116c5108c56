"""Process configuration from CLI flags and RINGGATE_* environment variables."""

from __future__ import annotations

import argparse
import dataclasses
import os
import sys
from collections.abc import Mapping, Sequence

ENV_PREFIX = "RINGGATE_"


@dataclasses.dataclass(frozen=True)
class CallConfig:
    """Who calls whom; read-only for the lifetime of a call."""

    user: str
    password: str
    domain: str
    destination: str
    asserted_identity: str | None = None


@dataclasses.dataclass(frozen=True)
class Settings:
    call: CallConfig
    call_token: str = ""
    listen_address: str = "0.0.0.0"
    listen_port: int = 8080
    sip_port: int = 5060
    command: str = "serve"


# (flag, env suffix, help, required)
_CALL_OPTIONS = (
    ("--sip-user", "SIP_USER", "SIP user (account ID)", True),
    ("--sip-pass", "SIP_PASS", "SIP password", True),
    ("--sip-domain", "SIP_DOMAIN", "SIP domain", True),
    ("--destination", "DESTINATION", "Number to call", True),
    (
        "--outgoing-number",
        "OUTGOING_NUMBER",
        "If set, P-Asserted-Identity header is set to this value",
        False,
    ),
)


def _build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    for flag, env, help_text, required in _CALL_OPTIONS:
        default = environ.get(ENV_PREFIX + env)
        common.add_argument(
            flag,
            default=default,
            required=required and default is None,
            help=f"{help_text} (${ENV_PREFIX}{env})",
        )
    common.add_argument(
        "--sip-port",
        type=int,
        default=int(environ.get(ENV_PREFIX + "SIP_PORT", "5060")),
        help=f"SIP port of the domain (${ENV_PREFIX}SIP_PORT)",
    )

    parser = argparse.ArgumentParser(
        prog="ringgate", description="SIP client to place a call"
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser(
        "serve", parents=[common], help="Serve /ui and the /call WebSocket"
    )
    serve.add_argument(
        "--call-token",
        default=environ.get(ENV_PREFIX + "CALL_TOKEN", ""),
        help=f"Token required for WebSocket /call (${ENV_PREFIX}CALL_TOKEN)",
    )
    serve.add_argument(
        "--listen-address",
        default=environ.get(ENV_PREFIX + "LISTEN_ADDRESS", "0.0.0.0"),
        help=f"HTTP server listen address (${ENV_PREFIX}LISTEN_ADDRESS)",
    )
    serve.add_argument(
        "--listen-port",
        type=int,
        default=int(environ.get(ENV_PREFIX + "LISTEN_PORT", "8080")),
        help=f"HTTP server listen port (${ENV_PREFIX}LISTEN_PORT)",
    )

    subparsers.add_parser("call", parents=[common], help="Place one call and exit")
    return parser


def load_settings(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Parse *argv* (default ``sys.argv[1:]``); ``serve`` when no command."""
    if environ is None:
        environ = os.environ
    args_list = list(sys.argv[1:] if argv is None else argv)
    if not args_list or args_list[0] not in ("serve", "call", "-h", "--help"):
        args_list = ["serve", *args_list]

    args = _build_parser(environ).parse_args(args_list)
    call = CallConfig(
        user=args.sip_user,
        password=args.sip_pass,
        domain=args.sip_domain,
        destination=args.destination,
        asserted_identity=args.outgoing_number or None,
    )
    if args.command == "call":
        return Settings(call=call, sip_port=args.sip_port, command="call")
    return Settings(
        call=call,
        call_token=args.call_token,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        sip_port=args.sip_port,
        command="serve",
    )
