from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.logging import configure_logging
from tenantgate.services.auth.lockout import email_identifier, ip_identifier
from tenantgate.services.container import AuthServices, build_services


def _build_parser() -> argparse.ArgumentParser:
    # Exactly one identifier per run so a typo cannot unlock more than intended.
    parser = argparse.ArgumentParser(description="Clear a login lockout for an email or client address")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--email", help="Account email whose lockout should be cleared")
    target.add_argument("--ip", help="Client address whose lockout should be cleared")
    parser.add_argument(
        "--issue-token",
        action="store_true",
        help="Print a signed unlock token instead of unlocking immediately",
    )
    return parser


def _identifier(args: argparse.Namespace) -> str:
    if args.email:
        return email_identifier(args.email)
    return ip_identifier(args.ip)


async def _run(args: argparse.Namespace, services: AuthServices) -> int:
    identifier = _identifier(args)
    status = await services.lockout.check(identifier)
    if args.issue_token:
        print(services.lockout.issue_unlock_token(identifier))
        return 0
    await services.lockout.force_unlock(identifier, via="unlock_login")
    print(f"Unlocked {identifier} (was {status.state.value}, attempts={status.attempts})")
    return 0


def main(argv: list[str] | None = None, services: AuthServices | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args, services or build_services()))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"unlock_login failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
