from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.logging import configure_logging
from tenantgate.services.auth.sessions import REVOKE_OPERATOR
from tenantgate.services.container import AuthServices, build_services


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revoke every active session of a user")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="User id whose sessions should be revoked")
    target.add_argument("--email", help="Account email whose sessions should be revoked")
    return parser


async def _run(args: argparse.Namespace, services: AuthServices) -> int:
    user_id = args.user_id
    if args.email:
        user = await services.stores.users.get_by_email(args.email)
        if user is None:
            raise ValueError("User not found")
        user_id = user.id
    elif await services.stores.users.get(user_id) is None:
        raise ValueError("User not found")
    count = await services.sessions.revoke_all(user_id, reason=REVOKE_OPERATOR)
    print(f"Revoked {count} session(s) for user {user_id}")
    return 0


def main(argv: list[str] | None = None, services: AuthServices | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args, services or build_services()))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"revoke_user_sessions failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
