from __future__ import annotations

import argparse
import asyncio
import sys

from tenantgate.core.logging import configure_logging
from tenantgate.persistence.db import SessionLocal
from tenantgate.persistence.repos.roles import diff_role_grants, sync_role_grants


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync the roles/permissions/role_grants tables with the in-code registry"
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Report drift and exit non-zero instead of writing",
    )
    return parser


def _print_rows(label: str, rows) -> None:
    for role, permission, scope in sorted(rows):
        print(f"{label} {role} {permission} {scope}")


async def _run(check: bool) -> int:
    async with SessionLocal() as session:
        if check:
            drift = await diff_role_grants(session)
        else:
            drift = await sync_role_grants(session)
            await session.commit()
    _print_rows("missing", drift.missing)
    _print_rows("stale", drift.stale)
    if check:
        return 0 if drift.in_sync else 1
    print(f"Synced role grants (added={len(drift.missing)} removed={len(drift.stale)})")
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args.check))
    except Exception as exc:  # noqa: BLE001 - surface migration failures clearly
        print(f"sync_role_grants failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
