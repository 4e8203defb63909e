from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import timedelta

from tenantguard.core.clock import utc_now
from tenantguard.domain.entities import API_SCOPES
from tenantguard.services.container import build_services


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create a workspace API key")
    parser.add_argument("--workspace", required=True, help="Workspace identifier")
    parser.add_argument("--creator", required=True, help="User id of a workspace member allowed to manage integrations")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument(
        "--scope",
        dest="scopes",
        action="append",
        required=True,
        choices=API_SCOPES,
        help="Scope to grant; repeat for several",
    )
    parser.add_argument("--description", default="", help="Optional description")
    parser.add_argument("--expires-days", type=int, default=None, help="Expire the key after N days")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    services = build_services()
    try:
        await services.startup()
        expires_at = utc_now() + timedelta(days=args.expires_days) if args.expires_days else None
        raw_key, api_key = await services.api_keys.create(
            args.workspace,
            args.creator,
            args.scopes,
            args.name,
            description=args.description,
            expires_at=expires_at,
        )
    finally:
        await services.aclose()

    print("API key created:")
    print(f"  key_id: {api_key.id}")
    print(f"  key_prefix: {api_key.key_prefix}")
    print(f"  scopes: {', '.join(api_key.scopes)}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
