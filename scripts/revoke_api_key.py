from __future__ import annotations

import argparse
import asyncio
import sys

from tenantguard.services.container import build_services


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong key.
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    parser.add_argument("--revoked-by", default="revoke_api_key", help="Actor recorded on the revocation")
    return parser


async def _revoke_key(key_id: str, revoked_by: str) -> int:
    services = build_services()
    try:
        await services.startup()
        # Appends a revoked version; history stays for audits.
        api_key = await services.api_keys.revoke(key_id, revoked_by)
    finally:
        await services.aclose()
    print(f"Revoked API key {api_key.id} ({api_key.key_prefix})")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id, args.revoked_by))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
