from __future__ import annotations

import asyncio

from tenantguard.services.container import build_services


async def compact() -> None:
    services = build_services()
    try:
        removed = await services.store.compact()
    finally:
        await services.aclose()
    print(f"compacted_versions={removed}")


if __name__ == "__main__":
    asyncio.run(compact())
