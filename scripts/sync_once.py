from __future__ import annotations

import argparse
import asyncio
import sys

from syncwarden.core.errors import SyncWardenError
from syncwarden.core.logging import configure_logging
from syncwarden.services.plugins import ensure_plugins_loaded
from syncwarden.services.scheduling.lifecycle import get_sync_scheduler


async def _run(integration: str) -> int:
    configure_logging()
    ensure_plugins_loaded()
    outcome = await get_sync_scheduler().trigger(integration)
    print(f"integration={outcome.integration} status={outcome.status} duration_ms={outcome.duration_ms:.1f}")
    if outcome.error:
        print(f"error={outcome.error}", file=sys.stderr)
    return 0 if outcome.error is None else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one sync cycle for a provider now.")
    parser.add_argument("integration", help="Provider type, e.g. understat")
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args.integration))
    except SyncWardenError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
