from __future__ import annotations

import argparse
import asyncio
import json
import signal

from syncwarden.core.logging import configure_logging
from syncwarden.services.jobs.runner import JobRunner
from syncwarden.services.plugins import ensure_plugins_loaded


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Process pending background jobs from the job table.")
    parser.add_argument("--once", action="store_true", help="Drain one batch and exit")
    parser.add_argument("--limit", type=int, default=None, help="Batch size override")
    return parser


async def _run(args: argparse.Namespace) -> int:
    configure_logging()
    ensure_plugins_loaded()
    runner = JobRunner()
    if args.once:
        outcomes = await runner.run_once(limit=args.limit)
        print(json.dumps(outcomes, sort_keys=True))
        return 0
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await runner.run_forever(stop)
    return 0


def main() -> int:
    return asyncio.run(_run(_build_parser().parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
