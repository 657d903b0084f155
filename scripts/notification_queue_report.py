from __future__ import annotations

import argparse
import asyncio

from abuseguard.core.config import get_settings
from abuseguard.persistence.db import SessionLocal
from abuseguard.services.notifications.queue import get_queue_statistics, list_exhausted_notifications


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Show notification queue counts and terminal failures")
    parser.add_argument("--limit", type=int, default=20, help="Exhausted notifications to list")
    return parser


async def _report(args: argparse.Namespace) -> int:
    max_attempts = get_settings().notify_max_attempts
    async with SessionLocal() as session:
        stats = await get_queue_statistics(session=session)
        exhausted = await list_exhausted_notifications(
            session=session, max_attempts=max_attempts, limit=args.limit
        )
    for status, count in stats.items():
        print(f"{status}: {count}")
    if exhausted:
        print("exhausted:")
    for row in exhausted:
        print(f"  {row.id} project={row.project_id} type={row.notification_type} "
              f"attempts={row.attempts} error={row.error_message}")
    return 0


def main() -> int:
    return asyncio.run(_report(_build_parser().parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
