from __future__ import annotations

import argparse
import asyncio
import json

from pushdispatch.core.logging import configure_logging
from pushdispatch.services.dispatch.coordinator import build_default_coordinator


async def _run(notification_id: str | None, limit: int | None, dry_run: bool) -> int:
    # Execute one dispatcher run from the CLI and print the summary for operators and cron logs.
    coordinator = build_default_coordinator()
    summary = await coordinator.run(notification_id=notification_id, limit=limit, dry_run=dry_run)
    print(json.dumps(summary.to_dict(), sort_keys=True))
    return 0 if summary.success else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Dispatch pending push notifications")
    parser.add_argument("--notification-id", default=None, help="Dispatch only this notification")
    parser.add_argument("--limit", type=int, default=None, help="Batch size for batch mode")
    parser.add_argument("--dry-run", action="store_true", help="Simulate sends without contacting the gateway")
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_run(args.notification_id, args.limit, args.dry_run)))


if __name__ == "__main__":
    main()
