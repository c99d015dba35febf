from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from pushdispatch.core.config import Settings, get_settings
from pushdispatch.core.logging import configure_logging
from pushdispatch.services.dispatch.coordinator import DispatchCoordinator, build_default_coordinator

logger = logging.getLogger(__name__)


def _coordinator(ctx) -> DispatchCoordinator:
    coordinator = ctx.get("coordinator")
    if coordinator is None:
        coordinator = build_default_coordinator()
        ctx["coordinator"] = coordinator
    return coordinator


async def dispatch_notification(ctx, notification_id: str, dry_run: bool = False) -> dict:
    # Single-notification trigger, typically enqueued right after a notification row is inserted.
    summary = await _coordinator(ctx).run(notification_id=notification_id, dry_run=dry_run)
    return summary.to_dict()


async def dispatch_batch(ctx, limit: int | None = None, dry_run: bool = False) -> dict:
    summary = await _coordinator(ctx).run(limit=limit, dry_run=dry_run)
    return summary.to_dict()


async def run_dispatch_loop(coordinator: DispatchCoordinator, *, settings: Settings | None = None) -> None:
    # Periodic batch runs pick up notifications whose single trigger was lost or failed.
    settings = settings or get_settings()
    interval_s = max(1, int(settings.dispatch_poll_interval_s))
    while True:
        try:
            await coordinator.run()
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("dispatch batch scheduler failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    # One coordinator per process so every run shares the cached gateway credential.
    configure_logging()
    ctx["coordinator"] = build_default_coordinator()
    ctx["scheduler_task"] = asyncio.create_task(run_dispatch_loop(ctx["coordinator"]))


async def _shutdown(ctx) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.dispatch_queue_name
    # Retries happen through later runs and the ledger, never through job re-execution.
    max_tries = 1
    functions = [dispatch_notification, dispatch_batch]
    on_startup = _startup
    on_shutdown = _shutdown
