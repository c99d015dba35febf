from __future__ import annotations

import asyncio

from pushdispatch.core.config import get_settings
from pushdispatch.core.logging import configure_logging
from pushdispatch.services.dispatch.coordinator import build_default_coordinator
from pushdispatch.workers.dispatch_worker import run_dispatch_loop


async def _main() -> None:
    # Run scheduled batch dispatches without Redis, for hosts that only need the periodic sweep.
    configure_logging()
    settings = get_settings()
    await run_dispatch_loop(build_default_coordinator(settings), settings=settings)


if __name__ == "__main__":
    asyncio.run(_main())
