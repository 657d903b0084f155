from __future__ import annotations

import asyncio

from abuseguard.core.logging import configure_logging
from abuseguard.services.notifications.delivery import run_notification_delivery_loop


async def _main() -> None:
    # Boot a dedicated polling loop so notification delivery and retries run independently of enforcement.
    configure_logging()
    await run_notification_delivery_loop()


if __name__ == "__main__":
    asyncio.run(_main())
