from __future__ import annotations

import asyncio

from abuseguard.core.logging import configure_logging
from abuseguard.workers.abuse_worker import run_abuse_check_loop


async def _main() -> None:
    # Run cap enforcement and detectors on their own cadence.
    configure_logging()
    await run_abuse_check_loop()


if __name__ == "__main__":
    asyncio.run(_main())
