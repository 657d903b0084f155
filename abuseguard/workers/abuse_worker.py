from __future__ import annotations

import asyncio
import logging

from abuseguard.core.config import get_settings
from abuseguard.services.enforcement import AbuseEnforcer


logger = logging.getLogger(__name__)


async def run_abuse_check_cycle(enforcer: AbuseEnforcer | None = None) -> dict[str, dict[str, int]]:
    # Cap enforcement first so hard violations suspend before detectors add warnings.
    resolved = enforcer or AbuseEnforcer()
    return {
        "suspension_check": await resolved.run_suspension_check(),
        "detection_check": await resolved.run_detection_check(),
    }


async def run_abuse_check_loop() -> None:
    # Run on a fixed cadence and continue after failures to preserve enforcement liveness.
    interval = max(60, int(get_settings().abuse_check_interval_s))
    enforcer = AbuseEnforcer()
    while True:
        try:
            await run_abuse_check_cycle(enforcer)
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("abuse check cycle failed")
        await asyncio.sleep(interval)
