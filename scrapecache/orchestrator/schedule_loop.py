"""Cron-like trigger loops for the maintenance sweeps, built on asyncio."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

import structlog
from croniter import croniter

LOGGER = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepTrigger:
    """A named sweep invoked whenever its cron expression fires."""

    name: str
    cron: str
    action: Callable[[], Awaitable[Any]]

    def seconds_until_next(self, now: datetime) -> float:
        upcoming = croniter(self.cron, now).get_next(datetime)
        return max(0.0, (upcoming - now).total_seconds())


async def run_trigger(
    trigger: SweepTrigger,
    *,
    ticks: Optional[int] = None,
    sleep: Sleep = asyncio.sleep,
    now: Callable[[], datetime] = _utcnow,
) -> int:
    """Wait for each fire time and run the sweep; returns how many times it ran."""
    tick = 0
    while ticks is None or tick < ticks:
        await sleep(trigger.seconds_until_next(now()))
        try:
            result = await trigger.action()
        except Exception:  # keep the timer alive; the next tick retries
            LOGGER.exception("sweep_failed", trigger=trigger.name)
        else:
            LOGGER.info("sweep_ran", trigger=trigger.name, result=result)
        tick += 1
    return tick


async def run_schedule_loop(
    triggers: List[SweepTrigger],
    *,
    ticks: Optional[int] = None,
    sleep: Sleep = asyncio.sleep,
    now: Callable[[], datetime] = _utcnow,
) -> List[int]:
    """Run every trigger on its own independent timer."""
    if not triggers:
        return []
    return await asyncio.gather(
        *(run_trigger(trigger, ticks=ticks, sleep=sleep, now=now) for trigger in triggers)
    )
