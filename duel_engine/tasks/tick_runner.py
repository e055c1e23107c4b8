"""
duel_engine/tasks/tick_runner.py
Periodic drivers for the challenge and arena ticks
"""

import logging
import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from duel_engine.config import settings

logger = logging.getLogger(__name__)


class TickGuard:
    """
    Skip-if-busy wrapper around one tick function.

    A call that arrives while the previous one is still running returns
    None immediately instead of queueing.
    """

    def __init__(self, name: str, tick: Callable[[], Awaitable[Any]]):
        self.name = name
        self.tick = tick
        self.running = False
        self.runs = 0
        self.skipped = 0
        self.last_error: Optional[str] = None

    async def run(self) -> Optional[Any]:
        if self.running:
            self.skipped += 1
            logger.warning(f"{self.name} tick still running, skipping this interval")
            return None

        self.running = True
        try:
            result = await self.tick()
            self.runs += 1
            self.last_error = None
            return result
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"{self.name} tick failed: {str(e)}")
            return None
        finally:
            self.running = False


async def tick_loop(guard: TickGuard, interval_seconds: float):
    """
    Background tick loop.
    Runs every interval_seconds until cancelled.
    """
    logger.info(f"Starting {guard.name} loop with interval {interval_seconds}s")

    while True:
        await guard.run()
        await asyncio.sleep(interval_seconds)


async def run_tournament_tick(engine):
    """Pick up missed match resolutions, then poll arenas."""
    resolved = await engine.sync_completed_matches()
    if resolved:
        logger.info(f"Resolved {resolved} matches from completed challenges")
    return await engine.run_arena_tick()


def build_guards(scheduler, engine) -> List[TickGuard]:
    return [
        TickGuard("challenge", scheduler.tick),
        TickGuard("arena", lambda: run_tournament_tick(engine)),
    ]


def start_tick_loops(
    guards: List[TickGuard],
    challenge_interval: Optional[float] = None,
    arena_interval: Optional[float] = None,
) -> List[asyncio.Task]:
    """Start the tick loops as background tasks."""
    intervals = {
        "challenge": challenge_interval or settings.CHALLENGE_TICK_SECONDS,
        "arena": arena_interval or settings.ARENA_TICK_SECONDS,
    }
    return [
        asyncio.create_task(tick_loop(guard, intervals.get(guard.name, settings.CHALLENGE_TICK_SECONDS)))
        for guard in guards
    ]


async def stop_tick_loops(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
