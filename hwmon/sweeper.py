"""Periodic age-based sweep of stale hosts."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from hwmon.hub import Hub
from hwmon.registry import Registry

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs :meth:`Registry.sweep` on a fixed interval, independent of ingestion."""

    def __init__(
        self,
        registry: Registry,
        hub: Hub | None = None,
        interval_seconds: float = 3600,
        max_age_seconds: float = 86400,
    ) -> None:
        self.registry = registry
        self.hub = hub
        self.interval = interval_seconds
        self.max_age = timedelta(seconds=max_age_seconds)
        self._running = False
        self._task: asyncio.Task | None = None
        self._last_run: str | None = None

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("Sweep scheduler is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Sweep scheduler started (interval=%ss, max_age=%s)",
            self.interval, self.max_age,
        )

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sweep scheduler stopped")

    async def run_once(self) -> list[str]:
        """Sweep once; notify viewers if any host went away."""
        removed = await asyncio.to_thread(self.registry.sweep, self.max_age)
        self._last_run = datetime.now(timezone.utc).isoformat()
        if removed and self.hub is not None:
            self.hub.broadcast_host_list(await asyncio.to_thread(self.registry.summaries))
        return removed

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_run(self) -> str | None:
        """ISO timestamp of the last completed sweep, or None."""
        return self._last_run

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as exc:
                logger.error("Sweep failed: %s", exc)

            # Sleep in small increments so stop() is responsive
            remaining = float(self.interval)
            while remaining > 0:
                if not self._running:
                    return
                step = min(1.0, remaining)
                await asyncio.sleep(step)
                remaining -= step
