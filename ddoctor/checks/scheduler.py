"""Check scheduler — re-runs the probe set on a fixed period.

The latest AggregateSnapshot is held as a single immutable reference and
replaced wholesale after each complete cycle; readers (the status server)
go through the read-only ``latest`` property and never see a partial cycle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from enum import Enum

from ddoctor.checks.engine import AggregateSnapshot, aggregate, run_cycle
from ddoctor.checks.probes import Probe
from ddoctor.errors import CycleCancelled

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class HealthScheduler:
    """Runs one cycle immediately, then one per ``period`` seconds.

    The period is measured from the start of the previous cycle. A cycle that
    overruns the period delays the next one; cycles never overlap. Once the
    stop signal fires no new cycle starts, and an in-flight cycle is allowed
    to finish within its probes' own timeouts.
    """

    def __init__(self, probes: Sequence[Probe], period: float) -> None:
        self.probes = tuple(probes)
        self.period = period
        self.cycles = 0
        self._latest: AggregateSnapshot | None = None
        self._state = SchedulerState.IDLE
        # Only set by abort(); the root stop signal does not interrupt probes.
        self._abort = asyncio.Event()

    @property
    def latest(self) -> AggregateSnapshot | None:
        """Most recent complete snapshot, or None before the first cycle."""
        return self._latest

    @property
    def state(self) -> SchedulerState:
        return self._state

    def publish(self, snapshot: AggregateSnapshot) -> None:
        """Replace the visible snapshot. A single reference swap."""
        self._latest = snapshot

    async def run_once(self) -> AggregateSnapshot | None:
        """Run one cycle and publish it. Returns None if the cycle was aborted."""
        self.cycles += 1
        cycle = self.cycles
        self._state = SchedulerState.RUNNING
        try:
            results = await run_cycle(self.probes, self._abort)
        except CycleCancelled:
            logger.info("Cycle %d aborted, snapshot not published", cycle)
            return None
        finally:
            self._state = SchedulerState.IDLE

        snapshot = aggregate(results)
        self.publish(snapshot)

        logger.debug(
            "Cycle %d: %s (%d checks)",
            cycle, "healthy" if snapshot.overall_healthy else "unhealthy", len(results),
        )
        for r in results:
            logger.debug("  %s [%s]: %s (%.3fs)", r.name, r.kind, r.detail, r.elapsed)

        return snapshot

    async def run(self, stop: asyncio.Event) -> None:
        """Cycle until ``stop`` is set."""
        if self._state is SchedulerState.STOPPED:
            raise RuntimeError("Scheduler already stopped")

        loop = asyncio.get_running_loop()
        logger.info(
            "Check scheduler started: %d checks every %.1fs", len(self.probes), self.period,
        )
        try:
            while not stop.is_set():
                started = loop.time()
                await self.run_once()

                delay = max(0.0, started + self.period - loop.time())
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._state = SchedulerState.STOPPED
            logger.info("Check scheduler stopped after %d cycles", self.cycles)

    def abort(self) -> None:
        """Cut in-flight probes short. The interrupted cycle is discarded."""
        self._abort.set()
