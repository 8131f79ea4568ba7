"""Execution engine — fans a probe set out concurrently and folds the results.

One cycle runs every probe as its own task. Outcomes are collected through a
queue sized to the probe count and reassembled in configured order, so two
cycles over the same config always produce directly comparable lists.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ddoctor.checks.probes import TIMED_OUT, Outcome, Probe, wait_cancellable
from ddoctor.errors import CycleCancelled, ProbeExecutionFault

logger = logging.getLogger(__name__)

# Grace beyond a probe's own timeout before the engine cuts it off
DEADLINE_SLACK = 0.5


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProbeResult:
    """One probe's identity paired with the Outcome it produced."""

    name: str
    kind: str
    outcome: Outcome

    @property
    def healthy(self) -> bool:
        return self.outcome.healthy

    @property
    def detail(self) -> str:
        return self.outcome.detail

    @property
    def elapsed(self) -> float:
        return self.outcome.elapsed


ResultSet = tuple[ProbeResult, ...]


@dataclass(frozen=True)
class AggregateSnapshot:
    """Reduced verdict of one complete cycle."""

    overall_healthy: bool
    results: ResultSet
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ── Engine ───────────────────────────────────────────────────────────────────


async def _execute_isolated(probe: Probe, cancel: asyncio.Event) -> Outcome:
    """Run one probe; anything it raises (except cancellation) becomes an Outcome.

    The probe's own timeout, plus DEADLINE_SLACK, is enforced here as well;
    a probe that overruns it is reported as timed out.
    """
    t0 = time.perf_counter()
    try:
        return await asyncio.wait_for(
            probe.execute(cancel), timeout=probe.timeout + DEADLINE_SLACK,
        )
    except CycleCancelled:
        raise
    except asyncio.TimeoutError:
        logger.warning("Check %s overran its %gs timeout", probe.name, probe.timeout)
        return Outcome(healthy=False, detail=TIMED_OUT, elapsed=time.perf_counter() - t0)
    except Exception as e:
        logger.warning("Check %s crashed", probe.name, exc_info=True)
        fault = ProbeExecutionFault(f"{type(e).__name__}: {e}")
        return Outcome(
            healthy=False,
            detail=f"probe fault: {fault}",
            elapsed=time.perf_counter() - t0,
        )


async def run_cycle(probes: Sequence[Probe], cancel: asyncio.Event) -> ResultSet:
    """Run every probe concurrently and return results in configured order.

    Raises CycleCancelled if ``cancel`` fires before every probe reported;
    a partial result set is never returned.
    """
    if cancel.is_set():
        raise CycleCancelled("cancellation requested before cycle start")
    if not probes:
        return ()

    queue: asyncio.Queue[tuple[int, Outcome]] = asyncio.Queue(maxsize=len(probes))

    async def report(index: int, probe: Probe) -> None:
        outcome = await _execute_isolated(probe, cancel)
        queue.put_nowait((index, outcome))

    tasks = [
        asyncio.create_task(report(i, p), name=f"check-{p.name}")
        for i, p in enumerate(probes)
    ]

    outcomes: list[Outcome | None] = [None] * len(probes)
    try:
        for _ in probes:
            index, outcome = await wait_cancellable(queue.get(), None, cancel)
            outcomes[index] = outcome
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise
    finally:
        # Probes see ``cancel`` themselves; wait until they have reaped
        # their processes and sockets.
        await asyncio.gather(*tasks, return_exceptions=True)

    results = tuple(
        ProbeResult(name=p.name, kind=p.kind, outcome=o)
        for p, o in zip(probes, outcomes)
        if o is not None
    )
    if len(results) != len(probes):
        raise CycleCancelled("cycle finished with missing outcomes")
    return results


# ── Aggregator ───────────────────────────────────────────────────────────────


def aggregate(results: ResultSet, now: datetime | None = None) -> AggregateSnapshot:
    """Fold a result set into one verdict: healthy iff every probe is healthy.

    An empty probe set is healthy (vacuous truth). There is no weighting and
    no quorum — a single failing probe makes the whole snapshot unhealthy.
    """
    return AggregateSnapshot(
        overall_healthy=all(r.healthy for r in results),
        results=tuple(results),
        generated_at=now or datetime.now(timezone.utc),
    )
