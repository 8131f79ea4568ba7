"""Entry point for ddoctor — `ddoctor` console script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from ddoctor import __version__
from ddoctor.api.server import create_app, serve_status
from ddoctor.checks.engine import ResultSet, aggregate, run_cycle
from ddoctor.checks.presenter import serialize_results
from ddoctor.checks.probes import Probe, build_probes
from ddoctor.checks.registry import RuntimeConfig, load_config
from ddoctor.checks.scheduler import HealthScheduler
from ddoctor.config import settings
from ddoctor.errors import ConfigurationError, CycleCancelled, SerializationFailure

logger = logging.getLogger(__name__)

console = Console(stderr=True)

# One-shot exit codes
EXIT_HEALTHY = 0
EXIT_UNHEALTHY = 1
EXIT_ERROR = 2  # configuration or serialization failure
EXIT_CANCELLED = 130

_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGQUIT") if hasattr(signal, name)
)


def install_signal_handlers(
    stop: asyncio.Event,
    on_repeat: Callable[[], None] | None = None,
) -> None:
    """Set ``stop`` on the first termination signal; call ``on_repeat`` on later ones."""
    loop = asyncio.get_running_loop()

    def _handle(signo: signal.Signals) -> None:
        logger.info("Caught exit signal %s", signo.name)
        if stop.is_set():
            if on_repeat:
                on_repeat()
            return
        stop.set()

    for signo in _SIGNALS:
        try:
            loop.add_signal_handler(signo, _handle, signo)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s on this platform", signo)


# ── Serve mode ───────────────────────────────────────────────────────────────


async def serve_forever(
    config: RuntimeConfig,
    scheduler: HealthScheduler,
    stop: asyncio.Event,
    grace: float,
    log_level: str = "WARNING",
) -> None:
    """Run the scheduler and the status server until ``stop`` fires.

    Returns only after the server released its socket and the in-flight
    cycle (if any) resolved.
    """
    app = create_app(scheduler, config)
    await asyncio.gather(
        scheduler.run(stop),
        serve_status(
            app, config, stop, grace, log_level=log_level.lower(),
        ),
    )


def run_server(
    config: RuntimeConfig,
    probes: Sequence[Probe],
    log_level: str = "WARNING",
) -> None:
    """Start the periodic checker and the status server."""
    console.print(
        Panel.fit(
            f"[bold]ddoctor {__version__}[/bold]\n"
            f"Bind:   {config.host}:{config.port}\n"
            f"Period: {config.period:g}s\n"
            f"Checks: {len(probes)}\n"
            f"Status: {config.healthy_status} ok / {config.unhealthy_status} not ok",
            title="ddoctor",
            border_style="green",
        )
    )

    async def _main() -> None:
        stop = asyncio.Event()
        scheduler = HealthScheduler(probes, config.period)
        # First signal drains gracefully, a second one aborts in-flight checks.
        install_signal_handlers(stop, on_repeat=scheduler.abort)
        await serve_forever(config, scheduler, stop, settings.shutdown_grace, log_level)

    asyncio.run(_main())


# ── One-shot mode ────────────────────────────────────────────────────────────


async def evaluate_once(probes: Sequence[Probe], stop: asyncio.Event) -> ResultSet:
    """Run every probe exactly once. Raises CycleCancelled if ``stop`` fires first."""
    return await run_cycle(probes, stop)


def run_one_shot(probes: Sequence[Probe]) -> int:
    """Run probes once, print the result set as JSON, return the exit code.

    0 — every check healthy
    1 — at least one check unhealthy
    2 — the result could not be serialized
    130 — interrupted by a termination signal
    """

    async def _main() -> ResultSet:
        stop = asyncio.Event()
        install_signal_handlers(stop)
        return await evaluate_once(probes, stop)

    try:
        results = asyncio.run(_main())
    except CycleCancelled:
        logger.warning("One-shot run cancelled before all checks reported")
        return EXIT_CANCELLED

    try:
        serialized = serialize_results(results, pretty=True)
    except SerializationFailure as e:
        console.print(f"[red]{e}[/red]")
        return EXIT_ERROR

    print(serialized)
    return EXIT_HEALTHY if aggregate(results).overall_healthy else EXIT_UNHEALTHY


# ── CLI ──────────────────────────────────────────────────────────────────────


def _log_config(config: RuntimeConfig) -> None:
    logger.info(
        "Config file: host=%s port=%d period=%gs ok_status=%d nok_status=%d",
        config.host, config.port, config.period,
        config.healthy_status, config.unhealthy_status,
    )
    for spec in config.probes:
        logger.info(
            "Check %s: type=%s exec=%r url=%r timeout=%gs status_codes=%s",
            spec.name, spec.kind, spec.exec, spec.url, spec.timeout,
            sorted(spec.status_codes),
        )


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="ddoctor",
        description="Docker doctor - checking health of your containers.",
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", default=settings.debug,
        help="Run in debug mode (env: DDOCTOR_DEBUG).",
    )
    parser.add_argument(
        "-o", "--one-shot", action="store_true",
        help="Do not run forever, execute only once.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("config_path", type=Path, help="Path to the config")

    args = parser.parse_args(argv)

    level = "DEBUG" if args.debug else settings.effective_log_level
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    try:
        config = load_config(args.config_path)
        probes = build_probes(config.probes)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(EXIT_ERROR)

    _log_config(config)

    if args.one_shot:
        sys.exit(run_one_shot(probes))
    run_server(config, probes, log_level=level)


if __name__ == "__main__":
    main()
