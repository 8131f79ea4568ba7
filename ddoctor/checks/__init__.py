"""Check subsystem — probes, execution engine, scheduler."""

from .engine import AggregateSnapshot, ProbeResult, aggregate, run_cycle
from .probes import (
    CommandProbe,
    NetworkProbe,
    Outcome,
    Probe,
    ShellProbe,
    build_probe,
    build_probes,
)
from .registry import ProbeSpec, RuntimeConfig, load_config, parse_config
from .scheduler import HealthScheduler, SchedulerState
