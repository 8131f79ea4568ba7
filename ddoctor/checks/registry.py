"""Check registry — loads the YAML config file into typed, immutable models.

The config file is the single source of truth for the probe set. It is
read once at startup; the resulting RuntimeConfig is never mutated.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ddoctor.errors import ConfigurationError

logger = logging.getLogger(__name__)

PROBE_KINDS = ("shell", "command", "network")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
DEFAULT_PERIOD = 10.0
DEFAULT_OK_STATUS = 200
DEFAULT_NOK_STATUS = 503

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


# ── Data models ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProbeSpec:
    """Definition of a single probe from the config file."""

    name: str
    kind: str  # shell | command | network
    timeout: float  # seconds
    exec: str = ""  # shell / command
    url: str = ""  # network
    status_codes: frozenset[int] = frozenset({200})  # network


@dataclass(frozen=True)
class RuntimeConfig:
    """Everything the core needs to run: bind address, period, probes."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    period: float = DEFAULT_PERIOD
    healthy_status: int = DEFAULT_OK_STATUS
    unhealthy_status: int = DEFAULT_NOK_STATUS
    probes: tuple[ProbeSpec, ...] = field(default_factory=tuple)


# ── Parsers ──────────────────────────────────────────────────────────────────


def parse_duration(value: Any) -> float:
    """Convert ``5``, ``"500ms"``, ``"2.5s"`` or ``"1m30s"`` into seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str) and value.strip():
        seconds = _parse_duration_text(value.strip())
    else:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    # nan / inf (YAML .nan, .inf or the strings) would disable the deadline
    if not math.isfinite(seconds):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    return seconds


def _parse_duration_text(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        pass

    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ConfigurationError(f"Invalid duration: {text!r}")
    return sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)


def _parse_text(raw: dict, key: str, index: int) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigurationError(
            f"checks[{index}].{key} must be a string, got {type(value).__name__}"
        )
    return value


def _parse_status(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 100 <= value <= 599:
        raise ConfigurationError(f"{field_name} must be an HTTP status code, got {value!r}")
    return value


def _parse_probe(raw: Any, index: int) -> ProbeSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"checks[{index}]: expected a mapping, got {type(raw).__name__}")

    kind = raw.get("type")
    if kind not in PROBE_KINDS:
        raise ConfigurationError(
            f"checks[{index}]: unknown type {kind!r} (expected one of {', '.join(PROBE_KINDS)})"
        )

    if raw.get("timeout") is None:
        raise ConfigurationError(f"checks[{index}]: timeout is required")
    try:
        timeout = parse_duration(raw["timeout"])
    except ConfigurationError as e:
        raise ConfigurationError(f"checks[{index}].timeout: {e}") from e

    raw_codes = raw.get("status_codes")
    if raw_codes is None:
        codes = frozenset({200})
    elif isinstance(raw_codes, list):
        codes = frozenset(
            _parse_status(c, f"checks[{index}].status_codes") for c in raw_codes
        )
    else:
        raise ConfigurationError(f"checks[{index}].status_codes must be a list")

    return ProbeSpec(
        name=str(raw.get("name") or f"{kind}-{index}"),
        kind=kind,
        timeout=timeout,
        exec=_parse_text(raw, "exec", index),
        url=_parse_text(raw, "url", index),
        status_codes=codes,
    )


def parse_config(raw: Any) -> RuntimeConfig:
    """Build a RuntimeConfig from the decoded YAML document."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("Config root must be a mapping")

    port = raw.get("port", DEFAULT_PORT)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigurationError(f"port must be in 1..65535, got {port!r}")

    period = parse_duration(raw.get("periodicity", DEFAULT_PERIOD))
    if not period > 0:
        raise ConfigurationError(f"periodicity must be positive, got {period}")

    checks = raw.get("checks") or []
    if not isinstance(checks, list):
        raise ConfigurationError("checks must be a list")
    probes = tuple(_parse_probe(c, i) for i, c in enumerate(checks))

    names = [p.name for p in probes]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"Duplicate check names: {', '.join(dupes)}")

    return RuntimeConfig(
        host=str(raw.get("host") or DEFAULT_HOST),
        port=port,
        period=period,
        healthy_status=_parse_status(raw.get("ok_status", DEFAULT_OK_STATUS), "ok_status"),
        unhealthy_status=_parse_status(raw.get("nok_status", DEFAULT_NOK_STATUS), "nok_status"),
        probes=probes,
    )


def load_config(path: Path) -> RuntimeConfig:
    """Read and parse a YAML config file. Raises ConfigurationError on any defect."""
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e

    config = parse_config(raw)
    logger.info("Loaded %d checks from %s", len(config.probes), path)
    return config
