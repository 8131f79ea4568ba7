"""JSON rendering of result sets and snapshots."""

from __future__ import annotations

import json
from typing import Any

from ddoctor.checks.engine import AggregateSnapshot, ProbeResult, ResultSet
from ddoctor.checks.probes import Outcome
from ddoctor.errors import SerializationFailure

NOT_EVALUATED = "not yet evaluated"


def result_to_dict(r: ProbeResult) -> dict[str, Any]:
    return {
        "name": r.name,
        "type": r.kind,
        "healthy": r.healthy,
        "detail": r.detail,
        "elapsed": round(r.elapsed, 4),
    }


def snapshot_to_dict(snapshot: AggregateSnapshot | None) -> dict[str, Any]:
    if snapshot is None:
        return {
            "overall_healthy": False,
            "generated_at": None,
            "detail": NOT_EVALUATED,
            "results": [],
        }
    return {
        "overall_healthy": snapshot.overall_healthy,
        "generated_at": snapshot.generated_at.isoformat(),
        "results": [result_to_dict(r) for r in snapshot.results],
    }


def _dumps(data: Any, pretty: bool) -> str:
    try:
        return json.dumps(data, indent=2 if pretty else None, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Cannot serialize to JSON: {e}") from e


def serialize_results(results: ResultSet, pretty: bool = False) -> str:
    """Render a result set as a JSON array, in result-set order."""
    return _dumps([result_to_dict(r) for r in results], pretty)


def serialize_snapshot(snapshot: AggregateSnapshot | None, pretty: bool = False) -> str:
    return _dumps(snapshot_to_dict(snapshot), pretty)


def parse_results(text: str) -> ResultSet:
    """Inverse of ``serialize_results``."""
    try:
        raw = json.loads(text)
        return tuple(
            ProbeResult(
                name=item["name"],
                kind=item["type"],
                outcome=Outcome(
                    healthy=bool(item["healthy"]),
                    detail=item["detail"],
                    elapsed=float(item["elapsed"]),
                ),
            )
            for item in raw
        )
    except (ValueError, KeyError, TypeError) as e:
        raise SerializationFailure(f"Malformed result document: {e}") from e
