"""Tests for the CLI entry point and one-shot mode."""

from __future__ import annotations

import asyncio
import json
import socket
import textwrap
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

from ddoctor.checks.registry import RuntimeConfig
from ddoctor.checks.scheduler import HealthScheduler, SchedulerState
from ddoctor.errors import CycleCancelled, SerializationFailure
from ddoctor.main import (
    EXIT_CANCELLED,
    EXIT_ERROR,
    EXIT_HEALTHY,
    EXIT_UNHEALTHY,
    main,
    run_one_shot,
    serve_forever,
)


def _write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "ddoctor.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


class TestRunOneShot:
    def test_all_healthy(self, fake_probe, capsys) -> None:
        code = run_one_shot([fake_probe("a"), fake_probe("b")])
        assert code == EXIT_HEALTHY
        out = json.loads(capsys.readouterr().out)
        assert [r["name"] for r in out] == ["a", "b"]
        assert all(r["healthy"] for r in out)

    def test_one_unhealthy(self, fake_probe, capsys) -> None:
        code = run_one_shot([fake_probe("a"), fake_probe("b", healthy=False)])
        assert code == EXIT_UNHEALTHY
        out = json.loads(capsys.readouterr().out)
        assert [r["healthy"] for r in out] == [True, False]

    def test_empty_probe_set(self, capsys) -> None:
        assert run_one_shot([]) == EXIT_HEALTHY
        assert json.loads(capsys.readouterr().out) == []

    def test_each_probe_runs_once(self, fake_probe, capsys) -> None:
        probes = [fake_probe(f"p{i}", delay=0.01 * i) for i in range(4)]
        run_one_shot(probes)
        assert [p.calls for p in probes] == [1, 1, 1, 1]

    def test_serialization_failure(self, fake_probe, capsys) -> None:
        with patch(
            "ddoctor.main.serialize_results",
            side_effect=SerializationFailure("Cannot serialize to JSON: boom"),
        ):
            code = run_one_shot([fake_probe("a")])
        assert code == EXIT_ERROR
        assert capsys.readouterr().out == ""

    def test_cancelled(self, fake_probe, capsys) -> None:
        async def cancelled(probes, stop):
            raise CycleCancelled("cancellation requested")

        with patch("ddoctor.main.evaluate_once", side_effect=cancelled):
            code = run_one_shot([fake_probe("a")])
        assert code == EXIT_CANCELLED
        assert capsys.readouterr().out == ""


class TestMain:
    def test_one_shot_healthy(self, tmp_path: Path, capsys) -> None:
        path = _write_config(tmp_path, """\
            checks:
              - type: shell
                name: ok
                exec: "exit 0"
                timeout: 1s
        """)
        with pytest.raises(SystemExit) as exc:
            main(["--one-shot", str(path)])
        assert exc.value.code == EXIT_HEALTHY
        assert json.loads(capsys.readouterr().out)[0]["name"] == "ok"

    def test_one_shot_unhealthy(self, tmp_path: Path, capsys) -> None:
        path = _write_config(tmp_path, """\
            checks:
              - type: shell
                exec: "exit 0"
                timeout: 1s
              - type: command
                exec: ddoctor-no-such-binary
                timeout: 1s
        """)
        with pytest.raises(SystemExit) as exc:
            main(["-o", str(path)])
        assert exc.value.code == EXIT_UNHEALTHY
        out = json.loads(capsys.readouterr().out)
        assert [r["type"] for r in out] == ["shell", "command"]
        assert "not found" in out[1]["detail"]

    def test_missing_config(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["-o", str(tmp_path / "missing.yaml")])
        assert exc.value.code == EXIT_ERROR

    def test_invalid_probe(self, tmp_path: Path) -> None:
        path = _write_config(tmp_path, """\
            checks:
              - type: network
                timeout: 1s
        """)
        with pytest.raises(SystemExit) as exc:
            main(["-o", str(path)])
        assert exc.value.code == EXIT_ERROR

    def test_serve_mode_dispatch(self, tmp_path: Path) -> None:
        path = _write_config(tmp_path, """\
            port: 8099
            checks: []
        """)
        with patch("ddoctor.main.run_server") as mock_run:
            main([str(path)])
        config, probes = mock_run.call_args.args
        assert config.port == 8099
        assert probes == []

    def test_debug_flag_reaches_server(self, tmp_path: Path) -> None:
        path = _write_config(tmp_path, "checks: []\n")
        with patch("ddoctor.main.run_server") as mock_run:
            main(["-d", str(path)])
        assert mock_run.call_args.kwargs["log_level"] == "DEBUG"

    def test_version(self, capsys) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["--version"])
        assert exc.value.code == 0
        assert "ddoctor" in capsys.readouterr().out


class TestServeForever:
    def test_runs_until_stop_then_drains(self, fake_probe) -> None:
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        config = RuntimeConfig(host="127.0.0.1", port=port, period=0.1)
        probe = fake_probe("web", delay=0.05)
        scheduler = HealthScheduler([probe], config.period)

        async def _go() -> int:
            stop = asyncio.Event()
            task = asyncio.create_task(serve_forever(config, scheduler, stop, grace=1.0))
            status = 0
            async with httpx.AsyncClient() as client:
                for _ in range(50):
                    try:
                        status = (await client.get(f"http://127.0.0.1:{port}/")).status_code
                        if status == 200:
                            break
                    except httpx.TransportError:
                        pass
                    await asyncio.sleep(0.1)
            stop.set()
            await asyncio.wait_for(task, timeout=5)
            return status

        assert asyncio.run(_go()) == 200
        assert scheduler.state is SchedulerState.STOPPED
        assert probe.calls >= 1
        assert probe.active == 0
