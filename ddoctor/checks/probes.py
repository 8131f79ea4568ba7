"""Probe variants — shell, command and network health checks.

Every probe exposes ``execute(cancel)`` which returns an Outcome within the
probe's own timeout, or raises CycleCancelled promptly once ``cancel`` is set.
Child processes and sockets are always reaped before returning.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shlex
import signal
import tempfile
import time
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from typing import IO, Any, ClassVar, TypeVar

import httpx

from ddoctor.checks.registry import ProbeSpec
from ddoctor.errors import ConfigurationError, CycleCancelled, ProbeExecutionFault

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMED_OUT = "timed out"

# Longest stderr excerpt carried into an Outcome detail
_STDERR_TAIL = 200


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Outcome:
    """Result of running one probe once."""

    healthy: bool
    detail: str
    elapsed: float  # seconds


# ── Cancellation helper ──────────────────────────────────────────────────────


async def wait_cancellable(
    aw: Awaitable[T],
    timeout: float | None,
    cancel: asyncio.Event,
) -> T:
    """Await ``aw`` unless the deadline passes or ``cancel`` fires first.

    Raises asyncio.TimeoutError on deadline and CycleCancelled on
    cancellation. In both cases ``aw`` is cancelled and awaited before
    returning, so nothing keeps running in the background.
    """
    task = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {task, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        stopper.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    if cancel.is_set():
        raise CycleCancelled("cancellation requested")
    raise asyncio.TimeoutError()


# ── Probes ───────────────────────────────────────────────────────────────────


class Probe:
    """Base class. Subclasses implement ``_run`` returning (healthy, detail)."""

    kind: ClassVar[str] = ""

    def __init__(self, spec: ProbeSpec) -> None:
        if not (spec.timeout > 0 and math.isfinite(spec.timeout)):
            raise ConfigurationError(
                f"{spec.name}: timeout must be positive and finite, got {spec.timeout}"
            )
        self.spec = spec

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def timeout(self) -> float:
        return self.spec.timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, timeout={self.timeout})"

    async def execute(self, cancel: asyncio.Event) -> Outcome:
        """Run the probe once. Execution faults become unhealthy Outcomes."""
        t0 = time.perf_counter()
        try:
            healthy, detail = await self._run(cancel)
        except ProbeExecutionFault as e:
            healthy, detail = False, str(e)
        return Outcome(healthy=healthy, detail=detail, elapsed=time.perf_counter() - t0)

    async def _run(self, cancel: asyncio.Event) -> tuple[bool, str]:
        raise NotImplementedError


class _SubprocessProbe(Probe):
    """Shared exit-code / deadline handling for shell and command probes.

    stderr goes to an anonymous temp file rather than a pipe, so the exit
    status is known as soon as the process itself exits, even when a
    background child it started still holds the descriptor.
    """

    def __init__(self, spec: ProbeSpec) -> None:
        super().__init__(spec)
        if not spec.exec.strip():
            raise ConfigurationError(f"{spec.name}: {self.kind} check requires 'exec'")

    async def _spawn(self, stderr: IO[bytes]) -> asyncio.subprocess.Process:
        raise NotImplementedError

    async def _run(self, cancel: asyncio.Event) -> tuple[bool, str]:
        with tempfile.TemporaryFile() as errfile:
            proc = await self._spawn(errfile)
            try:
                await wait_cancellable(proc.wait(), self.timeout, cancel)
            except asyncio.TimeoutError:
                return False, TIMED_OUT
            finally:
                await _reap(proc)

            detail = f"exit code {proc.returncode}"
            if proc.returncode != 0:
                tail = _read_tail(errfile)
                if tail:
                    detail = f"{detail}: {tail}"
            return proc.returncode == 0, detail


class ShellProbe(_SubprocessProbe):
    """Run ``exec`` through /bin/sh. Pipes and redirection are allowed."""

    kind = "shell"

    async def _spawn(self, stderr: IO[bytes]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_shell(
                self.spec.exec,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=stderr,
                start_new_session=True,
            )
        except OSError as e:
            raise ProbeExecutionFault(f"cannot start shell: {e}") from e


class CommandProbe(_SubprocessProbe):
    """Execute ``exec`` directly, without an interpreter."""

    kind = "command"

    def __init__(self, spec: ProbeSpec) -> None:
        super().__init__(spec)
        try:
            self.argv = shlex.split(spec.exec)
        except ValueError as e:
            raise ConfigurationError(f"{spec.name}: cannot parse exec: {e}") from e

    async def _spawn(self, stderr: IO[bytes]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=stderr,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise ProbeExecutionFault(f"command not found: {self.argv[0]}") from e
        except PermissionError as e:
            raise ProbeExecutionFault(f"permission denied: {self.argv[0]}") from e
        except OSError as e:
            raise ProbeExecutionFault(f"cannot execute {self.argv[0]}: {e}") from e


class NetworkProbe(Probe):
    """HTTP GET ``url``; healthy iff the status code is acceptable."""

    kind = "network"

    def __init__(
        self,
        spec: ProbeSpec,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(spec)
        if not spec.url:
            raise ConfigurationError(f"{spec.name}: network check requires 'url'")
        try:
            url = httpx.URL(spec.url)
        except httpx.InvalidURL as e:
            raise ConfigurationError(f"{spec.name}: invalid url {spec.url!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ConfigurationError(f"{spec.name}: url must be http(s), got {spec.url!r}")
        if not spec.status_codes:
            raise ConfigurationError(f"{spec.name}: status_codes must not be empty")
        self._transport = transport

    async def _run(self, cancel: asyncio.Event) -> tuple[bool, str]:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=True,
        ) as client:
            try:
                resp = await wait_cancellable(client.get(self.spec.url), self.timeout, cancel)
            except asyncio.TimeoutError:
                return False, TIMED_OUT
            except httpx.TimeoutException as e:
                return False, f"{TIMED_OUT}: {type(e).__name__}"
            except httpx.HTTPError as e:
                raise ProbeExecutionFault(f"{type(e).__name__}: {e}") from e

        accepted = sorted(self.spec.status_codes)
        if resp.status_code in self.spec.status_codes:
            return True, f"status {resp.status_code}"
        return False, f"status {resp.status_code} not in {accepted}"


async def _reap(proc: asyncio.subprocess.Process) -> None:
    """Kill whatever is left of the probe's session, then wait for the process.

    The session is killed even after a clean exit: background children the
    check started must not outlive it.
    """
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass
    await proc.wait()


def _read_tail(f: IO[bytes]) -> str:
    """Last ``_STDERR_TAIL`` characters written to ``f``, stripped."""
    size = f.seek(0, os.SEEK_END)
    # 4 bytes per character at most in UTF-8
    f.seek(max(0, size - 4 * _STDERR_TAIL))
    return f.read().decode("utf-8", errors="replace").strip()[-_STDERR_TAIL:]


# ── Dispatcher ───────────────────────────────────────────────────────────────

PROBE_TYPES: dict[str, type[Probe]] = {
    ShellProbe.kind: ShellProbe,
    CommandProbe.kind: CommandProbe,
    NetworkProbe.kind: NetworkProbe,
}


def build_probe(spec: ProbeSpec, **kwargs: Any) -> Probe:
    """Instantiate the probe class for ``spec.kind``. Raises ConfigurationError."""
    probe_cls = PROBE_TYPES.get(spec.kind)
    if probe_cls is None:
        raise ConfigurationError(f"{spec.name}: unknown check type {spec.kind!r}")
    return probe_cls(spec, **kwargs)


def build_probes(specs: Sequence[ProbeSpec]) -> list[Probe]:
    probes = [build_probe(s) for s in specs]
    for p in probes:
        logger.info("Check %s: %r", p.kind, p)
    return probes
