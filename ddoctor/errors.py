"""Error taxonomy shared by the probe engine, scheduler and entry point."""

from __future__ import annotations


class DdoctorError(Exception):
    """Base class for every error raised by ddoctor."""


class ConfigurationError(DdoctorError):
    """Invalid probe or runtime configuration. Fatal, raised before any cycle runs."""


class ProbeExecutionFault(DdoctorError):
    """A probe could not be executed (spawn failure, transport error, bad response).

    Never escapes the engine: it is always converted into an unhealthy Outcome.
    """


class CycleCancelled(DdoctorError):
    """The root cancellation signal fired before a cycle completed.

    Not a failure — the partial cycle is discarded rather than published.
    """


class SerializationFailure(DdoctorError):
    """A result set could not be rendered as JSON."""
