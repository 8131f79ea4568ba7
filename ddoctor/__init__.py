"""ddoctor — periodic health probes for containers, exposed over HTTP."""

__version__ = "0.1.0"
