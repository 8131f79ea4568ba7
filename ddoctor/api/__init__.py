"""HTTP status endpoint."""

from .server import create_app, serve_status
