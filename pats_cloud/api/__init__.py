"""Public HTTP API package for the upload server."""

from .server import app, main  # noqa: F401  (re-export for convenience)
