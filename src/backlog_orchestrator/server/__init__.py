"""HTTP server entrypoints."""

from .api import create_app

__all__ = ["create_app"]
