"""HTTP API routes for the orchestrator runtime."""

from .router import create_router

__all__ = ["create_router"]
