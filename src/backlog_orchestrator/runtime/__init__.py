"""Runtime layers: domain, storage, events, orchestrator and HTTP routes."""
