"""Crash-tolerant scheduler that drives coding agents through a task backlog."""

__version__ = "0.4.0"
