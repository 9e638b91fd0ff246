"""Outbox-driven coordination of role-based coding-agent workers."""

__version__ = "0.1.0"
