"""Audit trail for the broker administration console: capture, durable async writing, retention, query."""

__version__ = "0.1.0"
