"""
Observability for Conduit.

Structured logging with per-run correlation ids; see logging_config.
"""
