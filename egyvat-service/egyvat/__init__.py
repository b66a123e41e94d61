"""
Top-level package for the EgyVAT invoicing service.

This package exposes:
- Egyptian Tax Authority validation rules
- The invoice lifecycle state machine
- The Authority submission client (with a demo simulation mode)
- CLI entrypoints
- HTTP API (FastAPI)
"""

__all__ = [
    "schema",
    "validator",
    "authority",
    "lifecycle",
    "adapters",
]
