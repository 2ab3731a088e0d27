"""
Pipette Kernel - shared runtime support for the NDJSON loader.

Provides:
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with run-scoped context
- Injectable clock for load timestamps
"""

__version__ = "0.1.0"
