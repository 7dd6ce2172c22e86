"""
txn_kernel -- Shared foundations for the transaction import pipeline.

Provides:
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with run-scoped context
- Injectable clocks
- SQLAlchemy declarative base and engine/session management
"""

__version__ = "0.1.0"
