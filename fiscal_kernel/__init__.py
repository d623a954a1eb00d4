"""
Fiscal Kernel - shared infrastructure for the fiscal document inbox.

Provides:
- Persistence base classes and session management
- Structured JSON logging with request-scoped context
- Typed exception hierarchy with machine-readable codes
- Injectable clocks
- Hash-chained audit trail
- Retry / circuit-breaker protection for outbound calls
"""

__version__ = "0.1.0"
