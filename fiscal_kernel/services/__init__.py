"""Kernel services: audit sink, sequence allocation, retry / circuit breaker."""
