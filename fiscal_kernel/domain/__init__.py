"""Pure domain helpers for the fiscal kernel (no I/O)."""
