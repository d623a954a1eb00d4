"""Utility functions for the fiscal kernel."""
