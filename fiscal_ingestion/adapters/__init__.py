"""Outbound adapters (network I/O only, no DB)."""

from fiscal_ingestion.adapters.distribution_client import DistributionApiClient

__all__ = ["DistributionApiClient"]
