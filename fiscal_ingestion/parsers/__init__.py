"""Payload parsers (pure; no DB)."""

from fiscal_ingestion.parsers.nfe_xml import NO_IDENTIFIER, parse_header, parse_nfe

__all__ = ["NO_IDENTIFIER", "parse_header", "parse_nfe"]
