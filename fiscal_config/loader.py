"""
Configuration Loader (``fiscal_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the typed
``fiscal_config.schema`` dataclasses.  Runtime callers go through
``fiscal_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Unknown keys are rejected, so a misspelt setting never silently falls
  back to its default.
* Numeric settings are range-checked here, once.

Failure modes
-------------
* Missing file, malformed YAML, unknown or missing keys, wrong types
  -> ``ConfigurationError`` naming the file and the offending section.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any

import yaml

from fiscal_config.schema import (
    AcknowledgmentDef,
    CircuitBreakerDef,
    DatabaseDef,
    DistributionApiDef,
    InboxConfiguration,
    LoggingDef,
    MatchingDef,
    PipelineDef,
    RetryPolicyDef,
)
from fiscal_kernel.exceptions import ConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its top-level mapping.

    Raises:
        ConfigurationError: unreadable file, invalid YAML, or a document
            that is not a mapping.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(f"cannot read configuration: {exc}", source=str(path)) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML: {exc}", source=str(path)) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("top level must be a mapping", source=str(path))
    return data


def _build(cls: type, data: Any, section: str) -> Any:
    """Instantiate a schema dataclass from a mapping, rejecting unknown keys."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("must be a mapping", source=section)

    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"unknown keys {unknown}", source=section)
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigurationError(str(exc), source=section) from exc


def _require_positive(value: Any, section: str, name: str, allow_zero: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number", source=section)
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigurationError(f"{name} must be positive", source=section)


def parse_retry(data: Any) -> RetryPolicyDef:
    data = dict(data or {})
    endpoints = data.pop("endpoints", None) or {}
    if not isinstance(endpoints, dict):
        raise ConfigurationError("endpoints must be a mapping", source="retry")

    overrides: dict[str, int] = {}
    for name, entry in endpoints.items():
        if not isinstance(entry, dict) or set(entry) - {"max_retries"}:
            raise ConfigurationError(
                "endpoint entries only accept max_retries", source=f"retry.endpoints.{name}",
            )
        if "max_retries" in entry:
            _require_positive(entry["max_retries"], f"retry.endpoints.{name}", "max_retries", True)
            overrides[name] = int(entry["max_retries"])

    policy = _build(RetryPolicyDef, data, "retry")
    _require_positive(policy.max_retries, "retry", "max_retries", allow_zero=True)
    _require_positive(policy.base_delay_seconds, "retry", "base_delay_seconds", allow_zero=True)
    _require_positive(policy.max_delay_seconds, "retry", "max_delay_seconds", allow_zero=True)
    _require_positive(policy.backoff_multiplier, "retry", "backoff_multiplier")
    return dataclasses.replace(policy, endpoint_max_retries=overrides)


def parse_distribution_api(data: Any) -> DistributionApiDef:
    if not data:
        raise ConfigurationError("section is required", source="distribution_api")
    for key in ("base_url", "token_url"):
        if not isinstance(data, dict) or not data.get(key):
            raise ConfigurationError(f"{key} is required", source="distribution_api")
    api = _build(DistributionApiDef, data, "distribution_api")
    _require_positive(api.timeout_seconds, "distribution_api", "timeout_seconds")
    _require_positive(api.page_size, "distribution_api", "page_size")
    return api


def parse_pipeline(data: Any) -> PipelineDef:
    pipeline = _build(PipelineDef, data, "pipeline")
    for name in ("batch_size", "max_attempts", "max_workers"):
        _require_positive(getattr(pipeline, name), "pipeline", name)
    _require_positive(pipeline.retry_backoff_seconds, "pipeline", "retry_backoff_seconds", True)
    _require_positive(
        pipeline.retry_backoff_max_seconds, "pipeline", "retry_backoff_max_seconds", True,
    )
    return pipeline


def parse_matching(data: Any) -> MatchingDef:
    matching = _build(MatchingDef, data, "matching")
    if not 0 <= matching.fuzzy_threshold <= 100:
        raise ConfigurationError("fuzzy_threshold must be within 0..100", source="matching")
    _require_positive(matching.candidate_limit, "matching", "candidate_limit")
    _require_positive(matching.suggestion_limit, "matching", "suggestion_limit")
    return matching


def parse_configuration(data: dict[str, Any], source: str = "<memory>") -> InboxConfiguration:
    """
    Parse a whole configuration mapping.

    Raises:
        ConfigurationError: on any structural or range error.
    """
    sections = {
        "config_id", "version", "database", "distribution_api", "retry",
        "circuit_breaker", "pipeline", "matching", "acknowledgment", "logging",
    }
    unknown = sorted(set(data) - sections)
    if unknown:
        raise ConfigurationError(f"unknown sections {unknown}", source=source)

    try:
        circuit = _build(CircuitBreakerDef, data.get("circuit_breaker"), "circuit_breaker")
        _require_positive(circuit.failure_threshold, "circuit_breaker", "failure_threshold")
        _require_positive(circuit.recovery_seconds, "circuit_breaker", "recovery_seconds")

        return InboxConfiguration(
            config_id=str(data.get("config_id") or "default"),
            version=int(data.get("version") or 1),
            distribution_api=parse_distribution_api(data.get("distribution_api")),
            database=_build(DatabaseDef, data.get("database"), "database"),
            retry=parse_retry(data.get("retry")),
            circuit_breaker=circuit,
            pipeline=parse_pipeline(data.get("pipeline")),
            matching=parse_matching(data.get("matching")),
            acknowledgment=_build(
                AcknowledgmentDef, data.get("acknowledgment"), "acknowledgment",
            ),
            logging=_build(LoggingDef, data.get("logging"), "logging"),
        )
    except ConfigurationError as exc:
        if exc.source and not exc.source.startswith(source):
            raise ConfigurationError(str(exc), source=source) from exc
        raise
    except ValueError as exc:
        raise ConfigurationError(str(exc), source=source) from exc


def load_configuration(path: Path) -> InboxConfiguration:
    """Load and parse one configuration file."""
    return parse_configuration(load_yaml_file(path), source=str(path))
