"""
InboxConfiguration schema.

The typed form of an inbox configuration file.  YAML documents are parsed
into these frozen dataclasses by ``fiscal_config.loader``; services receive
the sections they need (``PipelineDef``, ``MatchingDef`` ...) rather than
reading files or environment variables themselves.

Secrets never live in the file: ``DistributionApiDef`` carries the *name*
of the environment variable holding the client secret, and
``resolve_client_secret()`` is the one place that reads it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from fiscal_kernel.exceptions import ConfigurationError
from fiscal_kernel.services.retry_service import RetryOptions

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseDef:
    url: str = "sqlite:///fiscal_inbox.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 5


@dataclass(frozen=True)
class DistributionApiDef:
    """Distribution API endpoint and OAuth2 client credentials."""

    base_url: str
    token_url: str
    client_id: str = ""
    client_secret_env: str = "FISCAL_INBOX_CLIENT_SECRET"
    scope: str = "distribuicao-nfe"
    timeout_seconds: float = 30.0
    page_size: int = 50

    def resolve_client_secret(self, environ: Mapping[str, str] | None = None) -> str:
        """
        Read the client secret from the environment.

        Raises:
            ConfigurationError: The variable is unset or empty.
        """
        env = os.environ if environ is None else environ
        secret = env.get(self.client_secret_env, "")
        if not secret:
            raise ConfigurationError(
                f"environment variable {self.client_secret_env} is not set",
                source="distribution_api.client_secret_env",
            )
        return secret


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicyDef:
    """Default retry policy plus per-circuit ``max_retries`` overrides."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    endpoint_max_retries: Mapping[str, int] = field(default_factory=dict)

    def default_options(self) -> RetryOptions:
        return RetryOptions(
            max_retries=self.max_retries,
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )

    def options_for(self, circuit_name: str) -> RetryOptions:
        return RetryOptions(
            max_retries=self.endpoint_max_retries.get(circuit_name, self.max_retries),
            base_delay=self.base_delay_seconds,
            max_delay=self.max_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )

    def endpoint_options(self) -> dict[str, RetryOptions]:
        return {name: self.options_for(name) for name in self.endpoint_max_retries}


@dataclass(frozen=True)
class CircuitBreakerDef:
    failure_threshold: int = 5
    recovery_seconds: float = 60.0


# ---------------------------------------------------------------------------
# Pipeline and matching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineDef:
    batch_size: int = 50
    max_attempts: int = 3
    retry_backoff_seconds: float = 30.0
    retry_backoff_max_seconds: float = 3600.0
    max_workers: int = 4


@dataclass(frozen=True)
class MatchingDef:
    fuzzy_threshold: int = 70
    candidate_limit: int = 20
    suggestion_limit: int = 5


@dataclass(frozen=True)
class AcknowledgmentDef:
    min_justification_length: int = 15


@dataclass(frozen=True)
class LoggingDef:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InboxConfiguration:
    """A complete, validated inbox configuration."""

    config_id: str
    version: int
    distribution_api: DistributionApiDef
    database: DatabaseDef = field(default_factory=DatabaseDef)
    retry: RetryPolicyDef = field(default_factory=RetryPolicyDef)
    circuit_breaker: CircuitBreakerDef = field(default_factory=CircuitBreakerDef)
    pipeline: PipelineDef = field(default_factory=PipelineDef)
    matching: MatchingDef = field(default_factory=MatchingDef)
    acknowledgment: AcknowledgmentDef = field(default_factory=AcknowledgmentDef)
    logging: LoggingDef = field(default_factory=LoggingDef)
