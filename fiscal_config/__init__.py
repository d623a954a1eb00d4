"""
fiscal_config -- single public entrypoint for inbox configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Services receive typed sections of the
    returned ``InboxConfiguration``; none of them reads YAML files and only
    ``DistributionApiDef.resolve_client_secret()`` reads the environment.

Architecture position:
    Configuration.  Sits above ``fiscal_kernel`` and below
    ``fiscal_services``.  The kernel MUST NEVER import from
    ``fiscal_config``.

Failure modes:
    - ``ConfigurationError`` -- missing file, invalid YAML, unknown keys,
      or out-of-range values.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``FISCAL_CONFIG_TRACE`` log entry with the config_id, version and
    source path.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fiscal_config.loader import load_configuration
from fiscal_config.schema import InboxConfiguration

_logger = logging.getLogger("fiscal_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
_DEFAULT_CONFIG_FILE = "default.yaml"


def get_active_config(path: Path | str | None = None) -> InboxConfiguration:
    """Load the active configuration.

    Args:
        path: Configuration file.  Defaults to fiscal_config/sets/default.yaml.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    source = Path(path) if path is not None else _DEFAULT_CONFIG_DIR / _DEFAULT_CONFIG_FILE
    config = load_configuration(source)

    _logger.info(
        "FISCAL_CONFIG_TRACE",
        extra={
            "trace_type": "FISCAL_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "source": str(source),
        },
    )
    return config


__all__ = [
    "InboxConfiguration",
    "get_active_config",
]
