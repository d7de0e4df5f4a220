"""
discount_config -- Tenant discount policy and process settings.

Responsibility:
    ``get_policy_source()`` is the runtime entry point: it loads the tenant
    policy file named by the settings (or the bundled default) and returns
    a ``PolicyRegistry`` implementing ``PolicySource``.

Architecture position:
    Configuration.  Sits above ``discount_kernel``; the kernel never
    imports this package.

Audit relevance:
    Every load emits a ``DISCOUNT_CONFIG_TRACE`` record with the file path,
    checksum and tenant count.
"""

from __future__ import annotations

from pathlib import Path

from discount_config.loader import PolicyRegistry, compute_checksum, load_policies
from discount_config.settings import Settings
from discount_kernel.db.engine import init_engine_from_url
from discount_kernel.logging_config import configure_logging, get_logger

_logger = get_logger("config")

DEFAULT_POLICY_FILE = Path(__file__).parent / "policies" / "default.yaml"


def get_policy_source(path: Path | None = None, settings: Settings | None = None) -> PolicyRegistry:
    """Load tenant policies from ``path``, the settings, or the bundled default."""
    if path is None:
        settings = settings or Settings.from_env()
        path = settings.policy_file or DEFAULT_POLICY_FILE

    registry = load_policies(path)
    _logger.info(
        "DISCOUNT_CONFIG_TRACE",
        extra={
            "trace_type": "DISCOUNT_CONFIG_TRACE",
            "policy_file": str(path),
            "checksum": registry.checksum,
            "tenant_count": len(registry.tenant_ids),
        },
    )
    return registry


def init_from_settings(settings: Settings | None = None):
    """Configure logging and the database engine from process settings."""
    settings = settings or Settings.from_env()
    configure_logging(level=settings.log_level)
    return init_engine_from_url(settings.database_url, echo=settings.sql_echo)


__all__ = [
    "DEFAULT_POLICY_FILE",
    "PolicyRegistry",
    "Settings",
    "compute_checksum",
    "get_policy_source",
    "init_from_settings",
    "load_policies",
]
