"""Utilities shared across services to standardise observability."""

from .logging import (
    RequestContextMiddleware,
    bind_webinar,
    configure_logging,
    get_correlation_id,
    get_webinar_id,
)
from .metrics import setup_metrics

__all__ = [
    "RequestContextMiddleware",
    "bind_webinar",
    "configure_logging",
    "get_correlation_id",
    "get_webinar_id",
    "setup_metrics",
]
