"""Structured logging setup and Prometheus counters for the clinic workflow."""

from __future__ import annotations

import logging
from typing import Optional

import structlog
from prometheus_client import REGISTRY, Counter

_CONFIGURED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structlog and the stdlib root logger once per process."""

    global _CONFIGURED

    if _CONFIGURED:
        return
    resolved = (level or "INFO").upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


# prometheus_client registers counters under both ``name`` and ``name_total``;
# look up the bare name so module reloads in tests reuse the collector.
CLASSIFICATIONS_TOTAL = _get_or_create_metric(
    Counter,
    "drugtest_classifications",
    "Screen classifications by initial screen result",
    ["result"],
)
FINAL_STATUS_TOTAL = _get_or_create_metric(
    Counter,
    "drugtest_final_status",
    "Completed drug tests by final status and disposition",
    ["status", "disposition"],
)
NOTIFICATION_DELIVERIES_TOTAL = _get_or_create_metric(
    Counter,
    "drugtest_notification_deliveries",
    "Notification stage dispatches by outcome",
    ["stage", "outcome"],
)
ADMIN_ALERTS_TOTAL = _get_or_create_metric(
    Counter,
    "drugtest_admin_alerts",
    "Admin alerts raised by type and severity",
    ["alert_type", "severity"],
)
DUTY_LOOKUPS_TOTAL = _get_or_create_metric(
    Counter,
    "drugtest_duty_lookups",
    "Technician duty lookups by resolution source",
    ["source"],
)


__all__ = [
    "ADMIN_ALERTS_TOTAL",
    "CLASSIFICATIONS_TOTAL",
    "DUTY_LOOKUPS_TOTAL",
    "FINAL_STATUS_TOTAL",
    "NOTIFICATION_DELIVERIES_TOTAL",
    "configure_logging",
]
