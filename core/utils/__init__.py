# SPDX-License-Identifier: MIT
"""Shared utilities for the rollout controller."""

from .logging import (
    JSONFormatter,
    StructuredLogger,
    configure_logging,
    generate_rollout_id,
    get_logger,
    get_rollout_id,
    rollout_context,
)
from .metrics import (
    MetricsCollector,
    get_metrics_collector,
    start_metrics_server,
)

__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_logging",
    "generate_rollout_id",
    "get_logger",
    "get_rollout_id",
    "rollout_context",
    "MetricsCollector",
    "get_metrics_collector",
    "start_metrics_server",
]
