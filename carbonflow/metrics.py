# -*- coding: utf-8 -*-
"""
Prometheus Metrics - CarbonFlow Graph Service

11 Prometheus metrics for carbon-flow graph service monitoring. Recording
helpers are no-ops when ``enable_metrics`` is switched off in the
configuration.

Metrics:
    1.  gl_cf_actions_processed_total (Counter, labels: operation, outcome)
    2.  gl_cf_actions_dropped_total (Counter, labels: reason)
    3.  gl_cf_validation_runs_total (Counter, labels: result)
    4.  gl_cf_validation_issues_total (Counter, labels: severity)
    5.  gl_cf_layout_runs_total (Counter)
    6.  gl_cf_factor_matches_total (Counter, labels: outcome)
    7.  gl_cf_processing_duration_seconds (Histogram, labels: operation)
    8.  gl_cf_graph_nodes (Gauge)
    9.  gl_cf_graph_edges (Gauge)
    10. gl_cf_channel_depth (Gauge)
    11. gl_cf_processing_errors_total (Counter, labels: error_type)

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

from carbonflow.config import get_config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1. Actions handled by the processor, by operation and outcome
cf_actions_processed_total = Counter(
    "gl_cf_actions_processed_total",
    "Total carbon-flow actions handled by the processor",
    labelnames=["operation", "outcome"],
)

# 2. Actions that never reached the processor
cf_actions_dropped_total = Counter(
    "gl_cf_actions_dropped_total",
    "Total carbon-flow actions dropped before processing",
    labelnames=["reason"],
)

# 3. Consistency validation runs by result
cf_validation_runs_total = Counter(
    "gl_cf_validation_runs_total",
    "Total consistency validation runs",
    labelnames=["result"],
)

# 4. Validation findings by severity
cf_validation_issues_total = Counter(
    "gl_cf_validation_issues_total",
    "Total validation issues reported",
    labelnames=["severity"],
)

# 5. Layout runs
cf_layout_runs_total = Counter(
    "gl_cf_layout_runs_total",
    "Total Sankey layout computations",
)

# 6. Emission-factor matches by outcome
cf_factor_matches_total = Counter(
    "gl_cf_factor_matches_total",
    "Total emission-factor match attempts",
    labelnames=["outcome"],
)

# 7. Processing duration histogram by operation
cf_processing_duration_seconds = Histogram(
    "gl_cf_processing_duration_seconds",
    "Carbon-flow processing duration in seconds",
    labelnames=["operation"],
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
)

# 8. Current node count
cf_graph_nodes = Gauge(
    "gl_cf_graph_nodes",
    "Number of nodes in the most recently mutated graph",
)

# 9. Current edge count
cf_graph_edges = Gauge(
    "gl_cf_graph_edges",
    "Number of edges in the most recently mutated graph",
)

# 10. Pending actions on the inbound channel
cf_channel_depth = Gauge(
    "gl_cf_channel_depth",
    "Actions waiting on the inbound channel",
)

# 11. Processing errors by type
cf_processing_errors_total = Counter(
    "gl_cf_processing_errors_total",
    "Total carbon-flow processing errors",
    labelnames=["error_type"],
)


def _enabled() -> bool:
    return get_config().enable_metrics


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def record_action(operation: str, outcome: str) -> None:
    """Record a processed action.

    Args:
        operation: Operation kind (create, update, connect, ...).
        outcome: ``applied``, ``skipped`` or ``error``.
    """
    if not _enabled():
        return
    cf_actions_processed_total.labels(
        operation=operation, outcome=outcome,
    ).inc()


def record_dropped_action(reason: str) -> None:
    """Record an action dropped before the processor saw it."""
    if not _enabled():
        return
    cf_actions_dropped_total.labels(reason=reason).inc()


def record_validation(result: str, errors: int, warnings: int) -> None:
    """Record one validation run and its findings.

    Args:
        result: ``valid`` or ``invalid``.
        errors: Number of errors reported.
        warnings: Number of warnings reported.
    """
    if not _enabled():
        return
    cf_validation_runs_total.labels(result=result).inc()
    if errors:
        cf_validation_issues_total.labels(severity="error").inc(errors)
    if warnings:
        cf_validation_issues_total.labels(severity="warning").inc(warnings)


def record_layout() -> None:
    """Record one layout computation."""
    if not _enabled():
        return
    cf_layout_runs_total.inc()


def record_factor_match(outcome: str) -> None:
    """Record one factor match attempt (``matched``, ``failed``, ``skipped``, ``discarded``)."""
    if not _enabled():
        return
    cf_factor_matches_total.labels(outcome=outcome).inc()


def record_processing_duration(operation: str, duration: float) -> None:
    """Record processing duration.

    Args:
        operation: Operation kind or engine name.
        duration: Duration in seconds.
    """
    if not _enabled():
        return
    cf_processing_duration_seconds.labels(operation=operation).observe(duration)


def set_graph_size(nodes: int, edges: int) -> None:
    """Set the node and edge gauges."""
    if not _enabled():
        return
    cf_graph_nodes.set(nodes)
    cf_graph_edges.set(edges)


def set_channel_depth(depth: int) -> None:
    """Set the pending-action gauge."""
    if not _enabled():
        return
    cf_channel_depth.set(depth)


def record_processing_error(error_type: str) -> None:
    """Record a processing error.

    Args:
        error_type: Exception class name or error category.
    """
    if not _enabled():
        return
    cf_processing_errors_total.labels(error_type=error_type).inc()


__all__ = [
    "cf_actions_processed_total",
    "cf_actions_dropped_total",
    "cf_validation_runs_total",
    "cf_validation_issues_total",
    "cf_layout_runs_total",
    "cf_factor_matches_total",
    "cf_processing_duration_seconds",
    "cf_graph_nodes",
    "cf_graph_edges",
    "cf_channel_depth",
    "cf_processing_errors_total",
    "record_action",
    "record_dropped_action",
    "record_validation",
    "record_layout",
    "record_factor_match",
    "record_processing_duration",
    "set_graph_size",
    "set_channel_depth",
    "record_processing_error",
]
