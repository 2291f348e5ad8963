"""
CloudWatch Metrics Helper

Provides utilities for emitting custom metrics to CloudWatch.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from shared.aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "TierSync")


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Args:
        metric_name: Name of the metric
        value: Metric value (default: 1.0)
        unit: Unit of measurement (Count, Seconds, Bytes, etc.)
        dimensions: Optional dimensions for filtering metrics

    Example:
        emit_metric("PendingUpdatesSwept", 12)
    """
    try:
        metric_data = {
            "MetricName": metric_name,
            "Value": value,
            "Unit": unit,
            "Timestamp": datetime.now(timezone.utc),
        }

        if dimensions:
            metric_data["Dimensions"] = [
                {"Name": k, "Value": v} for k, v in dimensions.items()
            ]

        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[metric_data],
        )

        logger.debug(
            f"Emitted metric: {metric_name}={value} {unit}",
            extra={"dimensions": dimensions},
        )

    except Exception as e:
        # Don't fail the Lambda if metrics fail
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_reconciliation_metric(outcome: str, event_type: str) -> None:
    """Emit one reconciliation outcome (applied, staged, duplicate, ...)."""
    emit_metric(
        "ReconciliationOutcome",
        dimensions={
            "Outcome": outcome,
            "EventType": event_type[:100],
        },
    )


def emit_error_metric(error_type: str, handler: Optional[str] = None) -> None:
    """
    Emit an error metric with standard dimensions.

    Args:
        error_type: Type of error (e.g., 'malformed_event', 'conflict')
        handler: Lambda handler name
    """
    dimensions = {"ErrorType": error_type}
    if handler:
        dimensions["Handler"] = handler

    emit_metric("Errors", dimensions=dimensions)
