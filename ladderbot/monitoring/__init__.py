"""
Monitoring and observability package.

This package contains alerting, metrics, and status components.
"""

from ladderbot.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    configure_alerts,
)
from ladderbot.monitoring.metrics import LadderMetrics, start_metrics_server
from ladderbot.monitoring.status import StatusBoard

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "configure_alerts",
    "LadderMetrics",
    "start_metrics_server",
    "StatusBoard",
]
