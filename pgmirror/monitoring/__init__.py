"""
Monitoring for the replication engine.

Usage:
    from pgmirror.monitoring import ReplicationMetrics, AlertRuleGenerator

    metrics = ReplicationMetrics()
    start_metrics_server(metrics, 9090)

    AlertRuleGenerator().export_to_yaml("alerts.yml")
"""

from pgmirror.monitoring.alerts import AlertRuleGenerator
from pgmirror.monitoring.metrics import ReplicationMetrics, start_metrics_server

__all__ = [
    "AlertRuleGenerator",
    "ReplicationMetrics",
    "start_metrics_server",
]

__version__ = "1.0.0"
