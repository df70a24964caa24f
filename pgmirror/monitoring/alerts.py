"""
Alert Rule Generator for Prometheus AlertManager

Generates alert rules for the replication engine: real-time propagation
health, divergence ledger growth and reconciliation results.
"""

import logging
from typing import Any, Dict

import yaml

from pgmirror.monitoring.metrics import NAMESPACE

logger = logging.getLogger(__name__)


def _rule(alert: str, expr: str, duration: str, severity: str, component: str,
          summary: str, description: str) -> Dict[str, Any]:
    return {
        "alert": alert,
        "expr": expr,
        "for": duration,
        "labels": {
            "severity": severity,
            "component": component
        },
        "annotations": {
            "summary": summary,
            "description": description
        }
    }


class AlertRuleGenerator:
    """Generates Prometheus AlertManager alert rules for the pgmirror_* metrics."""

    def __init__(self, namespace: str = NAMESPACE):
        self.namespace = namespace
        logger.debug("AlertRuleGenerator initialized")

    def generate_alert_rules(self) -> Dict[str, Any]:
        """
        Generate complete alert rule configuration.

        Returns:
            Dict with alert rule groups in Prometheus format
        """
        groups = [
            self._generate_listener_alerts(),
            self._generate_divergence_alerts(),
            self._generate_reconciliation_alerts(),
        ]

        logger.info(f"Generated {len(groups)} alert rule groups")
        return {"groups": groups}

    def _generate_listener_alerts(self) -> Dict[str, Any]:
        ns = self.namespace
        return {
            "name": f"{ns}_listener",
            "interval": "30s",
            "rules": [
                _rule(
                    "ListenerReconnecting",
                    f"increase({ns}_listener_reconnects_total[10m]) > 3",
                    "5m", "warning", "listener",
                    "Notification subscription keeps dropping",
                    "The change listener reconnected {{ $value }} times in 10 minutes. "
                    "Changes during the gaps are only repaired by reconciliation."
                ),
                _rule(
                    "NotificationsSaturated",
                    f"{ns}_notifications_in_flight >= 10",
                    "10m", "warning", "listener",
                    "Notification workers saturated",
                    "{{ $value }} notifications in flight for 10 minutes; the destination may be slow."
                ),
                _rule(
                    "HighNotificationFailureRate",
                    f"rate({ns}_notifications_total{{outcome=\"failed\"}}[5m]) > 0.1",
                    "5m", "warning", "listener",
                    "Real-time writes failing",
                    "Notifications for {{ $labels.table }} are failing at {{ $value }}/sec"
                ),
            ]
        }

    def _generate_divergence_alerts(self) -> Dict[str, Any]:
        ns = self.namespace
        return {
            "name": f"{ns}_divergence",
            "interval": "1m",
            "rules": [
                _rule(
                    "DivergenceLedgerGrowing",
                    f"{ns}_divergence_ledger_size > 100",
                    "15m", "warning", "ledger",
                    "Divergence ledger accumulating",
                    "The divergence ledger holds {{ $value }} entries (threshold: 100). Run reprocessing."
                ),
                _rule(
                    "CriticalDivergenceBacklog",
                    f"{ns}_divergence_ledger_size > 1000",
                    "5m", "critical", "ledger",
                    "Critical divergence backlog",
                    "The divergence ledger holds {{ $value }} entries (threshold: 1000). Investigate root cause immediately!"
                ),
                _rule(
                    "UnresolvedDependencies",
                    f"rate({ns}_divergences_total{{error_kind=\"unresolved_dependency\"}}[1h]) > 0",
                    "10m", "info", "ledger",
                    "Records withheld for missing references",
                    "{{ $labels.entity }} records reference rows absent from both databases"
                ),
            ]
        }

    def _generate_reconciliation_alerts(self) -> Dict[str, Any]:
        ns = self.namespace
        return {
            "name": f"{ns}_reconciliation",
            "interval": "1m",
            "rules": [
                _rule(
                    "ReconciliationFailure",
                    f"increase({ns}_reconciliation_runs_total{{status=\"failure\"}}[1h]) > 0",
                    "5m", "warning", "reconciliation",
                    "Reconciliation failures detected",
                    "Reconciliation for {{ $labels.entity }} is failing"
                ),
                _rule(
                    "HighMissingRowCount",
                    f"{ns}_reconciliation_missing_rows > 1000",
                    "15m", "warning", "reconciliation",
                    "High missing row count",
                    "{{ $labels.entity }} had {{ $value }} missing rows in the last pass"
                ),
                _rule(
                    "ReconciliationSkipped",
                    f"increase({ns}_reconciliation_skipped_total[1h]) > 2",
                    "5m", "warning", "reconciliation",
                    "Reconciliation passes overrunning",
                    "{{ $value }} scheduled passes skipped in the last hour because the previous pass was still running"
                ),
            ]
        }

    def export_to_yaml(self, output_file: str) -> None:
        """
        Export alert rules to YAML file.

        Args:
            output_file: Path to output YAML file
        """
        rules = self.generate_alert_rules()

        with open(output_file, 'w') as f:
            yaml.dump(rules, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Alert rules exported to {output_file}")

    def get_alert_summary(self) -> Dict[str, int]:
        """
        Get summary of alert rules.

        Returns:
            Dict with counts by severity
        """
        rules = self.generate_alert_rules()

        summary = {
            "total_groups": len(rules["groups"]),
            "total_alerts": 0,
            "critical": 0,
            "warning": 0,
            "info": 0
        }

        for group in rules["groups"]:
            for rule in group["rules"]:
                summary["total_alerts"] += 1
                severity = rule["labels"].get("severity", "unknown")
                if severity in summary:
                    summary[severity] += 1

        return summary
