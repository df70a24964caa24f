"""
Unit tests for Prometheus metrics and generated alert rules.
"""

from unittest.mock import patch

import pytest
import yaml

from pgmirror.monitoring.alerts import AlertRuleGenerator
from pgmirror.monitoring.metrics import ReplicationMetrics, start_metrics_server
from pgmirror.reconciliation.engine import ReconciliationReport


class TestReplicationMetrics:
    """Test suite for ReplicationMetrics."""

    @pytest.fixture
    def metrics(self):
        return ReplicationMetrics()

    def sample(self, metrics, name, labels=None):
        return metrics.registry.get_sample_value(name, labels or {})

    def test_instances_do_not_collide(self):
        first = ReplicationMetrics()
        second = ReplicationMetrics()

        first.record_reconnect()

        assert self.sample(first, "pgmirror_listener_reconnects_total") == 1.0
        assert self.sample(second, "pgmirror_listener_reconnects_total") == 0.0

    def test_record_apply_splits_status(self, metrics):
        metrics.record_apply("demanda", "realtime", applied=3, failed=1)
        metrics.record_apply("demanda", "realtime", applied=0, failed=0)

        assert self.sample(metrics, "pgmirror_records_applied_total",
                           {"entity": "demanda", "path": "realtime", "status": "applied"}) == 3.0
        assert self.sample(metrics, "pgmirror_records_applied_total",
                           {"entity": "demanda", "path": "realtime", "status": "failed"}) == 1.0

    def test_divergence_and_ledger_size(self, metrics):
        metrics.record_divergence("demanda", "unresolved_dependency")
        metrics.set_ledger_size(4)

        assert self.sample(metrics, "pgmirror_divergences_total",
                           {"entity": "demanda", "error_kind": "unresolved_dependency"}) == 1.0
        assert self.sample(metrics, "pgmirror_divergence_ledger_size") == 4.0

    def test_record_reconciliation(self, metrics):
        metrics.record_reconciliation(
            ReconciliationReport(entity_type="demanda", missing=3, repaired=2, duration_seconds=1.5)
        )
        metrics.record_reconciliation(ReconciliationReport(entity_type="demanda", error="timeout"))

        assert self.sample(metrics, "pgmirror_reconciliation_runs_total",
                           {"entity": "demanda", "status": "success"}) == 1.0
        assert self.sample(metrics, "pgmirror_reconciliation_runs_total",
                           {"entity": "demanda", "status": "failure"}) == 1.0
        assert self.sample(metrics, "pgmirror_reconciliation_duration_seconds_count",
                           {"entity": "demanda"}) == 2.0

    def test_skipped_passes(self, metrics):
        metrics.record_skipped_pass()
        metrics.record_skipped_pass()

        assert self.sample(metrics, "pgmirror_reconciliation_skipped_total") == 2.0

    @patch("pgmirror.monitoring.metrics.start_http_server")
    def test_start_metrics_server(self, mock_server, metrics):
        assert start_metrics_server(metrics, 9108) is True
        mock_server.assert_called_once_with(9108, registry=metrics.registry)

    @patch("pgmirror.monitoring.metrics.start_http_server")
    def test_metrics_server_disabled(self, mock_server, metrics):
        assert start_metrics_server(metrics, 0) is False
        mock_server.assert_not_called()


class TestAlertRuleGenerator:
    """Test suite for AlertRuleGenerator."""

    @pytest.fixture
    def generator(self):
        return AlertRuleGenerator()

    def test_groups(self, generator):
        rules = generator.generate_alert_rules()

        assert [g["name"] for g in rules["groups"]] == [
            "pgmirror_listener", "pgmirror_divergence", "pgmirror_reconciliation"
        ]

    def test_rules_reference_exported_metrics(self, generator):
        metric_names = {
            "pgmirror_listener_reconnects_total",
            "pgmirror_notifications_in_flight",
            "pgmirror_notifications_total",
            "pgmirror_divergence_ledger_size",
            "pgmirror_divergences_total",
            "pgmirror_reconciliation_runs_total",
            "pgmirror_reconciliation_missing_rows",
            "pgmirror_reconciliation_skipped_total",
        }

        for group in generator.generate_alert_rules()["groups"]:
            for rule in group["rules"]:
                assert any(name in rule["expr"] for name in metric_names), rule["alert"]
                assert {"severity", "component"} <= set(rule["labels"])
                assert {"summary", "description"} <= set(rule["annotations"])

    def test_summary(self, generator):
        assert generator.get_alert_summary() == {
            "total_groups": 3,
            "total_alerts": 9,
            "critical": 1,
            "warning": 7,
            "info": 1,
        }

    def test_export_to_yaml(self, generator, tmp_path):
        output = tmp_path / "alerts.yml"

        generator.export_to_yaml(str(output))

        loaded = yaml.safe_load(output.read_text())
        assert loaded == generator.generate_alert_rules()

    def test_custom_namespace(self):
        rules = AlertRuleGenerator(namespace="mirror").generate_alert_rules()

        assert rules["groups"][0]["name"] == "mirror_listener"
        assert "mirror_listener_reconnects_total" in rules["groups"][0]["rules"][0]["expr"]
