"""Tests for the Prometheus recording helpers."""

from prometheus_client import REGISTRY

from carbonflow.config import CarbonFlowConfig, set_config
from carbonflow.metrics import record_action, record_dropped_action, set_channel_depth


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestMetrics:
    def test_record_action_increments(self):
        before = sample("gl_cf_actions_processed_total", operation="layout", outcome="applied")
        record_action("layout", "applied")
        after = sample("gl_cf_actions_processed_total", operation="layout", outcome="applied")
        assert after == before + 1

    def test_gauge(self):
        set_channel_depth(7)
        assert sample("gl_cf_channel_depth") == 7

    def test_disabled_metrics_are_noops(self):
        set_config(CarbonFlowConfig(enable_metrics=False))
        before = sample("gl_cf_actions_dropped_total", reason="channel_full")
        record_dropped_action("channel_full")
        assert sample("gl_cf_actions_dropped_total", reason="channel_full") == before
