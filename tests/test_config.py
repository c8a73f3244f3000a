"""Tests for CarbonFlowConfig and the config accessors."""

import pytest

from carbonflow.config import CarbonFlowConfig, get_config, reset_config, set_config


class TestCarbonFlowConfig:
    """Tests for defaults and validation."""

    def test_defaults(self):
        """Default values match the documented layout and channel settings."""
        config = CarbonFlowConfig()

        assert config.channel_max_size == 1000
        assert config.min_node_height == 40.0
        assert config.max_node_height == 120.0
        assert config.min_edge_width == 10.0
        assert config.max_edge_width == 60.0
        assert config.match_top_k == 3
        assert config.match_min_score == 0.3
        assert config.default_transport_distance == 100.0
        assert config.enable_provenance is True

    def test_log_level_normalised(self):
        """Log level is upper-cased."""
        assert CarbonFlowConfig(log_level="debug").log_level == "DEBUG"

    def test_invalid_values_collected(self):
        """Every violation is reported in one ValueError."""
        with pytest.raises(ValueError) as exc_info:
            CarbonFlowConfig(
                channel_max_size=0,
                min_node_height=50.0,
                max_node_height=10.0,
                edge_opacity=2.0,
            )
        message = str(exc_info.value)
        assert "channel_max_size" in message
        assert "max_node_height" in message
        assert "edge_opacity" in message

    def test_invalid_log_level(self):
        with pytest.raises(ValueError):
            CarbonFlowConfig(log_level="LOUD")


class TestFromEnv:
    """Tests for GL_CF_ environment overrides."""

    def test_env_overrides(self, monkeypatch):
        """Typed values are read from the environment."""
        monkeypatch.setenv("GL_CF_CHANNEL_MAX_SIZE", "64")
        monkeypatch.setenv("GL_CF_NODE_WIDTH", "150.5")
        monkeypatch.setenv("GL_CF_ENABLE_METRICS", "false")
        monkeypatch.setenv("GL_CF_SEARCH_API_URL", "http://factors.local/match")

        config = CarbonFlowConfig.from_env()

        assert config.channel_max_size == 64
        assert config.node_width == 150.5
        assert config.enable_metrics is False
        assert config.search_api_url == "http://factors.local/match"

    def test_malformed_values_fall_back(self, monkeypatch):
        """Unparseable numbers keep the default."""
        monkeypatch.setenv("GL_CF_CHANNEL_MAX_SIZE", "lots")
        monkeypatch.setenv("GL_CF_SEARCH_TIMEOUT", "soon")

        config = CarbonFlowConfig.from_env()

        assert config.channel_max_size == 1000
        assert config.search_timeout == 30.0


class TestAccessors:
    """Tests for get_config / set_config / reset_config."""

    def test_set_and_get(self):
        config = CarbonFlowConfig(channel_max_size=5)
        set_config(config)
        assert get_config() is config

    def test_reset_rereads_environment(self, monkeypatch):
        """After reset the next get_config builds from the environment."""
        monkeypatch.setenv("GL_CF_ACK_HISTORY_SIZE", "7")
        reset_config()

        assert get_config().ack_history_size == 7
        assert get_config() is get_config()
