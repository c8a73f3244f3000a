# -*- coding: utf-8 -*-
"""
CarbonFlow Service Configuration

Centralized configuration for the CarbonFlow graph service covering:
- Inbound action channel sizing (bounded queue, acknowledgement history)
- Sankey layout geometry (node width, height band, layer and node spacing)
- Edge width band and flow colour thresholds
- Emission-factor search client (URL, timeout, top-k, minimum score)
- Autofill defaults for transport data
- Provenance tracking (genesis hash, SHA-256 chain anchoring)
- Snapshot persistence directory
- Prometheus metrics export toggle and logging level

All settings can be overridden via environment variables with the
``GL_CF_`` prefix (e.g. ``GL_CF_CHANNEL_MAX_SIZE``, ``GL_CF_SEARCH_API_URL``).

Environment Variable Reference (GL_CF_ prefix):
    GL_CF_LOG_LEVEL                - Logging level (DEBUG/INFO/WARNING/ERROR)
    GL_CF_CHANNEL_MAX_SIZE         - Maximum pending actions on the inbound channel
    GL_CF_ACK_HISTORY_SIZE         - Acknowledgement events kept per session
    GL_CF_CONSUMER_POLL_INTERVAL   - Consumer wake-up interval in seconds
    GL_CF_NODE_WIDTH               - Layout node width
    GL_CF_MIN_NODE_HEIGHT          - Smallest node height
    GL_CF_MAX_NODE_HEIGHT          - Largest node height
    GL_CF_LAYER_PADDING            - Left offset of the first layer column
    GL_CF_LAYER_SPACING            - Horizontal gap between layer columns
    GL_CF_NODE_GAP                 - Vertical gap between nodes of one layer
    GL_CF_LAYOUT_CENTER_Y          - Vertical centre line of every layer
    GL_CF_MIN_EDGE_WIDTH           - Thinnest edge stroke
    GL_CF_MAX_EDGE_WIDTH           - Thickest edge stroke
    GL_CF_DEFAULT_EDGE_WIDTH       - Edge stroke when the flow range is degenerate
    GL_CF_ANIMATED_EDGE_THRESHOLD  - Edge width above which edges are animated
    GL_CF_MEDIUM_FLOW_THRESHOLD    - Flow above which colour is "medium"
    GL_CF_HIGH_FLOW_THRESHOLD      - Flow above which colour is "high"
    GL_CF_SEARCH_API_URL           - Emission-factor search endpoint
    GL_CF_SEARCH_TIMEOUT           - Search request timeout in seconds
    GL_CF_MATCH_TOP_K              - Candidates requested per plain match
    GL_CF_MATCH_MIN_SCORE          - Minimum score for a plain match
    GL_CF_AI_MATCH_TOP_K           - Candidates requested per AI-assisted match
    GL_CF_BATCH_HISTORY_SIZE       - Finished match batches kept per session
    GL_CF_AI_MATCH_MIN_SCORE       - Minimum score for an AI-assisted match
    GL_CF_DEFAULT_TRANSPORT_DISTANCE - Transport distance used by autofill
    GL_CF_DEFAULT_TRANSPORT_METHOD - Transport method used by autofill
    GL_CF_SNAPSHOT_DIR             - Directory of the JSON snapshot repository
    GL_CF_ENABLE_PROVENANCE        - Enable SHA-256 provenance chain tracking
    GL_CF_GENESIS_HASH             - Genesis anchor string for provenance chain
    GL_CF_ENABLE_METRICS           - Enable Prometheus metrics export (true/false)

Example:
    >>> from carbonflow.config import get_config
    >>> cfg = get_config()
    >>> print(cfg.channel_max_size, cfg.node_width)
    1000 200.0

    >>> # Override for testing
    >>> from carbonflow.config import CarbonFlowConfig, set_config, reset_config
    >>> set_config(CarbonFlowConfig(channel_max_size=8, enable_metrics=False))
    >>> reset_config()  # teardown

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable prefix
# ---------------------------------------------------------------------------

_ENV_PREFIX = "GL_CF_"

# ---------------------------------------------------------------------------
# Valid log levels
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS = frozenset(
    {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
)


# ---------------------------------------------------------------------------
# CarbonFlowConfig
# ---------------------------------------------------------------------------


@dataclass
class CarbonFlowConfig:
    """Complete configuration for the CarbonFlow graph service.

    Attributes are grouped by concern: logging, action channel, layout
    geometry, edge styling, flow colouring, factor matching, autofill,
    persistence, provenance tracking, and metrics export.

    All attributes can be overridden via environment variables using the
    ``GL_CF_`` prefix (e.g. ``GL_CF_CHANNEL_MAX_SIZE=64``).

    Attributes:
        log_level: Logging verbosity level for the CarbonFlow service.
        channel_max_size: Capacity of the bounded inbound action channel.
            Dispatches beyond it are rejected and counted as dropped.
        ack_history_size: Number of acknowledgement events retained per
            bridge for inspection by the API.
        consumer_poll_interval: Seconds the channel consumer waits for a
            message before re-checking its running flag.
        node_width: Width of every laid-out node.
        min_node_height: Height of the smallest (or degenerate) flow.
        max_node_height: Height of the largest flow.
        layer_padding: X offset of the first life-cycle column.
        layer_spacing: Horizontal gap between adjacent columns.
        node_gap: Vertical gap between stacked nodes of one column.
        layout_center_y: Y coordinate each column is centred on.
        min_edge_width: Thinnest edge stroke width.
        max_edge_width: Thickest edge stroke width.
        default_edge_width: Stroke width when the flow range is degenerate.
        animated_edge_threshold: Edges wider than this are animated.
        edge_opacity: Stroke opacity of styled edges.
        medium_flow_threshold: Flows above this are coloured "medium".
        high_flow_threshold: Flows above this are coloured "high".
        search_api_url: Emission-factor search endpoint. Empty disables
            the HTTP search client.
        search_timeout: Timeout (s) of one search request.
        match_top_k: Candidates requested by a plain factor match.
        match_min_score: Minimum similarity score of a plain match.
        ai_match_top_k: Candidates requested by an AI-assisted match.
        ai_match_min_score: Minimum similarity score of an AI-assisted match.
        batch_history_size: Finished match batches retained per session;
            older finished batches are forgotten.
        default_transport_distance: Distance written by transport autofill.
        default_transport_method: Method written by transport autofill.
        snapshot_dir: Directory used by the JSON snapshot repository.
        enable_provenance: Whether to record SHA-256 provenance hashes for
            every graph mutation.
        genesis_hash: Anchor string used as the root of every provenance chain.
        enable_metrics: When True, Prometheus metrics are recorded under the
            ``gl_cf_`` prefix.
    """

    # -- Logging -------------------------------------------------------------
    log_level: str = "INFO"

    # -- Action channel ------------------------------------------------------
    channel_max_size: int = 1000
    ack_history_size: int = 500
    consumer_poll_interval: float = 0.1

    # -- Layout geometry -----------------------------------------------------
    node_width: float = 200.0
    min_node_height: float = 40.0
    max_node_height: float = 120.0
    layer_padding: float = 300.0
    layer_spacing: float = 450.0
    node_gap: float = 300.0
    layout_center_y: float = 500.0

    # -- Edge styling --------------------------------------------------------
    min_edge_width: float = 10.0
    max_edge_width: float = 60.0
    default_edge_width: float = 20.0
    animated_edge_threshold: float = 30.0
    edge_opacity: float = 0.7

    # -- Flow colouring ------------------------------------------------------
    medium_flow_threshold: float = 10.0
    high_flow_threshold: float = 50.0

    # -- Factor matching -----------------------------------------------------
    search_api_url: str = ""
    search_timeout: float = 30.0
    match_top_k: int = 3
    match_min_score: float = 0.3
    ai_match_top_k: int = 5
    ai_match_min_score: float = 0.2
    batch_history_size: int = 100

    # -- Autofill ------------------------------------------------------------
    default_transport_distance: float = 100.0
    default_transport_method: str = "truck"

    # -- Persistence ---------------------------------------------------------
    snapshot_dir: str = ".carbonflow/snapshots"

    # -- Provenance tracking -------------------------------------------------
    enable_provenance: bool = True
    genesis_hash: str = "greenlang-carbonflow-genesis"

    # -- Metrics export ------------------------------------------------------
    enable_metrics: bool = True

    # ------------------------------------------------------------------
    # Post-init validation
    # ------------------------------------------------------------------

    def __post_init__(self) -> None:
        """Validate configuration constraints after initialisation.

        Raises:
            ValueError: If any configuration value is outside its valid range
                or uses an unsupported enumerated value.
        """
        errors: list[str] = []

        # -- Logging ---------------------------------------------------------
        normalised_log = self.log_level.upper()
        if normalised_log not in _VALID_LOG_LEVELS:
            errors.append(
                f"log_level must be one of {sorted(_VALID_LOG_LEVELS)}, "
                f"got '{self.log_level}'"
            )
        else:
            self.log_level = normalised_log

        # -- Action channel --------------------------------------------------
        if self.channel_max_size <= 0:
            errors.append(
                f"channel_max_size must be > 0, got {self.channel_max_size}"
            )
        if self.ack_history_size <= 0:
            errors.append(
                f"ack_history_size must be > 0, got {self.ack_history_size}"
            )
        if self.consumer_poll_interval <= 0:
            errors.append(
                f"consumer_poll_interval must be > 0, "
                f"got {self.consumer_poll_interval}"
            )

        # -- Layout geometry -------------------------------------------------
        if self.node_width <= 0:
            errors.append(f"node_width must be > 0, got {self.node_width}")
        if self.min_node_height <= 0:
            errors.append(
                f"min_node_height must be > 0, got {self.min_node_height}"
            )
        if self.max_node_height < self.min_node_height:
            errors.append(
                f"max_node_height ({self.max_node_height}) must not be "
                f"below min_node_height ({self.min_node_height})"
            )
        if self.layer_spacing < 0 or self.node_gap < 0:
            errors.append("layer_spacing and node_gap must be >= 0")

        # -- Edge styling ----------------------------------------------------
        if self.min_edge_width <= 0:
            errors.append(
                f"min_edge_width must be > 0, got {self.min_edge_width}"
            )
        if self.max_edge_width < self.min_edge_width:
            errors.append(
                f"max_edge_width ({self.max_edge_width}) must not be "
                f"below min_edge_width ({self.min_edge_width})"
            )
        if not (0.0 <= self.edge_opacity <= 1.0):
            errors.append(
                f"edge_opacity must be in [0.0, 1.0], got {self.edge_opacity}"
            )

        # -- Flow colouring --------------------------------------------------
        if self.high_flow_threshold < self.medium_flow_threshold:
            errors.append(
                f"high_flow_threshold ({self.high_flow_threshold}) must not "
                f"be below medium_flow_threshold ({self.medium_flow_threshold})"
            )

        # -- Factor matching -------------------------------------------------
        if self.search_timeout <= 0:
            errors.append(
                f"search_timeout must be > 0, got {self.search_timeout}"
            )
        if self.match_top_k <= 0 or self.ai_match_top_k <= 0:
            errors.append("match_top_k and ai_match_top_k must be > 0")
        if self.batch_history_size <= 0:
            errors.append(
                f"batch_history_size must be > 0, got {self.batch_history_size}"
            )
        for name in ("match_min_score", "ai_match_min_score"):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                errors.append(f"{name} must be in [0.0, 1.0], got {value}")
        if not self.search_api_url:
            logger.debug(
                "CarbonFlowConfig: search_api_url is empty; "
                "HTTP factor search is disabled until GL_CF_SEARCH_API_URL is set."
            )

        # -- Autofill --------------------------------------------------------
        if self.default_transport_distance < 0:
            errors.append(
                f"default_transport_distance must be >= 0, "
                f"got {self.default_transport_distance}"
            )

        # -- Provenance ------------------------------------------------------
        if not self.genesis_hash:
            errors.append("genesis_hash must not be empty")

        if errors:
            raise ValueError(
                "CarbonFlowConfig validation failed:\n  - "
                + "\n  - ".join(errors)
            )

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> CarbonFlowConfig:
        """Build a CarbonFlowConfig from environment variables.

        Every field can be overridden via ``GL_CF_<FIELD_UPPER>``.
        Boolean values accept ``true/1/yes`` (case-insensitive).
        Integer values are parsed via ``int()``.
        Float values are parsed via ``float()``.

        Returns:
            Populated CarbonFlowConfig instance.
        """
        prefix = _ENV_PREFIX

        def _env(name: str, default: Any = None) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}", default)

        def _bool(name: str, default: bool) -> bool:
            val = _env(name)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def _int(name: str, default: int) -> int:
            val = _env(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                logger.warning(
                    "Invalid integer for %s%s=%s, using default %d",
                    prefix, name, val, default,
                )
                return default

        def _float(name: str, default: float) -> float:
            val = _env(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                logger.warning(
                    "Invalid float for %s%s=%s, using default %f",
                    prefix, name, val, default,
                )
                return default

        def _str(name: str, default: str) -> str:
            val = _env(name)
            if val is None:
                return default
            return val

        config = cls(
            # Logging
            log_level=_str("LOG_LEVEL", cls.log_level),
            # Action channel
            channel_max_size=_int("CHANNEL_MAX_SIZE", cls.channel_max_size),
            ack_history_size=_int("ACK_HISTORY_SIZE", cls.ack_history_size),
            consumer_poll_interval=_float(
                "CONSUMER_POLL_INTERVAL", cls.consumer_poll_interval,
            ),
            # Layout geometry
            node_width=_float("NODE_WIDTH", cls.node_width),
            min_node_height=_float("MIN_NODE_HEIGHT", cls.min_node_height),
            max_node_height=_float("MAX_NODE_HEIGHT", cls.max_node_height),
            layer_padding=_float("LAYER_PADDING", cls.layer_padding),
            layer_spacing=_float("LAYER_SPACING", cls.layer_spacing),
            node_gap=_float("NODE_GAP", cls.node_gap),
            layout_center_y=_float("LAYOUT_CENTER_Y", cls.layout_center_y),
            # Edge styling
            min_edge_width=_float("MIN_EDGE_WIDTH", cls.min_edge_width),
            max_edge_width=_float("MAX_EDGE_WIDTH", cls.max_edge_width),
            default_edge_width=_float(
                "DEFAULT_EDGE_WIDTH", cls.default_edge_width,
            ),
            animated_edge_threshold=_float(
                "ANIMATED_EDGE_THRESHOLD", cls.animated_edge_threshold,
            ),
            edge_opacity=_float("EDGE_OPACITY", cls.edge_opacity),
            # Flow colouring
            medium_flow_threshold=_float(
                "MEDIUM_FLOW_THRESHOLD", cls.medium_flow_threshold,
            ),
            high_flow_threshold=_float(
                "HIGH_FLOW_THRESHOLD", cls.high_flow_threshold,
            ),
            # Factor matching
            search_api_url=_str("SEARCH_API_URL", cls.search_api_url),
            search_timeout=_float("SEARCH_TIMEOUT", cls.search_timeout),
            match_top_k=_int("MATCH_TOP_K", cls.match_top_k),
            match_min_score=_float("MATCH_MIN_SCORE", cls.match_min_score),
            ai_match_top_k=_int("AI_MATCH_TOP_K", cls.ai_match_top_k),
            ai_match_min_score=_float(
                "AI_MATCH_MIN_SCORE", cls.ai_match_min_score,
            ),
            batch_history_size=_int("BATCH_HISTORY_SIZE", cls.batch_history_size),
            # Autofill
            default_transport_distance=_float(
                "DEFAULT_TRANSPORT_DISTANCE", cls.default_transport_distance,
            ),
            default_transport_method=_str(
                "DEFAULT_TRANSPORT_METHOD", cls.default_transport_method,
            ),
            # Persistence
            snapshot_dir=_str("SNAPSHOT_DIR", cls.snapshot_dir),
            # Provenance
            enable_provenance=_bool(
                "ENABLE_PROVENANCE", cls.enable_provenance,
            ),
            genesis_hash=_str("GENESIS_HASH", cls.genesis_hash),
            # Metrics
            enable_metrics=_bool("ENABLE_METRICS", cls.enable_metrics),
        )

        logger.info(
            "CarbonFlowConfig loaded: channel=%d, ack_history=%d, "
            "node=%.0fx[%.0f-%.0f], edge=[%.0f-%.0f], "
            "match top_k=%d/%d, search_url=%s, provenance=%s, metrics=%s",
            config.channel_max_size,
            config.ack_history_size,
            config.node_width,
            config.min_node_height,
            config.max_node_height,
            config.min_edge_width,
            config.max_edge_width,
            config.match_top_k,
            config.ai_match_top_k,
            config.search_api_url or "<disabled>",
            config.enable_provenance,
            config.enable_metrics,
        )
        return config


# ---------------------------------------------------------------------------
# Thread-safe singleton access
# ---------------------------------------------------------------------------

_config_instance: Optional[CarbonFlowConfig] = None
_config_lock = threading.Lock()


def get_config() -> CarbonFlowConfig:
    """Return the singleton CarbonFlowConfig.

    The instance is created on first call from environment variables via
    :meth:`CarbonFlowConfig.from_env`. Subsequent calls return the cached
    instance without re-reading the environment.

    Returns:
        CarbonFlowConfig singleton instance.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = CarbonFlowConfig.from_env()
    return _config_instance


def set_config(config: CarbonFlowConfig) -> None:
    """Replace the singleton CarbonFlowConfig.

    Args:
        config: New :class:`CarbonFlowConfig` to install as the singleton.
    """
    global _config_instance
    with _config_lock:
        _config_instance = config
    logger.info(
        "CarbonFlowConfig replaced programmatically: channel=%d, metrics=%s",
        config.channel_max_size,
        config.enable_metrics,
    )


def reset_config() -> None:
    """Reset the singleton so the next :func:`get_config` re-reads GL_CF_* vars."""
    global _config_instance
    with _config_lock:
        _config_instance = None
    logger.debug("CarbonFlowConfig singleton reset")


# ---------------------------------------------------------------------------
# Public surface
# ---------------------------------------------------------------------------

__all__ = [
    "CarbonFlowConfig",
    "get_config",
    "set_config",
    "reset_config",
]
