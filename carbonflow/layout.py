# -*- coding: utf-8 -*-
"""
SankeyLayoutEngine - CarbonFlow Graph Service

Deterministic layered layout of a carbon-flow graph. Node height and edge
width scale with flow magnitude (a node's carbon footprint) so the canvas
reads as a Sankey diagram.

Algorithm:
    1. Bucket nodes into columns by life-cycle stage ordinal; nodes of an
       unmapped stage go to column 0.
    2. Within a column, stable-sort by descending flow magnitude.
    3. Scale each flow into [min_node_height, max_node_height] against the
       global non-zero minimum and the global maximum. Zero flows, and
       every node of a column whose flows are all equal, get the minimum
       height.
    4. Place columns left to right at a fixed pitch; stack a column's nodes
       top to bottom with a fixed gap, the stack centred on one line.
    5. Give every edge the flow ``min(source, target)``, a stroke width
       scaled into [min_edge_width, max_edge_width] on the edge range
       [min(0, non-zero minimum), max(maximum, 1)], and colour nodes and
       edges by flow level.

The engine only writes position, style, edge weight, edge flow value and
the animated flag. It returns new collections and never mutates its input,
so running it twice on its own output gives identical results.

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from carbonflow.config import CarbonFlowConfig, get_config
from carbonflow.metrics import record_layout, record_processing_duration
from carbonflow.models import CarbonEdge, CarbonNode, Position, stage_ordinal

logger = logging.getLogger(__name__)

FLOW_COLOURS: Dict[str, str] = {
    "high": "#ef4444",
    "medium": "#f59e0b",
    "low": "#10b981",
    "none": "#6b7280",
}


@dataclass(frozen=True)
class LayoutBounds:
    """Bounding box of the laid-out nodes, used to re-fit the viewport."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float


@dataclass(frozen=True)
class LayoutResult:
    nodes: List[CarbonNode]
    edges: List[CarbonEdge]
    bounds: Optional[LayoutBounds]


def normalize(
    value: float,
    low: float,
    high: float,
    out_min: float,
    out_max: float,
) -> float:
    """Linearly map ``value`` from [low, high] into [out_min, out_max], clamped."""
    if high <= low:
        return out_min
    ratio = (value - low) / (high - low)
    ratio = min(1.0, max(0.0, ratio))
    return out_min + ratio * (out_max - out_min)


class SankeyLayoutEngine:
    """Computes node positions and edge weights from flow magnitudes.

    Attributes:
        config: Geometry and colour thresholds.

    Example:
        >>> engine = SankeyLayoutEngine()
        >>> result = engine.layout(store.nodes, store.edges)
        >>> store.set_nodes(result.nodes)
        >>> store.set_edges(result.edges)
    """

    def __init__(self, config: Optional[CarbonFlowConfig] = None) -> None:
        self.config = config or get_config()

    # ------------------------------------------------------------------
    # Scalars
    # ------------------------------------------------------------------

    @staticmethod
    def column_of(node: CarbonNode) -> int:
        ordinal = stage_ordinal(node.stage)
        return 0 if ordinal is None else ordinal

    @staticmethod
    def flow_range(flows: Sequence[float]) -> Tuple[Optional[float], Optional[float]]:
        """Global (non-zero minimum, maximum) of the flows, (None, None) if all zero."""
        non_zero = [f for f in flows if f != 0.0]
        if not non_zero:
            return None, None
        return min(non_zero), max(flows)

    @staticmethod
    def edge_range(flows: Sequence[float]) -> Tuple[float, float]:
        """Edge scale anchored at zero: (min(0, non-zero minimum), max(maximum, 1))."""
        non_zero = [f for f in flows if f != 0.0]
        return min([0.0, *non_zero]), max([1.0, *flows])

    def flow_level(self, flow: float) -> str:
        """Colour bucket of a flow magnitude."""
        magnitude = abs(flow)
        if magnitude > self.config.high_flow_threshold:
            return "high"
        if magnitude > self.config.medium_flow_threshold:
            return "medium"
        if magnitude > 0:
            return "low"
        return "none"

    def node_height(
        self,
        flow: float,
        low: Optional[float],
        high: Optional[float],
    ) -> float:
        cfg = self.config
        if flow == 0.0 or low is None or high is None:
            return cfg.min_node_height
        return normalize(flow, low, high, cfg.min_node_height, cfg.max_node_height)

    def edge_width(
        self,
        flow: float,
        low: Optional[float],
        high: Optional[float],
    ) -> float:
        cfg = self.config
        if low is None or high is None or high <= low:
            return cfg.default_edge_width
        return normalize(flow, low, high, cfg.min_edge_width, cfg.max_edge_width)

    def column_x(self, column: int) -> float:
        cfg = self.config
        return cfg.layer_padding + column * (cfg.node_width + cfg.layer_spacing)

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def layout(
        self,
        nodes: Sequence[CarbonNode],
        edges: Sequence[CarbonEdge],
    ) -> LayoutResult:
        """Lay out a snapshot.

        Args:
            nodes: Node snapshot.
            edges: Edge snapshot.

        Returns:
            LayoutResult with positioned nodes (input order), styled edges
            (input order) and the node bounding box.
        """
        start = time.monotonic()
        cfg = self.config

        flows: Dict[str, float] = {node.id: node.flow_magnitude for node in nodes}
        low, high = self.flow_range(list(flows.values()))
        edge_low, edge_high = self.edge_range(list(flows.values()))

        columns: Dict[int, List[CarbonNode]] = defaultdict(list)
        for node in nodes:
            columns[self.column_of(node)].append(node)

        placed: Dict[str, Tuple[Position, float]] = {}
        for column, members in columns.items():
            ranked = sorted(members, key=lambda n: -flows[n.id])
            degenerate = len({flows[n.id] for n in ranked}) <= 1
            heights = [
                cfg.min_node_height if degenerate
                else self.node_height(flows[n.id], low, high)
                for n in ranked
            ]
            total = sum(heights) + cfg.node_gap * (len(ranked) - 1)
            y = cfg.layout_center_y - total / 2
            x = self.column_x(column)
            for node, height in zip(ranked, heights):
                placed[node.id] = (Position(x=x, y=y), height)
                y += height + cfg.node_gap

        positioned: List[CarbonNode] = []
        for node in nodes:
            position, height = placed[node.id]
            colour = FLOW_COLOURS[self.flow_level(flows[node.id])]
            positioned.append(node.model_copy(update={
                "position": position,
                "style": {
                    **node.style,
                    "width": cfg.node_width,
                    "height": height,
                    "backgroundColor": colour,
                    "borderColor": colour,
                },
            }))

        styled: List[CarbonEdge] = []
        for edge in edges:
            if edge.source not in flows or edge.target not in flows:
                styled.append(edge.model_copy())
                continue
            flow = min(flows[edge.source], flows[edge.target])
            width = self.edge_width(flow, edge_low, edge_high)
            colour = FLOW_COLOURS[self.flow_level(flow)]
            styled.append(edge.model_copy(update={
                "flow_value": flow,
                "weight": width,
                "animated": width > cfg.animated_edge_threshold,
                "style": {
                    **edge.style,
                    "strokeWidth": width,
                    "stroke": colour,
                    "opacity": cfg.edge_opacity,
                },
            }))

        bounds = None
        if placed:
            bounds = LayoutBounds(
                min_x=min(p.x for p, _ in placed.values()),
                min_y=min(p.y for p, _ in placed.values()),
                max_x=max(p.x for p, _ in placed.values()) + cfg.node_width,
                max_y=max(p.y + h for p, h in placed.values()),
            )

        record_layout()
        record_processing_duration("layout", time.monotonic() - start)
        logger.info(
            "Laid out %d nodes in %d column(s) and %d edges",
            len(positioned), len(columns), len(styled),
        )
        return LayoutResult(nodes=positioned, edges=styled, bounds=bounds)


__all__ = [
    "FLOW_COLOURS",
    "LayoutBounds",
    "LayoutResult",
    "SankeyLayoutEngine",
    "normalize",
]
