"""Tests for the Sankey layout engine."""

import pytest

from carbonflow.layout import FLOW_COLOURS, SankeyLayoutEngine, normalize

from conftest import make_edge, make_node


@pytest.fixture
def engine(carbonflow_config):
    return SankeyLayoutEngine(carbonflow_config)


def by_id(nodes):
    return {node.id: node for node in nodes}


class TestNormalize:
    def test_linear_and_clamped(self):
        assert normalize(5, 0, 10, 40, 120) == 80
        assert normalize(-1, 0, 10, 40, 120) == 40
        assert normalize(99, 0, 10, 40, 120) == 120

    def test_degenerate_range(self):
        assert normalize(5, 5, 5, 40, 120) == 40


class TestNodePlacement:
    """Tests for columns, heights and stacking."""

    def test_single_node_gets_minimum_height(self, engine):
        result = engine.layout([make_node("a", footprint=50)], [])
        node = result.nodes[0]

        assert node.style["height"] == 40.0
        assert (node.position.x, node.position.y) == (300.0, 480.0)

    def test_columns_follow_stage_order(self, engine):
        nodes = [
            make_node("p", stage="final_product"),
            make_node("m", stage="manufacturing"),
            make_node("r", stage="raw_material"),
            make_node("x", stage="recycling"),
        ]
        placed = by_id(engine.layout(nodes, []).nodes)

        assert placed["r"].position.x == 300.0
        assert placed["x"].position.x == 300.0
        assert placed["m"].position.x == 950.0
        assert placed["p"].position.x == 300.0 + 5 * 650.0

    def test_heights_scale_with_flow(self, engine):
        """Flows [0, 5, 50] give heights 40, 40 and 120."""
        nodes = [
            make_node("zero", footprint=0),
            make_node("small", footprint=5),
            make_node("large", footprint=50),
        ]
        placed = by_id(engine.layout(nodes, []).nodes)

        assert placed["zero"].style["height"] == 40.0
        assert placed["small"].style["height"] == 40.0
        assert placed["large"].style["height"] == 120.0

    def test_column_sorted_by_descending_flow(self, engine):
        nodes = [make_node("small", footprint=5), make_node("large", footprint=50)]
        result = engine.layout(nodes, [])
        placed = by_id(result.nodes)

        assert [n.id for n in result.nodes] == ["small", "large"]
        assert placed["large"].position.y < placed["small"].position.y
        assert placed["small"].position.y == placed["large"].position.y + 120.0 + 300.0

    def test_colour_levels(self, engine):
        nodes = [
            make_node("hi", footprint=60), make_node("mid", stage="manufacturing", footprint=20),
            make_node("lo", stage="usage", footprint=1), make_node("none", stage="disposal"),
        ]
        placed = by_id(engine.layout(nodes, []).nodes)

        assert placed["hi"].style["backgroundColor"] == FLOW_COLOURS["high"]
        assert placed["mid"].style["backgroundColor"] == FLOW_COLOURS["medium"]
        assert placed["lo"].style["backgroundColor"] == FLOW_COLOURS["low"]
        assert placed["none"].style["backgroundColor"] == FLOW_COLOURS["none"]

    def test_unparseable_footprint_is_zero_flow(self, engine):
        placed = engine.layout([make_node("a", footprint="n/a")], []).nodes[0]
        assert placed.style["backgroundColor"] == FLOW_COLOURS["none"]


class TestEdgeStyling:
    def test_edge_flow_and_width(self, engine):
        """Edge flow is the smaller endpoint footprint."""
        nodes = [make_node("a", footprint=50), make_node("b", stage="manufacturing", footprint=30)]
        edge = engine.layout(nodes, [make_edge("a", "b")]).edges[0]

        assert edge.flow_value == 30.0
        assert edge.weight == 40.0
        assert edge.style["strokeWidth"] == 40.0
        assert edge.style["stroke"] == FLOW_COLOURS["medium"]
        assert edge.animated is True

    def test_edge_scale_starts_at_zero(self, engine):
        """A zero-flow edge stays thinner than any carrying flow."""
        nodes = [
            make_node("a", footprint=50),
            make_node("b", stage="manufacturing", footprint=30),
            make_node("c", stage="distribution", footprint=0),
        ]
        edges = engine.layout(nodes, [make_edge("a", "b"), make_edge("b", "c")]).edges

        assert edges[0].weight == 40.0
        assert edges[1].weight == 10.0
        assert edges[1].animated is False

    def test_wide_edges_are_animated(self, engine):
        nodes = [
            make_node("a", footprint=10),
            make_node("b", stage="manufacturing", footprint=100),
            make_node("c", stage="distribution", footprint=100),
        ]
        edges = engine.layout(nodes, [make_edge("a", "b"), make_edge("b", "c")]).edges

        assert edges[0].weight == 15.0
        assert edges[0].animated is False
        assert edges[1].weight == 60.0
        assert edges[1].animated is True

    def test_all_zero_flows_give_minimum_width(self, engine):
        nodes = [make_node("a"), make_node("b", stage="manufacturing")]
        edge = engine.layout(nodes, [make_edge("a", "b")]).edges[0]
        assert edge.weight == 10.0

    def test_edge_range(self, engine):
        assert engine.edge_range([50.0, 30.0, 0.0]) == (0.0, 50.0)
        assert engine.edge_range([0.0, 0.5]) == (0.0, 1.0)
        assert engine.edge_range([-4.0, 8.0]) == (-4.0, 8.0)

    def test_degenerate_range_uses_default_width(self, engine):
        assert engine.edge_width(5.0, 3.0, 3.0) == 20.0

    def test_dangling_edge_left_untouched(self, engine):
        edge = engine.layout([make_node("a", footprint=5)], [make_edge("a", "ghost")]).edges[0]
        assert edge.weight is None


class TestLayoutProperties:
    def test_idempotent(self, engine):
        """Laying out the output again changes nothing."""
        nodes = [make_node("a", footprint=50), make_node("b", stage="manufacturing", footprint=30)]
        edges = [make_edge("a", "b")]

        first = engine.layout(nodes, edges)
        second = engine.layout(first.nodes, first.edges)

        assert [n.model_dump() for n in first.nodes] == [n.model_dump() for n in second.nodes]
        assert [e.model_dump() for e in first.edges] == [e.model_dump() for e in second.edges]

    def test_input_not_mutated(self, engine):
        nodes = [make_node("a", footprint=50)]
        edges = [make_edge("a", "b")]
        engine.layout(nodes, edges)

        assert nodes[0].position.x == 0.0
        assert nodes[0].style == {}
        assert edges[0].weight is None

    def test_bounds(self, engine):
        result = engine.layout(
            [make_node("a", footprint=50), make_node("b", stage="manufacturing", footprint=30)], [],
        )
        bounds = result.bounds

        assert bounds.min_x == 300.0
        assert bounds.max_x == 950.0 + 200.0
        assert bounds.min_y == 480.0
        assert bounds.max_y == 520.0

    def test_empty_graph(self, engine):
        result = engine.layout([], [])
        assert result.nodes == [] and result.edges == []
        assert result.bounds is None
