"""Tests for the ConsistencyValidator and the shared graph helpers."""

import pytest

from carbonflow.models import IssueType, LifecycleStage
from carbonflow.validator import (
    ConsistencyValidator,
    can_reach,
    find_first_cycle,
    is_main_product,
)

from conftest import make_edge, make_node


@pytest.fixture
def validator():
    return ConsistencyValidator()


def complete_node(node_id, stage="raw_material", **kwargs):
    """Node that satisfies the process-completeness rules."""
    kwargs.setdefault("process_info", {"name": node_id})
    kwargs.setdefault("outputs", [f"{node_id}-out"])
    return make_node(node_id, stage=stage, **kwargs)


def main_product(node_id="p", stage="final_product", **kwargs):
    kwargs.setdefault("functional_unit", "1 unit")
    kwargs.setdefault("reference_flow", "1 unit of product")
    return complete_node(node_id, stage=stage, is_main_product=True, **kwargs)


# =============================================================================
# Helpers
# =============================================================================


class TestGraphHelpers:
    def test_can_reach(self):
        edges = [make_edge("a", "b"), make_edge("b", "c")]
        assert can_reach(edges, "a", "c")
        assert not can_reach(edges, "c", "a")
        assert can_reach(edges, "x", "x")

    def test_find_first_cycle(self):
        nodes = [make_node(n) for n in ("a", "b", "c")]
        edges = [make_edge("a", "b"), make_edge("b", "c"), make_edge("c", "a")]

        assert find_first_cycle(nodes, edges) == ["a", "b", "c", "a"]
        assert find_first_cycle(nodes, edges[:2]) is None

    def test_cycle_ignores_dangling_edges(self):
        """Edges to unknown nodes cannot form a cycle."""
        nodes = [make_node("a")]
        assert find_first_cycle(nodes, [make_edge("a", "ghost"), make_edge("ghost", "a")]) is None

    def test_long_chain_does_not_recurse(self):
        ids = [f"n{i}" for i in range(3000)]
        nodes = [make_node(i) for i in ids]
        edges = [make_edge(a, b) for a, b in zip(ids, ids[1:])]
        assert find_first_cycle(nodes, edges) is None

    def test_is_main_product_by_category(self):
        assert is_main_product(make_node("a", attributes={"productCategory": "main"}))
        assert not is_main_product(make_node("a"))


# =============================================================================
# Rules
# =============================================================================


class TestMainProductRule:
    """Exactly one node must be the main product."""

    def test_valid_graph(self, validator):
        nodes = [complete_node("r"), main_product("p")]
        result = validator.validate(nodes, [make_edge("r", "p")])

        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_no_main_product(self, validator):
        result = validator.validate([complete_node("r")], [])

        assert not result.is_valid
        assert result.error_types() == [IssueType.NO_MAIN_PRODUCT]

    def test_two_main_products(self, validator):
        """One error per flagged node."""
        result = validator.validate([main_product("p1"), main_product("p2")], [])

        assert result.error_types() == [IssueType.MULTIPLE_MAIN_PRODUCTS] * 2
        assert {e.node_id for e in result.errors} == {"p1", "p2"}

    def test_missing_functional_unit(self, validator):
        node = main_product(functional_unit=None, reference_flow=None)
        result = validator.validate([node], [])

        assert result.is_valid
        assert set(result.warning_types()) == {
            IssueType.MISSING_FUNCTIONAL_UNIT, IssueType.MISSING_REFERENCE_FLOW,
        }
        assert IssueType.ADD_FUNCTIONAL_UNIT in [r.type for r in result.recommendations]


class TestFlowDirectionRule:
    def test_backwards_flow(self, validator):
        """Manufacturing -> raw material runs against the life-cycle order."""
        nodes = [complete_node("m", stage="manufacturing"), complete_node("r"), main_product()]
        result = validator.validate(nodes, [make_edge("m", "r", "e1")])

        assert result.error_types() == [IssueType.INVALID_FLOW_DIRECTION]
        assert result.errors[0].edge_id == "e1"

    def test_same_stage_rejected(self, validator):
        nodes = [complete_node("a"), complete_node("b"), main_product()]
        result = validator.validate(nodes, [make_edge("a", "b")])

        assert result.error_types() == [IssueType.INVALID_FLOW_DIRECTION]

    def test_unmapped_stage_skipped(self, validator):
        """Edges touching an unknown stage are not checked."""
        nodes = [complete_node("x", stage="recycling"), complete_node("r"), main_product()]
        result = validator.validate(nodes, [make_edge("x", "r")])

        assert result.is_valid


class TestCompletenessRule:
    def test_incomplete_node(self, validator):
        node = make_node("bare")
        result = validator.validate([node, main_product()], [])

        assert set(result.warning_types()) == {
            IssueType.INCOMPLETE_PROCESS_INFO, IssueType.NO_MATERIAL_FLOWS,
        }
        assert IssueType.COMPLETE_MATERIAL_FLOWS in [r.type for r in result.recommendations]

    def test_multi_output_needs_allocation(self, validator):
        node = complete_node("split", outputs=["a", "b"])
        result = validator.validate([node, main_product()], [])
        assert [r.type for r in result.recommendations] == [IssueType.ADD_ALLOCATION_METHOD]

        node = complete_node("split", outputs=["a", "b"],
                             process_info={"allocationMethod": "mass"})
        assert validator.validate([node, main_product()], []).recommendations == []


class TestCycleRule:
    def test_cycle_reported_once(self, validator):
        """Only the first cycle is reported, alongside other rule findings."""
        nodes = [complete_node(n) for n in ("a", "b", "c", "d")] + [main_product()]
        edges = [
            make_edge("a", "b"), make_edge("b", "a"),
            make_edge("c", "d"), make_edge("d", "c"),
        ]
        result = validator.validate(nodes, edges)

        types = result.error_types()
        assert types.count(IssueType.CIRCULAR_DEPENDENCY) == 1
        assert types.count(IssueType.INVALID_FLOW_DIRECTION) == 4
        cycle = next(e for e in result.errors if e.type is IssueType.CIRCULAR_DEPENDENCY)
        assert cycle.context["cycle"] == ["a", "b", "a"]


class TestRecommendStages:
    def test_missing_stages(self, validator):
        recommendations = validator.recommend_stages([complete_node("r"), main_product()])

        stages = [r.action for r in recommendations]
        assert len(recommendations) == len(LifecycleStage) - 2
        assert "create a manufacturing node" in stages
        assert all(r.type is IssueType.ADD_STAGE for r in recommendations)

    def test_does_not_mutate_input(self, validator):
        nodes = [make_node("a")]
        edges = [make_edge("a", "b")]
        before = ([n.model_dump() for n in nodes], [e.model_dump() for e in edges])

        validator.validate(nodes, edges)

        assert before == ([n.model_dump() for n in nodes], [e.model_dump() for e in edges])
