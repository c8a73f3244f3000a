# -*- coding: utf-8 -*-
"""
ConsistencyValidator - CarbonFlow Graph Service

Checks the structural invariants of a carbon-flow graph snapshot and
returns errors, warnings and recommendations. Every rule runs on every
call; a failing rule never hides the findings of another.

Rules:
    - Main product: exactly one node must be flagged as the main product.
      None flagged is one error; several flagged is one error per flagged
      node.
    - Functional unit: a main product without a functional unit or
      reference flow yields warnings and a recommendation.
    - Flow direction: every edge must point from a lower life-cycle stage
      ordinal to a strictly higher one. Edges touching a node of unmapped
      stage are skipped.
    - Process completeness: nodes without process information or without
      any declared material flow yield warnings; multi-output nodes
      without an allocation method yield a recommendation.
    - Cycles: depth-first traversal with an on-stack set; the first cycle
      found is reported and the search stops.

The module-level :func:`can_reach` and :func:`find_first_cycle` helpers
are shared with the action processor's ``connect`` gate.

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Optional, Sequence, Set

from carbonflow.metrics import record_processing_duration, record_validation
from carbonflow.models import (
    CarbonEdge,
    CarbonNode,
    IssueSeverity,
    IssueType,
    LifecycleStage,
    ValidationIssue,
    ValidationRecommendation,
    ValidationResult,
    stage_ordinal,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Graph helpers
# ---------------------------------------------------------------------------


def _adjacency(edges: Iterable[CarbonEdge]) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)
    return adjacency


def can_reach(edges: Iterable[CarbonEdge], start: str, goal: str) -> bool:
    """Breadth-first reachability from ``start`` to ``goal``.

    Adding an edge ``source -> target`` closes a cycle exactly when
    ``can_reach(edges, target, source)``.

    Args:
        edges: Current edges.
        start: Node to search from.
        goal: Node to search for.

    Returns:
        True if a directed path exists (a node always reaches itself).
    """
    if start == goal:
        return True
    adjacency = _adjacency(edges)
    visited: Set[str] = {start}
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        for neighbour in adjacency.get(current, ()):
            if neighbour == goal:
                return True
            if neighbour not in visited:
                visited.add(neighbour)
                queue.append(neighbour)
    return False


def find_first_cycle(
    nodes: Sequence[CarbonNode],
    edges: Iterable[CarbonEdge],
) -> Optional[List[str]]:
    """Find the first cycle by depth-first search.

    Nodes are visited in input order. The traversal keeps the active path
    as an explicit stack so deep chains do not hit the recursion limit.

    Returns:
        Node ids of the cycle, starting and ending with the same id, or
        None for an acyclic graph.
    """
    known = {node.id for node in nodes}
    adjacency = _adjacency(
        e for e in edges if e.source in known and e.target in known
    )
    finished: Set[str] = set()
    on_stack: Set[str] = set()

    for root in (node.id for node in nodes):
        if root in finished:
            continue
        path: List[str] = [root]
        iterators = [iter(adjacency.get(root, ()))]
        on_stack.add(root)
        while path:
            neighbour = next(iterators[-1], None)
            if neighbour is None:
                done = path.pop()
                iterators.pop()
                on_stack.discard(done)
                finished.add(done)
                continue
            if neighbour in on_stack:
                return path[path.index(neighbour):] + [neighbour]
            if neighbour not in finished:
                path.append(neighbour)
                iterators.append(iter(adjacency.get(neighbour, ())))
                on_stack.add(neighbour)
    return None


def is_main_product(node: CarbonNode) -> bool:
    """A node is the main product when flagged, or categorised as "main"."""
    return node.is_main_product or node.attributes.get("productCategory") == "main"


def _allocation_method(node: CarbonNode) -> Optional[str]:
    if node.allocation_method:
        return node.allocation_method
    info = node.process_info or {}
    return info.get("allocationMethod") or info.get("allocation_method")


# ---------------------------------------------------------------------------
# ConsistencyValidator
# ---------------------------------------------------------------------------


class ConsistencyValidator:
    """Advisory consistency checks over a node/edge snapshot.

    The validator is pure: it reads the snapshot it is given and never
    mutates it, so it can run on any sequence of nodes and edges.

    Example:
        >>> validator = ConsistencyValidator()
        >>> result = validator.validate(store.nodes, store.edges)
        >>> result.is_valid, [e.type for e in result.errors]
        (True, [])
    """

    def validate(
        self,
        nodes: Sequence[CarbonNode],
        edges: Sequence[CarbonEdge],
    ) -> ValidationResult:
        """Run every rule against the snapshot.

        Args:
            nodes: Node snapshot.
            edges: Edge snapshot.

        Returns:
            ValidationResult whose ``is_valid`` is True when no rule
            reported an error.
        """
        start = time.monotonic()
        result = ValidationResult()

        self._check_main_product(nodes, result)
        self._check_functional_unit(nodes, result)
        self._check_flow_direction(nodes, edges, result)
        self._check_process_completeness(nodes, result)
        self._check_cycles(nodes, edges, result)

        result.is_valid = not result.errors
        record_validation(
            "valid" if result.is_valid else "invalid",
            len(result.errors),
            len(result.warnings),
        )
        record_processing_duration("validate", time.monotonic() - start)
        logger.info(
            "Validated %d nodes / %d edges: %d error(s), %d warning(s), "
            "%d recommendation(s)",
            len(nodes), len(edges), len(result.errors),
            len(result.warnings), len(result.recommendations),
        )
        return result

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _check_main_product(
        self,
        nodes: Sequence[CarbonNode],
        result: ValidationResult,
    ) -> None:
        main_products = [node for node in nodes if is_main_product(node)]
        if not main_products:
            result.errors.append(ValidationIssue(
                type=IssueType.NO_MAIN_PRODUCT,
                severity=IssueSeverity.ERROR,
                message="No main product is designated; exactly one node must be the main product",
            ))
        elif len(main_products) > 1:
            for node in main_products:
                result.errors.append(ValidationIssue(
                    type=IssueType.MULTIPLE_MAIN_PRODUCTS,
                    severity=IssueSeverity.ERROR,
                    message=(
                        f"Node '{node.label or node.id}' is one of "
                        f"{len(main_products)} main products; only one is allowed"
                    ),
                    node_id=node.id,
                ))

    def _check_functional_unit(
        self,
        nodes: Sequence[CarbonNode],
        result: ValidationResult,
    ) -> None:
        for node in nodes:
            if not is_main_product(node):
                continue
            if not node.functional_unit:
                result.warnings.append(ValidationIssue(
                    type=IssueType.MISSING_FUNCTIONAL_UNIT,
                    severity=IssueSeverity.WARNING,
                    message=f"Main product '{node.label or node.id}' has no functional unit",
                    node_id=node.id,
                ))
                result.recommendations.append(ValidationRecommendation(
                    type=IssueType.ADD_FUNCTIONAL_UNIT,
                    message="Declare a functional unit, e.g. '1 kg of product'",
                    node_id=node.id,
                    action="set functionalUnit on the main product",
                ))
            if not node.reference_flow:
                result.warnings.append(ValidationIssue(
                    type=IssueType.MISSING_REFERENCE_FLOW,
                    severity=IssueSeverity.WARNING,
                    message=f"Main product '{node.label or node.id}' has no reference flow",
                    node_id=node.id,
                ))

    def _check_flow_direction(
        self,
        nodes: Sequence[CarbonNode],
        edges: Sequence[CarbonEdge],
        result: ValidationResult,
    ) -> None:
        by_id = {node.id: node for node in nodes}
        for edge in edges:
            source = by_id.get(edge.source)
            target = by_id.get(edge.target)
            if source is None or target is None:
                continue
            source_ordinal = stage_ordinal(source.stage)
            target_ordinal = stage_ordinal(target.stage)
            if source_ordinal is None or target_ordinal is None:
                logger.debug("Skipping flow check of %s: unmapped stage", edge.id)
                continue
            if source_ordinal >= target_ordinal:
                result.errors.append(ValidationIssue(
                    type=IssueType.INVALID_FLOW_DIRECTION,
                    severity=IssueSeverity.ERROR,
                    message=(
                        f"Flow from {source.stage} '{source.label or source.id}' "
                        f"to {target.stage} '{target.label or target.id}' "
                        f"runs against the life-cycle order"
                    ),
                    node_id=source.id,
                    edge_id=edge.id,
                    context={"source_ordinal": source_ordinal, "target_ordinal": target_ordinal},
                ))

    def _check_process_completeness(
        self,
        nodes: Sequence[CarbonNode],
        result: ValidationResult,
    ) -> None:
        for node in nodes:
            name = node.label or node.id
            if not node.process_info:
                result.warnings.append(ValidationIssue(
                    type=IssueType.INCOMPLETE_PROCESS_INFO,
                    severity=IssueSeverity.WARNING,
                    message=f"Node '{name}' has no process information",
                    node_id=node.id,
                ))
            if not node.inputs and not node.outputs:
                result.warnings.append(ValidationIssue(
                    type=IssueType.NO_MATERIAL_FLOWS,
                    severity=IssueSeverity.WARNING,
                    message=f"Node '{name}' declares no input or output flows",
                    node_id=node.id,
                ))
                result.recommendations.append(ValidationRecommendation(
                    type=IssueType.COMPLETE_MATERIAL_FLOWS,
                    message=f"Declare the material inputs and outputs of '{name}'",
                    node_id=node.id,
                    action="set inputs/outputs",
                ))
            if len(node.outputs) > 1 and not _allocation_method(node):
                result.recommendations.append(ValidationRecommendation(
                    type=IssueType.ADD_ALLOCATION_METHOD,
                    message=(
                        f"Node '{name}' has {len(node.outputs)} outputs; "
                        f"choose an allocation method (mass, economic, ...)"
                    ),
                    node_id=node.id,
                    action="set allocationMethod",
                ))

    def _check_cycles(
        self,
        nodes: Sequence[CarbonNode],
        edges: Sequence[CarbonEdge],
        result: ValidationResult,
    ) -> None:
        cycle = find_first_cycle(nodes, edges)
        if cycle is None:
            return
        logger.warning("Cycle detected: %s", " -> ".join(cycle))
        result.errors.append(ValidationIssue(
            type=IssueType.CIRCULAR_DEPENDENCY,
            severity=IssueSeverity.ERROR,
            message=f"Circular dependency: {' -> '.join(cycle)}",
            node_id=cycle[0],
            context={"cycle": cycle},
        ))

    # ------------------------------------------------------------------
    # Modelling hints
    # ------------------------------------------------------------------

    def recommend_stages(
        self,
        nodes: Sequence[CarbonNode],
    ) -> List[ValidationRecommendation]:
        """Recommend adding a node for every life-cycle stage with none."""
        present = {node.lifecycle_stage for node in nodes}
        return [
            ValidationRecommendation(
                type=IssueType.ADD_STAGE,
                message=f"No node covers the {stage.value} stage",
                action=f"create a {stage.value} node",
            )
            for stage in LifecycleStage
            if stage not in present
        ]


__all__ = [
    "ConsistencyValidator",
    "can_reach",
    "find_first_cycle",
    "is_main_product",
]
