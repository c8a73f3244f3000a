# -*- coding: utf-8 -*-
"""
CarbonFlow Data Models

Pydantic v2 data models for the carbon-flow graph: life-cycle stage nodes,
carbon-flow edges, the per-graph scene record, plan tasks, validation
findings, factor-search candidates, match batch results, processor
outcomes and acknowledgement events.

All models accept both snake_case field names and their camelCase wire
aliases (``isMainProduct``, ``carbonFootprint`` ...) and dump to the wire
form with ``model_dump(by_alias=True)``.

Enumerations (5):
    - LifecycleStage, VerificationStatus, TaskStatus, IssueSeverity,
      IssueType

Graph models (6):
    - Position, EmissionFactor, CarbonNode, CarbonEdge, SceneInfo,
      PlanTask

Result models (9):
    - ValidationIssue, ValidationRecommendation, ValidationResult,
      GraphSnapshot, FactorCandidate, FailedNode, MatchResult,
      ActionOutcome, AckEvent

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Return current UTC datetime with microseconds zeroed."""
    return datetime.now(timezone.utc).replace(microsecond=0)


_WIRE_CONFIG = {
    "extra": "forbid",
    "alias_generator": to_camel,
    "populate_by_name": True,
}


def parse_number(value: Any) -> Optional[float]:
    """Parse a numeric operand that may arrive as a string.

    Returns None for missing, unparseable, or non-finite values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_flow(value: Any) -> float:
    """Flow magnitude of a footprint value, 0.0 when it does not parse."""
    number = parse_number(value)
    return 0.0 if number is None else number


# =============================================================================
# Enumerations
# =============================================================================


class LifecycleStage(str, Enum):
    """Life-cycle stage of a node.

    The declaration order is the canonical stage ordering used both for
    left-to-right layout columns and for flow-direction validation: an
    edge must point from a lower ordinal to a strictly higher one. The
    final product comes last because every stage aggregates into it.
    """

    RAW_MATERIAL = "raw_material"
    MANUFACTURING = "manufacturing"
    DISTRIBUTION = "distribution"
    USAGE = "usage"
    DISPOSAL = "disposal"
    FINAL_PRODUCT = "final_product"

    @property
    def ordinal(self) -> int:
        return _STAGE_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> Optional["LifecycleStage"]:
        """Resolve a stage name or alias, None when it is not a known stage."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        return _STAGE_ALIASES.get(value.strip().lower().replace("-", "_"))


_STAGE_ORDER = list(LifecycleStage)

_STAGE_ALIASES: Dict[str, LifecycleStage] = {
    stage.value: stage for stage in LifecycleStage
}
_STAGE_ALIASES.update({
    "product": LifecycleStage.RAW_MATERIAL,
    "rawmaterial": LifecycleStage.RAW_MATERIAL,
    "raw": LifecycleStage.RAW_MATERIAL,
    "finalproduct": LifecycleStage.FINAL_PRODUCT,
    "use": LifecycleStage.USAGE,
    "end_of_life": LifecycleStage.DISPOSAL,
})


def stage_ordinal(stage: Any) -> Optional[int]:
    """Canonical ordinal of a stage value, None when the stage is unmapped."""
    parsed = LifecycleStage.parse(stage)
    return None if parsed is None else parsed.ordinal


class VerificationStatus(str, Enum):
    """Review state of a node's activity data and emission factor."""

    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"


class TaskStatus(str, Enum):
    """Status of a plan task."""

    PENDING = "pending"
    COMPLETED = "completed"

    @classmethod
    def normalize(cls, value: Any) -> "TaskStatus":
        """Map a free-form status string onto pending/completed."""
        text = str(value or "").strip().lower()
        if text in ("completed", "complete", "done", "已完成", "以完成"):
            return cls.COMPLETED
        return cls.PENDING


class IssueSeverity(str, Enum):
    """Severity of a validation finding."""

    ERROR = "error"
    WARNING = "warning"


class IssueType(str, Enum):
    """Kinds of validation findings and recommendations."""

    NO_MAIN_PRODUCT = "no_main_product"
    MULTIPLE_MAIN_PRODUCTS = "multiple_main_products"
    INVALID_FLOW_DIRECTION = "invalid_flow_direction"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    MISSING_FUNCTIONAL_UNIT = "missing_functional_unit"
    MISSING_REFERENCE_FLOW = "missing_reference_flow"
    INCOMPLETE_PROCESS_INFO = "incomplete_process_info"
    NO_MATERIAL_FLOWS = "no_material_flows"
    ADD_FUNCTIONAL_UNIT = "add_functional_unit"
    COMPLETE_MATERIAL_FLOWS = "complete_material_flows"
    ADD_ALLOCATION_METHOD = "add_allocation_method"
    ADD_STAGE = "add_stage"


# =============================================================================
# Graph Models
# =============================================================================


class Position(BaseModel):
    """2-D canvas position of a node."""

    x: float = 0.0
    y: float = 0.0

    model_config = {"extra": "forbid"}


class EmissionFactor(BaseModel):
    """Emission factor attached to a node.

    ``value`` is kept as supplied (number or numeric string); use
    :func:`parse_number` to read it.
    """

    value: Optional[Union[float, str]] = None
    unit: Optional[str] = None
    name: Optional[str] = None
    source: Optional[str] = None
    geographic_representativeness: Optional[str] = None
    temporal_representativeness: Optional[str] = None

    model_config = _WIRE_CONFIG

    @property
    def numeric_value(self) -> Optional[float]:
        return parse_number(self.value)

    @property
    def is_set(self) -> bool:
        """True when the factor carries a non-zero numeric value."""
        value = self.numeric_value
        return value is not None and value != 0.0


class CarbonNode(BaseModel):
    """A life-cycle stage entity in the carbon-flow graph.

    Attributes:
        id: Unique node identifier.
        stage: Life-cycle stage value. Known aliases are normalised to the
            canonical :class:`LifecycleStage` value; unknown strings are
            kept as-is and treated as unmapped.
        label: Display name, also the factor search query.
        position: Canvas position, written by the layout engine.
        quantity: Activity quantity.
        activity_unit: Unit of ``quantity``.
        unit_conversion: Factor converting ``activity_unit`` into the
            emission factor's unit.
        emission_factor: Matched or user-supplied emission factor.
        carbon_footprint: Cached ``quantity * factor * unit_conversion``.
            Only ``calculate`` writes it.
        verification_status: Review state of the node's data.
        is_main_product: Marks the primary assessed output.
        functional_unit: Reference quantity of the main product.
        reference_flow: Reference flow of the main product.
        inputs: Declared input material flows.
        outputs: Declared output material flows.
        process_info: Free-form process description.
        allocation_method: Allocation rule for multi-output processes.
        parent_id: Parent node id for hierarchical decomposition.
        level: Depth in the decomposition hierarchy.
        style: Visual style, written by the layout engine.
        attributes: Stage-specific extra data (transport distance, supplier ...).
    """

    id: str = Field(..., description="Unique node identifier")
    stage: str = Field(
        default=LifecycleStage.RAW_MATERIAL.value,
        description="Life-cycle stage value",
    )
    label: str = Field(default="", description="Display name")
    position: Position = Field(default_factory=Position)
    quantity: Optional[Union[float, str]] = None
    activity_unit: Optional[str] = None
    unit_conversion: Optional[Union[float, str]] = 1.0
    emission_factor: EmissionFactor = Field(default_factory=EmissionFactor)
    carbon_footprint: Union[float, str] = 0.0
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    is_main_product: bool = False
    functional_unit: Optional[str] = None
    reference_flow: Optional[str] = None
    inputs: List[str] = Field(default_factory=list)
    outputs: List[str] = Field(default_factory=list)
    process_info: Optional[Dict[str, Any]] = None
    allocation_method: Optional[str] = None
    parent_id: Optional[str] = None
    level: Optional[int] = None
    style: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = _WIRE_CONFIG

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate id is non-empty."""
        if not v or not v.strip():
            raise ValueError("id must be non-empty")
        return v

    @field_validator("stage", mode="before")
    @classmethod
    def normalize_stage(cls, v: Any) -> Any:
        parsed = LifecycleStage.parse(v)
        return parsed.value if parsed is not None else v

    @property
    def lifecycle_stage(self) -> Optional[LifecycleStage]:
        return LifecycleStage.parse(self.stage)

    @property
    def flow_magnitude(self) -> float:
        return parse_flow(self.carbon_footprint)

    def compute_carbon_footprint(self, unit_conversion: Any = None) -> float:
        """Return ``quantity * factor * unit_conversion``.

        Any missing or unparseable operand yields 0.0.

        Args:
            unit_conversion: Conversion factor overriding the stored one.
        """
        quantity = parse_number(self.quantity)
        factor = self.emission_factor.numeric_value
        conversion = parse_number(
            self.unit_conversion if unit_conversion is None else unit_conversion
        )
        if quantity is None or factor is None or conversion is None:
            return 0.0
        return quantity * factor * conversion


class CarbonEdge(BaseModel):
    """A carbon-flow relation between two nodes.

    ``flow_value`` is derived as ``min(source, target)`` footprint and
    ``weight`` is the stroke width assigned by the layout engine.
    """

    id: str = Field(..., description="Unique edge identifier")
    source: str = Field(..., description="Source node id")
    target: str = Field(..., description="Target node id")
    label: Optional[str] = None
    flow_value: float = 0.0
    weight: Optional[float] = None
    animated: bool = False
    style: Dict[str, Any] = Field(default_factory=dict)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = _WIRE_CONFIG

    @model_validator(mode="after")
    def validate_endpoints(self) -> "CarbonEdge":
        """Reject empty endpoints and self-loops."""
        if not self.source or not self.target:
            raise ValueError("edge source and target must be non-empty")
        if self.source == self.target:
            raise ValueError(f"edge {self.id} is a self-loop on {self.source}")
        return self


class SceneInfo(BaseModel):
    """Per-graph scene metadata, created with the session and patched by ``scene``."""

    workflow_id: Optional[str] = None
    reporting_standard: Optional[str] = None
    boundary_type: Optional[str] = None
    functional_unit: Optional[str] = None
    reporting_period_start: Optional[str] = None
    reporting_period_end: Optional[str] = None
    product_name: Optional[str] = None
    verification_level: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = _WIRE_CONFIG


class PlanTask(BaseModel):
    """A task on the session's plan, keyed by its description."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    description: str
    status: TaskStatus = TaskStatus.PENDING
    node_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = _WIRE_CONFIG


# =============================================================================
# Result Models
# =============================================================================


class ValidationIssue(BaseModel):
    """One error or warning reported by the consistency validator."""

    type: IssueType
    severity: IssueSeverity
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    model_config = _WIRE_CONFIG


class ValidationRecommendation(BaseModel):
    """A suggested modelling improvement."""

    type: IssueType
    message: str
    node_id: Optional[str] = None
    action: Optional[str] = None

    model_config = _WIRE_CONFIG


class ValidationResult(BaseModel):
    """Outcome of a consistency validation run."""

    is_valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    recommendations: List[ValidationRecommendation] = Field(default_factory=list)

    model_config = _WIRE_CONFIG

    def error_types(self) -> List[IssueType]:
        return [issue.type for issue in self.errors]

    def warning_types(self) -> List[IssueType]:
        return [issue.type for issue in self.warnings]


class GraphSnapshot(BaseModel):
    """Serialisable copy of one session's graph."""

    workflow_id: Optional[str] = None
    nodes: List[CarbonNode] = Field(default_factory=list)
    edges: List[CarbonEdge] = Field(default_factory=list)
    scene: SceneInfo = Field(default_factory=SceneInfo)
    tasks: List[PlanTask] = Field(default_factory=list)
    report_summary: Dict[str, Any] = Field(default_factory=dict)
    saved_at: datetime = Field(default_factory=utcnow)

    model_config = _WIRE_CONFIG


class FactorCandidate(BaseModel):
    """One ranked hit from the emission-factor search service."""

    name: str
    value: float
    unit: Optional[str] = None
    geography: Optional[str] = None
    year: Optional[str] = None
    confidence: float = 0.0
    source: Optional[str] = None

    model_config = {"extra": "ignore", "alias_generator": to_camel, "populate_by_name": True}


class FailedNode(BaseModel):
    """A node a batch could not process, with the reason."""

    id: str
    reason: str

    model_config = {"extra": "forbid"}


class SkippedNode(BaseModel):
    """A node a batch left unchanged on purpose, with the reason."""

    id: str
    reason: str

    model_config = {"extra": "forbid"}


class MatchResult(BaseModel):
    """Result of an asynchronous match or autofill batch."""

    batch_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    success: List[str] = Field(default_factory=list)
    failed: List[FailedNode] = Field(default_factory=list)
    skipped: List[SkippedNode] = Field(default_factory=list)
    cancelled: bool = False

    model_config = _WIRE_CONFIG


class ActionOutcome(BaseModel):
    """What the action processor did with one action.

    ``applied`` is True when the graph was mutated (or a batch scheduled);
    ``reason`` explains a no-op or rejection.
    """

    operation: str
    applied: bool
    node_id: Optional[str] = None
    reason: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = _WIRE_CONFIG


class AckEvent(BaseModel):
    """Acknowledgement published after every dispatch."""

    success: bool
    trace_id: str
    node_id: Optional[str] = None
    operation: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = _WIRE_CONFIG


__all__ = [
    "utcnow",
    "parse_number",
    "parse_flow",
    "stage_ordinal",
    "LifecycleStage",
    "VerificationStatus",
    "TaskStatus",
    "IssueSeverity",
    "IssueType",
    "Position",
    "EmissionFactor",
    "CarbonNode",
    "CarbonEdge",
    "SceneInfo",
    "PlanTask",
    "ValidationIssue",
    "ValidationRecommendation",
    "ValidationResult",
    "GraphSnapshot",
    "FactorCandidate",
    "FailedNode",
    "SkippedNode",
    "MatchResult",
    "ActionOutcome",
    "AckEvent",
]
