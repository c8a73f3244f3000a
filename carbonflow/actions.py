# -*- coding: utf-8 -*-
"""
CarbonFlow Action Protocol

Inbound action messages and their per-operation payloads. An action
message arrives in the agent's wire shape::

    {"type": "carbonflow", "operation": "create", "workflowid": "...",
     "nodeId": "n1,n2", "content": "{...json...}", "description": "...",
     "traceId": "cf-..."}

:func:`decode_action` is the only place that parses ``content``: it picks
the payload model registered for the operation, validates it, and returns
an :class:`ActionCommand`. Anything malformed raises
:class:`~carbonflow.exceptions.ActionDecodeError` so that the processor
only ever sees well-typed commands.

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, Field, RootModel, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from carbonflow.exceptions import ActionDecodeError
from carbonflow.models import (
    EmissionFactor,
    LifecycleStage,
    Position,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

CARBONFLOW_ACTION_TYPE = "carbonflow"


class Operation(str, Enum):
    """Closed set of operation kinds understood by the action processor."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    LAYOUT = "layout"
    SCENE = "scene"
    PLAN = "plan"
    CALCULATE = "calculate"
    CARBON_FACTOR_MATCH = "carbon_factor_match"
    CARBON_FACTOR_MATCH_WITH_AI = "carbon_factor_match_with_ai"
    AI_AUTOFILL = "ai_autofill"
    AI_AUTOFILL_TRANSPORT_DATA = "ai_autofill_transport_data"
    AI_AUTOFILL_CONVERSION_DATA = "ai_autofill_conversion_data"
    GENERATE_SUPPLIER_TASK = "generate_supplier_task"
    GENERATE_DATA_VALIDATION_TASK = "generate_data_validation_task"
    FILE_PARSER = "file_parser"
    REPORT = "report"


# =============================================================================
# Wire message
# =============================================================================


class ActionMessage(BaseModel):
    """An action message as sent by the agent or the UI shell."""

    type: str = CARBONFLOW_ACTION_TYPE
    operation: str
    workflow_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("workflowid", "workflowId", "workflow_id"),
        serialization_alias="workflowid",
    )
    node_id: Optional[str] = Field(None, alias="nodeId")
    content: Union[str, Dict[str, Any], None] = None
    description: Optional[str] = None
    trace_id: Optional[str] = Field(None, alias="traceId")

    model_config = {"extra": "ignore", "populate_by_name": True}

    def node_ids(self) -> List[str]:
        """Split a comma-separated ``nodeId`` into ids."""
        if not self.node_id:
            return []
        return [part.strip() for part in self.node_id.split(",") if part.strip()]


# =============================================================================
# Payload models
# =============================================================================

_PAYLOAD_CONFIG = {
    "extra": "ignore",
    "alias_generator": to_camel,
    "populate_by_name": True,
}

_OPEN_PAYLOAD_CONFIG = {
    "extra": "allow",
    "alias_generator": to_camel,
    "populate_by_name": True,
}


class _NodeFields(BaseModel):
    """Modelled node fields shared by create and update payloads."""

    label: Optional[str] = None
    position: Optional[Position] = None
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    quantity: Optional[Union[float, str]] = None
    activity_unit: Optional[str] = Field(
        None, validation_alias=AliasChoices("activityUnit", "activity_unit", "unit"),
    )
    unit_conversion: Optional[Union[float, str]] = None
    emission_factor: Optional[EmissionFactor] = None
    verification_status: Optional[VerificationStatus] = None
    is_main_product: Optional[bool] = None
    functional_unit: Optional[str] = None
    reference_flow: Optional[str] = None
    inputs: Optional[List[str]] = None
    outputs: Optional[List[str]] = None
    process_info: Optional[Dict[str, Any]] = None
    allocation_method: Optional[str] = None
    parent_id: Optional[str] = None
    level: Optional[int] = None
    attributes: Optional[Dict[str, Any]] = None

    model_config = _OPEN_PAYLOAD_CONFIG

    def resolved_position(self) -> Optional[Position]:
        """Position from ``position`` or ``positionX``/``positionY``."""
        if self.position is not None:
            return self.position
        if self.position_x is not None or self.position_y is not None:
            return Position(x=self.position_x or 0.0, y=self.position_y or 0.0)
        return None

    def node_fields(self) -> Dict[str, Any]:
        """Modelled fields the sender actually set, excluding position and ids."""
        fields = self.model_dump(
            exclude_unset=True,
            exclude={"id", "stage", "position", "position_x", "position_y", "attributes"},
        )
        return {key: value for key, value in fields.items() if key in type(self).model_fields}

    def extra_attributes(self) -> Dict[str, Any]:
        """Unmodelled payload keys merged with an explicit ``attributes`` map."""
        merged = dict(self.model_extra or {})
        if self.attributes:
            merged.update(self.attributes)
        return merged


_NODE_ID_ALIASES = AliasChoices("id", "nodeId", "node_id")
_STAGE_ALIASES = AliasChoices("stage", "nodeType", "node_type", "type")


def _parse_stage(v: Any) -> Optional[str]:
    if v is None:
        return None
    parsed = LifecycleStage.parse(v)
    if parsed is None:
        raise ValueError(f"unknown life-cycle stage: {v!r}")
    return parsed.value


class CreateNodePayload(_NodeFields):
    id: Optional[str] = Field(None, validation_alias=_NODE_ID_ALIASES)
    stage: str = Field(..., validation_alias=_STAGE_ALIASES)
    carbon_footprint: Optional[Union[float, str]] = None

    @field_validator("stage", mode="before")
    @classmethod
    def validate_stage(cls, v: Any) -> str:
        if v is None:
            raise ValueError("stage is required")
        return _parse_stage(v)


class UpdateNodePayload(_NodeFields):
    id: Optional[str] = Field(None, validation_alias=_NODE_ID_ALIASES)
    stage: Optional[str] = Field(None, validation_alias=_STAGE_ALIASES)

    @field_validator("stage", mode="before")
    @classmethod
    def validate_stage(cls, v: Any) -> Optional[str]:
        return _parse_stage(v)


class DeleteNodePayload(BaseModel):
    id: Optional[str] = Field(None, validation_alias=_NODE_ID_ALIASES)
    label: Optional[str] = None

    model_config = _PAYLOAD_CONFIG


class ConnectPayload(BaseModel):
    id: Optional[str] = None
    source: Optional[str] = Field(
        None, validation_alias=AliasChoices("source", "sourceId", "sourceNodeId"),
    )
    target: Optional[str] = Field(
        None, validation_alias=AliasChoices("target", "targetId", "targetNodeId"),
    )
    label: Optional[str] = None

    model_config = _PAYLOAD_CONFIG


class DisconnectPayload(BaseModel):
    id: Optional[str] = Field(
        None, validation_alias=AliasChoices("id", "edgeId", "edge_id"),
    )
    source: Optional[str] = None
    target: Optional[str] = None

    model_config = _PAYLOAD_CONFIG


class LayoutPayload(BaseModel):
    type: Optional[str] = None

    model_config = _PAYLOAD_CONFIG


class ScenePayload(BaseModel):
    reporting_standard: Optional[str] = Field(
        None, validation_alias=AliasChoices("reportingStandard", "reporting_standard", "standard"),
    )
    boundary_type: Optional[str] = Field(
        None, validation_alias=AliasChoices("boundaryType", "boundary_type", "lifecycleType"),
    )
    functional_unit: Optional[str] = None
    reporting_period_start: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "reportingPeriodStart", "reporting_period_start", "dataCollectionStartDate",
        ),
    )
    reporting_period_end: Optional[str] = Field(
        None,
        validation_alias=AliasChoices(
            "reportingPeriodEnd", "reporting_period_end", "dataCollectionEndDate",
        ),
    )
    product_name: Optional[str] = None
    verification_level: Optional[str] = None

    model_config = _OPEN_PAYLOAD_CONFIG

    def scene_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude=set(self.model_extra or {}))

    def extra_attributes(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class PlanPayload(RootModel[Dict[str, Any]]):
    """Mapping of task description to a free-form status string."""


class CalculatePayload(BaseModel):
    node_ids: Optional[List[str]] = None

    model_config = _PAYLOAD_CONFIG


class MatchPayload(BaseModel):
    node_ids: Optional[List[str]] = None

    model_config = _PAYLOAD_CONFIG


class AutofillPayload(BaseModel):
    node_ids: Optional[List[str]] = None
    transport_method: Optional[str] = None
    transportation_distance: Optional[float] = None

    model_config = _PAYLOAD_CONFIG


class TaskPayload(BaseModel):
    description: Optional[str] = None
    node_id: Optional[str] = None

    model_config = _PAYLOAD_CONFIG


class FileParserPayload(BaseModel):
    file_name: Optional[str] = None
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = _OPEN_PAYLOAD_CONFIG

    def extra_attributes(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ReportPayload(RootModel[Dict[str, Any]]):
    """Report summary fields merged into the session's report summary."""


PAYLOAD_MODELS: Dict[Operation, Type[BaseModel]] = {
    Operation.CREATE: CreateNodePayload,
    Operation.UPDATE: UpdateNodePayload,
    Operation.DELETE: DeleteNodePayload,
    Operation.CONNECT: ConnectPayload,
    Operation.DISCONNECT: DisconnectPayload,
    Operation.LAYOUT: LayoutPayload,
    Operation.SCENE: ScenePayload,
    Operation.PLAN: PlanPayload,
    Operation.CALCULATE: CalculatePayload,
    Operation.CARBON_FACTOR_MATCH: MatchPayload,
    Operation.CARBON_FACTOR_MATCH_WITH_AI: MatchPayload,
    Operation.AI_AUTOFILL: AutofillPayload,
    Operation.AI_AUTOFILL_TRANSPORT_DATA: AutofillPayload,
    Operation.AI_AUTOFILL_CONVERSION_DATA: AutofillPayload,
    Operation.GENERATE_SUPPLIER_TASK: TaskPayload,
    Operation.GENERATE_DATA_VALIDATION_TASK: TaskPayload,
    Operation.FILE_PARSER: FileParserPayload,
    Operation.REPORT: ReportPayload,
}


# =============================================================================
# Decoding
# =============================================================================


@dataclass(frozen=True)
class ActionCommand:
    """A decoded, validated action ready for the processor."""

    operation: Operation
    payload: BaseModel
    node_ids: List[str] = field(default_factory=list)
    workflow_id: Optional[str] = None
    description: Optional[str] = None
    trace_id: Optional[str] = None

    @property
    def node_id(self) -> Optional[str]:
        return self.node_ids[0] if self.node_ids else None


def is_carbonflow_action(message: Any) -> bool:
    """True for messages tagged as carbon-flow graph mutations."""
    if isinstance(message, ActionMessage):
        return message.type == CARBONFLOW_ACTION_TYPE
    if isinstance(message, Mapping):
        return message.get("type") == CARBONFLOW_ACTION_TYPE
    return False


def _parse_content(content: Union[str, Dict[str, Any], None], operation: str) -> Any:
    if content is None:
        return {}
    if isinstance(content, dict):
        return content
    text = content.strip()
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ActionDecodeError(
            f"content of '{operation}' action is not valid JSON: {exc.msg}",
            operation=operation,
            context={"reason": "malformed_payload"},
        ) from exc


def decode_action(message: Union[ActionMessage, Mapping[str, Any]]) -> ActionCommand:
    """Decode and validate an action message into an :class:`ActionCommand`.

    Args:
        message: Wire-shaped mapping or an :class:`ActionMessage`.

    Returns:
        The decoded command with a typed payload.

    Raises:
        ActionDecodeError: If the message is not a carbon-flow action, names
            an unknown operation, or carries a malformed payload.
    """
    if not isinstance(message, ActionMessage):
        try:
            message = ActionMessage.model_validate(message)
        except PydanticValidationError as exc:
            raise ActionDecodeError(
                f"malformed action message: {exc.error_count()} error(s)",
                context={"reason": "malformed_message", "errors": exc.errors()},
            ) from exc

    if message.type != CARBONFLOW_ACTION_TYPE:
        raise ActionDecodeError(
            f"action type '{message.type}' is not a carbon-flow action",
            context={"reason": "foreign_action"},
        )

    try:
        operation = Operation(message.operation)
    except ValueError as exc:
        raise ActionDecodeError(
            f"unknown operation '{message.operation}'",
            operation=message.operation,
            context={"reason": "unknown_operation"},
        ) from exc

    data = _parse_content(message.content, operation.value)
    if not isinstance(data, dict):
        raise ActionDecodeError(
            f"content of '{operation.value}' action must be a JSON object",
            operation=operation.value,
            context={"reason": "malformed_payload"},
        )

    model = PAYLOAD_MODELS[operation]
    try:
        payload = model.model_validate(data)
    except PydanticValidationError as exc:
        raise ActionDecodeError(
            f"invalid '{operation.value}' payload: "
            + "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ),
            operation=operation.value,
            node_id=message.node_id,
            context={"reason": "malformed_payload"},
        ) from exc

    return ActionCommand(
        operation=operation,
        payload=payload,
        node_ids=message.node_ids(),
        workflow_id=message.workflow_id,
        description=message.description,
        trace_id=message.trace_id,
    )


__all__ = [
    "CARBONFLOW_ACTION_TYPE",
    "Operation",
    "ActionMessage",
    "CreateNodePayload",
    "UpdateNodePayload",
    "DeleteNodePayload",
    "ConnectPayload",
    "DisconnectPayload",
    "LayoutPayload",
    "ScenePayload",
    "PlanPayload",
    "CalculatePayload",
    "MatchPayload",
    "AutofillPayload",
    "TaskPayload",
    "FileParserPayload",
    "ReportPayload",
    "PAYLOAD_MODELS",
    "ActionCommand",
    "is_carbonflow_action",
    "decode_action",
]
