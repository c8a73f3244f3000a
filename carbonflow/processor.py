# -*- coding: utf-8 -*-
"""
ActionProcessor - CarbonFlow Graph Service

Applies decoded carbon-flow actions to one session's GraphStore. Dispatch
is a table lookup on :class:`~carbonflow.actions.Operation`; each handler
runs to completion synchronously and returns an :class:`ActionOutcome`.

Boundary policy:
    ``handle_action`` never raises. A ``CarbonFlowException`` raised by a
    handler (unresolved id, rejected connect, malformed payload) is logged
    at WARNING and becomes ``applied=False`` with the message as reason.
    Any other exception is logged at ERROR with its traceback and handled
    the same way.

Connect gate:
    ``connect`` refuses missing endpoints, self-loops, duplicate edges and
    any edge ``source -> target`` where ``target`` already reaches
    ``source``. This restricted reachability check is O(V+E) and keeps the
    edge relation acyclic without a full validator pass.

Match and autofill operations only schedule a batch on the
:class:`~carbonflow.factor_matching.FactorMatcher`; the outcome carries
the batch id and the batch folds its results back into the store.

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from carbonflow.actions import (
    ActionCommand,
    ActionMessage,
    AutofillPayload,
    CalculatePayload,
    ConnectPayload,
    CreateNodePayload,
    DeleteNodePayload,
    DisconnectPayload,
    FileParserPayload,
    MatchPayload,
    Operation,
    PlanPayload,
    ReportPayload,
    ScenePayload,
    TaskPayload,
    UpdateNodePayload,
    decode_action,
)
from carbonflow.config import CarbonFlowConfig, get_config
from carbonflow.exceptions import (
    ActionDecodeError,
    CarbonFlowException,
    ProcessingFailure,
    ValidationError,
)
from carbonflow.factor_matching import FactorMatcher
from carbonflow.graph_store import GraphStore
from carbonflow.layout import SankeyLayoutEngine
from carbonflow.metrics import (
    record_action,
    record_processing_duration,
    record_processing_error,
)
from carbonflow.models import ActionOutcome, CarbonEdge, CarbonNode, Position
from carbonflow.units import UnitConverter, factor_denominator
from carbonflow.validator import ConsistencyValidator, can_reach

logger = logging.getLogger(__name__)

DEFAULT_NODE_POSITION = (100.0, 100.0)

# Flat emission-factor keys sent by the UI forms, mapped onto EmissionFactor fields.
_FLAT_FACTOR_KEYS: Dict[str, str] = {
    "carbonFactor": "value",
    "carbonFactorName": "name",
    "carbonFactorUnit": "unit",
    "carbonFactorDataSource": "source",
    "emissionFactorGeographicalRepresentativeness": "geographic_representativeness",
    "emissionFactorTemporalRepresentativeness": "temporal_representativeness",
}

_READ_ONLY_KEYS = ("carbonFootprint", "carbon_footprint")

_BATCH_OPERATIONS = (
    Operation.CARBON_FACTOR_MATCH,
    Operation.CARBON_FACTOR_MATCH_WITH_AI,
    Operation.AI_AUTOFILL,
    Operation.AI_AUTOFILL_TRANSPORT_DATA,
    Operation.AI_AUTOFILL_CONVERSION_DATA,
)

ActionInput = Union[ActionCommand, ActionMessage, Mapping[str, Any]]


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def generate_node_id(stage: str) -> str:
    """Node id of the form ``<stage>-<epoch-ms>-<random>``."""
    return f"{stage}-{_epoch_ms()}-{uuid.uuid4().hex[:6]}"


def _split_extras(extras: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split unmodelled payload keys into emission-factor fields and attributes."""
    factor: Dict[str, Any] = {}
    attributes: Dict[str, Any] = {}
    for key, value in extras.items():
        if key in _FLAT_FACTOR_KEYS:
            factor[_FLAT_FACTOR_KEYS[key]] = value
        else:
            attributes[key] = value
    return factor, attributes


def _drop_none(fields: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class ActionProcessor:
    """Applies carbon-flow actions to a GraphStore.

    Every collaborator is passed in explicitly; the processor holds no
    global state.

    Attributes:
        store: The session's graph.
        validator: Consistency validator (exposed for callers, the connect
            gate uses the module-level reachability helper).
        layout_engine: Engine run by the ``layout`` operation.
        matcher: Factor matcher for match and autofill batches.
        converter: Unit converter used by ``calculate``.

    Example:
        >>> processor = ActionProcessor(GraphStore(workflow_id="wf-1"))
        >>> outcome = processor.handle_action({
        ...     "type": "carbonflow", "operation": "create",
        ...     "content": '{"id": "a", "stage": "raw_material", "label": "Steel"}',
        ... })
        >>> outcome.applied
        True
    """

    def __init__(
        self,
        store: GraphStore,
        validator: Optional[ConsistencyValidator] = None,
        layout_engine: Optional[SankeyLayoutEngine] = None,
        matcher: Optional[FactorMatcher] = None,
        converter: Optional[UnitConverter] = None,
        config: Optional[CarbonFlowConfig] = None,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.validator = validator or ConsistencyValidator()
        self.layout_engine = layout_engine or SankeyLayoutEngine(self.config)
        self.converter = converter or UnitConverter()
        self.matcher = matcher or FactorMatcher(
            store, config=self.config, converter=self.converter,
        )
        self._handlers: Dict[Operation, Callable[[ActionCommand], ActionOutcome]] = {
            Operation.CREATE: self._create,
            Operation.UPDATE: self._update,
            Operation.DELETE: self._delete,
            Operation.CONNECT: self._connect,
            Operation.DISCONNECT: self._disconnect,
            Operation.LAYOUT: self._layout,
            Operation.SCENE: self._scene,
            Operation.PLAN: self._plan,
            Operation.CALCULATE: self._calculate,
            Operation.GENERATE_SUPPLIER_TASK: self._generate_task,
            Operation.GENERATE_DATA_VALIDATION_TASK: self._generate_task,
            Operation.FILE_PARSER: self._file_parser,
            Operation.REPORT: self._report,
        }
        for operation in _BATCH_OPERATIONS:
            self._handlers[operation] = self._start_batch

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle_action(self, action: ActionInput) -> ActionOutcome:
        """Apply one action.

        Args:
            action: A decoded command, or a wire message to decode first.

        Returns:
            ActionOutcome describing what happened. Never raises.
        """
        start = time.monotonic()
        if isinstance(action, ActionCommand):
            command = action
        else:
            try:
                command = decode_action(action)
            except ActionDecodeError as exc:
                operation = exc.operation or "unknown"
                logger.warning("Dropped undecodable action: %s", exc.message)
                record_action(operation, "skipped")
                return ActionOutcome(
                    operation=operation, applied=False,
                    node_id=exc.node_id, reason=exc.message,
                )

        op = command.operation.value
        handler = self._handlers.get(command.operation)
        if handler is None:
            logger.warning("No handler for operation %s, ignoring", op)
            record_action(op, "skipped")
            return ActionOutcome(operation=op, applied=False, reason="unsupported operation")

        try:
            outcome = handler(command)
        except CarbonFlowException as exc:
            logger.warning(
                "Skipped %s on %s (trace %s): %s",
                op, command.node_id, command.trace_id, exc.message,
            )
            record_action(op, "skipped")
            outcome = ActionOutcome(
                operation=op, applied=False,
                node_id=getattr(exc, "node_id", None) or command.node_id,
                reason=exc.message,
            )
        except Exception as exc:
            logger.error(
                "Unexpected failure in %s on %s (trace %s)",
                op, command.node_id, command.trace_id, exc_info=True,
            )
            record_processing_error(type(exc).__name__)
            record_action(op, "error")
            outcome = ActionOutcome(
                operation=op, applied=False, node_id=command.node_id, reason=str(exc),
            )
        else:
            record_action(op, "applied" if outcome.applied else "skipped")
            if outcome.applied:
                logger.info(
                    "Applied %s on %s (trace %s)", op, outcome.node_id, command.trace_id,
                )
            else:
                logger.warning("No-op %s on %s: %s", op, outcome.node_id, outcome.reason)

        record_processing_duration(op, time.monotonic() - start)
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_node(
        self,
        command: ActionCommand,
        node_id: Optional[str],
        label: Optional[str] = None,
    ) -> CarbonNode:
        node_id = node_id or command.node_id
        node = None
        if node_id:
            node = self.store.get_node(node_id)
        elif label:
            node = self.store.find_node_by_label(label)
        if node is None:
            raise ProcessingFailure(
                f"node '{node_id or label}' not found",
                operation=command.operation.value,
                node_id=node_id,
            )
        return node

    def derive_unit_conversion(self, node: CarbonNode) -> Optional[float]:
        """Conversion from the node's activity unit to its factor unit.

        Returns None unless both units are known and compatible.
        """
        activity_unit = node.activity_unit
        factor_unit = node.emission_factor.unit
        if not activity_unit or not factor_unit:
            return None
        if not self.converter.is_compatible(activity_unit, factor_denominator(factor_unit)):
            return None
        return self.converter.conversion_factor(activity_unit, factor_unit)

    # ------------------------------------------------------------------
    # Node operations
    # ------------------------------------------------------------------

    def _create(self, command: ActionCommand) -> ActionOutcome:
        payload: CreateNodePayload = command.payload
        node_id = payload.id or command.node_id or generate_node_id(payload.stage)
        if self.store.has_node(node_id):
            return ActionOutcome(
                operation=command.operation.value, applied=False,
                node_id=node_id, reason="duplicate node id",
            )

        fields = _drop_none(payload.node_fields())
        factor, attributes = _split_extras(payload.extra_attributes())
        if factor:
            fields["emission_factor"] = {**(fields.get("emission_factor") or {}), **factor}

        node = CarbonNode(
            id=node_id,
            stage=payload.stage,
            position=payload.resolved_position() or Position(
                x=DEFAULT_NODE_POSITION[0], y=DEFAULT_NODE_POSITION[1],
            ),
            attributes=attributes,
            **fields,
        )
        self.store.add_node(node)
        return ActionOutcome(operation=command.operation.value, applied=True, node_id=node_id)

    def _update(self, command: ActionCommand) -> ActionOutcome:
        payload: UpdateNodePayload = command.payload
        node = self._resolve_node(command, payload.id, payload.label)

        changes = _drop_none(payload.node_fields())
        if payload.stage is not None and payload.stage != node.stage:
            changes["stage"] = payload.stage
        extras = dict(payload.extra_attributes())
        for key in _READ_ONLY_KEYS:
            if extras.pop(key, None) is not None:
                logger.warning(
                    "Ignoring %s on update of %s: it is recomputed by calculate",
                    key, node.id,
                )
        factor, attributes = _split_extras(extras)
        if factor or "emission_factor" in changes:
            changes["emission_factor"] = {
                **node.emission_factor.model_dump(),
                **(changes.get("emission_factor") or {}),
                **factor,
            }
        if attributes:
            changes["attributes"] = {**node.attributes, **attributes}
        position = payload.resolved_position()
        if position is not None:
            changes["position"] = position

        if not changes:
            return ActionOutcome(
                operation=command.operation.value, applied=False,
                node_id=node.id, reason="no changes",
            )
        self.store.patch_node(node.id, changes)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            node_id=node.id, data={"fields": sorted(changes)},
        )

    def _delete(self, command: ActionCommand) -> ActionOutcome:
        payload: DeleteNodePayload = command.payload
        node = self._resolve_node(command, payload.id, payload.label)
        removed = self.store.remove_node(node.id)
        removed_edges = [edge.id for edge in removed[1]] if removed else []
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            node_id=node.id, data={"removed_edges": removed_edges},
        )

    # ------------------------------------------------------------------
    # Edge operations
    # ------------------------------------------------------------------

    def _connect(self, command: ActionCommand) -> ActionOutcome:
        payload: ConnectPayload = command.payload
        ids = command.node_ids
        source = payload.source or (ids[0] if len(ids) >= 2 else None)
        target = payload.target or (ids[1] if len(ids) >= 2 else None)
        if not source or not target:
            raise ProcessingFailure(
                "connect needs a source and a target", operation=command.operation.value,
            )

        missing = [n for n in (source, target) if not self.store.has_node(n)]
        if missing:
            raise ValidationError(
                f"cannot connect {source} -> {target}: endpoint not found",
                invalid_fields={n: "not found" for n in missing},
            )
        if source == target:
            raise ValidationError(
                f"cannot connect {source} to itself",
                invalid_fields={"target": "same as source"},
            )
        if self.store.find_edge(source, target) is not None:
            raise ValidationError(f"edge {source} -> {target} already exists")

        edge_id = payload.id or f"e-{source}-{target}-{_epoch_ms()}"
        if self.store.get_edge(edge_id) is not None:
            raise ValidationError(f"edge id '{edge_id}' already exists")
        if can_reach(self.store.edges, target, source):
            raise ValidationError(
                f"edge {source} -> {target} would create a cycle",
                context={"source": source, "target": target},
            )

        flow = min(
            self.store.get_node(source).flow_magnitude,
            self.store.get_node(target).flow_magnitude,
        )
        self.store.add_edge(CarbonEdge(
            id=edge_id, source=source, target=target,
            label=payload.label, flow_value=flow,
        ))
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            node_id=source, data={"edge_id": edge_id},
        )

    def _disconnect(self, command: ActionCommand) -> ActionOutcome:
        payload: DisconnectPayload = command.payload
        ids = command.node_ids
        source, target = payload.source, payload.target
        edge_id = payload.id
        if edge_id is None and not (source and target):
            if len(ids) == 1:
                edge_id = ids[0]
            elif len(ids) >= 2:
                source, target = ids[0], ids[1]

        if edge_id is None and source and target:
            edge = self.store.find_edge(source, target)
            edge_id = edge.id if edge is not None else None
        if edge_id is None:
            raise ProcessingFailure(
                "disconnect needs an edge id or a source/target pair",
                operation=command.operation.value,
            )

        removed = self.store.remove_edge(edge_id)
        if removed is None:
            return ActionOutcome(
                operation=command.operation.value, applied=False,
                reason=f"edge '{edge_id}' not found",
            )
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            node_id=removed.source, data={"edge_id": edge_id},
        )

    # ------------------------------------------------------------------
    # Layout, scene, plan
    # ------------------------------------------------------------------

    def _layout(self, command: ActionCommand) -> ActionOutcome:
        result = self.layout_engine.layout(self.store.nodes, self.store.edges)
        self.store.set_nodes(result.nodes)
        self.store.set_edges(result.edges)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            data={"bounds": asdict(result.bounds) if result.bounds else None},
        )

    def _scene(self, command: ActionCommand) -> ActionOutcome:
        payload: ScenePayload = command.payload
        fields = _drop_none(payload.scene_fields())
        attributes = payload.extra_attributes()
        if not fields and not attributes:
            return ActionOutcome(
                operation=command.operation.value, applied=False, reason="empty scene payload",
            )
        self.store.patch_scene(fields, attributes)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            data={"fields": sorted(fields) + sorted(attributes)},
        )

    def _plan(self, command: ActionCommand) -> ActionOutcome:
        payload: PlanPayload = command.payload
        if not payload.root:
            return ActionOutcome(
                operation=command.operation.value, applied=False, reason="empty plan",
            )
        tasks = self.store.upsert_tasks(payload.root)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            data={"task_count": len(tasks)},
        )

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    def _calculate(self, command: ActionCommand) -> ActionOutcome:
        payload: CalculatePayload = command.payload
        node_ids = payload.node_ids or command.node_ids or [n.id for n in self.store.nodes]

        calculated: List[str] = []
        missing: List[str] = []
        for node_id in node_ids:
            node = self.store.get_node(node_id)
            if node is None:
                missing.append(node_id)
                continue
            conversion = self.derive_unit_conversion(node)
            changes: Dict[str, Any] = {
                "carbon_footprint": node.compute_carbon_footprint(conversion),
            }
            if conversion is not None:
                changes["unit_conversion"] = conversion
            self.store.patch_node(node_id, changes)
            calculated.append(node_id)

        if not calculated:
            return ActionOutcome(
                operation=command.operation.value, applied=False,
                reason="no nodes to calculate", data={"missing": missing},
            )

        refreshed = set()
        for node_id in calculated:
            for edge in self.store.edges_touching(node_id):
                if edge.id in refreshed:
                    continue
                refreshed.add(edge.id)
                source = self.store.get_node(edge.source)
                target = self.store.get_node(edge.target)
                if source is None or target is None:
                    continue
                self.store.patch_edge(edge.id, {
                    "flow_value": min(source.flow_magnitude, target.flow_magnitude),
                })

        total = sum(node.flow_magnitude for node in self.store.nodes)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            node_id=calculated[0] if len(calculated) == 1 else None,
            data={"calculated": calculated, "missing": missing, "total": total},
        )

    # ------------------------------------------------------------------
    # Match and autofill batches
    # ------------------------------------------------------------------

    def _start_batch(self, command: ActionCommand) -> ActionOutcome:
        payload: Union[MatchPayload, AutofillPayload] = command.payload
        node_ids = payload.node_ids or command.node_ids
        options: Dict[str, Any] = {}
        if isinstance(payload, AutofillPayload):
            options = _drop_none({
                "transport_method": payload.transport_method,
                "transportation_distance": payload.transportation_distance,
            })
        batch = self.matcher.start_batch(command.operation, node_ids, options)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            node_id=command.node_id,
            data={"batch_id": batch.batch_id, "node_ids": batch.node_ids},
        )

    # ------------------------------------------------------------------
    # Tasks, files, report
    # ------------------------------------------------------------------

    def _generate_task(self, command: ActionCommand) -> ActionOutcome:
        payload: TaskPayload = command.payload
        node_id = payload.node_id or command.node_id
        description = payload.description or command.description
        if not description:
            node = self.store.get_node(node_id) if node_id else None
            subject = (node.label or node.id) if node is not None else "the product system"
            if command.operation == Operation.GENERATE_SUPPLIER_TASK:
                description = f"Collect supplier data for {subject}"
            else:
                description = f"Validate activity data for {subject}"
        task = self.store.add_task(description, node_id=node_id)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            node_id=node_id, data={"task_id": task.id},
        )

    def _file_parser(self, command: ActionCommand) -> ActionOutcome:
        payload: FileParserPayload = command.payload
        summary = {
            "fileName": payload.file_name,
            "nodeCount": len(payload.nodes),
            "edgeCount": len(payload.edges),
            **payload.extra_attributes(),
        }
        self.store.patch_scene({}, {"parsedFile": summary})

        created: List[str] = []
        connected: List[str] = []
        failed: List[Dict[str, str]] = []
        for raw in payload.nodes:
            try:
                sub = ActionCommand(
                    operation=Operation.CREATE,
                    payload=CreateNodePayload.model_validate(raw),
                    trace_id=command.trace_id,
                )
                outcome = self._create(sub)
            except (CarbonFlowException, PydanticValidationError) as exc:
                failed.append({"id": str(raw.get("id")), "reason": str(exc)})
                continue
            if outcome.applied:
                created.append(outcome.node_id)
            else:
                failed.append({"id": str(outcome.node_id), "reason": outcome.reason or ""})
        for raw in payload.edges:
            try:
                sub = ActionCommand(
                    operation=Operation.CONNECT,
                    payload=ConnectPayload.model_validate(raw),
                    trace_id=command.trace_id,
                )
                outcome = self._connect(sub)
            except (CarbonFlowException, PydanticValidationError) as exc:
                failed.append({"id": str(raw.get("id")), "reason": str(exc)})
                continue
            connected.append(outcome.data["edge_id"])

        if failed:
            logger.warning(
                "File %s: %d element(s) could not be loaded", payload.file_name, len(failed),
            )
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            data={"created": created, "connected": connected, "failed": failed},
        )

    def _report(self, command: ActionCommand) -> ActionOutcome:
        payload: ReportPayload = command.payload
        if not payload.root:
            return ActionOutcome(
                operation=command.operation.value, applied=False, reason="empty report",
            )
        self.store.merge_report(payload.root)
        return ActionOutcome(
            operation=command.operation.value, applied=True,
            data={"fields": sorted(payload.root)},
        )


__all__ = [
    "ActionProcessor",
    "DEFAULT_NODE_POSITION",
    "generate_node_id",
]
