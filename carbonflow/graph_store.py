# -*- coding: utf-8 -*-
"""
GraphStore - CarbonFlow Graph Service

Authoritative in-memory holder of one session's carbon-flow graph: nodes,
edges, the scene record, the plan task list and the report summary.

Graph data structures:
    - _nodes         : Dict[str, CarbonNode]  - node_id to node (insertion ordered)
    - _edges         : Dict[str, CarbonEdge]  - edge_id to edge (insertion ordered)
    - _adjacency_out : Dict[str, Set[str]]    - source_id to outgoing edge_ids
    - _adjacency_in  : Dict[str, Set[str]]    - target_id to incoming edge_ids

Mutation primitives are whole-collection replace (``set_nodes`` /
``set_edges``) and incremental add / remove / patch. Incremental edge
addition does not check reachability or stage ordering; the action
processor gates ``connect`` before calling :meth:`GraphStore.add_edge`.
The store only refuses mutations that would corrupt its own indexes
(duplicate ids).

Every mutation schedules one coalesced notification on the running event
loop. Listeners are called on a later loop turn with a :class:`GraphChange`
describing everything that changed since the previous notification, so
they always observe settled state. Without a running loop, notifications
wait for :meth:`GraphStore.flush_notifications`.

Example:
    >>> from carbonflow.graph_store import GraphStore
    >>> from carbonflow.models import CarbonNode, CarbonEdge
    >>> store = GraphStore(workflow_id="wf-1")
    >>> store.add_node(CarbonNode(id="a", stage="raw_material"))
    >>> store.add_node(CarbonNode(id="b", stage="manufacturing"))
    >>> store.add_edge(CarbonEdge(id="e1", source="a", target="b"))
    >>> [e.id for e in store.remove_node("a")[1]]
    ['e1']

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
)

from carbonflow.config import CarbonFlowConfig, get_config
from carbonflow.exceptions import GraphStoreError
from carbonflow.metrics import record_processing_duration, set_graph_size
from carbonflow.models import (
    CarbonEdge,
    CarbonNode,
    GraphSnapshot,
    PlanTask,
    SceneInfo,
    TaskStatus,
    utcnow,
)
from carbonflow.provenance import ProvenanceTracker, build_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphChange:
    """Notification delivered to store listeners.

    Attributes:
        revision: Store revision after the last coalesced mutation.
        kinds: Mutation kinds in the order they happened.
        snapshot: Settled graph state at delivery time.
    """

    revision: int
    kinds: Tuple[str, ...]
    snapshot: GraphSnapshot


ChangeListener = Callable[[GraphChange], Any]


class GraphStore:
    """In-memory carbon-flow graph for one session.

    Attributes:
        _nodes: Mapping from node_id to node.
        _edges: Mapping from edge_id to edge.
        _adjacency_out: Forward adjacency mapping source_id to edge_ids.
        _adjacency_in: Backward adjacency mapping target_id to edge_ids.
        _provenance: ProvenanceTracker recording every mutation, or None.
        _listeners: Registered change listeners.
    """

    def __init__(
        self,
        workflow_id: Optional[str] = None,
        config: Optional[CarbonFlowConfig] = None,
        provenance: Optional[ProvenanceTracker] = None,
    ) -> None:
        """Initialize an empty GraphStore.

        Args:
            workflow_id: Identifier of the workflow this graph belongs to.
            config: Service configuration, defaults to :func:`get_config`.
            provenance: Audit tracker. When omitted, one is created if
                ``config.enable_provenance`` is set.
        """
        self._config = config or get_config()
        self._workflow_id = workflow_id
        self._nodes: Dict[str, CarbonNode] = {}
        self._edges: Dict[str, CarbonEdge] = {}
        self._adjacency_out: Dict[str, Set[str]] = defaultdict(set)
        self._adjacency_in: Dict[str, Set[str]] = defaultdict(set)
        self._scene = SceneInfo(workflow_id=workflow_id)
        self._tasks: List[PlanTask] = []
        self._report_summary: Dict[str, Any] = {}

        if provenance is None and self._config.enable_provenance:
            provenance = ProvenanceTracker(genesis=self._config.genesis_hash)
        self._provenance = provenance

        self._listeners: List[ChangeListener] = []
        self._revision = 0
        self._pending_kinds: List[str] = []
        self._notify_scheduled = False
        self._listener_tasks: Set[asyncio.Future] = set()

        logger.info("GraphStore initialized for workflow %s", workflow_id)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def workflow_id(self) -> Optional[str]:
        return self._workflow_id

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def provenance(self) -> Optional[ProvenanceTracker]:
        return self._provenance

    @property
    def nodes(self) -> List[CarbonNode]:
        """Current nodes in insertion order. Treat as read-only."""
        return list(self._nodes.values())

    @property
    def edges(self) -> List[CarbonEdge]:
        """Current edges in insertion order. Treat as read-only."""
        return list(self._edges.values())

    @property
    def scene(self) -> SceneInfo:
        return self._scene

    @property
    def tasks(self) -> List[PlanTask]:
        return list(self._tasks)

    @property
    def report_summary(self) -> Dict[str, Any]:
        return dict(self._report_summary)

    def get_node(self, node_id: str) -> Optional[CarbonNode]:
        return self._nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def find_node_by_label(self, label: str) -> Optional[CarbonNode]:
        """First node whose label equals ``label``."""
        for node in self._nodes.values():
            if node.label == label:
                return node
        return None

    def get_edge(self, edge_id: str) -> Optional[CarbonEdge]:
        return self._edges.get(edge_id)

    def find_edge(self, source: str, target: str) -> Optional[CarbonEdge]:
        """Edge running from ``source`` to ``target``, if any."""
        for edge_id in self._adjacency_out.get(source, ()):
            edge = self._edges[edge_id]
            if edge.target == target:
                return edge
        return None

    def successors(self, node_id: str) -> List[str]:
        """Target ids of the node's outgoing edges."""
        return [self._edges[e].target for e in self._adjacency_out.get(node_id, ())]

    def edges_touching(self, node_id: str) -> List[CarbonEdge]:
        """Every edge with ``node_id`` as source or target."""
        edge_ids = set(self._adjacency_out.get(node_id, ()))
        edge_ids.update(self._adjacency_in.get(node_id, ()))
        return [edge for eid, edge in self._edges.items() if eid in edge_ids]

    def snapshot(self) -> GraphSnapshot:
        """Serialisable copy of the current graph state."""
        return GraphSnapshot(
            workflow_id=self._workflow_id,
            nodes=self.nodes,
            edges=self.edges,
            scene=self._scene,
            tasks=self.tasks,
            report_summary=self.report_summary,
        )

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __repr__(self) -> str:
        return (
            f"GraphStore(workflow_id={self._workflow_id!r}, "
            f"nodes={len(self._nodes)}, edges={len(self._edges)})"
        )

    # ------------------------------------------------------------------
    # Whole-collection replace
    # ------------------------------------------------------------------

    def set_nodes(self, nodes: Iterable[CarbonNode]) -> None:
        """Replace every node.

        Existing edges are kept; edges whose endpoints disappear stay until
        replaced by :meth:`set_edges`.

        Raises:
            GraphStoreError: If two nodes share an id.
        """
        replacement: Dict[str, CarbonNode] = {}
        for node in nodes:
            if node.id in replacement:
                raise GraphStoreError(
                    f"duplicate node id '{node.id}' in bulk load",
                    context={"node_id": node.id},
                )
            replacement[node.id] = node
        self._nodes = replacement
        self._record("graph", self._workflow_id or "-", "set_nodes",
                     [n.id for n in replacement.values()])
        self._changed("nodes_replaced")

    def set_edges(self, edges: Iterable[CarbonEdge]) -> None:
        """Replace every edge and rebuild the adjacency indexes.

        Raises:
            GraphStoreError: If two edges share an id.
        """
        replacement: Dict[str, CarbonEdge] = {}
        for edge in edges:
            if edge.id in replacement:
                raise GraphStoreError(
                    f"duplicate edge id '{edge.id}' in bulk load",
                    context={"edge_id": edge.id},
                )
            replacement[edge.id] = edge
        self._edges = replacement
        self._adjacency_out = defaultdict(set)
        self._adjacency_in = defaultdict(set)
        for edge in replacement.values():
            self._adjacency_out[edge.source].add(edge.id)
            self._adjacency_in[edge.target].add(edge.id)
        self._record("graph", self._workflow_id or "-", "set_edges",
                     [e.id for e in replacement.values()])
        self._changed("edges_replaced")

    def load_snapshot(self, snapshot: GraphSnapshot) -> None:
        """Replace the whole graph state with a persisted snapshot."""
        self.set_nodes(snapshot.nodes)
        self.set_edges(snapshot.edges)
        self._scene = snapshot.scene
        self._tasks = list(snapshot.tasks)
        self._report_summary = dict(snapshot.report_summary)
        if snapshot.workflow_id:
            self._workflow_id = snapshot.workflow_id
        self._changed("snapshot_loaded")

    # ------------------------------------------------------------------
    # Node operations
    # ------------------------------------------------------------------

    def add_node(self, node: CarbonNode) -> None:
        """Append a node.

        Raises:
            GraphStoreError: If a node with the same id exists.
        """
        if node.id in self._nodes:
            raise GraphStoreError(
                f"node '{node.id}' already exists", context={"node_id": node.id},
            )
        self._nodes[node.id] = node
        self._record("node", node.id, "create", node.model_dump(mode="json"))
        self._changed("node_added")

    def patch_node(
        self,
        node_id: str,
        changes: Mapping[str, Any],
    ) -> Optional[CarbonNode]:
        """Merge field changes into a node if it is still present.

        The patched node is re-validated. The id is never changed.

        Args:
            node_id: Node to patch.
            changes: Field-name to value mapping.

        Returns:
            The patched node, or None when the node no longer exists.
        """
        current = self._nodes.get(node_id)
        if current is None:
            logger.debug("patch_node: %s not present, skipping", node_id)
            return None
        merged = current.model_dump()
        merged.update({k: v for k, v in changes.items() if k != "id"})
        patched = CarbonNode.model_validate(merged)
        self._nodes[node_id] = patched
        self._record("node", node_id, "patch", dict(changes))
        self._changed("node_patched")
        return patched

    def remove_node(
        self,
        node_id: str,
    ) -> Optional[Tuple[CarbonNode, List[CarbonEdge]]]:
        """Remove a node and every edge touching it.

        Returns:
            The removed node and the cascaded edges, or None when the node
            was not found.
        """
        start = time.monotonic()
        node = self._nodes.get(node_id)
        if node is None:
            logger.debug("remove_node: %s not found", node_id)
            return None

        touching = self.edges_touching(node_id)
        for edge in touching:
            self._remove_edge_internal(edge.id)
        del self._nodes[node_id]
        self._adjacency_out.pop(node_id, None)
        self._adjacency_in.pop(node_id, None)

        self._record("node", node_id, "remove", [e.id for e in touching])
        self._changed("node_removed")
        record_processing_duration("node_remove", time.monotonic() - start)
        logger.info("Removed node %s and %d connected edges", node_id, len(touching))
        return node, touching

    # ------------------------------------------------------------------
    # Edge operations
    # ------------------------------------------------------------------

    def add_edge(self, edge: CarbonEdge) -> None:
        """Append an edge without checking graph-level invariants.

        Raises:
            GraphStoreError: If an edge with the same id exists.
        """
        if edge.id in self._edges:
            raise GraphStoreError(
                f"edge '{edge.id}' already exists", context={"edge_id": edge.id},
            )
        self._edges[edge.id] = edge
        self._adjacency_out[edge.source].add(edge.id)
        self._adjacency_in[edge.target].add(edge.id)
        self._record("edge", edge.id, "connect", edge.model_dump(mode="json"))
        self._changed("edge_added")

    def patch_edge(
        self,
        edge_id: str,
        changes: Mapping[str, Any],
    ) -> Optional[CarbonEdge]:
        """Merge visual or derived field changes into an edge if present.

        Endpoints cannot be changed; disconnect and connect instead.
        """
        current = self._edges.get(edge_id)
        if current is None:
            return None
        merged = current.model_dump()
        merged.update({
            k: v for k, v in changes.items() if k not in ("id", "source", "target")
        })
        patched = CarbonEdge.model_validate(merged)
        self._edges[edge_id] = patched
        self._record("edge", edge_id, "patch", dict(changes))
        self._changed("edge_patched")
        return patched

    def remove_edge(self, edge_id: str) -> Optional[CarbonEdge]:
        """Remove an edge by id. Returns the removed edge, or None."""
        edge = self._edges.get(edge_id)
        if edge is None:
            return None
        self._remove_edge_internal(edge_id)
        self._record("edge", edge_id, "disconnect", edge.model_dump(mode="json"))
        self._changed("edge_removed")
        return edge

    def _remove_edge_internal(self, edge_id: str) -> None:
        edge = self._edges.pop(edge_id)
        self._adjacency_out[edge.source].discard(edge_id)
        self._adjacency_in[edge.target].discard(edge_id)

    # ------------------------------------------------------------------
    # Scene, tasks, report
    # ------------------------------------------------------------------

    def patch_scene(
        self,
        changes: Mapping[str, Any],
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> SceneInfo:
        """Merge fields (and free-form attributes) into the scene record."""
        merged = self._scene.model_dump()
        merged.update(changes)
        if attributes:
            merged["attributes"] = {**self._scene.attributes, **attributes}
        self._scene = SceneInfo.model_validate(merged)
        self._record("scene", self._workflow_id or "-", "patch",
                     {"changes": dict(changes), "attributes": dict(attributes or {})})
        self._changed("scene_patched")
        return self._scene

    def upsert_tasks(self, plan: Mapping[str, Any]) -> List[PlanTask]:
        """Upsert tasks keyed by description.

        Each status is normalised to pending/completed. A matching task is
        updated in place, otherwise a new task is appended. Every touched
        task is re-stamped with the update time.

        Args:
            plan: Mapping of task description to status string.

        Returns:
            The full task list after the upsert.
        """
        now = utcnow()
        by_description = {task.description: i for i, task in enumerate(self._tasks)}
        for description, raw_status in plan.items():
            status = TaskStatus.normalize(raw_status)
            index = by_description.get(description)
            if index is not None:
                self._tasks[index] = self._tasks[index].model_copy(
                    update={"status": status, "updated_at": now},
                )
            else:
                self._tasks.append(PlanTask(
                    description=description, status=status,
                    created_at=now, updated_at=now,
                ))
                by_description[description] = len(self._tasks) - 1
        self._record("task", self._workflow_id or "-", "upsert", dict(plan))
        self._changed("tasks_upserted")
        return self.tasks

    def add_task(self, description: str, node_id: Optional[str] = None) -> PlanTask:
        """Append a pending task."""
        task = PlanTask(description=description, node_id=node_id)
        self._tasks.append(task)
        self._record("task", task.id, "create", task.model_dump(mode="json"))
        self._changed("task_added")
        return task

    def merge_report(self, summary: Mapping[str, Any]) -> Dict[str, Any]:
        """Merge fields into the report summary."""
        self._report_summary.update(summary)
        self._record("report", self._workflow_id or "-", "merge", dict(summary))
        self._changed("report_merged")
        return self.report_summary

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener.

        Listeners may be plain callables or coroutine functions.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def flush_notifications(self) -> Optional[GraphChange]:
        """Deliver pending notifications now.

        Returns:
            The delivered change, or None when nothing was pending.
        """
        self._notify_scheduled = False
        if not self._pending_kinds:
            return None
        change = GraphChange(
            revision=self._revision,
            kinds=tuple(self._pending_kinds),
            snapshot=self.snapshot(),
        )
        self._pending_kinds = []
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_task_done)
            except Exception:
                logger.error(
                    "Graph change listener %r failed at revision %d",
                    listener, change.revision, exc_info=True,
                )
        logger.debug(
            "Delivered revision %d (%s) to %d listener(s)",
            change.revision, ",".join(change.kinds), len(self._listeners),
        )
        return change

    @property
    def pending_listeners(self) -> int:
        """Async listener deliveries still running."""
        return len(self._listener_tasks)

    async def wait_listeners(self) -> None:
        """Wait for async listener deliveries started so far."""
        if self._listener_tasks:
            await asyncio.gather(*list(self._listener_tasks), return_exceptions=True)

    def _listener_task_done(self, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async graph change listener failed", exc_info=exc)

    def _changed(self, kind: str) -> None:
        self._revision += 1
        self._pending_kinds.append(kind)
        set_graph_size(len(self._nodes), len(self._edges))
        if self._notify_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._notify_scheduled = True
        loop.call_soon(self.flush_notifications)

    def _record(self, entity_type: str, entity_id: str, action: str, data: Any) -> None:
        if self._provenance is None:
            return
        self._provenance.record(entity_type, entity_id, action, build_hash(data))


__all__ = [
    "GraphChange",
    "ChangeListener",
    "GraphStore",
]
