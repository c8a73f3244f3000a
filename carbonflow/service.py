# -*- coding: utf-8 -*-
"""
CarbonFlow Service Setup

Provides the per-session context object :class:`CarbonFlowSession`, the
:class:`SessionRegistry` that owns live sessions, ``get_router(registry)``
which builds the REST API, and ``configure_carbonflow(app)`` which mounts
it on a FastAPI application.

A session wires one GraphStore to its ActionProcessor, EventBridge,
ConsistencyValidator, SankeyLayoutEngine and FactorMatcher. Every component
receives its collaborators as constructor arguments; nothing is shared
between sessions except the process-wide configuration.

Usage:
    >>> from fastapi import FastAPI
    >>> from carbonflow.service import configure_carbonflow
    >>> app = FastAPI()
    >>> registry = configure_carbonflow(app)

    >>> async with CarbonFlowSession(workflow_id="wf-1") as session:
    ...     session.dispatch({"type": "carbonflow", "operation": "create",
    ...                       "content": '{"stage": "raw_material"}'})
    ...     await session.bridge.join()

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

from fastapi import APIRouter, FastAPI, HTTPException, Query

from carbonflow import __version__
from carbonflow.actions import (
    ActionCommand,
    ActionMessage,
    LayoutPayload,
    Operation,
    decode_action,
)
from carbonflow.bridge import EventBridge
from carbonflow.config import CarbonFlowConfig, get_config
from carbonflow.exceptions import ActionDecodeError, GraphStoreError
from carbonflow.factor_matching import EmissionFactorSearchService, FactorMatcher
from carbonflow.graph_store import GraphStore
from carbonflow.layout import SankeyLayoutEngine
from carbonflow.models import ActionOutcome, GraphSnapshot, ValidationResult
from carbonflow.persistence import SnapshotRepository
from carbonflow.processor import ActionProcessor
from carbonflow.provenance import ProvenanceTracker
from carbonflow.units import UnitConverter
from carbonflow.validator import ConsistencyValidator

logger = logging.getLogger(__name__)


# ===================================================================
# Session
# ===================================================================


class CarbonFlowSession:
    """Explicit per-session context for one carbon-flow graph.

    Attributes:
        session_id: Unique session identifier.
        workflow_id: Workflow the graph belongs to.
        store: The session's GraphStore.
        processor: ActionProcessor bound to ``store``.
        bridge: EventBridge feeding ``processor``.
        validator: ConsistencyValidator.
        layout_engine: SankeyLayoutEngine.
        matcher: FactorMatcher bound to ``store``.
        repository: Optional snapshot repository for save/restore.
    """

    def __init__(
        self,
        workflow_id: Optional[str] = None,
        config: Optional[CarbonFlowConfig] = None,
        search: Optional[EmissionFactorSearchService] = None,
        repository: Optional[SnapshotRepository] = None,
    ) -> None:
        self.config = config or get_config()
        self.session_id = str(uuid.uuid4())
        self.workflow_id = workflow_id or self.session_id
        self.repository = repository

        provenance = (
            ProvenanceTracker(genesis=self.config.genesis_hash)
            if self.config.enable_provenance else None
        )
        self.store = GraphStore(self.workflow_id, config=self.config, provenance=provenance)
        self.converter = UnitConverter()
        self.validator = ConsistencyValidator()
        self.layout_engine = SankeyLayoutEngine(self.config)
        self.matcher = FactorMatcher(
            self.store, search=search, config=self.config, converter=self.converter,
        )
        self.processor = ActionProcessor(
            self.store,
            validator=self.validator,
            layout_engine=self.layout_engine,
            matcher=self.matcher,
            converter=self.converter,
            config=self.config,
        )
        self.bridge = EventBridge(self.processor, config=self.config)
        logger.info(
            "CarbonFlow session %s created for workflow %s",
            self.session_id, self.workflow_id,
        )

    async def start(self) -> None:
        await self.bridge.initialize()

    async def close(self) -> None:
        """Stop the bridge and cancel outstanding match batches."""
        for batch in self.matcher.pending_batches:
            batch.cancel()
        await self.bridge.close()
        logger.info("CarbonFlow session %s closed", self.session_id)

    async def __aenter__(self) -> "CarbonFlowSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def dispatch(self, message: Union[ActionMessage, Mapping[str, Any]]) -> str:
        """Queue an action message; returns its trace id."""
        return self.bridge.dispatch(message)

    async def execute(self, action: Any) -> Any:
        """Run an agent action through the bridge's middleware chain."""
        return await self.bridge.execute(action)

    def snapshot(self) -> GraphSnapshot:
        return self.store.snapshot()

    def validate(self) -> ValidationResult:
        result = self.validator.validate(self.store.nodes, self.store.edges)
        result.recommendations.extend(self.validator.recommend_stages(self.store.nodes))
        return result

    def layout(self) -> ActionOutcome:
        return self.processor.handle_action(
            ActionCommand(operation=Operation.LAYOUT, payload=LayoutPayload()),
        )

    def get_statistics(self) -> Dict[str, Any]:
        """Graph size, channel and batch counters for this session."""
        return {
            "session_id": self.session_id,
            "workflow_id": self.workflow_id,
            "nodes": len(self.store.nodes),
            "edges": len(self.store.edges),
            "revision": self.store.revision,
            "pending_listeners": self.store.pending_listeners,
            "bridge": self.bridge.get_statistics(),
            "batches": {
                "tracked": len(self.matcher.batches),
                "pending": len(self.matcher.pending_batches),
            },
        }

    async def save(self) -> GraphSnapshot:
        """Persist the current snapshot.

        Raises:
            GraphStoreError: If the session has no repository.
        """
        if self.repository is None:
            raise GraphStoreError("session has no snapshot repository")
        snapshot = self.snapshot()
        await self.repository.save(snapshot)
        return snapshot

    @classmethod
    async def restore(
        cls,
        workflow_id: str,
        repository: SnapshotRepository,
        config: Optional[CarbonFlowConfig] = None,
        search: Optional[EmissionFactorSearchService] = None,
    ) -> "CarbonFlowSession":
        """Build a session from a persisted snapshot (not started).

        Raises:
            GraphStoreError: If no snapshot exists for ``workflow_id``.
        """
        snapshot = await repository.load(workflow_id)
        if snapshot is None:
            raise GraphStoreError(
                f"no snapshot for workflow '{workflow_id}'",
                context={"workflow_id": workflow_id},
            )
        session = cls(workflow_id, config=config, search=search, repository=repository)
        session.store.load_snapshot(snapshot)
        return session


# ===================================================================
# Registry
# ===================================================================


class SessionRegistry:
    """Owns the live sessions of one application."""

    def __init__(
        self,
        config: Optional[CarbonFlowConfig] = None,
        search: Optional[EmissionFactorSearchService] = None,
        repository: Optional[SnapshotRepository] = None,
    ) -> None:
        self.config = config or get_config()
        self.search = search
        self.repository = repository
        self._sessions: Dict[str, CarbonFlowSession] = {}

    async def create(self, workflow_id: Optional[str] = None) -> CarbonFlowSession:
        """Create, start and register a session."""
        session = CarbonFlowSession(
            workflow_id,
            config=self.config,
            search=self.search,
            repository=self.repository,
        )
        await session.start()
        self._sessions[session.session_id] = session
        return session

    def add(self, session: CarbonFlowSession) -> None:
        """Register an already started session."""
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[CarbonFlowSession]:
        return self._sessions.get(session_id)

    async def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)

    def __len__(self) -> int:
        return len(self._sessions)


# ===================================================================
# FastAPI integration
# ===================================================================


def get_router(registry: SessionRegistry) -> APIRouter:
    """Build the CarbonFlow API router at prefix ``/api/v1/carbonflow``.

    Args:
        registry: Session registry the routes operate on.

    Returns:
        FastAPI APIRouter.
    """
    router = APIRouter(prefix="/api/v1/carbonflow", tags=["carbonflow"])

    def _session(session_id: str) -> CarbonFlowSession:
        session = registry.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    @router.get("/health")
    async def health() -> Dict[str, Any]:
        """Service health."""
        return {"status": "healthy", "version": __version__, "sessions": len(registry)}

    @router.post("/sessions", status_code=201)
    async def create_session(request: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create a session with an empty graph."""
        request = request or {}
        workflow_id = request.get("workflowId") or request.get("workflow_id")
        session = await registry.create(workflow_id)
        return {"sessionId": session.session_id, "workflowId": session.workflow_id}

    @router.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> Dict[str, Any]:
        """Close a session."""
        if not await registry.close(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"sessionId": session_id, "closed": True}

    @router.post("/sessions/{session_id}/actions", status_code=202)
    async def post_action(
        session_id: str,
        request: Dict[str, Any],
        wait: bool = Query(False, description="Wait until the action is applied"),
    ) -> Dict[str, Any]:
        """Dispatch an action message; returns its trace id."""
        session = _session(session_id)
        try:
            decode_action(request)
        except ActionDecodeError as exc:
            raise HTTPException(status_code=400, detail=exc.message)
        trace_id = session.dispatch(request)
        if wait:
            await session.bridge.join()
            ack = next((a for a in reversed(session.bridge.acks) if a.trace_id == trace_id), None)
            return {
                "traceId": trace_id,
                "ack": ack.model_dump(mode="json", by_alias=True) if ack else None,
            }
        return {"traceId": trace_id}

    @router.get("/sessions/{session_id}/snapshot")
    async def get_snapshot(session_id: str) -> Dict[str, Any]:
        """Current graph snapshot in wire form."""
        return _session(session_id).snapshot().model_dump(mode="json", by_alias=True)

    @router.post("/sessions/{session_id}/validate")
    async def post_validate(session_id: str) -> Dict[str, Any]:
        """Run the consistency validator on the current graph."""
        return _session(session_id).validate().model_dump(mode="json", by_alias=True)

    @router.post("/sessions/{session_id}/layout")
    async def post_layout(session_id: str) -> Dict[str, Any]:
        """Lay out the current graph."""
        return _session(session_id).layout().model_dump(mode="json", by_alias=True)

    @router.get("/sessions/{session_id}/acks")
    async def get_acks(
        session_id: str,
        limit: int = Query(50, ge=1, le=1000),
    ) -> List[Dict[str, Any]]:
        """Most recent acknowledgement events, oldest first."""
        acks = _session(session_id).bridge.acks[-limit:]
        return [ack.model_dump(mode="json", by_alias=True) for ack in acks]

    @router.get("/sessions/{session_id}/statistics")
    async def get_statistics(session_id: str) -> Dict[str, Any]:
        """Graph size, channel and batch counters of one session."""
        return _session(session_id).get_statistics()

    @router.post("/workflows/{workflow_id}/restore", status_code=201)
    async def restore_session(workflow_id: str) -> Dict[str, Any]:
        """Start a session from a persisted snapshot."""
        if registry.repository is None:
            raise HTTPException(status_code=404, detail="No snapshot repository configured")
        try:
            session = await CarbonFlowSession.restore(
                workflow_id, registry.repository,
                config=registry.config, search=registry.search,
            )
        except GraphStoreError as exc:
            raise HTTPException(status_code=404, detail=exc.message)
        await session.start()
        registry.add(session)
        return {"sessionId": session.session_id, "workflowId": session.workflow_id}

    @router.post("/sessions/{session_id}/save")
    async def save_session(session_id: str) -> Dict[str, Any]:
        """Persist the session's snapshot."""
        session = _session(session_id)
        try:
            snapshot = await session.save()
        except GraphStoreError as exc:
            raise HTTPException(status_code=400, detail=exc.message)
        return {"workflowId": snapshot.workflow_id, "savedAt": snapshot.saved_at.isoformat()}

    return router


def configure_carbonflow(
    app: FastAPI,
    config: Optional[CarbonFlowConfig] = None,
    search: Optional[EmissionFactorSearchService] = None,
    repository: Optional[SnapshotRepository] = None,
) -> SessionRegistry:
    """Attach a SessionRegistry to ``app.state`` and mount the API router.

    Args:
        app: FastAPI application instance.
        config: Optional service config.
        search: Emission-factor search service shared by sessions.
        repository: Snapshot repository shared by sessions.

    Returns:
        The registry.
    """
    registry = SessionRegistry(config=config, search=search, repository=repository)
    app.state.carbonflow_registry = registry
    app.include_router(get_router(registry))
    logger.info("CarbonFlow API router mounted")
    return registry


__all__ = [
    "CarbonFlowSession",
    "SessionRegistry",
    "get_router",
    "configure_carbonflow",
]
