# -*- coding: utf-8 -*-
"""
CarbonFlow - Life-cycle carbon-flow graph service

Models a product's life-cycle carbon footprint as a directed graph of
life-cycle stage nodes and carbon-flow edges, applies mutation actions sent
by an AI agent over a bounded asynchronous channel, checks structural
consistency and computes a deterministic Sankey-style layout.

Engines:
    - GraphStore: in-memory graph of one session
    - ConsistencyValidator: invariant checks (main product, flow direction, cycles)
    - SankeyLayoutEngine: layered layout scaled by flow magnitude
    - ActionProcessor: applies decoded actions to the store
    - EventBridge: middleware chain, action channel and acknowledgements
    - FactorMatcher: asynchronous emission-factor match and autofill batches

Example:
    >>> from carbonflow import CarbonFlowSession
    >>> async with CarbonFlowSession(workflow_id="wf-1") as session:
    ...     session.dispatch({"type": "carbonflow", "operation": "create",
    ...                       "content": '{"id": "a", "stage": "raw_material"}'})
    ...     await session.bridge.join()
    ...     session.validate().is_valid

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

__version__ = "1.0.0"

from carbonflow.actions import ActionCommand, ActionMessage, Operation, decode_action
from carbonflow.bridge import EventBridge
from carbonflow.config import CarbonFlowConfig, get_config, reset_config, set_config
from carbonflow.exceptions import (
    ActionDecodeError,
    CarbonFlowException,
    ConfigurationError,
    GraphStoreError,
    MatchingFailure,
    ProcessingFailure,
    UnitConversionError,
    ValidationError,
)
from carbonflow.factor_matching import (
    FactorMatcher,
    HttpEmissionFactorSearch,
    StaticFactorCatalog,
)
from carbonflow.graph_store import GraphChange, GraphStore
from carbonflow.layout import SankeyLayoutEngine
from carbonflow.models import (
    AckEvent,
    ActionOutcome,
    CarbonEdge,
    CarbonNode,
    EmissionFactor,
    GraphSnapshot,
    LifecycleStage,
    MatchResult,
    ValidationResult,
)
from carbonflow.persistence import InMemorySnapshotRepository, JsonFileSnapshotRepository
from carbonflow.processor import ActionProcessor
from carbonflow.service import CarbonFlowSession, SessionRegistry, configure_carbonflow
from carbonflow.units import UnitConverter
from carbonflow.validator import ConsistencyValidator

__all__ = [
    "__version__",
    # Config
    "CarbonFlowConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Exceptions
    "CarbonFlowException",
    "ValidationError",
    "ProcessingFailure",
    "ActionDecodeError",
    "MatchingFailure",
    "GraphStoreError",
    "UnitConversionError",
    "ConfigurationError",
    # Models
    "LifecycleStage",
    "EmissionFactor",
    "CarbonNode",
    "CarbonEdge",
    "GraphSnapshot",
    "ValidationResult",
    "MatchResult",
    "ActionOutcome",
    "AckEvent",
    # Actions
    "Operation",
    "ActionMessage",
    "ActionCommand",
    "decode_action",
    # Engines
    "GraphStore",
    "GraphChange",
    "ConsistencyValidator",
    "SankeyLayoutEngine",
    "UnitConverter",
    "FactorMatcher",
    "HttpEmissionFactorSearch",
    "StaticFactorCatalog",
    "ActionProcessor",
    "EventBridge",
    # Service
    "CarbonFlowSession",
    "SessionRegistry",
    "configure_carbonflow",
    "InMemorySnapshotRepository",
    "JsonFileSnapshotRepository",
]
