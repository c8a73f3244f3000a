# -*- coding: utf-8 -*-
"""Pytest configuration and shared fixtures."""

import json
from typing import Any, Dict, Optional

import pytest

from carbonflow.config import CarbonFlowConfig, reset_config, set_config
from carbonflow.factor_matching import FactorMatcher, StaticFactorCatalog
from carbonflow.graph_store import GraphStore
from carbonflow.models import CarbonEdge, CarbonNode, FactorCandidate
from carbonflow.processor import ActionProcessor


@pytest.fixture(autouse=True)
def carbonflow_config():
    """Install a fresh default config for every test."""
    config = CarbonFlowConfig()
    set_config(config)
    yield config
    reset_config()


@pytest.fixture
def store(carbonflow_config):
    """Empty graph store."""
    return GraphStore(workflow_id="wf-test", config=carbonflow_config)


@pytest.fixture
def catalog():
    """Offline emission-factor catalog."""
    return StaticFactorCatalog([
        FactorCandidate(name="steel hot rolled", value=2.1, unit="kgCO2e/kg",
                        geography="GLO", year="2023", source="ecoinvent"),
        FactorCandidate(name="aluminium ingot", value=8.6, unit="kgCO2e/kg",
                        geography="EU", year="2022", source="ecoinvent"),
        FactorCandidate(name="electricity grid mix", value=0.42, unit="kgCO2e/kWh",
                        geography="US", year="2023", source="eGRID"),
        FactorCandidate(name="truck transport freight", value=0.11, unit="kgCO2e/tkm",
                        geography="GLO", year="2021", source="GLEC"),
    ])


@pytest.fixture
def matcher(store, catalog, carbonflow_config):
    return FactorMatcher(store, search=catalog, config=carbonflow_config)


@pytest.fixture
def processor(store, matcher, carbonflow_config):
    return ActionProcessor(store, matcher=matcher, config=carbonflow_config)


def make_node(node_id: str, stage: str = "raw_material", footprint: Any = 0.0, **kwargs) -> CarbonNode:
    """Build a node with the given footprint."""
    return CarbonNode(id=node_id, stage=stage, carbon_footprint=footprint, **kwargs)


def make_edge(source: str, target: str, edge_id: Optional[str] = None) -> CarbonEdge:
    return CarbonEdge(id=edge_id or f"{source}-{target}", source=source, target=target)


def action(
    operation: str,
    content: Optional[Dict[str, Any]] = None,
    node_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Wire-shaped action message with a JSON string payload."""
    message: Dict[str, Any] = {
        "type": "carbonflow",
        "operation": operation,
        "workflowid": "wf-test",
        "content": json.dumps(content or {}),
    }
    if node_id is not None:
        message["nodeId"] = node_id
    message.update(extra)
    return message
