"""Tests for the carbonflow command line."""

import json

import pytest
import yaml
from typer.testing import CliRunner

from carbonflow import __version__
from carbonflow.cli import app
from carbonflow.models import GraphSnapshot

runner = CliRunner()


SNAPSHOT = {
    "workflowId": "wf-cli",
    "nodes": [
        {"id": "r", "stage": "raw_material", "label": "Steel", "quantity": 10,
         "emissionFactor": {"value": 2, "unit": "kgCO2e/kg"}, "activityUnit": "kg"},
        {"id": "p", "stage": "final_product", "label": "Bike", "isMainProduct": True},
    ],
    "edges": [{"id": "e1", "source": "r", "target": "p"}],
}


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "graph.json"
    path.write_text(json.dumps(SNAPSHOT), encoding="utf-8")
    return path


class TestValidateCommand:
    def test_valid_snapshot(self, snapshot_file):
        result = runner.invoke(app, ["validate", str(snapshot_file)])

        assert result.exit_code == 0
        assert "Valid" in result.output

    def test_invalid_snapshot_exits_1(self, tmp_path):
        data = dict(SNAPSHOT, edges=[{"id": "e1", "source": "p", "target": "r"}])
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")

        result = runner.invoke(app, ["validate", str(path)])

        assert result.exit_code == 1
        assert "1 error(s)" in result.output


class TestLayoutCommand:
    def test_layout_writes_output(self, snapshot_file, tmp_path):
        output = tmp_path / "out" / "laid-out.json"
        result = runner.invoke(app, ["layout", str(snapshot_file), "-o", str(output)])

        assert result.exit_code == 0
        laid_out = GraphSnapshot.model_validate_json(output.read_text(encoding="utf-8"))
        positions = {n.id: n.position.x for n in laid_out.nodes}
        assert positions == {"r": 300.0, "p": 3550.0}
        assert laid_out.edges[0].weight is not None


class TestCalculateCommand:
    def test_calculate_prints_total(self, snapshot_file, tmp_path):
        output = tmp_path / "calculated.json"
        result = runner.invoke(app, ["calculate", str(snapshot_file), "--output", str(output)])

        assert result.exit_code == 0
        assert "Total:" in result.output
        assert "20.0000" in result.output
        recalculated = GraphSnapshot.model_validate_json(output.read_text(encoding="utf-8"))
        assert recalculated.nodes[0].carbon_footprint == 20.0


class TestInputErrors:
    @pytest.mark.parametrize("name,content", [
        ("graph.txt", "{}"),
        ("graph.json", "{not json"),
        ("graph.json", '{"nodes": [{"stage": "usage"}]}'),
    ])
    def test_bad_input_exits_1(self, tmp_path, name, content):
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")

        result = runner.invoke(app, ["validate", str(path)])

        assert result.exit_code == 1

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["layout", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "Snapshot not found" in result.output


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output
