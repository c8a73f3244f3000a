"""Tests for snapshot repositories."""

import pytest

from carbonflow.exceptions import GraphStoreError
from carbonflow.models import GraphSnapshot
from carbonflow.persistence import InMemorySnapshotRepository, JsonFileSnapshotRepository

from conftest import make_edge, make_node


def sample_snapshot(workflow_id="wf-1"):
    return GraphSnapshot(
        workflow_id=workflow_id,
        nodes=[make_node("a", footprint=5.0, is_main_product=True), make_node("b", stage="usage")],
        edges=[make_edge("a", "b")],
        report_summary={"total": 5.0},
    )


class TestInMemorySnapshotRepository:
    @pytest.mark.asyncio
    async def test_save_and_load_are_copies(self):
        repository = InMemorySnapshotRepository()
        snapshot = sample_snapshot()
        await repository.save(snapshot)
        snapshot.nodes.clear()

        loaded = await repository.load("wf-1")

        assert [n.id for n in loaded.nodes] == ["a", "b"]
        loaded.edges.clear()
        assert len((await repository.load("wf-1")).edges) == 1
        assert repository.list_ids() == ["wf-1"]

    @pytest.mark.asyncio
    async def test_missing_snapshot(self):
        assert await InMemorySnapshotRepository().load("nope") is None

    @pytest.mark.asyncio
    async def test_workflow_id_required(self):
        with pytest.raises(GraphStoreError):
            await InMemorySnapshotRepository().save(GraphSnapshot())


class TestJsonFileSnapshotRepository:
    """Tests for the JSON file repository."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        repository = JsonFileSnapshotRepository(tmp_path / "snapshots")
        await repository.save(sample_snapshot())

        path = tmp_path / "snapshots" / "wf-1.json"
        assert path.exists()
        assert '"workflowId": "wf-1"' in path.read_text(encoding="utf-8")

        loaded = await repository.load("wf-1")
        assert loaded.nodes[0].is_main_product is True
        assert loaded.edges[0].target == "b"
        assert loaded.report_summary == {"total": 5.0}
        assert repository.list_ids() == ["wf-1"]

    @pytest.mark.asyncio
    async def test_overwrite(self, tmp_path):
        repository = JsonFileSnapshotRepository(tmp_path)
        await repository.save(sample_snapshot())
        updated = sample_snapshot()
        updated.nodes.pop()
        await repository.save(updated)

        assert len((await repository.load("wf-1")).nodes) == 1
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        repository = JsonFileSnapshotRepository(tmp_path / "empty")
        assert await repository.load("wf-1") is None
        assert repository.list_ids() == []

    @pytest.mark.parametrize("workflow_id", ["../etc/passwd", "a/b", "", "wf 1"])
    def test_unsafe_ids_rejected(self, tmp_path, workflow_id):
        with pytest.raises(GraphStoreError):
            JsonFileSnapshotRepository(tmp_path).path_for(workflow_id)

    def test_default_directory_from_config(self, carbonflow_config):
        repository = JsonFileSnapshotRepository()
        assert str(repository.directory) == carbonflow_config.snapshot_dir
