"""Tests for emission-factor search and match / autofill batches."""

import asyncio

import httpx
import pytest

from carbonflow.actions import Operation
from carbonflow.exceptions import MatchingFailure, ProcessingFailure
from carbonflow.factor_matching import (
    FactorMatcher,
    HttpEmissionFactorSearch,
    MatchBatch,
)
from carbonflow.models import EmissionFactor, FactorCandidate, VerificationStatus

from conftest import make_node


class GatedSearch:
    """Search service that blocks until released."""

    def __init__(self, candidate):
        self.candidate = candidate
        self.release = asyncio.Event()
        self.queries = []

    async def query(self, text, top_k=3, min_score=0.3, rerank=False):
        self.queries.append((text, top_k, min_score, rerank))
        await self.release.wait()
        return [self.candidate]


STEEL = FactorCandidate(name="steel hot rolled", value=2.1, unit="kgCO2e/kg", source="ecoinvent")


# =============================================================================
# Search services
# =============================================================================


class TestStaticFactorCatalog:
    @pytest.mark.asyncio
    async def test_ranks_by_token_overlap(self, catalog):
        results = await catalog.query("hot rolled steel kg")

        assert [c.name for c in results] == ["steel hot rolled"]
        assert results[0].confidence == 0.75

    @pytest.mark.asyncio
    async def test_min_score_and_top_k(self, catalog):
        assert await catalog.query("titanium sponge") == []
        assert len(await catalog.query("steel aluminium electricity transport", min_score=0.0)) == 3


class TestHttpEmissionFactorSearch:
    """Tests for the HTTP search client against a mock transport."""

    @pytest.mark.asyncio
    async def test_parses_results_envelope(self):
        seen = {}

        def handler(request):
            seen["body"] = request.read()
            return httpx.Response(200, json={"results": [{"matches": [
                {"activity_name": "steel hot rolled", "kg_co2eq": "2.1",
                 "reference_product_unit": "kg", "geography": "GLO",
                 "import_date": 2023, "score": 0.91, "data_source": "ecoinvent"},
                {"activity_name": "no value"},
            ]}]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            search = HttpEmissionFactorSearch("http://factors.test/match", client=client)
            results = await search.query("steel", top_k=2, rerank=True)

        assert len(results) == 1
        candidate = results[0]
        assert (candidate.name, candidate.value, candidate.unit) == ("steel hot rolled", 2.1, "kg")
        assert candidate.year == "2023"
        assert candidate.confidence == 0.91
        assert candidate.source == "ecoinvent"
        assert b'"labels": ["steel"]' in seen["body"] or b'"labels":["steel"]' in seen["body"]

    @pytest.mark.asyncio
    async def test_parses_bare_list(self):
        def handler(request):
            return httpx.Response(200, json=[
                {"name": "a", "value": 1}, {"name": "b", "value": 2}, {"name": "c", "value": 3},
            ])

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            search = HttpEmissionFactorSearch("http://factors.test/match", client=client)
            results = await search.query("x", top_k=2)

        assert [c.name for c in results] == ["a", "b"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handler,message", [
        (lambda r: httpx.Response(500), "HTTP 500"),
        (lambda r: httpx.Response(200, text="not json"), "invalid JSON"),
        (lambda r: httpx.Response(200, json={"results": [{"error": "index offline"}]}),
         "index offline"),
    ])
    async def test_failures_become_matching_failure(self, handler, message):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            search = HttpEmissionFactorSearch("http://factors.test/match", client=client)
            with pytest.raises(MatchingFailure, match=message):
                await search.query("steel")

    @pytest.mark.asyncio
    async def test_timeout_and_unreachable(self):
        def slow(request):
            raise httpx.ReadTimeout("slow", request=request)

        def down(request):
            raise httpx.ConnectError("refused", request=request)

        for handler, message in ((slow, "timed out"), (down, "unreachable")):
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                search = HttpEmissionFactorSearch("http://factors.test/match", client=client)
                with pytest.raises(MatchingFailure, match=message):
                    await search.query("steel")


# =============================================================================
# Batches
# =============================================================================


class TestBatchManagement:
    def test_start_batch_needs_running_loop(self, matcher):
        with pytest.raises(ProcessingFailure):
            matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["a"])

    def test_search_created_from_config(self, store, carbonflow_config):
        carbonflow_config.search_api_url = "http://factors.test/match"
        matcher = FactorMatcher(store, config=carbonflow_config)
        assert isinstance(matcher.search, HttpEmissionFactorSearch)
        assert matcher.search.url == "http://factors.test/match"

    @pytest.mark.asyncio
    async def test_default_targets(self, store, matcher):
        store.add_node(make_node("r"))
        store.add_node(make_node("d", stage="distribution"))

        match = matcher.start_batch(Operation.CARBON_FACTOR_MATCH, [])
        transport = matcher.start_batch(Operation.AI_AUTOFILL_TRANSPORT_DATA, [])
        await matcher.wait_all()

        assert match.node_ids == ["r", "d"]
        assert transport.node_ids == ["d"]
        assert matcher.pending_batches == []
        assert matcher.get_batch(match.batch_id) is match

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished(self, store, matcher):
        assert matcher.cancel_batch("nope") is False
        batch = matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["ghost"])
        await matcher.wait_all()
        assert matcher.cancel_batch(batch.batch_id) is False

    @pytest.mark.asyncio
    async def test_finished_batches_are_bounded(self, store, matcher, carbonflow_config):
        """Only the newest finished batches stay queryable."""
        carbonflow_config.batch_history_size = 2
        store.add_node(make_node("s", label="steel"))

        batches = [matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["s"]) for _ in range(5)]
        await matcher.wait_all()

        assert [b.batch_id for b in matcher.batches] == [b.batch_id for b in batches[-2:]]
        assert matcher.get_batch(batches[0].batch_id) is None


class TestFactorMatch:
    """Tests for carbon_factor_match batches."""

    @pytest.mark.asyncio
    async def test_match_sets_factor(self, store, matcher):
        store.add_node(make_node("s", label="hot rolled steel", activity_unit="kg"))

        batch = matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["s"])
        [result] = await matcher.wait_all()

        assert result.batch_id == batch.batch_id
        assert result.success == ["s"]
        node = store.get_node("s")
        assert node.emission_factor.value == 2.1
        assert node.emission_factor.unit == "kgCO2e/kg"
        assert node.emission_factor.geographic_representativeness == "GLO"
        assert node.emission_factor.temporal_representativeness == "2023"
        assert node.verification_status is VerificationStatus.PENDING

    @pytest.mark.asyncio
    async def test_failures_are_reported_per_node(self, store, matcher):
        store.add_node(make_node("unknown", label="titanium sponge"))
        store.add_node(make_node("unlabelled"))

        matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["unknown", "unlabelled", "ghost"])
        [result] = await matcher.wait_all()

        reasons = {f.id: f.reason for f in result.failed}
        assert result.success == []
        assert reasons == {
            "unknown": "no emission factor found",
            "unlabelled": "node has no label to search by",
            "ghost": "node not found",
        }

    @pytest.mark.asyncio
    async def test_existing_factor_skipped(self, store, matcher):
        store.add_node(make_node("s", label="steel", emission_factor=EmissionFactor(value=9.9)))

        matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["s"])
        [result] = await matcher.wait_all()

        assert result.success == ["s"]
        assert [(s.id, s.reason) for s in result.skipped] == [("s", "already has factor")]
        assert store.get_node("s").emission_factor.value == 9.9

    @pytest.mark.asyncio
    async def test_no_search_service(self, store, carbonflow_config):
        matcher = FactorMatcher(store, config=carbonflow_config)
        store.add_node(make_node("s", label="steel"))

        matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["s"])
        [result] = await matcher.wait_all()

        assert "no emission-factor search service" in result.failed[0].reason

    @pytest.mark.asyncio
    async def test_ai_match_uses_rerank_settings(self, store, carbonflow_config):
        search = GatedSearch(STEEL)
        search.release.set()
        matcher = FactorMatcher(store, search=search, config=carbonflow_config)
        store.add_node(make_node("s", label="steel", activity_unit="t"))

        matcher.start_batch(Operation.CARBON_FACTOR_MATCH_WITH_AI, ["s"])
        await matcher.wait_all()

        assert search.queries == [("steel t", 5, 0.2, True)]

    @pytest.mark.asyncio
    async def test_cancelled_batch_discards_results(self, store, carbonflow_config):
        """Results arriving after cancellation never reach the store."""
        search = GatedSearch(STEEL)
        matcher = FactorMatcher(store, search=search, config=carbonflow_config)
        store.add_node(make_node("a", label="steel"))
        store.add_node(make_node("b", label="steel"))

        batch = matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["a", "b"])
        await asyncio.sleep(0)
        assert matcher.cancel_batch(batch.batch_id) is True
        search.release.set()
        [result] = await matcher.wait_all()

        assert result.cancelled is True
        assert result.success == []
        assert not store.get_node("a").emission_factor.is_set
        assert len(search.queries) == 1

    @pytest.mark.asyncio
    async def test_node_deleted_mid_match_is_skipped(self, store, carbonflow_config):
        search = GatedSearch(STEEL)
        matcher = FactorMatcher(store, search=search, config=carbonflow_config)
        store.add_node(make_node("a", label="steel"))

        matcher.start_batch(Operation.CARBON_FACTOR_MATCH, ["a"])
        await asyncio.sleep(0)
        store.remove_node("a")
        search.release.set()
        [result] = await matcher.wait_all()

        assert result.success == []
        assert result.failed == []
        assert store.get_node("a") is None


class TestAutofill:
    """Tests for the ai_autofill family."""

    @pytest.mark.asyncio
    async def test_autofill_matches_then_converts(self, store, matcher):
        store.add_node(make_node("s", label="hot rolled steel", activity_unit="g", quantity=500))

        matcher.start_batch(Operation.AI_AUTOFILL, ["s"])
        [result] = await matcher.wait_all()

        node = store.get_node("s")
        assert result.success == ["s"]
        assert node.emission_factor.value == 2.1
        assert node.unit_conversion == pytest.approx(0.001)

    @pytest.mark.asyncio
    async def test_transport_defaults(self, store, matcher, carbonflow_config):
        store.add_node(make_node("d", stage="distribution", attributes={"carrier": "x"}))

        matcher.start_batch(Operation.AI_AUTOFILL_TRANSPORT_DATA, [])
        [result] = await matcher.wait_all()

        attributes = store.get_node("d").attributes
        assert result.success == ["d"]
        assert attributes == {
            "carrier": "x",
            "transportationDistance": carbonflow_config.default_transport_distance,
            "transportationMethod": carbonflow_config.default_transport_method,
        }

    @pytest.mark.asyncio
    async def test_transport_options(self, store, matcher):
        store.add_node(make_node("d", stage="distribution"))

        batch = matcher.start_batch(
            Operation.AI_AUTOFILL_TRANSPORT_DATA, ["d"],
            {"transportation_distance": 42, "transport_method": "rail"},
        )
        await matcher.wait_all()

        assert batch.result.success == ["d"]
        assert store.get_node("d").attributes["transportationMethod"] == "rail"
        assert store.get_node("d").attributes["transportationDistance"] == 42

    @pytest.mark.asyncio
    async def test_conversion(self, store, matcher):
        store.add_node(make_node(
            "e", activity_unit="MWh", emission_factor=EmissionFactor(value=0.42, unit="kgCO2e/kWh"),
        ))
        store.add_node(make_node("bare"))
        store.add_node(make_node(
            "bad", activity_unit="kg", emission_factor=EmissionFactor(value=1, unit="kgCO2e/kWh"),
        ))

        matcher.start_batch(Operation.AI_AUTOFILL_CONVERSION_DATA, [])
        [result] = await matcher.wait_all()

        assert result.success == ["e"]
        assert store.get_node("e").unit_conversion == pytest.approx(1000.0)
        reasons = {f.id: f.reason for f in result.failed}
        assert reasons["bare"] == "activity unit or factor unit missing"
        assert "different unit types" in reasons["bad"]


class TestMatchBatch:
    def test_repr_and_done(self):
        batch = MatchBatch(Operation.CARBON_FACTOR_MATCH, ["a"])
        assert not batch.done
        batch.cancel()
        assert batch.cancelled
        assert "carbon_factor_match" in repr(batch)
