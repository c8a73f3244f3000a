# -*- coding: utf-8 -*-
"""
Emission-Factor Matching - CarbonFlow Graph Service

Asynchronous match and autofill batches for the ``carbon_factor_match``,
``carbon_factor_match_with_ai`` and ``ai_autofill*`` operations.

Components:
    - EmissionFactorSearchService: protocol of the external search service
      (``query(text) -> ranked candidates``).
    - HttpEmissionFactorSearch: httpx client for a JSON search endpoint.
    - StaticFactorCatalog: in-memory token-overlap search, for offline use
      and tests.
    - MatchBatch: one outstanding batch; can be cancelled.
    - FactorMatcher: runs batches against a GraphStore and folds results
      back through the store's "update if still present" path.

Concurrency:
    A batch runs as its own asyncio task. The store stays freely mutable
    while a batch is outstanding. A node deleted before its result arrives
    is skipped silently. Once a batch is cancelled, results arriving later
    are discarded; in-flight requests are not aborted. Two batches touching
    the same node are not serialised, so the last write wins.

Author: GreenLang Platform Team
Date: October 2026
Status: Production Ready
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

import httpx

from carbonflow.actions import Operation
from carbonflow.config import CarbonFlowConfig, get_config
from carbonflow.exceptions import (
    MatchingFailure,
    ProcessingFailure,
    UnitConversionError,
)
from carbonflow.graph_store import GraphStore
from carbonflow.metrics import record_factor_match, record_processing_duration
from carbonflow.models import (
    CarbonNode,
    EmissionFactor,
    FactorCandidate,
    FailedNode,
    LifecycleStage,
    MatchResult,
    SkippedNode,
    VerificationStatus,
    parse_number,
)
from carbonflow.units import UnitConverter

logger = logging.getLogger(__name__)


# =============================================================================
# Search services
# =============================================================================


class EmissionFactorSearchService(Protocol):
    """External emission-factor search."""

    async def query(
        self,
        text: str,
        top_k: int = 3,
        min_score: float = 0.3,
        rerank: bool = False,
    ) -> List[FactorCandidate]:
        """Return candidates ranked best first.

        Raises:
            MatchingFailure: If the service cannot be reached or errors.
        """
        ...


def _candidate_from_hit(hit: Dict[str, Any]) -> Optional[FactorCandidate]:
    """Map one search hit onto a FactorCandidate, None when it has no value."""
    value = parse_number(hit.get("kg_co2eq", hit.get("value")))
    if value is None:
        return None
    year = hit.get("import_date", hit.get("year"))
    return FactorCandidate(
        name=hit.get("activity_name") or hit.get("name") or "",
        value=value,
        unit=hit.get("reference_product_unit") or hit.get("unit"),
        geography=hit.get("geography"),
        year=str(year) if year is not None else None,
        confidence=parse_number(hit.get("score", hit.get("confidence"))) or 0.0,
        source=hit.get("data_source") or hit.get("source"),
    )


class HttpEmissionFactorSearch:
    """Emission-factor search over HTTP.

    Posts ``{"labels": [text], "top_k": k, "min_score": s, "rerank": bool}``
    and reads either ``{"results": [{"matches": [...]}]}`` or a bare list
    of hits.

    Attributes:
        url: Search endpoint.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the client.

        Args:
            url: Search endpoint.
            timeout: Request timeout in seconds.
            client: Shared client; a short-lived one is opened per query
                when omitted.
        """
        self.url = url
        self.timeout = timeout
        self._client = client

    async def query(
        self,
        text: str,
        top_k: int = 3,
        min_score: float = 0.3,
        rerank: bool = False,
    ) -> List[FactorCandidate]:
        body = {
            "labels": [text],
            "top_k": top_k,
            "min_score": min_score,
            "rerank": rerank,
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            raise MatchingFailure(
                f"factor search timed out after {self.timeout}s",
                context={"query": text},
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise MatchingFailure(
                f"factor search returned HTTP {exc.response.status_code}",
                context={"query": text},
            ) from exc
        except httpx.HTTPError as exc:
            raise MatchingFailure(
                f"factor search unreachable: {exc}", context={"query": text},
            ) from exc
        except ValueError as exc:
            raise MatchingFailure(
                "factor search returned invalid JSON", context={"query": text},
            ) from exc

        hits: Iterable[Any]
        if isinstance(data, list):
            hits = data
        else:
            results = data.get("results") or []
            first = results[0] if results else {}
            if first.get("error"):
                raise MatchingFailure(
                    f"factor search error: {first['error']}", context={"query": text},
                )
            hits = first.get("matches") or []

        candidates = [c for c in (_candidate_from_hit(h) for h in hits) if c is not None]
        return candidates[:top_k]


_TOKEN = re.compile(r"[\w]+", re.UNICODE)


def _tokens(text: str) -> set:
    return {t.lower() for t in _TOKEN.findall(text)}


class StaticFactorCatalog:
    """In-memory factor search scored by token overlap (Jaccard).

    Example:
        >>> catalog = StaticFactorCatalog([
        ...     FactorCandidate(name="steel hot rolled", value=2.1, unit="kg"),
        ... ])
        >>> [c.name for c in await catalog.query("hot rolled steel")]
        ['steel hot rolled']
    """

    def __init__(self, factors: Sequence[FactorCandidate]) -> None:
        self._factors = list(factors)

    async def query(
        self,
        text: str,
        top_k: int = 3,
        min_score: float = 0.3,
        rerank: bool = False,
    ) -> List[FactorCandidate]:
        wanted = _tokens(text)
        scored = []
        for factor in self._factors:
            have = _tokens(factor.name)
            if not wanted or not have:
                continue
            score = len(wanted & have) / len(wanted | have)
            if score >= min_score:
                scored.append(factor.model_copy(update={"confidence": round(score, 4)}))
        scored.sort(key=lambda c: -c.confidence)
        return scored[:top_k]


# =============================================================================
# Batches
# =============================================================================


class MatchBatch:
    """One outstanding match or autofill batch.

    Attributes:
        batch_id: Unique batch identifier.
        operation: Operation that started the batch.
        node_ids: Target node ids, resolved when the batch started.
        cancelled: True once :meth:`cancel` was called.
        task: Task running the batch.
        result: Final result, set when the task completes.
    """

    def __init__(self, operation: Operation, node_ids: List[str]) -> None:
        self.batch_id = str(uuid.uuid4())
        self.operation = operation
        self.node_ids = node_ids
        self.cancelled = False
        self.task: Optional[asyncio.Task] = None
        self.result: Optional[MatchResult] = None

    def cancel(self) -> None:
        """Mark the batch cancelled; later results are discarded."""
        self.cancelled = True

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def __repr__(self) -> str:
        return (
            f"MatchBatch(batch_id={self.batch_id!r}, operation={self.operation.value!r}, "
            f"nodes={len(self.node_ids)}, cancelled={self.cancelled})"
        )


class FactorMatcher:
    """Runs match and autofill batches against one GraphStore.

    Attributes:
        store: Graph the batch results are folded into.
        search: Emission-factor search service, or None when unconfigured.
        config: Matching thresholds and autofill defaults.
    """

    def __init__(
        self,
        store: GraphStore,
        search: Optional[EmissionFactorSearchService] = None,
        config: Optional[CarbonFlowConfig] = None,
        converter: Optional[UnitConverter] = None,
    ) -> None:
        self.store = store
        self.config = config or get_config()
        if search is None and self.config.search_api_url:
            search = HttpEmissionFactorSearch(
                self.config.search_api_url, timeout=self.config.search_timeout,
            )
        self.search = search
        self.converter = converter or UnitConverter()
        self._batches: Dict[str, MatchBatch] = {}

    # ------------------------------------------------------------------
    # Batch management
    # ------------------------------------------------------------------

    def start_batch(
        self,
        operation: Operation,
        node_ids: Sequence[str],
        options: Optional[Dict[str, Any]] = None,
    ) -> MatchBatch:
        """Schedule a batch on the running event loop.

        Args:
            operation: One of the match or autofill operations.
            node_ids: Target ids; empty means the operation's default set.
            options: Per-call overrides (transport method and distance).

        Returns:
            The scheduled batch.

        Raises:
            ProcessingFailure: If no event loop is running.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise ProcessingFailure(
                f"'{operation.value}' needs a running event loop",
                operation=operation.value,
            ) from exc

        batch = MatchBatch(operation, list(node_ids) or self._default_targets(operation))
        batch.task = loop.create_task(self.run_batch(batch, options or {}))
        self._batches[batch.batch_id] = batch
        logger.info(
            "Started %s batch %s for %d node(s)",
            operation.value, batch.batch_id, len(batch.node_ids),
        )
        return batch

    def get_batch(self, batch_id: str) -> Optional[MatchBatch]:
        return self._batches.get(batch_id)

    def cancel_batch(self, batch_id: str) -> bool:
        """Cancel a batch. Returns False for an unknown or finished batch."""
        batch = self._batches.get(batch_id)
        if batch is None or batch.done:
            return False
        batch.cancel()
        logger.info("Cancelled batch %s", batch_id)
        return True

    @property
    def batches(self) -> List[MatchBatch]:
        """Tracked batches, oldest first."""
        return list(self._batches.values())

    @property
    def pending_batches(self) -> List[MatchBatch]:
        return [b for b in self._batches.values() if not b.done]

    def _prune_finished(self) -> None:
        finished = [b.batch_id for b in self._batches.values() if b.result is not None]
        excess = len(finished) - self.config.batch_history_size
        for batch_id in finished[:max(excess, 0)]:
            del self._batches[batch_id]

    async def wait_all(self) -> List[MatchResult]:
        """Wait for every outstanding batch and return their results."""
        tasks = [b.task for b in self.pending_batches if b.task is not None]
        if tasks:
            await asyncio.gather(*tasks)
        return [b.result for b in self._batches.values() if b.result is not None]

    def _default_targets(self, operation: Operation) -> List[str]:
        nodes = self.store.nodes
        if operation == Operation.AI_AUTOFILL_TRANSPORT_DATA:
            return [n.id for n in nodes if n.lifecycle_stage == LifecycleStage.DISTRIBUTION]
        return [n.id for n in nodes]

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def run_batch(
        self,
        batch: MatchBatch,
        options: Optional[Dict[str, Any]] = None,
    ) -> MatchResult:
        """Execute a batch to completion (or cancellation).

        Never raises; failures are folded into the result's ``failed`` list.
        """
        start = time.monotonic()
        result = MatchResult(batch_id=batch.batch_id, operation=batch.operation.value)
        options = options or {}
        op = batch.operation

        for node_id in batch.node_ids:
            if batch.cancelled:
                break
            node = self.store.get_node(node_id)
            if node is None:
                result.failed.append(FailedNode(id=node_id, reason="node not found"))
                continue
            try:
                if op == Operation.CARBON_FACTOR_MATCH:
                    await self._match_one(batch, node, result, use_ai=False)
                elif op == Operation.CARBON_FACTOR_MATCH_WITH_AI:
                    await self._match_one(batch, node, result, use_ai=True)
                elif op == Operation.AI_AUTOFILL:
                    await self._autofill_one(batch, node, result)
                elif op == Operation.AI_AUTOFILL_TRANSPORT_DATA:
                    self._fill_transport(node, result, options)
                elif op == Operation.AI_AUTOFILL_CONVERSION_DATA:
                    self._fill_conversion(node, result)
                else:
                    result.failed.append(FailedNode(
                        id=node_id, reason=f"'{op.value}' is not a batch operation",
                    ))
            except Exception as exc:
                logger.error(
                    "Batch %s failed on node %s", batch.batch_id, node_id, exc_info=True,
                )
                result.failed.append(FailedNode(id=node_id, reason=str(exc)))

        result.cancelled = batch.cancelled
        batch.result = result
        self._prune_finished()
        record_processing_duration(op.value, time.monotonic() - start)
        logger.info(
            "Batch %s (%s) finished: %d succeeded, %d failed%s",
            batch.batch_id, op.value, len(result.success), len(result.failed),
            ", cancelled" if result.cancelled else "",
        )
        return result

    async def _search(self, node: CarbonNode, use_ai: bool) -> FactorCandidate:
        if self.search is None:
            raise MatchingFailure(
                "no emission-factor search service configured", node_id=node.id,
            )
        if not node.label.strip():
            raise MatchingFailure("node has no label to search by", node_id=node.id)

        text = node.label if not node.activity_unit else f"{node.label} {node.activity_unit}"
        cfg = self.config
        candidates = await self.search.query(
            text,
            top_k=cfg.ai_match_top_k if use_ai else cfg.match_top_k,
            min_score=cfg.ai_match_min_score if use_ai else cfg.match_min_score,
            rerank=use_ai,
        )
        if not candidates:
            raise MatchingFailure("no emission factor found", node_id=node.id)
        if use_ai:
            return max(candidates, key=lambda c: c.confidence)
        return candidates[0]

    async def _match_one(
        self,
        batch: MatchBatch,
        node: CarbonNode,
        result: MatchResult,
        use_ai: bool,
    ) -> None:
        if node.emission_factor.is_set:
            record_factor_match("skipped")
            result.success.append(node.id)
            result.skipped.append(SkippedNode(id=node.id, reason="already has factor"))
            return
        try:
            best = await self._search(node, use_ai)
        except MatchingFailure as exc:
            record_factor_match("failed")
            result.failed.append(FailedNode(id=node.id, reason=exc.message))
            return
        if batch.cancelled:
            record_factor_match("discarded")
            logger.warning(
                "Discarding factor for %s: batch %s was cancelled", node.id, batch.batch_id,
            )
            return

        factor = EmissionFactor(
            value=best.value,
            unit=best.unit,
            name=best.name,
            source=best.source,
            geographic_representativeness=best.geography,
            temporal_representativeness=best.year,
        )
        patched = self.store.patch_node(node.id, {
            "emission_factor": factor,
            "verification_status": VerificationStatus.PENDING,
        })
        if patched is None:
            logger.debug("Node %s removed before its factor arrived", node.id)
            return
        record_factor_match("matched")
        result.success.append(node.id)

    async def _autofill_one(
        self,
        batch: MatchBatch,
        node: CarbonNode,
        result: MatchResult,
    ) -> None:
        if not node.emission_factor.is_set:
            await self._match_one(batch, node, result, use_ai=True)
            if node.id not in result.success:
                return
            result.success.remove(node.id)
            node = self.store.get_node(node.id)
            if node is None:
                return
        self._fill_conversion(node, result)

    def _fill_transport(
        self,
        node: CarbonNode,
        result: MatchResult,
        options: Dict[str, Any],
    ) -> None:
        distance = options.get("transportation_distance")
        if distance is None:
            distance = self.config.default_transport_distance
        method = options.get("transport_method") or self.config.default_transport_method
        self.store.patch_node(node.id, {
            "attributes": {
                **node.attributes,
                "transportationDistance": distance,
                "transportationMethod": method,
            },
            "verification_status": VerificationStatus.PENDING,
        })
        result.success.append(node.id)

    def _fill_conversion(self, node: CarbonNode, result: MatchResult) -> None:
        if not node.activity_unit or not node.emission_factor.unit:
            result.failed.append(FailedNode(
                id=node.id, reason="activity unit or factor unit missing",
            ))
            return
        try:
            conversion = self.converter.conversion_factor(
                node.activity_unit, node.emission_factor.unit,
            )
        except UnitConversionError as exc:
            result.failed.append(FailedNode(id=node.id, reason=exc.message))
            return
        self.store.patch_node(node.id, {"unit_conversion": conversion})
        result.success.append(node.id)


__all__ = [
    "EmissionFactorSearchService",
    "HttpEmissionFactorSearch",
    "StaticFactorCatalog",
    "MatchBatch",
    "FactorMatcher",
]
