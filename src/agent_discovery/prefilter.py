"""
Prefilter Engine

Resolves filter dimensions the primary agent query cannot express:

- metadata key / value existence, via the metadata index
- feedback scope + threshold predicates, via a scan of feedback rows that
  accumulates ``(sum, count)`` per agent

Both produce per-chain candidate id lists that the fetcher intersects with
``agentIds``. Chains run concurrently; pages within a chain run sequentially
and stop at a fixed scan ceiling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .exceptions import ChainNotConfiguredError, MissingCandidateSetError, UnsupportedOperationError
from .fanout import fan_out, split_outcomes
from .models import ChainStatus, FeedbackFilters, SearchFilters
from .sources.base import DataSourceClient
from .utils import dedupe, utf8_to_hex

logger = logging.getLogger(__name__)

METADATA_PAGE_SIZE = 1000
FEEDBACK_PAGE_SIZE = 1000
SCAN_CEILING = 5000


@dataclass(frozen=True)
class FeedbackStats:
    count: int
    average: float


@dataclass(frozen=True)
class MetadataPrefilter:
    ids_by_chain: Optional[Dict[int, List[str]]]
    failures: List[ChainStatus] = field(default_factory=list)


@dataclass(frozen=True)
class FeedbackPrefilter:
    """
    Feedback prefilter result.

    ``ids_by_chain`` is None when no row scan was needed (no feedback filter,
    or an existence-only filter pushed down to the agent query).
    """

    ids_by_chain: Optional[Dict[int, List[str]]]
    stats: Dict[str, FeedbackStats] = field(default_factory=dict)
    failures: List[ChainStatus] = field(default_factory=list)

    def average(self, agent_id: str) -> Optional[float]:
        st = self.stats.get(agent_id)
        return st.average if st is not None else None


async def scan_pages(
    fetch: Callable[[int, int], Awaitable[List[Any]]],
    page_size: int,
    what: str,
    chain_id: int,
    ceiling: int = SCAN_CEILING,
) -> List[Any]:
    """
    Page through ``fetch(first, skip)`` until a short page or the scan ceiling.

    Hitting the ceiling is not an error: the rows read so far are returned
    and a warning is logged.
    """
    rows: List[Any] = []
    skip = 0
    while True:
        page = await fetch(page_size, skip)
        rows.extend(page)
        if len(page) < page_size:
            return rows
        skip += page_size
        if skip >= ceiling:
            logger.warning("Chain %s: %s scan stopped at the %d row ceiling", chain_id, what, ceiling)
            return rows


def feedback_where(fb: FeedbackFilters, candidates: Optional[List[str]] = None) -> Dict[str, Any]:
    """Feedback-row predicate for the scope part of a feedback filter."""
    base: Dict[str, Any] = {}
    and_conditions: List[Dict[str, Any]] = []

    if not fb.includeRevoked:
        base["isRevoked"] = False
    if fb.fromReviewers:
        base["clientAddress_in"] = [str(a).lower() for a in fb.fromReviewers]
    if fb.endpoint:
        base["endpoint_contains_nocase"] = fb.endpoint
    if candidates:
        base["agent_in"] = list(candidates)
    if fb.tag1:
        base["tag1"] = fb.tag1
    if fb.tag2:
        base["tag2"] = fb.tag2
    if fb.tag:
        and_conditions.append({"or": [{"tag1": fb.tag}, {"tag2": fb.tag}]})

    return {"and": [base, *and_conditions]} if and_conditions else base


def passes_thresholds(fb: FeedbackFilters, stats: Optional[FeedbackStats]) -> bool:
    count = stats.count if stats else 0
    avg = stats.average if stats else 0.0
    if fb.minCount is not None and count < fb.minCount:
        return False
    if fb.maxCount is not None and count > fb.maxCount:
        return False
    if fb.minValue is not None and avg < float(fb.minValue):
        return False
    if fb.maxValue is not None and avg > float(fb.maxValue):
        return False
    return True


class PrefilterEngine:
    """Runs metadata and feedback prefilters across chains."""

    def __init__(self, sources: Mapping[int, DataSourceClient], chain_timeout: float = 30.0):
        self.sources = sources
        self.chain_timeout = chain_timeout

    def _source(self, chain_id: int) -> DataSourceClient:
        source = self.sources.get(chain_id)
        if source is None:
            raise ChainNotConfiguredError(chain_id)
        return source

    async def metadata(self, filters: SearchFilters, chains: List[int]) -> MetadataPrefilter:
        """
        Candidate ids per chain for ``hasMetadataKey`` / ``metadataValue``.

        Returns ``ids_by_chain=None`` when no metadata filter is set.
        """
        key = filters.metadata_key()
        if not key:
            return MetadataPrefilter(None)

        where: Dict[str, Any] = {"key": key}
        if isinstance(filters.metadataValue, dict) and filters.metadataValue.get("value") is not None:
            where["value"] = utf8_to_hex(str(filters.metadataValue["value"]))

        async def scan(chain_id: int) -> List[str]:
            source = self._source(chain_id)
            rows = await scan_pages(
                lambda first, skip: source.query_metadata(where, first, skip),
                METADATA_PAGE_SIZE,
                "metadata",
                chain_id,
            )
            return dedupe(r.agentId for r in rows if r.agentId)

        ok, failed = split_outcomes(await fan_out(chains, scan, self.chain_timeout))
        return MetadataPrefilter({o.chainId: o.value for o in ok}, failed)

    async def feedback(
        self,
        filters: SearchFilters,
        chains: List[int],
        candidates: Optional[Dict[int, List[str]]] = None,
    ) -> FeedbackPrefilter:
        """
        Allow-list and per-agent statistics for the feedback sub-filter.

        Args:
            filters: Search filters carrying ``feedback``
            chains: Chains to scan
            candidates: Upstream candidate ids per chain (None when unconstrained)

        Returns:
            FeedbackPrefilter; ``ids_by_chain`` is None when no scan is needed

        Raises:
            MissingCandidateSetError: ``hasNoFeedback`` with scope or thresholds and no candidates
        """
        fb = filters.feedback
        if fb is None or not fb.is_active() or fb.is_existence_only():
            return FeedbackPrefilter(None)
        if fb.hasNoFeedback and candidates is None:
            raise MissingCandidateSetError()

        async def scan(chain_id: int) -> Tuple[Dict[str, float], Dict[str, int]]:
            chain_candidates = candidates.get(chain_id) if candidates is not None else None
            sums: Dict[str, float] = {}
            counts: Dict[str, int] = {}
            if chain_candidates is not None and not chain_candidates:
                return sums, counts

            source = self._source(chain_id)
            where = feedback_where(fb, chain_candidates)
            rows = await scan_pages(
                lambda first, skip: source.query_feedback(where, first, skip, "createdAt", "desc"),
                FEEDBACK_PAGE_SIZE,
                "feedback",
                chain_id,
            )
            for r in rows:
                if not r.agentId:
                    continue
                if fb.hasResponse:
                    if r.hasResponse is None:
                        raise UnsupportedOperationError(
                            "feedback.hasResponse",
                            type(source).__name__,
                            reason="response presence is not available from this backend",
                        )
                    if not r.hasResponse:
                        continue
                sums[r.agentId] = sums.get(r.agentId, 0.0) + float(r.value)
                counts[r.agentId] = counts.get(r.agentId, 0) + 1
            return sums, counts

        ok, failed = split_outcomes(await fan_out(chains, scan, self.chain_timeout))

        stats: Dict[str, FeedbackStats] = {}
        allow: Dict[int, List[str]] = {}
        for outcome in ok:
            sums, counts = outcome.value
            for aid, cnt in counts.items():
                stats[aid] = FeedbackStats(count=cnt, average=sums[aid] / cnt)

            chain_candidates = candidates.get(outcome.chainId) if candidates is not None else None
            if fb.hasNoFeedback:
                allow[outcome.chainId] = [x for x in chain_candidates or [] if x not in counts]
                continue

            ids = list(counts)
            if fb.has_threshold():
                ids = [x for x in ids if passes_thresholds(fb, stats.get(x))]
            if chain_candidates is not None:
                cset = set(chain_candidates)
                ids = [x for x in ids if x in cset]
            allow[outcome.chainId] = ids

        logger.debug(
            "Feedback prefilter matched %d agents across %d chains",
            sum(len(v) for v in allow.values()),
            len(allow),
        )
        return FeedbackPrefilter(allow, stats, failed)
