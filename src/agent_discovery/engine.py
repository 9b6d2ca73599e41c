"""
Search Engine

Orchestrates a multi-chain agent search:

Keyword absent (structured path):
    compile -> metadata prefilter -> feedback prefilter -> concurrent per-chain
    fetch -> k-way merge -> per-chain cursor

Keyword present:
    semantic ranking -> restrict to chains -> prefilters -> concurrent
    hydration -> one global sort -> offset cursor

The engine holds no per-call state; continuation lives in the cursor.

Example:
    >>> config = DiscoveryConfig.with_defaults(default_chain_id=8453)
    >>> async with SearchEngine(config) as engine:
    ...     result = await engine.search_agents(
    ...         SearchFilters(chains=[1, 8453], feedback=FeedbackFilters(tag="latency", minValue=80)),
    ...         SearchOptions(sort=["averageValue:desc"], pageSize=20),
    ...     )
    ...     result.meta.failedChains
    []
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Mapping, Optional

import httpx

from .compiler import CompiledSearch, FilterCompiler
from .config import DiscoveryConfig
from .exceptions import ChainNotConfiguredError, ValidationError
from .fanout import fan_out, split_outcomes
from .fetcher import PerChainFetcher, candidate_ids
from .merger import MultiChainMerger, encode_chain_cursor, parse_chain_cursor, parse_offset_cursor, sort_agents
from .models import (
    AgentRecord,
    ChainStatus,
    FeedbackRecord,
    ReputationSummary,
    SearchFilters,
    SearchMeta,
    SearchOptions,
    SearchResult,
)
from .prefilter import FEEDBACK_PAGE_SIZE, MetadataPrefilter, PrefilterEngine, scan_pages
from .semantic import SemanticSearchGateway
from .sources import build_sources
from .sources.base import DataSourceClient
from .utils import format_agent_id, intersect_ids, parse_agent_id

logger = logging.getLogger(__name__)


class SearchEngine:
    """
    Multi-chain agent discovery.

    Args:
        config: Engine configuration
        sources: Data source per chain id; built from ``config`` when omitted
        semantic: Ranking gateway; built from ``config`` when omitted
        http_client: Shared ``httpx.AsyncClient`` for the built clients (caller owns it)
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        sources: Optional[Mapping[int, DataSourceClient]] = None,
        semantic: Optional[SemanticSearchGateway] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.sources: Dict[int, DataSourceClient] = (
            dict(sources) if sources is not None else build_sources(config, http_client)
        )
        self.semantic = semantic or SemanticSearchGateway(
            config.semanticSearchUrl,
            timeout_seconds=config.semanticTimeout,
            http_client=http_client,
        )
        self.compiler = FilterCompiler(config)
        self.prefilter = PrefilterEngine(self.sources, chain_timeout=config.chainTimeout)
        self.fetcher = PerChainFetcher(self.compiler, self.sources)

    async def __aenter__(self) -> "SearchEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for source in self.sources.values():
            await source.aclose()
        await self.semantic.aclose()

    # ------------------------------------------------------------------
    # search
    # ------------------------------------------------------------------

    async def search_agents(
        self,
        filters: Optional[SearchFilters] = None,
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        """
        Search agents across chains.

        Args:
            filters: Structured filters and optional keyword
            options: Sort, page size and cursor

        Returns:
            SearchResult with per-chain status in ``meta``

        Raises:
            ValidationError: Invalid filters (raised before any network call)
            SemanticSearchError: The ranking service failed on a keyword search
        """
        filters = filters or SearchFilters()
        options = options or SearchOptions()
        started = time.perf_counter()

        compiled = self.compiler.compile(filters, options)
        if compiled.keyword is not None:
            items, next_cursor, total, failures = await self._search_keyword(filters, options, compiled)
        else:
            items, next_cursor, total, failures = await self._search_structured(filters, options, compiled)

        failed_ids = {f.chainId for f in failures}
        if compiled.chains and len(failed_ids) == len(compiled.chains):
            logger.warning("All %d searched chains failed", len(compiled.chains))

        meta = SearchMeta(
            chains=list(compiled.chains),
            successfulChains=[c for c in compiled.chains if c not in failed_ids],
            failedChains=sorted(failures, key=lambda f: compiled.chains.index(f.chainId)),
            totalResults=total,
            timing={"totalMs": round((time.perf_counter() - started) * 1000, 2)},
        )
        return SearchResult(items=items, nextCursor=next_cursor, meta=meta)

    async def _search_structured(self, filters: SearchFilters, options: SearchOptions, compiled: CompiledSearch):
        chains = compiled.chains
        page_size = int(options.pageSize)
        skips = parse_chain_cursor(options.cursor, chains)
        failures: Dict[int, ChainStatus] = {}

        metadata = MetadataPrefilter(None)
        if compiled.needs_metadata:
            metadata = await self.prefilter.metadata(filters, chains)
            failures.update((f.chainId, f) for f in metadata.failures)

        live = [c for c in chains if c not in failures]
        candidates: Optional[Dict[int, List[str]]] = None
        if compiled.ids_by_chain is not None or metadata.ids_by_chain is not None:
            candidates = {c: candidate_ids(compiled.ids_by_chain, metadata.ids_by_chain, chain_id=c) for c in live}

        feedback = await self.prefilter.feedback(filters, live, candidates)
        failures.update((f.chainId, f) for f in feedback.failures)
        live = [c for c in live if c not in failures]
        stats = feedback.stats if feedback.ids_by_chain is not None else None

        id_sets = (compiled.ids_by_chain, metadata.ids_by_chain, feedback.ids_by_chain)
        constrained = any(s is not None for s in id_sets)

        async def fetch(chain_id: int):
            ids = candidate_ids(*id_sets, chain_id=chain_id)
            return await self.fetcher.fetch_page(
                chain_id, filters, compiled, ids, skips[chain_id], page_size, stats
            )

        ok, failed = split_outcomes(await fan_out(live, fetch, self.config.chainTimeout))
        failures.update((f.chainId, f) for f in failed)

        # without an allow-list computed fields are unknown and rows arrive in backend order
        merge_field = compiled.sort_field if constrained or not compiled.local_sort else compiled.order_by
        merger = MultiChainMerger(merge_field, compiled.sort_direction, page_size)
        page = merger.merge({o.chainId: o.value.agents for o in ok}, skips)

        next_cursor = encode_chain_cursor(page.next_skips) if page.has_more else None
        return page.items, next_cursor, len(page.items), list(failures.values())

    async def _search_keyword(self, filters: SearchFilters, options: SearchOptions, compiled: CompiledSearch):
        chains = compiled.chains
        hits = await self.semantic.search(
            compiled.keyword,
            min_score=options.semanticMinScore,
            top_k=options.semanticTopK,
        )

        ids_by_chain: Dict[int, List[str]] = {c: [] for c in chains}
        scores: Dict[str, float] = {}
        for hit in hits:
            if hit.chainId in ids_by_chain and hit.agentId not in scores:
                ids_by_chain[hit.chainId].append(hit.agentId)
                scores[hit.agentId] = hit.score
        if compiled.ids_by_chain is not None:
            ids_by_chain = {c: intersect_ids(ids, compiled.ids_by_chain.get(c, [])) for c, ids in ids_by_chain.items()}

        failures: Dict[int, ChainStatus] = {}
        ranked_chains = [c for c in chains if ids_by_chain.get(c)]

        metadata = MetadataPrefilter(None)
        if compiled.needs_metadata:
            metadata = await self.prefilter.metadata(filters, ranked_chains)
            failures.update((f.chainId, f) for f in metadata.failures)

        live = [c for c in chains if c not in failures]
        candidates = {c: candidate_ids(ids_by_chain, metadata.ids_by_chain, chain_id=c) for c in live}
        feedback = await self.prefilter.feedback(
            filters, [c for c in live if candidates.get(c)], candidates
        )
        failures.update((f.chainId, f) for f in feedback.failures)
        live = [c for c in live if c not in failures]
        stats = feedback.stats if feedback.ids_by_chain is not None else None

        async def hydrate(chain_id: int) -> List[AgentRecord]:
            source = self.fetcher.source(chain_id)
            ids = candidate_ids(ids_by_chain, metadata.ids_by_chain, feedback.ids_by_chain, chain_id=chain_id)
            if not ids:
                return []
            return await self.fetcher.hydrate(source, filters, ids, stats, scores)

        ok, failed = split_outcomes(await fan_out(live, hydrate, self.config.chainTimeout))
        failures.update((f.chainId, f) for f in failed)

        fetched: List[AgentRecord] = []
        for outcome in ok:
            fetched.extend(outcome.value)
        ordered = sort_agents(fetched, compiled.sort_field, compiled.sort_direction)

        offset = parse_offset_cursor(options.cursor)
        end = offset + int(options.pageSize)
        next_cursor = str(end) if end < len(ordered) else None
        return ordered[offset:end], next_cursor, len(ordered), list(failures.values())

    # ------------------------------------------------------------------
    # single-agent operations
    # ------------------------------------------------------------------

    def _route(self, agent_id: str):
        chain_id, token = parse_agent_id(agent_id)
        if chain_id is None:
            if self.config.defaultChainId is None:
                raise ValidationError(f"Agent id '{agent_id}' has no chain prefix and no default chain is configured")
            chain_id = self.config.defaultChainId
        source = self.sources.get(chain_id)
        if source is None:
            raise ChainNotConfiguredError(chain_id)
        return source, format_agent_id(chain_id, token)

    async def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        """Fetch one agent by composite id (a bare token id uses the default chain)."""
        source, composite = self._route(agent_id)
        return await source.get_agent(composite)

    async def search_feedback(
        self,
        agent_id: str,
        reviewers: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        include_revoked: bool = False,
        first: int = 100,
        skip: int = 0,
    ) -> List[FeedbackRecord]:
        source, composite = self._route(agent_id)
        return await source.search_feedback(
            agents=[composite],
            reviewers=reviewers,
            tags=tags,
            min_value=min_value,
            max_value=max_value,
            include_revoked=include_revoked,
            first=first,
            skip=skip,
        )

    async def get_reputation_summary(
        self,
        agent_id: str,
        tag1: Optional[str] = None,
        tag2: Optional[str] = None,
    ) -> ReputationSummary:
        """
        Count and average of an agent's non-revoked feedback.

        Args:
            agent_id: Composite agent id
            tag1: Only feedback with this tag1
            tag2: Only feedback with this tag2

        Returns:
            ReputationSummary (average 0.0 when there is no feedback)
        """
        source, composite = self._route(agent_id)
        where: Dict[str, object] = {"agent_in": [composite], "isRevoked": False}
        if tag1:
            where["tag1"] = tag1
        if tag2:
            where["tag2"] = tag2

        rows = await scan_pages(
            lambda first, skip: source.query_feedback(where, first, skip, "createdAt", "desc"),
            FEEDBACK_PAGE_SIZE,
            "reputation summary",
            source.chain_id,
        )
        count = len(rows)
        average = sum(r.value for r in rows) / count if count else 0.0
        return ReputationSummary(agentId=composite, count=count, averageValue=average)
