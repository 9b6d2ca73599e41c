"""
Per-chain fetch of one page of agents.

The compiled where-predicate is combined with the chain's candidate ids
(agentIds AND metadata prefilter AND feedback prefilter) and sent to the
chain's data source. Scope-matching feedback counts and averages and semantic
scores are attached to the returned records.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from .compiler import CompiledSearch, FilterCompiler
from .exceptions import ChainNotConfiguredError
from .merger import sort_agents
from .models import AgentRecord, SearchFilters
from .prefilter import FeedbackStats
from .sources.base import DataSourceClient
from .utils import intersect_ids

logger = logging.getLogger(__name__)

HYDRATE_CHUNK_SIZE = 500


@dataclass(frozen=True)
class ChainPage:
    chainId: int
    agents: List[AgentRecord]
    skip: int


class PerChainFetcher:
    def __init__(self, compiler: FilterCompiler, sources: Mapping[int, DataSourceClient]):
        self.compiler = compiler
        self.sources = sources

    def source(self, chain_id: int) -> DataSourceClient:
        source = self.sources.get(chain_id)
        if source is None:
            raise ChainNotConfiguredError(chain_id)
        return source

    async def fetch_page(
        self,
        chain_id: int,
        filters: SearchFilters,
        compiled: CompiledSearch,
        ids: Optional[List[str]],
        skip: int,
        page_size: int,
        stats: Optional[Mapping[str, FeedbackStats]] = None,
    ) -> ChainPage:
        """
        Fetch ``page_size + 1`` sorted rows starting at ``skip``.

        When the sort field is computed and an allow-list exists, the whole
        allow-list is hydrated and ordered locally so the page is still sorted
        by the requested field.
        """
        source = self.source(chain_id)
        if ids is not None and not ids:
            return ChainPage(chain_id, [], skip)

        if compiled.local_sort and ids is not None:
            agents = await self.hydrate(source, filters, ids, stats)
            ordered = sort_agents(agents, compiled.sort_field, compiled.sort_direction)
            return ChainPage(chain_id, ordered[skip : skip + page_size + 1], skip)

        where = self.compiler.build_where(filters, ids)
        rows = await source.search_agents(
            where,
            first=page_size + 1,
            skip=skip,
            order_by=compiled.order_by,
            order_direction=compiled.sort_direction,
        )
        return ChainPage(chain_id, [_with_computed(a, stats, None) for a in rows], skip)

    async def hydrate(
        self,
        source: DataSourceClient,
        filters: SearchFilters,
        ids: List[str],
        stats: Optional[Mapping[str, FeedbackStats]] = None,
        scores: Optional[Mapping[str, float]] = None,
    ) -> List[AgentRecord]:
        """Load full records for ``ids`` in chunks, applying the remaining filters."""
        out: List[AgentRecord] = []
        for i in range(0, len(ids), HYDRATE_CHUNK_SIZE):
            chunk = ids[i : i + HYDRATE_CHUNK_SIZE]
            where = self.compiler.build_where(filters, chunk)
            rows = await source.search_agents(where, first=len(chunk), skip=0, order_by="updatedAt", order_direction="desc")
            out.extend(_with_computed(a, stats, scores) for a in rows)
        logger.debug("Chain %s: hydrated %d of %d ids", source.chain_id, len(out), len(ids))
        return out


def _with_computed(
    agent: AgentRecord,
    stats: Optional[Mapping[str, FeedbackStats]],
    scores: Optional[Mapping[str, float]],
) -> AgentRecord:
    # stats is None when no feedback scan ran; otherwise an absent id matched zero rows
    st = stats.get(agent.agentId) if stats is not None else None
    count = (st.count if st else 0) if stats is not None else None
    score = scores.get(agent.agentId) if scores else None
    return agent.with_scores(averageValue=st.average if st else None, semanticScore=score, feedbackCount=count)


def candidate_ids(*id_sets: Optional[Dict[int, List[str]]], chain_id: int) -> Optional[List[str]]:
    """AND several optional per-chain allow-lists for one chain."""
    result: Optional[List[str]] = None
    for id_set in id_sets:
        if id_set is None:
            continue
        result = intersect_ids(result, id_set.get(chain_id, []))
    return result
