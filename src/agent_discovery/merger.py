"""
Multi-Chain Merger

K-way merge of per-chain sorted pages into one globally ordered page, plus
the cursor helpers. The multi-chain cursor is a JSON object mapping chain id
to the cumulative number of rows consumed from that chain, so every page can
be resumed without server-side state.

Cursor format:
    structured path: '{"1":50,"8453":0}'
    keyword path:    '100'
"""

from __future__ import annotations

import heapq
import json
import logging
from dataclasses import dataclass
from functools import cmp_to_key
from itertools import islice
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import AgentRecord

logger = logging.getLogger(__name__)

_NUMERIC_FIELDS = (
    "createdAt",
    "updatedAt",
    "lastActivity",
    "chainId",
    "feedbackCount",
    "averageValue",
    "semanticScore",
)


def _sort_value(agent: AgentRecord, field: str) -> Any:
    if field == "name":
        # code-point order, matching the byte order the subgraph database sorts by
        return agent.name or ""
    if field == "totalFeedback":
        field = "feedbackCount"
    if field not in _NUMERIC_FIELDS:
        field = "updatedAt"
    v = getattr(agent, field, None)
    if v is None:
        return 0.0
    try:
        return float(v)
    except (TypeError, ValueError):
        return 0.0


def _token_key(agent: AgentRecord) -> Tuple[int, Any]:
    token = agent.tokenId
    try:
        return agent.chainId, (0, int(token))
    except ValueError:
        return agent.chainId, (1, token)


def compare_agents(a: AgentRecord, b: AgentRecord, field: str, direction: str) -> int:
    """
    Three-way comparison for the requested order.

    Missing values compare as 0. Ties fall back to ascending
    ``(chainId, tokenId)`` regardless of direction so the order is total.
    """
    va, vb = _sort_value(a, field), _sort_value(b, field)
    if va != vb:
        result = -1 if va < vb else 1
        return -result if direction == "desc" else result
    ta, tb = _token_key(a), _token_key(b)
    if ta == tb:
        return 0
    return -1 if ta < tb else 1


def sort_agents(agents: Iterable[AgentRecord], field: str, direction: str) -> List[AgentRecord]:
    return sorted(agents, key=cmp_to_key(lambda a, b: compare_agents(a, b, field, direction)))


# ----------------------------------------------------------------------
# cursors
# ----------------------------------------------------------------------


def parse_chain_cursor(cursor: Optional[str], chains: Sequence[int]) -> Dict[int, int]:
    """
    Decode a multi-chain cursor into per-chain skips.

    Unknown chains are ignored; missing chains start at 0. A bare number is
    accepted as a plain skip only when exactly one chain is searched.
    Anything malformed decodes to all zeros.
    """
    skips = {c: 0 for c in chains}
    if not cursor:
        return skips
    try:
        data = json.loads(cursor)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable cursor %r", cursor)
        return skips

    if isinstance(data, bool):
        return skips
    if isinstance(data, int):
        if len(chains) == 1 and data >= 0:
            skips[chains[0]] = data
        return skips
    if not isinstance(data, dict):
        return skips

    for key, value in data.items():
        try:
            chain_id = int(key)
        except (TypeError, ValueError):
            continue
        if chain_id not in skips or isinstance(value, bool):
            continue
        try:
            n = int(value)
        except (TypeError, ValueError):
            continue
        if n >= 0:
            skips[chain_id] = n
    return skips


def encode_chain_cursor(skips: Mapping[int, int]) -> str:
    return json.dumps({str(c): int(skips[c]) for c in sorted(skips)}, separators=(",", ":"))


def parse_offset_cursor(cursor: Optional[str]) -> int:
    """Decode the keyword-path cursor (a plain offset); malformed input gives 0."""
    if not cursor:
        return 0
    try:
        n = int(str(cursor).strip())
    except ValueError:
        return 0
    return n if n >= 0 else 0


# ----------------------------------------------------------------------
# merge
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class MergedPage:
    items: List[AgentRecord]
    has_more: bool
    next_skips: Dict[int, int]


class MultiChainMerger:
    """
    Merge per-chain pages fetched with ``first = page_size + 1``.

    The extra probe row tells whether a chain has more rows without another
    round trip; it is never emitted but keeps ``has_more`` true.
    """

    def __init__(self, field: str, direction: str, page_size: int):
        self.field = field
        self.direction = direction
        self.page_size = page_size

    def _key(self):
        field, direction = self.field, self.direction
        return cmp_to_key(lambda x, y: compare_agents(x[1], y[1], field, direction))

    def merge(
        self,
        pages: Mapping[int, List[AgentRecord]],
        skips: Mapping[int, int],
    ) -> MergedPage:
        """
        Args:
            pages: Sorted rows per successful chain
            skips: Skips the pages were fetched at, for every searched chain

        Returns:
            MergedPage with cumulative per-chain skips for the next call
        """
        streams = [[(chain_id, agent) for agent in rows] for chain_id, rows in pages.items()]
        merged = list(islice(heapq.merge(*streams, key=self._key()), self.page_size))

        consumed: Dict[int, int] = {c: 0 for c in pages}
        for chain_id, _ in merged:
            consumed[chain_id] += 1

        has_more = any(len(rows) > consumed[c] for c, rows in pages.items())
        next_skips = {c: int(skips.get(c, 0)) + consumed.get(c, 0) for c in skips}
        return MergedPage(items=[agent for _, agent in merged], has_more=has_more, next_skips=next_skips)
