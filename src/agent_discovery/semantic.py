"""
Semantic Search Gateway

Thin client for the external ranking service used by keyword searches.
One POST per search: ``{query, minScore, limit}`` in, a ranked list of
``{chainId, agentId, score}`` out. The service is not paginated.

Example:
    >>> gateway = SemanticSearchGateway("https://semantic-search.ag0.xyz")
    >>> hits = await gateway.search("crypto price oracle", min_score=0.6)
    >>> hits[0].agentId
    '8453:12'
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from .config import DEFAULT_SEMANTIC_SEARCH_URL
from .exceptions import SemanticSearchError

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.5
DEFAULT_TOP_K = 5000


@dataclass(frozen=True)
class SemanticHit:
    chainId: int
    agentId: str
    score: float


class SemanticSearchGateway:
    """
    Ranking client for keyword searches.

    Args:
        base_url: Service base URL
        timeout_seconds: Request timeout
        http_client: Optional shared ``httpx.AsyncClient`` (not closed by ``aclose``)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_SEMANTIC_SEARCH_URL,
        timeout_seconds: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = http_client
        self._owns_client = http_client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def search(
        self,
        query: str,
        *,
        min_score: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[SemanticHit]:
        """
        Rank agents for a free-text query.

        Args:
            query: Free text
            min_score: Minimum relevance score (default 0.5)
            top_k: Maximum number of hits (default 5000)

        Returns:
            Hits in service order (best first)

        Raises:
            SemanticSearchError: Transport failure or non-2xx response
        """
        q = (query or "").strip()
        if not q:
            return []

        payload = {
            "query": q,
            "minScore": DEFAULT_MIN_SCORE if min_score is None else min_score,
            "limit": DEFAULT_TOP_K if top_k is None else top_k,
        }
        url = f"{self.base_url}/api/v1/search"
        try:
            resp = await self._http().post(url, json=payload, timeout=self.timeout_seconds)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            raise SemanticSearchError(
                f"Semantic search returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise SemanticSearchError(f"Semantic search request failed: {e}") from e
        except ValueError as e:
            raise SemanticSearchError("Semantic search returned invalid JSON") from e

        hits = self._parse_hits(body)
        logger.debug("Semantic search %r returned %d hits", q, len(hits))
        return hits

    @staticmethod
    def _parse_hits(body: Any) -> List[SemanticHit]:
        results = body.get("results") if isinstance(body, dict) else body
        if not isinstance(results, list):
            return []

        hits: List[SemanticHit] = []
        for r in results:
            if not isinstance(r, dict):
                continue
            agent_id = r.get("agentId")
            if not isinstance(agent_id, str) or ":" not in agent_id:
                continue
            try:
                chain_id = int(r["chainId"]) if r.get("chainId") is not None else int(agent_id.split(":", 1)[0])
                score = float(r.get("score") or 0.0)
            except (TypeError, ValueError):
                continue
            hits.append(SemanticHit(chainId=chain_id, agentId=agent_id, score=score))
        return hits
