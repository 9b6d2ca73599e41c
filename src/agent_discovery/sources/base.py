"""
DataSourceClient: the seam between the search engine and one chain's backend.

Implementations answer three paged queries (agents, metadata rows, feedback
rows) with predicates written in the Graph filter dialect
(``field``, ``field_in``, ``field_not``, ``field_contains_nocase``,
``and`` / ``or`` lists). Pages must come back already sorted in the requested
order; the multi-chain merge relies on it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import AgentRecord, FeedbackRecord, MetadataRecord


class DataSourceClient(ABC):
    """Capability set shared by every backend. Call sites never branch on the concrete type."""

    chain_id: int

    @abstractmethod
    async def search_agents(
        self,
        where: Optional[Dict[str, Any]],
        first: int,
        skip: int = 0,
        order_by: str = "updatedAt",
        order_direction: str = "desc",
    ) -> List[AgentRecord]:
        """Return one ordered page of agents matching ``where``."""

    @abstractmethod
    async def query_metadata(self, where: Dict[str, Any], first: int, skip: int = 0) -> List[MetadataRecord]:
        """Return one page of on-chain metadata rows."""

    @abstractmethod
    async def query_feedback(
        self,
        where: Dict[str, Any],
        first: int,
        skip: int = 0,
        order_by: str = "createdAt",
        order_direction: str = "desc",
    ) -> List[FeedbackRecord]:
        """Return one ordered page of feedback rows."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        """Look up one agent by composite id; None when it does not exist on this chain."""

    async def search_feedback(
        self,
        agents: Optional[List[str]] = None,
        reviewers: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        include_revoked: bool = False,
        first: int = 100,
        skip: int = 0,
        order_by: str = "createdAt",
        order_direction: str = "desc",
    ) -> List[FeedbackRecord]:
        """
        Feedback search with named parameters.

        Args:
            agents: Composite agent ids
            reviewers: Reviewer addresses
            tags: Match when any tag equals tag1 or tag2
            min_value: Minimum decoded value
            max_value: Maximum decoded value
            include_revoked: Include revoked feedback
            first: Page size
            skip: Rows to skip

        Returns:
            Ordered page of FeedbackRecord
        """
        base: Dict[str, Any] = {}
        if agents:
            base["agent_in"] = list(agents)
        if reviewers:
            base["clientAddress_in"] = [str(a).lower() for a in reviewers]
        if not include_revoked:
            base["isRevoked"] = False
        if min_value is not None:
            base["value_gte"] = min_value
        if max_value is not None:
            base["value_lte"] = max_value

        where: Dict[str, Any] = base
        if tags:
            tag_match = [{"tag1": t} for t in tags] + [{"tag2": t} for t in tags]
            where = {"and": [base, {"or": tag_match}]}

        return await self.query_feedback(where, first, skip, order_by, order_direction)

    async def aclose(self) -> None:
        """Release network resources held by the client."""
