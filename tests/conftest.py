"""In-memory data sources shared by the engine, prefilter and fetcher tests."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from agent_discovery.merger import sort_agents
from agent_discovery.models import AgentRecord, FeedbackRecord, MetadataRecord
from agent_discovery.sources.base import DataSourceClient


def make_agent(chain_id: int, token: int, **kwargs) -> AgentRecord:
    kwargs.setdefault("name", f"agent-{chain_id}-{token}")
    kwargs.setdefault("updatedAt", 1_700_000_000 + token)
    kwargs.setdefault("createdAt", 1_600_000_000 + token)
    return AgentRecord(chainId=chain_id, agentId=f"{chain_id}:{token}", **kwargs)


def make_feedback(agent_id: str, index: int, value: float, **kwargs) -> FeedbackRecord:
    client = kwargs.pop("clientAddress", "0xabc")
    kwargs.setdefault("createdAt", 1_700_000_000 + index)
    return FeedbackRecord(
        id=f"{agent_id}:{client}:{index}",
        agentId=agent_id,
        clientAddress=client,
        value=value,
        **kwargs,
    )


def _match_feedback(row: FeedbackRecord, where: Dict[str, Any]) -> bool:
    for key, expected in where.items():
        if key == "and":
            if not all(_match_feedback(row, w) for w in expected):
                return False
        elif key == "or":
            if not any(_match_feedback(row, w) for w in expected):
                return False
        elif key == "agent_in":
            if row.agentId not in expected:
                return False
        elif key == "clientAddress_in":
            if row.clientAddress not in expected:
                return False
        elif key == "endpoint_contains_nocase":
            if expected.lower() not in (row.endpoint or "").lower():
                return False
        elif key == "value_gte":
            if row.value < expected:
                return False
        elif key == "value_lte":
            if row.value > expected:
                return False
        elif getattr(row, key) != expected:
            return False
    return True


def _agent_ids_in(where: Optional[Dict[str, Any]]) -> Optional[List[str]]:
    if not where:
        return None
    if "and" in where:
        for part in where["and"]:
            ids = _agent_ids_in(part)
            if ids is not None:
                return ids
        return None
    if "id_in" in where:
        return list(where["id_in"])
    if "id" in where:
        return [where["id"]]
    return None


class FakeSource(DataSourceClient):
    """
    DataSourceClient over in-memory rows.

    Agent predicates are honoured for ``id_in`` / ``id`` only; every call is
    recorded in ``calls``.
    """

    def __init__(
        self,
        chain_id: int,
        agents: Optional[List[AgentRecord]] = None,
        feedback: Optional[List[FeedbackRecord]] = None,
        metadata: Optional[List[MetadataRecord]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.chain_id = chain_id
        self.agents = list(agents or [])
        self.feedback = list(feedback or [])
        self.metadata = list(metadata or [])
        self.delay = delay
        self.error = error
        self.calls: List[tuple] = []
        self.closed = False

    async def _io(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def search_agents(self, where, first, skip=0, order_by="updatedAt", order_direction="desc"):
        self.calls.append(("search_agents", where, first, skip, order_by, order_direction))
        await self._io()
        ids = _agent_ids_in(where)
        rows = [a for a in self.agents if ids is None or a.agentId in ids]
        field = "name" if order_by == "registrationFile__name" else order_by
        rows = sort_agents(rows, field, order_direction)
        return rows[skip : skip + first]

    async def query_metadata(self, where, first, skip=0):
        self.calls.append(("query_metadata", where, first, skip))
        await self._io()
        rows = [
            m
            for m in self.metadata
            if m.key == where.get("key") and ("value" not in where or m.value == where["value"])
        ]
        return rows[skip : skip + first]

    async def query_feedback(self, where, first, skip=0, order_by="createdAt", order_direction="desc"):
        self.calls.append(("query_feedback", where, first, skip, order_by, order_direction))
        await self._io()
        rows = [r for r in self.feedback if _match_feedback(r, where)]
        rows.sort(key=lambda r: getattr(r, order_by) or 0, reverse=order_direction == "desc")
        return rows[skip : skip + first]

    async def get_agent(self, agent_id):
        self.calls.append(("get_agent", agent_id))
        await self._io()
        for a in self.agents:
            if a.agentId == agent_id:
                return a
        return None

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_source():
    return FakeSource
