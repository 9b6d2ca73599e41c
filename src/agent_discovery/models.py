"""
Data models for agent discovery.

Field names follow the wire format of the indexing backends (camelCase) so
records and filters read the same in Python, GraphQL and JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

ChainId = int
AgentId = str
Timestamp = Union[int, float, str, datetime, date]

ChainSelector = Union[List[int], Literal["all"], None]
ChainStatusKind = Literal["success", "error", "timeout", "unavailable"]


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_tuple(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class AgentRecord:
    """
    Search-time projection of one agent on one chain.

    ``agentId`` is the composite id ``"chainId:tokenId"``. ``feedbackCount``,
    ``averageValue`` and ``semanticScore`` are computed per search; a record
    is never mutated, ``with_scores`` returns a new one.
    """

    chainId: int
    agentId: AgentId
    name: str
    description: str = ""
    image: Optional[str] = None
    owners: Tuple[str, ...] = ()
    operators: Tuple[str, ...] = ()
    web: Optional[str] = None
    mcp: Optional[str] = None
    a2a: Optional[str] = None
    email: Optional[str] = None
    ens: Optional[str] = None
    did: Optional[str] = None
    walletAddress: Optional[str] = None
    supportedTrusts: Tuple[str, ...] = ()
    a2aSkills: Tuple[str, ...] = ()
    mcpTools: Tuple[str, ...] = ()
    mcpPrompts: Tuple[str, ...] = ()
    mcpResources: Tuple[str, ...] = ()
    oasfSkills: Tuple[str, ...] = ()
    oasfDomains: Tuple[str, ...] = ()
    active: bool = False
    x402support: bool = False
    createdAt: Optional[int] = None
    updatedAt: Optional[int] = None
    lastActivity: Optional[int] = None
    agentURI: Optional[str] = None
    agentURIType: Optional[str] = None
    feedbackCount: Optional[int] = None
    averageValue: Optional[float] = None
    semanticScore: Optional[float] = None

    @property
    def tokenId(self) -> str:
        return self.agentId.split(":", 1)[-1]

    def with_scores(
        self,
        averageValue: Optional[float] = None,
        semanticScore: Optional[float] = None,
        feedbackCount: Optional[int] = None,
    ) -> "AgentRecord":
        """Return a copy carrying the given computed scores (None keeps the current value)."""
        changes: Dict[str, Any] = {}
        if feedbackCount is not None:
            changes["feedbackCount"] = int(feedbackCount)
        if averageValue is not None:
            changes["averageValue"] = float(averageValue)
        if semanticScore is not None:
            changes["semanticScore"] = float(semanticScore)
        return replace(self, **changes) if changes else self

    @classmethod
    def from_subgraph(cls, data: Dict[str, Any]) -> "AgentRecord":
        """Build a record from a subgraph ``Agent`` entity."""
        reg = data.get("registrationFile") or {}
        if not isinstance(reg, dict):
            reg = {}
        aid = str(data.get("id", ""))
        owner = data.get("owner")
        return cls(
            chainId=int(data.get("chainId") or aid.split(":", 1)[0] or 0),
            agentId=aid,
            name=reg.get("name") or aid,
            description=reg.get("description") or "",
            image=reg.get("image"),
            owners=(str(owner).lower(),) if owner else (),
            operators=tuple(str(op).lower() for op in data.get("operators") or []),
            web=reg.get("webEndpoint") or None,
            mcp=reg.get("mcpEndpoint") or None,
            a2a=reg.get("a2aEndpoint") or None,
            email=reg.get("emailEndpoint") or None,
            ens=reg.get("ens") or None,
            did=reg.get("did") or None,
            walletAddress=data.get("agentWallet") or None,
            supportedTrusts=_to_tuple(reg.get("supportedTrusts")),
            a2aSkills=_to_tuple(reg.get("a2aSkills")),
            mcpTools=_to_tuple(reg.get("mcpTools")),
            mcpPrompts=_to_tuple(reg.get("mcpPrompts")),
            mcpResources=_to_tuple(reg.get("mcpResources")),
            oasfSkills=_to_tuple(reg.get("oasfSkills")),
            oasfDomains=_to_tuple(reg.get("oasfDomains")),
            active=bool(reg.get("active", False)),
            # older deployments spell it x402support
            x402support=bool(reg.get("x402Support", reg.get("x402support", False))),
            createdAt=_to_int(data.get("createdAt")),
            updatedAt=_to_int(data.get("updatedAt")),
            lastActivity=_to_int(data.get("lastActivity")),
            agentURI=data.get("agentURI"),
            agentURIType=data.get("agentURIType"),
            feedbackCount=_to_int(data.get("totalFeedback")),
        )


@dataclass(frozen=True)
class FeedbackRecord:
    """
    One feedback entry.

    ``id`` is ``"chainId:tokenId:reviewer:feedbackIndex"``. For log-derived
    rows ``createdAt`` is the block number (an ordering proxy, not a unix
    timestamp) and ``hasResponse`` is None because responses are not visible
    in the registry's events.
    """

    id: str
    agentId: AgentId
    clientAddress: str
    value: float
    tag1: Optional[str] = None
    tag2: Optional[str] = None
    endpoint: Optional[str] = None
    isRevoked: bool = False
    createdAt: Optional[int] = None
    hasResponse: Optional[bool] = None

    @classmethod
    def from_subgraph(cls, data: Dict[str, Any]) -> "FeedbackRecord":
        agent = data.get("agent") or {}
        responses = data.get("responses")
        return cls(
            id=str(data.get("id", "")),
            agentId=str(agent.get("id", "")),
            clientAddress=str(data.get("clientAddress") or "").lower(),
            value=float(data.get("value") or 0),
            tag1=data.get("tag1") or None,
            tag2=data.get("tag2") or None,
            endpoint=data.get("endpoint") or None,
            isRevoked=bool(data.get("isRevoked", False)),
            createdAt=_to_int(data.get("createdAt")),
            hasResponse=bool(responses) if isinstance(responses, list) else None,
        )


@dataclass(frozen=True)
class MetadataRecord:
    id: str
    agentId: AgentId
    key: str
    value: Optional[str] = None
    updatedAt: Optional[int] = None

    @classmethod
    def from_subgraph(cls, data: Dict[str, Any]) -> "MetadataRecord":
        agent = data.get("agent") or {}
        return cls(
            id=str(data.get("id", "")),
            agentId=str(agent.get("id", "")),
            key=str(data.get("key", "")),
            value=data.get("value"),
            updatedAt=_to_int(data.get("updatedAt")),
        )


@dataclass
class FeedbackFilters:
    """
    Feedback sub-filter.

    Scope predicates (reviewers, tags, endpoint, response presence) select the
    feedback rows; threshold predicates (counts, average value) are evaluated
    over those rows only.
    """

    hasFeedback: bool = False
    hasNoFeedback: bool = False
    includeRevoked: bool = False
    minValue: Optional[float] = None
    maxValue: Optional[float] = None
    minCount: Optional[int] = None
    maxCount: Optional[int] = None
    fromReviewers: Optional[List[str]] = None
    endpoint: Optional[str] = None
    hasResponse: bool = False
    tag1: Optional[str] = None
    tag2: Optional[str] = None
    tag: Optional[str] = None

    def has_threshold(self) -> bool:
        return any(x is not None for x in (self.minCount, self.maxCount, self.minValue, self.maxValue))

    def has_scope(self) -> bool:
        return any(
            [
                bool(self.hasResponse),
                bool(self.fromReviewers),
                bool(self.endpoint),
                bool(self.tag),
                bool(self.tag1),
                bool(self.tag2),
            ]
        )

    def is_existence_only(self) -> bool:
        """True when hasFeedback/hasNoFeedback is the only active constraint."""
        return (self.hasFeedback or self.hasNoFeedback) and not self.has_threshold() and not self.has_scope()

    def is_active(self) -> bool:
        return self.hasFeedback or self.hasNoFeedback or self.has_threshold() or self.has_scope()


@dataclass
class SearchFilters:
    """Public filter object for ``SearchEngine.search_agents``."""

    chains: ChainSelector = None
    agentIds: Optional[List[str]] = None

    name: Optional[str] = None
    description: Optional[str] = None
    owners: Optional[List[str]] = None
    operators: Optional[List[str]] = None

    hasRegistrationFile: Optional[bool] = None
    hasWeb: Optional[bool] = None
    hasMCP: Optional[bool] = None
    hasA2A: Optional[bool] = None
    hasOASF: Optional[bool] = None
    hasEndpoints: Optional[bool] = None

    webContains: Optional[str] = None
    mcpContains: Optional[str] = None
    a2aContains: Optional[str] = None
    ensContains: Optional[str] = None
    didContains: Optional[str] = None
    walletAddress: Optional[str] = None

    supportedTrust: Optional[List[str]] = None
    a2aSkills: Optional[List[str]] = None
    mcpTools: Optional[List[str]] = None
    mcpPrompts: Optional[List[str]] = None
    mcpResources: Optional[List[str]] = None
    oasfSkills: Optional[List[str]] = None
    oasfDomains: Optional[List[str]] = None

    active: Optional[bool] = None
    x402support: Optional[bool] = None

    registeredAtFrom: Optional[Timestamp] = None
    registeredAtTo: Optional[Timestamp] = None
    updatedAtFrom: Optional[Timestamp] = None
    updatedAtTo: Optional[Timestamp] = None

    hasMetadataKey: Optional[str] = None
    metadataValue: Optional[Dict[str, str]] = None

    keyword: Optional[str] = None
    feedback: Optional[FeedbackFilters] = None

    def metadata_key(self) -> Optional[str]:
        if self.hasMetadataKey:
            return self.hasMetadataKey
        if isinstance(self.metadataValue, dict):
            return self.metadataValue.get("key") or None
        return None

    def keyword_text(self) -> Optional[str]:
        if self.keyword and str(self.keyword).strip():
            return str(self.keyword).strip()
        return None


@dataclass
class SearchOptions:
    sort: Optional[List[str]] = None
    pageSize: int = 50
    cursor: Optional[str] = None
    semanticMinScore: Optional[float] = None
    semanticTopK: Optional[int] = None


@dataclass(frozen=True)
class ChainStatus:
    chainId: int
    status: ChainStatusKind
    error: Optional[str] = None


@dataclass(frozen=True)
class SearchMeta:
    chains: List[int]
    successfulChains: List[int]
    failedChains: List[ChainStatus]
    totalResults: int
    timing: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchResult:
    items: List[AgentRecord]
    nextCursor: Optional[str]
    meta: SearchMeta


@dataclass(frozen=True)
class ReputationSummary:
    agentId: AgentId
    count: int
    averageValue: float
