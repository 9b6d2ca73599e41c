"""
Subgraph client for querying The Graph network.

Queries are rendered from field lists rather than hand-written strings so
that the rename map below can rewrite both the selection set and the
``where`` variables when an older deployment does not know a field.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from ..exceptions import (
    NetworkError,
    QueryError,
    RequestTimeoutError,
    SchemaCompatibilityError,
    SerializationError,
)
from ..models import AgentRecord, FeedbackRecord, MetadataRecord
from ..retry import DEFAULT_RETRY_CONFIG, RetryConfig, retry_async
from .base import DataSourceClient

logger = logging.getLogger(__name__)

Field = Union[str, Tuple[str, "Sequence[Field]"]]


@dataclass(frozen=True)
class FieldRename:
    """
    One schema-compatibility rewrite.

    Attributes:
        field: Name used by current deployments
        replacement: Name used by older deployments; None drops the field
            from the selection set, and a where-clause filter on it fails
            without a retry
        existence_filter: The field is a boolean filter that older
            deployments express as a null check on ``replacement``
    """

    field: str
    replacement: Optional[str]
    existence_filter: bool = False


FIELD_RENAMES: Tuple[FieldRename, ...] = (
    # Feedback responses: responseURI was responseUri before the URI casing change.
    FieldRename("responseURI", "responseUri"),
    # Registration files: x402Support was x402support.
    FieldRename("x402Support", "x402support"),
    # Registration files: the derived hasOASF flag is missing; fall back to oasfEndpoint presence.
    FieldRename("hasOASF", "oasfEndpoint", existence_filter=True),
    # Metadata collection: older hosted deployments expose agentMetadata_collection.
    FieldRename("agentMetadatas", "agentMetadata_collection"),
    # Agent wallet binding is not indexed everywhere.
    FieldRename("agentWallet", None),
    # Feedback endpoint became an on-chain field in the Jan 2026 registries.
    FieldRename("endpoint", None),
)
"""Ordered rename map; the first entry named by the error is applied, once."""

_SCHEMA_ERROR_MARKERS = ("has no field", "Cannot query field", "Unknown field", "unknown field", "has invalid value")

AGENT_FIELDS: Tuple[Field, ...] = (
    "id",
    "chainId",
    "agentId",
    "agentURI",
    "agentURIType",
    "owner",
    "operators",
    "agentWallet",
    "totalFeedback",
    "createdAt",
    "updatedAt",
    "lastActivity",
    (
        "registrationFile",
        (
            "id",
            "name",
            "description",
            "image",
            "active",
            "x402Support",
            "supportedTrusts",
            "mcpEndpoint",
            "mcpVersion",
            "a2aEndpoint",
            "a2aVersion",
            "webEndpoint",
            "emailEndpoint",
            "hasOASF",
            "oasfSkills",
            "oasfDomains",
            "ens",
            "did",
            "mcpTools",
            "mcpPrompts",
            "mcpResources",
            "a2aSkills",
            "createdAt",
        ),
    ),
)

FEEDBACK_FIELDS: Tuple[Field, ...] = (
    "id",
    ("agent", ("id",)),
    "clientAddress",
    "value",
    "tag1",
    "tag2",
    "endpoint",
    "isRevoked",
    "createdAt",
    ("responses(first: 1)", ("id",)),
)

METADATA_FIELDS: Tuple[Field, ...] = ("id", "key", "value", "updatedAt", ("agent", ("id",)))


def _base_name(name: str) -> str:
    return name.split("(", 1)[0].strip()


def render_selection(fields: Sequence[Field], indent: int = 2) -> str:
    pad = "  " * indent
    lines = []
    for f in fields:
        if isinstance(f, tuple):
            name, sub = f
            lines.append(f"{pad}{name} {{\n{render_selection(sub, indent + 1)}\n{pad}}}")
        else:
            lines.append(f"{pad}{f}")
    return "\n".join(lines)


def _selection_has(fields: Sequence[Field], name: str) -> bool:
    for f in fields:
        if isinstance(f, tuple):
            if _base_name(f[0]) == name or _selection_has(f[1], name):
                return True
        elif f == name:
            return True
    return False


def _rename_selection(fields: Sequence[Field], rename: FieldRename) -> Tuple[Field, ...]:
    out: List[Field] = []
    for f in fields:
        if isinstance(f, tuple):
            out.append((f[0], _rename_selection(f[1], rename)))
        elif f == rename.field:
            if rename.replacement is not None and not rename.existence_filter:
                out.append(rename.replacement)
        else:
            out.append(f)
    return tuple(out)


def _where_has(node: Any, name: str) -> bool:
    if isinstance(node, list):
        return any(_where_has(x, name) for x in node)
    if isinstance(node, dict):
        for k, v in node.items():
            if k == name or k.startswith(name + "_") or _where_has(v, name):
                return True
    return False


def _rename_where(node: Any, rename: FieldRename) -> Any:
    if isinstance(node, list):
        return [_rename_where(x, rename) for x in node]
    if not isinstance(node, dict):
        return node
    out: Dict[str, Any] = {}
    for k, v in node.items():
        if rename.replacement is None or not (k == rename.field or k.startswith(rename.field + "_")):
            out[k] = _rename_where(v, rename)
        elif rename.existence_filter and k == rename.field:
            out[f"{rename.replacement}_not" if bool(v) else rename.replacement] = None
        else:
            out[rename.replacement + k[len(rename.field):]] = _rename_where(v, rename)
    return out


def find_rename(message: str, fields: Sequence[Field], where: Any, root: str) -> Optional[FieldRename]:
    """Pick the rename entry named by a schema error, if it applies to this query."""
    if not any(marker in message for marker in _SCHEMA_ERROR_MARKERS):
        return None
    for rename in FIELD_RENAMES:
        if not re.search(rf"(?<![A-Za-z0-9_]){re.escape(rename.field)}(?![A-Za-z0-9])", message):
            continue
        if root == rename.field or _selection_has(fields, rename.field) or _where_has(where, rename.field):
            return rename
    return None


def _stringify_numbers(where: Any) -> Any:
    # BigInt/BigDecimal filters are sent as strings
    if isinstance(where, list):
        return [_stringify_numbers(x) for x in where]
    if isinstance(where, dict):
        return {
            k: (str(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else _stringify_numbers(v))
            for k, v in where.items()
        }
    return where


class SubgraphClient(DataSourceClient):
    """Client for one chain's subgraph GraphQL API."""

    def __init__(
        self,
        chain_id: int,
        subgraph_url: str,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.chain_id = int(chain_id)
        self.subgraph_url = subgraph_url
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._post = retry_async(
            config=retry_config or DEFAULT_RETRY_CONFIG,
            operation_name=f"subgraph_post[{self.chain_id}]",
        )(self._post_once)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post_once(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._http().post(
                self.subgraph_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError("subgraph_query", self.timeout) from e
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise SerializationError(f"subgraph {self.chain_id} returned a non-JSON body") from e

    async def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL query against the subgraph.

        Args:
            query: GraphQL query string
            variables: Optional variables for the query

        Returns:
            The ``data`` object of the response

        Raises:
            QueryError: The response carries GraphQL errors
            NetworkError: Transport failure or non-2xx status
            SerializationError: The response body is not JSON
        """
        try:
            result = await self._post({"query": query, "variables": variables or {}})
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Subgraph returned HTTP {e.response.status_code}",
                details={"chain_id": self.chain_id},
            ) from e
        if not isinstance(result, dict):
            raise QueryError(["Malformed GraphQL response"])
        if result.get("errors"):
            raise QueryError([str(err.get("message", "Unknown error")) for err in result["errors"]])
        return result.get("data") or {}

    async def _collection(
        self,
        operation: str,
        root: str,
        entity: str,
        fields: Sequence[Field],
        variables: Dict[str, Any],
        ordered: bool = True,
    ) -> List[Dict[str, Any]]:
        """Run a collection query, applying at most one rename-and-retry pass."""
        try:
            return await self._run_collection(operation, root, entity, fields, variables, ordered)
        except QueryError as e:
            rename = find_rename(str(e), fields, variables.get("where"), root)
            if rename is None:
                raise
            if rename.replacement is None and _where_has(variables.get("where"), rename.field):
                # dropping the predicate would widen the result, so there is nothing to retry
                raise SchemaCompatibilityError(rename.field, "filtered on a field this deployment does not index") from e
            logger.debug(
                "Subgraph %s rejected '%s'; retrying with '%s'",
                self.chain_id,
                rename.field,
                rename.replacement,
            )
            root2 = rename.replacement if root == rename.field and rename.replacement else root
            fields2 = _rename_selection(fields, rename)
            variables2 = dict(variables)
            if variables.get("where") is not None:
                variables2["where"] = _rename_where(variables["where"], rename)
            try:
                return await self._run_collection(operation, root2, entity, fields2, variables2, ordered)
            except QueryError as e2:
                raise SchemaCompatibilityError(rename.field, str(e2)) from e2

    async def _run_collection(
        self,
        operation: str,
        root: str,
        entity: str,
        fields: Sequence[Field],
        variables: Dict[str, Any],
        ordered: bool,
    ) -> List[Dict[str, Any]]:
        if ordered:
            signature = (
                f"$where: {entity}_filter, $first: Int!, $skip: Int!, "
                f"$orderBy: {entity}_orderBy, $orderDirection: OrderDirection"
            )
            arguments = "where: $where, first: $first, skip: $skip, orderBy: $orderBy, orderDirection: $orderDirection"
        else:
            signature = f"$where: {entity}_filter, $first: Int!, $skip: Int!"
            arguments = "where: $where, first: $first, skip: $skip"
        query = (
            f"query {operation}({signature}) {{\n"
            f"  {root}({arguments}) {{\n{render_selection(fields)}\n  }}\n}}"
        )
        data = await self.query(query, variables)
        rows = data.get(root)
        return rows if isinstance(rows, list) else []

    async def search_agents(
        self,
        where: Optional[Dict[str, Any]],
        first: int,
        skip: int = 0,
        order_by: str = "updatedAt",
        order_direction: str = "desc",
    ) -> List[AgentRecord]:
        rows = await self._collection(
            "SearchAgents",
            "agents",
            "Agent",
            AGENT_FIELDS,
            {
                "where": _stringify_numbers(where) if where else None,
                "first": int(first),
                "skip": int(skip),
                "orderBy": order_by,
                "orderDirection": order_direction,
            },
        )
        return [AgentRecord.from_subgraph(r) for r in rows]

    async def query_metadata(self, where: Dict[str, Any], first: int, skip: int = 0) -> List[MetadataRecord]:
        rows = await self._collection(
            "AgentMetadatas",
            "agentMetadatas",
            "AgentMetadata",
            METADATA_FIELDS,
            {"where": where, "first": int(first), "skip": int(skip)},
            ordered=False,
        )
        return [MetadataRecord.from_subgraph(r) for r in rows]

    async def query_feedback(
        self,
        where: Dict[str, Any],
        first: int,
        skip: int = 0,
        order_by: str = "createdAt",
        order_direction: str = "desc",
    ) -> List[FeedbackRecord]:
        rows = await self._collection(
            "Feedbacks",
            "feedbacks",
            "Feedback",
            FEEDBACK_FIELDS,
            {
                "where": _stringify_numbers(where),
                "first": int(first),
                "skip": int(skip),
                "orderBy": order_by,
                "orderDirection": order_direction,
            },
        )
        return [FeedbackRecord.from_subgraph(r) for r in rows]

    async def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        rows = await self.search_agents({"id": str(agent_id)}, first=1)
        return rows[0] if rows else None
