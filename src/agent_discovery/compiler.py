"""
Filter Compiler

Turns the public ``SearchFilters`` / ``SearchOptions`` pair into:

- the resolved chain list
- the per-chain id allow-lists coming from ``agentIds``
- the sort decision (backend ``orderBy`` plus whether the order is computed locally)
- the per-chain where-predicate in the Graph filter dialect

All validation happens here, before any network call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .config import DiscoveryConfig
from .exceptions import AmbiguousAgentIdError, MissingCandidateSetError, ValidationError
from .models import SearchFilters, SearchOptions
from .utils import dedupe, parse_agent_id, to_unix_seconds

logger = logging.getLogger(__name__)

BACKEND_ORDER_FIELDS = ("createdAt", "updatedAt", "lastActivity", "chainId", "totalFeedback")
COMPUTED_SORT_FIELDS = ("averageValue", "semanticScore")
# replaced by the scope-matching count whenever a feedback scan runs
FEEDBACK_COUNT_FIELDS = ("feedbackCount", "totalFeedback")
SORT_FIELDS = BACKEND_ORDER_FIELDS + ("name", "feedbackCount") + COMPUTED_SORT_FIELDS

_ENDPOINT_FIELDS = ("webEndpoint", "mcpEndpoint", "a2aEndpoint")

_CAPABILITY_FIELDS = (
    ("supportedTrusts", "supportedTrust"),
    ("a2aSkills", "a2aSkills"),
    ("mcpTools", "mcpTools"),
    ("mcpPrompts", "mcpPrompts"),
    ("mcpResources", "mcpResources"),
    ("oasfSkills", "oasfSkills"),
    ("oasfDomains", "oasfDomains"),
)


@dataclass(frozen=True)
class CompiledSearch:
    """
    Output of ``FilterCompiler.compile``.

    Attributes:
        chains: Resolved chain ids, in query order
        keyword: Stripped keyword, or None for the structured path
        sort_field: Requested sort field
        sort_direction: ``"asc"`` or ``"desc"``
        order_by: Field the backend is asked to order by
        local_sort: True when ``sort_field`` is computed (including a feedback
            count narrowed by a feedback scan) and must be ordered locally
        ids_by_chain: Per-chain allow-list from ``agentIds`` (None when unconstrained)
        needs_metadata: A metadata prefilter pass is required
        needs_feedback: A feedback prefilter pass is required
    """

    chains: List[int]
    keyword: Optional[str]
    sort_field: str
    sort_direction: str
    order_by: str
    local_sort: bool
    ids_by_chain: Optional[Dict[int, List[str]]]
    needs_metadata: bool
    needs_feedback: bool


def parse_sort(sort: Optional[List[str]], keyword_present: bool) -> Tuple[str, str]:
    """
    Read the first ``"field:direction"`` entry.

    Defaults to ``semanticScore:desc`` with a keyword, ``updatedAt:desc`` without.
    Unknown directions become ``desc``.
    """
    default_field = "semanticScore" if keyword_present else "updatedAt"
    entry = (sort[0] if sort else "") or f"{default_field}:desc"
    parts = str(entry).split(":", 1)
    field = parts[0].strip() or default_field
    direction = (parts[1] if len(parts) > 1 else "desc").strip().lower()
    if direction not in ("asc", "desc"):
        direction = "desc"
    return field, direction


def backend_order_field(field: str) -> str:
    if field == "feedbackCount":
        return "totalFeedback"
    if field in BACKEND_ORDER_FIELDS:
        return field
    if field == "name":
        return "registrationFile__name"
    return "updatedAt"


class FilterCompiler:
    """Compile public filters against a chain configuration."""

    def __init__(self, config: DiscoveryConfig):
        self.config = config

    # ------------------------------------------------------------------
    # chain and id resolution
    # ------------------------------------------------------------------

    def resolve_chains(self, filters: SearchFilters, keyword_present: bool) -> List[int]:
        """
        Resolve the chain list.

        Order: explicit list (de-duplicated), ``'all'``, all configured chains
        for keyword searches, then the home chain.

        Raises:
            ValidationError: No chain can be resolved, or a chain id is not an integer
        """
        if filters.chains == "all":
            return list(self.config.chain_ids)
        if isinstance(filters.chains, (list, tuple)) and filters.chains:
            out: List[int] = []
            for c in filters.chains:
                if isinstance(c, bool):
                    raise ValidationError(f"Invalid chain id: {c!r}")
                try:
                    cid = int(c)
                except (TypeError, ValueError) as e:
                    raise ValidationError(f"Invalid chain id: {c!r}") from e
                if cid not in out:
                    out.append(cid)
            return out
        if filters.chains is not None and not isinstance(filters.chains, (list, tuple)):
            raise ValidationError(f"Invalid chains selector: {filters.chains!r}")

        if keyword_present:
            return list(self.config.chain_ids)
        if self.config.defaultChainId is None:
            raise ValidationError("No chains given and no default chain configured")
        return [self.config.defaultChainId]

    def normalize_agent_ids(self, filters: SearchFilters, chains: List[int]) -> Optional[Dict[int, List[str]]]:
        """
        Group ``agentIds`` by chain.

        Bare token ids are qualified with the single searched chain. Every
        searched chain gets a list (possibly empty) so an id filter on one
        chain excludes the others.

        Raises:
            AmbiguousAgentIdError: Bare id while searching several chains
        """
        if not filters.agentIds:
            return None
        by_chain: Dict[int, List[str]] = {c: [] for c in chains}
        for aid in filters.agentIds:
            chain_id, token = parse_agent_id(aid)
            if chain_id is None:
                if len(chains) != 1:
                    raise AmbiguousAgentIdError(str(aid), chains)
                chain_id = chains[0]
            if chain_id in by_chain:
                by_chain[chain_id].append(f"{chain_id}:{token}")
        return {c: dedupe(ids) for c, ids in by_chain.items()}

    # ------------------------------------------------------------------
    # compile
    # ------------------------------------------------------------------

    def compile(self, filters: SearchFilters, options: Optional[SearchOptions] = None) -> CompiledSearch:
        """
        Validate and compile a search.

        Raises:
            ValidationError: Bad chains, page size, ids or time filters
            MissingCandidateSetError: ``hasNoFeedback`` combined with other
                feedback constraints and nothing to subtract from
        """
        options = options or SearchOptions()
        if int(options.pageSize) <= 0:
            raise ValidationError(f"pageSize must be positive, got {options.pageSize}")

        keyword = filters.keyword_text()
        field, direction = parse_sort(options.sort, keyword is not None)
        if field not in SORT_FIELDS:
            logger.debug("Unknown sort field %r, ordering by updatedAt", field)

        chains = self.resolve_chains(filters, keyword is not None)
        ids_by_chain = self.normalize_agent_ids(filters, chains)

        fb = filters.feedback
        needs_feedback = bool(fb and fb.is_active() and not fb.is_existence_only())
        needs_metadata = filters.metadata_key() is not None
        if fb and fb.hasNoFeedback and needs_feedback:
            if not filters.agentIds and not needs_metadata and keyword is None:
                raise MissingCandidateSetError()

        # time filters are validated eagerly
        self.build_where(filters)

        return CompiledSearch(
            chains=chains,
            keyword=keyword,
            sort_field=field,
            sort_direction=direction,
            order_by=backend_order_field(field),
            local_sort=field in COMPUTED_SORT_FIELDS or (needs_feedback and field in FEEDBACK_COUNT_FIELDS),
            ids_by_chain=ids_by_chain,
            needs_metadata=needs_metadata,
            needs_feedback=needs_feedback,
        )

    # ------------------------------------------------------------------
    # where-predicate
    # ------------------------------------------------------------------

    def build_where(self, filters: SearchFilters, ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Build the agent where-predicate for one chain.

        Args:
            filters: Public filters
            ids: Chain allow-list to push down as ``id_in``

        Returns:
            ``base`` or ``{"and": [base, *conditions]}``
        """
        base: Dict[str, Any] = {}
        and_conditions: List[Dict[str, Any]] = []

        # default: only agents with a registration file
        if filters.hasRegistrationFile is False:
            base["registrationFile"] = None
        else:
            base["registrationFile_not"] = None

        if ids:
            base["id_in"] = list(ids)

        if filters.walletAddress:
            base["agentWallet"] = str(filters.walletAddress).lower()

        fb = filters.feedback
        if fb and fb.is_existence_only():
            if fb.hasFeedback:
                base["totalFeedback_gt"] = "0"
            if fb.hasNoFeedback:
                base["totalFeedback"] = "0"

        if filters.owners:
            base["owner_in"] = [str(o).lower() for o in filters.owners]

        if filters.operators:
            ops = [str(o).lower() for o in filters.operators]
            and_conditions.append({"or": [{"operators_contains": [op]} for op in ops]})

        if filters.registeredAtFrom is not None:
            base["createdAt_gte"] = to_unix_seconds(filters.registeredAtFrom)
        if filters.registeredAtTo is not None:
            base["createdAt_lte"] = to_unix_seconds(filters.registeredAtTo)
        if filters.updatedAtFrom is not None:
            base["updatedAt_gte"] = to_unix_seconds(filters.updatedAtFrom)
        if filters.updatedAtTo is not None:
            base["updatedAt_lte"] = to_unix_seconds(filters.updatedAtTo)

        rf = self._registration_file_where(filters)
        if rf:
            base["registrationFile_"] = rf

        for field, attr in _CAPABILITY_FIELDS:
            values = getattr(filters, attr)
            if values:
                and_conditions.append({"or": [{"registrationFile_": {f"{field}_contains": [v]}} for v in values]})

        if filters.hasEndpoints is True:
            # any one endpoint is enough
            and_conditions.append({"or": [{"registrationFile_": {f"{f}_not": None}} for f in _ENDPOINT_FIELDS]})
        elif filters.hasEndpoints is False:
            # absence must be total
            and_conditions.append({"registrationFile_": {f: None for f in _ENDPOINT_FIELDS}})

        if not and_conditions:
            return base
        return {"and": [base, *and_conditions]}

    @staticmethod
    def _registration_file_where(filters: SearchFilters) -> Dict[str, Any]:
        rf: Dict[str, Any] = {}
        if filters.name:
            rf["name_contains_nocase"] = filters.name
        if filters.description:
            rf["description_contains_nocase"] = filters.description
        if filters.ensContains:
            rf["ens_contains_nocase"] = filters.ensContains
        if filters.didContains:
            rf["did_contains_nocase"] = filters.didContains
        if filters.active is not None:
            rf["active"] = bool(filters.active)
        if filters.x402support is not None:
            rf["x402Support"] = bool(filters.x402support)

        for flag, field in ((filters.hasMCP, "mcpEndpoint"), (filters.hasA2A, "a2aEndpoint"), (filters.hasWeb, "webEndpoint")):
            if flag is not None:
                rf[f"{field}_not" if flag else field] = None
        if filters.hasOASF is not None:
            rf["hasOASF"] = bool(filters.hasOASF)

        if filters.mcpContains:
            rf["mcpEndpoint_contains_nocase"] = filters.mcpContains
        if filters.a2aContains:
            rf["a2aEndpoint_contains_nocase"] = filters.a2aContains
        if filters.webContains:
            rf["webEndpoint_contains_nocase"] = filters.webContains
        return rf
