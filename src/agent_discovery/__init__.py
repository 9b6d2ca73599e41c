"""
Agent Discovery

Multi-chain search over agent registries: structured filters, feedback-based
reputation thresholds, semantic keyword ranking and a resumable multi-chain
cursor.

Example:
    >>> from agent_discovery import DiscoveryConfig, SearchEngine, SearchFilters
    >>> engine = SearchEngine(DiscoveryConfig.with_defaults(default_chain_id=8453))
    >>> result = await engine.search_agents(SearchFilters(chains="all", hasMCP=True))
"""

__version__ = "0.1.0"

from .config import ChainConfig, DiscoveryConfig, DEFAULT_REGISTRIES, DEFAULT_SUBGRAPH_URLS
from .engine import SearchEngine
from .exceptions import (
    AmbiguousAgentIdError,
    ChainNotConfiguredError,
    ConfigurationError,
    DataError,
    DataSourceError,
    DiscoveryError,
    InvalidValueError,
    MissingCandidateSetError,
    NetworkError,
    QueryError,
    RequestTimeoutError,
    RetryExhaustedError,
    RPCError,
    SchemaCompatibilityError,
    SemanticSearchError,
    SerializationError,
    UnsupportedOperationError,
    ValidationError,
)
from .models import (
    AgentRecord,
    ChainStatus,
    FeedbackFilters,
    FeedbackRecord,
    MetadataRecord,
    ReputationSummary,
    SearchFilters,
    SearchMeta,
    SearchOptions,
    SearchResult,
)
from .retry import DEFAULT_RETRY_CONFIG, NO_RETRY_CONFIG, RetryConfig
from .semantic import SemanticHit, SemanticSearchGateway
from .sources import DataSourceClient, LogIndexerClient, SubgraphClient
from .value_codec import EncodedValue, decode_reputation_value, encode_reputation_value

__all__ = [
    "__version__",
    # Engine
    "SearchEngine",
    # Config
    "ChainConfig",
    "DiscoveryConfig",
    "DEFAULT_REGISTRIES",
    "DEFAULT_SUBGRAPH_URLS",
    "RetryConfig",
    "DEFAULT_RETRY_CONFIG",
    "NO_RETRY_CONFIG",
    # Sources
    "DataSourceClient",
    "SubgraphClient",
    "LogIndexerClient",
    "SemanticSearchGateway",
    "SemanticHit",
    # Models
    "AgentRecord",
    "FeedbackRecord",
    "MetadataRecord",
    "SearchFilters",
    "FeedbackFilters",
    "SearchOptions",
    "SearchResult",
    "SearchMeta",
    "ChainStatus",
    "ReputationSummary",
    # Codec
    "EncodedValue",
    "encode_reputation_value",
    "decode_reputation_value",
    # Exceptions
    "DiscoveryError",
    "ConfigurationError",
    "ChainNotConfiguredError",
    "NetworkError",
    "RPCError",
    "RequestTimeoutError",
    "RetryExhaustedError",
    "SemanticSearchError",
    "DataSourceError",
    "QueryError",
    "SchemaCompatibilityError",
    "UnsupportedOperationError",
    "DataError",
    "SerializationError",
    "ValidationError",
    "InvalidValueError",
    "AmbiguousAgentIdError",
    "MissingCandidateSetError",
]
