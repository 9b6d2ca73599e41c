"""
Agent Discovery Exceptions Module

Provides fine-grained exception types so callers can tell apart bad input,
transport trouble and backend schema drift.

Exception Hierarchy:
    DiscoveryError (Base Class)
    ├── ConfigurationError
    │   └── ChainNotConfiguredError
    ├── NetworkError
    │   ├── RPCError
    │   ├── RequestTimeoutError
    │   ├── RetryExhaustedError
    │   └── SemanticSearchError
    ├── DataSourceError
    │   ├── QueryError
    │   ├── SchemaCompatibilityError
    │   └── UnsupportedOperationError
    ├── DataError
    │   └── SerializationError
    └── ValidationError
        ├── InvalidValueError
        ├── AmbiguousAgentIdError
        └── MissingCandidateSetError

Example:
    >>> from agent_discovery.exceptions import ValidationError, SemanticSearchError
    >>> try:
    ...     await engine.search_agents(filters)
    ... except SemanticSearchError as e:
    ...     print(f"Ranking service down: {e.details}")
    ... except ValidationError as e:
    ...     print(f"Bad filter: {e.code}")

Note:
    - All exceptions inherit from DiscoveryError
    - Each exception has code and details attributes
    - Per-chain failures during a search are reported in the result metadata,
      they are not raised
"""

from typing import Optional, Any


class DiscoveryError(Exception):
    """
    Discovery Base Exception.

    Base class for all exceptions raised by this package, providing a unified
    error code and details mechanism.

    Attributes:
        code: Error code string for programmatic handling
        details: Error details, can be any type

    Args:
        message: Error message
        code: Error code, defaults to "DISCOVERY_ERROR"
        details: Error details

    Example:
        >>> raise DiscoveryError("Something went wrong", code="CUSTOM_ERROR", details={"chain": 1})
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.code = code or "DISCOVERY_ERROR"
        self.details = details

    def __str__(self) -> str:
        """Return formatted error message."""
        if self.details:
            return f"[{self.code}] {super().__str__()} - {self.details}"
        return f"[{self.code}] {super().__str__()}"


# ============ Configuration Exceptions ============


class ConfigurationError(DiscoveryError):
    """
    Configuration Error Base Class.

    Raised when the discovery configuration is incomplete or malformed.

    Args:
        message: Error message
        details: Error details
    """

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ChainNotConfiguredError(ConfigurationError):
    """
    Chain Not Configured Error.

    Raised when an operation targets a chain that has no data source.

    Args:
        chain_id: Chain ID that was requested

    Example:
        >>> raise ChainNotConfiguredError(10)
        # [CHAIN_NOT_CONFIGURED] No data source configured for chain 10
    """

    def __init__(self, chain_id: int) -> None:
        super().__init__(
            f"No data source configured for chain {chain_id}",
            details={"chain_id": chain_id},
        )
        self.code = "CHAIN_NOT_CONFIGURED"


# ============ Network Exceptions ============


class NetworkError(DiscoveryError):
    """
    Network Request Error Base Class.

    Raised when a request to a subgraph, RPC node or ranking service fails.

    Args:
        message: Error message
        details: Error details
    """

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message, "NETWORK_ERROR", details)


class RPCError(NetworkError):
    """
    RPC Call Failed Error.

    Raised when a JSON-RPC call to a chain node fails.

    Args:
        message: Error message
        rpc_url: RPC node URL
        method: Method name called

    Example:
        >>> raise RPCError("Connection refused", rpc_url="https://...", method="eth_getLogs")
    """

    def __init__(
        self,
        message: str,
        rpc_url: Optional[str] = None,
        method: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            details={"rpc_url": rpc_url, "method": method},
        )
        self.code = "RPC_ERROR"


class RequestTimeoutError(NetworkError):
    """
    Request Timeout Error.

    Raised when a transport request exceeds its time budget.

    Args:
        operation: Name of the operation that timed out
        timeout_seconds: Timeout that was applied

    Example:
        >>> raise RequestTimeoutError("subgraph_query", 10.0)
        # [TIMEOUT_ERROR] Operation 'subgraph_query' timed out after 10.0s
    """

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Operation '{operation}' timed out after {timeout_seconds}s",
            details={"operation": operation, "timeout": timeout_seconds},
        )
        self.code = "TIMEOUT_ERROR"


class RetryExhaustedError(NetworkError):
    """
    Retry Exhausted Error.

    Raised when a transport operation still fails after the configured number
    of attempts.

    Attributes:
        operation: Operation name
        attempts: Number of attempts made
        last_error: Last exception seen

    Args:
        operation: Operation name
        attempts: Number of attempts made
        last_error: Last exception seen
    """

    def __init__(
        self,
        operation: str,
        attempts: int,
        last_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            f"Operation '{operation}' failed after {attempts} attempts",
            details={
                "operation": operation,
                "attempts": attempts,
                "last_error": str(last_error) if last_error else None,
            },
        )
        self.code = "RETRY_EXHAUSTED"
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class SemanticSearchError(NetworkError):
    """
    Semantic Search Error.

    Raised when the ranking service is unreachable or answers with a non-2xx
    status. The keyword path has no partial fallback, so this always reaches
    the caller.

    Args:
        message: Error message
        status_code: HTTP status code, if a response was received
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, details={"status_code": status_code} if status_code else None)
        self.code = "SEMANTIC_SEARCH_FAILED"
        self.status_code = status_code


# ============ Data Source Exceptions ============


class DataSourceError(DiscoveryError):
    """
    Data Source Error Base Class.

    Raised when a backend answers but the answer is unusable.

    Args:
        message: Error message
        details: Error details
    """

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message, "DATA_SOURCE_ERROR", details)


class QueryError(DataSourceError):
    """
    Query Error.

    Raised when a GraphQL response carries an ``errors`` array.

    Attributes:
        messages: Individual error messages reported by the backend

    Args:
        messages: Error messages from the response

    Example:
        >>> raise QueryError(["Type `Agent` has no field `foo`"])
    """

    def __init__(self, messages: list) -> None:
        super().__init__(f"GraphQL errors: {', '.join(messages)}")
        self.code = "QUERY_ERROR"
        self.messages = list(messages)


class SchemaCompatibilityError(DataSourceError):
    """
    Schema Compatibility Error.

    Raised when a query still fails after the single rename-and-retry pass
    against an older deployment.

    Args:
        field: Field that was rewritten
        reason: Error reported by the second attempt
    """

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(
            f"Query failed after rewriting '{field}'",
            details={"field": field, "reason": reason},
        )
        self.code = "SCHEMA_INCOMPATIBLE"
        self.field = field


class UnsupportedOperationError(DataSourceError):
    """
    Unsupported Operation Error.

    Raised when a backend cannot answer a request at all, for example rich
    agent search against raw event logs.

    Args:
        operation: Operation name
        backend: Backend name
        reason: Why it is unsupported
    """

    def __init__(self, operation: str, backend: str, reason: Optional[str] = None) -> None:
        super().__init__(
            f"'{operation}' is not supported by {backend}",
            details={"reason": reason} if reason else None,
        )
        self.code = "UNSUPPORTED_OPERATION"


# ============ Data Exceptions ============


class DataError(DiscoveryError):
    """
    Data Processing Error Base Class.

    Raised when data decoding or conversion fails.

    Args:
        message: Error message
        details: Error details
    """

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message, "DATA_ERROR", details)


class SerializationError(DataError):
    """
    Serialization Error.

    Raised when a backend payload cannot be decoded into a record.

    Args:
        reason: Failure reason
    """

    def __init__(self, reason: str) -> None:
        super().__init__(f"Serialization failed: {reason}")
        self.code = "SERIALIZATION_ERROR"


# ============ Validation Exceptions ============


class ValidationError(DiscoveryError):
    """
    Validation Error Base Class.

    Raised before any network call when the caller's input is invalid.

    Args:
        message: Error message
        details: Error details
    """

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message, "VALIDATION_ERROR", details)


class InvalidValueError(ValidationError):
    """
    Invalid Value Error.

    Raised by the value codec for NaN, Infinity or unparseable numbers.

    Args:
        value: Offending input
        reason: Failure reason

    Example:
        >>> raise InvalidValueError("NaN", "NaN not supported")
    """

    def __init__(self, value: Any, reason: str) -> None:
        super().__init__(reason, details={"value": str(value)})
        self.code = "INVALID_VALUE"


class AmbiguousAgentIdError(ValidationError):
    """
    Ambiguous Agent ID Error.

    Raised when a bare token id (no chain prefix) is used while more than one
    chain is searched.

    Args:
        agent_id: The bare id
        chains: Chains being searched
    """

    def __init__(self, agent_id: str, chains: list) -> None:
        super().__init__(
            "Agent ids without a chain prefix are only allowed when searching exactly one chain",
            details={"agent_id": agent_id, "chains": list(chains)},
        )
        self.code = "AMBIGUOUS_AGENT_ID"


class MissingCandidateSetError(ValidationError):
    """
    Missing Candidate Set Error.

    Raised when ``hasNoFeedback`` is combined with other feedback constraints
    but nothing upstream narrowed the agents to subtract from.
    """

    def __init__(self) -> None:
        super().__init__(
            "feedback.hasNoFeedback with other feedback constraints requires a candidate set "
            "(agentIds, metadata filter or keyword)"
        )
        self.code = "MISSING_CANDIDATE_SET"
