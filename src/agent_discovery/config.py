"""
Agent Discovery Configuration Module

Immutable configuration for the search engine. Each chain is described by a
``ChainConfig`` that names exactly one backend: a subgraph URL, or an RPC URL
plus the reputation registry address for event-log scanning.

Classes:
    ChainConfig: Per-chain backend settings
    DiscoveryConfig: Engine-wide settings

Example:
    >>> config = DiscoveryConfig.with_defaults(default_chain_id=11155111)
    >>> config.chain_ids
    [1, 8453, 137, 42161, 11155111, 84532, 421614]

Environment Variables (``DiscoveryConfig.from_env``):
    AGENT_DISCOVERY_DEFAULT_CHAIN: Home chain id
    AGENT_DISCOVERY_CHAINS: Comma-separated chain ids (default: built-in table)
    AGENT_DISCOVERY_SUBGRAPH_URL_<chainId>: Subgraph URL override
    AGENT_DISCOVERY_RPC_URL_<chainId>: RPC URL, used when no subgraph URL is set
    AGENT_DISCOVERY_FROM_BLOCK_<chainId>: First block for log scanning
    AGENT_DISCOVERY_SEMANTIC_URL: Semantic search base URL
    AGENT_DISCOVERY_CHAIN_TIMEOUT: Per-chain timeout in seconds
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .retry import DEFAULT_RETRY_CONFIG, RetryConfig

DEFAULT_SEMANTIC_SEARCH_URL = "https://semantic-search.ag0.xyz"

_GATEWAY = "https://gateway.thegraph.com/api"

DEFAULT_SUBGRAPH_URLS: Mapping[int, str] = MappingProxyType(
    {
        1: f"{_GATEWAY}/7fd2e7d89ce3ef24cd0d4590298f0b2c/subgraphs/id/FV6RR6y13rsnCxBAicKuQEwDp8ioEGiNaWaZUmvr1F8k",
        8453: f"{_GATEWAY}/536c6d8572876cabea4a4ad0fa49aa57/subgraphs/id/43s9hQRurMGjuYnC1r2ZwS6xSQktbFyXMPMqGKUFJojb",
        137: f"{_GATEWAY}/782d61ed390e625b8867995389699b4c/subgraphs/id/9q16PZv1JudvtnCAf44cBoxg82yK9SSsFvrjCY9xnneF",
        42161: f"{_GATEWAY}/7fd2e7d89ce3ef24cd0d4590298f0b2c/subgraphs/id/FV6RR6y13rsnCxBAicKuQEwDp8ioEGiNaWaZUmvr1F8k",
        11155111: f"{_GATEWAY}/00a452ad3cd1900273ea62c1bf283f93/subgraphs/id/6wQRC7geo9XYAhckfmfo8kbMRLeWU8KQd3XsJqFKmZLT",
        84532: f"{_GATEWAY}/536c6d8572876cabea4a4ad0fa49aa57/subgraphs/id/4yYAvQLFjBhBtdRCY7eUWo181VNoTSLLFd5M7FXQAi6u",
        421614: f"{_GATEWAY}/00a452ad3cd1900273ea62c1bf283f93/subgraphs/id/6wQRC7geo9XYAhckfmfo8kbMRLeWU8KQd3XsJqFKmZLT",
    }
)
"""Built-in subgraph endpoints (read-only)."""

_MAINNET_REGISTRIES = MappingProxyType(
    {
        "IDENTITY": "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432",
        "REPUTATION": "0x8004BAa17C55a88189AE136b182e5fdA19dE9b63",
    }
)
_TESTNET_REGISTRIES = MappingProxyType(
    {
        "IDENTITY": "0x8004A818BFB912233c491871b3d84c89A494BD9e",
        "REPUTATION": "0x8004B663056A597Dffe9eCcC1965A193B7388713",
    }
)

DEFAULT_REGISTRIES: Mapping[int, Mapping[str, str]] = MappingProxyType(
    {
        1: _MAINNET_REGISTRIES,
        8453: _MAINNET_REGISTRIES,
        137: _MAINNET_REGISTRIES,
        42161: _MAINNET_REGISTRIES,
        11155111: _TESTNET_REGISTRIES,
        84532: _TESTNET_REGISTRIES,
        421614: _TESTNET_REGISTRIES,
    }
)
"""Built-in registry addresses (read-only)."""

_ENV_PREFIX = "AGENT_DISCOVERY_"


@dataclass(frozen=True)
class ChainConfig:
    """
    Backend settings for one chain.

    Attributes:
        chainId: Chain ID
        subgraphUrl: GraphQL endpoint; takes precedence over RPC
        rpcUrl: JSON-RPC endpoint for event-log scanning
        reputationRegistry: Reputation registry address (RPC backend)
        identityRegistry: Identity registry address; looked up on-chain when unset
        fromBlock: First block to scan (RPC backend)
        maxBlockRange: Maximum blocks per ``eth_getLogs`` request
    """

    chainId: int
    subgraphUrl: Optional[str] = None
    rpcUrl: Optional[str] = None
    reputationRegistry: Optional[str] = None
    identityRegistry: Optional[str] = None
    fromBlock: int = 0
    maxBlockRange: int = 2000

    def __post_init__(self) -> None:
        if self.maxBlockRange <= 0:
            raise ConfigurationError("maxBlockRange must be positive", details={"chain_id": self.chainId})
        if self.fromBlock < 0:
            raise ConfigurationError("fromBlock must not be negative", details={"chain_id": self.chainId})
        if self.rpcUrl and not self.subgraphUrl and not self.reputationRegistry:
            raise ConfigurationError(
                "RPC-backed chains need a reputation registry address",
                details={"chain_id": self.chainId},
            )

    @property
    def has_backend(self) -> bool:
        return bool(self.subgraphUrl or (self.rpcUrl and self.reputationRegistry))


@dataclass(frozen=True)
class DiscoveryConfig:
    """
    Engine-wide settings, injected into ``SearchEngine``.

    Attributes:
        chains: Configured chains (order is the ``'all'`` expansion order)
        defaultChainId: Home chain used when no chain filter or keyword is given
        semanticSearchUrl: Base URL of the ranking service
        semanticTimeout: Ranking request timeout (seconds)
        chainTimeout: Timeout for each per-chain operation (seconds)
        requestTimeout: Timeout for a single backend HTTP request (seconds)
        retry: Transport retry policy beneath the data sources
    """

    chains: Tuple[ChainConfig, ...] = ()
    defaultChainId: Optional[int] = None
    semanticSearchUrl: str = DEFAULT_SEMANTIC_SEARCH_URL
    semanticTimeout: float = 20.0
    chainTimeout: float = 30.0
    requestTimeout: float = 10.0
    retry: RetryConfig = field(default=DEFAULT_RETRY_CONFIG)

    def __post_init__(self) -> None:
        object.__setattr__(self, "chains", tuple(self.chains))
        ids = [c.chainId for c in self.chains]
        if len(ids) != len(set(ids)):
            raise ConfigurationError("Duplicate chain ids in configuration", details={"chains": ids})
        for name in ("semanticTimeout", "chainTimeout", "requestTimeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

    @property
    def chain_ids(self) -> List[int]:
        return [c.chainId for c in self.chains]

    def chain(self, chain_id: int) -> Optional[ChainConfig]:
        for c in self.chains:
            if c.chainId == chain_id:
                return c
        return None

    @classmethod
    def with_defaults(
        cls,
        default_chain_id: Optional[int] = None,
        subgraph_overrides: Optional[Dict[int, str]] = None,
        **kwargs,
    ) -> "DiscoveryConfig":
        """
        Build a configuration from the built-in subgraph table.

        Args:
            default_chain_id: Home chain
            subgraph_overrides: Extra or replacement subgraph URLs by chain id
            **kwargs: Other DiscoveryConfig fields

        Returns:
            DiscoveryConfig
        """
        urls = dict(DEFAULT_SUBGRAPH_URLS)
        urls.update(subgraph_overrides or {})
        chains = tuple(ChainConfig(chainId=cid, subgraphUrl=url) for cid, url in urls.items())
        return cls(chains=chains, defaultChainId=default_chain_id, **kwargs)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "DiscoveryConfig":
        """
        Build a configuration from environment variables.

        A ``.env`` file is loaded first (without overriding variables already set).

        Raises:
            ConfigurationError: A variable holds an invalid value
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        chain_list = os.getenv(f"{_ENV_PREFIX}CHAINS")
        if chain_list:
            chain_ids = [_env_int(f"{_ENV_PREFIX}CHAINS", part) for part in chain_list.split(",") if part.strip()]
        else:
            chain_ids = list(DEFAULT_SUBGRAPH_URLS)

        chains: List[ChainConfig] = []
        for cid in chain_ids:
            subgraph_url = os.getenv(f"{_ENV_PREFIX}SUBGRAPH_URL_{cid}") or DEFAULT_SUBGRAPH_URLS.get(cid)
            rpc_url = os.getenv(f"{_ENV_PREFIX}RPC_URL_{cid}")
            if subgraph_url:
                chains.append(ChainConfig(chainId=cid, subgraphUrl=subgraph_url))
                continue
            if rpc_url:
                registries = DEFAULT_REGISTRIES.get(cid, {})
                from_block = os.getenv(f"{_ENV_PREFIX}FROM_BLOCK_{cid}")
                chains.append(
                    ChainConfig(
                        chainId=cid,
                        rpcUrl=rpc_url,
                        reputationRegistry=os.getenv(f"{_ENV_PREFIX}REPUTATION_REGISTRY_{cid}")
                        or registries.get("REPUTATION"),
                        identityRegistry=registries.get("IDENTITY"),
                        fromBlock=_env_int(f"{_ENV_PREFIX}FROM_BLOCK_{cid}", from_block) if from_block else 0,
                    )
                )
                continue
            raise ConfigurationError(f"No subgraph or RPC URL for chain {cid}", details={"chain_id": cid})

        default_chain = os.getenv(f"{_ENV_PREFIX}DEFAULT_CHAIN")
        chain_timeout = os.getenv(f"{_ENV_PREFIX}CHAIN_TIMEOUT")
        kwargs = {}
        if chain_timeout:
            try:
                kwargs["chainTimeout"] = float(chain_timeout)
            except ValueError as e:
                raise ConfigurationError(f"Invalid {_ENV_PREFIX}CHAIN_TIMEOUT: {chain_timeout!r}") from e

        return cls(
            chains=tuple(chains),
            defaultChainId=_env_int(f"{_ENV_PREFIX}DEFAULT_CHAIN", default_chain) if default_chain else None,
            semanticSearchUrl=os.getenv(f"{_ENV_PREFIX}SEMANTIC_URL") or DEFAULT_SEMANTIC_SEARCH_URL,
            **kwargs,
        )


def _env_int(name: str, raw: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid integer in {name}: {raw!r}") from e
