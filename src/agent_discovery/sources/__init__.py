"""
Data source backends.

``build_sources`` selects one backend per configured chain: a subgraph URL
gives a ``SubgraphClient``; an RPC URL plus reputation registry gives a
``LogIndexerClient``.
"""

from typing import Dict, Optional

import httpx

from ..config import DiscoveryConfig
from .base import DataSourceClient
from .log_indexer import LogIndexerClient
from .subgraph import FIELD_RENAMES, SubgraphClient


def build_sources(
    config: DiscoveryConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Dict[int, DataSourceClient]:
    """Create the per-chain clients for every configured chain that has a backend."""
    sources: Dict[int, DataSourceClient] = {}
    for chain in config.chains:
        if chain.subgraphUrl:
            sources[chain.chainId] = SubgraphClient(
                chain.chainId,
                chain.subgraphUrl,
                timeout=config.requestTimeout,
                retry_config=config.retry,
                http_client=http_client,
            )
        elif chain.rpcUrl and chain.reputationRegistry:
            sources[chain.chainId] = LogIndexerClient(
                chain.chainId,
                chain.rpcUrl,
                chain.reputationRegistry,
                identity_registry=chain.identityRegistry,
                from_block=chain.fromBlock,
                max_block_range=chain.maxBlockRange,
                timeout=config.requestTimeout,
                retry_config=config.retry,
            )
    return sources


__all__ = [
    "DataSourceClient",
    "SubgraphClient",
    "LogIndexerClient",
    "FIELD_RENAMES",
    "build_sources",
]
