"""
Event-log backed data source.

Answers feedback and metadata queries by scanning registry events with
``eth_getLogs`` in bounded block ranges:

- ``NewFeedback`` / ``FeedbackRevoked`` on the reputation registry
- ``MetadataSet`` on the identity registry

Known limitations:
    - ``createdAt`` is the block number, an ordering proxy and not a unix timestamp
    - responses are not emitted as registry events, so ``hasResponse`` is unknown
    - the identity registry cannot enumerate or filter agents, so
      ``search_agents`` raises ``UnsupportedOperationError``
    - every call rescans from ``from_block``; set it to the registry
      deployment block
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, Web3Exception

from ..exceptions import RPCError, UnsupportedOperationError
from ..models import AgentRecord, FeedbackRecord, MetadataRecord
from ..retry import DEFAULT_RETRY_CONFIG, RetryConfig, retry_async
from ..utils import format_agent_id, parse_agent_id
from ..value_codec import decode_reputation_value
from .base import DataSourceClient

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

REPUTATION_REGISTRY_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [],
        "name": "getIdentityRegistry",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "agentId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "clientAddress", "type": "address"},
            {"indexed": False, "internalType": "uint64", "name": "feedbackIndex", "type": "uint64"},
            {"indexed": False, "internalType": "int128", "name": "value", "type": "int128"},
            {"indexed": False, "internalType": "uint8", "name": "valueDecimals", "type": "uint8"},
            {"indexed": True, "internalType": "string", "name": "indexedTag1", "type": "string"},
            {"indexed": False, "internalType": "string", "name": "tag1", "type": "string"},
            {"indexed": False, "internalType": "string", "name": "tag2", "type": "string"},
            {"indexed": False, "internalType": "string", "name": "endpoint", "type": "string"},
            {"indexed": False, "internalType": "string", "name": "feedbackURI", "type": "string"},
            {"indexed": False, "internalType": "bytes32", "name": "feedbackHash", "type": "bytes32"},
        ],
        "name": "NewFeedback",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "agentId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "clientAddress", "type": "address"},
            {"indexed": True, "internalType": "uint64", "name": "feedbackIndex", "type": "uint64"},
        ],
        "name": "FeedbackRevoked",
        "type": "event",
    },
]

IDENTITY_REGISTRY_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "tokenURI",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "agentId", "type": "uint256"}],
        "name": "getAgentWallet",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "agentId", "type": "uint256"},
            {"indexed": True, "internalType": "string", "name": "indexedMetadataKey", "type": "string"},
            {"indexed": False, "internalType": "string", "name": "metadataKey", "type": "string"},
            {"indexed": False, "internalType": "bytes", "name": "metadataValue", "type": "bytes"},
        ],
        "name": "MetadataSet",
        "type": "event",
    },
]

_FEEDBACK_ORDER_FIELDS = ("createdAt", "value")


def revocation_key(token_id: Any, client_address: str, feedback_index: Any) -> str:
    return f"{token_id}:{str(client_address).lower()}:{feedback_index}"


def _detect_uri_type(uri: str) -> str:
    if uri.startswith("ipfs://"):
        return "ipfs"
    if uri.startswith(("http://", "https://")):
        return "http"
    if uri.startswith("ar://"):
        return "arweave"
    return "unknown"


def matches_feedback(row: FeedbackRecord, where: Dict[str, Any]) -> bool:
    """
    Evaluate a Graph-style feedback predicate in memory.

    Raises:
        UnsupportedOperationError: The predicate uses a key events cannot answer
    """
    for key, expected in where.items():
        if key == "and":
            if not all(matches_feedback(row, w) for w in expected):
                return False
        elif key == "or":
            if not any(matches_feedback(row, w) for w in expected):
                return False
        elif key == "agent_in":
            if row.agentId not in expected:
                return False
        elif key == "agent":
            if row.agentId != expected:
                return False
        elif key == "clientAddress_in":
            if row.clientAddress not in {str(a).lower() for a in expected}:
                return False
        elif key == "isRevoked":
            if row.isRevoked != bool(expected):
                return False
        elif key in ("tag1", "tag2"):
            if getattr(row, key) != expected:
                return False
        elif key == "value_gte":
            if row.value < float(expected):
                return False
        elif key == "value_lte":
            if row.value > float(expected):
                return False
        elif key == "endpoint_contains_nocase":
            if str(expected).lower() not in (row.endpoint or "").lower():
                return False
        else:
            raise UnsupportedOperationError(f"feedback filter '{key}'", "LogIndexerClient")
    return True


def matches_metadata(row: MetadataRecord, where: Dict[str, Any]) -> bool:
    for key, expected in where.items():
        if key == "agent_in":
            if row.agentId not in expected:
                return False
        elif key == "key":
            if row.key != expected:
                return False
        elif key == "key_contains":
            if str(expected) not in row.key:
                return False
        elif key == "value":
            if (row.value or "").lower() != str(expected).lower():
                return False
        else:
            raise UnsupportedOperationError(f"metadata filter '{key}'", "LogIndexerClient")
    return True


class LogIndexerClient(DataSourceClient):
    """DataSourceClient backed by ``eth_getLogs`` against the registry contracts."""

    def __init__(
        self,
        chain_id: int,
        rpc_url: str,
        reputation_registry: str,
        identity_registry: Optional[str] = None,
        from_block: int = 0,
        max_block_range: int = 2000,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.chain_id = int(chain_id)
        self.rpc_url = rpc_url
        self.from_block = int(from_block)
        self.max_block_range = int(max_block_range)
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._reputation = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(reputation_registry),
            abi=REPUTATION_REGISTRY_ABI,
        )
        self._identity_address = AsyncWeb3.to_checksum_address(identity_registry) if identity_registry else None

    # ------------------------------------------------------------------
    # chain access
    # ------------------------------------------------------------------

    async def _latest_block(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise RPCError(str(e), rpc_url=self.rpc_url, method="eth_blockNumber") from e

    async def _identity_contract(self):
        if self._identity_address is None:
            try:
                address = await self._reputation.functions.getIdentityRegistry().call()
            except (Web3Exception, OSError, asyncio.TimeoutError) as e:
                raise RPCError(str(e), rpc_url=self.rpc_url, method="getIdentityRegistry") from e
            self._identity_address = AsyncWeb3.to_checksum_address(address)
        return self._w3.eth.contract(address=self._identity_address, abi=IDENTITY_REGISTRY_ABI)

    async def _get_logs(self, contract, event_name: str, from_block: int, to_block: int) -> List[Any]:
        try:
            event = getattr(contract.events, event_name)()
            return list(await event.get_logs(from_block=from_block, to_block=to_block))
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise RPCError(str(e), rpc_url=self.rpc_url, method="eth_getLogs") from e

    async def _scan(self, contract, event_name: str, to_block: int) -> List[Any]:
        """Fetch all logs of one event from ``from_block`` to ``to_block`` in bounded ranges."""
        fetch = retry_async(self.retry_config, operation_name=f"eth_getLogs[{self.chain_id}:{event_name}]")(
            self._get_logs
        )
        logs: List[Any] = []
        start = self.from_block
        while start <= to_block:
            end = min(start + self.max_block_range - 1, to_block)
            logs.extend(await fetch(contract, event_name, start, end))
            start = end + 1
        logger.debug("Chain %s: scanned %d %s logs up to block %d", self.chain_id, len(logs), event_name, to_block)
        return logs

    # ------------------------------------------------------------------
    # decoding
    # ------------------------------------------------------------------

    def _revoked_keys(self, logs: Iterable[Any]) -> Set[str]:
        keys: Set[str] = set()
        for log in logs:
            args = log["args"]
            keys.add(revocation_key(args["agentId"], args["clientAddress"], args["feedbackIndex"]))
        return keys

    def _decode_feedback(self, logs: Iterable[Any], revoked: Set[str]) -> List[FeedbackRecord]:
        rows: List[FeedbackRecord] = []
        for log in logs:
            args = log["args"]
            agent_id = format_agent_id(self.chain_id, args["agentId"])
            client = str(args["clientAddress"]).lower()
            rows.append(
                FeedbackRecord(
                    id=f"{agent_id}:{client}:{args['feedbackIndex']}",
                    agentId=agent_id,
                    clientAddress=client,
                    value=decode_reputation_value(args["value"], args["valueDecimals"]),
                    tag1=args.get("tag1") or None,
                    tag2=args.get("tag2") or None,
                    endpoint=args.get("endpoint") or None,
                    isRevoked=revocation_key(args["agentId"], client, args["feedbackIndex"]) in revoked,
                    createdAt=int(log["blockNumber"]),
                    hasResponse=None,
                )
            )
        return rows

    def _decode_metadata(self, logs: Iterable[Any]) -> List[MetadataRecord]:
        latest: Dict[str, MetadataRecord] = {}
        for log in logs:
            args = log["args"]
            agent_id = format_agent_id(self.chain_id, args["agentId"])
            key = str(args["metadataKey"])
            block = int(log["blockNumber"])
            map_key = f"{agent_id}:{key}"
            current = latest.get(map_key)
            if current is None or block >= (current.updatedAt or 0):
                latest[map_key] = MetadataRecord(
                    id=map_key,
                    agentId=agent_id,
                    key=key,
                    value="0x" + bytes(args["metadataValue"]).hex(),
                    updatedAt=block,
                )
        return list(latest.values())

    # ------------------------------------------------------------------
    # DataSourceClient
    # ------------------------------------------------------------------

    async def search_agents(
        self,
        where: Optional[Dict[str, Any]],
        first: int,
        skip: int = 0,
        order_by: str = "updatedAt",
        order_direction: str = "desc",
    ) -> List[AgentRecord]:
        raise UnsupportedOperationError(
            "search_agents",
            "LogIndexerClient",
            reason="the identity registry cannot enumerate or filter agents; configure a subgraph for this chain",
        )

    async def query_feedback(
        self,
        where: Dict[str, Any],
        first: int,
        skip: int = 0,
        order_by: str = "createdAt",
        order_direction: str = "desc",
    ) -> List[FeedbackRecord]:
        if order_by not in _FEEDBACK_ORDER_FIELDS:
            raise UnsupportedOperationError(f"order by '{order_by}'", "LogIndexerClient")
        to_block = await self._latest_block()
        new_logs, revoked_logs = await asyncio.gather(
            self._scan(self._reputation, "NewFeedback", to_block),
            self._scan(self._reputation, "FeedbackRevoked", to_block),
        )
        rows = self._decode_feedback(new_logs, self._revoked_keys(revoked_logs))
        rows = [r for r in rows if matches_feedback(r, where or {})]
        rows.sort(key=lambda r: getattr(r, order_by) or 0, reverse=order_direction == "desc")
        return rows[skip : skip + first]

    async def query_metadata(self, where: Dict[str, Any], first: int, skip: int = 0) -> List[MetadataRecord]:
        identity = await self._identity_contract()
        to_block = await self._latest_block()
        rows = self._decode_metadata(await self._scan(identity, "MetadataSet", to_block))
        rows = [r for r in rows if matches_metadata(r, where or {})]
        rows.sort(key=lambda r: r.updatedAt or 0, reverse=True)
        return rows[skip : skip + first]

    async def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        """
        Read a minimal agent record straight from the identity registry.

        Only owner, URI and wallet are available on-chain; the registration
        file is not fetched, so ``name`` falls back to the composite id.
        """
        chain_id, token = parse_agent_id(agent_id)
        if chain_id is not None and chain_id != self.chain_id:
            return None
        try:
            token_id = int(token)
        except ValueError:
            return None

        identity = await self._identity_contract()
        try:
            owner = await identity.functions.ownerOf(token_id).call()
        except ContractLogicError:
            return None
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise RPCError(str(e), rpc_url=self.rpc_url, method="ownerOf") from e

        uri: Optional[str] = None
        wallet: Optional[str] = None
        try:
            uri = await identity.functions.tokenURI(token_id).call() or None
        except ContractLogicError:
            logger.debug("tokenURI reverted for %s", agent_id)
        try:
            raw_wallet = await identity.functions.getAgentWallet(token_id).call()
            if raw_wallet and raw_wallet.lower() != ZERO_ADDRESS:
                wallet = raw_wallet.lower()
        except ContractLogicError:
            logger.debug("getAgentWallet reverted for %s", agent_id)

        composite = format_agent_id(self.chain_id, token_id)
        return AgentRecord(
            chainId=self.chain_id,
            agentId=composite,
            name=composite,
            owners=(str(owner).lower(),),
            walletAddress=wallet,
            agentURI=uri,
            agentURIType=_detect_uri_type(uri) if uri else None,
        )

    async def aclose(self) -> None:
        provider = getattr(self._w3, "provider", None)
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
