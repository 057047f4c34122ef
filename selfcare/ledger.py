"""
SelfCare Coordinator - Ledger Clients

The ledger maps a record identifier (as a uint256) to the digest anchored when
the hospital registered the record. The coordinator only ever reads from it,
through a single view function of the hash registry contract:

    function getHash(uint256 id) external view returns (string memory);

An empty answer means "not anchored" and is a valid response, not an error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from .config import Settings
from .errors import ConfigurationError, LedgerError

logger = logging.getLogger(__name__)


def registry_abi(function_name: str = "getHash") -> List[Dict[str, Any]]:
    """ABI of the read-only hash registry."""
    return [
        {
            "name": function_name,
            "type": "function",
            "stateMutability": "view",
            "inputs": [{"name": "id", "type": "uint256"}],
            "outputs": [{"name": "", "type": "string"}],
        }
    ]


class LedgerClient(Protocol):
    """Anything able to return the anchored digest for a ledger key."""

    async def get_anchored_digest(self, key: int) -> Optional[str]:
        ...


class Web3LedgerClient:
    """
    Reads anchored digests from an EVM hash registry over JSON-RPC.

    The web3 call is blocking, so it runs in a worker thread; the caller
    applies its own deadline around ``get_anchored_digest``.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        function_name: str = "getHash",
        request_timeout: float = 10.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.function_name = function_name
        self.w3 = Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        try:
            address = Web3.to_checksum_address(contract_address)
        except ValueError as e:
            raise ConfigurationError(f"Invalid ledger contract address: {contract_address}") from e
        self.contract = self.w3.eth.contract(address=address, abi=registry_abi(function_name))
        logger.info(
            "Ledger client initialized",
            extra={"rpc_url": rpc_url, "contract": address, "function": function_name},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3LedgerClient":
        if not settings.ledger_rpc_url or not settings.ledger_contract_address:
            raise ConfigurationError(
                "Ledger proof mode requires SELFCARE_LEDGER_RPC_URL and "
                "SELFCARE_LEDGER_CONTRACT_ADDRESS"
            )
        return cls(
            rpc_url=settings.ledger_rpc_url,
            contract_address=settings.ledger_contract_address,
            function_name=settings.ledger_hash_function,
            request_timeout=settings.ledger_timeout_seconds,
        )

    async def get_anchored_digest(self, key: int) -> Optional[str]:
        function = self.contract.get_function_by_name(self.function_name)
        try:
            value = await asyncio.to_thread(function(key).call)
        except ContractLogicError as e:
            raise LedgerError(f"Ledger contract rejected lookup for {key}: {e}") from e
        except (Web3Exception, OSError) as e:
            raise LedgerError(f"Ledger transport failure: {e}") from e

        if isinstance(value, (bytes, bytearray)):
            # bytes32 registries return zero bytes for unknown ids
            return bytes(value).hex() if any(value) else None
        return value or None

    def is_connected(self) -> bool:
        try:
            return bool(self.w3.is_connected())
        except Exception as e:
            logger.warning(f"Ledger connectivity check failed: {e}")
            return False


class InMemoryLedgerClient:
    """Dictionary-backed ledger used for local runs and tests."""

    def __init__(self, anchored: Optional[Dict[int, str]] = None) -> None:
        self.anchored: Dict[int, str] = dict(anchored or {})
        self.lookups: List[int] = []

    def anchor(self, key: int, value: str) -> None:
        self.anchored[key] = value

    async def get_anchored_digest(self, key: int) -> Optional[str]:
        self.lookups.append(key)
        return self.anchored.get(key)

    def is_connected(self) -> bool:
        return True
