"""Async JSON-RPC client and signer abstractions."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address, to_hex
from safe_eth.safe.safe_tx import SafeTx
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.types import RPCEndpoint

from .config import ChainDeployment
from .errors import ConfigurationError, RouterError, TransactionFailedError

logger = logging.getLogger(__name__)


class Signer(Protocol):
    """Operator identity able to submit transactions and sign Safe transactions."""

    @property
    def address(self) -> str:  # pragma: no cover - protocol
        """Checksummed address of the signer."""

    async def send_transaction(self, *, to: str, data: bytes, value: int = 0) -> str:  # pragma: no cover
        """Submit a transaction and return its hash without waiting for it."""

    async def sign_safe_tx(self, safe_tx: SafeTx) -> bytes:  # pragma: no cover - protocol
        """Add this signer's signature to ``safe_tx`` and return it."""


def get_web3(deployment: ChainDeployment) -> AsyncWeb3:
    logger.debug(
        "Initialising async Web3 client",
        extra={"rpc_url": deployment.rpc_url, "chain_id": deployment.chain_id},
    )
    return AsyncWeb3(AsyncHTTPProvider(deployment.rpc_url))


class ChainClient:
    """Thin async wrapper over the JSON-RPC calls the router needs."""

    def __init__(
        self,
        web3: AsyncWeb3,
        *,
        chain_id: int,
        receipt_timeout: float = 180.0,
        poll_latency: float = 0.5,
        impersonation_method: str = "anvil_impersonateAccount",
    ) -> None:
        self._web3 = web3
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout
        self._poll_latency = poll_latency
        self._impersonation_method = impersonation_method

    @classmethod
    def from_deployment(cls, deployment: ChainDeployment) -> "ChainClient":
        return cls(
            get_web3(deployment),
            chain_id=deployment.chain_id,
            receipt_timeout=deployment.receipt_timeout_seconds,
            impersonation_method=deployment.impersonation_method,
        )

    @property
    def web3(self) -> AsyncWeb3:
        return self._web3

    @property
    def chain_id(self) -> int:
        return self._chain_id

    async def verify_chain_id(self) -> None:
        remote = await self._web3.eth.chain_id
        if remote != self._chain_id:
            raise ConfigurationError(f"Chain ID mismatch: expected {self._chain_id} got {remote}")

    async def call(self, to: str, data: bytes) -> bytes:
        """Perform a read-only ``eth_call`` and return the raw result."""

        result = await self._web3.eth.call({"to": to_checksum_address(to), "data": data})
        return bytes(result)

    async def latest_timestamp(self) -> int:
        block = await self._web3.eth.get_block("latest")
        return int(block["timestamp"])

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Wait until ``tx_hash`` is mined; raise when it reverted."""

        receipt = await self._web3.eth.wait_for_transaction_receipt(
            tx_hash,
            timeout=self._receipt_timeout,
            poll_latency=self._poll_latency,
        )
        payload = dict(receipt)
        if int(payload.get("status", 1)) == 0:
            raise TransactionFailedError(tx_hash, payload)
        return payload

    def impersonate(self, address: str) -> "ImpersonatedSigner":
        """Return a signer that sends as ``address`` on a fork node."""

        return ImpersonatedSigner(self._web3, address, method=self._impersonation_method)


class LocalAccountSigner:
    """Signer backed by a private key held in process memory."""

    def __init__(self, account: LocalAccount, web3: AsyncWeb3, *, chain_id: int) -> None:
        self._account = account
        self._web3 = web3
        self._chain_id = chain_id

    @classmethod
    def from_key(cls, private_key: str, web3: AsyncWeb3, *, chain_id: int) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key), web3, chain_id=chain_id)

    @property
    def address(self) -> str:
        return self._account.address

    async def send_transaction(self, *, to: str, data: bytes, value: int = 0) -> str:
        tx: Dict[str, Any] = {
            "from": self.address,
            "to": to_checksum_address(to),
            "data": data,
            "value": int(value),
            "chainId": self._chain_id,
            "nonce": await self._web3.eth.get_transaction_count(self.address, "pending"),
        }
        tx["gas"] = await self._web3.eth.estimate_gas(tx)
        tx["gasPrice"] = await self._web3.eth.gas_price
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._web3.eth.send_raw_transaction(signed.raw_transaction)
        return self._web3.to_hex(tx_hash)

    async def sign_safe_tx(self, safe_tx: SafeTx) -> bytes:
        return bytes(safe_tx.sign(to_hex(self._account.key)))


class ImpersonatedSigner:
    """Fork-only signer that asks the node to send from an unlocked address."""

    def __init__(self, web3: AsyncWeb3, address: str, *, method: str = "anvil_impersonateAccount") -> None:
        self._web3 = web3
        self._address = to_checksum_address(address)
        self._method = method
        self._impersonating = False

    @property
    def address(self) -> str:
        return self._address

    async def _ensure_impersonating(self) -> None:
        if self._impersonating:
            return
        logger.warning("Impersonating %s via %s", self._address, self._method)
        response = await self._web3.provider.make_request(RPCEndpoint(self._method), [self._address])
        error: Optional[Any] = response.get("error") if isinstance(response, dict) else None
        if error:
            raise RouterError(f"{self._method} failed for {self._address}: {error}")
        self._impersonating = True

    async def send_transaction(self, *, to: str, data: bytes, value: int = 0) -> str:
        await self._ensure_impersonating()
        tx_hash = await self._web3.eth.send_transaction(
            {"from": self._address, "to": to_checksum_address(to), "data": data, "value": int(value)}
        )
        return self._web3.to_hex(tx_hash)

    async def sign_safe_tx(self, safe_tx: SafeTx) -> bytes:
        raise RouterError("Impersonated signers cannot produce off-chain signatures")


__all__ = [
    "ChainClient",
    "ImpersonatedSigner",
    "LocalAccountSigner",
    "Signer",
    "get_web3",
]
