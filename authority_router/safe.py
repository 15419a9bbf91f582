"""Safe multisig proposals backed by the Safe transaction service.

Hashing, signing and signature packing go through ``safe_eth``'s
:class:`~safe_eth.safe.safe_tx.SafeTx`. The transaction service is spoken
to over ``httpx`` so that every call stays on the event loop.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from eth_utils import to_checksum_address, to_hex
from safe_eth.eth.contracts import get_safe_contract
from safe_eth.safe.enums import SafeOperationEnum
from safe_eth.safe.safe_signature import SafeSignature, SafeSignatureApprovedHash
from safe_eth.safe.safe_tx import SafeTx
from web3 import Web3

from . import abi
from .chain import Signer
from .errors import InsufficientConfirmationsError, ProposalServiceError, RouterError
from .journal import ActionJournal, ActionKind, ActionState, TransitionRecord

logger = logging.getLogger(__name__)

DEFAULT_ORIGIN = "authority-router"
DEFAULT_SAFE_VERSION = "1.3.0"

# Provider-less instance, only used to encode Safe contract calls.
_ENCODER = Web3()


@dataclass(frozen=True)
class SafeTransaction:
    """Canonical Safe transaction envelope."""

    safe_address: str
    to: str
    value: int
    data: bytes
    nonce: int
    operation: int = SafeOperationEnum.CALL.value
    safe_tx_gas: int = 0
    base_gas: int = 0
    gas_price: int = 0
    gas_token: str = abi.ZERO_ADDRESS
    refund_receiver: str = abi.ZERO_ADDRESS

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError("value must be non-negative")
        if self.nonce < 0:
            raise ValueError("nonce must be non-negative")

    def to_safe_tx(
        self,
        chain_id: int,
        *,
        safe_version: str = DEFAULT_SAFE_VERSION,
        signatures: Optional[bytes] = None,
    ) -> SafeTx:
        """Build an offline :class:`SafeTx`.

        The nonce, chain id and contract version are all pinned, so the
        ``SafeTx`` never needs an ethereum client to compute its hash.
        """

        return SafeTx(
            None,
            to_checksum_address(self.safe_address),
            to_checksum_address(self.to),
            self.value,
            self.data,
            self.operation,
            self.safe_tx_gas,
            self.base_gas,
            self.gas_price,
            to_checksum_address(self.gas_token),
            to_checksum_address(self.refund_receiver),
            signatures=signatures,
            safe_nonce=self.nonce,
            safe_version=safe_version,
            chain_id=chain_id,
        )


def safe_tx_hash_hex(safe_tx: SafeTx) -> str:
    return to_hex(bytes(safe_tx.safe_tx_hash))


def encode_exec_transaction(safe_tx: SafeTx) -> bytes:
    """``execTransaction`` call data carrying the signatures set on ``safe_tx``."""

    contract = get_safe_contract(_ENCODER, address=to_checksum_address(safe_tx.safe_address))
    return abi.as_bytes(
        contract.encode_abi(
            "execTransaction",
            args=[
                safe_tx.to,
                safe_tx.value,
                safe_tx.data,
                safe_tx.operation,
                safe_tx.safe_tx_gas,
                safe_tx.base_gas,
                safe_tx.gas_price,
                safe_tx.gas_token,
                safe_tx.refund_receiver,
                bytes(safe_tx.signatures),
            ],
        )
    )


@dataclass(frozen=True)
class MultisigProposal:
    """A signed proposal as submitted to the transaction service."""

    transaction: SafeTransaction
    safe_tx_hash: str
    sender: str
    signature: bytes

    @property
    def safe_address(self) -> str:
        return self.transaction.safe_address

    @property
    def nonce(self) -> int:
        return self.transaction.nonce

    def service_payload(self, *, origin: str = DEFAULT_ORIGIN) -> Dict[str, Any]:
        tx = self.transaction
        return {
            "to": to_checksum_address(tx.to),
            "value": str(tx.value),
            "data": to_hex(tx.data) if tx.data else None,
            "operation": int(tx.operation),
            "safeTxGas": str(tx.safe_tx_gas),
            "baseGas": str(tx.base_gas),
            "gasPrice": str(tx.gas_price),
            "gasToken": to_checksum_address(tx.gas_token),
            "refundReceiver": to_checksum_address(tx.refund_receiver),
            "nonce": tx.nonce,
            "contractTransactionHash": self.safe_tx_hash,
            "sender": to_checksum_address(self.sender),
            "signature": to_hex(self.signature),
            "origin": origin,
        }


@dataclass(frozen=True)
class PendingProposal:
    """A proposal the service reports as not yet executed."""

    safe_tx_hash: str
    transaction: SafeTransaction
    confirmations: Tuple[Tuple[str, bytes], ...] = ()
    confirmations_required: Optional[int] = None

    @property
    def nonce(self) -> int:
        return self.transaction.nonce

    def confirmed_by(self, owner: str) -> bool:
        return any(existing.lower() == owner.lower() for existing, _ in self.confirmations)

    @classmethod
    def from_service(cls, payload: Dict[str, Any]) -> "PendingProposal":
        try:
            transaction = SafeTransaction(
                safe_address=str(payload["safe"]),
                to=str(payload["to"]),
                value=int(payload.get("value") or 0),
                data=abi.as_bytes(payload.get("data")),
                nonce=int(payload["nonce"]),
                operation=SafeOperationEnum(int(payload.get("operation") or 0)).value,
                safe_tx_gas=int(payload.get("safeTxGas") or 0),
                base_gas=int(payload.get("baseGas") or 0),
                gas_price=int(payload.get("gasPrice") or 0),
                gas_token=str(payload.get("gasToken") or abi.ZERO_ADDRESS),
                refund_receiver=str(payload.get("refundReceiver") or abi.ZERO_ADDRESS),
            )
            confirmations = tuple(
                (str(entry["owner"]), abi.as_bytes(entry["signature"]))
                for entry in payload.get("confirmations") or []
            )
            required = payload.get("confirmationsRequired")
            return cls(
                safe_tx_hash=str(payload["safeTxHash"]),
                transaction=transaction,
                confirmations=confirmations,
                confirmations_required=int(required) if required is not None else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProposalServiceError(f"Malformed pending transaction payload: {exc}") from exc


class SafeTransactionServiceClient:
    """Minimal async client for the Safe transaction service REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, body: Any = None) -> Any:
        url = f"{self._base_url}{path}"
        headers = dict(self._headers)
        if self._api_key:
            headers.setdefault("Authorization", f"Bearer {self._api_key}")
        try:
            async with httpx.AsyncClient(timeout=self._timeout, headers=headers, transport=self._transport) as client:
                response = await client.request(method, url, params=params, json=body)
        except httpx.HTTPError as exc:
            raise ProposalServiceError(
                f"Safe transaction service request failed: {exc.__class__.__name__}: {exc}",
                url=url,
            ) from exc
        if response.status_code >= 400:
            try:
                detail = response.json()
            except json.JSONDecodeError:
                detail = response.text
            raise ProposalServiceError(
                f"Safe transaction service responded with HTTP {response.status_code}",
                status_code=response.status_code,
                url=url,
                detail=detail,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise ProposalServiceError(
                "Invalid Safe transaction service response",
                status_code=response.status_code,
                url=url,
            ) from exc

    async def get_safe_info(self, safe_address: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/api/v1/safes/{to_checksum_address(safe_address)}/")
        if not isinstance(data, dict) or "nonce" not in data:
            raise ProposalServiceError("Safe info payload is missing the nonce")
        return data

    async def get_pending_transactions(
        self,
        safe_address: str,
        *,
        current_nonce: Optional[int] = None,
    ) -> List[PendingProposal]:
        """Unexecuted proposals at or above the Safe's nonce, oldest first."""

        if current_nonce is None:
            current_nonce = int((await self.get_safe_info(safe_address))["nonce"])
        data = await self._request(
            "GET",
            f"/api/v1/safes/{to_checksum_address(safe_address)}/multisig-transactions/",
            params={"executed": "false", "nonce__gte": current_nonce},
        )
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise ProposalServiceError("Pending transactions payload is missing results")
        pending = []
        for entry in results:
            if not isinstance(entry, dict):
                raise ProposalServiceError("Pending transactions payload contains a non-object entry")
            entry.setdefault("safe", safe_address)
            pending.append(PendingProposal.from_service(entry))
        return sorted(pending, key=lambda proposal: proposal.nonce)

    async def get_next_nonce(self, safe_address: str) -> int:
        safe_nonce = int((await self.get_safe_info(safe_address))["nonce"])
        pending = await self.get_pending_transactions(safe_address, current_nonce=safe_nonce)
        if pending:
            return max(proposal.nonce for proposal in pending) + 1
        return safe_nonce

    async def propose_transaction(self, safe_address: str, payload: Dict[str, Any]) -> None:
        await self._request(
            "POST",
            f"/api/v1/safes/{to_checksum_address(safe_address)}/multisig-transactions/",
            body=payload,
        )

    async def confirm_transaction(self, safe_tx_hash: str, signature: bytes) -> None:
        await self._request(
            "POST",
            f"/api/v1/multisig-transactions/{safe_tx_hash}/confirmations/",
            body={"signature": to_hex(signature)},
        )


class ReceiptWaiter(Protocol):  # pragma: no cover - protocol
    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        ...


@dataclass
class BulkConfirmationReport:
    """Outcome of :meth:`SafeProposalClient.sign_pending_transactions`."""

    confirmed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class SafeProposalClient:
    """Proposes, confirms and executes transactions for one Safe."""

    def __init__(
        self,
        *,
        chain_id: int,
        safe_address: str,
        signer: Signer,
        chain: ReceiptWaiter,
        service: SafeTransactionServiceClient,
        journal: Optional[ActionJournal] = None,
        origin: str = DEFAULT_ORIGIN,
        safe_version: str = DEFAULT_SAFE_VERSION,
    ) -> None:
        self._chain_id = chain_id
        self._safe_address = to_checksum_address(safe_address)
        self._signer = signer
        self._chain = chain
        self._service = service
        self._journal = journal
        self._origin = origin
        self._safe_version = safe_version

    @property
    def address(self) -> str:
        return self._safe_address

    def get_address(self) -> str:
        return self._safe_address

    def build_safe_tx(self, transaction: SafeTransaction, *, signatures: Optional[bytes] = None) -> SafeTx:
        return transaction.to_safe_tx(self._chain_id, safe_version=self._safe_version, signatures=signatures)

    async def propose_transaction(
        self,
        to: str,
        value: int,
        data: bytes | str,
        *,
        nonce: Optional[int] = None,
    ) -> str:
        """Sign and submit a proposal; returns the Safe transaction hash.

        Nothing is executed on-chain: the proposal waits for the remaining
        owners to confirm and for someone to execute it. When ``nonce`` is
        omitted the next nonce is fetched right before the transaction is
        built. That fetch and the submission are not atomic, so concurrent
        proposers against the same Safe should pass explicit nonces.
        """

        if nonce is None:
            nonce = await self._service.get_next_nonce(self._safe_address)
            logger.info("Using next Safe nonce %s for %s", nonce, self._safe_address)
        transaction = SafeTransaction(
            safe_address=self._safe_address,
            to=to_checksum_address(to),
            value=int(value),
            data=abi.as_bytes(data),
            nonce=int(nonce),
        )
        safe_tx = self.build_safe_tx(transaction)
        safe_tx_hash = safe_tx_hash_hex(safe_tx)
        signature = await self._signer.sign_safe_tx(safe_tx)
        proposal = MultisigProposal(
            transaction=transaction,
            safe_tx_hash=safe_tx_hash,
            sender=self._signer.address,
            signature=signature,
        )
        await self._service.propose_transaction(self._safe_address, proposal.service_payload(origin=self._origin))
        logger.info(
            "Proposed Safe transaction %s (nonce %s) to %s",
            safe_tx_hash,
            transaction.nonce,
            transaction.to,
            extra={"safe": self._safe_address, "chain_id": self._chain_id},
        )
        self._journal_record(
            safe_tx_hash,
            ActionState.PROPOSED,
            safe_tx_hash,
            {"to": transaction.to, "value": str(transaction.value), "data": to_hex(transaction.data), "nonce": transaction.nonce},
        )
        return safe_tx_hash

    async def pending_transactions(self) -> List[PendingProposal]:
        return await self._service.get_pending_transactions(self._safe_address)

    async def sign_pending_transactions(self) -> BulkConfirmationReport:
        """Confirm every pending proposal with the bound signer.

        Confirmation order does not matter to the Safe, so a proposal that
        cannot be signed or confirmed is logged and recorded in the report
        while the remaining proposals are still attempted.
        """

        report = BulkConfirmationReport()
        pending = await self.pending_transactions()
        total = len(pending)
        for index, proposal in enumerate(pending, start=1):
            if proposal.confirmed_by(self._signer.address):
                logger.info("[%s/%s] Nonce %s already confirmed by signer", index, total, proposal.nonce)
                report.skipped.append(proposal.safe_tx_hash)
                continue
            logger.info("[%s/%s] Confirming nonce %s (%s)", index, total, proposal.nonce, proposal.safe_tx_hash)
            try:
                signature = await self._signer.sign_safe_tx(self._verified_safe_tx(proposal))
                await self._service.confirm_transaction(proposal.safe_tx_hash, signature)
            except RouterError as exc:
                logger.warning(
                    "Confirmation of %s failed: %s",
                    proposal.safe_tx_hash,
                    exc,
                    extra={"status_code": getattr(exc, "status_code", None), "detail": getattr(exc, "detail", None)},
                )
                report.failed[proposal.safe_tx_hash] = str(exc)
                continue
            report.confirmed.append(proposal.safe_tx_hash)
            self._journal_record(proposal.safe_tx_hash, ActionState.CONFIRMED, proposal.safe_tx_hash, {"nonce": proposal.nonce})
        return report

    async def execute_pending_transactions(self) -> List[str]:
        """Execute pending proposals one at a time in ascending nonce order.

        The Safe only accepts its current nonce, so each execution waits for
        its receipt before the next is sent and the first failure aborts the
        batch. Returns the transaction hashes of the executed proposals.
        """

        pending = await self.pending_transactions()
        executed: List[str] = []
        total = len(pending)
        for index, proposal in enumerate(pending, start=1):
            logger.info("[%s/%s] Executing nonce %s (%s)", index, total, proposal.nonce, proposal.safe_tx_hash)
            tx_hash = await self.execute_transaction(proposal)
            executed.append(tx_hash)
        return executed

    async def execute_transaction(self, proposal: PendingProposal) -> str:
        """Send ``execTransaction`` for ``proposal`` once it meets the threshold.

        When the executing signer is an owner that has not confirmed, its
        approval is added as a pre-validated signature, which the Safe
        accepts from ``msg.sender``. Below the threshold nothing is sent.
        """

        info = await self._service.get_safe_info(self._safe_address)
        owners = {str(owner).lower() for owner in info.get("owners") or []}
        threshold = int(info.get("threshold") or proposal.confirmations_required or 1)
        safe_tx = self._verified_safe_tx(proposal)
        safe_tx_hash = bytes(safe_tx.safe_tx_hash)

        signatures: Dict[str, SafeSignature] = {}
        for _, signature in proposal.confirmations:
            for parsed in SafeSignature.parse_signature(signature, safe_tx_hash):
                signatures[parsed.owner.lower()] = parsed
        executor = self._signer.address
        if executor.lower() in owners and executor.lower() not in signatures:
            logger.info("Adding pre-validated approval from executing owner %s", executor)
            signatures[executor.lower()] = SafeSignatureApprovedHash.build_for_owner(executor, to_hex(safe_tx_hash))
        valid = [signature for owner, signature in signatures.items() if owner in owners]
        if len(valid) < threshold:
            raise InsufficientConfirmationsError(proposal.safe_tx_hash, len(valid), threshold)

        safe_tx.signatures = SafeSignature.export_signatures(valid)
        tx_hash = await self._signer.send_transaction(to=self._safe_address, data=encode_exec_transaction(safe_tx))
        await self._chain.wait_for_receipt(tx_hash)
        logger.info("Executed Safe nonce %s at %s", proposal.nonce, tx_hash)
        self._journal_record(proposal.safe_tx_hash, ActionState.EXECUTED, tx_hash, {"nonce": proposal.nonce})
        return tx_hash

    def _verified_safe_tx(self, proposal: PendingProposal) -> SafeTx:
        safe_tx = self.build_safe_tx(proposal.transaction)
        if safe_tx_hash_hex(safe_tx) != proposal.safe_tx_hash.lower():
            raise ProposalServiceError(
                f"Service hash {proposal.safe_tx_hash} does not match the transaction it describes"
            )
        return safe_tx

    def _journal_record(self, action_id: str, state: ActionState, reference: str, payload: Dict[str, Any]) -> None:
        if self._journal is None:
            return
        self._journal.record(
            TransitionRecord(
                action_id=action_id,
                kind=ActionKind.MULTISIG,
                state=state,
                chain_id=self._chain_id,
                reference=reference,
                payload={"safe": self._safe_address, **payload},
            )
        )


__all__ = [
    "BulkConfirmationReport",
    "DEFAULT_SAFE_VERSION",
    "MultisigProposal",
    "PendingProposal",
    "SafeProposalClient",
    "SafeTransaction",
    "SafeTransactionServiceClient",
    "encode_exec_transaction",
    "safe_tx_hash_hex",
]
