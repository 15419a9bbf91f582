"""In-memory chain and Safe transaction service used by the router tests.

The fake chain executes the handful of contract surfaces the router touches
(Ownable, ProxyAdmin, a Compound-style timelock and a Safe) closely enough
that revert conditions such as an unsatisfied timelock delay, a mismatched
queued tuple or an out-of-order Safe nonce behave as they would on a node.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import pytest
from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_checksum_address, to_hex
from safe_eth.safe.safe_tx import SafeTx
from web3.exceptions import ContractLogicError

from authority_router import abi
from authority_router.errors import TransactionFailedError
from authority_router.safe import SafeProposalClient, SafeTransactionServiceClient
from authority_router.timelock import TimelockClient

CHAIN_ID = 31337
GENESIS_TIMESTAMP = 1_700_000_000
OPERATOR_KEY = "0x" + "11" * 32
COSIGNER_KEY = "0x" + "22" * 32
OUTSIDER_KEY = "0x" + "33" * 32
SERVICE_URL = "https://safe-transaction.test"
GRACE_PERIOD = 14 * 24 * 3600


class Revert(Exception):
    """Raised inside the fake chain when a call reverts."""


def _encode_address(address: str) -> bytes:
    return abi.encode_params(["address"], [to_checksum_address(address)])


def _is(left: str, right: Optional[str]) -> bool:
    return right is not None and left.lower() == right.lower()


class FakeOwnable:
    def __init__(self, owner: str) -> None:
        self.owner = owner
        self.calls: List[bytes] = []

    def view(self, data: bytes) -> bytes:
        if data[:4] == abi.selector(abi.OWNER):
            return _encode_address(self.owner)
        return b""

    def execute(self, chain: "FakeChain", address: str, sender: str, data: bytes, value: int) -> None:
        if not _is(sender, self.owner):
            raise Revert("Ownable: caller is not the owner")
        self.calls.append(data)


class FakeProxyAdmin(FakeOwnable):
    def __init__(self, owner: str) -> None:
        super().__init__(owner)
        self.implementations: Dict[str, str] = {}

    def execute(self, chain: "FakeChain", address: str, sender: str, data: bytes, value: int) -> None:
        super().execute(chain, address, sender, data, value)
        proxy, implementation = abi.decode_call(abi.PROXY_UPGRADE, data)
        self.implementations[proxy.lower()] = implementation


class FakePausedOwnable(FakeOwnable):
    def execute(self, chain: "FakeChain", address: str, sender: str, data: bytes, value: int) -> None:
        raise Revert("Pausable: paused")


class FakeTimelock:
    def __init__(self, admin: str, delay: int) -> None:
        self.admin = admin
        self.delay = delay
        self.queued: set[bytes] = set()
        self.executed: List[bytes] = []

    def view(self, data: bytes) -> bytes:
        if data[:4] == abi.selector(abi.ADMIN):
            return _encode_address(self.admin)
        if data[:4] == abi.selector(abi.MINIMUM_DELAY):
            return abi.encode_params(["uint256"], [self.delay])
        return b""

    def execute(self, chain: "FakeChain", address: str, sender: str, data: bytes, value: int) -> None:
        if data[:4] == abi.selector(abi.TIMELOCK_QUEUE):
            target, call_value, signature, params, eta = abi.decode_call(abi.TIMELOCK_QUEUE, data)
            if not _is(sender, self.admin):
                raise Revert("Timelock::queueTransaction: Call must come from admin.")
            if eta < chain.timestamp + self.delay:
                raise Revert("Timelock::queueTransaction: Estimated execution block must satisfy delay.")
            self.queued.add(abi.timelock_action_id(target, call_value, signature, params, eta))
            return
        if data[:4] == abi.selector(abi.TIMELOCK_EXECUTE):
            target, call_value, signature, params, eta = abi.decode_call(abi.TIMELOCK_EXECUTE, data)
            if not _is(sender, self.admin):
                raise Revert("Timelock::executeTransaction: Call must come from admin.")
            key = abi.timelock_action_id(target, call_value, signature, params, eta)
            if key not in self.queued:
                raise Revert("Timelock::executeTransaction: Transaction hasn't been queued.")
            if chain.timestamp < eta:
                raise Revert("Timelock::executeTransaction: Transaction hasn't surpassed time lock.")
            if chain.timestamp > eta + GRACE_PERIOD:
                raise Revert("Timelock::executeTransaction: Transaction is stale.")
            inner = abi.selector(signature) + params if signature else params
            chain.execute(address, target, inner, call_value)
            self.queued.discard(key)
            self.executed.append(key)
            return
        raise Revert("Timelock: unknown function")


SAFE_EXEC = "execTransaction(address,uint256,bytes,uint8,uint256,uint256,uint256,address,address,bytes)"
DOMAIN_TYPEHASH = keccak(text="EIP712Domain(uint256 chainId,address verifyingContract)")
SAFE_TX_TYPEHASH = keccak(
    text=(
        "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,"
        "uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,uint256 nonce)"
    )
)


def safe_tx_digest(
    chain_id: int,
    safe_address: str,
    to: str,
    value: int,
    data: bytes,
    operation: int,
    safe_tx_gas: int,
    base_gas: int,
    gas_price: int,
    gas_token: str,
    refund_receiver: str,
    nonce: int,
) -> bytes:
    """``getTransactionHash`` as computed by Safe contracts from 1.3.0."""

    domain = keccak(encode(["bytes32", "uint256", "address"], [DOMAIN_TYPEHASH, chain_id, to_checksum_address(safe_address)]))
    struct = keccak(
        encode(
            ["bytes32", "address", "uint256", "bytes32", "uint8", "uint256", "uint256", "uint256", "address", "address", "uint256"],
            [
                SAFE_TX_TYPEHASH,
                to_checksum_address(to),
                value,
                keccak(data),
                operation,
                safe_tx_gas,
                base_gas,
                gas_price,
                to_checksum_address(gas_token),
                to_checksum_address(refund_receiver),
                nonce,
            ],
        )
    )
    return keccak(b"\x19\x01" + domain + struct)


class FakeSafe:
    """Safe that checks signatures the way ``checkNSignatures`` does."""

    def __init__(self, owners: Sequence[str], threshold: int, nonce: int) -> None:
        self.owners = [owner.lower() for owner in owners]
        self.threshold = threshold
        self.nonce = nonce
        self.executed_nonces: List[int] = []

    def view(self, data: bytes) -> bytes:
        return b""

    def execute(self, chain: "FakeChain", address: str, sender: str, data: bytes, value: int) -> None:
        if data[:4] != abi.selector(SAFE_EXEC):
            raise Revert("Safe: unknown function")
        (to, call_value, call_data, operation, safe_tx_gas, base_gas, gas_price, gas_token, refund_receiver, signatures) = (
            abi.decode_call(SAFE_EXEC, data)
        )
        digest = safe_tx_digest(
            chain.chain_id,
            address,
            to,
            call_value,
            call_data,
            operation,
            safe_tx_gas,
            base_gas,
            gas_price,
            gas_token,
            refund_receiver,
            self.nonce,
        )
        if len(signatures) < self.threshold * 65:
            raise Revert("GS020")
        last_owner = 0
        for offset in range(0, self.threshold * 65, 65):
            chunk = signatures[offset : offset + 65]
            if chunk[64] == 1:
                owner = to_checksum_address(chunk[12:32])
                if not _is(owner, sender):
                    raise Revert("GS025")
            else:
                owner = recover_safe_signer(digest, chunk)
                if owner is None:
                    raise Revert("GS026")
            if int(owner, 16) <= last_owner or owner.lower() not in self.owners:
                raise Revert("GS026")
            last_owner = int(owner, 16)
        chain.execute(address, to, call_data, call_value)
        self.executed_nonces.append(self.nonce)
        self.nonce += 1


class FakeRevertingContract:
    def view(self, data: bytes) -> bytes:
        raise ContractLogicError("execution reverted")

    def execute(self, chain: "FakeChain", address: str, sender: str, data: bytes, value: int) -> None:
        raise Revert("always reverts")


class FakeGarbageContract:
    def view(self, data: bytes) -> bytes:
        return b"\x01"

    def execute(self, chain: "FakeChain", address: str, sender: str, data: bytes, value: int) -> None:
        raise Revert("no such function")


def recover_safe_signer(digest: bytes, signature: bytes) -> Optional[str]:
    """Owner behind an ECDSA Safe signature: plain (``v`` 27/28) or ``eth_sign`` (``v`` 31/32)."""

    v = signature[64]
    if v in (27, 28):
        return Account._recover_hash(digest, signature=signature)
    if v in (31, 32):
        adjusted = signature[:64] + bytes([v - 4])
        return Account.recover_message(encode_defunct(primitive=digest), signature=adjusted)
    return None


@dataclass
class SentTransaction:
    sender: str
    to: str
    data: bytes
    value: int
    tx_hash: str
    status: int
    revert_reason: Optional[str] = None


class FakeChain:
    """Synchronous contract simulator exposing the async chain-client surface."""

    def __init__(self, chain_id: int = CHAIN_ID, timestamp: int = GENESIS_TIMESTAMP) -> None:
        self.chain_id = chain_id
        self.timestamp = timestamp
        self.contracts: Dict[str, Any] = {}
        self.sent: List[SentTransaction] = []
        self.impersonated: List[str] = []
        self.calls: List[tuple[str, bytes]] = []
        self._receipts: Dict[str, Dict[str, Any]] = {}
        self._deployed = 0

    def _deploy(self, contract: Any) -> str:
        self._deployed += 1
        address = to_checksum_address("0x" + keccak(text=f"contract-{self._deployed}")[-20:].hex())
        self.contracts[address.lower()] = contract
        return address

    def contract(self, address: str) -> Any:
        return self.contracts[address.lower()]

    def deploy_ownable(self, owner: str) -> str:
        return self._deploy(FakeOwnable(owner))

    def deploy_paused(self, owner: str) -> str:
        return self._deploy(FakePausedOwnable(owner))

    def deploy_proxy_admin(self, owner: str) -> str:
        return self._deploy(FakeProxyAdmin(owner))

    def deploy_timelock(self, admin: str, delay: int) -> str:
        return self._deploy(FakeTimelock(admin, delay))

    def deploy_safe(self, owners: Sequence[str], *, threshold: int = 1, nonce: int = 0) -> str:
        return self._deploy(FakeSafe(owners, threshold, nonce))

    def deploy_reverting(self) -> str:
        return self._deploy(FakeRevertingContract())

    def deploy_garbage(self) -> str:
        return self._deploy(FakeGarbageContract())

    def advance(self, seconds: int) -> None:
        self.timestamp += seconds

    def execute(self, sender: str, to: str, data: bytes, value: int) -> None:
        contract = self.contracts.get(to.lower())
        if contract is None:
            return
        contract.execute(self, to_checksum_address(to), sender, data, value)

    def transact(self, sender: str, to: str, data: bytes, value: int = 0) -> str:
        tx_hash = to_hex(keccak(text=f"tx-{len(self.sent)}"))
        try:
            self.execute(sender, to, bytes(data), value)
        except Revert as exc:
            status, reason = 0, str(exc)
        else:
            status, reason = 1, None
        self.sent.append(SentTransaction(sender, to_checksum_address(to), bytes(data), value, tx_hash, status, reason))
        self._receipts[tx_hash] = {"transactionHash": tx_hash, "status": status}
        return tx_hash

    def sent_to(self, address: str) -> List[SentTransaction]:
        return [tx for tx in self.sent if _is(tx.to, address)]

    async def call(self, to: str, data: bytes) -> bytes:
        self.calls.append((to, data))
        contract = self.contracts.get(to.lower())
        if contract is None:
            return b""
        return contract.view(data)

    async def latest_timestamp(self) -> int:
        return self.timestamp

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        receipt = self._receipts[tx_hash]
        if receipt["status"] == 0:
            raise TransactionFailedError(tx_hash, receipt)
        return receipt

    def impersonate(self, address: str) -> "FakeImpersonatedSigner":
        return FakeImpersonatedSigner(self, address)


class FakeSigner:
    def __init__(self, chain: FakeChain, private_key: str) -> None:
        self._chain = chain
        self._private_key = private_key
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def send_transaction(self, *, to: str, data: bytes, value: int = 0) -> str:
        return self._chain.transact(self.address, to, data, value)

    async def sign_safe_tx(self, safe_tx: SafeTx) -> bytes:
        return bytes(safe_tx.sign(self._private_key))


class FakeImpersonatedSigner:
    def __init__(self, chain: FakeChain, address: str) -> None:
        self._chain = chain
        self._address = to_checksum_address(address)

    @property
    def address(self) -> str:
        return self._address

    async def send_transaction(self, *, to: str, data: bytes, value: int = 0) -> str:
        self._chain.impersonated.append(self._address)
        return self._chain.transact(self._address, to, data, value)

    async def sign_safe_tx(self, safe_tx: SafeTx) -> bytes:
        raise AssertionError("impersonated signers cannot sign")


_CONFIRMATION_PATH = re.compile(r"/api/v1/multisig-transactions/(0x[0-9a-f]{64})/confirmations/")


class FakeSafeService:
    """Transaction service double served through ``httpx.MockTransport``.

    Pending transactions are listed newest first, as the hosted service does.
    """

    def __init__(self, chain: FakeChain, safe_address: str) -> None:
        self.chain = chain
        self.safe_address = safe_address
        self.proposals: Dict[str, Dict[str, Any]] = {}
        self.posted: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.rejected_confirmations: set[str] = set()
        self.unreachable_confirmations: set[str] = set()
        self.fail_status: Optional[int] = None

    @property
    def safe(self) -> FakeSafe:
        return self.chain.contract(self.safe_address)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def pending(self) -> List[Dict[str, Any]]:
        current = self.safe.nonce
        entries = [entry for entry in self.proposals.values() if entry["nonce"] >= current]
        return sorted(entries, key=lambda entry: entry["nonce"], reverse=True)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"detail": "service unavailable"})
        path = request.url.path.lower()
        safe_root = f"/api/v1/safes/{self.safe_address.lower()}/"
        if request.method == "GET" and path == safe_root:
            return httpx.Response(
                200,
                json={
                    "address": self.safe_address,
                    "nonce": self.safe.nonce,
                    "threshold": self.safe.threshold,
                    "owners": self.safe.owners,
                },
            )
        if path == f"{safe_root}multisig-transactions/":
            if request.method == "GET":
                minimum = int(request.url.params.get("nonce__gte", 0))
                assert request.url.params.get("executed") == "false"
                results = [entry for entry in self.pending() if entry["nonce"] >= minimum]
                return httpx.Response(200, json={"count": len(results), "results": results})
            if request.method == "POST":
                return self._propose(json.loads(request.content))
        match = _CONFIRMATION_PATH.fullmatch(path)
        if match and request.method == "POST":
            if match.group(1) in self.unreachable_confirmations:
                raise httpx.ConnectError("connection reset by peer", request=request)
            return self._confirm(match.group(1), json.loads(request.content))
        return httpx.Response(404, json={"detail": "Not found."})

    def _propose(self, payload: Dict[str, Any]) -> httpx.Response:
        self.posted.append(payload)
        safe_tx_hash = payload["contractTransactionHash"].lower()
        expected = safe_tx_digest(
            self.chain.chain_id,
            self.safe_address,
            payload["to"],
            int(payload["value"]),
            abi.as_bytes(payload["data"]),
            payload["operation"],
            int(payload["safeTxGas"]),
            int(payload["baseGas"]),
            int(payload["gasPrice"]),
            payload["gasToken"],
            payload["refundReceiver"],
            payload["nonce"],
        )
        if to_hex(expected) != safe_tx_hash:
            return httpx.Response(422, json={"contractTransactionHash": [f"Expected {to_hex(expected)}"]})
        signer = recover_safe_signer(expected, abi.as_bytes(payload["signature"]))
        if signer is None or not _is(signer, payload["sender"]):
            return httpx.Response(422, json={"signature": ["Signer does not match sender"]})
        self.proposals[safe_tx_hash] = {
            "safe": self.safe_address,
            "to": payload["to"],
            "value": payload["value"],
            "data": payload["data"],
            "operation": payload["operation"],
            "safeTxGas": payload["safeTxGas"],
            "baseGas": payload["baseGas"],
            "gasPrice": payload["gasPrice"],
            "gasToken": payload["gasToken"],
            "refundReceiver": payload["refundReceiver"],
            "nonce": payload["nonce"],
            "safeTxHash": safe_tx_hash,
            "confirmationsRequired": self.safe.threshold,
            "confirmations": [{"owner": payload["sender"], "signature": payload["signature"]}],
            "isExecuted": False,
        }
        return httpx.Response(201)

    def _confirm(self, safe_tx_hash: str, body: Dict[str, Any]) -> httpx.Response:
        if safe_tx_hash in self.rejected_confirmations:
            return httpx.Response(400, json={"signature": ["Signature rejected"]})
        entry = self.proposals.get(safe_tx_hash)
        if entry is None:
            return httpx.Response(404, json={"detail": "Not found."})
        owner = recover_safe_signer(abi.as_bytes(safe_tx_hash), abi.as_bytes(body["signature"]))
        entry["confirmations"].append({"owner": owner, "signature": body["signature"]})
        return httpx.Response(201)


@pytest.fixture()
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture()
def operator(chain: FakeChain) -> FakeSigner:
    return FakeSigner(chain, OPERATOR_KEY)


@pytest.fixture()
def cosigner(chain: FakeChain) -> FakeSigner:
    return FakeSigner(chain, COSIGNER_KEY)


@pytest.fixture()
def outsider(chain: FakeChain) -> FakeSigner:
    return FakeSigner(chain, OUTSIDER_KEY)


@pytest.fixture()
def safe_address(chain: FakeChain, operator: FakeSigner, cosigner: FakeSigner) -> str:
    return chain.deploy_safe([operator.address, cosigner.address], threshold=1)


@pytest.fixture()
def service(chain: FakeChain, safe_address: str) -> FakeSafeService:
    return FakeSafeService(chain, safe_address)


@pytest.fixture()
def make_safe_client(chain: FakeChain, service: FakeSafeService, safe_address: str) -> Callable[..., SafeProposalClient]:
    def factory(signer: FakeSigner, **kwargs: Any) -> SafeProposalClient:
        return SafeProposalClient(
            chain_id=chain.chain_id,
            safe_address=safe_address,
            signer=signer,
            chain=chain,
            service=SafeTransactionServiceClient(SERVICE_URL, transport=service.transport()),
            **kwargs,
        )

    return factory


@pytest.fixture()
def safe_client(make_safe_client: Callable[..., SafeProposalClient], operator: FakeSigner) -> SafeProposalClient:
    return make_safe_client(operator)


@pytest.fixture()
def make_timelock(
    chain: FakeChain,
    operator: FakeSigner,
    safe_client: SafeProposalClient,
) -> Callable[..., TimelockClient]:
    def factory(admin: str, *, delay: int = 2 * 24 * 3600, address: Optional[str] = None, **kwargs: Any) -> TimelockClient:
        timelock_address = address or chain.deploy_timelock(admin, delay)
        return TimelockClient(
            chain_id=chain.chain_id,
            timelock_address=timelock_address,
            signer=operator,
            chain=chain,
            safe=safe_client,
            **kwargs,
        )

    return factory


@pytest.fixture()
def safe_digest() -> Callable[..., bytes]:
    return safe_tx_digest
