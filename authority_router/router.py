"""Owner-aware dispatch of privileged calls.

The routers resolve the current on-chain owner of a target on every call and
pick the execution protocol that owner requires: a direct send when the
operator key owns it, a Safe proposal when the multisig does, or a timelock
queue when the timelock controller does. The returned :class:`DispatchResult`
makes it explicit whether the call is already in effect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from eth_utils import to_checksum_address, to_hex
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

from . import abi
from .authority import AuthorityBindings, AuthorityInspector, AuthorityKind
from .chain import Signer
from .errors import (
    ContractInterfaceError,
    ProposalServiceError,
    RouterError,
    TransactionFailedError,
    UnknownAdminError,
    UnknownOwnerError,
    UnsupportedAuthorityError,
)
from .journal import ActionJournal, ActionKind, ActionState, TransitionRecord
from .safe import SafeProposalClient
from .timelock import QueuedTimelockAction, TimelockClient, TimelockPath

logger = logging.getLogger(__name__)

UPGRADE_LABEL = "Upgrade Proxy"


class DispatchStatus(str, Enum):
    EXECUTED = "executed"
    PROPOSED = "proposed"
    QUEUED = "queued"


@dataclass(frozen=True)
class PendingPrivilegedAction:
    """A privileged call waiting to be routed to its owner."""

    target: str
    call_data: bytes
    value: int = 0

    def __post_init__(self) -> None:
        if self.value < 0:
            raise ValueError("value must be non-negative")


@dataclass(frozen=True)
class DispatchResult:
    """Uniform outcome of a routed call.

    Only ``EXECUTED`` results are in effect on-chain; ``PROPOSED`` waits for
    the remaining Safe owners and ``QUEUED`` waits for the timelock delay.
    """

    authority: AuthorityKind
    status: DispatchStatus
    reference: str
    owner: str
    target: str
    value: int = 0
    call_data: bytes = b""
    timelock_action: Optional[QueuedTimelockAction] = None

    @property
    def is_final(self) -> bool:
        return self.status is DispatchStatus.EXECUTED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "authority": self.authority.value,
            "status": self.status.value,
            "reference": self.reference,
            "owner": self.owner,
            "target": self.target,
            "value": str(self.value),
            "call_data": to_hex(self.call_data),
            "final": self.is_final,
            "timelock_action": self.timelock_action.as_payload() if self.timelock_action else None,
        }


class DispatchChain(Protocol):  # pragma: no cover - protocol
    async def call(self, to: str, data: bytes) -> bytes:
        ...

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        ...


_FAILURE_REASONS = (
    (UnknownOwnerError, "unknown_owner"),
    (UnknownAdminError, "unknown_admin"),
    (UnsupportedAuthorityError, "unsupported_authority"),
    (ContractInterfaceError, "contract_interface"),
    (ProposalServiceError, "proposal_service"),
    (TransactionFailedError, "transaction_failed"),
)


def _failure_reason(exc: RouterError) -> str:
    for error_type, reason in _FAILURE_REASONS:
        if isinstance(exc, error_type):
            return reason
    return "router_error"


class _OwnerDispatcher:
    """State and metrics shared by the concrete routers.

    ``timelock_address`` marks a timelock as a known owner when no
    :class:`TimelockClient` is attached, so its targets fail with
    :class:`UnsupportedAuthorityError` instead of an unknown-owner error.
    """

    def __init__(
        self,
        *,
        chain_id: int,
        signer: Signer,
        chain: DispatchChain,
        safe: SafeProposalClient,
        timelock: Optional[TimelockClient] = None,
        timelock_address: Optional[str] = None,
        inspector: Optional[AuthorityInspector] = None,
        journal: Optional[ActionJournal] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self._chain_id = chain_id
        self._signer = signer
        self._chain = chain
        self._safe = safe
        self._timelock = timelock
        self._timelock_address = to_checksum_address(timelock_address) if timelock_address else None
        self._inspector = inspector or AuthorityInspector(chain)
        self._journal = journal
        self._metrics_registry = registry or CollectorRegistry()
        self._dispatches = Counter(
            "authority_dispatch_total",
            "Count of privileged calls routed, by owner kind and outcome",
            labelnames=("authority", "status"),
            registry=self._metrics_registry,
        )
        self._failures = Counter(
            "authority_dispatch_failures_total",
            "Count of privileged calls that could not be routed",
            labelnames=("reason",),
            registry=self._metrics_registry,
        )

    @property
    def bindings(self) -> AuthorityBindings:
        return AuthorityBindings(
            signer=self._signer.address,
            multisig=self._safe.address,
            timelock=self._timelock.address if self._timelock else self._timelock_address,
        )

    def metrics(self) -> bytes:
        return generate_latest(self._metrics_registry)

    @property
    def metrics_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    async def _classify(self, target: str) -> tuple[str, AuthorityKind]:
        owner = await self._inspector.resolve_owner(target)
        kind = self.bindings.classify(owner)
        if kind is None:
            raise UnknownOwnerError(target, owner)
        logger.info("Owner of %s is %s (%s)", target, owner, kind.value, extra={"chain_id": self._chain_id})
        return owner, kind

    async def _send_direct(self, target: str, call_data: bytes, value: int) -> str:
        tx_hash = await self._signer.send_transaction(to=target, data=call_data, value=value)
        await self._chain.wait_for_receipt(tx_hash)
        if self._journal is not None:
            self._journal.record(
                TransitionRecord(
                    action_id=tx_hash,
                    kind=ActionKind.DIRECT,
                    state=ActionState.EXECUTED,
                    chain_id=self._chain_id,
                    reference=tx_hash,
                    payload={"to": target, "value": str(value), "data": to_hex(call_data)},
                )
            )
        return tx_hash

    def _observe(self, result: DispatchResult) -> DispatchResult:
        self._dispatches.labels(result.authority.value, result.status.value).inc()
        return result

    def _observe_failure(self, exc: RouterError) -> None:
        reason = _failure_reason(exc)
        self._failures.labels(reason).inc()
        logger.warning("Dispatch failed (%s): %s", reason, exc, extra={"chain_id": self._chain_id})


class ExecutionRouter(_OwnerDispatcher):
    """Routes an arbitrary privileged call to the protocol its owner requires."""

    async def authorize_and_execute(self, target: str, call_data: bytes | str, value: int = 0) -> DispatchResult:
        return await self.execute(PendingPrivilegedAction(to_checksum_address(target), abi.as_bytes(call_data), int(value)))

    async def execute(self, action: PendingPrivilegedAction) -> DispatchResult:
        try:
            return self._observe(await self._dispatch(action))
        except RouterError as exc:
            self._observe_failure(exc)
            raise

    async def _dispatch(self, action: PendingPrivilegedAction) -> DispatchResult:
        target = to_checksum_address(action.target)
        owner, kind = await self._classify(target)
        if kind is AuthorityKind.SIGNER:
            logger.info("Sending call to %s directly from the signer", target)
            tx_hash = await self._send_direct(target, action.call_data, action.value)
            return DispatchResult(kind, DispatchStatus.EXECUTED, tx_hash, owner, target, action.value, action.call_data)
        if kind is AuthorityKind.MULTISIG:
            logger.info("Proposing call to %s through Safe %s", target, self._safe.address)
            safe_tx_hash = await self._safe.propose_transaction(target, action.value, action.call_data)
            return DispatchResult(kind, DispatchStatus.PROPOSED, safe_tx_hash, owner, target, action.value, action.call_data)
        if kind is AuthorityKind.TIMELOCK:
            # Arbitrary calls carry no function signature to queue under.
            raise UnsupportedAuthorityError(
                f"{target} is owned by timelock {owner}; queue the call through TimelockClient instead"
            )
        raise AssertionError(f"unhandled authority kind {kind!r}")


class ProxyUpgradeRouter(_OwnerDispatcher):
    """Upgrades proxies through a proxy admin, whoever owns the admin."""

    def __init__(self, *, proxy_admin_address: str, eta_buffer_seconds: int = 900, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._proxy_admin = to_checksum_address(proxy_admin_address)
        self._eta_buffer_seconds = eta_buffer_seconds

    @property
    def proxy_admin(self) -> str:
        return self._proxy_admin

    async def upgrade(self, proxy: str, implementation: str) -> DispatchResult:
        try:
            return self._observe(await self._upgrade(proxy, implementation))
        except RouterError as exc:
            self._observe_failure(exc)
            raise

    async def _upgrade(self, proxy: str, implementation: str) -> DispatchResult:
        proxy = to_checksum_address(proxy)
        implementation = to_checksum_address(implementation)
        call_data = abi.encode_call(abi.PROXY_UPGRADE, [proxy, implementation])
        owner, kind = await self._classify(self._proxy_admin)
        logger.info("Upgrading proxy %s to %s", proxy, implementation)
        if kind is AuthorityKind.SIGNER:
            logger.info("Calling proxy admin %s directly from the signer", self._proxy_admin)
            tx_hash = await self._send_direct(self._proxy_admin, call_data, 0)
            return DispatchResult(kind, DispatchStatus.EXECUTED, tx_hash, owner, self._proxy_admin, 0, call_data)
        if kind is AuthorityKind.MULTISIG:
            logger.info("Proposing upgrade through Safe %s", self._safe.address)
            safe_tx_hash = await self._safe.propose_transaction(self._proxy_admin, 0, call_data)
            return DispatchResult(kind, DispatchStatus.PROPOSED, safe_tx_hash, owner, self._proxy_admin, 0, call_data)
        if kind is AuthorityKind.TIMELOCK:
            if self._timelock is None:
                raise UnsupportedAuthorityError(
                    f"Proxy admin {self._proxy_admin} is owned by timelock {owner} but no timelock client is configured"
                )
            logger.info("Queueing upgrade on timelock %s", self._timelock.address)
            eta = await self._timelock.eta_after(self._eta_buffer_seconds)
            queued = await self._timelock.queue_transaction(
                UPGRADE_LABEL,
                self._proxy_admin,
                0,
                abi.PROXY_UPGRADE,
                ["address", "address"],
                [proxy, implementation],
                eta,
            )
            status = DispatchStatus.PROPOSED if queued.path is TimelockPath.PROPOSED else DispatchStatus.QUEUED
            return DispatchResult(
                kind,
                status,
                queued.queued_at,
                owner,
                self._proxy_admin,
                0,
                call_data,
                timelock_action=queued,
            )
        raise AssertionError(f"unhandled authority kind {kind!r}")


__all__ = [
    "DispatchResult",
    "DispatchStatus",
    "ExecutionRouter",
    "PendingPrivilegedAction",
    "ProxyUpgradeRouter",
    "UPGRADE_LABEL",
]
