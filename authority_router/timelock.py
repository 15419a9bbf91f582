"""Two-phase queue/execute protocol against a Compound-style timelock."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from eth_utils import to_checksum_address, to_hex

from . import abi
from .authority import AuthorityInspector, same_address
from .chain import Signer
from .errors import UnknownAdminError
from .journal import ActionJournal, ActionKind, ActionState, TransitionRecord
from .safe import SafeProposalClient

logger = logging.getLogger(__name__)

DEFAULT_ETA_BUFFER_SECONDS = 900


class TimelockPath(str, Enum):
    """How a timelock call reached the controller."""

    DIRECT = "direct"
    PROPOSED = "proposed"
    IMPERSONATED = "impersonated"


class TimelockChain(Protocol):  # pragma: no cover - protocol
    async def call(self, to: str, data: bytes) -> bytes:
        ...

    async def latest_timestamp(self) -> int:
        ...

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        ...

    def impersonate(self, address: str) -> Signer:
        ...


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return to_hex(bytes(value))
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _quote(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_quote(item) for item in value) + "]"
    if isinstance(value, (bytes, bytearray)):
        return f"'{to_hex(bytes(value))}'"
    if isinstance(value, str):
        return f"'{value}'"
    return str(value)


def format_execution_hint(
    timelock: str,
    target: str,
    value: int,
    signature: str,
    encoded_params: bytes,
    eta: int,
    *,
    param_types: Sequence[str] = (),
    params: Sequence[Any] = (),
) -> str:
    """Human-readable instruction for executing a queued action later.

    The encoded params are embedded verbatim: the controller matches queued
    entries by the exact bytes, so a re-encoding would not match.
    """

    hint = (
        f"timelock({timelock}).executeTransaction('{target}', {value}, '{signature}', "
        f"'{to_hex(encoded_params)}', {eta})"
    )
    if param_types:
        hint += f"  # decoded: [{', '.join(_quote(t) for t in param_types)}] = {_quote(list(params))}"
    return hint


@dataclass
class QueuedTimelockAction:
    """A timelock call tuple plus the references produced while dispatching it."""

    label: str
    chain_id: int
    timelock: str
    target: str
    value: int
    signature: str
    param_types: List[str]
    params: List[Any]
    encoded_params: bytes
    eta: int
    queued_at: str = ""
    executed_at: str = ""
    execution_hint: str = ""
    path: Optional[TimelockPath] = None

    @property
    def action_id(self) -> str:
        return to_hex(abi.timelock_action_id(self.target, self.value, self.signature, self.encoded_params, self.eta))

    def call_tuple(self) -> List[Any]:
        return [to_checksum_address(self.target), self.value, self.signature, self.encoded_params, self.eta]

    def as_payload(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "chain_id": self.chain_id,
            "timelock": self.timelock,
            "target": self.target,
            "value": str(self.value),
            "signature": self.signature,
            "param_types": list(self.param_types),
            "params": _jsonable(list(self.params)),
            "encoded_params": to_hex(self.encoded_params),
            "eta": self.eta,
            "queued_at": self.queued_at,
            "executed_at": self.executed_at,
            "execution_hint": self.execution_hint,
            "path": self.path.value if self.path else None,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "QueuedTimelockAction":
        path = payload.get("path")
        return cls(
            label=str(payload.get("label") or ""),
            chain_id=int(payload["chain_id"]),
            timelock=str(payload["timelock"]),
            target=str(payload["target"]),
            value=int(payload.get("value") or 0),
            signature=str(payload["signature"]),
            param_types=list(payload.get("param_types") or []),
            params=list(payload.get("params") or []),
            encoded_params=abi.as_bytes(payload.get("encoded_params")),
            eta=int(payload["eta"]),
            queued_at=str(payload.get("queued_at") or ""),
            executed_at=str(payload.get("executed_at") or ""),
            execution_hint=str(payload.get("execution_hint") or ""),
            path=TimelockPath(path) if path else None,
        )


class TimelockClient:
    """Queues and executes timelock actions through whichever admin is in place."""

    def __init__(
        self,
        *,
        chain_id: int,
        timelock_address: str,
        signer: Signer,
        chain: TimelockChain,
        safe: SafeProposalClient,
        fork_mode: bool = False,
        inspector: Optional[AuthorityInspector] = None,
        journal: Optional[ActionJournal] = None,
    ) -> None:
        self._chain_id = chain_id
        self._address = to_checksum_address(timelock_address)
        self._signer = signer
        self._chain = chain
        self._safe = safe
        self._fork_mode = fork_mode
        self._inspector = inspector or AuthorityInspector(chain)
        self._journal = journal

    @property
    def address(self) -> str:
        return self._address

    def get_address(self) -> str:
        return self._address

    @property
    def fork_mode(self) -> bool:
        return self._fork_mode

    async def admin(self) -> str:
        return await self._inspector.resolve_admin(self._address)

    async def minimum_delay(self) -> int:
        raw = await self._chain.call(self._address, abi.encode_call(abi.MINIMUM_DELAY))
        return abi.decode_uint(raw)

    async def eta_after(self, buffer_seconds: int = DEFAULT_ETA_BUFFER_SECONDS) -> int:
        """Earliest comfortable eta: latest block time plus delay plus buffer."""

        now = await self._chain.latest_timestamp()
        return now + await self.minimum_delay() + buffer_seconds

    def build_action(
        self,
        label: str,
        target: str,
        value: int,
        signature: str,
        param_types: Sequence[str],
        params: Sequence[Any],
        eta: int,
    ) -> QueuedTimelockAction:
        encoded = abi.encode_params(param_types, params)
        target = to_checksum_address(target)
        return QueuedTimelockAction(
            label=label,
            chain_id=self._chain_id,
            timelock=self._address,
            target=target,
            value=int(value),
            signature=signature,
            param_types=list(param_types),
            params=list(params),
            encoded_params=encoded,
            eta=int(eta),
            execution_hint=format_execution_hint(
                self._address,
                target,
                int(value),
                signature,
                encoded,
                int(eta),
                param_types=param_types,
                params=params,
            ),
        )

    async def queue_transaction(
        self,
        label: str,
        target: str,
        value: int,
        signature: str,
        param_types: Sequence[str],
        params: Sequence[Any],
        eta: int,
    ) -> QueuedTimelockAction:
        """Queue a call on the timelock.

        ``eta`` is passed through untouched; the controller rejects values
        below its minimum delay.
        """

        action = self.build_action(label, target, value, signature, param_types, params, eta)
        return await self.queue_action(action)

    async def queue_action(self, action: QueuedTimelockAction) -> QueuedTimelockAction:
        path, reference = await self._dispatch(abi.TIMELOCK_QUEUE, action)
        label = f"MultiSign: {action.label}" if path is TimelockPath.PROPOSED else action.label
        queued = replace(action, label=label, queued_at=reference, path=path)
        logger.info("Queued %s at %s via %s", queued.label, reference, path.value)
        logger.info("Execute later with: %s", queued.execution_hint)
        self._journal_record(
            queued,
            ActionState.PROPOSED if path is TimelockPath.PROPOSED else ActionState.QUEUED,
            reference,
            phase="queue",
        )
        return queued

    async def execute_transaction(
        self,
        label: str,
        queued_at: str,
        execution_hint: str,
        target: str,
        value: int,
        signature: str,
        param_types: Sequence[str],
        params: Sequence[Any],
        eta: int,
    ) -> QueuedTimelockAction:
        """Execute a previously queued call.

        The controller itself reverts before ``eta`` or when the tuple does not
        match a queued entry; neither condition is checked here.
        """

        action = self.build_action(label, target, value, signature, param_types, params, eta)
        action = replace(action, queued_at=queued_at, execution_hint=execution_hint or action.execution_hint)
        return await self.execute_action(action)

    async def execute_action(self, action: QueuedTimelockAction) -> QueuedTimelockAction:
        """Execute ``action`` with its stored encoded params, byte for byte."""

        logger.info("Execute tx for: %s", action.label)
        path, reference = await self._dispatch(abi.TIMELOCK_EXECUTE, action)
        executed = replace(action, executed_at=reference, path=path)
        logger.info("Executed %s at %s via %s", executed.label, reference, path.value)
        self._journal_record(
            executed,
            ActionState.PROPOSED if path is TimelockPath.PROPOSED else ActionState.EXECUTED,
            reference,
            phase="execute",
        )
        return executed

    async def resume_pending(self) -> List[QueuedTimelockAction]:
        """Journaled actions on this controller that still await execution."""

        if self._journal is None:
            return []
        actions = []
        for record in self._journal.pending_timelock_actions(self._chain_id):
            action = QueuedTimelockAction.from_payload(record.payload)
            if same_address(action.timelock, self._address):
                actions.append(action)
        return actions

    async def _dispatch(self, function: str, action: QueuedTimelockAction) -> tuple[TimelockPath, str]:
        admin = await self.admin()
        call_data = abi.encode_call(function, action.call_tuple())
        if same_address(admin, self._signer.address):
            tx_hash = await self._signer.send_transaction(to=self._address, data=call_data)
            await self._chain.wait_for_receipt(tx_hash)
            return TimelockPath.DIRECT, tx_hash
        if same_address(admin, self._safe.address):
            if not self._fork_mode:
                logger.info("Timelock admin is the Safe; proposing %s for: %s", function, action.label)
                safe_tx_hash = await self._safe.propose_transaction(self._address, 0, call_data)
                return TimelockPath.PROPOSED, safe_tx_hash
            logger.warning("Fork mode is ON; sending %s directly as the Safe", function)
            impersonated = self._chain.impersonate(self._safe.address)
            tx_hash = await impersonated.send_transaction(to=self._address, data=call_data)
            await self._chain.wait_for_receipt(tx_hash)
            return TimelockPath.IMPERSONATED, tx_hash
        raise UnknownAdminError(self._address, admin)

    def _journal_record(
        self,
        action: QueuedTimelockAction,
        state: ActionState,
        reference: str,
        *,
        phase: str,
    ) -> None:
        if self._journal is None:
            return
        self._journal.record(
            TransitionRecord(
                action_id=action.action_id,
                kind=ActionKind.TIMELOCK,
                state=state,
                chain_id=self._chain_id,
                reference=reference,
                phase=phase,
                payload=action.as_payload(),
            )
        )


__all__ = [
    "DEFAULT_ETA_BUFFER_SECONDS",
    "QueuedTimelockAction",
    "TimelockClient",
    "TimelockPath",
    "format_execution_hint",
]
