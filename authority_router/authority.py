"""Resolution of the on-chain authority that controls a contract."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from eth_abi.exceptions import DecodingError
from web3.exceptions import ContractLogicError

from . import abi
from .errors import ContractInterfaceError

logger = logging.getLogger(__name__)


class AuthorityKind(str, Enum):
    """Closed set of authority models a privileged call can be routed through."""

    SIGNER = "signer"
    MULTISIG = "multisig"
    TIMELOCK = "timelock"


class ChainReader(Protocol):  # pragma: no cover - protocol
    async def call(self, to: str, data: bytes) -> bytes:
        ...


def same_address(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.lower() == right.lower()


@dataclass(frozen=True)
class AuthorityBindings:
    """Addresses a router is able to act as, one per :class:`AuthorityKind`."""

    signer: str
    multisig: str
    timelock: Optional[str] = None

    def address_of(self, kind: AuthorityKind) -> Optional[str]:
        if kind is AuthorityKind.SIGNER:
            return self.signer
        if kind is AuthorityKind.MULTISIG:
            return self.multisig
        if kind is AuthorityKind.TIMELOCK:
            return self.timelock
        raise AssertionError(f"unhandled authority kind {kind!r}")

    def classify(self, owner: str) -> Optional[AuthorityKind]:
        """Return the kind bound to ``owner`` or ``None`` when none matches."""

        matches = [kind for kind in AuthorityKind if same_address(owner, self.address_of(kind))]
        if len(matches) > 1:
            raise ValueError(f"{owner} is bound to more than one authority kind: {matches}")
        return matches[0] if matches else None


class AuthorityInspector:
    """Reads the current owner or admin of a contract with a single call."""

    def __init__(self, chain: ChainReader) -> None:
        self._chain = chain

    async def resolve_owner(self, target: str) -> str:
        return await self._read_address(target, abi.OWNER)

    async def resolve_admin(self, controller: str) -> str:
        return await self._read_address(controller, abi.ADMIN)

    async def _read_address(self, target: str, accessor: str) -> str:
        try:
            raw = await self._chain.call(target, abi.encode_call(accessor))
        except ContractLogicError as exc:
            raise ContractInterfaceError(target, accessor, reason=str(exc)) from exc
        if not raw:
            raise ContractInterfaceError(target, accessor, reason="empty return data")
        try:
            address = abi.decode_address(raw)
        except DecodingError as exc:
            raise ContractInterfaceError(target, accessor, reason=str(exc)) from exc
        logger.debug("Resolved %s of %s: %s", accessor, target, address)
        return address


__all__ = ["AuthorityBindings", "AuthorityInspector", "AuthorityKind", "same_address"]
